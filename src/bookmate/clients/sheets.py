"""Async wrapper around the Google Sheets API v4."""

import asyncio
import re
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import structlog
from google.auth.exceptions import GoogleAuthError
from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from bookmate.config import get_settings
from bookmate.errors import ConfigurationError, SheetsError

logger = structlog.get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
READONLY_SCOPES = ["https://www.googleapis.com/auth/spreadsheets.readonly"]

_A1_CELL = re.compile(r"^\$?([A-Za-z]+)\$?(\d+)$")


# === A1 notation helpers ===


def col_index_to_letter(index: int) -> str:
    """Convert a zero-based column index to its letter (0 -> A, 26 -> AA)."""
    if index < 0:
        raise ValueError(f"Column index must be non-negative: {index}")
    letters = ""
    n = index + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def letter_to_col_index(letters: str) -> int:
    """Convert a column letter to its zero-based index (A -> 0, AA -> 26)."""
    if not letters or not letters.isalpha():
        raise ValueError(f"Invalid column letters: {letters!r}")
    index = 0
    for ch in letters.upper():
        index = index * 26 + (ord(ch) - 64)
    return index - 1


def quote_sheet(sheet: str) -> str:
    """Quote a tab name for use in A1 notation."""
    return "'" + sheet.replace("'", "''") + "'"


def a1_range(sheet: str, col: int | str, start_row: int, end_row: int | None = None) -> str:
    """Build a single-column range such as ``'Accounts'!B2:B``.

    Args:
        sheet: Tab name.
        col: Zero-based column index or column letter.
        start_row: First (1-based) row.
        end_row: Last row, or None for an open-ended range.
    """
    letter = col if isinstance(col, str) else col_index_to_letter(col)
    end = f"{letter}{end_row}" if end_row is not None else letter
    return f"{quote_sheet(sheet)}!{letter}{start_row}:{end}"


def parse_a1(ref: str) -> tuple[str | None, int, int]:
    """Split ``'Tab'!B7`` into (tab, zero-based column, 1-based row)."""
    sheet: str | None = None
    cell = ref
    if "!" in ref:
        sheet, cell = ref.rsplit("!", 1)
        if sheet.startswith("'") and sheet.endswith("'"):
            sheet = sheet[1:-1].replace("''", "'")
    cell = cell.split(":", 1)[0]
    match = _A1_CELL.match(cell)
    if not match:
        raise ValueError(f"Invalid A1 reference: {ref!r}")
    return sheet, letter_to_col_index(match.group(1)), int(match.group(2))


def grid_range_to_a1(grid: dict[str, Any]) -> str:
    """Render the top-left cell of an API ``GridRange`` as ``B7``."""
    col = grid.get("startColumnIndex", 0)
    row = grid.get("startRowIndex", 0) + 1
    return f"{col_index_to_letter(col)}{row}"


class SheetsClient:
    """Async Google Sheets client authenticated as a service account.

    The discovery client is synchronous, so each call runs on a small thread
    pool.
    """

    def __init__(
        self,
        spreadsheet_id: str | None = None,
        credentials_info: dict[str, Any] | None = None,
        scopes: list[str] | None = None,
        service: Any = None,
    ):
        settings = get_settings()
        self.spreadsheet_id = spreadsheet_id or settings.google_sheet_id
        self._credentials_info = credentials_info
        self._scopes = scopes or SCOPES
        self._service = service
        self._executor = ThreadPoolExecutor(max_workers=3)
        self._logger = logger.bind(component="sheets", spreadsheet_id=self.spreadsheet_id)

    def _build_service(self) -> Any:
        """Create the discovery service (sync, runs in executor)."""
        if not self.spreadsheet_id:
            raise ConfigurationError("GOOGLE_SHEET_ID is not configured")

        try:
            info = self._credentials_info or get_settings().service_account_info()
        except (ValueError, OSError) as e:
            raise ConfigurationError(
                "Google service account credentials could not be read", details={"reason": str(e)}
            ) from e
        if not info:
            raise ConfigurationError("Google service account credentials are not configured")

        try:
            credentials = Credentials.from_service_account_info(info, scopes=self._scopes)
        except ValueError as e:
            raise ConfigurationError(
                "Google service account credentials are invalid", details={"reason": str(e)}
            ) from e
        return build("sheets", "v4", credentials=credentials, cache_discovery=False)

    async def _run_sync(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def _execute(self, operation: str, build_request: Callable[[Any], Any]) -> Any:
        """Run ``build_request(service).execute()`` in the pool."""
        if self._service is None:
            self._service = await self._run_sync(self._build_service)
        service = self._service

        def _call() -> Any:
            return build_request(service).execute()

        try:
            return await self._run_sync(_call)
        except HttpError as e:
            status = getattr(e.resp, "status", None)
            self._logger.error("sheets_api_error", operation=operation, status=status, error=str(e))
            raise SheetsError(
                f"Sheets API error during {operation}",
                status_code=502,
                details={"status": status, "reason": str(e)},
            ) from e
        except (GoogleAuthError, OSError) as e:
            # Token refresh and network failures.
            self._logger.error("sheets_transport_error", operation=operation, error=str(e))
            raise SheetsError(
                f"Sheets API unreachable during {operation}",
                details={"reason": str(e)},
            ) from e

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # === Values ===

    async def get_values(
        self, range_a1: str, render: str = "UNFORMATTED_VALUE"
    ) -> list[list[Any]]:
        """Read a range, returning rows of cell values."""
        result = await self._execute(
            "get_values",
            lambda s: s.spreadsheets().values().get(
                spreadsheetId=self.spreadsheet_id,
                range=range_a1,
                valueRenderOption=render,
            ),
        )
        result = result if isinstance(result, dict) else {}
        return result.get("values", [])

    async def batch_get(
        self, ranges: list[str], render: str = "UNFORMATTED_VALUE"
    ) -> list[list[list[Any]]]:
        """Read several ranges in one request, preserving order."""
        result = await self._execute(
            "batch_get",
            lambda s: s.spreadsheets().values().batchGet(
                spreadsheetId=self.spreadsheet_id,
                ranges=ranges,
                valueRenderOption=render,
            ),
        )
        result = result if isinstance(result, dict) else {}
        value_ranges = result.get("valueRanges", [])
        return [vr.get("values", []) for vr in value_ranges]

    async def update_values(
        self, range_a1: str, rows: list[list[Any]], input_option: str = "RAW"
    ) -> dict[str, Any]:
        """Overwrite a range with ``rows``."""
        result = await self._execute(
            "update_values",
            lambda s: s.spreadsheets().values().update(
                spreadsheetId=self.spreadsheet_id,
                range=range_a1,
                valueInputOption=input_option,
                body={"values": rows},
            ),
        )
        self._logger.debug("sheets_range_updated", range=range_a1, rows=len(rows))
        return result if isinstance(result, dict) else {}

    async def clear_values(self, range_a1: str) -> None:
        await self._execute(
            "clear_values",
            lambda s: s.spreadsheets().values().clear(
                spreadsheetId=self.spreadsheet_id, range=range_a1, body={}
            ),
        )

    # === Metadata ===

    async def get_metadata(self, include_grid_data: bool = False) -> dict[str, Any]:
        """Fetch spreadsheet properties, tabs and named ranges."""
        result = await self._execute(
            "get_metadata",
            lambda s: s.spreadsheets().get(
                spreadsheetId=self.spreadsheet_id,
                includeGridData=include_grid_data,
            ),
        )
        return result if isinstance(result, dict) else {}

    async def sheet_titles(self) -> list[str]:
        metadata = await self.get_metadata()
        return [
            sheet.get("properties", {}).get("title", "")
            for sheet in metadata.get("sheets", [])
        ]

    async def list_named_ranges(self) -> list[dict[str, Any]]:
        """List named ranges as ``{name, sheet, a1}`` dicts sorted by name."""
        metadata = await self.get_metadata()
        titles = {
            sheet.get("properties", {}).get("sheetId", 0): sheet.get("properties", {}).get("title", "")
            for sheet in metadata.get("sheets", [])
        }

        ranges = []
        for named in metadata.get("namedRanges", []):
            grid = named.get("range", {})
            ranges.append({
                "name": named.get("name", ""),
                "sheet": titles.get(grid.get("sheetId", 0), ""),
                "a1": grid_range_to_a1(grid),
            })
        ranges.sort(key=lambda r: r["name"])
        return ranges
