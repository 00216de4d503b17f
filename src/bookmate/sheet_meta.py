"""Header-signature detection of workbook tabs.

Tabs are recognised by their header row rather than their title, so a
renamed tab keeps working as long as its columns are intact.
"""

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from bookmate.cache import TTLCache
from bookmate.clients.sheets import SheetsClient, a1_range, col_index_to_letter, quote_sheet
from bookmate.config import get_settings

logger = structlog.get_logger(__name__)

HEADER_ROWS_TO_CHECK = 3
MONTH_SELECTOR_ROWS = 5

REQUIRED_POINTS = 10.0
POSITION_BONUS = 0.1
OPTIONAL_POINTS = 2.0

# Each inner list holds alternatives; the first entry is the canonical name.
TAB_SIGNATURES: dict[str, dict[str, list[list[str]]]] = {
    "accounts": {
        "required": [
            ["accountName", "account_name", "account name"],
            ["openingBalance", "opening_balance", "opening balance"],
        ],
        "optional": [
            ["active?", "active", "isactive", "is active"],
            ["note", "notes", "description"],
        ],
    },
    "transactions": {
        "required": [
            ["timestamp", "time", "date", "datetime", "txndate", "transaction date"],
            ["fromAccount", "from_account", "from account", "from"],
            ["toAccount", "to_account", "to account", "to"],
            ["transactionType", "transaction_type", "transaction type", "type", "txntype"],
            ["amount", "value", "sum"],
        ],
        "optional": [
            ["currency", "curr"],
            ["note", "notes", "description"],
            ["referenceID", "reference_id", "reference id", "ref", "refid"],
            ["user", "username", "createdby", "created by"],
            ["balanceAfter", "balance_after", "balance after", "balance"],
        ],
    },
    "ledger": {
        "required": [
            ["date", "txndate", "transaction date", "timestamp"],
            ["accountName", "account_name", "account name", "account"],
            ["amount", "value", "sum", "debit/credit", "debitcredit", "delta", "change"],
            ["month", "monthname", "month name", "period"],
        ],
        "optional": [],
    },
    "balanceSummary": {
        "required": [
            ["accountName", "account_name", "account name", "account"],
            ["openingBalance", "opening_balance", "opening balance", "opening"],
            ["netChange", "net_change", "net change", "change"],
            [
                "currentBalance", "current_balance", "current balance",
                "balance", "closing balance", "closingbalance",
            ],
        ],
        "optional": [
            ["lastTxnAt", "last_txn_at", "last txn at", "last transaction", "lasttransaction"],
            ["inflow(+)", "inflow", "in", "credits", "revenue"],
            ["outflow(-)", "outflow", "out", "debits", "expense"],
            ["note", "notes", "description", "status"],
        ],
    },
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_header(header: Any) -> str:
    """Lowercase and strip everything except ``[a-z0-9]``."""
    return _NON_ALNUM.sub("", str(header or "").lower().strip())


@dataclass
class SignatureMatch:
    score: float
    matches: list[str] = field(default_factory=list)
    col_index_by_name: dict[str, int] = field(default_factory=dict)


@dataclass
class DetectedTab:
    """A tab matched to a signature."""

    title: str
    sheet_id: int
    index: int
    header_row: int
    col_index_by_name: dict[str, int]
    headers: list[str]
    match_score: float
    month_selector_cell: str | None = None

    def column_range(self, name: str, start_row: int | None = None, end_row: int | None = None) -> str:
        """A1 range for a detected column, starting below the header row."""
        if name not in self.col_index_by_name:
            raise KeyError(f"Column {name!r} not found in tab {self.title!r}")
        first = start_row if start_row is not None else self.header_row + 2
        return a1_range(self.title, self.col_index_by_name[name], first, end_row)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "sheetId": self.sheet_id,
            "index": self.index,
            "headerRow": self.header_row,
            "colIndexByName": self.col_index_by_name,
            "headers": self.headers,
            "matchScore": round(self.match_score, 2),
            "monthSelectorCellA1": self.month_selector_cell,
        }


@dataclass
class SheetMetadata:
    spreadsheet_id: str
    detected: dict[str, DetectedTab]
    all_sheets: list[dict[str, Any]]
    warnings: list[str]
    detected_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "sheetId": self.spreadsheet_id,
            "detected": {k: v.to_dict() for k, v in self.detected.items()},
            "allSheets": self.all_sheets,
            "warnings": self.warnings,
            "detectedAt": self.detected_at.isoformat(),
        }


def _find_column(normalized: list[str], alternatives: list[str]) -> int | None:
    for variant in alternatives:
        target = normalize_header(variant)
        if target in normalized:
            return normalized.index(target)
    return None


def score_tab_match(headers: list[Any], signature: dict[str, list[list[str]]]) -> SignatureMatch:
    """Score a header row against a tab signature.

    Each required header earns 10 points plus a small bonus for sitting
    further left; a missing required header disqualifies the row (score 0).
    Each optional header earns 2 points.
    """
    normalized = [normalize_header(h) for h in headers]
    result = SignatureMatch(score=0.0)

    for alternatives in signature["required"]:
        index = _find_column(normalized, alternatives)
        if index is None:
            return SignatureMatch(score=0.0)
        canonical = alternatives[0]
        result.col_index_by_name[canonical] = index
        result.matches.append(canonical)
        result.score += REQUIRED_POINTS + (100 - index) * POSITION_BONUS

    for alternatives in signature["optional"]:
        index = _find_column(normalized, alternatives)
        if index is None:
            continue
        canonical = alternatives[0]
        result.col_index_by_name[canonical] = index
        result.matches.append(canonical)
        result.score += OPTIONAL_POINTS

    return result


def find_month_selector_cell(rows: list[list[Any]]) -> str | None:
    """Locate the cell next to a "Month Filter" label in the first rows."""
    for row_idx, row in enumerate(rows[:MONTH_SELECTOR_ROWS]):
        for col_idx, cell in enumerate(row):
            text = str(cell or "").lower()
            if "month" in text and "filter" in text:
                neighbour = row[col_idx + 1] if col_idx + 1 < len(row) else ""
                if str(neighbour).strip():
                    return f"{col_index_to_letter(col_idx + 1)}{row_idx + 1}"
    return None


def detect_tabs(
    spreadsheet_id: str,
    sheets: list[dict[str, Any]],
    top_rows: list[list[list[Any]]],
) -> SheetMetadata:
    """Match each tab's top rows against every signature.

    Args:
        spreadsheet_id: Workbook id, echoed in the result.
        sheets: Tab descriptors ``{title, sheetId, index}`` in workbook order.
        top_rows: First rows of each tab, aligned with ``sheets``.
    """
    warnings: list[str] = []
    candidates: dict[str, list[tuple[float, dict[str, Any], int, SignatureMatch]]] = {
        tab_type: [] for tab_type in TAB_SIGNATURES
    }

    for sheet, rows in zip(sheets, top_rows, strict=True):
        for row_idx, headers in enumerate(rows[:HEADER_ROWS_TO_CHECK]):
            if not headers:
                continue
            for tab_type, signature in TAB_SIGNATURES.items():
                match = score_tab_match(headers, signature)
                if match.score > 0:
                    candidates[tab_type].append((match.score, sheet, row_idx, match))

    detected: dict[str, DetectedTab] = {}
    for tab_type, found in candidates.items():
        if not found:
            warnings.append(f'No tab found matching "{tab_type}" signature')
            continue

        found.sort(key=lambda c: c[0], reverse=True)
        score, sheet, header_row, match = found[0]
        tab = DetectedTab(
            title=sheet["title"],
            sheet_id=sheet["sheetId"],
            index=sheet["index"],
            header_row=header_row,
            col_index_by_name=match.col_index_by_name,
            headers=match.matches,
            match_score=score,
        )
        if tab_type == "balanceSummary":
            tab.month_selector_cell = find_month_selector_cell(top_rows[sheet["index"]])
        detected[tab_type] = tab

        if len(found) > 1:
            others = ", ".join(c[1]["title"] for c in found[1:])
            warnings.append(
                f'Multiple tabs match "{tab_type}" signature. '
                f'Using "{tab.title}" (score: {score:.1f}). Alternatives: {others}'
            )

    return SheetMetadata(
        spreadsheet_id=spreadsheet_id,
        detected=detected,
        all_sheets=sheets,
        warnings=warnings,
        detected_at=datetime.now(UTC),
    )


class SheetMetaDetector:
    """Detects tab structure per spreadsheet, caching results."""

    def __init__(self, sheets: SheetsClient, ttl: float | None = None):
        self._sheets = sheets
        self._cache = TTLCache(ttl if ttl is not None else get_settings().sheet_meta_cache_ttl)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def detect(self, force: bool = False) -> SheetMetadata:
        """Return detected tabs for the client's spreadsheet."""
        key = self._sheets.spreadsheet_id
        if not force:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        metadata = await self._sheets.get_metadata()
        sheets = []
        for position, sheet in enumerate(metadata.get("sheets", [])):
            props = sheet.get("properties", {})
            sheets.append({
                "title": props.get("title") or f"Sheet{position + 1}",
                "sheetId": props.get("sheetId", position),
                "index": position,
            })

        ranges = [f"{quote_sheet(s['title'])}!1:{MONTH_SELECTOR_ROWS}" for s in sheets]
        top_rows = await self._sheets.batch_get(ranges, render="FORMATTED_VALUE") if ranges else []

        result = detect_tabs(key, sheets, top_rows)
        for warning in result.warnings:
            logger.warning("sheet_meta_warning", spreadsheet_id=key, warning=warning)
        logger.info(
            "sheet_meta_detected",
            spreadsheet_id=key,
            detected=sorted(result.detected),
            tabs=len(sheets),
        )

        self._cache.set(key, result)
        return result
