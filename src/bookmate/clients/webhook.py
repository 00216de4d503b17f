"""Async client for the Apps Script webhook that fronts the workbook."""

import asyncio
import json
from typing import Any

import httpx
import structlog

from bookmate.config import get_settings
from bookmate.errors import ConfigurationError, ValidationError, WebhookAuthError, WebhookError

logger = structlog.get_logger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
VALID_PERIODS = ("month", "year")
VALID_MONTHS = (
    "ALL", "JAN", "FEB", "MAR", "APR", "MAY", "JUN",
    "JUL", "AUG", "SEP", "OCT", "NOV", "DEC",
)


def check_period(period: str) -> str:
    """Validate a breakdown period."""
    if period not in VALID_PERIODS:
        raise ValidationError(
            f"Invalid period: {period!r}. Expected 'month' or 'year'",
            details={"period": period},
        )
    return period


def check_month(month: str) -> str:
    """Validate and upper-case a month filter (``ALL`` or ``JAN``..``DEC``)."""
    normalized = (month or "ALL").strip().upper()
    if normalized not in VALID_MONTHS:
        raise ValidationError(
            f"Invalid month: {month!r}. Must be one of: {', '.join(VALID_MONTHS)}",
            details={"month": month},
        )
    return normalized


class AppsScriptClient:
    """Async client for the Apps Script ``doPost`` router.

    Every call is a POST of ``{action, secret, ...}`` sent as ``text/plain`` so
    the script runtime does not trigger a CORS preflight. The deployment answers
    with a redirect to the rendered result which must be fetched with a plain
    GET; letting httpx follow it would re-send the POST and lose the body.
    """

    def __init__(
        self,
        url: str | None = None,
        secret: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
    ):
        settings = get_settings()
        self.url = url or settings.sheets_webhook_url
        self._secret = secret or settings.sheets_webhook_secret.get_secret_value()
        self._timeout = timeout or settings.webhook_timeout
        self._max_retries = settings.webhook_max_retries if max_retries is None else max_retries

        self._client: httpx.AsyncClient | None = None
        self._logger = logger.bind(component="apps_script")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=False,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AppsScriptClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _check_configured(self) -> None:
        if not self.url:
            raise ConfigurationError("SHEETS_WEBHOOK_URL is not configured")
        if not self._secret:
            raise ConfigurationError("SHEETS_WEBHOOK_SECRET is not configured")

    async def _retry_or_raise(
        self, error: httpx.RequestError, action: Any, step: str, retry_count: int
    ) -> None:
        if retry_count >= self._max_retries:
            raise WebhookError(
                f"Webhook request failed: {error}",
                details={"action": action, "step": step},
            ) from error
        self._logger.warning(
            "webhook_retry",
            action=action,
            step=step,
            attempt=retry_count + 1,
            error=str(error),
        )
        await asyncio.sleep(2**retry_count)  # Exponential backoff

    async def _post(self, payload: dict[str, Any], retry_count: int = 0) -> httpx.Response:
        """POST the payload.

        Only failures to connect are retried. Once the request may have reached
        the script, re-sending it could append or delete a row twice.
        """
        client = await self._get_client()
        try:
            return await client.post(
                self.url,
                content=json.dumps(payload),
                headers={"Content-Type": "text/plain;charset=utf-8"},
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            await self._retry_or_raise(e, payload.get("action"), "post", retry_count)
            return await self._post(payload, retry_count + 1)
        except httpx.RequestError as e:
            raise WebhookError(
                f"Webhook request failed: {e}",
                details={"action": payload.get("action"), "step": "post"},
            ) from e

    async def _follow(self, location: str, action: Any, retry_count: int = 0) -> httpx.Response:
        """GET the rendered result; the script has already run, so this is safe to repeat."""
        client = await self._get_client()
        try:
            return await client.get(location)
        except httpx.RequestError as e:
            await self._retry_or_raise(e, action, "redirect", retry_count)
            return await self._follow(location, action, retry_count + 1)

    async def _send(self, payload: dict[str, Any]) -> httpx.Response:
        """POST the payload and follow at most one redirect with GET."""
        response = await self._post(payload)

        location = response.headers.get("location")
        if response.status_code in REDIRECT_STATUSES and location:
            self._logger.debug(
                "webhook_redirect_followed",
                action=payload.get("action"),
                status=response.status_code,
            )
            response = await self._follow(location, payload.get("action"))

        return response

    def _parse(self, response: httpx.Response, action: str | None) -> dict[str, Any]:
        """Validate the HTTP status and the ``{ok, ...}`` envelope."""
        if response.status_code >= 400:
            raise WebhookError(
                f"Webhook error: {response.status_code}",
                status_code=502,
                details={
                    "action": action,
                    "status": response.status_code,
                    "body": (response.text or "")[:200],
                },
            )

        try:
            result = response.json()
        except ValueError as e:
            raise WebhookError(
                "Webhook returned non-JSON response",
                details={"action": action, "body": (response.text or "")[:200]},
            ) from e

        if not isinstance(result, dict):
            raise WebhookError("Invalid webhook response format", details={"action": action})

        if result.get("ok") is False or (result.get("ok") is None and "error" in result):
            message = str(result.get("error") or "Unknown webhook error")
            if message == "Unauthorized":
                raise WebhookAuthError(
                    "Webhook rejected the secret", details={"action": action}
                )
            raise WebhookError(message, details={"action": action})

        return result

    async def call(self, action: str | None, **params: Any) -> dict[str, Any]:
        """Invoke a webhook action and return the parsed envelope.

        Args:
            action: Router action name, or None for a plain entry append.
            **params: Extra payload fields.

        Returns:
            The decoded JSON object (``ok`` is true).

        Raises:
            ConfigurationError: URL or secret missing.
            WebhookAuthError: The script rejected the secret.
            WebhookError: Transport, HTTP or envelope failure.
        """
        self._check_configured()

        payload: dict[str, Any] = {"secret": self._secret, **params}
        if action is not None:
            payload["action"] = action

        response = await self._send(payload)
        result = self._parse(response, action)

        self._logger.debug("webhook_called", action=action or "append", status=response.status_code)
        return result

    # === Inbox ===

    async def get_inbox(self) -> list[dict[str, Any]]:
        """Fetch every transaction row below the header."""
        result = await self.call("getInbox")
        data = result.get("data")
        return data if isinstance(data, list) else []

    async def delete_entry(self, row_number: int) -> dict[str, Any]:
        """Delete one transaction row by sheet row number."""
        return await self.call("deleteEntry", rowNumber=row_number)

    async def append_entry(self, entry: dict[str, Any]) -> dict[str, Any]:
        """Append a transaction row; the router detects it by day/month/year."""
        return await self.call(None, **entry)

    # === P&L ===

    async def get_pnl(self) -> dict[str, Any]:
        """Fetch the month/year P&L snapshot."""
        return await self.call("getPnL")

    async def get_property_person_details(self, period: str) -> dict[str, Any]:
        """Fetch per-property/person expense rows for a period."""
        return await self.call("getPropertyPersonDetails", period=check_period(period))

    async def get_overhead_expenses_details(self, period: str) -> dict[str, Any]:
        """Fetch per-category overhead rows for a period."""
        return await self.call("getOverheadExpensesDetails", period=check_period(period))

    async def list_named_ranges(self) -> dict[str, Any]:
        """List every named range with its sheet, A1 reference and value."""
        return await self.call("list_named_ranges")

    # === Balances ===

    async def balances_append(
        self, bank_name: str, balance: float, note: str = ""
    ) -> dict[str, Any]:
        """Record an uploaded bank or cash balance."""
        if not bank_name or not bank_name.strip():
            raise ValidationError("bankName is required")
        return await self.call(
            "balancesAppend", bankName=bank_name.strip(), balance=balance, note=note
        )

    async def balances_get_latest(self) -> dict[str, Any]:
        """Fetch the latest uploaded balance per bank."""
        return await self.call("balancesGetLatest")

    async def balance_get_summary(self, month: str = "ALL") -> dict[str, Any]:
        """Fetch the Balance Summary tab, optionally filtered to one month."""
        return await self.call("balanceGetSummary", month=check_month(month))

    async def accounts_sync(self, accounts: list[dict[str, Any]] | None = None) -> dict[str, Any]:
        """Push the bank account list to the Accounts tab."""
        params: dict[str, Any] = {}
        if accounts is not None:
            params["accounts"] = accounts
        return await self.call("accountsSync", **params)
