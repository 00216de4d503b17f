"""Exception hierarchy for BookMate."""

from typing import Any


class BookMateError(Exception):
    """Base exception for BookMate errors."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Render as the ``{ok: false, error}`` envelope used by the webhook."""
        body: dict[str, Any] = {"ok": False, "error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ConfigurationError(BookMateError):
    """Required URL, secret or credential is missing."""

    status_code = 500


class WebhookError(BookMateError):
    """Apps Script webhook failed or returned ``ok: false``."""

    status_code = 502


class WebhookAuthError(WebhookError):
    """Webhook rejected the shared secret."""

    status_code = 401


class SheetsError(BookMateError):
    """Google Sheets API call failed."""

    status_code = 502


class ValidationError(BookMateError):
    """Input payload failed validation."""

    status_code = 400


class NotFoundError(BookMateError):
    """Requested item does not exist."""

    status_code = 404


class ConflictError(BookMateError):
    """Item already exists."""

    status_code = 409


class ShareAccessError(BookMateError):
    """Shared report link is expired, exhausted or locked."""

    status_code = 403


class InsightsError(BookMateError):
    """AI insight generation failed."""

    status_code = 502


class QuotaExceededError(InsightsError):
    """The OpenAI account is out of quota or rate limited."""

    status_code = 429
