"""Inbox of submitted transaction entries."""

from dataclasses import dataclass
from typing import Any

import structlog

from bookmate.cache import TTLCache
from bookmate.clients.webhook import AppsScriptClient
from bookmate.config import get_settings
from bookmate.entries import HEADER_ROW, EntryOptions, InboxEntry, validate_entry
from bookmate.errors import ValidationError

logger = structlog.get_logger(__name__)

_CACHE_KEY = "inbox"


@dataclass
class InboxResult:
    entries: list[InboxEntry]
    cached: bool = False
    cache_age: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "data": [e.to_dict() for e in self.entries],
            "count": len(self.entries),
            "cached": self.cached,
            "cacheAge": round(self.cache_age, 3) if self.cache_age is not None else None,
        }


class InboxService:
    """Reads and mutates the inbox through the webhook.

    Reads are cached briefly; every write clears the cache so the next read
    reflects it.
    """

    def __init__(self, client: AppsScriptClient, ttl: float | None = None):
        self._client = client
        self._cache = TTLCache(ttl if ttl is not None else get_settings().inbox_cache_ttl)
        self._logger = logger.bind(component="inbox")

    def clear_cache(self) -> None:
        self._cache.clear()

    async def fetch(self, force: bool = False) -> InboxResult:
        """Return all entries, served from cache when fresh."""
        if not force:
            cached = self._cache.get(_CACHE_KEY)
            if cached is not None:
                age = self._cache.age(_CACHE_KEY)
                self._logger.debug("inbox_cache_hit", age=age)
                return InboxResult(entries=cached, cached=True, cache_age=age)

        rows = await self._client.get_inbox()
        entries = [InboxEntry.from_webhook(row) for row in rows if isinstance(row, dict)]
        self._cache.set(_CACHE_KEY, entries)

        self._logger.info("inbox_fetched", count=len(entries))
        return InboxResult(entries=entries)

    async def delete(self, row_number: int) -> dict[str, Any]:
        """Delete an entry by its sheet row number."""
        if row_number < HEADER_ROW:
            raise ValidationError(
                f"Invalid row number: {row_number}", details={"min_row": HEADER_ROW}
            )

        result = await self._client.delete_entry(row_number)
        self._cache.clear()

        self._logger.info("inbox_entry_deleted", row_number=row_number)
        return result

    async def submit(self, payload: dict[str, Any], options: EntryOptions) -> dict[str, Any]:
        """Validate an entry and append it to the sheet."""
        clean = validate_entry(payload, options)
        body = {**clean, "debit": float(clean["debit"]), "credit": float(clean["credit"])}

        result = await self._client.append_entry(body)
        self._cache.clear()

        self._logger.info(
            "inbox_entry_appended",
            row=result.get("row"),
            operation=clean["typeOfOperation"],
        )
        return result
