"""Category lists kept in columns of the ``Data`` tab."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from bookmate.clients.sheets import SheetsClient, a1_range
from bookmate.entries import EntryOptions
from bookmate.errors import ConflictError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

DATA_SHEET = "Data"

ACTIONS = ("add", "edit", "delete")


@dataclass(frozen=True)
class CategoryColumn:
    kind: str
    column: str
    start_row: int
    label: str

    def range(self, end_row: int | None = None) -> str:
        return a1_range(DATA_SHEET, self.column, self.start_row, end_row)


CATEGORY_COLUMNS: dict[str, CategoryColumn] = {
    "revenue": CategoryColumn("revenue", "A", 2, "Revenue item"),
    # Rows above B30 hold the summary block of the Data tab.
    "overhead": CategoryColumn("overhead", "B", 30, "Expense category"),
    "property": CategoryColumn("property", "C", 2, "Property"),
    "payment": CategoryColumn("payment", "D", 2, "Payment type"),
}

KIND_ALIASES = {
    "revenues": "revenue",
    "expense": "overhead",
    "expenses": "overhead",
    "overheads": "overhead",
    "properties": "property",
    "payments": "payment",
}


def resolve_kind(kind: str) -> CategoryColumn:
    """Look up a category column by kind or plural alias."""
    key = KIND_ALIASES.get(kind.strip().lower(), kind.strip().lower())
    if key not in CATEGORY_COLUMNS:
        raise ValidationError(
            f"Unknown category kind: {kind}", details={"valid": sorted(CATEGORY_COLUMNS)}
        )
    return CATEGORY_COLUMNS[key]


def clean_values(rows: list[list[Any]]) -> list[str]:
    """Flatten a single-column range, dropping blank cells."""
    return [str(row[0]).strip() for row in rows if row and str(row[0]).strip()]


def _is_duplicate(items: list[str], value: str, skip: int | None = None) -> bool:
    # Names compare case-insensitively.
    folded = value.casefold()
    return any(item.casefold() == folded for i, item in enumerate(items) if i != skip)


def apply_action(
    items: list[str],
    action: str,
    label: str = "Category",
    new_value: str | None = None,
    old_value: str | None = None,
    index: int | None = None,
) -> list[str]:
    """Return a new list with ``action`` applied.

    Edits and deletes address an item by ``index`` and must name its current
    value in ``old_value``; a mismatch means the list changed underneath the
    caller.

    Raises:
        ValidationError: Unknown action or missing arguments.
        NotFoundError: ``index`` is outside the list.
        ConflictError: Duplicate name, or the item at ``index`` has changed.
    """
    if action not in ACTIONS:
        raise ValidationError(f"Invalid action: {action}", details={"valid": list(ACTIONS)})

    updated = list(items)
    value = (new_value or "").strip()

    if action == "add":
        if not value:
            raise ValidationError(f"{label} name is required")
        if _is_duplicate(updated, value):
            raise ConflictError(f"{label} already exists", details={"value": value})
        updated.append(value)
        return updated

    if index is None:
        raise ValidationError("Index is required")
    if not 0 <= index < len(updated):
        raise NotFoundError(f"{label} not found at index {index}", details={"count": len(updated)})
    if old_value is not None and updated[index] != old_value:
        raise ConflictError(
            f"{label} has changed, please refresh",
            details={"expected": old_value, "actual": updated[index]},
        )

    if action == "edit":
        if not value:
            raise ValidationError("Index and new value are required")
        if _is_duplicate(updated, value, skip=index):
            raise ConflictError(f"{label} already exists", details={"value": value})
        updated[index] = value
    else:
        del updated[index]
    return updated


class CategoryManager:
    """Reads and edits the category columns of the Data tab."""

    def __init__(self, sheets: SheetsClient):
        self._sheets = sheets
        self._logger = logger.bind(component="categories")

    async def list(self, kind: str) -> list[str]:
        column = resolve_kind(kind)
        rows = await self._sheets.get_values(column.range())
        return clean_values(rows)

    async def list_all(self) -> dict[str, list[str]]:
        """Every category list in one batch read, keyed by kind."""
        columns = list(CATEGORY_COLUMNS.values())
        results = await self._sheets.batch_get([c.range() for c in columns])
        return {c.kind: clean_values(rows) for c, rows in zip(columns, results, strict=False)}

    async def options(self) -> EntryOptions:
        """Dropdown values for entry validation.

        Operation types are revenue items followed by expense categories.
        """
        lists = await self.list_all()
        return EntryOptions(
            properties=lists.get("property", []),
            type_of_operation=lists.get("revenue", []) + lists.get("overhead", []),
            type_of_payment=lists.get("payment", []),
        )

    async def apply(
        self,
        kind: str,
        action: str,
        new_value: str | None = None,
        old_value: str | None = None,
        index: int | None = None,
    ) -> list[str]:
        """Apply an add, edit or delete and write the column back."""
        column = resolve_kind(kind)
        current = await self.list(column.kind)
        updated = apply_action(current, action, column.label, new_value, old_value, index)

        # Clear the whole column; blank gaps mean the old extent can exceed len(current).
        await self._sheets.clear_values(column.range())
        if updated:
            await self._sheets.update_values(
                column.range(column.start_row + len(updated) - 1),
                [[item] for item in updated],
                input_option="RAW",
            )

        self._logger.info(
            "category_updated",
            kind=column.kind,
            action=action,
            before=len(current),
            after=len(updated),
        )
        return updated
