"""Transaction entries: the rows of the ``Data`` tab shown in the inbox."""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from bookmate.errors import ValidationError

# First data row of the Data tab; rows above hold the header block.
HEADER_ROW = 6

TRANSFER_OPERATION = "Transfer"
UNCATEGORIZED = "Uncategorized"

MONTH_ABBREVIATIONS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
MONTH_NUMBERS = {name: f"{i:02d}" for i, name in enumerate(MONTH_ABBREVIATIONS, start=1)}

REQUIRED_FIELDS = ("day", "month", "year", "typeOfOperation", "typeOfPayment", "detail")


def to_decimal(value: Any) -> Decimal:
    """Coerce a sheet cell to Decimal; blanks and junk become zero."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).replace(",", "").strip())
    except InvalidOperation:
        return Decimal("0")


def month_name(value: Any) -> str:
    """Convert a numeric month (``11`` or ``"11"``) to its abbreviation (``Nov``).

    Non-numeric and out-of-range values are returned unchanged.
    """
    text = str(value).strip()
    if text.isdigit() and 1 <= int(text) <= 12:
        return MONTH_ABBREVIATIONS[int(text) - 1]
    return text


def format_entry_date(day: Any, month: Any, year: Any) -> str:
    """Render ``DD/MM/YYYY`` from sheet cells; empty if any part is missing."""
    if not day or not month or not year:
        return ""
    month_text = str(month).strip()
    month_num = MONTH_NUMBERS.get(month_text, month_text)
    return f"{str(day).strip().zfill(2)}/{month_num}/{str(year).strip()}"


@dataclass
class InboxEntry:
    """One transaction row."""

    row_number: int
    day: str
    month: str
    year: str
    property: str
    type_of_operation: str
    type_of_payment: str
    detail: str
    ref: str = ""
    debit: Decimal = field(default_factory=lambda: Decimal("0"))
    credit: Decimal = field(default_factory=lambda: Decimal("0"))
    status: str = "sent"

    @property
    def id(self) -> str:
        return f"row-{self.row_number}"

    @property
    def date(self) -> str:
        return format_entry_date(self.day, self.month, self.year)

    @property
    def amount(self) -> Decimal:
        """Debit when present, otherwise credit."""
        return self.debit if self.debit else self.credit

    @classmethod
    def from_webhook(cls, data: dict[str, Any]) -> "InboxEntry":
        """Build from a ``getInbox`` item."""
        return cls(
            row_number=int(data["rowNumber"]),
            day=str(data.get("day") or ""),
            month=str(data.get("month") or ""),
            year=str(data.get("year") or ""),
            property=str(data.get("property") or ""),
            type_of_operation=str(data.get("typeOfOperation") or ""),
            type_of_payment=str(data.get("typeOfPayment") or ""),
            detail=str(data.get("detail") or ""),
            ref=str(data.get("ref") or ""),
            debit=to_decimal(data.get("debit")),
            credit=to_decimal(data.get("credit")),
            status=str(data.get("status") or "sent"),
        )

    @classmethod
    def from_row(cls, row_number: int, row: list[Any]) -> "InboxEntry | None":
        """Build from a raw ``A:K`` row; None for blank rows.

        Column A is unused; B..K hold day, month, year, property, operation,
        payment, detail, ref, debit and credit.
        """
        cells = list(row) + [""] * (11 - len(row))
        if not cells[1] and not cells[2] and not cells[3] and not cells[7]:
            return None
        return cls(
            row_number=row_number,
            day=str(cells[1] or ""),
            month=str(cells[2] or ""),
            year=str(cells[3] or ""),
            property=str(cells[4] or ""),
            type_of_operation=str(cells[5] or ""),
            type_of_payment=str(cells[6] or ""),
            detail=str(cells[7] or ""),
            ref=str(cells[8] or ""),
            debit=to_decimal(cells[9]),
            credit=to_decimal(cells[10]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "rowNumber": self.row_number,
            "id": self.id,
            "day": self.day,
            "month": self.month,
            "year": self.year,
            "property": self.property,
            "typeOfOperation": self.type_of_operation,
            "typeOfPayment": self.type_of_payment,
            "detail": self.detail,
            "ref": self.ref,
            "debit": float(self.debit),
            "credit": float(self.credit),
            "date": self.date,
            "amount": float(self.amount),
            "status": self.status,
        }


def parse_inbox_rows(rows: list[list[Any]], first_row: int = HEADER_ROW) -> list[InboxEntry]:
    """Convert ``Data!A{first_row}:K`` values into entries, skipping blanks."""
    entries = []
    for offset, row in enumerate(rows):
        entry = InboxEntry.from_row(first_row + offset, row)
        if entry is not None:
            entries.append(entry)
    return entries


@dataclass
class EntryOptions:
    """Live dropdown values an entry must come from."""

    properties: list[str] = field(default_factory=list)
    type_of_operation: list[str] = field(default_factory=list)
    type_of_payment: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "properties": self.properties,
            "typeOfOperation": self.type_of_operation,
            "typeOfPayment": self.type_of_payment,
        }


def _parse_amount(payload: dict[str, Any], name: str) -> Decimal:
    raw = payload.get(name)
    if raw is None or raw == "":
        return Decimal("0")
    try:
        value = Decimal(str(raw).replace(",", "").strip())
    except InvalidOperation as e:
        raise ValidationError(f"{name.capitalize()} must be a valid number", details={name: raw}) from e
    if not value.is_finite():
        raise ValidationError(f"{name.capitalize()} must be a valid number", details={name: raw})
    if value < 0:
        raise ValidationError(f"{name.capitalize()} cannot be negative", details={name: raw})
    return value


def validate_entry(payload: dict[str, Any], options: EntryOptions) -> dict[str, Any]:
    """Validate and sanitise an entry before it is appended.

    Transfers (``typeOfOperation == "Transfer"``) may omit the property but
    must carry a ``ref`` shared by both legs, a detail mentioning "transfer
    to" or "transfer from", and exactly one of debit or credit.

    Args:
        payload: Raw entry fields keyed as in the sheet API.
        options: Live dropdown values.

    Returns:
        Trimmed payload with numeric ``debit``/``credit`` and text month.

    Raises:
        ValidationError: On the first rule the payload breaks.
    """
    is_transfer = str(payload.get("typeOfOperation") or "").strip() == TRANSFER_OPERATION

    missing = [name for name in REQUIRED_FIELDS if not str(payload.get(name) or "").strip()]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}", details={"missing": missing}
        )

    clean = {
        name: str(payload.get(name) or "").strip()
        for name in ("day", "month", "year", "property", "typeOfOperation", "typeOfPayment", "detail", "ref")
    }

    if not is_transfer and not clean["property"]:
        raise ValidationError("Property is required for revenue and expense entries")
    if is_transfer and not clean["ref"]:
        raise ValidationError(
            "Ref is required for transfer entries. Both transfer rows must share the same ref value."
        )
    if clean["typeOfOperation"] == UNCATEGORIZED:
        raise ValidationError(
            'Please select a valid category. "Uncategorized" entries cannot be sent to the sheet.'
        )

    if not is_transfer and clean["property"] not in options.properties:
        raise ValidationError(
            f'Invalid property "{clean["property"]}". Please select from: {", ".join(options.properties)}'
        )
    if clean["typeOfOperation"] not in options.type_of_operation:
        raise ValidationError(f'Invalid operation type "{clean["typeOfOperation"]}"')
    if clean["typeOfPayment"] not in options.type_of_payment:
        raise ValidationError(
            f'Invalid payment type "{clean["typeOfPayment"]}". '
            f'Please select from: {", ".join(options.type_of_payment)}'
        )

    debit = _parse_amount(payload, "debit")
    credit = _parse_amount(payload, "credit")

    if is_transfer:
        detail_lower = clean["detail"].lower()
        if "transfer to" not in detail_lower and "transfer from" not in detail_lower:
            raise ValidationError(
                'Transfer entries must have detail containing "Transfer to" or "Transfer from"'
            )
        if debit > 0 and credit > 0:
            raise ValidationError("Transfer entries must have either debit OR credit, not both")
        if debit == 0 and credit == 0:
            raise ValidationError("Transfer entries must have either a debit or credit value")

    clean["month"] = month_name(clean["month"])
    clean["debit"] = debit
    clean["credit"] = credit
    return clean
