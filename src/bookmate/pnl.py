"""Profit & Loss aggregation.

Three sources feed the P&L views:

* named ranges on the ``P&L (DO NOT EDIT)`` tab, resolved by fuzzy name
  matching into a month/year snapshot;
* fixed row blocks on the same tab for the property/person and overhead
  breakdowns;
* the pivoted ``Lists`` tab, which yields per-category monthly figures.
"""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import structlog

from bookmate.cache import TTLCache
from bookmate.clients.sheets import SheetsClient, col_index_to_letter, quote_sheet
from bookmate.clients.webhook import AppsScriptClient, check_period
from bookmate.config import get_settings
from bookmate.entries import to_decimal
from bookmate.errors import SheetsError, ValidationError, WebhookError

logger = structlog.get_logger(__name__)

PNL_SHEET = "P&L (DO NOT EDIT)"
LISTS_SHEET = "Lists"
DATA_SHEET = "Data"

MONTH_HEADER_ROW = 4
YEAR_TOTAL_COLUMN = "Q"
NAMED_RANGE_MONTH_COLUMN = 14  # O
NAMED_RANGE_YEAR_COLUMN = 16  # Q

# Header labels used on the P&L tab, indexed by month number - 1.
PNL_MONTH_LABELS = ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEPT", "OCT", "NOV", "DEC")

LEVENSHTEIN_MAX_DISTANCE = 5

METRIC_PATTERNS: dict[str, list[str]] = {
    "monthRevenue": [
        "Month_Total_Revenue", "MonthRevenue", "Month_Revenue", "Monthly_Revenue",
        "month_total_revenue", "monthrevenue",
    ],
    "yearRevenue": [
        "Year_Total_Revenue", "YearRevenue", "Year_Revenue", "Yearly_Revenue",
        "year_total_revenue", "yearrevenue", "YTD_Revenue",
    ],
    "monthOverheads": [
        "Month_Total_Overheads", "MonthOverheads", "Month_Overheads", "Monthly_Overheads",
        "month_total_overheads", "monthoverheads", "Month_Expenses", "MonthExpenses",
        "Monthly_Expenses",
    ],
    "yearOverheads": [
        "Year_Total_Overheads", "YearOverheads", "Year_Overheads", "Yearly_Overheads",
        "year_total_overheads", "yearoverheads", "Year_Expenses", "YearExpenses",
        "Yearly_Expenses", "YTD_Expenses",
    ],
    "monthPropertyPerson": [
        "Month_Property_Person_Expense", "MonthPropertyPerson", "Month_Property_Person",
        "Monthly_Property_Person", "month_property_person_expense", "monthpropertyperson",
        "Month_Property_Expense", "MonthPropertyExpense",
    ],
    "yearPropertyPerson": [
        "Year_Property_Person_Expense", "YearPropertyPerson", "Year_Property_Person",
        "Yearly_Property_Person", "year_property_person_expense", "yearpropertyperson",
        "Year_Property_Expense", "YearPropertyExpense", "YTD_Property_Person",
    ],
    "monthGOP": [
        "Month_GOP", "MonthGOP", "Month_Profit", "Monthly_Profit", "month_gop", "monthgop",
        "Month_Gross_Operating_Profit", "MonthGrossOperatingProfit",
    ],
    "yearGOP": [
        "Year_GOP", "YearGOP", "Year_Profit", "Yearly_Profit", "year_gop", "yeargop",
        "Year_Gross_Operating_Profit", "YearGrossOperatingProfit", "YTD_Profit",
    ],
    "monthEBITDA": [
        "Month_EBITDA_Margin", "MonthEBITDA", "Month_EBITDA", "Monthly_EBITDA",
        "month_ebitda_margin", "monthebitda", "MonthEBITDAMargin",
    ],
    "yearEBITDA": [
        "Year_EBITDA_Margin", "YearEBITDA", "Year_EBITDA", "Yearly_EBITDA",
        "year_ebitda_margin", "yearebitda", "YearEBITDAMargin", "YTD_EBITDA",
    ],
}

METRIC_LABELS = {
    "monthRevenue": "Month Revenue",
    "yearRevenue": "Year Revenue",
    "monthOverheads": "Month Overheads",
    "yearOverheads": "Year Overheads",
    "monthPropertyPerson": "Month Property/Person",
    "yearPropertyPerson": "Year Property/Person",
    "monthGOP": "Month GOP",
    "yearGOP": "Year GOP",
    "monthEBITDA": "Month EBITDA",
    "yearEBITDA": "Year EBITDA",
}

# Metrics whose absence is reported; EBITDA is computed instead.
REQUIRED_METRICS = (
    "monthRevenue", "yearRevenue", "monthOverheads", "yearOverheads",
    "monthPropertyPerson", "yearPropertyPerson", "monthGOP", "yearGOP",
)


# === Named range resolution ===


def normalize_range_name(name: str) -> str:
    """Lowercase and drop underscores, whitespace and dashes."""
    return "".join(ch for ch in name.lower() if ch not in "_-" and not ch.isspace())


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def _numeric(value: Any) -> Decimal:
    if isinstance(value, dict):
        value = value.get("value")
    return to_decimal(value)


@dataclass
class RangeMatch:
    """Outcome of resolving one metric against the named ranges."""

    value: Decimal | None
    matched_name: str | None
    match_type: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.matched_name, "type": self.match_type}


def find_named_range_value(range_map: dict[str, Any], patterns: list[str]) -> RangeMatch:
    """Resolve a metric from ``range_map`` using progressively looser matching.

    Strategies in order: exact name, normalized equality, normalized
    containment (either direction), then the closest name within
    ``LEVENSHTEIN_MAX_DISTANCE`` edits. Blank cells count as zero.
    """
    for pattern in patterns:
        if pattern in range_map:
            return RangeMatch(_numeric(range_map[pattern]), pattern, "exact")

    normalized_patterns = [normalize_range_name(p) for p in patterns]
    normalized_names = {name: normalize_range_name(name) for name in range_map}

    for name, normalized in normalized_names.items():
        if normalized in normalized_patterns:
            return RangeMatch(_numeric(range_map[name]), name, "normalized")

    for name, normalized in normalized_names.items():
        for pattern in normalized_patterns:
            if pattern in normalized or normalized in pattern:
                return RangeMatch(_numeric(range_map[name]), name, "partial")

    closest: str | None = None
    closest_distance = LEVENSHTEIN_MAX_DISTANCE
    for name, normalized in normalized_names.items():
        for pattern in normalized_patterns:
            distance = levenshtein(normalized, pattern)
            if distance < closest_distance:
                closest, closest_distance = name, distance

    if closest is not None:
        return RangeMatch(_numeric(range_map[closest]), closest, "levenshtein")

    return RangeMatch(None, None, "none")


def range_map_from_listing(ranges: list[dict[str, Any]]) -> dict[str, Any]:
    """Turn a ``list_named_ranges`` listing into a name -> value map."""
    return {r["name"]: r.get("value") for r in ranges if r.get("name")}


# === Snapshot ===


@dataclass
class PnLPeriod:
    revenue: Decimal = Decimal("0")
    overheads: Decimal = Decimal("0")
    property_person_expense: Decimal = Decimal("0")
    gop: Decimal = Decimal("0")
    ebitda_margin: Decimal = Decimal("0")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PnLPeriod":
        return cls(
            revenue=to_decimal(data.get("revenue")),
            overheads=to_decimal(data.get("overheads")),
            property_person_expense=to_decimal(data.get("propertyPersonExpense")),
            gop=to_decimal(data.get("gop")),
            ebitda_margin=to_decimal(data.get("ebitdaMargin")),
        )

    @property
    def total_expenses(self) -> Decimal:
        return self.overheads + self.property_person_expense

    def to_dict(self) -> dict[str, float]:
        return {
            "revenue": float(self.revenue),
            "overheads": float(self.overheads),
            "propertyPersonExpense": float(self.property_person_expense),
            "gop": float(self.gop),
            "ebitdaMargin": float(self.ebitda_margin),
        }


@dataclass
class PnLSnapshot:
    month: PnLPeriod
    year: PnLPeriod
    warnings: list[str] = field(default_factory=list)
    computed_fallbacks: list[str] = field(default_factory=list)
    match_info: dict[str, Any] = field(default_factory=dict)
    updated_at: str = ""
    cached: bool = False

    @classmethod
    def from_webhook(cls, result: dict[str, Any]) -> "PnLSnapshot":
        """Parse a ``getPnL`` envelope.

        Raises:
            WebhookError: If the month or year block is missing.
        """
        data = result.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("month"), dict) or not isinstance(
            data.get("year"), dict
        ):
            raise WebhookError("Invalid P&L response: missing month/year data")
        return cls(
            month=PnLPeriod.from_dict(data["month"]),
            year=PnLPeriod.from_dict(data["year"]),
            warnings=list(result.get("warnings") or []),
            computed_fallbacks=list(result.get("computedFallbacks") or []),
            match_info=dict(result.get("matchInfo") or {}),
            updated_at=str(data.get("updatedAt") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "data": {
                "month": self.month.to_dict(),
                "year": self.year.to_dict(),
                "updatedAt": self.updated_at,
            },
            "warnings": self.warnings,
            "computedFallbacks": self.computed_fallbacks,
            "matchInfo": self.match_info,
            "cached": self.cached,
        }


def _ebitda_margin(
    prefix: str,
    margin: Decimal | None,
    revenue: Decimal | None,
    gop: Decimal | None,
    warnings: list[str],
    fallbacks: list[str],
) -> Decimal:
    if margin is not None and margin != 0:
        return margin
    if revenue and gop is not None:
        computed = gop / revenue * 100
        fallbacks.append(f"{prefix} EBITDA Margin (computed: {computed:.2f}%)")
        return computed
    warnings.append(f"Cannot compute {prefix} EBITDA (revenue or GOP missing)")
    return Decimal("0")


def build_pnl_snapshot(range_map: dict[str, Any]) -> PnLSnapshot:
    """Resolve every metric from named ranges into a month/year snapshot."""
    matches = {
        metric: find_named_range_value(range_map, patterns)
        for metric, patterns in METRIC_PATTERNS.items()
    }

    warnings = [
        f"Missing: {METRIC_LABELS[metric]} (tried: {', '.join(METRIC_PATTERNS[metric])})"
        for metric in REQUIRED_METRICS
        if matches[metric].value is None
    ]
    fallbacks: list[str] = []

    def value(metric: str) -> Decimal:
        return matches[metric].value or Decimal("0")

    month_margin = _ebitda_margin(
        "Month", matches["monthEBITDA"].value, matches["monthRevenue"].value,
        matches["monthGOP"].value, warnings, fallbacks,
    )
    year_margin = _ebitda_margin(
        "Year", matches["yearEBITDA"].value, matches["yearRevenue"].value,
        matches["yearGOP"].value, warnings, fallbacks,
    )

    return PnLSnapshot(
        month=PnLPeriod(
            revenue=value("monthRevenue"),
            overheads=value("monthOverheads"),
            property_person_expense=value("monthPropertyPerson"),
            gop=value("monthGOP"),
            ebitda_margin=month_margin,
        ),
        year=PnLPeriod(
            revenue=value("yearRevenue"),
            overheads=value("yearOverheads"),
            property_person_expense=value("yearPropertyPerson"),
            gop=value("yearGOP"),
            ebitda_margin=year_margin,
        ),
        warnings=warnings,
        computed_fallbacks=fallbacks,
        match_info={
            metric: match.to_dict()
            for metric, match in matches.items()
            if metric in REQUIRED_METRICS
        },
        updated_at=datetime.now(UTC).isoformat(),
    )


# === Breakdowns ===


@dataclass
class BreakdownSpec:
    start_row: int
    end_row: int
    label_prefix: str | None = None


BREAKDOWNS = {
    "property_person": BreakdownSpec(start_row=14, end_row=20),
    "overhead": BreakdownSpec(start_row=31, end_row=58, label_prefix="EXP -"),
}


@dataclass
class ExpenseItem:
    name: str
    expense: Decimal
    percentage: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "expense": float(self.expense), "percentage": self.percentage}


@dataclass
class ExpenseBreakdown:
    period: str
    items: list[ExpenseItem]
    total_expense: Decimal
    column: str

    @classmethod
    def from_webhook(cls, result: dict[str, Any], period: str) -> "ExpenseBreakdown":
        items = [
            ExpenseItem(
                name=str(item.get("name", "")),
                expense=to_decimal(item.get("expense")),
                percentage=float(item.get("percentage") or 0),
            )
            for item in result.get("data") or []
            if isinstance(item, dict)
        ]
        return cls(
            period=str(result.get("period") or period),
            items=items,
            total_expense=to_decimal(result.get("totalExpense")),
            column=str(result.get("column") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "data": [item.to_dict() for item in self.items],
            "period": self.period,
            "totalExpense": float(self.total_expense),
            "column": self.column,
            "count": len(self.items),
        }


def current_month_label(today: date) -> str:
    return PNL_MONTH_LABELS[today.month - 1]


def find_month_column(header_row: list[Any], today: date) -> str:
    """Column letter of the current month in the P&L header row.

    Raises:
        SheetsError: If the current month is not in the header.
    """
    label = current_month_label(today)
    for index, cell in enumerate(header_row):
        if str(cell or "").strip().upper() == label:
            return col_index_to_letter(index)
    raise SheetsError("Could not find current month column", status_code=500, details={"month": label})


def build_breakdown(
    names: list[Any], values: list[Any], period: str, column: str, label_prefix: str | None = None
) -> ExpenseBreakdown:
    """Pair labels with values, keep non-blank (and prefixed) rows, rank by expense."""
    items = []
    for index, raw_name in enumerate(names):
        name = str(raw_name or "").strip()
        if not name:
            continue
        if label_prefix is not None and not name.startswith(label_prefix):
            continue
        raw_value = values[index] if index < len(values) else 0
        items.append(ExpenseItem(name=name, expense=to_decimal(raw_value)))

    total = sum((item.expense for item in items), Decimal("0"))
    for item in items:
        item.percentage = float(item.expense / total * 100) if total > 0 else 0.0
    items.sort(key=lambda item: item.expense, reverse=True)

    return ExpenseBreakdown(period=period, items=items, total_expense=total, column=column)


# === Live P&L from the Lists tab ===

LIVE_BLOCKS = {
    # kind: (Data column, Lists category/month/value columns)
    "revenue": ("A", ("W", "X", "Y")),
    "overhead": ("B", ("H", "I", "J")),
    "property": ("C", ("M", "N", "O")),
    "payment": ("D", ("R", "S", "T")),
}


@dataclass
class CategoryRow:
    name: str
    monthly: list[Decimal]

    @property
    def year_total(self) -> Decimal:
        return sum(self.monthly, Decimal("0"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "monthly": [float(v) for v in self.monthly],
            "yearTotal": float(self.year_total),
        }


def _flatten(rows: list[list[Any]]) -> list[Any]:
    return [cell for row in rows for cell in (row or [""])]


def aggregate_block(
    categories: list[str],
    cat_col: list[Any],
    month_col: list[Any],
    value_col: list[Any],
    month_index: dict[str, int],
) -> list[CategoryRow]:
    """Sum (category, month, value) triples into 12-month rows per category."""
    rows = {name: [Decimal("0")] * 12 for name in categories}
    for i, raw_cat in enumerate(cat_col):
        name = str(raw_cat or "").strip()
        month = str(month_col[i] if i < len(month_col) else "").strip().upper()
        if name not in rows or month not in month_index:
            continue
        value = value_col[i] if i < len(value_col) else 0
        rows[name][month_index[month]] += to_decimal(value)
    return [CategoryRow(name=name, monthly=rows[name]) for name in categories]


def sum_rows(rows: list[CategoryRow]) -> CategoryRow:
    monthly = [Decimal("0")] * 12
    for row in rows:
        for i, value in enumerate(row.monthly):
            monthly[i] += value
    return CategoryRow(name="total", monthly=monthly)


@dataclass
class LivePnL:
    months: list[str]
    blocks: dict[str, list[CategoryRow]]
    totals: dict[str, CategoryRow]
    updated_at: str
    cached: bool = False
    cache_age: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "months": self.months,
            "blocks": {k: [row.to_dict() for row in rows] for k, rows in self.blocks.items()},
            "totals": {
                k: {"monthly": [float(v) for v in t.monthly], "yearTotal": float(t.year_total)}
                for k, t in self.totals.items()
            },
            "updatedAt": self.updated_at,
            "cached": self.cached,
            "cacheAge": int(self.cache_age) if self.cache_age is not None else None,
        }


def build_live_pnl(value_ranges: list[list[list[Any]]]) -> LivePnL:
    """Assemble the live P&L from the batch read issued by ``PnLSheetReader.live``.

    ``value_ranges`` holds, in order: the four ``Data`` category columns,
    the twelve ``Lists`` block columns (category, month, value for each
    block in ``LIVE_BLOCKS`` order) and the P&L month header row.
    """
    kinds = list(LIVE_BLOCKS)
    categories = {
        kind: [str(c).strip() for c in _flatten(value_ranges[i]) if str(c).strip()]
        for i, kind in enumerate(kinds)
    }

    header = _flatten(value_ranges[4 + 3 * len(kinds)])
    months = [str(m) for m in header[4:16]]
    month_index = {m.strip().upper(): i for i, m in enumerate(months)}

    blocks: dict[str, list[CategoryRow]] = {}
    for i, kind in enumerate(kinds):
        base = 4 + 3 * i
        blocks[kind] = aggregate_block(
            categories[kind],
            _flatten(value_ranges[base]),
            _flatten(value_ranges[base + 1]),
            _flatten(value_ranges[base + 2]),
            month_index,
        )

    totals = {kind: sum_rows(rows) for kind, rows in blocks.items()}
    totals["grand"] = sum_rows(list(totals.values()))

    return LivePnL(
        months=months,
        blocks=blocks,
        totals=totals,
        updated_at=datetime.now(UTC).isoformat(),
    )


# === Named range structure audit ===


@dataclass
class NamedRangeIssue:
    name: str
    action: str  # create | update
    expected_cell: str
    current_cell: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "action": self.action,
            "expectedCell": self.expected_cell,
            "currentCell": self.current_cell,
        }


@dataclass
class StructureAudit:
    metric_rows: dict[str, int | None]
    property_rows: tuple[int, int] | None
    overhead_rows: tuple[int, int] | None
    issues: list[NamedRangeIssue]

    @property
    def ok(self) -> bool:
        return not self.issues and all(
            self.metric_rows.get(k) for k in ("totalRevenue", "gop", "ebitdaMargin")
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "metricRows": self.metric_rows,
            "propertyRows": list(self.property_rows) if self.property_rows else None,
            "overheadRows": list(self.overhead_rows) if self.overhead_rows else None,
            "issues": [issue.to_dict() for issue in self.issues],
        }


def scan_pnl_labels(labels: list[Any]) -> dict[str, Any]:
    """Find key metric rows and section bounds in P&L column A."""
    rows: dict[str, int | None] = {
        "totalRevenue": None,
        "totalOverhead": None,
        "gop": None,
        "ebitdaMargin": None,
        "propertyPerson": None,
    }
    property_start = property_end = None
    overhead_start = overhead_end = None
    in_property = False

    for index, raw in enumerate(labels):
        row_number = index + 1
        text = str(raw or "").strip()
        upper = text.upper()

        if upper == "TOTAL REVENUE":
            rows["totalRevenue"] = row_number
        if "TOTAL OVERHEAD" in upper and "EXPENSE" in upper:
            rows["totalOverhead"] = row_number
        if "GROSS OPERATING PROFIT" in upper or ("GOP" in upper and "EBITDA" in upper):
            rows["gop"] = row_number
        if "EBITDA" in upper and "MARGIN" in upper:
            rows["ebitdaMargin"] = row_number
        if "TOTAL PROPERTY" in upper and "PERSON" in upper:
            rows["propertyPerson"] = row_number

        if "PROPERTY OR PERSON" in upper and "TOTAL" not in upper:
            in_property = True
        elif in_property:
            if "TOTAL PROPERTY" in upper:
                in_property = False
            elif text:
                property_start = property_start or row_number
                property_end = row_number

        if text.startswith("EXP -"):
            overhead_start = overhead_start or row_number
            overhead_end = row_number

    return {
        "rows": rows,
        "property": (property_start, property_end) if property_start else None,
        "overhead": (overhead_start, overhead_end) if overhead_start else None,
    }


def audit_named_ranges(labels: list[Any], named_ranges: list[dict[str, Any]]) -> StructureAudit:
    """Compare named ranges on the P&L tab with the rows their labels sit on.

    Args:
        labels: Column A of the P&L tab, top to bottom.
        named_ranges: ``{name, sheet, a1}`` entries from the Sheets API.
    """
    scan = scan_pnl_labels(labels)
    rows = scan["rows"]
    current = {r["name"]: r.get("a1") for r in named_ranges if r.get("sheet") == PNL_SHEET}

    expected: list[tuple[str, int]] = []
    for metric, prefix in (
        ("totalRevenue", "Total_Revenue"),
        ("totalOverhead", "Total_Overheads"),
        ("gop", "GOP"),
        ("ebitdaMargin", "EBITDA_Margin"),
        ("propertyPerson", "Property_Person_Expense"),
    ):
        row = rows[metric]
        if row:
            expected.append((f"Month_{prefix}", row))
            expected.append((f"Year_{prefix}", row))

    issues = []
    for name, row in expected:
        col = NAMED_RANGE_MONTH_COLUMN if name.startswith("Month_") else NAMED_RANGE_YEAR_COLUMN
        cell = f"{col_index_to_letter(col)}{row}"
        if name not in current:
            issues.append(NamedRangeIssue(name=name, action="create", expected_cell=cell))
        elif current[name] != cell:
            issues.append(
                NamedRangeIssue(
                    name=name, action="update", expected_cell=cell, current_cell=current[name]
                )
            )

    return StructureAudit(
        metric_rows=rows,
        property_rows=scan["property"],
        overhead_rows=scan["overhead"],
        issues=issues,
    )


# === Services ===


class PnLService:
    """P&L snapshot and breakdowns via the webhook."""

    def __init__(self, client: AppsScriptClient, ttl: float | None = None):
        self._client = client
        self._cache = TTLCache(ttl if ttl is not None else get_settings().pnl_cache_ttl)
        self._logger = logger.bind(component="pnl")

    def clear_cache(self) -> None:
        self._cache.clear()

    async def get_snapshot(self, force: bool = False) -> PnLSnapshot:
        if not force:
            cached = self._cache.get("pnl")
            if cached is not None:
                return replace(cached, cached=True)

        result = await self._client.get_pnl()
        snapshot = PnLSnapshot.from_webhook(result)

        if snapshot.warnings:
            self._logger.warning("pnl_warnings", warnings=snapshot.warnings)
        if snapshot.computed_fallbacks:
            self._logger.info("pnl_computed_fallbacks", fallbacks=snapshot.computed_fallbacks)

        self._cache.set("pnl", snapshot)
        return snapshot

    async def get_breakdown(self, kind: str, period: str) -> ExpenseBreakdown:
        """Fetch the property/person or overhead breakdown for a period."""
        check_period(period)
        if kind == "property_person":
            result = await self._client.get_property_person_details(period)
        elif kind == "overhead":
            result = await self._client.get_overhead_expenses_details(period)
        else:
            raise ValidationError(f"Unknown breakdown: {kind!r}", details={"kind": kind})
        return ExpenseBreakdown.from_webhook(result, period)

    async def named_ranges(self) -> list[dict[str, Any]]:
        result = await self._client.list_named_ranges()
        ranges = result.get("ranges")
        return ranges if isinstance(ranges, list) else []

    async def snapshot_from_named_ranges(self) -> PnLSnapshot:
        """Rebuild the snapshot locally from the raw named-range listing."""
        return build_pnl_snapshot(range_map_from_listing(await self.named_ranges()))


class PnLSheetReader:
    """P&L views computed from direct Sheets API reads."""

    def __init__(
        self,
        sheets: SheetsClient,
        ttl: float | None = None,
        today: Callable[[], date] = date.today,
    ):
        self._sheets = sheets
        self._cache = TTLCache(ttl if ttl is not None else get_settings().sheet_meta_cache_ttl)
        self._today = today
        self._logger = logger.bind(component="pnl_sheets")

    def clear_cache(self) -> None:
        self._cache.clear()

    async def live(self, force: bool = False) -> LivePnL:
        """Per-category monthly P&L from the ``Lists`` tab."""
        if not force:
            cached = self._cache.get("live")
            if cached is not None:
                return replace(cached, cached=True, cache_age=self._cache.age("live"))

        ranges = [f"{DATA_SHEET}!{col}2:{col}" for col, _ in LIVE_BLOCKS.values()]
        for _, columns in LIVE_BLOCKS.values():
            ranges.extend(f"{LISTS_SHEET}!{c}:{c}" for c in columns)
        ranges.append(f"{quote_sheet(PNL_SHEET)}!{MONTH_HEADER_ROW}:{MONTH_HEADER_ROW}")

        live = build_live_pnl(await self._sheets.batch_get(ranges))
        self._logger.info(
            "live_pnl_built",
            categories={kind: len(rows) for kind, rows in live.blocks.items()},
            grand_total=float(live.totals["grand"].year_total),
        )

        self._cache.set("live", live)
        return live

    async def breakdown(self, kind: str, period: str) -> ExpenseBreakdown:
        """Compute a breakdown directly from the P&L tab."""
        check_period(period)
        spec = BREAKDOWNS.get(kind)
        if spec is None:
            raise ValidationError(f"Unknown breakdown: {kind!r}", details={"kind": kind})

        sheet = quote_sheet(PNL_SHEET)
        if period == "month":
            header = await self._sheets.get_values(f"{sheet}!A{MONTH_HEADER_ROW}:Z{MONTH_HEADER_ROW}")
            column = find_month_column(header[0] if header else [], self._today())
        else:
            column = YEAR_TOTAL_COLUMN

        names, values = await self._sheets.batch_get([
            f"{sheet}!A{spec.start_row}:A{spec.end_row}",
            f"{sheet}!{column}{spec.start_row}:{column}{spec.end_row}",
        ])
        return build_breakdown(
            [r[0] if r else "" for r in names],
            [r[0] if r else 0 for r in values],
            period,
            column,
            spec.label_prefix,
        )

    async def audit_named_ranges(self) -> StructureAudit:
        labels = await self._sheets.get_values(f"{quote_sheet(PNL_SHEET)}!A1:A100")
        named = await self._sheets.list_named_ranges()
        audit = audit_named_ranges([r[0] if r else "" for r in labels], named)
        for issue in audit.issues:
            self._logger.warning("named_range_mismatch", **issue.to_dict())
        return audit
