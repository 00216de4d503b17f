"""Financial report generation, exports, templates, share links and schedules."""

from __future__ import annotations

import calendar
import csv
import hashlib
import hmac
import io
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from bookmate.balances import BalanceSummary
from bookmate.config import get_settings
from bookmate.entries import InboxEntry
from bookmate.errors import NotFoundError, ShareAccessError, ValidationError
from bookmate.pnl import ExpenseBreakdown, PnLSnapshot

logger = structlog.get_logger(__name__)

PERIOD_TYPES = ("monthly", "quarterly", "ytd", "custom")
MAX_REPORT_TRANSACTIONS = 100


# === Periods ===


@dataclass
class ReportPeriod:
    kind: str
    start: date
    end: date
    label: str

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.kind,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "label": self.label,
        }


def _parse_date(value: str | date, name: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {name} date: {value!r}") from e


def calculate_period(
    kind: str,
    today: date | None = None,
    custom: tuple[str | date, str | date] | None = None,
) -> ReportPeriod:
    """Resolve a report period relative to ``today``.

    Args:
        kind: ``monthly``, ``quarterly``, ``ytd`` or ``custom``.
        today: Reference date; defaults to the current date.
        custom: ``(start, end)`` for custom periods, as dates or ISO strings.

    Raises:
        ValidationError: Unknown kind, or a custom range that is missing or
            reversed.
    """
    today = today or date.today()

    if kind == "monthly":
        last_day = calendar.monthrange(today.year, today.month)[1]
        return ReportPeriod(
            kind=kind,
            start=today.replace(day=1),
            end=today.replace(day=last_day),
            label=today.strftime("%B %Y"),
        )

    if kind == "quarterly":
        quarter = (today.month - 1) // 3
        first_month = quarter * 3 + 1
        last_month = first_month + 2
        return ReportPeriod(
            kind=kind,
            start=date(today.year, first_month, 1),
            end=date(today.year, last_month, calendar.monthrange(today.year, last_month)[1]),
            label=f"Q{quarter + 1} {today.year}",
        )

    if kind == "ytd":
        return ReportPeriod(kind=kind, start=date(today.year, 1, 1), end=today, label=f"YTD {today.year}")

    if kind == "custom":
        if not custom or not custom[0] or not custom[1]:
            raise ValidationError("Custom periods need a start and end date")
        start = _parse_date(custom[0], "start")
        end = _parse_date(custom[1], "end")
        if start > end:
            raise ValidationError(
                "Start date must not be after end date",
                details={"start": start.isoformat(), "end": end.isoformat()},
            )
        return ReportPeriod(
            kind=kind, start=start, end=end, label=f"{start.isoformat()} to {end.isoformat()}"
        )

    raise ValidationError(f"Invalid period type: {kind}", details={"valid": list(PERIOD_TYPES)})


# === Report data ===


def _breakdown_rows(breakdown: ExpenseBreakdown | None) -> list[dict[str, Any]]:
    if breakdown is None:
        return []
    return [
        {"category": item.name, "amount": float(item.expense), "percentage": item.percentage}
        for item in breakdown.items
    ]


@dataclass
class TransactionStats:
    total_count: int
    expense_count: int
    income_count: int
    total_debits: Decimal
    total_credits: Decimal

    @property
    def net_position(self) -> Decimal:
        return self.total_credits - self.total_debits

    @classmethod
    def from_entries(cls, entries: list[InboxEntry]) -> "TransactionStats":
        return cls(
            total_count=len(entries),
            expense_count=sum(1 for e in entries if e.debit > 0),
            income_count=sum(1 for e in entries if e.credit > 0),
            total_debits=sum((e.debit for e in entries), Decimal("0")),
            total_credits=sum((e.credit for e in entries), Decimal("0")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCount": self.total_count,
            "expenseCount": self.expense_count,
            "incomeCount": self.income_count,
            "totalDebits": float(self.total_debits),
            "totalCredits": float(self.total_credits),
            "netPosition": float(self.net_position),
        }


@dataclass
class Report:
    period: ReportPeriod
    pnl: PnLSnapshot
    balances: BalanceSummary | None
    transactions: list[InboxEntry]
    stats: TransactionStats
    overhead: ExpenseBreakdown | None = None
    property_person: ExpenseBreakdown | None = None
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def balance_section(self) -> dict[str, Any]:
        accounts = self.balances.accounts if self.balances else []
        by_account = []
        total_cash = Decimal("0")
        total_bank = Decimal("0")
        for account in accounts:
            kind = "cash" if "cash" in account.account_name.lower() else "bank"
            if kind == "cash":
                total_cash += account.current_balance
            else:
                total_bank += account.current_balance
            by_account.append({
                "accountName": account.account_name,
                "balance": float(account.current_balance),
                "type": kind,
                "openingBalance": float(account.opening_balance),
                "currentBalance": float(account.current_balance),
                "inflow": float(account.inflow),
                "outflow": float(account.outflow),
                "netChange": float(account.net_change),
            })

        totals = self.balances.totals() if self.balances else {}
        return {
            "byAccount": by_account,
            "totalCash": float(total_cash),
            "totalBank": float(total_bank),
            "total": float(total_cash + total_bank),
            "totalOpening": float(totals.get("openingBalance", 0)),
            "totalInflow": float(totals.get("inflow", 0)),
            "totalOutflow": float(totals.get("outflow", 0)),
            "netChange": float(totals.get("netChange", 0)),
        }

    def to_dict(self) -> dict[str, Any]:
        month = self.pnl.month
        balances = self.balance_section()
        return {
            "period": self.period.to_dict(),
            "summary": {
                "totalRevenue": float(month.revenue),
                "totalExpenses": float(month.total_expenses),
                "netProfit": float(month.gop),
                "profitMargin": float(month.ebitda_margin),
                "cashPosition": balances["total"],
                "grossProfit": float(month.gop),
                "totalOverheads": float(month.overheads),
                "totalPropertyPersonExpense": float(month.property_person_expense),
                "ebitdaMargin": float(month.ebitda_margin),
            },
            "pnl": {"month": month.to_dict(), "year": self.pnl.year.to_dict()},
            "revenue": {
                "total": float(month.revenue),
                "monthlyRevenue": float(month.revenue),
                "yearlyRevenue": float(self.pnl.year.revenue),
            },
            "expenses": {
                "overhead": _breakdown_rows(self.overhead),
                "propertyPerson": _breakdown_rows(self.property_person),
                "overheadTotal": float(month.overheads),
                "propertyPersonTotal": float(month.property_person_expense),
            },
            "balances": balances,
            "transactions": [e.to_dict() for e in self.transactions],
            "transactionStats": self.stats.to_dict(),
            "generatedAt": self.generated_at.isoformat(),
        }


def generate_report(
    period: ReportPeriod,
    pnl: PnLSnapshot,
    balances: BalanceSummary | None = None,
    entries: list[InboxEntry] | None = None,
    overhead: ExpenseBreakdown | None = None,
    property_person: ExpenseBreakdown | None = None,
) -> Report:
    """Assemble report data from the P&L, balances and inbox.

    Transaction statistics cover every entry; the listing keeps the first
    100.
    """
    entries = entries or []
    report = Report(
        period=period,
        pnl=pnl,
        balances=balances,
        transactions=entries[:MAX_REPORT_TRANSACTIONS],
        stats=TransactionStats.from_entries(entries),
        overhead=overhead,
        property_person=property_person,
    )
    logger.info("report_generated", period=period.label, transactions=len(entries))
    return report


# === CSV export ===

TRANSACTION_HEADER = ["Date", "Property", "Operation Type", "Payment Type", "Detail", "Debit", "Credit"]
NO_TRANSACTIONS_NOTE = "# No transactions found for this period"


def _money(value: float | Decimal) -> str:
    return f"{float(value):.2f}"


def _category_rows(rows: list[dict[str, Any]]) -> list[list[Any]]:
    return [[r["category"], _money(r["amount"]), f"{r['percentage']:.2f}%"] for r in rows]


def export_filename(report: Report, prefix: str = "Report") -> str:
    """``BookMate_Report_November_2025.csv`` style file name."""
    label = re.sub(r"\s+", "_", report.period.label)
    return f"BookMate_{prefix}_{label}.csv"


def report_to_csv(report: Report) -> str:
    """Render the full report as CSV sections separated by blank rows."""
    data = report.to_dict()
    summary = data["summary"]
    expenses = data["expenses"]
    balances = data["balances"]

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerows([
        ["BookMate Financial Report"],
        ["Period", report.period.label],
        ["Generated", report.generated_at.isoformat()],
        [],
        ["Financial Summary"],
        ["Metric", "Value"],
        ["Total Revenue", _money(summary["totalRevenue"])],
        ["Total Expenses", _money(summary["totalExpenses"])],
        ["Net Profit", _money(summary["netProfit"])],
        ["Profit Margin", f"{summary['profitMargin']:.2f}%"],
        ["Cash Position", _money(summary["cashPosition"])],
        [],
        ["Expense Breakdown"],
        ["Category", "Amount", "Percentage"],
        ["Overhead Expenses"],
        *_category_rows(expenses["overhead"]),
        [],
        ["Property/Person Expenses"],
        *_category_rows(expenses["propertyPerson"]),
        [],
        ["Overhead Subtotal", _money(expenses["overheadTotal"])],
        ["Property/Person Subtotal", _money(expenses["propertyPersonTotal"])],
        ["Total Expenses", _money(expenses["overheadTotal"] + expenses["propertyPersonTotal"])],
        [],
        ["Account Balances"],
        ["Account Name", "Balance", "Type"],
        *[[a["accountName"], _money(a["balance"]), a["type"]] for a in balances["byAccount"]],
        ["Total", _money(balances["total"])],
    ])

    entries = report.transactions
    if entries:
        writer.writerows([
            [],
            ["All Transactions"],
            ["Date", "Property", "Operation Type", "Payment Type", "Detail", "Debit", "Credit", "Net Amount", "Type"],
        ])
        for e in entries:
            writer.writerow([
                e.date,
                e.property,
                e.type_of_operation,
                e.type_of_payment,
                e.detail,
                _money(e.debit),
                _money(e.credit),
                _money(e.credit - e.debit),
                "Income" if e.credit > 0 else "Expense",
            ])

        stats = report.stats
        writer.writerows([
            [],
            ["Transaction Summary"],
            ["Total Debits (Expenses)", _money(stats.total_debits)],
            ["Total Credits (Income)", _money(stats.total_credits)],
            ["Net Position", _money(stats.net_position)],
            ["Transaction Count", stats.total_count],
        ])

        by_category: dict[str, list[InboxEntry]] = {}
        for e in entries:
            if e.debit > 0:
                by_category.setdefault(e.type_of_operation or "Uncategorized", []).append(e)
        if by_category:
            writer.writerows([[], ["Expense Details by Category"]])
            for category, items in by_category.items():
                subtotal = sum((e.debit for e in items), Decimal("0"))
                writer.writerow([f"Category: {category}", f"Total: {_money(subtotal)}"])
                writer.writerow(["Date", "Property", "Payment Type", "Detail", "Amount"])
                writer.writerows(
                    [e.date, e.property, e.type_of_payment, e.detail, _money(e.debit)] for e in items
                )
                writer.writerow(["Subtotal", "", "", "", _money(subtotal)])

    return buffer.getvalue()


def transactions_to_csv(entries: list[InboxEntry]) -> str:
    """Raw transaction rows; an empty export keeps the header and a note."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(TRANSACTION_HEADER)
    if not entries:
        writer.writerow([NO_TRANSACTIONS_NOTE])
    for e in entries:
        writer.writerow([
            e.date,
            e.property,
            e.type_of_operation,
            e.type_of_payment,
            e.detail,
            _money(e.debit),
            _money(e.credit),
        ])
    return buffer.getvalue()


# === Templates ===

RELATIVE_RANGES = ("last-month", "last-quarter", "last-year", "ytd")


def relative_period(relative: str, today: date | None = None) -> ReportPeriod:
    """Resolve ``last-month``, ``last-quarter``, ``last-year`` or ``ytd``.

    Relative ranges are reported as custom periods with a readable label.
    """
    today = today or date.today()

    if relative == "last-month":
        end = today.replace(day=1) - timedelta(days=1)
        return ReportPeriod("custom", end.replace(day=1), end, end.strftime("%B %Y"))

    if relative == "last-quarter":
        quarter = (today.month - 1) // 3
        year = today.year if quarter else today.year - 1
        last_quarter = quarter - 1 if quarter else 3
        first_month = last_quarter * 3 + 1
        last_month = first_month + 2
        return ReportPeriod(
            "custom",
            date(year, first_month, 1),
            date(year, last_month, calendar.monthrange(year, last_month)[1]),
            f"Q{last_quarter + 1} {year}",
        )

    if relative == "last-year":
        year = today.year - 1
        return ReportPeriod("custom", date(year, 1, 1), date(year, 12, 31), str(year))

    if relative == "ytd":
        return ReportPeriod("custom", date(today.year, 1, 1), today, f"YTD {today.year}")

    raise ValidationError(f"Invalid relative range: {relative}", details={"valid": list(RELATIVE_RANGES)})


@dataclass
class ReportTemplate:
    """Saved report settings.

    ``date_range`` is a period kind or ``relative``; ``relative`` and
    ``custom`` carry the range for those two cases.
    """

    name: str
    description: str = ""
    template_type: str = "custom"
    date_range: str = "monthly"
    relative: str | None = None
    custom: tuple[str, str] | None = None
    ai_enabled: bool = False
    ai_tone: str | None = None
    footer_text: str | None = None

    def period(self, today: date | None = None) -> ReportPeriod:
        if self.date_range == "relative":
            if not self.relative:
                raise ValidationError(f"Template {self.name!r} has no relative range")
            return relative_period(self.relative, today)
        return calculate_period(self.date_range, today, self.custom)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "type": self.template_type,
            "dateRange": {"type": self.date_range, "relative": self.relative, "custom": self.custom},
            "aiSummary": {"enabled": self.ai_enabled, "tone": self.ai_tone},
            "footerText": self.footer_text,
        }


DEFAULT_TEMPLATES = [
    ReportTemplate(
        name="Investor Update",
        description="High-level summary for investors with AI insights",
        template_type="investor-update",
        date_range="relative",
        relative="last-month",
        ai_enabled=True,
        ai_tone="investor",
        footer_text="Confidential - For Investors Only",
    ),
    ReportTemplate(
        name="Internal Performance",
        description="Detailed report for internal finance team",
        template_type="internal-summary",
        date_range="monthly",
        ai_enabled=True,
        ai_tone="standard",
    ),
    ReportTemplate(
        name="Bank/Compliance",
        description="Compliance-ready report for banking and regulatory purposes",
        template_type="bank-compliance",
        date_range="quarterly",
        footer_text="Official Financial Statement - BookMate",
    ),
]


def find_template(name: str, templates: list[ReportTemplate] | None = None) -> ReportTemplate:
    """Look up a template by case-insensitive name."""
    templates = DEFAULT_TEMPLATES if templates is None else templates
    for template in templates:
        if template.name.casefold() == name.strip().casefold():
            return template
    raise NotFoundError(f"Report template not found: {name}", details={"available": [t.name for t in templates]})


# === Share links ===


@dataclass
class SharedReport:
    id: str
    token: str
    report_name: str
    snapshot: dict[str, Any]
    created_at: datetime
    expires_at: datetime | None = None
    passcode: str | None = None
    max_views: int | None = None
    view_count: int = 0
    created_by: str | None = None

    def to_dict(self, include_snapshot: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "token": self.token,
            "reportName": self.report_name,
            "createdAt": self.created_at.isoformat(),
            "createdBy": self.created_by,
            "access": {
                "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
                "hasPasscode": bool(self.passcode),
                "viewCount": self.view_count,
                "maxViews": self.max_views,
            },
        }
        if include_snapshot:
            data["snapshot"] = self.snapshot
        return data


class ShareLinkStore:
    """In-memory store of shared report snapshots.

    Tokens have the form ``<id>.<signature>`` where the signature is an
    HMAC-SHA256 of the random id, so forged or truncated tokens are rejected
    before any lookup.
    """

    def __init__(self, secret: str | None = None, clock: Callable[[], datetime] | None = None):
        self._secret = (secret or get_settings().share_link_secret.get_secret_value()).encode()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._links: dict[str, SharedReport] = {}
        self._logger = logger.bind(component="share_links")

    def _sign(self, link_id: str) -> str:
        return hmac.new(self._secret, link_id.encode(), hashlib.sha256).hexdigest()

    def _link_id(self, token: str) -> str:
        link_id, _, signature = token.partition(".")
        if not link_id or not signature or not hmac.compare_digest(signature, self._sign(link_id)):
            raise NotFoundError("Shared report not found")
        return link_id

    def create(
        self,
        report_name: str,
        snapshot: dict[str, Any],
        expires_in: timedelta | None = None,
        passcode: str | None = None,
        max_views: int | None = None,
        created_by: str | None = None,
    ) -> SharedReport:
        """Store a frozen report snapshot and return its share link."""
        if not report_name.strip():
            raise ValidationError("Report name is required")
        if max_views is not None and max_views < 1:
            raise ValidationError("maxViews must be at least 1", details={"maxViews": max_views})

        link_id = secrets.token_urlsafe(16)
        now = self._clock()
        link = SharedReport(
            id=link_id,
            token=f"{link_id}.{self._sign(link_id)}",
            report_name=report_name.strip(),
            snapshot=snapshot,
            created_at=now,
            expires_at=now + expires_in if expires_in else None,
            passcode=passcode or None,
            max_views=max_views,
            created_by=created_by,
        )
        self._links[link_id] = link
        self._logger.info("share_link_created", link_id=link_id, expires_at=link.expires_at)
        return link

    def open(self, token: str, passcode: str | None = None) -> SharedReport:
        """Validate access to a shared report and count the view.

        Raises:
            NotFoundError: Unknown or tampered token.
            ShareAccessError: Expired, view limit reached, or wrong passcode.
        """
        link = self._links.get(self._link_id(token))
        if link is None:
            raise NotFoundError("Shared report not found")

        if link.expires_at is not None and link.expires_at < self._clock():
            raise ShareAccessError("Link has expired", details={"expiresAt": link.expires_at.isoformat()})
        if link.max_views is not None and link.view_count >= link.max_views:
            raise ShareAccessError("Maximum views exceeded", details={"maxViews": link.max_views})
        if link.passcode and not (passcode and hmac.compare_digest(passcode, link.passcode)):
            raise ShareAccessError("Invalid passcode")

        link.view_count += 1
        self._logger.info("share_link_opened", link_id=link.id, view_count=link.view_count)
        return link

    def revoke(self, token: str) -> None:
        link_id = self._link_id(token)
        if self._links.pop(link_id, None) is None:
            raise NotFoundError("Shared report not found")
        self._logger.info("share_link_revoked", link_id=link_id)

    def list(self) -> list[SharedReport]:
        return sorted(self._links.values(), key=lambda link: link.created_at, reverse=True)


# === Schedules ===

SCHEDULE_FREQUENCIES = ("weekly", "monthly", "quarterly")
_TIME_OF_DAY = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


@dataclass
class ReportSchedule:
    """When a scheduled report runs.

    ``day_of_week`` follows ``date.weekday()`` (0 is Monday).
    ``month_of_quarter`` is 1-3.
    """

    frequency: str
    at: str = "09:00"
    timezone: str = "UTC"
    day_of_week: int = 0
    day_of_month: int = 1
    month_of_quarter: int = 1

    def time_of_day(self) -> time:
        match = _TIME_OF_DAY.match(self.at)
        if not match:
            raise ValidationError(f"Invalid schedule time: {self.at!r}", details={"format": "HH:MM"})
        return time(int(match.group(1)), int(match.group(2)))


def _at_day(year: int, month: int, day: int, at: time, tz: tzinfo) -> datetime:
    day = min(day, calendar.monthrange(year, month)[1])
    return datetime.combine(date(year, month, day), at, tzinfo=tz)


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + months
    return total // 12, total % 12 + 1


def next_run(schedule: ReportSchedule, now: datetime | None = None) -> datetime:
    """First run time strictly after ``now`` in the schedule's timezone.

    Monthly days past the end of a short month run on its last day.
    """
    if schedule.frequency not in SCHEDULE_FREQUENCIES:
        raise ValidationError(
            f"Invalid schedule frequency: {schedule.frequency}",
            details={"valid": list(SCHEDULE_FREQUENCIES)},
        )
    at = schedule.time_of_day()
    try:
        tz = UTC if schedule.timezone == "UTC" else ZoneInfo(schedule.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {schedule.timezone}") from e
    now = (now or datetime.now(UTC)).astimezone(tz)

    if schedule.frequency == "weekly":
        if not 0 <= schedule.day_of_week <= 6:
            raise ValidationError("day_of_week must be between 0 and 6")
        days_ahead = (schedule.day_of_week - now.weekday()) % 7
        candidate = datetime.combine(now.date() + timedelta(days=days_ahead), at, tzinfo=tz)
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate

    if schedule.frequency == "monthly":
        if not 1 <= schedule.day_of_month <= 31:
            raise ValidationError("day_of_month must be between 1 and 31")
        candidate = _at_day(now.year, now.month, schedule.day_of_month, at, tz)
        if candidate <= now:
            year, month = _add_months(now.year, now.month, 1)
            candidate = _at_day(year, month, schedule.day_of_month, at, tz)
        return candidate

    if not 1 <= schedule.month_of_quarter <= 3:
        raise ValidationError("month_of_quarter must be between 1 and 3")
    quarter_start = ((now.month - 1) // 3) * 3 + 1
    year, month = _add_months(now.year, quarter_start, schedule.month_of_quarter - 1)
    candidate = _at_day(year, month, 1, at, tz)
    if candidate <= now:
        year, month = _add_months(year, month, 3)
        candidate = _at_day(year, month, 1, at, tz)
    return candidate
