"""Bank and cash balance reconciliation."""

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog

from bookmate.cache import TTLCache
from bookmate.clients.insights import InsightsClient
from bookmate.clients.sheets import SheetsClient, col_index_to_letter, quote_sheet
from bookmate.clients.webhook import AppsScriptClient, check_month
from bookmate.config import get_settings
from bookmate.entries import InboxEntry, to_decimal
from bookmate.errors import SheetsError
from bookmate.sheet_meta import DetectedTab, SheetMetaDetector

logger = structlog.get_logger(__name__)

BALANCES_SHEET = "Bank & Cash Balance"
CASH_ACCOUNT = "Cash"
DRIFT_OK_THRESHOLD = Decimal("1")
MAX_PLAUSIBLE_BALANCE = Decimal("100000000")

_TIMESTAMP_FORMATS = ("%d/%m/%Y %H:%M:%S", "%d/%m/%Y", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d", "%m/%d/%Y")
# Day zero of spreadsheet serial dates.
SERIAL_EPOCH = datetime(1899, 12, 30, tzinfo=UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse sheet timestamps; naive values are taken as UTC.

    Unformatted date cells arrive as serial day numbers and are converted too.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return SERIAL_EPOCH + timedelta(days=float(value))
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _TIMESTAMP_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            else:
                return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


# === Uploaded balances ===


@dataclass
class UploadedBalance:
    bank_name: str
    balance: Decimal
    timestamp: str
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "bankName": self.bank_name,
            "balance": float(self.balance),
            "timestamp": self.timestamp,
            "note": self.note,
        }


def _timestamp_text(value: Any) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return parse_timestamp(value).isoformat()
    return str(value or "")


def latest_balances(rows: Iterable[list[Any]]) -> dict[str, UploadedBalance]:
    """Keep the newest ``(timestamp, bankName, balance, note)`` row per bank."""
    latest: dict[str, UploadedBalance] = {}
    for row in rows:
        cells = list(row) + [""] * (4 - len(row))
        bank_name = str(cells[1] or "").strip()
        if not bank_name or cells[2] is None or cells[2] == "":
            continue

        candidate = UploadedBalance(
            bank_name=bank_name,
            balance=to_decimal(cells[2]),
            timestamp=_timestamp_text(cells[0]),
            note=str(cells[3] or ""),
        )
        current = latest.get(bank_name)
        if current is None:
            latest[bank_name] = candidate
            continue

        new_ts = parse_timestamp(candidate.timestamp)
        old_ts = parse_timestamp(current.timestamp)
        if new_ts is not None and (old_ts is None or new_ts > old_ts):
            latest[bank_name] = candidate
    return latest


@dataclass
class BalanceSplit:
    bank_balance: Decimal
    cash_balance: Decimal

    @property
    def total(self) -> Decimal:
        return self.bank_balance + self.cash_balance

    def to_dict(self) -> dict[str, float]:
        return {
            "bankBalance": float(self.bank_balance),
            "cashBalance": float(self.cash_balance),
            "total": float(self.total),
        }


def split_cash_and_bank(balances: dict[str, UploadedBalance]) -> BalanceSplit:
    """Sum non-cash accounts as bank; the ``Cash`` account is the cash balance."""
    bank = Decimal("0")
    cash = Decimal("0")
    for name, entry in balances.items():
        if name == CASH_ACCOUNT:
            cash = entry.balance
        else:
            bank += entry.balance
    return BalanceSplit(bank_balance=bank, cash_balance=cash)


@dataclass
class NetCash:
    month: Decimal
    year: Decimal
    month_source: str
    year_source: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "monthNetCash": float(self.month),
            "yearNetCash": float(self.year),
            "monthSource": self.month_source,
            "yearSource": self.year_source,
        }


def reconcile_net_cash(range_map: dict[str, Any]) -> NetCash:
    """Net cash from ``*_Net_Cash`` named ranges, else revenue minus overheads."""

    def _resolve(prefix: str) -> tuple[Decimal, str]:
        name = f"{prefix}_Net_Cash"
        if name in range_map:
            return to_decimal(range_map[name]), name
        revenue = f"{prefix}_Total_Revenue"
        overheads = f"{prefix}_Total_Overheads"
        if revenue in range_map and overheads in range_map:
            return to_decimal(range_map[revenue]) - to_decimal(range_map[overheads]), "computed"
        return Decimal("0"), "missing"

    month, month_source = _resolve("Month")
    year, year_source = _resolve("Year")
    return NetCash(month=month, year=year, month_source=month_source, year_source=year_source)


# === Running balances ===


@dataclass
class RunningBalance:
    bank_name: str
    uploaded_balance: Decimal
    uploaded_date: str
    total_revenues: Decimal
    total_expenses: Decimal
    transaction_count: int

    @property
    def current_balance(self) -> Decimal:
        return self.uploaded_balance + self.total_revenues - self.total_expenses

    @property
    def variance(self) -> Decimal:
        return self.current_balance - self.uploaded_balance

    def to_dict(self) -> dict[str, Any]:
        return {
            "property": self.bank_name,
            "balance": float(self.current_balance),
            "uploadedBalance": float(self.uploaded_balance),
            "uploadedDate": self.uploaded_date,
            "totalRevenue": float(self.total_revenues),
            "totalExpense": float(self.total_expenses),
            "transactionCount": self.transaction_count,
            "variance": float(self.variance),
        }


def compute_running_balances(
    uploaded: dict[str, UploadedBalance], entries: list[InboxEntry]
) -> list[RunningBalance]:
    """Roll each uploaded balance forward with matching inbox entries.

    An entry belongs to a bank when its ``typeOfPayment`` equals the bank
    name. Credits add and debits subtract. Results are ordered by current
    balance, highest first.
    """
    results = []
    for bank_name, base in uploaded.items():
        matching = [e for e in entries if e.type_of_payment == bank_name]
        results.append(
            RunningBalance(
                bank_name=bank_name,
                uploaded_balance=base.balance,
                uploaded_date=base.timestamp,
                total_revenues=sum((e.credit for e in matching if e.credit > 0), Decimal("0")),
                total_expenses=sum((e.debit for e in matching if e.debit > 0), Decimal("0")),
                transaction_count=len(matching),
            )
        )
    results.sort(key=lambda r: r.current_balance, reverse=True)
    return results


# === Account balances (Balance Summary or Ledger) ===


@dataclass
class AccountBalance:
    account_name: str
    opening_balance: Decimal = Decimal("0")
    inflow: Decimal = Decimal("0")
    outflow: Decimal = Decimal("0")
    net_change: Decimal = Decimal("0")
    current_balance: Decimal = Decimal("0")
    last_txn_at: str | None = None
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountName": self.account_name,
            "openingBalance": float(self.opening_balance),
            "netChange": float(self.net_change),
            "currentBalance": float(self.current_balance),
            "lastTxnAt": self.last_txn_at,
            "inflow": float(self.inflow),
            "outflow": float(self.outflow),
            "note": self.note,
        }


def _cell(row: list[Any], columns: dict[str, int], name: str) -> Any:
    index = columns.get(name)
    if index is None or index >= len(row):
        return ""
    return row[index]


def read_summary_rows(rows: list[list[Any]], columns: dict[str, int]) -> list[AccountBalance]:
    """Map Balance Summary data rows through the detected column indexes."""
    balances = []
    for row in rows:
        name = str(_cell(row, columns, "accountName") or "").strip()
        if not name:
            continue
        last_txn = _cell(row, columns, "lastTxnAt")
        balances.append(
            AccountBalance(
                account_name=name,
                opening_balance=to_decimal(_cell(row, columns, "openingBalance")),
                net_change=to_decimal(_cell(row, columns, "netChange")),
                current_balance=to_decimal(_cell(row, columns, "currentBalance")),
                last_txn_at=str(last_txn) if last_txn not in ("", None) else None,
                inflow=to_decimal(_cell(row, columns, "inflow(+)")),
                outflow=to_decimal(_cell(row, columns, "outflow(-)")),
                note=str(_cell(row, columns, "note") or ""),
            )
        )
    return balances


def compute_from_ledger(
    account_rows: list[list[Any]],
    account_columns: dict[str, int],
    ledger_rows: list[list[Any]],
    ledger_columns: dict[str, int],
    month: str = "ALL",
) -> list[AccountBalance]:
    """Opening balances plus ledger movements, optionally for one month.

    Positive ledger amounts are inflows, everything else an outflow. Only
    accounts listed on the Accounts tab are reported.
    """
    month = check_month(month)

    balances: dict[str, AccountBalance] = {}
    for row in account_rows:
        name = str(_cell(row, account_columns, "accountName") or "").strip()
        if not name:
            continue
        balances[name] = AccountBalance(
            account_name=name,
            opening_balance=to_decimal(_cell(row, account_columns, "openingBalance")),
            note=str(_cell(row, account_columns, "note") or ""),
        )

    last_seen: dict[str, datetime] = {}
    for row in ledger_rows:
        name = str(_cell(row, ledger_columns, "accountName") or "").strip()
        if not name or name not in balances:
            continue
        row_month = str(_cell(row, ledger_columns, "month") or "").strip().upper()
        if month != "ALL" and row_month != month:
            continue

        amount = to_decimal(_cell(row, ledger_columns, "amount"))
        account = balances[name]
        if amount > 0:
            account.inflow += amount
        else:
            account.outflow += abs(amount)

        txn_at = parse_timestamp(_cell(row, ledger_columns, "date"))
        if txn_at is not None and (name not in last_seen or txn_at > last_seen[name]):
            last_seen[name] = txn_at

    for name, account in balances.items():
        account.net_change = account.inflow - account.outflow
        account.current_balance = account.opening_balance + account.net_change
        if name in last_seen:
            account.last_txn_at = last_seen[name].isoformat()

    return list(balances.values())


@dataclass
class BalanceSummary:
    month: str
    accounts: list[AccountBalance]
    source: str
    warnings: list[str] = field(default_factory=list)

    def totals(self) -> dict[str, Decimal]:
        return {
            "openingBalance": sum((a.opening_balance for a in self.accounts), Decimal("0")),
            "netChange": sum((a.net_change for a in self.accounts), Decimal("0")),
            "currentBalance": sum((a.current_balance for a in self.accounts), Decimal("0")),
            "inflow": sum((a.inflow for a in self.accounts), Decimal("0")),
            "outflow": sum((a.outflow for a in self.accounts), Decimal("0")),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "month": self.month,
            "data": [a.to_dict() for a in self.accounts],
            "totals": {k: float(v) for k, v in self.totals().items()},
            "source": self.source,
            "warnings": self.warnings,
        }


# === Drift checks ===


def drift_status(drift: Decimal, warn_threshold: Decimal) -> str:
    magnitude = abs(drift)
    if magnitude <= DRIFT_OK_THRESHOLD:
        return "OK"
    if magnitude <= warn_threshold:
        return "WARN"
    return "FAIL"


@dataclass
class DriftCheck:
    account: str
    opening_balance: Decimal
    inflow: Decimal
    outflow: Decimal
    actual_current: Decimal
    status: str = "OK"
    notes: list[str] = field(default_factory=list)

    @property
    def expected_current(self) -> Decimal:
        return self.opening_balance + self.inflow - self.outflow

    @property
    def drift(self) -> Decimal:
        return self.actual_current - self.expected_current

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account,
            "openingBalance": float(self.opening_balance),
            "inflow": float(self.inflow),
            "outflow": float(self.outflow),
            "expectedCurrent": float(self.expected_current),
            "actualCurrent": float(self.actual_current),
            "drift": float(self.drift),
            "status": self.status,
            "notes": self.notes,
        }


def drift_notes(check: DriftCheck, warn_threshold: Decimal) -> list[str]:
    notes = []
    drift = check.drift
    if abs(drift) <= DRIFT_OK_THRESHOLD:
        notes.append("Balance is accurate within 1 THB")
    elif abs(drift) <= warn_threshold:
        notes.append(f"Minor drift detected: {drift:.2f} THB")
        notes.append("Recommend reviewing recent transactions")
    else:
        notes.append(f"Significant drift: {drift:.2f} THB")
        notes.append("Manual reconciliation required")
        if drift > 0:
            notes.append("Actual balance is HIGHER than expected - possible unrecorded income")
        else:
            notes.append("Actual balance is LOWER than expected - possible unrecorded expense")

    if check.inflow > 0 and check.outflow > 0:
        notes.append(f"Transaction volume: {check.inflow + check.outflow:,.2f} THB")
    return notes


@dataclass
class DriftReport:
    checks: list[DriftCheck]
    status: str
    ai_summary: str | None = None

    def totals(self) -> dict[str, Any]:
        def total(attr: str) -> Decimal:
            return sum((getattr(c, attr) for c in self.checks), Decimal("0"))

        return {
            "opening_total": total("opening_balance"),
            "inflow_total": total("inflow"),
            "outflow_total": total("outflow"),
            "expected_total": total("expected_current"),
            "actual_total": total("actual_current"),
            "drift_total": total("drift"),
            "status": self.status,
        }

    def to_dict(self) -> dict[str, Any]:
        totals = {k: (float(v) if isinstance(v, Decimal) else v) for k, v in self.totals().items()}
        body: dict[str, Any] = {
            "ok": True,
            "checks": [c.to_dict() for c in self.checks],
            "totals": totals,
        }
        if self.ai_summary:
            body["aiSummary"] = self.ai_summary
        return body


def run_drift_checks(
    accounts: list[AccountBalance], warn_threshold: float | Decimal | None = None
) -> DriftReport:
    """Compare each account's actual balance with opening + inflow - outflow."""
    threshold = Decimal(str(
        warn_threshold if warn_threshold is not None else get_settings().drift_warn_threshold
    ))

    checks = []
    for account in accounts:
        check = DriftCheck(
            account=account.account_name,
            opening_balance=account.opening_balance,
            inflow=account.inflow,
            outflow=account.outflow,
            actual_current=account.current_balance,
        )
        check.status = drift_status(check.drift, threshold)
        check.notes = drift_notes(check, threshold)
        checks.append(check)

    drift_total = sum((c.drift for c in checks), Decimal("0"))
    return DriftReport(checks=checks, status=drift_status(drift_total, threshold))


# === OCR balance parsing ===

BALANCE_KEYWORDS = (
    "available", "balance", "current balance", "account balance", "total balance",
    "ยอดคงเหลือ", "ยอดเงินคงเหลือ", "ยอดเงิน", "คงเหลือ",
    "thb", "฿", "บาท", "baht",
)

AMOUNT_PATTERNS = (
    re.compile(r"(?:THB|฿)\s*([0-9][0-9,]*\.?[0-9]{0,2})", re.IGNORECASE),
    re.compile(r"([0-9][0-9,]*\.?[0-9]{0,2})\s*(?:THB|บาท|baht)", re.IGNORECASE),
    re.compile(r"([0-9][0-9,]+\.[0-9]{2})"),
    re.compile(r"([0-9]{4,})"),
)


@dataclass
class ParsedBalance:
    value: Decimal
    source_line: str
    confidence: str  # high | medium | low

    def to_dict(self) -> dict[str, Any]:
        return {"value": float(self.value), "sourceLine": self.source_line, "confidence": self.confidence}


def extract_amounts(line: str) -> list[Decimal]:
    amounts = []
    for pattern in AMOUNT_PATTERNS:
        for match in pattern.finditer(line):
            amount = to_decimal(match.group(1).rstrip("."))
            if amount > 0:
                amounts.append(amount)
    return amounts


def parse_likely_balance(text: str) -> ParsedBalance | None:
    """Pick the most likely account balance from OCR text of a bank screenshot.

    Lines with a balance keyword win (largest amount, high confidence).
    Otherwise the largest amount under 100M THB is used (medium), and failing
    that the largest amount seen (low).
    """
    if not text or not isinstance(text, str):
        return None

    lines = [line.strip() for line in text.splitlines() if line.strip()]

    best: tuple[Decimal, str] | None = None
    for line in lines:
        lowered = line.lower()
        if not any(keyword in lowered for keyword in BALANCE_KEYWORDS):
            continue
        amounts = extract_amounts(line)
        if amounts and (best is None or max(amounts) > best[0]):
            best = (max(amounts), line)
    if best is not None:
        return ParsedBalance(value=best[0], source_line=best[1], confidence="high")

    candidates = [(amount, line) for line in lines for amount in extract_amounts(line)]
    if not candidates:
        return None
    candidates.sort(key=lambda c: c[0], reverse=True)

    for amount, line in candidates:
        if amount <= MAX_PLAUSIBLE_BALANCE:
            return ParsedBalance(value=amount, source_line=line, confidence="medium")
    return ParsedBalance(value=candidates[0][0], source_line=candidates[0][1], confidence="low")


def is_valid_balance(value: Any) -> bool:
    """True for a finite number between 0 and 100M THB."""
    if isinstance(value, bool):
        return False
    try:
        amount = Decimal(str(value))
    except ArithmeticError:
        return False
    return amount.is_finite() and Decimal("0") <= amount <= MAX_PLAUSIBLE_BALANCE


# === Service ===


class BalanceService:
    """Balance reads, uploads and reconciliation."""

    def __init__(
        self,
        client: AppsScriptClient,
        sheets: SheetsClient | None = None,
        detector: SheetMetaDetector | None = None,
        ttl: float | None = None,
    ):
        self._client = client
        self._sheets = sheets
        self._detector = detector or (SheetMetaDetector(sheets) if sheets else None)
        self._cache = TTLCache(ttl if ttl is not None else get_settings().balance_cache_ttl)
        self._logger = logger.bind(component="balances")

    def clear_cache(self) -> None:
        self._cache.clear()

    async def save(self, bank_name: str, balance: float, note: str = "") -> dict[str, Any]:
        """Upload a new balance for ``bank_name``."""
        result = await self._client.balances_append(bank_name, balance, note)
        self._cache.clear()
        self._logger.info("balance_saved", bank_name=bank_name, balance=balance)
        return result

    async def latest(self) -> dict[str, UploadedBalance]:
        """Latest uploaded balance per bank, as reported by the webhook."""
        result = await self._client.balances_get_latest()
        raw = result.get("allBalances")
        raw = raw if isinstance(raw, dict) else {}
        rows = [
            [item.get("timestamp"), item.get("bankName") or name, item.get("balance"), item.get("note")]
            for name, item in raw.items()
            if isinstance(item, dict)
        ]
        return latest_balances(rows)

    async def running_balances(self, entries: list[InboxEntry], force: bool = False) -> list[RunningBalance]:
        """Uploaded balances rolled forward with the inbox.

        Only the uploaded balances are cached; the roll-forward is recomputed
        for the ``entries`` of every call.
        """
        uploaded = None if force else self._cache.get("uploaded")
        if uploaded is None:
            if self._sheets is not None:
                rows = await self._sheets.get_values(f"{quote_sheet(BALANCES_SHEET)}!A2:D")
                uploaded = latest_balances(rows)
            else:
                uploaded = await self.latest()
            self._cache.set("uploaded", uploaded)

        balances = compute_running_balances(uploaded, entries)
        self._logger.info("running_balances_computed", banks=len(balances), entries=len(entries))
        return balances

    async def summary(self, month: str = "ALL") -> BalanceSummary:
        """Account balances from the Balance Summary tab or the ledger.

        The Balance Summary tab holds totals for the whole year. For a single
        month the ledger is used when it is available; otherwise the yearly
        rows are returned with a warning.
        """
        month = check_month(month)
        if self._sheets is None or self._detector is None:
            result = await self._client.balance_get_summary(month)
            data = result.get("data")
            accounts = data.get("accounts") if isinstance(data, dict) else data
            balances = [
                AccountBalance(
                    account_name=str(a.get("account") or a.get("accountName") or ""),
                    opening_balance=to_decimal(a.get("opening") or a.get("openingBalance")),
                    net_change=to_decimal(a.get("netChange")),
                    current_balance=to_decimal(a.get("currentBalance")),
                    inflow=to_decimal(a.get("inflow")),
                    outflow=to_decimal(a.get("outflow")),
                    last_txn_at=a.get("lastTxnAt"),
                    note=str(a.get("note") or ""),
                )
                for a in (accounts or [])
                if isinstance(a, dict)
            ]
            return BalanceSummary(month=month, accounts=balances, source="Webhook")

        metadata = await self._detector.detect()
        detected = metadata.detected
        warnings = list(metadata.warnings)
        has_ledger = "ledger" in detected and "accounts" in detected

        if "balanceSummary" in detected and (month == "ALL" or not has_ledger):
            if month != "ALL":
                warnings.append(
                    f"Month filter {month} not applied: Balance Summary holds yearly totals "
                    "and no ledger tab was detected"
                )
            tab = detected["balanceSummary"]
            rows = await self._sheets.get_values(self._data_range(tab))
            accounts = read_summary_rows(rows, tab.col_index_by_name)
            source = "BalanceSummary"
        elif has_ledger:
            account_tab = detected["accounts"]
            ledger_tab = detected["ledger"]
            account_rows, ledger_rows = await self._sheets.batch_get(
                [self._data_range(account_tab), self._data_range(ledger_tab)],
                render="FORMATTED_VALUE",
            )
            accounts = compute_from_ledger(
                account_rows, account_tab.col_index_by_name,
                ledger_rows, ledger_tab.col_index_by_name,
                month,
            )
            source = "Computed"
        else:
            raise SheetsError(
                "Cannot compute balances: missing required tabs (Balance Summary or Ledger+Accounts)",
                status_code=500,
                details={"warnings": warnings},
            )

        self._logger.info("balance_summary_loaded", month=month, source=source, accounts=len(accounts))
        return BalanceSummary(month=month, accounts=accounts, source=source, warnings=warnings)

    @staticmethod
    def _data_range(tab: DetectedTab) -> str:
        last_col = col_index_to_letter(max(tab.col_index_by_name.values()))
        return f"{quote_sheet(tab.title)}!A{tab.header_row + 2}:{last_col}"

    async def drift(self, month: str = "ALL", insights: InsightsClient | None = None) -> DriftReport:
        """Run drift checks over the account summary, with an optional AI summary."""
        summary = await self.summary(month)
        report = run_drift_checks(summary.accounts)

        failing = [c.account for c in report.checks if c.status == "FAIL"]
        if failing:
            self._logger.warning("balance_drift_detected", month=month, accounts=failing)

        if insights is not None and insights.enabled:
            data = report.to_dict()
            report.ai_summary = await insights.summarize_drift(data["checks"], data["totals"])
        return report
