"""Tests for balance reconciliation."""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from bookmate.balances import (
    AccountBalance,
    BalanceService,
    UploadedBalance,
    compute_from_ledger,
    compute_running_balances,
    is_valid_balance,
    latest_balances,
    parse_likely_balance,
    parse_timestamp,
    read_summary_rows,
    reconcile_net_cash,
    run_drift_checks,
    split_cash_and_bank,
)
from bookmate.entries import InboxEntry
from bookmate.errors import SheetsError
from bookmate.sheet_meta import DetectedTab, SheetMetadata

SUMMARY_COLUMNS = {
    "accountName": 0,
    "openingBalance": 1,
    "netChange": 2,
    "currentBalance": 3,
    "lastTxnAt": 4,
    "inflow(+)": 5,
    "outflow(-)": 6,
}
ACCOUNT_COLUMNS = {"accountName": 0, "openingBalance": 1}
LEDGER_COLUMNS = {"date": 0, "accountName": 1, "amount": 2, "month": 3}

ACCOUNT_ROWS = [["Cash", 5000], ["KBank", "10,000"], ["", 1]]
LEDGER_ROWS = [
    ["2025-11-01", "Cash", -200, "NOV"],
    ["2025-11-03", "Cash", "1,000", "NOV"],
    ["2025-10-20", "Cash", 500, "OCT"],
    ["2025-11-02", "Ghost", 50, "NOV"],
    ["2025-11-04", "KBank", 300, "Nov"],
]


def _tab(title, columns, header_row=0):
    return DetectedTab(
        title=title,
        sheet_id=1,
        index=0,
        header_row=header_row,
        col_index_by_name=columns,
        headers=list(columns),
        match_score=40.0,
    )


def _detector(**tabs):
    detector = MagicMock()
    detector.detect = AsyncMock(
        return_value=SheetMetadata(
            spreadsheet_id="sheet-123",
            detected=tabs,
            all_sheets=[],
            warnings=[],
            detected_at=datetime.now(UTC),
        )
    )
    return detector


class TestUploadedBalances:
    """Tests for uploaded balance selection."""

    def test_parse_timestamp(self):
        """Test ISO and sheet date formats, naive values as UTC."""
        assert parse_timestamp("2025-11-05T08:00:00Z") == datetime(2025, 11, 5, 8, tzinfo=UTC)
        assert parse_timestamp("05/11/2025") == datetime(2025, 11, 5, tzinfo=UTC)
        assert parse_timestamp("") is None
        assert parse_timestamp("yesterday") is None

    def test_serial_timestamps(self):
        """Test that unformatted date cells are read as serial day numbers."""
        assert parse_timestamp(45658) == datetime(2025, 1, 1, tzinfo=UTC)
        assert parse_timestamp(45658.5) == datetime(2025, 1, 1, 12, tzinfo=UTC)

    def test_later_serial_timestamp_wins(self):
        """Test that the newest upload wins when timestamps are serial numbers."""
        latest = latest_balances([[45000.5, "KBank", 100, ""], [45600.5, "KBank", 200, ""]])

        assert latest["KBank"].balance == Decimal("200")
        assert latest["KBank"].timestamp.startswith("2024-")

    def test_latest_balance_per_bank(self):
        """Test that the newest parseable row wins per bank."""
        rows = [
            ["2025-11-01 08:00:00", "KBank", 1000, ""],
            ["2025-11-05 08:00:00", "KBank", 1200, "new"],
            ["2025-11-03 08:00:00", "KBank", 1100, ""],
            ["", "Cash", 500],
            ["2025-11-05", "SCB", "", ""],
            ["01/11/2025", "Cash", 700, ""],
        ]

        latest = latest_balances(rows)

        assert set(latest) == {"KBank", "Cash"}
        assert latest["KBank"].balance == Decimal("1200")
        assert latest["KBank"].note == "new"
        assert latest["Cash"].balance == Decimal("700")

    def test_split_cash_and_bank(self):
        """Test that only the Cash account counts as cash."""
        balances = {
            "KBank": UploadedBalance("KBank", Decimal("1200"), ""),
            "SCB": UploadedBalance("SCB", Decimal("300"), ""),
            "Cash": UploadedBalance("Cash", Decimal("700"), ""),
        }

        split = split_cash_and_bank(balances)

        assert split.to_dict() == {"bankBalance": 1500.0, "cashBalance": 700.0, "total": 2200.0}

    def test_reconcile_net_cash(self):
        """Test net cash from named ranges with a revenue-minus-overheads fallback."""
        net = reconcile_net_cash(
            {"Month_Net_Cash": 5000, "Year_Total_Revenue": 100, "Year_Total_Overheads": 40}
        )

        assert net.month == Decimal("5000")
        assert net.month_source == "Month_Net_Cash"
        assert net.year == Decimal("60")
        assert net.year_source == "computed"
        assert reconcile_net_cash({}).month_source == "missing"


class TestRunningBalances:
    """Tests for rolling uploaded balances forward."""

    def test_compute_running_balances(self, mock_inbox_response):
        """Test that entries paid through a bank adjust its balance."""
        entries = [InboxEntry.from_webhook(item) for item in mock_inbox_response["data"]]
        uploaded = {
            "Bank Transfer - KBank": UploadedBalance("Bank Transfer - KBank", Decimal("1000"), "2025-11-01"),
            "Cash": UploadedBalance("Cash", Decimal("5000"), "2025-11-01"),
        }

        balances = compute_running_balances(uploaded, entries)

        assert [b.bank_name for b in balances] == ["Bank Transfer - KBank", "Cash"]
        kbank = balances[0].to_dict()
        assert kbank["property"] == "Bank Transfer - KBank"
        assert kbank["balance"] == 16550.0
        assert kbank["transactionCount"] == 2
        assert kbank["variance"] == 15550.0
        assert balances[1].current_balance == Decimal("4200")


class TestAccountBalances:
    """Tests for Balance Summary rows and ledger computation."""

    def test_read_summary_rows(self):
        """Test mapping rows through detected columns."""
        rows = [["Cash", 5000, 800, 5800, "", 1000, 200], ["", 1, 2, 3]]

        accounts = read_summary_rows(rows, SUMMARY_COLUMNS)

        assert len(accounts) == 1
        assert accounts[0].current_balance == Decimal("5800")
        assert accounts[0].outflow == Decimal("200")
        assert accounts[0].last_txn_at is None

    def test_compute_from_ledger_for_month(self):
        """Test ledger movements filtered to one month."""
        accounts = compute_from_ledger(ACCOUNT_ROWS, ACCOUNT_COLUMNS, LEDGER_ROWS, LEDGER_COLUMNS, "nov")

        by_name = {a.account_name: a for a in accounts}
        assert set(by_name) == {"Cash", "KBank"}
        cash = by_name["Cash"]
        assert cash.inflow == Decimal("1000")
        assert cash.outflow == Decimal("200")
        assert cash.current_balance == Decimal("5800")
        assert cash.last_txn_at == "2025-11-03T00:00:00+00:00"
        assert by_name["KBank"].current_balance == Decimal("10300")

    def test_compute_from_ledger_all_months(self):
        """Test that ALL includes every month."""
        accounts = compute_from_ledger(ACCOUNT_ROWS, ACCOUNT_COLUMNS, LEDGER_ROWS, LEDGER_COLUMNS)
        assert accounts[0].inflow == Decimal("1500")


class TestDriftChecks:
    """Tests for drift grading."""

    def _account(self, name, current):
        return AccountBalance(
            account_name=name,
            opening_balance=Decimal("1000"),
            inflow=Decimal("500"),
            outflow=Decimal("200"),
            current_balance=Decimal(current),
        )

    def test_statuses_and_notes(self):
        """Test OK, WARN and FAIL grading with notes."""
        report = run_drift_checks(
            [self._account("Cash", "1300"), self._account("KBank", "1350"), self._account("SCB", "1000")],
            warn_threshold=100,
        )

        ok, warn, fail = report.checks
        assert ok.status == "OK"
        assert ok.notes[0] == "Balance is accurate within 1 THB"
        assert warn.status == "WARN"
        assert warn.notes[:2] == ["Minor drift detected: 50.00 THB", "Recommend reviewing recent transactions"]
        assert fail.status == "FAIL"
        assert "LOWER than expected" in fail.notes[2]
        assert fail.notes[-1] == "Transaction volume: 700.00 THB"

    def test_totals(self):
        """Test totals across checks and the overall status."""
        report = run_drift_checks(
            [self._account("Cash", "1300"), self._account("SCB", "1000")], warn_threshold=100
        )

        totals = report.to_dict()["totals"]
        assert totals["expected_total"] == 2600.0
        assert totals["actual_total"] == 2300.0
        assert totals["drift_total"] == -300.0
        assert totals["status"] == "FAIL"
        assert "aiSummary" not in report.to_dict()


class TestBalanceParsing:
    """Tests for reading balances out of OCR text."""

    def test_keyword_line_is_high_confidence(self):
        """Test that a balance keyword line wins."""
        parsed = parse_likely_balance("KBank\nAvailable balance 12,345.67\nRef 99887766")

        assert parsed.value == Decimal("12345.67")
        assert parsed.confidence == "high"
        assert parsed.source_line == "Available balance 12,345.67"

    def test_thai_keyword(self):
        """Test Thai balance labels."""
        parsed = parse_likely_balance("ยอดเงินคงเหลือ 8,500.00 บาท")
        assert parsed.value == Decimal("8500.00")
        assert parsed.confidence == "high"

    def test_largest_plausible_amount_is_medium(self):
        """Test the fallback to the largest amount under 100M."""
        parsed = parse_likely_balance("Transfer 250,000,000.00\nFee 1,500.00")
        assert parsed.value == Decimal("1500.00")
        assert parsed.confidence == "medium"

    def test_implausible_amount_is_low(self):
        """Test that only huge amounts give low confidence."""
        parsed = parse_likely_balance("Ref 123456789012")
        assert parsed.confidence == "low"

    def test_no_amounts(self):
        """Test that text without amounts yields None."""
        assert parse_likely_balance("hello") is None
        assert parse_likely_balance("") is None

    def test_is_valid_balance(self):
        """Test the plausible balance range."""
        assert is_valid_balance(0)
        assert is_valid_balance("1500.50")
        assert is_valid_balance(100_000_000)
        assert not is_valid_balance(100_000_001)
        assert not is_valid_balance(-1)
        assert not is_valid_balance(True)
        assert not is_valid_balance("nan")
        assert not is_valid_balance("abc")


class TestBalanceService:
    """Tests for the balance service."""

    @pytest.fixture
    def webhook(self):
        client = MagicMock()
        client.balances_append = AsyncMock(return_value={"ok": True})
        client.balances_get_latest = AsyncMock(
            return_value={
                "ok": True,
                "allBalances": {
                    "Cash": {"bankName": "Cash", "balance": 700, "timestamp": "2025-11-01T00:00:00Z"},
                },
            }
        )
        client.balance_get_summary = AsyncMock(
            return_value={
                "ok": True,
                "data": {
                    "accounts": [
                        {"account": "Cash", "opening": 1000, "inflow": 500, "outflow": 200, "currentBalance": 1300},
                    ]
                },
            }
        )
        return client

    @pytest.mark.asyncio
    async def test_latest_from_webhook(self, webhook):
        """Test latest balances from the webhook listing."""
        service = BalanceService(webhook, ttl=60)

        latest = await service.latest()

        assert latest["Cash"].balance == Decimal("700")

    @pytest.mark.asyncio
    async def test_running_balances_cache_uploads_not_results(self, webhook, mock_sheets):
        """Test that the balance tab is read once per TTL while entries are applied per call."""
        mock_sheets.get_values.return_value = [["2025-11-01", "KBank", 1000, ""]]
        service = BalanceService(webhook, sheets=mock_sheets, detector=_detector(), ttl=60)
        credit = InboxEntry(
            row_number=6,
            day="2",
            month="NOV",
            year="2025",
            property="Villa",
            type_of_operation="Revenue - Rental",
            type_of_payment="KBank",
            detail="Deposit",
            credit=Decimal("500"),
        )

        first = await service.running_balances([])
        second = await service.running_balances([credit])

        assert first[0].current_balance == Decimal("1000")
        assert second[0].current_balance == Decimal("1500")
        mock_sheets.get_values.assert_awaited_once_with("'Bank & Cash Balance'!A2:D")

    @pytest.mark.asyncio
    async def test_save_clears_cache(self, webhook, mock_sheets):
        """Test that an upload invalidates cached balances."""
        mock_sheets.get_values.return_value = [["2025-11-01", "Cash", 5000, ""]]
        service = BalanceService(webhook, sheets=mock_sheets, detector=_detector(), ttl=60)
        await service.running_balances([])

        await service.save("Cash", 5100.0)
        await service.running_balances([])

        webhook.balances_append.assert_awaited_once_with("Cash", 5100.0, "")
        assert mock_sheets.get_values.await_count == 2

    @pytest.mark.asyncio
    async def test_summary_from_balance_summary_tab(self, webhook, mock_sheets):
        """Test the whole-year path through the Balance Summary tab."""
        mock_sheets.get_values.return_value = [["Cash", 5000, 800, 5800, "", 1000, 200]]
        detector = _detector(balanceSummary=_tab("Balance Summary", SUMMARY_COLUMNS, header_row=1))
        service = BalanceService(webhook, sheets=mock_sheets, detector=detector, ttl=60)

        summary = await service.summary()

        assert summary.source == "BalanceSummary"
        assert summary.totals()["currentBalance"] == Decimal("5800")
        mock_sheets.get_values.assert_awaited_once_with("'Balance Summary'!A3:G")

    @pytest.mark.asyncio
    async def test_summary_month_prefers_ledger(self, webhook, mock_sheets):
        """Test that a month filter computes from the ledger when present."""
        mock_sheets.batch_get.return_value = [ACCOUNT_ROWS, LEDGER_ROWS]
        detector = _detector(
            balanceSummary=_tab("Balance Summary", SUMMARY_COLUMNS, header_row=1),
            accounts=_tab("Accounts", ACCOUNT_COLUMNS),
            ledger=_tab("Ledger", LEDGER_COLUMNS),
        )
        service = BalanceService(webhook, sheets=mock_sheets, detector=detector, ttl=60)

        summary = await service.summary("NOV")

        assert summary.source == "Computed"
        assert summary.month == "NOV"
        assert mock_sheets.batch_get.call_args.args[0] == ["'Accounts'!A2:B", "'Ledger'!A2:D"]
        assert mock_sheets.batch_get.call_args.kwargs["render"] == "FORMATTED_VALUE"
        assert summary.to_dict()["totals"]["inflow"] == 1300.0

    @pytest.mark.asyncio
    async def test_summary_month_without_ledger_warns(self, webhook, mock_sheets):
        """Test the yearly fallback when a month is asked for but no ledger exists."""
        detector = _detector(balanceSummary=_tab("Balance Summary", SUMMARY_COLUMNS, header_row=1))
        service = BalanceService(webhook, sheets=mock_sheets, detector=detector, ttl=60)

        summary = await service.summary("NOV")

        assert summary.source == "BalanceSummary"
        assert any("Month filter NOV not applied" in w for w in summary.warnings)

    @pytest.mark.asyncio
    async def test_summary_without_tabs_raises(self, webhook, mock_sheets):
        """Test that a workbook without usable tabs raises SheetsError."""
        service = BalanceService(webhook, sheets=mock_sheets, detector=_detector(), ttl=60)

        with pytest.raises(SheetsError, match="missing required tabs") as exc_info:
            await service.summary()

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_summary_via_webhook(self, webhook):
        """Test the webhook path when no Sheets client is configured."""
        service = BalanceService(webhook, ttl=60)

        summary = await service.summary("jan")

        webhook.balance_get_summary.assert_awaited_once_with("JAN")
        assert summary.source == "Webhook"
        assert summary.accounts[0].opening_balance == Decimal("1000")

    @pytest.mark.asyncio
    async def test_drift_adds_ai_summary(self, webhook):
        """Test that an enabled insights client adds a summary."""
        insights = MagicMock()
        insights.enabled = True
        insights.summarize_drift = AsyncMock(return_value="All balances reconcile.")
        service = BalanceService(webhook, ttl=60)

        report = await service.drift("ALL", insights=insights)

        assert report.status == "OK"
        assert report.to_dict()["aiSummary"] == "All balances reconcile."
        checks, totals = insights.summarize_drift.call_args.args
        assert checks[0]["account"] == "Cash"
        assert totals["status"] == "OK"
