"""Cross-checks over balances, P&L and category data."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog

from bookmate.balances import BalanceService, BalanceSummary, run_drift_checks
from bookmate.categories import CategoryManager
from bookmate.clients.insights import InsightsClient
from bookmate.config import get_settings
from bookmate.errors import BookMateError
from bookmate.pnl import PnLService

logger = structlog.get_logger(__name__)

PASS = "pass"
WARNING = "warning"
FAIL = "fail"

CATEGORY_CHECKS = ("payments", "properties", "expenses", "revenues")


@dataclass
class CheckResult:
    name: str
    status: str
    details: str
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "status": self.status, "details": self.details}
        if self.data is not None:
            result["data"] = self.data
        return result


@dataclass
class ConsistencyReport:
    checks: list[CheckResult]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    ai_summary: str | None = None

    @property
    def summary(self) -> dict[str, int]:
        return {
            "totalChecks": len(self.checks),
            "passed": sum(1 for c in self.checks if c.status == PASS),
            "warnings": sum(1 for c in self.checks if c.status == WARNING),
            "failed": sum(1 for c in self.checks if c.status == FAIL),
        }

    @property
    def overall(self) -> str:
        summary = self.summary
        if summary["failed"]:
            return FAIL
        if summary["warnings"]:
            return WARNING
        return PASS

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "overall": self.overall,
            "checks": [c.to_dict() for c in self.checks],
            "summary": self.summary,
        }
        if self.ai_summary:
            result["aiSummary"] = self.ai_summary
        return result


def grade_drift(drift_total: Decimal, warn_threshold: float, fail_threshold: float) -> str:
    """``pass`` within the warn threshold, ``fail`` beyond the fail threshold."""
    magnitude = abs(drift_total)
    if magnitude <= Decimal(str(warn_threshold)):
        return PASS
    if magnitude <= Decimal(str(fail_threshold)):
        return WARNING
    return FAIL


class ConsistencyChecker:
    """Runs every data check, isolating failures so one bad source does not
    hide the others."""

    def __init__(
        self,
        balances: BalanceService,
        pnl: PnLService,
        categories: CategoryManager,
        insights: InsightsClient | None = None,
    ):
        self._balances = balances
        self._pnl = pnl
        self._categories = categories
        self._insights = insights
        self._logger = logger.bind(component="consistency")

    async def _guard(self, name: str, check: Callable[[], Awaitable[CheckResult]]) -> CheckResult:
        try:
            return await check()
        except BookMateError as e:
            self._logger.warning("consistency_check_failed", check=name, error=e.message)
            return CheckResult(name=name, status=FAIL, details=e.message)

    async def run(self, month: str = "ALL") -> ConsistencyReport:
        settings = get_settings()
        checks: list[CheckResult] = []
        summary_holder: list[BalanceSummary] = []

        async def balance_check() -> CheckResult:
            summary = await self._balances.summary(month)
            summary_holder.append(summary)
            total = summary.totals()["currentBalance"]
            count = len(summary.accounts)
            return CheckResult(
                name="Balance Data Sync",
                status=PASS if count > 0 else WARNING,
                details=f"{count} accounts synced, total balance: {total:,.2f}",
                data={"accountCount": count, "totalBalance": float(total), "source": summary.source},
            )

        async def pnl_check() -> CheckResult:
            snapshot = await self._pnl.get_snapshot()
            revenue = snapshot.month.revenue
            expenses = snapshot.month.overheads
            has_data = revenue > 0 or expenses > 0
            return CheckResult(
                name="P&L Data Sync",
                status=PASS if has_data else WARNING,
                details=f"Revenue: {revenue:,.2f}, Expenses: {expenses:,.2f}",
                data={"monthRevenue": float(revenue), "monthExpenses": float(expenses), "hasData": has_data},
            )

        def category_check(kind: str) -> Callable[[], Awaitable[CheckResult]]:
            async def check() -> CheckResult:
                items = await self._categories.list(kind)
                return CheckResult(
                    name=f"Categories: {kind}",
                    status=PASS if items else WARNING,
                    details=f"{len(items)} items found",
                    data={"itemCount": len(items), "category": kind},
                )

            return check

        checks.append(await self._guard("Balance Data Sync", balance_check))
        checks.append(await self._guard("P&L Data Sync", pnl_check))
        for kind in CATEGORY_CHECKS:
            checks.append(await self._guard(f"Categories: {kind}", category_check(kind)))

        report = ConsistencyReport(checks=checks)

        if summary_holder:
            drift = run_drift_checks(summary_holder[0].accounts, settings.drift_warn_threshold)
            totals = drift.totals()
            status = grade_drift(
                totals["drift_total"], settings.drift_warn_threshold, settings.drift_fail_threshold
            )
            flagged = [c.account for c in drift.checks if c.status != "OK"]
            checks.append(
                CheckResult(
                    name="Balance Drift",
                    status=status,
                    details=f"Total drift {totals['drift_total']:,.2f} THB across {len(drift.checks)} accounts",
                    data={"driftTotal": float(totals["drift_total"]), "flaggedAccounts": flagged},
                )
            )
            if self._insights is not None and self._insights.enabled:
                data = drift.to_dict()
                report.ai_summary = await self._insights.summarize_drift(data["checks"], data["totals"])

        self._logger.info("consistency_check_completed", overall=report.overall, **report.summary)
        return report
