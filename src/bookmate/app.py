"""Service container wiring clients and services for one account."""

from typing import Any

import structlog

from bookmate.balances import BalanceService
from bookmate.categories import CategoryManager
from bookmate.clients import (
    AppsScriptClient,
    InsightsClient,
    OrganizationProfile,
    ReportInsights,
    SheetsClient,
)
from bookmate.config import AccountConfig, resolve_account
from bookmate.consistency import ConsistencyChecker
from bookmate.inbox import InboxService
from bookmate.pnl import PnLService, PnLSheetReader
from bookmate.reports import Report, ReportTemplate, ShareLinkStore, calculate_period, generate_report
from bookmate.sheet_meta import SheetMetaDetector

logger = structlog.get_logger(__name__)


class BookMate:
    """Clients and services bound to a single spreadsheet account.

    Use as an async context manager so the HTTP client and Sheets thread pool
    are released:

        async with BookMate() as app:
            result = await app.inbox.fetch()
    """

    def __init__(self, account: AccountConfig | None = None, sheets_service: Any = None):
        self.account = account or resolve_account()
        self.webhook = AppsScriptClient(url=self.account.script_url, secret=self.account.script_secret)
        self.sheets = SheetsClient(spreadsheet_id=self.account.spreadsheet_id, service=sheets_service)
        self.detector = SheetMetaDetector(self.sheets)
        self.insights = InsightsClient()

        self.inbox = InboxService(self.webhook)
        self.pnl = PnLService(self.webhook)
        self.pnl_sheets = PnLSheetReader(self.sheets)
        self.balances = BalanceService(self.webhook, self.sheets, self.detector)
        self.categories = CategoryManager(self.sheets)
        self.consistency = ConsistencyChecker(self.balances, self.pnl, self.categories, self.insights)
        self.share_links = ShareLinkStore()

        logger.debug("bookmate_initialized", account_id=self.account.account_id)

    async def close(self) -> None:
        await self.webhook.close()
        self.sheets.close()

    async def __aenter__(self) -> "BookMate":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def report(
        self,
        kind: str = "monthly",
        custom: tuple[str, str] | None = None,
        template: ReportTemplate | None = None,
    ) -> Report:
        """Generate a report from the current P&L, balances and inbox.

        A template, when given, decides the period instead of ``kind``.
        """
        period = template.period() if template else calculate_period(kind, custom=custom)
        snapshot = await self.pnl.get_snapshot()
        summary = await self.balances.summary()
        inbox = await self.inbox.fetch()
        overhead = await self.pnl.get_breakdown("overhead", "month")
        property_person = await self.pnl.get_breakdown("property_person", "month")
        return generate_report(
            period,
            snapshot,
            balances=summary,
            entries=inbox.entries,
            overhead=overhead,
            property_person=property_person,
        )

    async def report_insights(
        self, report: Report, tone: str = "standard", previous: dict[str, Any] | None = None
    ) -> ReportInsights:
        """AI narrative for ``report``, with the account's company as context."""
        profile = OrganizationProfile(business_name=self.account.company_name)
        return await self.insights.report_insights(report.to_dict(), tone, profile, previous)
