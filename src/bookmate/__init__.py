"""BookMate - bookkeeping on top of a Google Sheets workbook."""

__version__ = "0.1.0"

from bookmate.app import BookMate
from bookmate.balances import BalanceService, parse_likely_balance, run_drift_checks
from bookmate.cache import TTLCache
from bookmate.categories import CategoryManager
from bookmate.clients import AppsScriptClient, InsightsClient, SheetsClient
from bookmate.config import configure_logging, get_settings
from bookmate.consistency import ConsistencyChecker
from bookmate.errors import BookMateError
from bookmate.inbox import InboxService
from bookmate.pnl import PnLService, PnLSheetReader
from bookmate.reports import (
    ShareLinkStore,
    calculate_period,
    find_template,
    generate_report,
    next_run,
    report_to_csv,
    transactions_to_csv,
)
from bookmate.sheet_meta import SheetMetaDetector

__all__ = [
    # Version
    "__version__",
    # Services
    "BookMate",
    "InboxService",
    "PnLService",
    "PnLSheetReader",
    "BalanceService",
    "CategoryManager",
    "ConsistencyChecker",
    "SheetMetaDetector",
    # Clients
    "AppsScriptClient",
    "SheetsClient",
    "InsightsClient",
    # Reconciliation helpers
    "parse_likely_balance",
    "run_drift_checks",
    # Reports
    "ShareLinkStore",
    "calculate_period",
    "generate_report",
    "next_run",
    "find_template",
    "report_to_csv",
    "transactions_to_csv",
    # Infrastructure
    "TTLCache",
    "BookMateError",
    "get_settings",
    "configure_logging",
]
