"""External service clients for BookMate."""

from bookmate.clients.insights import (
    InsightResponse,
    InsightsClient,
    OrganizationProfile,
    ReportInsights,
)
from bookmate.clients.sheets import SheetsClient
from bookmate.clients.webhook import AppsScriptClient

__all__ = [
    "AppsScriptClient",
    "InsightResponse",
    "InsightsClient",
    "OrganizationProfile",
    "ReportInsights",
    "SheetsClient",
]
