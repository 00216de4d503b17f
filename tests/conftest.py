"""Pytest configuration and fixtures."""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("SHEETS_WEBHOOK_URL", "https://script.google.com/macros/s/test/exec")
os.environ.setdefault("SHEETS_WEBHOOK_SECRET", "test-secret")
os.environ.setdefault("GOOGLE_SHEET_ID", "sheet-123")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("SHARE_LINK_SECRET", "test-share-secret")


@pytest.fixture(autouse=True, scope="session")
def _configure_logging():
    """Route structlog to stderr as the CLI does, keeping stdout clean."""
    from bookmate.config import configure_logging

    configure_logging()


@pytest.fixture
def make_response():
    """Factory for MagicMocks shaped like an httpx.Response."""

    def _make(status_code=200, payload=None, text=None, headers=None):
        response = MagicMock()
        response.status_code = status_code
        response.headers = headers or {}
        response.json.return_value = payload
        response.text = text if text is not None else ("" if payload is None else str(payload))
        return response

    return _make


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    client = AsyncMock()
    client.post = AsyncMock()
    client.get = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def mock_inbox_response():
    """Mock getInbox webhook response."""
    return {
        "ok": True,
        "data": [
            {
                "rowNumber": 6,
                "day": "3",
                "month": "Nov",
                "year": "2025",
                "property": "Villa Sunset",
                "typeOfOperation": "EXP - Utilities - Electricity",
                "typeOfPayment": "Bank Transfer - KBank",
                "detail": "PEA bill October",
                "ref": "",
                "debit": 2450,
                "credit": 0,
            },
            {
                "rowNumber": 7,
                "day": "5",
                "month": "Nov",
                "year": "2025",
                "property": "Villa Sunset",
                "typeOfOperation": "Revenue - Rental",
                "typeOfPayment": "Bank Transfer - KBank",
                "detail": "Booking #8812",
                "ref": "",
                "debit": 0,
                "credit": 18000,
            },
            {
                "rowNumber": 8,
                "day": "6",
                "month": "Nov",
                "year": "2025",
                "property": "Beach House",
                "typeOfOperation": "EXP - Cleaning",
                "typeOfPayment": "Cash",
                "detail": "Weekly cleaning",
                "ref": "",
                "debit": 800,
                "credit": 0,
            },
        ],
    }


@pytest.fixture
def mock_pnl_response():
    """Mock getPnL webhook response."""
    return {
        "ok": True,
        "data": {
            "month": {
                "revenue": 120000,
                "overheads": 35000,
                "propertyPersonExpense": 15000,
                "gop": 70000,
                "ebitdaMargin": 58.33,
            },
            "year": {
                "revenue": 1450000,
                "overheads": 410000,
                "propertyPersonExpense": 160000,
                "gop": 880000,
                "ebitdaMargin": 60.69,
            },
            "updatedAt": "2025-11-06T08:00:00Z",
        },
    }


@pytest.fixture
def entry_options():
    """Live dropdown values used by entry validation."""
    from bookmate.entries import EntryOptions

    return EntryOptions(
        properties=["Villa Sunset", "Beach House"],
        type_of_operation=[
            "Revenue - Rental",
            "EXP - Utilities - Electricity",
            "EXP - Cleaning",
            "Transfer",
        ],
        type_of_payment=["Bank Transfer - KBank", "Cash"],
    )


@pytest.fixture
def mock_sheets():
    """A SheetsClient stand-in with async read/write methods."""
    sheets = MagicMock()
    sheets.spreadsheet_id = "sheet-123"
    sheets.get_values = AsyncMock(return_value=[])
    sheets.batch_get = AsyncMock(return_value=[])
    sheets.update_values = AsyncMock(return_value={})
    sheets.clear_values = AsyncMock(return_value=None)
    sheets.get_metadata = AsyncMock(return_value={})
    sheets.list_named_ranges = AsyncMock(return_value=[])
    return sheets
