"""Tests for inbox entries, validation and the inbox service."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from bookmate.entries import (
    InboxEntry,
    format_entry_date,
    month_name,
    parse_inbox_rows,
    to_decimal,
    validate_entry,
)
from bookmate.errors import ValidationError
from bookmate.inbox import InboxService


def _payload(**overrides):
    payload = {
        "day": "12",
        "month": "11",
        "year": "2025",
        "property": "Villa Sunset",
        "typeOfOperation": "EXP - Cleaning",
        "typeOfPayment": "Cash",
        "detail": "Deep clean",
        "ref": "",
        "debit": "1,200",
        "credit": "",
    }
    payload.update(overrides)
    return payload


class TestHelpers:
    """Tests for date and number helpers."""

    def test_to_decimal(self):
        """Test lenient number parsing."""
        assert to_decimal("1,234.50") == Decimal("1234.50")
        assert to_decimal("") == Decimal("0")
        assert to_decimal(None) == Decimal("0")
        assert to_decimal("n/a") == Decimal("0")
        assert to_decimal(12) == Decimal("12")

    def test_month_name(self):
        """Test numeric months convert to abbreviations."""
        assert month_name(11) == "Nov"
        assert month_name("01") == "Jan"
        assert month_name("Nov") == "Nov"
        assert month_name("13") == "13"

    def test_format_entry_date(self):
        """Test DD/MM/YYYY rendering."""
        assert format_entry_date("3", "Nov", "2025") == "03/11/2025"
        assert format_entry_date("15", "Sep", 2025) == "15/09/2025"
        assert format_entry_date("", "Nov", "2025") == ""


class TestInboxEntry:
    """Tests for the entry model."""

    def test_from_webhook(self, mock_inbox_response):
        """Test building an entry from a getInbox item."""
        entry = InboxEntry.from_webhook(mock_inbox_response["data"][1])

        assert entry.id == "row-7"
        assert entry.credit == Decimal("18000")
        assert entry.amount == Decimal("18000")
        assert entry.date == "05/11/2025"
        assert entry.to_dict()["typeOfPayment"] == "Bank Transfer - KBank"

    def test_amount_prefers_debit(self, mock_inbox_response):
        """Test that amount is the debit when one is present."""
        entry = InboxEntry.from_webhook(mock_inbox_response["data"][0])
        assert entry.amount == Decimal("2450")

    def test_parse_rows_skips_blanks(self):
        """Test raw row parsing keeps row numbers and skips empty rows."""
        rows = [
            ["", "1", "Nov", "2025", "Villa Sunset", "EXP - Cleaning", "Cash", "Mop", "", 300, ""],
            ["", "", "", "", "", "", "", "", "", "", ""],
            ["", "2", "Nov", "2025", "Villa Sunset", "Revenue - Rental", "Cash", "Stay"],
        ]

        entries = parse_inbox_rows(rows)

        assert [e.row_number for e in entries] == [6, 8]
        assert entries[0].debit == Decimal("300")
        assert entries[1].credit == Decimal("0")


class TestValidateEntry:
    """Tests for entry validation rules."""

    def test_valid_entry(self, entry_options):
        """Test that a valid entry is cleaned."""
        clean = validate_entry(_payload(), entry_options)

        assert clean["month"] == "Nov"
        assert clean["debit"] == Decimal("1200")
        assert clean["credit"] == Decimal("0")

    def test_missing_fields(self, entry_options):
        """Test that missing required fields are listed."""
        with pytest.raises(ValidationError) as exc_info:
            validate_entry(_payload(day="", detail=" "), entry_options)

        assert exc_info.value.details == {"missing": ["day", "detail"]}
        assert exc_info.value.status_code == 400

    def test_property_required_unless_transfer(self, entry_options):
        """Test that revenue and expense entries need a property."""
        with pytest.raises(ValidationError, match="Property is required"):
            validate_entry(_payload(property=""), entry_options)

    def test_uncategorized_rejected(self, entry_options):
        """Test that Uncategorized entries are rejected."""
        with pytest.raises(ValidationError, match="Uncategorized"):
            validate_entry(_payload(typeOfOperation="Uncategorized"), entry_options)

    def test_unknown_payment_type(self, entry_options):
        """Test that payments must come from the live list."""
        with pytest.raises(ValidationError, match="Invalid payment type"):
            validate_entry(_payload(typeOfPayment="Bitcoin"), entry_options)

    def test_negative_amount(self, entry_options):
        """Test that negative debits are rejected."""
        with pytest.raises(ValidationError, match="Debit cannot be negative"):
            validate_entry(_payload(debit="-5"), entry_options)

    def test_non_numeric_amount(self, entry_options):
        """Test that junk amounts are rejected."""
        with pytest.raises(ValidationError, match="Credit must be a valid number"):
            validate_entry(_payload(credit="abc"), entry_options)

    def test_transfer_rules(self, entry_options):
        """Test transfer ref, detail and single-sided amount rules."""
        transfer = _payload(
            property="",
            typeOfOperation="Transfer",
            detail="Transfer to Cash",
            ref="T-001",
            debit="5000",
        )
        assert validate_entry(transfer, entry_options)["ref"] == "T-001"

        with pytest.raises(ValidationError, match="Ref is required"):
            validate_entry({**transfer, "ref": ""}, entry_options)
        with pytest.raises(ValidationError, match='"Transfer to" or "Transfer from"'):
            validate_entry({**transfer, "detail": "Move money"}, entry_options)
        with pytest.raises(ValidationError, match="not both"):
            validate_entry({**transfer, "credit": "5000"}, entry_options)
        with pytest.raises(ValidationError, match="either a debit or credit"):
            validate_entry({**transfer, "debit": ""}, entry_options)


class TestInboxService:
    """Tests for the cached inbox service."""

    @pytest.fixture
    def webhook(self, mock_inbox_response):
        client = MagicMock()
        client.get_inbox = AsyncMock(return_value=mock_inbox_response["data"])
        client.delete_entry = AsyncMock(return_value={"ok": True, "deletedRow": 7})
        client.append_entry = AsyncMock(return_value={"ok": True, "row": 9})
        return client

    @pytest.mark.asyncio
    async def test_fetch_is_cached(self, webhook):
        """Test that a second fetch within the TTL is served from cache."""
        service = InboxService(webhook, ttl=5)

        first = await service.fetch()
        second = await service.fetch()

        assert first.cached is False
        assert second.cached is True
        assert second.cache_age is not None
        assert len(second.entries) == 3
        webhook.get_inbox.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delete_clears_cache(self, webhook):
        """Test that deleting a row invalidates the cache."""
        service = InboxService(webhook, ttl=5)
        await service.fetch()

        await service.delete(7)
        result = await service.fetch()

        webhook.delete_entry.assert_awaited_once_with(7)
        assert result.cached is False
        assert webhook.get_inbox.await_count == 2

    @pytest.mark.asyncio
    async def test_delete_rejects_header_rows(self, webhook):
        """Test that rows above the data area cannot be deleted."""
        service = InboxService(webhook, ttl=5)

        with pytest.raises(ValidationError, match="Invalid row number"):
            await service.delete(3)
        webhook.delete_entry.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submit_validates_and_appends(self, webhook, entry_options):
        """Test that submit sends numeric amounts and clears the cache."""
        service = InboxService(webhook, ttl=5)
        await service.fetch()

        result = await service.submit(_payload(), entry_options)

        assert result["row"] == 9
        sent = webhook.append_entry.call_args.args[0]
        assert sent["debit"] == 1200.0
        assert sent["month"] == "Nov"
        assert (await service.fetch()).cached is False

    @pytest.mark.asyncio
    async def test_submit_invalid_does_not_append(self, webhook, entry_options):
        """Test that invalid entries never reach the webhook."""
        service = InboxService(webhook, ttl=5)

        with pytest.raises(ValidationError):
            await service.submit(_payload(typeOfOperation="Unknown"), entry_options)
        webhook.append_entry.assert_not_awaited()
