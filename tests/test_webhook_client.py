"""Tests for the Apps Script webhook client."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from bookmate.clients.webhook import AppsScriptClient, check_month, check_period
from bookmate.errors import ConfigurationError, ValidationError, WebhookAuthError, WebhookError


@pytest.fixture
def client():
    """Create an AppsScriptClient instance."""
    return AppsScriptClient(
        url="https://script.google.com/macros/s/abc/exec",
        secret="s3cret",
        max_retries=2,
    )


class TestAppsScriptClientInit:
    """Tests for AppsScriptClient initialization."""

    def test_init_with_explicit_params(self):
        """Test initialization with explicit parameters."""
        client = AppsScriptClient(url="https://custom", secret="x", timeout=5, max_retries=0)

        assert client.url == "https://custom"
        assert client._secret == "x"
        assert client._timeout == 5
        assert client._max_retries == 0

    def test_init_from_settings(self):
        """Test that URL and secret default to settings."""
        from bookmate.config.settings import get_settings

        get_settings.cache_clear()
        client = AppsScriptClient()

        assert client.url == "https://script.google.com/macros/s/test/exec"
        assert client._secret == "test-secret"

    @pytest.mark.asyncio
    async def test_missing_url_raises_configuration_error(self):
        """Test that calls fail fast without a URL."""
        client = AppsScriptClient(url="", secret="x")
        client.url = ""

        with pytest.raises(ConfigurationError, match="SHEETS_WEBHOOK_URL"):
            await client.call("getPnL")


class TestCall:
    """Tests for the call envelope and redirect handling."""

    @pytest.mark.asyncio
    async def test_posts_text_plain_json_with_secret(self, client, make_response):
        """Test the request body and content type."""
        response = make_response(200, {"ok": True, "data": []})

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=response)
            mock_get.return_value = mock_http

            result = await client.call("getInbox")

            assert result == {"ok": True, "data": []}
            args, kwargs = mock_http.post.call_args
            assert args[0] == client.url
            assert kwargs["headers"]["Content-Type"] == "text/plain;charset=utf-8"
            assert json.loads(kwargs["content"]) == {"secret": "s3cret", "action": "getInbox"}

    @pytest.mark.asyncio
    async def test_append_omits_action(self, client, make_response):
        """Test that a plain append sends no action field."""
        response = make_response(200, {"ok": True, "row": 42})

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=response)
            mock_get.return_value = mock_http

            result = await client.append_entry({"day": "1", "month": "Nov", "year": "2025"})

            body = json.loads(mock_http.post.call_args.kwargs["content"])
            assert "action" not in body
            assert body["day"] == "1"
            assert result["row"] == 42

    @pytest.mark.asyncio
    async def test_follows_redirect_with_single_get(self, client, make_response):
        """Test that a 302 is followed by exactly one GET."""
        redirect = make_response(302, headers={"location": "https://script.googleusercontent.com/echo"})
        final = make_response(200, {"ok": True, "data": {"month": {}, "year": {}}})

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=redirect)
            mock_http.get = AsyncMock(return_value=final)
            mock_get.return_value = mock_http

            result = await client.get_pnl()

            mock_http.get.assert_awaited_once_with("https://script.googleusercontent.com/echo")
            assert result["ok"] is True

    @pytest.mark.asyncio
    async def test_http_error_truncates_body(self, client, make_response):
        """Test that non-2xx responses raise WebhookError with a short body."""
        response = make_response(500, text="x" * 500)

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=response)
            mock_get.return_value = mock_http

            with pytest.raises(WebhookError) as exc_info:
                await client.call("getPnL")

            assert exc_info.value.status_code == 502
            assert exc_info.value.details["status"] == 500
            assert len(exc_info.value.details["body"]) == 200

    @pytest.mark.asyncio
    async def test_non_json_response(self, client, make_response):
        """Test that an HTML body raises WebhookError."""
        response = make_response(200, text="<html>login</html>")
        response.json.side_effect = ValueError("not json")

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=response)
            mock_get.return_value = mock_http

            with pytest.raises(WebhookError, match="non-JSON"):
                await client.call("getPnL")

    @pytest.mark.asyncio
    async def test_unauthorized_raises_auth_error(self, client, make_response):
        """Test that an Unauthorized envelope maps to WebhookAuthError."""
        response = make_response(200, {"ok": False, "error": "Unauthorized"})

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=response)
            mock_get.return_value = mock_http

            with pytest.raises(WebhookAuthError) as exc_info:
                await client.call("getInbox")

            assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_error_envelope_raises_webhook_error(self, client, make_response):
        """Test that other ok=false envelopes raise WebhookError with the message."""
        response = make_response(200, {"ok": False, "error": "Row 3 is a header row"})

        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=response)
            mock_get.return_value = mock_http

            with pytest.raises(WebhookError, match="Row 3 is a header row"):
                await client.delete_entry(3)


class TestRetries:
    """Tests for transport retries."""

    @pytest.mark.asyncio
    async def test_retries_transport_errors_then_succeeds(self, client, make_response):
        """Test exponential backoff on connection errors."""
        response = make_response(200, {"ok": True})

        with patch.object(client, "_get_client") as mock_get, patch(
            "bookmate.clients.webhook.asyncio.sleep", new=AsyncMock()
        ) as mock_sleep:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(side_effect=[httpx.ConnectError("boom"), response])
            mock_get.return_value = mock_http

            result = await client.call("getPnL")

            assert result == {"ok": True}
            assert mock_http.post.await_count == 2
            mock_sleep.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, client):
        """Test that WebhookError is raised once retries are exhausted."""
        with patch.object(client, "_get_client") as mock_get, patch(
            "bookmate.clients.webhook.asyncio.sleep", new=AsyncMock()
        ) as mock_sleep:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(side_effect=httpx.ConnectError("down"))
            mock_get.return_value = mock_http

            with pytest.raises(WebhookError, match="Webhook request failed"):
                await client.call("getPnL")

            assert mock_http.post.await_count == 3
            assert [c.args[0] for c in mock_sleep.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_http_errors_are_not_retried(self, client, make_response):
        """Test that a 500 response is not retried."""
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=make_response(500, text="oops"))
            mock_get.return_value = mock_http

            with pytest.raises(WebhookError):
                await client.call("getPnL")

            assert mock_http.post.await_count == 1

    @pytest.mark.asyncio
    async def test_redirect_get_is_retried_without_reposting(self, client, make_response):
        """Test that a failed redirect GET is retried while the POST is sent once."""
        redirect = make_response(302, headers={"location": "https://script.googleusercontent.com/echo"})
        final = make_response(200, {"ok": True, "row": 7})

        with patch.object(client, "_get_client") as mock_get, patch(
            "bookmate.clients.webhook.asyncio.sleep", new=AsyncMock()
        ) as mock_sleep:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=redirect)
            mock_http.get = AsyncMock(side_effect=[httpx.ReadTimeout("slow"), final])
            mock_get.return_value = mock_http

            result = await client.append_entry({"day": "1", "month": "NOV", "year": "2025"})

            assert result["row"] == 7
            assert mock_http.post.await_count == 1
            assert mock_http.get.await_count == 2
            mock_sleep.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_post_read_timeout_is_not_retried(self, client):
        """Test that a POST which may have reached the script is not re-sent."""
        with patch.object(client, "_get_client") as mock_get, patch(
            "bookmate.clients.webhook.asyncio.sleep", new=AsyncMock()
        ) as mock_sleep:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
            mock_get.return_value = mock_http

            with pytest.raises(WebhookError, match="Webhook request failed") as exc_info:
                await client.call("deleteEntry", rowNumber=9)

            assert mock_http.post.await_count == 1
            assert exc_info.value.details["step"] == "post"
            mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connect_timeout_is_retried(self, client, make_response):
        """Test that a POST which never connected is retried."""
        with patch.object(client, "_get_client") as mock_get, patch(
            "bookmate.clients.webhook.asyncio.sleep", new=AsyncMock()
        ):
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(
                side_effect=[httpx.ConnectTimeout("no route"), make_response(200, {"ok": True})]
            )
            mock_get.return_value = mock_http

            assert await client.call("getPnL") == {"ok": True}
            assert mock_http.post.await_count == 2


class TestActionHelpers:
    """Tests for action helpers and argument checks."""

    def test_check_period(self):
        """Test period validation."""
        assert check_period("month") == "month"
        with pytest.raises(ValidationError):
            check_period("week")

    def test_check_month(self):
        """Test month normalisation and validation."""
        assert check_month("nov") == "NOV"
        assert check_month("") == "ALL"
        with pytest.raises(ValidationError):
            check_month("SEPT")

    @pytest.mark.asyncio
    async def test_balance_helpers_send_params(self, client):
        """Test balance actions send the expected parameters."""
        with patch.object(client, "call", new=AsyncMock(return_value={"ok": True})) as mock_call:
            await client.balances_append(" KBank ", 1500.5, "from app")
            await client.balance_get_summary("jan")

            mock_call.assert_any_await("balancesAppend", bankName="KBank", balance=1500.5, note="from app")
            mock_call.assert_any_await("balanceGetSummary", month="JAN")

    @pytest.mark.asyncio
    async def test_balances_append_requires_bank(self, client):
        """Test that a blank bank name is rejected before any request."""
        with pytest.raises(ValidationError, match="bankName"):
            await client.balances_append("  ", 10)

    @pytest.mark.asyncio
    async def test_get_inbox_returns_list(self, client, mock_inbox_response):
        """Test that get_inbox unwraps the data list."""
        with patch.object(client, "call", new=AsyncMock(return_value=mock_inbox_response)):
            rows = await client.get_inbox()

        assert len(rows) == 3
        assert rows[0]["rowNumber"] == 6

    @pytest.mark.asyncio
    async def test_accounts_sync_params(self, client):
        """Test that accounts are only sent when given."""
        with patch.object(client, "call", new=AsyncMock(return_value={"ok": True})) as mock_call:
            await client.accounts_sync()
            await client.accounts_sync([{"accountName": "Cash", "openingBalance": 0}])

        assert mock_call.await_args_list[0].args == ("accountsSync",)
        assert mock_call.await_args_list[0].kwargs == {}
        assert mock_call.await_args_list[1].kwargs == {"accounts": [{"accountName": "Cash", "openingBalance": 0}]}
