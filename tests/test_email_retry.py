"""
Tests for email retry logic.
"""
import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from app.email import (
    EmailService,
    EmailResult,
    EmailDeliveryStatus,
    MAX_RETRY_ATTEMPTS,
    RETRY_DELAYS_SECONDS,
)


def _service(handler) -> EmailService:
    settings = MagicMock()
    settings.resend_api_key = "test_api_key"
    settings.resend_from_email = "test@example.com"
    return EmailService(settings=settings, transport=httpx.MockTransport(handler))


class TestEmailRetryLogic:
    """Test retry logic in send_email()."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        """Email succeeds on first attempt - no retries needed."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "msg_123"})

        result = await _service(handler).send_email(
            to_email="test@test.com",
            subject="Test",
            html="<p>Test</p>",
            text="Test",
        )

        assert result.success is True
        assert result.delivery_status == EmailDeliveryStatus.SENT
        assert result.message_id == "msg_123"
        assert result.total_attempts == 1
        assert len(result.attempts) == 1
        assert result.attempts[0].success is True

        body = json.loads(seen[0].content)
        assert body["from"] == "Eon Sign <test@example.com>"
        assert body["to"] == ["test@test.com"]
        assert body["text"] == "Test"
        assert seen[0].headers["Authorization"] == "Bearer test_api_key"

    @pytest.mark.asyncio
    async def test_fail_twice_succeed_third(self):
        """Email fails twice, succeeds on third attempt."""
        call_count = 0

        def handler(request):
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                return httpx.Response(500, text="Internal Server Error")
            return httpx.Response(200, json={"id": "msg_456"})

        with patch("app.email.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await _service(handler).send_email(
                to_email="test@test.com",
                subject="Test",
                html="<p>Test</p>",
            )

        assert result.success is True
        assert result.delivery_status == EmailDeliveryStatus.SENT
        assert result.message_id == "msg_456"
        assert result.total_attempts == 3
        assert len(result.attempts) == 3

        # First two attempts failed
        assert result.attempts[0].success is False
        assert result.attempts[1].success is False
        # Third attempt succeeded
        assert result.attempts[2].success is True

        assert [c.args[0] for c in mock_sleep.await_args_list] == RETRY_DELAYS_SECONDS[1:]

    @pytest.mark.asyncio
    async def test_all_attempts_fail(self):
        """All 3 attempts fail - returns failed status."""
        handler = lambda request: httpx.Response(503, text="Service Unavailable")

        with patch("app.email.asyncio.sleep", new_callable=AsyncMock):
            result = await _service(handler).send_email(
                to_email="test@test.com",
                subject="Test",
                html="<p>Test</p>",
            )

        assert result.success is False
        assert result.delivery_status == EmailDeliveryStatus.FAILED
        assert result.total_attempts == MAX_RETRY_ATTEMPTS
        assert len(result.attempts) == MAX_RETRY_ATTEMPTS
        assert all(not a.success for a in result.attempts)
        assert "503" in result.error

    @pytest.mark.asyncio
    async def test_timeout_triggers_retry(self):
        """Timeout exception triggers retry."""
        call_count = 0

        def handler(request):
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise httpx.ConnectTimeout("Connection timed out", request=request)
            return httpx.Response(200, json={"id": "msg_789"})

        with patch("app.email.asyncio.sleep", new_callable=AsyncMock):
            result = await _service(handler).send_email(
                to_email="test@test.com",
                subject="Test",
                html="<p>Test</p>",
            )

        assert result.success is True
        assert result.total_attempts == 3
        assert "Timeout" in result.attempts[0].error
        assert "Timeout" in result.attempts[1].error
        assert result.attempts[2].success is True

    @pytest.mark.asyncio
    async def test_not_configured_returns_skipped(self):
        """Email service not configured returns SKIPPED status."""
        settings = MagicMock()
        settings.resend_api_key = ""  # Not configured
        service = EmailService(settings=settings)

        result = await service.send_email(
            to_email="test@test.com",
            subject="Test",
            html="<p>Test</p>",
        )

        assert result.success is False
        assert result.delivery_status == EmailDeliveryStatus.SKIPPED
        assert "not configured" in result.error


class TestEmailResultProperties:
    """Test EmailResult helper properties."""

    def test_is_delivered(self):
        """is_delivered returns True for SENT status."""
        result = EmailResult(
            success=True,
            delivery_status=EmailDeliveryStatus.SENT,
        )
        assert result.is_delivered is True

    def test_skipped_is_not_delivered(self):
        """SKIPPED status is not delivered."""
        result = EmailResult(
            success=False,
            delivery_status=EmailDeliveryStatus.SKIPPED,
        )
        assert result.is_delivered is False


class TestRetryConfiguration:
    """Test retry configuration constants."""

    def test_max_retry_attempts(self):
        """MAX_RETRY_ATTEMPTS is 3."""
        assert MAX_RETRY_ATTEMPTS == 3

    def test_retry_delays(self):
        """Retry delays are exponential backoff."""
        assert RETRY_DELAYS_SECONDS == [0, 2, 4]
