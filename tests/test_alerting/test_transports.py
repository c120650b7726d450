"""Tests for transports — HTTP mocking, status handling, SMTP in a worker thread."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp

from pgalert.core.config import DispatchConfig, SmtpConfig
from pgalert.core.types import ChannelType, NotificationChannel
from pgalert.alerting.transports import (
    SmtpTransport,
    WebhookTransport,
    build_transports,
    truncate_body,
)
from pgalert.alerting.types import RenderedPayload


# ── Helpers ─────────────────────────────────────────────────────


def _channel(channel_type: ChannelType = ChannelType.SLACK) -> NotificationChannel:
    return NotificationChannel(id=1, name="ops", channel_type=channel_type)


def _payload(**kw: object) -> RenderedPayload:
    defaults: dict[str, object] = {
        "target": "https://hooks.slack.com/services/T/B/X",
        "body": {"text": "hello"},
        "accepted_statuses": (200,),
    }
    defaults.update(kw)
    return RenderedPayload(**defaults)  # type: ignore[arg-type]


def _mock_response(status: int = 200, text: str = "ok") -> AsyncMock:
    resp = AsyncMock()
    resp.status = status
    resp.text = AsyncMock(return_value=text)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


def _transport_with(resp: AsyncMock, config: DispatchConfig | None = None) -> tuple[WebhookTransport, MagicMock]:
    transport = WebhookTransport(config)
    session = MagicMock()
    session.post = MagicMock(return_value=resp)
    session.closed = False
    transport._session = session
    return transport, session


# ── truncate_body ───────────────────────────────────────────────


class TestTruncateBody:
    def test_short_body_untouched(self) -> None:
        assert truncate_body("ok", 10) == "ok"
        assert truncate_body(None, 10) is None

    def test_long_body_truncated(self) -> None:
        assert truncate_body("x" * 20, 5) == "xxxxx...[truncated]"


# ── WebhookTransport ────────────────────────────────────────────


class TestWebhookTransport:
    async def test_send_success(self) -> None:
        transport, session = _transport_with(_mock_response(200))
        result = await transport.send(_channel(), _payload())
        assert result.success is True
        assert result.response_code == 200
        session.post.assert_called_once()
        call_args = session.post.call_args
        assert call_args[0][0] == "https://hooks.slack.com/services/T/B/X"
        assert call_args[1]["json"] == {"text": "hello"}
        assert call_args[1]["headers"]["Content-Type"] == "application/json"
        timeout = call_args[1]["timeout"]
        assert isinstance(timeout, aiohttp.ClientTimeout)
        assert timeout.total == 30.0
        assert timeout.connect == 10.0

    async def test_accepted_statuses_respected(self) -> None:
        transport, _ = _transport_with(_mock_response(202, ""))
        result = await transport.send(_channel(), _payload(accepted_statuses=(202,)))
        assert result.success is True

    async def test_unexpected_status_fails(self) -> None:
        transport, _ = _transport_with(_mock_response(500, "boom"))
        result = await transport.send(_channel(), _payload())
        assert result.success is False
        assert result.response_code == 500
        assert result.body == "boom"
        assert result.error == "HTTP 500"

    async def test_200_not_accepted_for_pagerduty(self) -> None:
        transport, _ = _transport_with(_mock_response(200))
        result = await transport.send(
            _channel(ChannelType.PAGERDUTY), _payload(accepted_statuses=(202,))
        )
        assert result.success is False

    async def test_response_body_truncated(self) -> None:
        transport, _ = _transport_with(
            _mock_response(400, "e" * 50), DispatchConfig(max_response_body_chars=10)
        )
        result = await transport.send(_channel(), _payload())
        assert result.body == "e" * 10 + "...[truncated]"

    async def test_exception_becomes_failure(self) -> None:
        transport = WebhookTransport()
        session = MagicMock()
        session.post = MagicMock(side_effect=aiohttp.ClientError("connection refused"))
        session.closed = False
        transport._session = session

        result = await transport.send(_channel(), _payload())
        assert result.success is False
        assert "connection refused" in (result.error or "")

    async def test_timeout_becomes_failure(self) -> None:
        transport = WebhookTransport()
        session = MagicMock()
        session.post = MagicMock(side_effect=asyncio.TimeoutError())
        session.closed = False
        transport._session = session

        result = await transport.send(_channel(), _payload())
        assert result.success is False
        assert result.error == "timed out"

    async def test_extra_headers(self) -> None:
        transport, session = _transport_with(_mock_response(200))
        await transport.send(_channel(), _payload(headers={"X-Trace": "1"}))
        assert session.post.call_args[1]["headers"]["X-Trace"] == "1"

    async def test_close(self) -> None:
        transport = WebhookTransport()
        session = AsyncMock()
        session.closed = False
        transport._session = session
        await transport.close()
        session.close.assert_awaited_once()
        assert transport._session is None

    async def test_close_without_session(self) -> None:
        await WebhookTransport().close()


# ── SmtpTransport ───────────────────────────────────────────────


class TestSmtpTransport:
    def _payload(self) -> RenderedPayload:
        return RenderedPayload(
            target="a@example.com,b@example.com",
            body={"subject": "[CRITICAL] X", "text": "plain", "html": "<p>x</p>", "from": None},
        )

    def test_build_message(self) -> None:
        transport = SmtpTransport(SmtpConfig(default_from="pg@example.com"))
        msg = transport.build_message(self._payload())
        assert msg["Subject"] == "[CRITICAL] X"
        assert msg["From"] == "pg@example.com"
        assert msg["To"] == "a@example.com,b@example.com"
        assert msg.is_multipart()

    async def test_send_uses_smtplib(self) -> None:
        config = SmtpConfig(host="mail.test", port=2525, username="u", password="p")  # type: ignore[arg-type]
        transport = SmtpTransport(config)
        with patch("pgalert.alerting.transports.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            result = await transport.send(_channel(ChannelType.EMAIL), self._payload())

        assert result.success is True
        smtp_cls.assert_called_once_with("mail.test", 2525, timeout=30.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("u", "p")
        server.send_message.assert_called_once()

    async def test_no_login_without_username(self) -> None:
        transport = SmtpTransport(SmtpConfig(use_tls=False))
        with patch("pgalert.alerting.transports.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            await transport.send(_channel(ChannelType.EMAIL), self._payload())
        server.starttls.assert_not_called()
        server.login.assert_not_called()

    async def test_smtp_error_becomes_failure(self) -> None:
        transport = SmtpTransport()
        with patch(
            "pgalert.alerting.transports.smtplib.SMTP", side_effect=OSError("no route")
        ):
            result = await transport.send(_channel(ChannelType.EMAIL), self._payload())
        assert result.success is False
        assert "no route" in (result.error or "")


# ── build_transports ────────────────────────────────────────────


class TestBuildTransports:
    def test_webhook_transport_shared(self) -> None:
        transports = build_transports()
        assert set(transports) == set(ChannelType)
        assert transports[ChannelType.SLACK] is transports[ChannelType.PAGERDUTY]
        assert isinstance(transports[ChannelType.EMAIL], SmtpTransport)
