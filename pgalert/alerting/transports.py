"""Notification transports — webhook POST and SMTP delivery."""

from __future__ import annotations

import abc
import asyncio
import smtplib
from email.message import EmailMessage

import aiohttp
import structlog

from pgalert.core.config import DispatchConfig, SmtpConfig
from pgalert.core.types import ChannelType, NotificationChannel
from pgalert.alerting.types import RenderedPayload, TransportResponse

logger = structlog.get_logger(__name__)

_TRUNCATED_SUFFIX = "...[truncated]"


def truncate_body(body: str | None, limit: int) -> str | None:
    if body is None or len(body) <= limit:
        return body
    return body[:limit] + _TRUNCATED_SUFFIX


class NotificationTransport(abc.ABC):
    """Base class for delivery mechanisms."""

    @abc.abstractmethod
    async def send(
        self, channel: NotificationChannel, payload: RenderedPayload
    ) -> TransportResponse:
        """Deliver *payload*. Failures are reported, never raised."""

    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""


class WebhookTransport(NotificationTransport):
    """POSTs JSON payloads; success iff the status is one the payload accepts."""

    def __init__(self, config: DispatchConfig | None = None) -> None:
        self._config = config or DispatchConfig()
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self._config.transport_timeout_secs,
            connect=self._config.connect_timeout_secs,
        )

    async def send(
        self, channel: NotificationChannel, payload: RenderedPayload
    ) -> TransportResponse:
        headers = {"Content-Type": "application/json", **payload.headers}
        try:
            session = self._get_session()
            async with session.post(
                payload.target,
                json=payload.body,
                headers=headers,
                timeout=self._timeout(),
            ) as resp:
                text = truncate_body(await resp.text(), self._config.max_response_body_chars)
                if resp.status in payload.accepted_statuses:
                    return TransportResponse(success=True, response_code=resp.status, body=text)
                logger.warning(
                    "webhook_send_failed",
                    channel=channel.name,
                    channel_type=channel.channel_type.value,
                    status=resp.status,
                    body=(text or "")[:200],
                )
                return TransportResponse(
                    success=False,
                    response_code=resp.status,
                    body=text,
                    error=f"HTTP {resp.status}",
                )
        except asyncio.TimeoutError:
            logger.warning("webhook_send_timeout", channel=channel.name)
            return TransportResponse(success=False, error="timed out")
        except Exception as exc:
            logger.exception("webhook_send_error", channel=channel.name)
            return TransportResponse(success=False, error=f"{type(exc).__name__}: {exc}")

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class SmtpTransport(NotificationTransport):
    """Sends mail through ``smtplib`` on a worker thread."""

    def __init__(self, config: SmtpConfig | None = None) -> None:
        self._config = config or SmtpConfig()

    def build_message(self, payload: RenderedPayload) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = payload.body.get("subject", "")
        msg["From"] = payload.body.get("from") or self._config.default_from
        msg["To"] = payload.target
        msg.set_content(payload.body.get("text", ""))
        if payload.body.get("html"):
            msg.add_alternative(payload.body["html"], subtype="html")
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(
            self._config.host, self._config.port, timeout=self._config.timeout_secs
        ) as server:
            if self._config.use_tls:
                server.starttls()
            if self._config.username:
                server.login(
                    self._config.username, self._config.password.get_secret_value()
                )
            server.send_message(msg)

    async def send(
        self, channel: NotificationChannel, payload: RenderedPayload
    ) -> TransportResponse:
        try:
            msg = self.build_message(payload)
            await asyncio.to_thread(self._send_sync, msg)
        except Exception as exc:
            logger.exception("email_send_error", channel=channel.name, host=self._config.host)
            return TransportResponse(success=False, error=f"{type(exc).__name__}: {exc}")
        return TransportResponse(success=True, response_code=250, body="queued")


def build_transports(
    dispatch: DispatchConfig | None = None,
    smtp: SmtpConfig | None = None,
) -> dict[ChannelType, NotificationTransport]:
    """One shared webhook transport for the HTTP channel types plus SMTP for email."""
    webhook = WebhookTransport(dispatch)
    return {
        ChannelType.SLACK: webhook,
        ChannelType.TEAMS: webhook,
        ChannelType.DISCORD: webhook,
        ChannelType.PAGERDUTY: webhook,
        ChannelType.EMAIL: SmtpTransport(smtp),
    }
