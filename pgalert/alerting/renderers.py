"""Per-channel-type payload renderers.

Each renderer is a pure function of (channel, alert, kind, now) producing a
``RenderedPayload``. The transport decides how to deliver it.
"""

from __future__ import annotations

import abc
import datetime
import html
import re
from typing import Any

from pgalert.core.types import (
    ActiveAlert,
    ChannelType,
    DiscordConfig,
    EmailConfig,
    NotificationChannel,
    NotificationKind,
    PagerDutyConfig,
    SlackConfig,
    TeamsConfig,
)
from pgalert.alerting.types import RenderedPayload

# ── Severity mappings ───────────────────────────────────────────

_SEVERITY_COLOURS: dict[str, str] = {
    "CRITICAL": "#FF0000",
    "HIGH": "#FF8C00",
    "ERROR": "#FF8C00",
    "MEDIUM": "#FFD700",
    "WARNING": "#FFD700",
    "LOW": "#00CED1",
    "INFO": "#00CED1",
}
_DEFAULT_COLOUR = "#808080"

_SEVERITY_EMOJIS: dict[str, str] = {
    "CRITICAL": "\U0001F534",  # red circle
    "HIGH": "\U0001F7E0",      # orange circle
    "ERROR": "\U0001F7E0",
    "MEDIUM": "\U0001F7E1",
    "WARNING": "\U0001F7E1",   # yellow circle
    "LOW": "\U0001F7E2",       # green circle
    "INFO": "\U0001F7E2",
}
_DEFAULT_EMOJI = "ℹ️"
_RESOLVED_EMOJI = "✅"

_PAGERDUTY_SEVERITY: dict[str, str] = {
    "CRITICAL": "critical",
    "HIGH": "error",
    "ERROR": "error",
    "MEDIUM": "warning",
    "WARNING": "warning",
    "LOW": "info",
    "INFO": "info",
}

_EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")

PRODUCT_NAME = "PG Console"


def severity_colour(severity: str) -> str:
    return _SEVERITY_COLOURS.get(severity.upper(), _DEFAULT_COLOUR)


def severity_colour_int(severity: str) -> int:
    return int(severity_colour(severity).lstrip("#"), 16)


def severity_emoji(severity: str) -> str:
    return _SEVERITY_EMOJIS.get(severity.upper(), _DEFAULT_EMOJI)


def pagerduty_severity(severity: str) -> str:
    return _PAGERDUTY_SEVERITY.get(severity.upper(), "info")


def pagerduty_dedup_key(alert: ActiveAlert) -> str:
    """Alert-level incident key, stable across tiers and repeats."""
    instance = alert.instance_name or "default"
    return f"pgalert-{alert.alert_type}-{instance}-{alert.alert_id}"


def format_timestamp(when: datetime.datetime) -> str:
    return when.astimezone(datetime.UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


def _headline(alert: ActiveAlert, kind: NotificationKind) -> str:
    if kind == NotificationKind.RESOLUTION:
        return f"{_RESOLVED_EMOJI} RESOLVED: {alert.alert_type}"
    return f"{severity_emoji(alert.severity)} {alert.alert_type}"


def _test_text(channel: NotificationChannel) -> str:
    return (
        f"{_RESOLVED_EMOJI} Test notification from {PRODUCT_NAME} - "
        f"Channel '{channel.name}' is configured correctly!"
    )


def _status_text(alert: ActiveAlert, kind: NotificationKind) -> str:
    return "Resolved" if kind == NotificationKind.RESOLUTION else alert.status_text


# ── Base ────────────────────────────────────────────────────────


class Renderer(abc.ABC):
    """Builds the wire payload for one channel type."""

    channel_type: ChannelType

    @abc.abstractmethod
    def render(
        self,
        channel: NotificationChannel,
        alert: ActiveAlert,
        kind: NotificationKind,
        now: datetime.datetime,
    ) -> RenderedPayload:
        """Render *alert* for *channel*.

        Raises:
            pydantic.ValidationError: if the channel config does not parse.
        """

    def validate(self, channel: NotificationChannel) -> list[str]:
        """Type-specific config checks beyond the schema."""
        return []


# ── Slack ───────────────────────────────────────────────────────


class SlackRenderer(Renderer):
    channel_type = ChannelType.SLACK

    def render(
        self,
        channel: NotificationChannel,
        alert: ActiveAlert,
        kind: NotificationKind,
        now: datetime.datetime,
    ) -> RenderedPayload:
        config: SlackConfig = channel.typed_config()  # type: ignore[assignment]
        body: dict[str, Any] = {}
        if config.channel:
            body["channel"] = config.channel
        if config.username:
            body["username"] = config.username
        if config.icon_emoji:
            body["icon_emoji"] = config.icon_emoji

        if kind == NotificationKind.TEST:
            body["text"] = _test_text(channel)
        elif config.use_blocks:
            body.update(self._blocks(alert, kind, now))
        else:
            body["text"] = self._simple_text(config, alert, kind, now)

        return RenderedPayload(target=config.webhook_url, body=body, accepted_statuses=(200,))

    @staticmethod
    def _simple_text(
        config: SlackConfig,
        alert: ActiveAlert,
        kind: NotificationKind,
        now: datetime.datetime,
    ) -> str:
        mention = ""
        if (
            config.mention_channel
            and kind == NotificationKind.ESCALATION
            and alert.severity == "CRITICAL"
        ):
            mention = "<!channel> "
        lines = [f"{mention}*{_headline(alert, kind)}* [{alert.severity}]", alert.message]
        if alert.instance_name:
            lines.append(f"_Instance: {alert.instance_name}_")
        lines.append(f"_Duration: {alert.duration_text(now)}_")
        return "\n".join(lines)

    @staticmethod
    def _blocks(
        alert: ActiveAlert, kind: NotificationKind, now: datetime.datetime
    ) -> dict[str, Any]:
        headline = _headline(alert, kind)
        fields = [
            ("Severity", alert.severity),
            ("Instance", alert.instance_name or "N/A"),
            ("Duration", alert.duration_text(now)),
            ("Status", _status_text(alert, kind)),
        ]
        return {
            "text": f"{headline}: {alert.message}",
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": headline, "emoji": True},
                },
                {
                    "type": "section",
                    "fields": [
                        {"type": "mrkdwn", "text": f"*{name}:*\n{value}"}
                        for name, value in fields
                    ],
                },
                {"type": "section", "text": {"type": "mrkdwn", "text": alert.message}},
                {"type": "divider"},
                {
                    "type": "context",
                    "elements": [
                        {
                            "type": "mrkdwn",
                            "text": f"Fired at: {format_timestamp(alert.fired_at)}",
                        }
                    ],
                },
            ],
            "attachments": [{"color": severity_colour(alert.severity)}],
        }

    def validate(self, channel: NotificationChannel) -> list[str]:
        url = str(channel.config.get("webhook_url", ""))
        if not url.startswith("https://hooks.slack.com/"):
            return ["webhook_url must start with https://hooks.slack.com/"]
        return []


# ── Microsoft Teams ─────────────────────────────────────────────


class TeamsRenderer(Renderer):
    channel_type = ChannelType.TEAMS

    _SCHEMA = "http://adaptivecards.io/schemas/adaptive-card.json"

    def render(
        self,
        channel: NotificationChannel,
        alert: ActiveAlert,
        kind: NotificationKind,
        now: datetime.datetime,
    ) -> RenderedPayload:
        config: TeamsConfig = channel.typed_config()  # type: ignore[assignment]
        if kind == NotificationKind.TEST:
            card_body = [
                {
                    "type": "TextBlock",
                    "size": "Medium",
                    "weight": "Bolder",
                    "text": f"{_RESOLVED_EMOJI} {PRODUCT_NAME} Test Notification",
                },
                {
                    "type": "TextBlock",
                    "text": f"Channel '{channel.name}' is configured correctly!",
                    "wrap": True,
                },
            ]
        else:
            card_body = self._alert_body(alert, kind, now)

        content: dict[str, Any] = {
            "$schema": self._SCHEMA,
            "type": "AdaptiveCard",
            "version": "1.4",
            "msteams": {"width": "Full"},
            "body": card_body,
        }
        body = {
            "type": "message",
            "themeColor": (config.theme_color or severity_colour(alert.severity)).lstrip("#"),
            "attachments": [
                {
                    "contentType": "application/vnd.microsoft.card.adaptive",
                    "contentUrl": None,
                    "content": content,
                }
            ],
        }
        return RenderedPayload(
            target=config.webhook_url, body=body, accepted_statuses=(200, 202)
        )

    @staticmethod
    def _alert_body(
        alert: ActiveAlert, kind: NotificationKind, now: datetime.datetime
    ) -> list[dict[str, Any]]:
        facts = [
            ("Severity", alert.severity),
            ("Instance", alert.instance_name or "N/A"),
            ("Duration", alert.duration_text(now)),
            ("Status", _status_text(alert, kind)),
            ("Fired At", format_timestamp(alert.fired_at)),
        ]
        return [
            {
                "type": "Container",
                "style": "emphasis",
                "items": [
                    {
                        "type": "TextBlock",
                        "size": "Large",
                        "weight": "Bolder",
                        "text": _headline(alert, kind),
                    }
                ],
            },
            {
                "type": "Container",
                "items": [
                    {
                        "type": "FactSet",
                        "facts": [{"title": t, "value": v} for t, v in facts],
                    }
                ],
            },
            {
                "type": "Container",
                "items": [{"type": "TextBlock", "text": alert.message, "wrap": True}],
            },
        ]

    def validate(self, channel: NotificationChannel) -> list[str]:
        url = str(channel.config.get("webhook_url", ""))
        if "webhook.office.com" not in url and "outlook.office.com" not in url:
            return ["webhook_url must be an Office 365 incoming webhook"]
        return []


# ── Discord ─────────────────────────────────────────────────────


class DiscordRenderer(Renderer):
    channel_type = ChannelType.DISCORD

    def render(
        self,
        channel: NotificationChannel,
        alert: ActiveAlert,
        kind: NotificationKind,
        now: datetime.datetime,
    ) -> RenderedPayload:
        config: DiscordConfig = channel.typed_config()  # type: ignore[assignment]
        body: dict[str, Any] = {}
        if config.username:
            body["username"] = config.username
        if config.avatar_url:
            body["avatar_url"] = config.avatar_url

        if kind == NotificationKind.TEST:
            body["content"] = _test_text(channel)
            return RenderedPayload(
                target=config.webhook_url, body=body, accepted_statuses=(200, 204)
            )

        mention = self._mention(config, alert, kind)
        if config.use_embeds:
            if mention:
                body["content"] = mention.strip()
            body["embeds"] = [self._embed(alert, kind, now)]
        else:
            lines = [f"{mention}**{_headline(alert, kind)}** [{alert.severity}]", alert.message]
            if alert.instance_name:
                lines.append(f"*Instance:* {alert.instance_name}")
            lines.append(f"*Duration:* {alert.duration_text(now)}")
            body["content"] = "\n".join(lines)

        return RenderedPayload(
            target=config.webhook_url, body=body, accepted_statuses=(200, 204)
        )

    @staticmethod
    def _mention(config: DiscordConfig, alert: ActiveAlert, kind: NotificationKind) -> str:
        if kind != NotificationKind.ESCALATION or alert.severity != "CRITICAL":
            return ""
        if config.mention_everyone:
            return "@everyone "
        return "".join(f"<@&{role}> " for role in config.mention_role_ids)

    @staticmethod
    def _embed(
        alert: ActiveAlert, kind: NotificationKind, now: datetime.datetime
    ) -> dict[str, Any]:
        colour = (
            severity_colour_int("INFO")
            if kind == NotificationKind.RESOLUTION
            else severity_colour_int(alert.severity)
        )
        fields = [
            {"name": "Severity", "value": alert.severity, "inline": True},
            {"name": "Instance", "value": alert.instance_name or "N/A", "inline": True},
            {"name": "Duration", "value": alert.duration_text(now), "inline": True},
            {"name": "Status", "value": _status_text(alert, kind), "inline": True},
        ]
        return {
            "title": _headline(alert, kind),
            "description": alert.message,
            "color": colour,
            "fields": fields,
            "timestamp": alert.fired_at.isoformat(),
            "footer": {"text": PRODUCT_NAME},
        }

    def validate(self, channel: NotificationChannel) -> list[str]:
        url = str(channel.config.get("webhook_url", ""))
        if "discord.com/api/webhooks/" not in url:
            return ["webhook_url must be a discord.com/api/webhooks/ URL"]
        return []


# ── PagerDuty ───────────────────────────────────────────────────


class PagerDutyRenderer(Renderer):
    """Events API v2. Resolution notices only go out with ``auto_resolve``."""

    channel_type = ChannelType.PAGERDUTY

    def render(
        self,
        channel: NotificationChannel,
        alert: ActiveAlert,
        kind: NotificationKind,
        now: datetime.datetime,
    ) -> RenderedPayload:
        config: PagerDutyConfig = channel.typed_config()  # type: ignore[assignment]
        if kind == NotificationKind.RESOLUTION:
            body = {
                "routing_key": config.routing_key,
                "event_action": "resolve",
                "dedup_key": pagerduty_dedup_key(alert),
            }
            return RenderedPayload(
                target=config.events_url,
                body=body,
                accepted_statuses=(202,),
                deliver=config.auto_resolve,
            )

        if kind == NotificationKind.TEST:
            summary = f"{PRODUCT_NAME} test notification for channel '{channel.name}'"
            dedup_key = f"pgalert-test-{channel.id}-{int(now.timestamp())}"
        else:
            summary = f"{alert.alert_type}: {alert.message}"
            dedup_key = pagerduty_dedup_key(alert)

        payload: dict[str, Any] = {
            "summary": summary[:1024],
            "severity": pagerduty_severity(alert.severity),
            "source": alert.instance_name or "pgalert",
            "timestamp": alert.fired_at.isoformat(),
            "class": alert.alert_type,
            "custom_details": {
                "alert_id": alert.alert_id,
                "alert_type": alert.alert_type,
                "instance": alert.instance_name or "N/A",
                "duration": alert.duration_text(now),
                "message": alert.message,
            },
        }
        if config.component:
            payload["component"] = config.component
        if config.group:
            payload["group"] = config.group

        body = {
            "routing_key": config.routing_key,
            "event_action": "trigger",
            "dedup_key": dedup_key,
            "payload": payload,
            "client": PRODUCT_NAME,
        }
        return RenderedPayload(target=config.events_url, body=body, accepted_statuses=(202,))

    def validate(self, channel: NotificationChannel) -> list[str]:
        key = str(channel.config.get("routing_key", ""))
        if len(key) != 32:
            return ["routing_key must be 32 characters"]
        return []


# ── Email ───────────────────────────────────────────────────────


class EmailRenderer(Renderer):
    """Target is the comma-joined recipient list; body carries the message parts."""

    channel_type = ChannelType.EMAIL

    def render(
        self,
        channel: NotificationChannel,
        alert: ActiveAlert,
        kind: NotificationKind,
        now: datetime.datetime,
    ) -> RenderedPayload:
        config: EmailConfig = channel.typed_config()  # type: ignore[assignment]
        prefix = f"{config.subject_prefix} " if config.subject_prefix else ""

        if kind == NotificationKind.TEST:
            subject = f"{prefix}[TEST] {PRODUCT_NAME} notification channel test"
            text = _test_text(channel)
            rows: list[tuple[str, str]] = []
        else:
            tag = "RESOLVED" if kind == NotificationKind.RESOLUTION else alert.severity
            where = f" on {alert.instance_name}" if alert.instance_name else ""
            subject = f"{prefix}[{tag}] {alert.alert_type}{where}"
            rows = [
                ("Alert Type", alert.alert_type),
                ("Severity", alert.severity),
                ("Instance", alert.instance_name or "N/A"),
                ("Status", _status_text(alert, kind)),
                ("Fired At", format_timestamp(alert.fired_at)),
                ("Duration", alert.duration_text(now)),
            ]
            text = "\n".join(
                [alert.message, ""] + [f"{name}: {value}" for name, value in rows]
            )

        body: dict[str, Any] = {
            "subject": subject,
            "text": text,
            "from": config.from_address,
        }
        if config.use_html_template:
            body["html"] = self._html(alert, kind, text if not rows else alert.message, rows)
        return RenderedPayload(target=",".join(config.recipients), body=body)

    @staticmethod
    def _html(
        alert: ActiveAlert,
        kind: NotificationKind,
        message: str,
        rows: list[tuple[str, str]],
    ) -> str:
        colour = "#2E8B57" if kind == NotificationKind.RESOLUTION else severity_colour(alert.severity)
        table = "".join(
            f"<tr><th align=\"left\">{html.escape(name)}</th>"
            f"<td>{html.escape(value)}</td></tr>"
            for name, value in rows
        )
        return (
            "<html><body>"
            f"<div style=\"border-left: 6px solid {colour}; padding: 8px;\">"
            f"<h2>{html.escape(_headline(alert, kind))}</h2>"
            f"<p>{html.escape(message)}</p>"
            f"<table>{table}</table>"
            "</div>"
            f"<p style=\"color: #808080;\">Sent by {PRODUCT_NAME}</p>"
            "</body></html>"
        )

    def validate(self, channel: NotificationChannel) -> list[str]:
        recipients = channel.config.get("recipients") or []
        return [
            f"invalid recipient {r!r}"
            for r in recipients
            if not _EMAIL_RE.fullmatch(str(r))
        ]


# ── Registry ────────────────────────────────────────────────────

DEFAULT_RENDERERS: dict[ChannelType, Renderer] = {
    ChannelType.SLACK: SlackRenderer(),
    ChannelType.TEAMS: TeamsRenderer(),
    ChannelType.DISCORD: DiscordRenderer(),
    ChannelType.PAGERDUTY: PagerDutyRenderer(),
    ChannelType.EMAIL: EmailRenderer(),
}
