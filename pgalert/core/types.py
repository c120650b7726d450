"""Domain types for alerting — alerts, escalation policies, channels, suppression rules, history."""

from __future__ import annotations

import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# ── Enums ───────────────────────────────────────────────────────


class ChannelType(StrEnum):
    """Closed set of delivery targets."""

    SLACK = "SLACK"
    TEAMS = "TEAMS"
    DISCORD = "DISCORD"
    PAGERDUTY = "PAGERDUTY"
    EMAIL = "EMAIL"

    @property
    def display_name(self) -> str:
        return _CHANNEL_DISPLAY_NAMES[self]


_CHANNEL_DISPLAY_NAMES: dict[ChannelType, str] = {
    ChannelType.SLACK: "Slack",
    ChannelType.TEAMS: "Microsoft Teams",
    ChannelType.DISCORD: "Discord",
    ChannelType.PAGERDUTY: "PagerDuty",
    ChannelType.EMAIL: "Email",
}


class MatchKind(StrEnum):
    """How a silence matcher compares its value to an alert field."""

    EXACT = "exact"
    REGEX = "regex"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"


class RecurrencePattern(StrEnum):
    """Maintenance window recurrence (expansion happens outside the engine)."""

    NONE = "NONE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    CUSTOM = "CUSTOM"


class NotificationKind(StrEnum):
    """Why a notification was sent."""

    ESCALATION = "ESCALATION"
    RESOLUTION = "RESOLUTION"
    TEST = "TEST"


class DeliveryStatus(StrEnum):
    """Outcome of a single channel dispatch."""

    SENT = "SENT"
    FAILED = "FAILED"
    TEST_MODE = "TEST_MODE"
    RATE_LIMITED = "RATE_LIMITED"
    DUPLICATE = "DUPLICATE"


# Statuses that consumed a delivery attempt and count toward rate limits.
ATTEMPT_STATUSES: frozenset[DeliveryStatus] = frozenset(
    {DeliveryStatus.SENT, DeliveryStatus.FAILED, DeliveryStatus.TEST_MODE}
)


class EscalationState(StrEnum):
    """Where an alert sits in its escalation lifecycle."""

    PENDING = "PENDING"
    ESCALATING = "ESCALATING"
    MAX_TIER_REACHED = "MAX_TIER_REACHED"
    REPEATING = "REPEATING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


def _upper(value: str) -> str:
    return value.strip().upper()


# ── Alerts ──────────────────────────────────────────────────────


class ActiveAlert(BaseModel):
    """A firing incident.

    ``id`` is assigned by the store; ``alert_id`` is the external correlation
    key used for ingestion dedup. ``version`` backs compare-and-set updates.
    """

    id: int | None = None
    alert_id: str
    alert_type: str
    severity: str = "INFO"
    message: str = ""
    instance_name: str | None = None
    fired_at: datetime.datetime
    last_notification_at: datetime.datetime | None = None
    current_escalation_tier: int = Field(default=0, ge=0)
    repeat_iteration: int = Field(default=0, ge=0)
    escalation_policy_id: int | None = None
    acknowledged: bool = False
    acknowledged_at: datetime.datetime | None = None
    acknowledged_by: str | None = None
    resolved: bool = False
    resolved_at: datetime.datetime | None = None
    resolved_by: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 0

    @field_validator("severity")
    @classmethod
    def _normalise_severity(cls, value: str) -> str:
        return _upper(value)

    @property
    def escalation_anchor(self) -> datetime.datetime:
        """Timestamp the next tier delay is measured from."""
        return self.last_notification_at or self.fired_at

    @property
    def in_escalation(self) -> bool:
        return not self.resolved and not self.acknowledged

    @property
    def status_text(self) -> str:
        if self.resolved:
            return "Resolved"
        if self.acknowledged:
            return "Acknowledged"
        return "Firing"

    def duration(self, now: datetime.datetime) -> datetime.timedelta:
        end = self.resolved_at if self.resolved and self.resolved_at else now
        return max(end - self.fired_at, datetime.timedelta(0))

    def duration_text(self, now: datetime.datetime) -> str:
        seconds = int(self.duration(now).total_seconds())
        if seconds < 60:
            return f"{seconds}s"
        if seconds < 3600:
            return f"{seconds // 60}m {seconds % 60}s"
        return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


# ── Escalation policies ─────────────────────────────────────────


class EscalationTier(BaseModel):
    """One rung of a policy: wait ``delay_minutes``, then notify ``channel_ids``."""

    tier_order: int = Field(ge=1)
    delay_minutes: int = Field(default=0, ge=0)
    channel_ids: list[int] = Field(default_factory=list)

    @field_validator("channel_ids")
    @classmethod
    def _dedupe_channels(cls, value: list[int]) -> list[int]:
        return list(dict.fromkeys(value))

    @property
    def delay(self) -> datetime.timedelta:
        return datetime.timedelta(minutes=self.delay_minutes)

    @property
    def display_text(self) -> str:
        if self.delay_minutes == 0:
            return f"Tier {self.tier_order} (Immediate)"
        return f"Tier {self.tier_order} (After {self.delay_minutes} min)"


class EscalationPolicy(BaseModel):
    """Ordered tiers plus the repeat behaviour once the last tier is reached."""

    id: int | None = None
    name: str = ""
    description: str = ""
    enabled: bool = True
    repeat_count: int = Field(default=0, ge=0)
    tiers: list[EscalationTier] = Field(default_factory=list)

    @field_validator("tiers")
    @classmethod
    def _check_tier_orders(cls, value: list[EscalationTier]) -> list[EscalationTier]:
        orders = [t.tier_order for t in value]
        if len(orders) != len(set(orders)):
            raise ValueError(f"duplicate tier_order in {sorted(orders)}")
        return sorted(value, key=lambda t: t.tier_order)

    @classmethod
    def broadcast(cls, channel_ids: list[int]) -> EscalationPolicy:
        """Single immediate tier — used for alerts fired without a policy."""
        return cls(
            name="broadcast",
            tiers=[EscalationTier(tier_order=1, delay_minutes=0, channel_ids=channel_ids)],
        )

    def tier(self, order: int) -> EscalationTier | None:
        for t in self.tiers:
            if t.tier_order == order:
                return t
        return None

    def next_tier(self, current: int) -> EscalationTier | None:
        return self.tier(current + 1)

    @property
    def max_tier(self) -> int:
        return self.tiers[-1].tier_order if self.tiers else 0

    @property
    def last_tier(self) -> EscalationTier | None:
        return self.tiers[-1] if self.tiers else None


# ── Channels ────────────────────────────────────────────────────


class SlackConfig(BaseModel):
    webhook_url: str
    channel: str | None = None
    username: str | None = None
    icon_emoji: str | None = None
    mention_channel: bool = False
    use_blocks: bool = False


class TeamsConfig(BaseModel):
    webhook_url: str
    theme_color: str | None = None


class DiscordConfig(BaseModel):
    webhook_url: str
    username: str | None = None
    avatar_url: str | None = None
    mention_everyone: bool = False
    mention_role_ids: list[str] = Field(default_factory=list)
    use_embeds: bool = True


class PagerDutyConfig(BaseModel):
    routing_key: str
    component: str | None = None
    group: str | None = None
    auto_resolve: bool = False
    events_url: str = "https://events.pagerduty.com/v2/enqueue"


class EmailConfig(BaseModel):
    recipients: list[str] = Field(min_length=1)
    from_address: str | None = None
    subject_prefix: str | None = None
    use_html_template: bool = True


ChannelConfig = SlackConfig | TeamsConfig | DiscordConfig | PagerDutyConfig | EmailConfig

CHANNEL_CONFIG_MODELS: dict[ChannelType, type[BaseModel]] = {
    ChannelType.SLACK: SlackConfig,
    ChannelType.TEAMS: TeamsConfig,
    ChannelType.DISCORD: DiscordConfig,
    ChannelType.PAGERDUTY: PagerDutyConfig,
    ChannelType.EMAIL: EmailConfig,
}


class NotificationChannel(BaseModel):
    """A configured delivery target with its filters and rate limit."""

    id: int | None = None
    name: str
    channel_type: ChannelType
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)
    severity_filter: list[str] = Field(default_factory=list)
    alert_type_filter: list[str] = Field(default_factory=list)
    instance_filter: list[str] = Field(default_factory=list)
    rate_limit_per_hour: int | None = None
    test_mode: bool = False
    description: str = ""
    last_used_at: datetime.datetime | None = None

    @field_validator("severity_filter")
    @classmethod
    def _normalise_severity_filter(cls, value: list[str]) -> list[str]:
        return [_upper(v) for v in value]

    @property
    def has_rate_limit(self) -> bool:
        return bool(self.rate_limit_per_hour and self.rate_limit_per_hour > 0)

    def accepts(self, alert: ActiveAlert) -> bool:
        """True iff every non-empty filter contains the alert's value."""
        if self.severity_filter and alert.severity not in self.severity_filter:
            return False
        if self.alert_type_filter and alert.alert_type not in self.alert_type_filter:
            return False
        if self.instance_filter and alert.instance_name not in self.instance_filter:
            return False
        return True

    def typed_config(self) -> ChannelConfig:
        """Parse ``config`` with the model for this channel type.

        Raises:
            pydantic.ValidationError: if the config does not fit the type.
        """
        model = CHANNEL_CONFIG_MODELS[self.channel_type]
        return model.model_validate(self.config)  # type: ignore[return-value]

    def config_errors(self) -> list[str]:
        try:
            self.typed_config()
        except ValidationError as exc:
            return [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
        return []


# ── Suppression rules ───────────────────────────────────────────


class Matcher(BaseModel):
    """A single field comparison inside a silence."""

    field: str
    kind: MatchKind = MatchKind.EXACT
    value: str = ""

    @property
    def display_text(self) -> str:
        return f'{self.field} {self.kind.value} "{self.value}"'


class AlertSilence(BaseModel):
    """Time-boxed, matcher-based suppression. Active on ``[start_time, end_time)``."""

    id: int | None = None
    name: str = ""
    description: str = ""
    start_time: datetime.datetime
    end_time: datetime.datetime
    matchers: list[Matcher] = Field(default_factory=list)
    created_by: str | None = None
    created_at: datetime.datetime | None = None

    def is_active(self, now: datetime.datetime) -> bool:
        return self.start_time <= now < self.end_time

    def remaining(self, now: datetime.datetime) -> datetime.timedelta:
        return max(self.end_time - now, datetime.timedelta(0))

    def status_text(self, now: datetime.datetime) -> str:
        if self.is_active(now):
            return "Active"
        return "Expired" if now >= self.end_time else "Pending"


class MaintenanceWindow(BaseModel):
    """Time-boxed suppression keyed by instance and alert type allow-lists."""

    id: int | None = None
    name: str = ""
    description: str = ""
    start_time: datetime.datetime
    end_time: datetime.datetime
    recurring: bool = False
    recurrence_pattern: RecurrencePattern = RecurrencePattern.NONE
    instance_filter: list[str] = Field(default_factory=list)
    alert_type_filter: list[str] = Field(default_factory=list)
    created_by: str | None = None
    created_at: datetime.datetime | None = None
    updated_at: datetime.datetime | None = None

    def is_active(self, now: datetime.datetime) -> bool:
        return self.start_time <= now < self.end_time

    def is_upcoming(self, now: datetime.datetime) -> bool:
        return now < self.start_time

    @property
    def duration(self) -> datetime.timedelta:
        return self.end_time - self.start_time

    def status_text(self, now: datetime.datetime) -> str:
        if self.is_active(now):
            return "Active"
        return "Ended" if now >= self.end_time else "Scheduled"


# ── History ─────────────────────────────────────────────────────


class NotificationResult(BaseModel):
    """Immutable history row for one channel dispatch."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    channel_id: int | None
    channel_name: str = ""
    channel_type: ChannelType | None = None
    active_alert_id: int | None = None
    alert_id: str
    alert_type: str = ""
    severity: str = ""
    message: str = ""
    instance_name: str | None = None
    kind: NotificationKind = NotificationKind.ESCALATION
    escalation_tier: int | None = None
    repeat_iteration: int = 0
    status: DeliveryStatus
    sent_at: datetime.datetime
    response_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    dedup_key: str | None = None

    @property
    def success(self) -> bool:
        return self.status in (DeliveryStatus.SENT, DeliveryStatus.TEST_MODE)

    @property
    def is_attempt(self) -> bool:
        return self.status in ATTEMPT_STATUSES


# ── Aggregates ──────────────────────────────────────────────────


class AlertStats(BaseModel):
    active_count: int = 0
    critical_count: int = 0
    unacknowledged_count: int = 0
    resolved_last_24h: int = 0
    active_silences: int = 0
    active_maintenance_windows: int = 0

    @property
    def has_critical_unacknowledged(self) -> bool:
        return self.critical_count > 0 and self.unacknowledged_count > 0


class NotificationStats(BaseModel):
    total: int = 0
    success_count: int = 0
    failure_count: int = 0
    rate_limited_count: int = 0

    @property
    def success_rate(self) -> float:
        attempts = self.success_count + self.failure_count
        if attempts == 0:
            return 100.0
        return self.success_count * 100.0 / attempts
