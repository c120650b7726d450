"""Core module — config, clock, types, logging."""

from pgalert.core.clock import Clock, ManualClock, SystemClock
from pgalert.core.config import Settings, get_settings, load_settings, reset_settings
from pgalert.core.logging import setup_logging
from pgalert.core.types import (
    ActiveAlert,
    AlertSilence,
    ChannelType,
    DeliveryStatus,
    EscalationPolicy,
    EscalationTier,
    MaintenanceWindow,
    Matcher,
    MatchKind,
    NotificationChannel,
    NotificationKind,
    NotificationResult,
)

__all__ = [
    "ActiveAlert",
    "AlertSilence",
    "ChannelType",
    "Clock",
    "DeliveryStatus",
    "EscalationPolicy",
    "EscalationTier",
    "MaintenanceWindow",
    "ManualClock",
    "MatchKind",
    "Matcher",
    "NotificationChannel",
    "NotificationKind",
    "NotificationResult",
    "Settings",
    "SystemClock",
    "get_settings",
    "load_settings",
    "reset_settings",
    "setup_logging",
]
