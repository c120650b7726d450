"""Exception hierarchy for the alerting engine."""

from __future__ import annotations


class AlertingError(Exception):
    """Base exception for alerting errors."""


class AlertNotFoundError(AlertingError):
    """No alert with the given id."""


class PolicyNotFoundError(AlertingError):
    """An alert references an escalation policy that does not exist."""


class ChannelConfigError(AlertingError):
    """A channel's type-specific configuration is missing or invalid."""


class InvalidSilenceError(AlertingError):
    """A silence or maintenance window was rejected at creation time."""


class RuleNotFoundError(AlertingError):
    """No silence or maintenance window with the given id."""
