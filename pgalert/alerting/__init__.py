"""Alert lifecycle, escalation, suppression and notification dispatch."""

from pgalert.alerting.dispatcher import NotificationDispatcher, make_dedup_key
from pgalert.alerting.escalation import EscalationEngine, escalation_state, plan_next
from pgalert.alerting.exceptions import (
    AlertingError,
    AlertNotFoundError,
    ChannelConfigError,
    InvalidSilenceError,
    PolicyNotFoundError,
    RuleNotFoundError,
)
from pgalert.alerting.factory import AlertingStack, create_alerting_stack
from pgalert.alerting.lifecycle import AlertLifecycleManager
from pgalert.alerting.renderers import DEFAULT_RENDERERS, Renderer
from pgalert.alerting.scheduler import EscalationScheduler
from pgalert.alerting.suppression import SuppressionEvaluator
from pgalert.alerting.transports import (
    NotificationTransport,
    SmtpTransport,
    WebhookTransport,
    build_transports,
)
from pgalert.alerting.types import (
    CycleReport,
    EscalationStatus,
    RenderedPayload,
    SuppressionDecision,
    TransportResponse,
)

__all__ = [
    "AlertLifecycleManager",
    "AlertNotFoundError",
    "AlertingError",
    "AlertingStack",
    "ChannelConfigError",
    "CycleReport",
    "DEFAULT_RENDERERS",
    "EscalationEngine",
    "EscalationScheduler",
    "EscalationStatus",
    "InvalidSilenceError",
    "NotificationDispatcher",
    "NotificationTransport",
    "PolicyNotFoundError",
    "RenderedPayload",
    "Renderer",
    "RuleNotFoundError",
    "SmtpTransport",
    "SuppressionDecision",
    "SuppressionEvaluator",
    "TransportResponse",
    "WebhookTransport",
    "build_transports",
    "create_alerting_stack",
    "escalation_state",
    "make_dedup_key",
    "plan_next",
]
