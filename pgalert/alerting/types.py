"""Value types passed between the alerting components."""

from __future__ import annotations

import datetime
from typing import Any

from pydantic import BaseModel, Field

from pgalert.core.types import (
    AlertSilence,
    EscalationState,
    EscalationTier,
    MaintenanceWindow,
    NotificationResult,
)


class RenderedPayload(BaseModel):
    """A channel-type-specific message ready for a transport.

    For webhook channels ``target`` is the URL and ``body`` the JSON document;
    for email ``target`` is the comma-joined recipient list and ``body``
    carries ``subject``, ``text``, ``html`` and ``from``.
    """

    target: str
    body: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    accepted_statuses: tuple[int, ...] = (200,)
    deliver: bool = True


class TransportResponse(BaseModel):
    """What a transport reports back for one send."""

    success: bool
    response_code: int | None = None
    body: str | None = None
    error: str | None = None


class SuppressionDecision(BaseModel):
    """Whether an alert is suppressed right now, and by what."""

    suppressed: bool = False
    silence: AlertSilence | None = None
    window: MaintenanceWindow | None = None

    @property
    def reason(self) -> str:
        if self.silence is not None:
            return f"silence:{self.silence.id}"
        if self.window is not None:
            return f"maintenance_window:{self.window.id}"
        return ""


class PlannedEscalation(BaseModel):
    """The next step an alert will take and when it becomes due."""

    tier: EscalationTier
    target_tier: int
    repeat_iteration: int
    due_at: datetime.datetime
    misconfigured: bool = False


class EscalationStatus(BaseModel):
    """Read-only view of an alert's position in its policy."""

    alert_row_id: int
    state: EscalationState
    current_tier: int
    max_tier: int
    repeat_iteration: int = 0
    repeat_count: int = 0
    next_tier: int | None = None
    next_due_at: datetime.datetime | None = None
    minutes_until_next: int | None = None

    @property
    def status_text(self) -> str:
        if self.state == EscalationState.RESOLVED:
            return "Resolved"
        if self.state == EscalationState.ACKNOWLEDGED:
            return "Acknowledged"
        if self.next_due_at is None:
            return "Max Tier Reached"
        if not self.minutes_until_next:
            return "Escalation Pending"
        return f"Tier {self.current_tier} (Next in {self.minutes_until_next}m)"


class CycleReport(BaseModel):
    """Outcome of one escalation cycle."""

    started_at: datetime.datetime
    candidates: int = 0
    due: int = 0
    escalated: int = 0
    suppressed: int = 0
    conflicts: int = 0
    failed: int = 0
    results: list[NotificationResult] = Field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for r in self.results if r.success)
