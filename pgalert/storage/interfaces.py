"""Storage boundary for the alerting engine.

The engine never talks to a database directly. Every backend implements
:class:`AlertStore`; the operations that protect shared state across engine
instances are atomic by contract:

- :meth:`AlertStore.insert_alert` refuses a second unresolved alert for the
  same correlation key.
- :meth:`AlertStore.update_alert` is a compare-and-set on ``version``.
- :meth:`AlertStore.claim_delivery` checks the dedup key and the channel's
  rate-limit window and reserves a slot in one step.
"""

from __future__ import annotations

import abc
import datetime
from dataclasses import dataclass
from enum import StrEnum

from pgalert.core.types import (
    ActiveAlert,
    AlertSilence,
    EscalationPolicy,
    MaintenanceWindow,
    NotificationChannel,
    NotificationResult,
    NotificationStats,
)


class ClaimOutcome(StrEnum):
    """Result of trying to reserve a delivery."""

    GRANTED = "GRANTED"
    DUPLICATE = "DUPLICATE"
    RATE_LIMITED = "RATE_LIMITED"


@dataclass(frozen=True)
class DeliveryClaim:
    """A reservation held while a delivery is in flight."""

    outcome: ClaimOutcome
    dedup_key: str | None
    channel_id: int | None
    token: int = 0

    @property
    def granted(self) -> bool:
        return self.outcome == ClaimOutcome.GRANTED


class AlertStore(abc.ABC):
    """Async persistence interface for alerts, configuration and history."""

    # ── Alerts ──────────────────────────────────────────────────

    @abc.abstractmethod
    async def insert_alert(self, alert: ActiveAlert) -> ActiveAlert:
        """Persist a new alert and return it with ``id`` and ``version`` set.

        Raises:
            DuplicateAlertError: an unresolved alert with the same
                ``alert_id`` already exists.
        """

    @abc.abstractmethod
    async def get_alert(self, alert_row_id: int) -> ActiveAlert | None: ...

    @abc.abstractmethod
    async def find_unresolved_by_alert_id(self, alert_id: str) -> ActiveAlert | None: ...

    @abc.abstractmethod
    async def list_alerts(
        self, limit: int | None = None, include_resolved: bool = True
    ) -> list[ActiveAlert]:
        """Newest first."""

    @abc.abstractmethod
    async def find_escalation_candidates(self) -> list[ActiveAlert]:
        """Alerts that are neither resolved nor acknowledged."""

    @abc.abstractmethod
    async def update_alert(self, alert: ActiveAlert, expected_version: int) -> ActiveAlert:
        """Compare-and-set write. Returns the stored alert with a bumped version.

        Raises:
            NotFoundError: the alert does not exist.
            VersionConflictError: the stored version differs from
                ``expected_version``.
        """

    @abc.abstractmethod
    async def delete_resolved_before(self, cutoff: datetime.datetime) -> int: ...

    # ── Escalation policies ─────────────────────────────────────

    @abc.abstractmethod
    async def get_policy(self, policy_id: int) -> EscalationPolicy | None: ...

    @abc.abstractmethod
    async def list_policies(self) -> list[EscalationPolicy]: ...

    @abc.abstractmethod
    async def save_policy(self, policy: EscalationPolicy) -> EscalationPolicy: ...

    # ── Channels ────────────────────────────────────────────────

    @abc.abstractmethod
    async def get_channel(self, channel_id: int) -> NotificationChannel | None: ...

    @abc.abstractmethod
    async def list_channels(self, enabled_only: bool = False) -> list[NotificationChannel]: ...

    @abc.abstractmethod
    async def save_channel(self, channel: NotificationChannel) -> NotificationChannel: ...

    @abc.abstractmethod
    async def touch_channel(self, channel_id: int, used_at: datetime.datetime) -> None:
        """Record a successful delivery time on the channel."""

    # ── Silences ────────────────────────────────────────────────

    @abc.abstractmethod
    async def save_silence(self, silence: AlertSilence) -> AlertSilence: ...

    @abc.abstractmethod
    async def get_silence(self, silence_id: int) -> AlertSilence | None: ...

    @abc.abstractmethod
    async def list_silences(self) -> list[AlertSilence]: ...

    @abc.abstractmethod
    async def find_active_silences(self, now: datetime.datetime) -> list[AlertSilence]: ...

    @abc.abstractmethod
    async def delete_silence(self, silence_id: int) -> bool: ...

    @abc.abstractmethod
    async def delete_silences_ended_before(self, cutoff: datetime.datetime) -> int: ...

    # ── Maintenance windows ─────────────────────────────────────

    @abc.abstractmethod
    async def save_window(self, window: MaintenanceWindow) -> MaintenanceWindow: ...

    @abc.abstractmethod
    async def get_window(self, window_id: int) -> MaintenanceWindow | None: ...

    @abc.abstractmethod
    async def list_windows(self) -> list[MaintenanceWindow]: ...

    @abc.abstractmethod
    async def find_active_windows(self, now: datetime.datetime) -> list[MaintenanceWindow]: ...

    @abc.abstractmethod
    async def find_upcoming_windows(self, now: datetime.datetime) -> list[MaintenanceWindow]: ...

    @abc.abstractmethod
    async def delete_window(self, window_id: int) -> bool: ...

    # ── Notification history ────────────────────────────────────

    @abc.abstractmethod
    async def claim_delivery(
        self,
        dedup_key: str | None,
        channel_id: int,
        rate_limit: int | None,
        since: datetime.datetime,
    ) -> DeliveryClaim:
        """Atomically check dedup and rate limit, reserving a slot if granted.

        A dedup key is a duplicate when a successful result with that key
        exists or another claim for it is still in flight. The channel is
        rate limited when attempts since ``since`` plus in-flight claims
        reach ``rate_limit`` (``None``/0 means unlimited).
        """

    @abc.abstractmethod
    async def release_claim(self, claim: DeliveryClaim) -> None:
        """Drop a granted claim without recording a result."""

    @abc.abstractmethod
    async def append_result(
        self, result: NotificationResult, claim: DeliveryClaim | None = None
    ) -> NotificationResult:
        """Append a history row (releasing ``claim``) and return it with ``id`` set."""

    @abc.abstractmethod
    async def count_attempts_since(self, channel_id: int, since: datetime.datetime) -> int: ...

    @abc.abstractmethod
    async def has_successful_result(self, dedup_key: str) -> bool: ...

    @abc.abstractmethod
    async def find_failed_since(
        self, since: datetime.datetime, limit: int | None = None
    ) -> list[NotificationResult]:
        """Failed attempts, newest first."""

    @abc.abstractmethod
    async def find_results(
        self, alert_id: str | None = None, limit: int | None = None
    ) -> list[NotificationResult]:
        """History rows, newest first, optionally for one correlation key."""

    @abc.abstractmethod
    async def result_stats(self, since: datetime.datetime) -> NotificationStats: ...

    @abc.abstractmethod
    async def delete_results_before(self, cutoff: datetime.datetime) -> int: ...

    async def close(self) -> None:
        """Release backend resources."""
        return None
