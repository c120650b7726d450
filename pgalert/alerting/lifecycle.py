"""Alert lifecycle — fire, acknowledge, resolve, and the suppression rules.

Every mutation goes through the ``AlertStore``; acknowledge and resolve use
compare-and-set and reload on a version conflict. Nothing here performs
network I/O except the optional resolution notice.
"""

from __future__ import annotations

import datetime
from typing import Any, Callable

import structlog

from pgalert.core.clock import Clock, SystemClock
from pgalert.core.config import RetentionConfig
from pgalert.core.types import (
    ActiveAlert,
    AlertSilence,
    AlertStats,
    EscalationPolicy,
    MaintenanceWindow,
    Matcher,
    MatchKind,
    NotificationResult,
)
from pgalert.storage.exceptions import DuplicateAlertError, VersionConflictError
from pgalert.storage.interfaces import AlertStore
from pgalert.alerting.dispatcher import NotificationDispatcher
from pgalert.alerting.exceptions import (
    AlertNotFoundError,
    InvalidSilenceError,
    PolicyNotFoundError,
    RuleNotFoundError,
)
from pgalert.alerting.suppression import SuppressionEvaluator

logger = structlog.get_logger(__name__)

FireCallback = Callable[[ActiveAlert], None]

_MAX_CAS_ATTEMPTS = 5


def default_alert_id(alert_type: str, instance_name: str | None) -> str:
    return f"{alert_type}-{instance_name or 'global'}"


class AlertLifecycleManager:
    """Inbound operations on alerts, silences and maintenance windows."""

    def __init__(
        self,
        store: AlertStore,
        dispatcher: NotificationDispatcher | None = None,
        evaluator: SuppressionEvaluator | None = None,
        clock: Clock | None = None,
        retention: RetentionConfig | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._evaluator = evaluator or SuppressionEvaluator()
        self._clock = clock or SystemClock()
        self._retention = retention or RetentionConfig()
        self._on_fire: list[FireCallback] = []

    def on_fire(self, callback: FireCallback) -> None:
        """Register a callback invoked after a new alert is stored."""
        self._on_fire.append(callback)

    # ── Alerts ──────────────────────────────────────────────────

    async def fire_alert(
        self,
        alert_type: str,
        severity: str,
        message: str,
        instance_name: str | None = None,
        escalation_policy_id: int | None = None,
        *,
        alert_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ActiveAlert:
        """Record a firing alert, or return the unresolved one with the same key.

        Raises:
            PolicyNotFoundError: if *escalation_policy_id* names no policy.
        """
        key = alert_id or default_alert_id(alert_type, instance_name)
        existing = await self._store.find_unresolved_by_alert_id(key)
        if existing is not None:
            logger.debug("alert_already_active", alert_id=key, alert_row_id=existing.id)
            return existing

        if escalation_policy_id is not None:
            if await self._store.get_policy(escalation_policy_id) is None:
                raise PolicyNotFoundError(f"escalation policy {escalation_policy_id} not found")

        alert = ActiveAlert(
            alert_id=key,
            alert_type=alert_type,
            severity=severity,
            message=message,
            instance_name=instance_name,
            fired_at=self._clock.now(),
            escalation_policy_id=escalation_policy_id,
            metadata=metadata or {},
        )
        try:
            stored = await self._store.insert_alert(alert)
        except DuplicateAlertError:
            # Lost the race with a concurrent fire for the same key.
            winner = await self._store.find_unresolved_by_alert_id(key)
            if winner is None:
                raise
            return winner

        logger.info(
            "alert_fired",
            alert_id=key,
            alert_row_id=stored.id,
            alert_type=alert_type,
            severity=stored.severity,
            instance=instance_name,
            policy_id=escalation_policy_id,
        )
        for callback in self._on_fire:
            try:
                callback(stored)
            except Exception:
                logger.exception("fire_callback_error", alert_id=key)
        return stored

    async def _mutate(
        self,
        alert_row_id: int,
        change: Callable[[ActiveAlert], dict[str, Any] | None],
    ) -> tuple[ActiveAlert, bool]:
        """Apply *change* with compare-and-set, reloading on conflict.

        *change* returns the fields to update, or None when the alert is
        already in the target state. Returns ``(alert, changed)``.
        """
        attempts = 0
        while True:
            attempts += 1
            alert = await self._store.get_alert(alert_row_id)
            if alert is None:
                raise AlertNotFoundError(f"alert {alert_row_id} not found")
            update = change(alert)
            if update is None:
                return alert, False
            try:
                stored = await self._store.update_alert(
                    alert.model_copy(update=update), expected_version=alert.version
                )
            except VersionConflictError:
                if attempts >= _MAX_CAS_ATTEMPTS:
                    raise
                logger.debug("alert_update_conflict", alert_row_id=alert_row_id)
                continue
            return stored, True

    async def acknowledge_alert(
        self, alert_row_id: int, acknowledged_by: str | None = None
    ) -> ActiveAlert:
        """Stop escalating an alert. Acknowledging twice is a no-op."""
        now = self._clock.now()

        def change(alert: ActiveAlert) -> dict[str, Any] | None:
            if alert.acknowledged or alert.resolved:
                return None
            return {
                "acknowledged": True,
                "acknowledged_at": now,
                "acknowledged_by": acknowledged_by,
            }

        alert, changed = await self._mutate(alert_row_id, change)
        if changed:
            logger.info(
                "alert_acknowledged",
                alert_id=alert.alert_id,
                alert_row_id=alert_row_id,
                by=acknowledged_by,
            )
        return alert

    async def resolve_alert(
        self,
        alert_row_id: int,
        send_resolution_notice: bool = False,
        resolved_by: str | None = None,
    ) -> list[NotificationResult]:
        """Mark an alert resolved; optionally notify the channels of its current tier.

        Returns the resolution results (empty when none were sent).
        """
        now = self._clock.now()

        def change(alert: ActiveAlert) -> dict[str, Any] | None:
            if alert.resolved:
                return None
            return {"resolved": True, "resolved_at": now, "resolved_by": resolved_by}

        alert, changed = await self._mutate(alert_row_id, change)
        if not changed:
            return []
        logger.info(
            "alert_resolved",
            alert_id=alert.alert_id,
            alert_row_id=alert_row_id,
            by=resolved_by,
            duration=alert.duration_text(now),
        )
        if not send_resolution_notice or self._dispatcher is None:
            return []

        try:
            channel_ids = await self._current_tier_channels(alert)
            if not channel_ids:
                return []
            return await self._dispatcher.dispatch_resolution(alert, channel_ids)
        except Exception:
            logger.exception("resolution_notice_error", alert_id=alert.alert_id)
            return []

    async def resolve_by_alert_id(
        self,
        alert_id: str,
        send_resolution_notice: bool = False,
        resolved_by: str | None = None,
    ) -> list[NotificationResult]:
        """Resolve the unresolved alert with correlation key *alert_id*, if any."""
        alert = await self._store.find_unresolved_by_alert_id(alert_id)
        if alert is None or alert.id is None:
            return []
        return await self.resolve_alert(alert.id, send_resolution_notice, resolved_by)

    async def _current_tier_channels(self, alert: ActiveAlert) -> list[int]:
        if alert.current_escalation_tier == 0:
            return []
        if alert.escalation_policy_id is None:
            channels = await self._store.list_channels(enabled_only=True)
            policy: EscalationPolicy | None = EscalationPolicy.broadcast(
                [c.id for c in channels if c.id is not None]
            )
        else:
            policy = await self._store.get_policy(alert.escalation_policy_id)
        if policy is None:
            return []
        tier = policy.tier(alert.current_escalation_tier)
        return list(tier.channel_ids) if tier else []

    async def get_alert(self, alert_row_id: int) -> ActiveAlert:
        alert = await self._store.get_alert(alert_row_id)
        if alert is None:
            raise AlertNotFoundError(f"alert {alert_row_id} not found")
        return alert

    async def get_alert_by_alert_id(self, alert_id: str) -> ActiveAlert | None:
        return await self._store.find_unresolved_by_alert_id(alert_id)

    async def get_active_alerts(self) -> list[ActiveAlert]:
        return await self._store.list_alerts(include_resolved=False)

    async def get_recent_alerts(self, limit: int = 50) -> list[ActiveAlert]:
        return await self._store.list_alerts(limit=limit)

    async def get_alert_stats(self) -> AlertStats:
        now = self._clock.now()
        day_ago = now - datetime.timedelta(hours=24)
        alerts = await self._store.list_alerts()
        active = [a for a in alerts if not a.resolved]
        return AlertStats(
            active_count=len(active),
            critical_count=sum(1 for a in active if a.severity == "CRITICAL"),
            unacknowledged_count=sum(1 for a in active if not a.acknowledged),
            resolved_last_24h=sum(
                1
                for a in alerts
                if a.resolved and a.resolved_at is not None and a.resolved_at > day_ago
            ),
            active_silences=len(await self._store.find_active_silences(now)),
            active_maintenance_windows=len(await self._store.find_active_windows(now)),
        )

    # ── Silences ────────────────────────────────────────────────

    async def create_silence(self, silence: AlertSilence) -> AlertSilence:
        """Validate and persist a silence.

        Raises:
            InvalidSilenceError: if the time range is empty or a matcher is unusable.
        """
        if silence.end_time <= silence.start_time:
            raise InvalidSilenceError("silence end_time must be after start_time")
        errors = [
            f"{m.display_text}: {err}"
            for m in silence.matchers
            for err in self._evaluator.validate_matcher(m)
        ]
        if errors:
            raise InvalidSilenceError("; ".join(errors))

        if silence.created_at is None:
            silence = silence.model_copy(update={"created_at": self._clock.now()})
        stored = await self._store.save_silence(silence)
        logger.info(
            "silence_created",
            silence_id=stored.id,
            name=stored.name,
            matchers=[m.display_text for m in stored.matchers],
            until=stored.end_time.isoformat(),
            by=stored.created_by,
        )
        return stored

    async def create_quick_silence(
        self,
        alert_type: str | None,
        instance_name: str | None,
        duration_minutes: int,
        created_by: str | None = None,
    ) -> AlertSilence:
        """Silence one alert type and/or instance from now for *duration_minutes*."""
        if duration_minutes <= 0:
            raise InvalidSilenceError("duration_minutes must be positive")
        now = self._clock.now()
        matchers: list[Matcher] = []
        if alert_type:
            matchers.append(Matcher(field="alert_type", kind=MatchKind.EXACT, value=alert_type))
        if instance_name:
            matchers.append(
                Matcher(field="instance_name", kind=MatchKind.EXACT, value=instance_name)
            )
        silence = AlertSilence(
            name=f"Quick silence: {alert_type or 'all types'} on {instance_name or 'all instances'}",
            description=f"Silenced for {duration_minutes} minutes",
            start_time=now,
            end_time=now + datetime.timedelta(minutes=duration_minutes),
            matchers=matchers,
            created_by=created_by,
        )
        return await self.create_silence(silence)

    async def expire_silence(self, silence_id: int) -> AlertSilence:
        """End a silence now."""
        silence = await self._store.get_silence(silence_id)
        if silence is None:
            raise RuleNotFoundError(f"silence {silence_id} not found")
        now = self._clock.now()
        if silence.end_time > now:
            silence = await self._store.save_silence(
                silence.model_copy(update={"end_time": now})
            )
            logger.info("silence_expired", silence_id=silence_id)
        return silence

    async def delete_silence(self, silence_id: int) -> None:
        if not await self._store.delete_silence(silence_id):
            raise RuleNotFoundError(f"silence {silence_id} not found")
        logger.info("silence_deleted", silence_id=silence_id)

    async def get_active_silences(self) -> list[AlertSilence]:
        return await self._store.find_active_silences(self._clock.now())

    async def list_silences(self) -> list[AlertSilence]:
        return await self._store.list_silences()

    # ── Maintenance windows ─────────────────────────────────────

    @staticmethod
    def _check_window(window: MaintenanceWindow) -> None:
        if window.end_time <= window.start_time:
            raise InvalidSilenceError("maintenance window end_time must be after start_time")

    async def create_maintenance_window(self, window: MaintenanceWindow) -> MaintenanceWindow:
        self._check_window(window)
        now = self._clock.now()
        stored = await self._store.save_window(
            window.model_copy(
                update={"id": None, "created_at": window.created_at or now, "updated_at": now}
            )
        )
        logger.info(
            "maintenance_window_created",
            window_id=stored.id,
            name=stored.name,
            start=stored.start_time.isoformat(),
            end=stored.end_time.isoformat(),
        )
        return stored

    async def update_maintenance_window(self, window: MaintenanceWindow) -> MaintenanceWindow:
        if window.id is None or await self._store.get_window(window.id) is None:
            raise RuleNotFoundError(f"maintenance window {window.id} not found")
        self._check_window(window)
        stored = await self._store.save_window(
            window.model_copy(update={"updated_at": self._clock.now()})
        )
        logger.info("maintenance_window_updated", window_id=stored.id)
        return stored

    async def delete_maintenance_window(self, window_id: int) -> None:
        if not await self._store.delete_window(window_id):
            raise RuleNotFoundError(f"maintenance window {window_id} not found")
        logger.info("maintenance_window_deleted", window_id=window_id)

    async def get_active_maintenance_windows(self) -> list[MaintenanceWindow]:
        return await self._store.find_active_windows(self._clock.now())

    async def get_upcoming_maintenance_windows(self) -> list[MaintenanceWindow]:
        return await self._store.find_upcoming_windows(self._clock.now())

    async def list_maintenance_windows(self) -> list[MaintenanceWindow]:
        return await self._store.list_windows()

    # ── Retention ───────────────────────────────────────────────

    async def cleanup_old_data(self) -> dict[str, int]:
        """Delete resolved alerts, ended silences and history past retention."""
        now = self._clock.now()
        counts = {
            "alerts": await self._store.delete_resolved_before(
                now - datetime.timedelta(days=self._retention.alert_days)
            ),
            "silences": await self._store.delete_silences_ended_before(
                now - datetime.timedelta(days=self._retention.silence_days)
            ),
            "history": await self._store.delete_results_before(
                now - datetime.timedelta(days=self._retention.history_days)
            ),
        }
        logger.info("retention_sweep_complete", **counts)
        return counts
