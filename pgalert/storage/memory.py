"""In-process AlertStore — the reference implementation of the storage contract.

All mutating operations run under one ``asyncio.Lock`` so the atomic
operations (ingestion dedup, compare-and-set, delivery claims) hold for every
coroutine sharing the store. Entities are copied on the way in and out, so
callers can never mutate stored state behind the store's back.
"""

from __future__ import annotations

import asyncio
import datetime
import itertools
from collections import defaultdict
from collections.abc import Mapping
from typing import TypeVar

from pydantic import BaseModel

from pgalert.core.types import (
    ActiveAlert,
    AlertSilence,
    DeliveryStatus,
    EscalationPolicy,
    MaintenanceWindow,
    NotificationChannel,
    NotificationResult,
    NotificationStats,
)
from pgalert.storage.exceptions import (
    DuplicateAlertError,
    NotFoundError,
    VersionConflictError,
)
from pgalert.storage.interfaces import AlertStore, ClaimOutcome, DeliveryClaim

_M = TypeVar("_M", bound=BaseModel)


def _copy(model: _M, **update: object) -> _M:
    return model.model_copy(update=update or None, deep=True)


class InMemoryAlertStore(AlertStore):
    """Dictionary-backed store with optimistic versioning on alerts."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._ids: defaultdict[str, itertools.count[int]] = defaultdict(
            lambda: itertools.count(1)
        )
        self._alerts: dict[int, ActiveAlert] = {}
        self._policies: dict[int, EscalationPolicy] = {}
        self._channels: dict[int, NotificationChannel] = {}
        self._silences: dict[int, AlertSilence] = {}
        self._windows: dict[int, MaintenanceWindow] = {}
        self._results: list[NotificationResult] = []
        self._claims: dict[int, DeliveryClaim] = {}

    def _next_id(self, kind: str, taken: Mapping[int, object] | None = None) -> int:
        while True:
            candidate = next(self._ids[kind])
            if taken is None or candidate not in taken:
                return candidate

    # ── Alerts ──────────────────────────────────────────────────

    async def insert_alert(self, alert: ActiveAlert) -> ActiveAlert:
        async with self._lock:
            for existing in self._alerts.values():
                if existing.alert_id == alert.alert_id and not existing.resolved:
                    raise DuplicateAlertError(alert.alert_id)
            stored = _copy(alert, id=self._next_id("alert"), version=1)
            self._alerts[stored.id] = stored  # type: ignore[index]
            return _copy(stored)

    async def get_alert(self, alert_row_id: int) -> ActiveAlert | None:
        alert = self._alerts.get(alert_row_id)
        return _copy(alert) if alert else None

    async def find_unresolved_by_alert_id(self, alert_id: str) -> ActiveAlert | None:
        for alert in self._alerts.values():
            if alert.alert_id == alert_id and not alert.resolved:
                return _copy(alert)
        return None

    async def list_alerts(
        self, limit: int | None = None, include_resolved: bool = True
    ) -> list[ActiveAlert]:
        alerts = [
            a for a in self._alerts.values() if include_resolved or not a.resolved
        ]
        alerts.sort(key=lambda a: (a.fired_at, a.id or 0), reverse=True)
        return [_copy(a) for a in alerts[:limit]]

    async def find_escalation_candidates(self) -> list[ActiveAlert]:
        alerts = [a for a in self._alerts.values() if a.in_escalation]
        alerts.sort(key=lambda a: (a.fired_at, a.id or 0))
        return [_copy(a) for a in alerts]

    async def update_alert(self, alert: ActiveAlert, expected_version: int) -> ActiveAlert:
        if alert.id is None:
            raise NotFoundError("alert has no id")
        async with self._lock:
            current = self._alerts.get(alert.id)
            if current is None:
                raise NotFoundError(f"alert {alert.id} not found")
            if current.version != expected_version:
                raise VersionConflictError(alert.id, expected_version, current.version)
            stored = _copy(alert, version=expected_version + 1)
            self._alerts[alert.id] = stored
            return _copy(stored)

    async def delete_resolved_before(self, cutoff: datetime.datetime) -> int:
        async with self._lock:
            doomed = [
                key
                for key, a in self._alerts.items()
                if a.resolved and a.resolved_at is not None and a.resolved_at < cutoff
            ]
            for key in doomed:
                del self._alerts[key]
            return len(doomed)

    # ── Escalation policies ─────────────────────────────────────

    async def get_policy(self, policy_id: int) -> EscalationPolicy | None:
        policy = self._policies.get(policy_id)
        return _copy(policy) if policy else None

    async def list_policies(self) -> list[EscalationPolicy]:
        return [_copy(p) for p in self._policies.values()]

    async def save_policy(self, policy: EscalationPolicy) -> EscalationPolicy:
        async with self._lock:
            stored = _copy(policy, id=policy.id or self._next_id("policy", self._policies))
            self._policies[stored.id] = stored  # type: ignore[index]
            return _copy(stored)

    # ── Channels ────────────────────────────────────────────────

    async def get_channel(self, channel_id: int) -> NotificationChannel | None:
        channel = self._channels.get(channel_id)
        return _copy(channel) if channel else None

    async def list_channels(self, enabled_only: bool = False) -> list[NotificationChannel]:
        return [
            _copy(c)
            for c in sorted(self._channels.values(), key=lambda c: c.id or 0)
            if c.enabled or not enabled_only
        ]

    async def save_channel(self, channel: NotificationChannel) -> NotificationChannel:
        async with self._lock:
            stored = _copy(channel, id=channel.id or self._next_id("channel", self._channels))
            self._channels[stored.id] = stored  # type: ignore[index]
            return _copy(stored)

    async def touch_channel(self, channel_id: int, used_at: datetime.datetime) -> None:
        async with self._lock:
            channel = self._channels.get(channel_id)
            if channel is None:
                raise NotFoundError(f"channel {channel_id} not found")
            self._channels[channel_id] = _copy(channel, last_used_at=used_at)

    # ── Silences ────────────────────────────────────────────────

    async def save_silence(self, silence: AlertSilence) -> AlertSilence:
        async with self._lock:
            stored = _copy(silence, id=silence.id or self._next_id("silence", self._silences))
            self._silences[stored.id] = stored  # type: ignore[index]
            return _copy(stored)

    async def get_silence(self, silence_id: int) -> AlertSilence | None:
        silence = self._silences.get(silence_id)
        return _copy(silence) if silence else None

    async def list_silences(self) -> list[AlertSilence]:
        return [_copy(s) for s in sorted(self._silences.values(), key=lambda s: s.id or 0)]

    async def find_active_silences(self, now: datetime.datetime) -> list[AlertSilence]:
        return [_copy(s) for s in self._silences.values() if s.is_active(now)]

    async def delete_silence(self, silence_id: int) -> bool:
        async with self._lock:
            return self._silences.pop(silence_id, None) is not None

    async def delete_silences_ended_before(self, cutoff: datetime.datetime) -> int:
        async with self._lock:
            doomed = [k for k, s in self._silences.items() if s.end_time < cutoff]
            for key in doomed:
                del self._silences[key]
            return len(doomed)

    # ── Maintenance windows ─────────────────────────────────────

    async def save_window(self, window: MaintenanceWindow) -> MaintenanceWindow:
        async with self._lock:
            stored = _copy(window, id=window.id or self._next_id("window", self._windows))
            self._windows[stored.id] = stored  # type: ignore[index]
            return _copy(stored)

    async def get_window(self, window_id: int) -> MaintenanceWindow | None:
        window = self._windows.get(window_id)
        return _copy(window) if window else None

    async def list_windows(self) -> list[MaintenanceWindow]:
        return [_copy(w) for w in sorted(self._windows.values(), key=lambda w: w.start_time)]

    async def find_active_windows(self, now: datetime.datetime) -> list[MaintenanceWindow]:
        return [_copy(w) for w in self._windows.values() if w.is_active(now)]

    async def find_upcoming_windows(self, now: datetime.datetime) -> list[MaintenanceWindow]:
        upcoming = [w for w in self._windows.values() if w.is_upcoming(now)]
        return [_copy(w) for w in sorted(upcoming, key=lambda w: w.start_time)]

    async def delete_window(self, window_id: int) -> bool:
        async with self._lock:
            return self._windows.pop(window_id, None) is not None

    # ── Notification history ────────────────────────────────────

    def _attempts_since(self, channel_id: int, since: datetime.datetime) -> int:
        return sum(
            1
            for r in self._results
            if r.channel_id == channel_id and r.is_attempt and r.sent_at > since
        )

    async def claim_delivery(
        self,
        dedup_key: str | None,
        channel_id: int,
        rate_limit: int | None,
        since: datetime.datetime,
    ) -> DeliveryClaim:
        async with self._lock:
            if dedup_key is not None:
                in_flight = any(c.dedup_key == dedup_key for c in self._claims.values())
                delivered = any(
                    r.dedup_key == dedup_key and r.success for r in self._results
                )
                if in_flight or delivered:
                    return DeliveryClaim(ClaimOutcome.DUPLICATE, dedup_key, channel_id)

            if rate_limit and rate_limit > 0:
                pending = sum(1 for c in self._claims.values() if c.channel_id == channel_id)
                if self._attempts_since(channel_id, since) + pending >= rate_limit:
                    return DeliveryClaim(ClaimOutcome.RATE_LIMITED, dedup_key, channel_id)

            claim = DeliveryClaim(
                ClaimOutcome.GRANTED, dedup_key, channel_id, token=self._next_id("claim")
            )
            self._claims[claim.token] = claim
            return claim

    async def release_claim(self, claim: DeliveryClaim) -> None:
        async with self._lock:
            self._claims.pop(claim.token, None)

    async def append_result(
        self, result: NotificationResult, claim: DeliveryClaim | None = None
    ) -> NotificationResult:
        async with self._lock:
            if claim is not None:
                self._claims.pop(claim.token, None)
            stored = result.model_copy(update={"id": self._next_id("result")})
            self._results.append(stored)
            return stored

    async def count_attempts_since(self, channel_id: int, since: datetime.datetime) -> int:
        return self._attempts_since(channel_id, since)

    async def has_successful_result(self, dedup_key: str) -> bool:
        return any(r.dedup_key == dedup_key and r.success for r in self._results)

    async def find_failed_since(
        self, since: datetime.datetime, limit: int | None = None
    ) -> list[NotificationResult]:
        failed = [
            r
            for r in self._results
            if r.status == DeliveryStatus.FAILED and r.sent_at > since
        ]
        failed.sort(key=lambda r: (r.sent_at, r.id or 0), reverse=True)
        return failed[:limit]

    async def find_results(
        self, alert_id: str | None = None, limit: int | None = None
    ) -> list[NotificationResult]:
        rows = [r for r in self._results if alert_id is None or r.alert_id == alert_id]
        rows.sort(key=lambda r: (r.sent_at, r.id or 0), reverse=True)
        return rows[:limit]

    async def result_stats(self, since: datetime.datetime) -> NotificationStats:
        rows = [r for r in self._results if r.sent_at > since]
        return NotificationStats(
            total=len(rows),
            success_count=sum(1 for r in rows if r.success),
            failure_count=sum(1 for r in rows if r.status == DeliveryStatus.FAILED),
            rate_limited_count=sum(
                1 for r in rows if r.status == DeliveryStatus.RATE_LIMITED
            ),
        )

    async def delete_results_before(self, cutoff: datetime.datetime) -> int:
        async with self._lock:
            kept = [r for r in self._results if r.sent_at >= cutoff]
            removed = len(self._results) - len(kept)
            self._results = kept
            return removed
