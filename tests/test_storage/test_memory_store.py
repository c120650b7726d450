"""Tests for InMemoryAlertStore — ingestion dedup, CAS, delivery claims, history."""

from __future__ import annotations

import asyncio
import datetime

import pytest

from pgalert.core.types import (
    ActiveAlert,
    AlertSilence,
    ChannelType,
    DeliveryStatus,
    EscalationPolicy,
    MaintenanceWindow,
    NotificationChannel,
    NotificationResult,
)
from pgalert.storage.exceptions import (
    DuplicateAlertError,
    NotFoundError,
    VersionConflictError,
)
from pgalert.storage.interfaces import ClaimOutcome
from pgalert.storage.memory import InMemoryAlertStore

T0 = datetime.datetime(2024, 3, 1, 12, 0, tzinfo=datetime.UTC)
HOUR = datetime.timedelta(hours=1)


# ── Helpers ─────────────────────────────────────────────────────


def _alert(**kw: object) -> ActiveAlert:
    defaults: dict[str, object] = {
        "alert_id": "HIGH_CPU-db1",
        "alert_type": "HIGH_CPU",
        "severity": "WARNING",
        "fired_at": T0,
    }
    defaults.update(kw)
    return ActiveAlert(**defaults)  # type: ignore[arg-type]


def _result(**kw: object) -> NotificationResult:
    defaults: dict[str, object] = {
        "channel_id": 1,
        "alert_id": "HIGH_CPU-db1",
        "status": DeliveryStatus.SENT,
        "sent_at": T0,
    }
    defaults.update(kw)
    return NotificationResult(**defaults)  # type: ignore[arg-type]


# ── Alerts ──────────────────────────────────────────────────────


class TestAlerts:
    async def test_insert_assigns_id_and_version(self) -> None:
        store = InMemoryAlertStore()
        stored = await store.insert_alert(_alert())
        assert stored.id == 1
        assert stored.version == 1

    async def test_duplicate_unresolved_rejected(self) -> None:
        store = InMemoryAlertStore()
        await store.insert_alert(_alert())
        with pytest.raises(DuplicateAlertError):
            await store.insert_alert(_alert())

    async def test_same_key_allowed_after_resolution(self) -> None:
        store = InMemoryAlertStore()
        first = await store.insert_alert(_alert())
        await store.update_alert(
            first.model_copy(update={"resolved": True, "resolved_at": T0}), expected_version=1
        )
        second = await store.insert_alert(_alert())
        assert second.id != first.id

    async def test_update_bumps_version(self) -> None:
        store = InMemoryAlertStore()
        stored = await store.insert_alert(_alert())
        updated = await store.update_alert(
            stored.model_copy(update={"current_escalation_tier": 1}), expected_version=1
        )
        assert updated.version == 2
        assert (await store.get_alert(stored.id)).current_escalation_tier == 1  # type: ignore[arg-type, union-attr]

    async def test_stale_version_conflicts(self) -> None:
        store = InMemoryAlertStore()
        stored = await store.insert_alert(_alert())
        await store.update_alert(stored, expected_version=1)
        with pytest.raises(VersionConflictError) as exc_info:
            await store.update_alert(stored, expected_version=1)
        assert exc_info.value.actual == 2

    async def test_update_missing_alert(self) -> None:
        store = InMemoryAlertStore()
        with pytest.raises(NotFoundError):
            await store.update_alert(_alert(id=99), expected_version=1)

    async def test_returned_copies_are_detached(self) -> None:
        store = InMemoryAlertStore()
        stored = await store.insert_alert(_alert(metadata={"k": "v"}))
        stored.metadata["k"] = "changed"
        fresh = await store.get_alert(stored.id)  # type: ignore[arg-type]
        assert fresh is not None and fresh.metadata["k"] == "v"

    async def test_escalation_candidates_exclude_acked_and_resolved(self) -> None:
        store = InMemoryAlertStore()
        await store.insert_alert(_alert(alert_id="a"))
        await store.insert_alert(_alert(alert_id="b", acknowledged=True))
        await store.insert_alert(_alert(alert_id="c", resolved=True, resolved_at=T0))
        candidates = await store.find_escalation_candidates()
        assert [a.alert_id for a in candidates] == ["a"]

    async def test_delete_resolved_before(self) -> None:
        store = InMemoryAlertStore()
        await store.insert_alert(_alert(alert_id="old", resolved=True, resolved_at=T0 - 40 * 24 * HOUR))
        await store.insert_alert(_alert(alert_id="new", resolved=True, resolved_at=T0))
        await store.insert_alert(_alert(alert_id="open"))
        assert await store.delete_resolved_before(T0 - 30 * 24 * HOUR) == 1
        assert {a.alert_id for a in await store.list_alerts()} == {"new", "open"}


# ── Catalog entities ────────────────────────────────────────────


class TestCatalogEntities:
    async def test_explicit_ids_are_not_reused(self) -> None:
        store = InMemoryAlertStore()
        await store.save_silence(AlertSilence(id=1, start_time=T0, end_time=T0 + HOUR))
        created = await store.save_silence(AlertSilence(start_time=T0, end_time=T0 + HOUR))
        assert created.id == 2

    async def test_list_enabled_channels(self) -> None:
        store = InMemoryAlertStore()
        await store.save_channel(NotificationChannel(name="a", channel_type=ChannelType.SLACK))
        await store.save_channel(
            NotificationChannel(name="b", channel_type=ChannelType.SLACK, enabled=False)
        )
        assert [c.name for c in await store.list_channels(enabled_only=True)] == ["a"]
        assert len(await store.list_channels()) == 2

    async def test_touch_channel(self) -> None:
        store = InMemoryAlertStore()
        ch = await store.save_channel(NotificationChannel(name="a", channel_type=ChannelType.SLACK))
        await store.touch_channel(ch.id, T0)  # type: ignore[arg-type]
        assert (await store.get_channel(ch.id)).last_used_at == T0  # type: ignore[arg-type, union-attr]
        with pytest.raises(NotFoundError):
            await store.touch_channel(42, T0)

    async def test_save_policy(self) -> None:
        store = InMemoryAlertStore()
        policy = await store.save_policy(EscalationPolicy(name="p"))
        assert (await store.get_policy(policy.id)).name == "p"  # type: ignore[arg-type, union-attr]

    async def test_active_and_upcoming_windows(self) -> None:
        store = InMemoryAlertStore()
        await store.save_window(MaintenanceWindow(name="now", start_time=T0 - HOUR, end_time=T0 + HOUR))
        await store.save_window(MaintenanceWindow(name="later", start_time=T0 + HOUR, end_time=T0 + 2 * HOUR))
        assert [w.name for w in await store.find_active_windows(T0)] == ["now"]
        assert [w.name for w in await store.find_upcoming_windows(T0)] == ["later"]

    async def test_delete_silences_ended_before(self) -> None:
        store = InMemoryAlertStore()
        await store.save_silence(AlertSilence(start_time=T0 - 10 * 24 * HOUR, end_time=T0 - 8 * 24 * HOUR))
        await store.save_silence(AlertSilence(start_time=T0, end_time=T0 + HOUR))
        assert await store.delete_silences_ended_before(T0 - 7 * 24 * HOUR) == 1
        assert len(await store.list_silences()) == 1


# ── Delivery claims ─────────────────────────────────────────────


class TestDeliveryClaims:
    async def test_grant_then_duplicate_while_in_flight(self) -> None:
        store = InMemoryAlertStore()
        first = await store.claim_delivery("k", 1, None, T0 - HOUR)
        second = await store.claim_delivery("k", 1, None, T0 - HOUR)
        assert first.granted
        assert second.outcome == ClaimOutcome.DUPLICATE

    async def test_duplicate_after_success(self) -> None:
        store = InMemoryAlertStore()
        claim = await store.claim_delivery("k", 1, None, T0 - HOUR)
        await store.append_result(_result(dedup_key="k"), claim)
        again = await store.claim_delivery("k", 1, None, T0 - HOUR)
        assert again.outcome == ClaimOutcome.DUPLICATE
        assert await store.has_successful_result("k")

    async def test_failed_result_allows_retry(self) -> None:
        store = InMemoryAlertStore()
        claim = await store.claim_delivery("k", 1, None, T0 - HOUR)
        await store.append_result(_result(dedup_key="k", status=DeliveryStatus.FAILED), claim)
        assert (await store.claim_delivery("k", 1, None, T0 - HOUR)).granted

    async def test_release_claim(self) -> None:
        store = InMemoryAlertStore()
        claim = await store.claim_delivery("k", 1, None, T0 - HOUR)
        await store.release_claim(claim)
        assert (await store.claim_delivery("k", 1, None, T0 - HOUR)).granted

    async def test_rate_limit_counts_attempts_and_in_flight(self) -> None:
        store = InMemoryAlertStore()
        await store.append_result(_result(dedup_key="a"))
        await store.append_result(_result(dedup_key="b", status=DeliveryStatus.RATE_LIMITED))
        pending = await store.claim_delivery("c", 1, 2, T0 - HOUR)
        assert pending.granted
        limited = await store.claim_delivery("d", 1, 2, T0 - HOUR)
        assert limited.outcome == ClaimOutcome.RATE_LIMITED

    async def test_rate_limit_window(self) -> None:
        store = InMemoryAlertStore()
        await store.append_result(_result(dedup_key="old", sent_at=T0 - 2 * HOUR))
        assert (await store.claim_delivery("new", 1, 1, T0 - HOUR)).granted
        assert await store.count_attempts_since(1, T0 - 3 * HOUR) == 1

    async def test_rate_limit_is_per_channel(self) -> None:
        store = InMemoryAlertStore()
        await store.append_result(_result(dedup_key="a", channel_id=1))
        assert (await store.claim_delivery("b", 2, 1, T0 - HOUR)).granted

    async def test_concurrent_claims_respect_limit(self) -> None:
        store = InMemoryAlertStore()
        claims = await asyncio.gather(
            *(store.claim_delivery(f"k{i}", 1, 3, T0 - HOUR) for i in range(10))
        )
        assert sum(1 for c in claims if c.granted) == 3


# ── History ─────────────────────────────────────────────────────


class TestHistory:
    async def test_find_failed_since(self) -> None:
        store = InMemoryAlertStore()
        await store.append_result(_result(status=DeliveryStatus.FAILED))
        await store.append_result(_result(status=DeliveryStatus.FAILED, sent_at=T0 - 2 * HOUR))
        await store.append_result(_result())
        assert len(await store.find_failed_since(T0 - HOUR)) == 1

    async def test_find_results_newest_first(self) -> None:
        store = InMemoryAlertStore()
        await store.append_result(_result(sent_at=T0))
        await store.append_result(_result(sent_at=T0 + HOUR))
        await store.append_result(_result(alert_id="other", sent_at=T0 + HOUR))
        rows = await store.find_results(alert_id="HIGH_CPU-db1")
        assert [r.sent_at for r in rows] == [T0 + HOUR, T0]
        assert len(await store.find_results(limit=1)) == 1

    async def test_result_stats(self) -> None:
        store = InMemoryAlertStore()
        await store.append_result(_result())
        await store.append_result(_result(status=DeliveryStatus.FAILED))
        await store.append_result(_result(status=DeliveryStatus.RATE_LIMITED))
        stats = await store.result_stats(T0 - HOUR)
        assert stats.total == 3
        assert stats.success_count == 1
        assert stats.failure_count == 1
        assert stats.rate_limited_count == 1

    async def test_delete_results_before(self) -> None:
        store = InMemoryAlertStore()
        await store.append_result(_result(sent_at=T0 - 31 * 24 * HOUR))
        await store.append_result(_result())
        assert await store.delete_results_before(T0 - 30 * 24 * HOUR) == 1
        assert len(await store.find_results()) == 1
