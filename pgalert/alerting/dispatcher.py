"""Notification dispatcher — routes one alert tier to its channels.

For each target channel the dispatcher:

- drops missing, disabled and filtered-out channels;
- claims the delivery in the store, which atomically rejects duplicates
  (same dedup key already delivered or in flight) and rate-limited channels;
- renders the channel-type payload and hands it to the transport under a
  timeout (test-mode channels are rendered but not delivered);
- persists the outcome and, on success, stamps ``last_used_at``.

Channels are processed concurrently; one failing channel never affects
another.
"""

from __future__ import annotations

import asyncio
import datetime
import hashlib
from collections.abc import Iterable, Mapping

import structlog
from pydantic import ValidationError

from pgalert.core.clock import Clock, SystemClock
from pgalert.core.config import DispatchConfig
from pgalert.core.types import (
    ActiveAlert,
    ChannelType,
    DeliveryStatus,
    EscalationTier,
    NotificationChannel,
    NotificationKind,
    NotificationResult,
    NotificationStats,
)
from pgalert.storage.exceptions import NotFoundError, StorageError
from pgalert.storage.interfaces import AlertStore, ClaimOutcome, DeliveryClaim
from pgalert.alerting.exceptions import ChannelConfigError
from pgalert.alerting.renderers import DEFAULT_RENDERERS, Renderer
from pgalert.alerting.transports import NotificationTransport
from pgalert.alerting.types import TransportResponse

# Dedicated structured logger, one record per dispatch outcome.
notification_log = structlog.get_logger("notification_log")

logger = structlog.get_logger(__name__)

_RETRY_LOOKBACK = datetime.timedelta(hours=1)


def make_dedup_key(
    alert: ActiveAlert,
    tier_order: int,
    channel_id: int,
    repeat_iteration: int = 0,
    kind: NotificationKind = NotificationKind.ESCALATION,
) -> str:
    """Stable digest identifying one (alert, tier, channel[, repeat]) delivery."""
    parts = [alert.alert_id, str(alert.id), str(tier_order), str(channel_id)]
    if repeat_iteration > 0:
        parts.append(f"repeat={repeat_iteration}")
    if kind != NotificationKind.ESCALATION:
        parts.append(kind.value)
    return hashlib.sha256("|".join(parts).encode()).hexdigest()


class NotificationDispatcher:
    """Delivers alert notifications to channels and records every outcome."""

    def __init__(
        self,
        store: AlertStore,
        transports: Mapping[ChannelType, NotificationTransport],
        clock: Clock | None = None,
        config: DispatchConfig | None = None,
        renderers: Mapping[ChannelType, Renderer] | None = None,
    ) -> None:
        self._store = store
        self._transports = dict(transports)
        self._clock = clock or SystemClock()
        self._config = config or DispatchConfig()
        self._renderers = dict(renderers or DEFAULT_RENDERERS)

    @property
    def rate_limit_window(self) -> datetime.timedelta:
        return datetime.timedelta(seconds=self._config.rate_limit_window_secs)

    # ── Entry points ────────────────────────────────────────────

    async def dispatch(
        self,
        alert: ActiveAlert,
        tier: EscalationTier,
        *,
        repeat_iteration: int = 0,
        channel_ids: Iterable[int] | None = None,
    ) -> list[NotificationResult]:
        """Notify every eligible channel of *tier* about *alert*."""
        targets = list(tier.channel_ids)
        if channel_ids is not None:
            allowed = set(channel_ids)
            targets = [cid for cid in targets if cid in allowed]
        return await self._dispatch_to(
            alert,
            targets,
            NotificationKind.ESCALATION,
            tier.tier_order,
            repeat_iteration,
        )

    async def dispatch_resolution(
        self, alert: ActiveAlert, channel_ids: Iterable[int]
    ) -> list[NotificationResult]:
        """Tell *channel_ids* that *alert* has been resolved."""
        return await self._dispatch_to(
            alert,
            list(dict.fromkeys(channel_ids)),
            NotificationKind.RESOLUTION,
            alert.current_escalation_tier,
            0,
        )

    async def test_channel(self, channel_id: int) -> NotificationResult:
        """Send a test notification to one channel, bypassing dedup and rate limits."""
        channel = await self._store.get_channel(channel_id)
        if channel is None:
            raise ChannelConfigError(f"channel {channel_id} not found")

        now = self._clock.now()
        alert = ActiveAlert(
            alert_id=f"test-channel-{channel_id}",
            alert_type="TEST",
            severity="INFO",
            message=f"Test notification for channel '{channel.name}'",
            fired_at=now,
        )
        status, response = await self._send(channel, alert, NotificationKind.TEST, now)
        result = self._result(
            channel, alert, NotificationKind.TEST, None, 0, status, now, None, response
        )
        stored = await self._store.append_result(result)
        if stored.success:
            await self._touch(channel_id, now)
        self._log_outcome(stored)
        return stored

    def validate_channel_config(self, channel: NotificationChannel) -> list[str]:
        """Schema errors first; type-specific checks only once the schema holds."""
        errors = channel.config_errors()
        if errors:
            return errors
        renderer = self._renderers.get(channel.channel_type)
        if renderer is None:
            return [f"no renderer for channel type {channel.channel_type.value}"]
        return renderer.validate(channel)

    async def retry_failed(self, limit: int | None = None) -> list[NotificationResult]:
        """Re-dispatch escalation notifications that failed within the last hour.

        Only the failed channels are retried; channels that have since
        succeeded are skipped by the dedup guard, and acknowledged or
        resolved alerts are left alone.
        """
        since = self._clock.now() - _RETRY_LOOKBACK
        failed = await self._store.find_failed_since(since, limit)

        groups: dict[tuple[int, int, int], set[int]] = {}
        for row in failed:
            if (
                row.kind != NotificationKind.ESCALATION
                or row.active_alert_id is None
                or row.escalation_tier is None
                or row.channel_id is None
            ):
                continue
            key = (row.active_alert_id, row.escalation_tier, row.repeat_iteration)
            groups.setdefault(key, set()).add(row.channel_id)

        results: list[NotificationResult] = []
        for (alert_row_id, tier_order, repeat_iteration), channel_ids in groups.items():
            alert = await self._store.get_alert(alert_row_id)
            if alert is None or not alert.in_escalation:
                logger.debug("retry_skipped", alert_row_id=alert_row_id)
                continue
            tier = EscalationTier(tier_order=tier_order, channel_ids=sorted(channel_ids))
            results.extend(
                await self.dispatch(alert, tier, repeat_iteration=repeat_iteration)
            )

        if groups:
            logger.info(
                "retry_failed_complete",
                groups=len(groups),
                sent=sum(1 for r in results if r.success),
                failed=sum(1 for r in results if r.status == DeliveryStatus.FAILED),
            )
        return results

    # ── History ─────────────────────────────────────────────────

    async def get_stats(self, hours: int = 24) -> NotificationStats:
        since = self._clock.now() - datetime.timedelta(hours=hours)
        return await self._store.result_stats(since)

    async def get_recent_history(self, limit: int = 50) -> list[NotificationResult]:
        return await self._store.find_results(limit=limit)

    async def get_history_for_alert(self, alert_id: str) -> list[NotificationResult]:
        return await self._store.find_results(alert_id=alert_id)

    # ── Internal routing ────────────────────────────────────────

    async def _dispatch_to(
        self,
        alert: ActiveAlert,
        channel_ids: list[int],
        kind: NotificationKind,
        tier_order: int,
        repeat_iteration: int,
    ) -> list[NotificationResult]:
        channels: list[tuple[int, NotificationChannel]] = []
        for channel_id in channel_ids:
            channel = await self._store.get_channel(channel_id)
            if channel is None:
                logger.warning(
                    "channel_not_found", channel_id=channel_id, alert_id=alert.alert_id
                )
                continue
            if not channel.enabled:
                logger.debug("channel_disabled", channel=channel.name)
                continue
            if not channel.accepts(alert):
                logger.debug(
                    "channel_filtered", channel=channel.name, alert_id=alert.alert_id
                )
                continue
            channels.append((channel_id, channel))

        if not channels:
            return []

        outcomes = await asyncio.gather(
            *(
                self._deliver(channel_id, channel, alert, kind, tier_order, repeat_iteration)
                for channel_id, channel in channels
            ),
            return_exceptions=True,
        )

        results: list[NotificationResult] = []
        storage_error: StorageError | None = None
        for (_, channel), outcome in zip(channels, outcomes):
            if isinstance(outcome, StorageError):
                storage_error = storage_error or outcome
            elif isinstance(outcome, BaseException):
                logger.error(
                    "channel_dispatch_error",
                    channel=channel.name,
                    alert_id=alert.alert_id,
                    error=repr(outcome),
                )
            else:
                results.append(outcome)
        if storage_error is not None:
            raise storage_error
        return results

    async def _deliver(
        self,
        channel_id: int,
        channel: NotificationChannel,
        alert: ActiveAlert,
        kind: NotificationKind,
        tier_order: int,
        repeat_iteration: int,
    ) -> NotificationResult:
        now = self._clock.now()
        dedup_key = make_dedup_key(alert, tier_order, channel_id, repeat_iteration, kind)
        claim = await self._store.claim_delivery(
            dedup_key,
            channel_id,
            channel.rate_limit_per_hour,
            now - self.rate_limit_window,
        )

        if claim.outcome == ClaimOutcome.DUPLICATE:
            result = self._result(
                channel, alert, kind, tier_order, repeat_iteration,
                DeliveryStatus.DUPLICATE, now, dedup_key,
            )
            self._log_outcome(result)
            return result

        if claim.outcome == ClaimOutcome.RATE_LIMITED:
            logger.warning(
                "channel_rate_limited",
                channel=channel.name,
                limit=channel.rate_limit_per_hour,
                alert_id=alert.alert_id,
            )
            result = self._result(
                channel, alert, kind, tier_order, repeat_iteration,
                DeliveryStatus.RATE_LIMITED, now, dedup_key,
                error="rate limit exceeded",
            )
            stored = await self._store.append_result(result)
            self._log_outcome(stored)
            return stored

        return await self._deliver_claimed(
            channel_id, channel, alert, kind, tier_order, repeat_iteration, claim, now
        )

    async def _deliver_claimed(
        self,
        channel_id: int,
        channel: NotificationChannel,
        alert: ActiveAlert,
        kind: NotificationKind,
        tier_order: int,
        repeat_iteration: int,
        claim: DeliveryClaim,
        now: datetime.datetime,
    ) -> NotificationResult:
        try:
            status, response = await self._send(channel, alert, kind, now)
            result = self._result(
                channel, alert, kind, tier_order, repeat_iteration,
                status, now, claim.dedup_key, response,
            )
            stored = await self._store.append_result(result, claim)
        except BaseException:
            await self._store.release_claim(claim)
            raise

        if stored.success:
            await self._touch(channel_id, now)
        self._log_outcome(stored)
        return stored

    async def _send(
        self,
        channel: NotificationChannel,
        alert: ActiveAlert,
        kind: NotificationKind,
        now: datetime.datetime,
    ) -> tuple[DeliveryStatus, TransportResponse]:
        renderer = self._renderers.get(channel.channel_type)
        if renderer is None:
            return DeliveryStatus.FAILED, TransportResponse(
                success=False, error=f"no renderer for {channel.channel_type.value}"
            )
        try:
            payload = renderer.render(channel, alert, kind, now)
        except ValidationError as exc:
            error = ChannelConfigError(
                f"invalid {channel.channel_type.value} config for {channel.name!r}: "
                f"{exc.error_count()} error(s)"
            )
            logger.warning("channel_config_invalid", channel=channel.name, error=str(error))
            return DeliveryStatus.FAILED, TransportResponse(success=False, error=str(error))

        if channel.test_mode:
            logger.info("channel_test_mode", channel=channel.name, alert_id=alert.alert_id)
            return DeliveryStatus.TEST_MODE, TransportResponse(
                success=True, body="test mode: not delivered"
            )

        if not payload.deliver:
            return DeliveryStatus.SENT, TransportResponse(success=True, body="no-op")

        transport = self._transports.get(channel.channel_type)
        if transport is None:
            return DeliveryStatus.FAILED, TransportResponse(
                success=False, error=f"no transport for {channel.channel_type.value}"
            )

        timeout = self._config.transport_timeout_secs
        try:
            response = await asyncio.wait_for(transport.send(channel, payload), timeout)
        except asyncio.TimeoutError:
            response = TransportResponse(success=False, error=f"timed out after {timeout}s")
        status = DeliveryStatus.SENT if response.success else DeliveryStatus.FAILED
        return status, response

    async def _touch(self, channel_id: int, now: datetime.datetime) -> None:
        try:
            await self._store.touch_channel(channel_id, now)
        except NotFoundError:
            logger.warning("channel_vanished", channel_id=channel_id)

    def _result(
        self,
        channel: NotificationChannel,
        alert: ActiveAlert,
        kind: NotificationKind,
        tier_order: int | None,
        repeat_iteration: int,
        status: DeliveryStatus,
        now: datetime.datetime,
        dedup_key: str | None,
        response: TransportResponse | None = None,
        error: str | None = None,
    ) -> NotificationResult:
        return NotificationResult(
            channel_id=channel.id,
            channel_name=channel.name,
            channel_type=channel.channel_type,
            active_alert_id=alert.id,
            alert_id=alert.alert_id,
            alert_type=alert.alert_type,
            severity=alert.severity,
            message=alert.message,
            instance_name=alert.instance_name,
            kind=kind,
            escalation_tier=tier_order,
            repeat_iteration=repeat_iteration,
            status=status,
            sent_at=now,
            response_code=response.response_code if response else None,
            response_body=response.body if response else None,
            error_message=(response.error if response else None) or error,
            dedup_key=dedup_key,
        )

    @staticmethod
    def _log_outcome(result: NotificationResult) -> None:
        notification_log.info(
            "notification",
            status=result.status.value,
            kind=result.kind.value,
            channel=result.channel_name,
            channel_type=result.channel_type.value if result.channel_type else None,
            alert_id=result.alert_id,
            tier=result.escalation_tier,
            repeat=result.repeat_iteration,
            response_code=result.response_code,
            error=result.error_message,
        )
        if result.status == DeliveryStatus.FAILED:
            logger.warning(
                "notification_send_failed",
                channel=result.channel_name,
                alert_id=result.alert_id,
                error=result.error_message,
            )

    # ── Lifecycle ───────────────────────────────────────────────

    async def close(self) -> None:
        seen: set[int] = set()
        for transport in self._transports.values():
            if id(transport) in seen:
                continue
            seen.add(id(transport))
            try:
                await transport.close()
            except Exception:
                logger.exception("transport_close_error", transport=type(transport).__name__)
