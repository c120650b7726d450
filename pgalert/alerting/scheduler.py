"""Background driver for escalation cycles, failed-delivery retries and retention."""

from __future__ import annotations

import asyncio
import datetime

import structlog

from pgalert.core.clock import Clock, SystemClock
from pgalert.core.config import EscalationConfig, RetentionConfig
from pgalert.alerting.dispatcher import NotificationDispatcher
from pgalert.alerting.escalation import EscalationEngine
from pgalert.alerting.lifecycle import AlertLifecycleManager
from pgalert.alerting.types import CycleReport

logger = structlog.get_logger(__name__)


class EscalationScheduler:
    """Runs ``engine.run_cycle()`` every interval, or right away when woken.

    Usage::

        scheduler = EscalationScheduler(engine, dispatcher, lifecycle)
        lifecycle.on_fire(lambda alert: scheduler.wake())
        await scheduler.start()
        # ...
        await scheduler.stop()
    """

    def __init__(
        self,
        engine: EscalationEngine,
        dispatcher: NotificationDispatcher,
        lifecycle: AlertLifecycleManager,
        config: EscalationConfig | None = None,
        retention: RetentionConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._engine = engine
        self._dispatcher = dispatcher
        self._lifecycle = lifecycle
        self._config = config or EscalationConfig()
        self._retention = retention or RetentionConfig()
        self._clock = clock or SystemClock()
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._wake = asyncio.Event()
        self._last_retry_at: datetime.datetime | None = None
        self._last_sweep_date: datetime.date | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._last_retry_at = self._clock.now()
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "escalation_scheduler_started",
            interval_secs=self._config.interval_secs,
            retry_interval_secs=self._config.retry_interval_secs,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("escalation_scheduler_stopped")

    def wake(self) -> None:
        """Run the next cycle now instead of waiting out the interval."""
        self._wake.set()

    async def run_once(self) -> CycleReport:
        """One escalation cycle, plus the retry and retention passes when due."""
        report = await self._engine.run_cycle()
        now = self._clock.now()
        await self._maybe_retry(now)
        await self._maybe_sweep(now)
        return report

    # ── Internal loop ───────────────────────────────────────────

    async def _maybe_retry(self, now: datetime.datetime) -> None:
        interval = self._config.retry_interval_secs
        if interval <= 0:
            return
        if (
            self._last_retry_at is not None
            and (now - self._last_retry_at).total_seconds() < interval
        ):
            return
        self._last_retry_at = now
        await self._dispatcher.retry_failed(self._config.retry_batch_size)

    async def _maybe_sweep(self, now: datetime.datetime) -> None:
        today = now.date()
        if now.hour != self._retention.sweep_hour_utc or self._last_sweep_date == today:
            return
        self._last_sweep_date = today
        await self._lifecycle.cleanup_old_data()

    async def _loop(self) -> None:
        while self._running:
            self._wake.clear()
            try:
                await self.run_once()
            except asyncio.CancelledError:
                return
            except Exception:
                logger.exception("escalation_loop_error")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._config.interval_secs)
            except asyncio.TimeoutError:
                pass
