"""Convenience factory for wiring the alerting stack."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from pgalert.core.clock import Clock, SystemClock
from pgalert.core.config import Settings
from pgalert.core.types import ChannelType
from pgalert.storage.interfaces import AlertStore
from pgalert.storage.memory import InMemoryAlertStore
from pgalert.alerting.dispatcher import NotificationDispatcher
from pgalert.alerting.escalation import EscalationEngine
from pgalert.alerting.lifecycle import AlertLifecycleManager
from pgalert.alerting.scheduler import EscalationScheduler
from pgalert.alerting.suppression import SuppressionEvaluator
from pgalert.alerting.transports import NotificationTransport, build_transports


@dataclass
class AlertingStack:
    store: AlertStore
    evaluator: SuppressionEvaluator
    dispatcher: NotificationDispatcher
    engine: EscalationEngine
    lifecycle: AlertLifecycleManager
    scheduler: EscalationScheduler

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.dispatcher.close()
        await self.store.close()


def create_alerting_stack(
    settings: Settings,
    store: AlertStore | None = None,
    clock: Clock | None = None,
    transports: Mapping[ChannelType, NotificationTransport] | None = None,
) -> AlertingStack:
    """Build every component from *settings* and wire fire callbacks to the scheduler."""
    store = store or InMemoryAlertStore()
    clock = clock or SystemClock()
    if transports is None:
        transports = build_transports(settings.dispatch, settings.smtp)

    evaluator = SuppressionEvaluator(settings.suppression)
    dispatcher = NotificationDispatcher(
        store=store,
        transports=transports,
        clock=clock,
        config=settings.dispatch,
    )
    engine = EscalationEngine(
        store=store,
        dispatcher=dispatcher,
        evaluator=evaluator,
        clock=clock,
        config=settings.escalation,
    )
    lifecycle = AlertLifecycleManager(
        store=store,
        dispatcher=dispatcher,
        evaluator=evaluator,
        clock=clock,
        retention=settings.retention,
    )
    scheduler = EscalationScheduler(
        engine=engine,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        config=settings.escalation,
        retention=settings.retention,
        clock=clock,
    )
    lifecycle.on_fire(lambda _alert: scheduler.wake())

    return AlertingStack(
        store=store,
        evaluator=evaluator,
        dispatcher=dispatcher,
        engine=engine,
        lifecycle=lifecycle,
        scheduler=scheduler,
    )
