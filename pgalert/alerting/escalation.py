"""Escalation engine — advances unacknowledged alerts through their policy tiers.

Each cycle selects every alert that is neither resolved nor acknowledged,
works out whether its next step is due, checks suppression, and then
compare-and-sets the alert forward *before* dispatching. A version conflict
means someone else (another runner, an acknowledge, a resolve) got there
first, and the alert is skipped. If dispatch then fails on a persistence
error the alert is set back to its previous step.
"""

from __future__ import annotations

import asyncio
import datetime
import math
from dataclasses import dataclass
from enum import StrEnum

import structlog

from pgalert.core.clock import Clock, SystemClock
from pgalert.core.config import EscalationConfig
from pgalert.core.types import (
    ActiveAlert,
    AlertSilence,
    EscalationPolicy,
    EscalationState,
    EscalationTier,
    MaintenanceWindow,
    NotificationResult,
)
from pgalert.storage.exceptions import NotFoundError, StorageError, VersionConflictError
from pgalert.storage.interfaces import AlertStore
from pgalert.alerting.dispatcher import NotificationDispatcher
from pgalert.alerting.exceptions import AlertNotFoundError
from pgalert.alerting.suppression import SuppressionEvaluator
from pgalert.alerting.types import CycleReport, EscalationStatus, PlannedEscalation

logger = structlog.get_logger(__name__)


# ── Planning ────────────────────────────────────────────────────


def plan_next(alert: ActiveAlert, policy: EscalationPolicy) -> PlannedEscalation | None:
    """Return the alert's next escalation step, or None when it is quiescent.

    Below the top tier the next step is ``current + 1``, due after that
    tier's delay. A missing intermediate tier yields an empty, immediately
    due step flagged ``misconfigured``. At the top tier the last tier is
    repeated after its own delay, ``policy.repeat_count`` times.
    """
    if not policy.tiers:
        return None

    current = alert.current_escalation_tier
    anchor = alert.escalation_anchor

    if current < policy.max_tier:
        order = current + 1
        tier = policy.tier(order)
        if tier is None:
            return PlannedEscalation(
                tier=EscalationTier(tier_order=order),
                target_tier=order,
                repeat_iteration=alert.repeat_iteration,
                due_at=anchor,
                misconfigured=True,
            )
        return PlannedEscalation(
            tier=tier,
            target_tier=order,
            repeat_iteration=alert.repeat_iteration,
            due_at=anchor + tier.delay,
        )

    last = policy.last_tier
    if last is not None and alert.repeat_iteration < policy.repeat_count:
        return PlannedEscalation(
            tier=last,
            target_tier=current,
            repeat_iteration=alert.repeat_iteration + 1,
            due_at=anchor + last.delay,
        )
    return None


def escalation_state(alert: ActiveAlert, policy: EscalationPolicy | None) -> EscalationState:
    if alert.resolved:
        return EscalationState.RESOLVED
    if alert.acknowledged:
        return EscalationState.ACKNOWLEDGED
    if alert.current_escalation_tier == 0:
        return EscalationState.PENDING
    if policy is not None and alert.current_escalation_tier < policy.max_tier:
        return EscalationState.ESCALATING
    if alert.repeat_iteration > 0:
        return EscalationState.REPEATING
    return EscalationState.MAX_TIER_REACHED


# ── Engine ──────────────────────────────────────────────────────


class _Outcome(StrEnum):
    NOT_DUE = "not_due"
    SKIPPED = "skipped"
    SUPPRESSED = "suppressed"
    CONFLICT = "conflict"
    ESCALATED = "escalated"


@dataclass
class _CycleContext:
    now: datetime.datetime
    policies: dict[int, EscalationPolicy]
    broadcast: EscalationPolicy
    silences: list[AlertSilence]
    windows: list[MaintenanceWindow]


class EscalationEngine:
    """Runs escalation cycles against an ``AlertStore``."""

    def __init__(
        self,
        store: AlertStore,
        dispatcher: NotificationDispatcher,
        evaluator: SuppressionEvaluator | None = None,
        clock: Clock | None = None,
        config: EscalationConfig | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._evaluator = evaluator or SuppressionEvaluator()
        self._clock = clock or SystemClock()
        self._config = config or EscalationConfig()

    async def _context(self, now: datetime.datetime) -> _CycleContext:
        policies = {p.id: p for p in await self._store.list_policies() if p.id is not None}
        channels = await self._store.list_channels(enabled_only=True)
        return _CycleContext(
            now=now,
            policies=policies,
            broadcast=EscalationPolicy.broadcast([c.id for c in channels if c.id is not None]),
            silences=await self._store.find_active_silences(now),
            windows=await self._store.find_active_windows(now),
        )

    async def resolve_policy(self, alert: ActiveAlert) -> EscalationPolicy | None:
        """The policy an alert escalates under (the broadcast policy when it has none)."""
        if alert.escalation_policy_id is None:
            channels = await self._store.list_channels(enabled_only=True)
            return EscalationPolicy.broadcast([c.id for c in channels if c.id is not None])
        return await self._store.get_policy(alert.escalation_policy_id)

    # ── Cycle ───────────────────────────────────────────────────

    async def run_cycle(self) -> CycleReport:
        """Escalate every due alert once.

        Raises:
            StorageError: after all in-flight alerts finish, if any of them
                hit a persistence failure.
        """
        now = self._clock.now()
        # Every record logged during the cycle, dispatch outcomes included, carries cycle_at.
        with structlog.contextvars.bound_contextvars(cycle_at=now.isoformat()):
            return await self._run_cycle(now)

    async def _run_cycle(self, now: datetime.datetime) -> CycleReport:
        report = CycleReport(started_at=now)
        candidates = await self._store.find_escalation_candidates()
        report.candidates = len(candidates)
        if not candidates:
            return report

        ctx = await self._context(now)
        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrent_alerts))

        async def _bounded(alert: ActiveAlert) -> tuple[_Outcome, list[NotificationResult]]:
            async with semaphore:
                return await self._process(alert, ctx)

        outcomes = await asyncio.gather(
            *(_bounded(alert) for alert in candidates), return_exceptions=True
        )

        storage_error: StorageError | None = None
        for alert, outcome in zip(candidates, outcomes):
            if isinstance(outcome, BaseException):
                report.failed += 1
                if isinstance(outcome, StorageError):
                    storage_error = storage_error or outcome
                logger.error(
                    "escalation_alert_failed",
                    alert_id=alert.alert_id,
                    alert_row_id=alert.id,
                    error=repr(outcome),
                )
                continue
            status, results = outcome
            if status != _Outcome.NOT_DUE and status != _Outcome.SKIPPED:
                report.due += 1
            if status == _Outcome.SUPPRESSED:
                report.suppressed += 1
            elif status == _Outcome.CONFLICT:
                report.conflicts += 1
            elif status == _Outcome.ESCALATED:
                report.escalated += 1
                report.results.extend(results)

        if storage_error is not None:
            logger.error("escalation_cycle_aborted", error=str(storage_error))
            raise storage_error

        logger.info(
            "escalation_cycle_complete",
            candidates=report.candidates,
            due=report.due,
            escalated=report.escalated,
            suppressed=report.suppressed,
            conflicts=report.conflicts,
            failed=report.failed,
            delivered=report.delivered,
        )
        return report

    async def escalate_alert(self, alert_row_id: int) -> list[NotificationResult]:
        """Escalate one alert now if its next step is due."""
        alert = await self._store.get_alert(alert_row_id)
        if alert is None:
            raise AlertNotFoundError(f"alert {alert_row_id} not found")
        if not alert.in_escalation:
            return []
        ctx = await self._context(self._clock.now())
        _, results = await self._process(alert, ctx)
        return results

    async def _process(
        self, alert: ActiveAlert, ctx: _CycleContext
    ) -> tuple[_Outcome, list[NotificationResult]]:
        if alert.escalation_policy_id is None:
            policy: EscalationPolicy | None = ctx.broadcast
        else:
            policy = ctx.policies.get(alert.escalation_policy_id)
        if policy is None:
            logger.warning(
                "escalation_policy_missing",
                alert_id=alert.alert_id,
                policy_id=alert.escalation_policy_id,
            )
            return _Outcome.SKIPPED, []
        if not policy.enabled:
            logger.info(
                "escalation_policy_disabled", alert_id=alert.alert_id, policy_id=policy.id
            )
            return _Outcome.SKIPPED, []

        plan = plan_next(alert, policy)
        if plan is None or ctx.now < plan.due_at:
            return _Outcome.NOT_DUE, []

        decision = self._evaluator.evaluate(alert, ctx.now, ctx.silences, ctx.windows)
        if decision.suppressed:
            logger.info(
                "escalation_suppressed", alert_id=alert.alert_id, reason=decision.reason
            )
            return _Outcome.SUPPRESSED, []

        if plan.misconfigured:
            logger.error(
                "escalation_tier_missing",
                alert_id=alert.alert_id,
                policy_id=policy.id,
                tier_order=plan.target_tier,
            )

        advanced = alert.model_copy(
            update={
                "current_escalation_tier": plan.target_tier,
                "repeat_iteration": plan.repeat_iteration,
                "last_notification_at": (
                    alert.last_notification_at if plan.misconfigured else ctx.now
                ),
            }
        )
        try:
            stored = await self._store.update_alert(advanced, expected_version=alert.version)
        except (VersionConflictError, NotFoundError) as exc:
            logger.info("escalation_conflict", alert_id=alert.alert_id, error=str(exc))
            return _Outcome.CONFLICT, []

        logger.info(
            "alert_escalated",
            alert_id=alert.alert_id,
            from_tier=alert.current_escalation_tier,
            to_tier=plan.target_tier,
            repeat=plan.repeat_iteration,
            channels=len(plan.tier.channel_ids),
        )
        if not plan.tier.channel_ids:
            return _Outcome.ESCALATED, []
        try:
            results = await self._dispatcher.dispatch(
                stored, plan.tier, repeat_iteration=plan.repeat_iteration
            )
        except StorageError:
            await self._roll_back(alert, stored)
            raise
        return _Outcome.ESCALATED, results

    async def _roll_back(self, previous: ActiveAlert, advanced: ActiveAlert) -> None:
        """Return *advanced* to its pre-escalation step so the next cycle re-plans it.

        Deliveries that did go out keep their dedup claims and are reported
        as duplicates when the step is replayed.
        """
        restored = advanced.model_copy(
            update={
                "current_escalation_tier": previous.current_escalation_tier,
                "repeat_iteration": previous.repeat_iteration,
                "last_notification_at": previous.last_notification_at,
            }
        )
        try:
            await self._store.update_alert(restored, expected_version=advanced.version)
        except StorageError as exc:
            logger.error(
                "escalation_rollback_failed", alert_id=advanced.alert_id, error=str(exc)
            )
            return
        logger.warning(
            "escalation_rolled_back",
            alert_id=advanced.alert_id,
            tier=previous.current_escalation_tier,
            repeat=previous.repeat_iteration,
        )

    # ── Status ──────────────────────────────────────────────────

    async def escalation_status(self, alert_row_id: int) -> EscalationStatus:
        alert = await self._store.get_alert(alert_row_id)
        if alert is None:
            raise AlertNotFoundError(f"alert {alert_row_id} not found")
        policy = await self.resolve_policy(alert)
        status = EscalationStatus(
            alert_row_id=alert_row_id,
            state=escalation_state(alert, policy),
            current_tier=alert.current_escalation_tier,
            max_tier=policy.max_tier if policy else 0,
            repeat_iteration=alert.repeat_iteration,
            repeat_count=policy.repeat_count if policy else 0,
        )
        if not alert.in_escalation or policy is None or not policy.enabled:
            return status

        plan = plan_next(alert, policy)
        if plan is None:
            return status
        remaining = (plan.due_at - self._clock.now()).total_seconds()
        status.next_tier = plan.target_tier if plan.target_tier > alert.current_escalation_tier else None
        status.next_due_at = plan.due_at
        status.minutes_until_next = max(0, math.ceil(remaining / 60))
        return status
