"""
Rollback Procedures

Automatic and manual rollback for degraded deployments. Triggers watch the
aggregated request signals; when every condition of a trigger holds, a
rollback event is created and its ordered mitigation actions run in the
background, one at a time, stopping at the first failure.
"""
from typing import Dict, List, Optional, Any, Callable, Set
from collections import deque
from datetime import datetime, timedelta
import asyncio
import logging
import uuid

from logger import get_logger, log_event
from metrics import rollback_events, rollback_action_failures
from deployment.exceptions import ActionExecutionError, NotFoundError
from deployment.feature_flags import FeatureFlagEngine
from deployment.models import (
    RollbackAction,
    RollbackActionKind,
    RollbackEvent,
    RollbackStatus,
    RollbackTrigger,
    Stats,
    TriggerCondition,
    TriggerConditionKind,
    TriggeredBy,
    sort_actions,
    utcnow,
)
from monitoring.aggregator import MetricsAggregator

logger = get_logger(__name__)

MANUAL_EMERGENCY_TRIGGER = "manual_emergency"


class RollbackController:
    """
    Evaluates rollback triggers and executes rollback events

    Features:
    - Automatic triggers over error rate, response time, web vitals and
      health check failures (all conditions must hold)
    - Per-trigger cooldown, also started by manual rollbacks
    - Ordered, fail-fast action execution with per-action timeouts
    - Rollback history and statistics, bounded to the most recent
      ``history_limit`` events; older events are evicted and can no
      longer be looked up by id

    Example:
        controller = RollbackController(engine, aggregator, notifier)
        controller.add_trigger(RollbackTrigger(
            id="error_rate_spike",
            name="Error rate spike",
            conditions=[TriggerCondition(TriggerConditionKind.ERROR_RATE,
                                         ComparisonOperator.GT, 5)],
            actions=[RollbackAction(RollbackActionKind.REDUCE_ROLLOUT,
                                    flag_ids=("new_checkout",), percentage=10)]
        ))

        # Scheduler tick
        await controller.evaluate_triggers()

        # Emergency rollback
        event_id = await controller.trigger_rollback(
            "manual_emergency",
            TriggeredBy.MANUAL,
            reason="Checkout failures reported"
        )
    """

    def __init__(
        self,
        engine: FeatureFlagEngine,
        aggregator: MetricsAggregator,
        notifier=None,
        action_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
        history_limit: int = 500
    ):
        """
        Initialize rollback controller

        Args:
            engine: FeatureFlagEngine the mitigation actions mutate
            aggregator: MetricsAggregator the trigger conditions read
            notifier: Optional NotificationDispatcher for notify actions
            action_timeout_seconds: Upper bound for a single action
            clock: Source of "now"
            history_limit: Number of rollback events kept in history
        """
        self.engine = engine
        self.aggregator = aggregator
        self.notifier = notifier
        self.action_timeout_seconds = action_timeout_seconds
        self.clock = clock

        self._triggers: Dict[str, RollbackTrigger] = {}

        # Rollback history
        self._history: deque = deque(maxlen=history_limit)
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def add_trigger(self, trigger: RollbackTrigger):
        self._triggers[trigger.id] = trigger
        logger.info(
            f"Registered rollback trigger: {trigger.name} ({trigger.id}), "
            f"{len(trigger.conditions)} conditions, {len(trigger.actions)} actions"
        )

    def get_trigger(self, trigger_id: str) -> Optional[RollbackTrigger]:
        return self._triggers.get(trigger_id)

    def list_triggers(self) -> List[RollbackTrigger]:
        return list(self._triggers.values())

    def enable_trigger(self, trigger_id: str) -> bool:
        return self._set_trigger_enabled(trigger_id, True)

    def disable_trigger(self, trigger_id: str) -> bool:
        return self._set_trigger_enabled(trigger_id, False)

    def _set_trigger_enabled(self, trigger_id: str, enabled: bool) -> bool:
        trigger = self._triggers.get(trigger_id)
        if trigger is None:
            return False
        trigger.enabled = enabled
        logger.info(f"Rollback trigger {trigger_id} {'enabled' if enabled else 'disabled'}")
        return True

    def in_cooldown(self, trigger: RollbackTrigger, now: Optional[datetime] = None) -> bool:
        if trigger.last_triggered_at is None:
            return False
        now = now or self.clock()
        return now < trigger.last_triggered_at + timedelta(seconds=trigger.cooldown_seconds)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate_triggers(self, now: Optional[datetime] = None) -> List[str]:
        """
        Trigger tick: fire every enabled trigger whose conditions all hold

        Triggers without conditions only fire manually.

        Returns:
            Ids of the rollback events created
        """
        now = now or self.clock()
        stats_cache: Dict[int, Stats] = {}
        created = []

        for trigger in self.list_triggers():
            if not trigger.enabled or not trigger.conditions or self.in_cooldown(trigger, now):
                continue

            try:
                if not all(self._condition_holds(c, now, stats_cache) for c in trigger.conditions):
                    continue

                reason = "Automatic rollback: " + " and ".join(c.describe() for c in trigger.conditions)
                event_id = await self.trigger_rollback(trigger.id, TriggeredBy.SYSTEM, reason)
                created.append(event_id)
            except Exception as e:
                logger.error(f"Error evaluating rollback trigger {trigger.id}: {e}")

        return created

    def _condition_holds(
        self,
        condition: TriggerCondition,
        now: datetime,
        stats_cache: Dict[int, Stats]
    ) -> bool:
        value = self._condition_value(condition, now, stats_cache)
        return condition.operator.compare(value, condition.threshold)

    def _condition_value(
        self,
        condition: TriggerCondition,
        now: datetime,
        stats_cache: Dict[int, Stats]
    ) -> float:
        kind = condition.kind

        if kind is TriggerConditionKind.HEALTH_CHECK_FAILURES:
            return float(self.aggregator.health_failure_count())

        window = condition.window_minutes
        if window not in stats_cache:
            stats_cache[window] = self.aggregator.compute_stats(window, now=now)
        stats = stats_cache[window]

        if kind is TriggerConditionKind.ERROR_RATE:
            return stats.error_rate_pct
        if kind is TriggerConditionKind.AVG_DURATION:
            return stats.avg_duration
        if kind is TriggerConditionKind.WEB_VITAL:
            return stats.web_vitals.get(condition.vital)
        raise ValueError(f"Unhandled trigger condition kind: {kind}")

    async def handle_rollback_signal(self, trigger_id: str, reason: str) -> Optional[str]:
        """Entry point for alert rules that signal a rollback; honours cooldown"""
        trigger = self._triggers.get(trigger_id)
        if trigger is None:
            logger.warning(f"Rollback signal for unknown trigger {trigger_id}, ignoring")
            return None
        if not trigger.enabled:
            logger.info(f"Rollback signal for disabled trigger {trigger_id}, ignoring")
            return None
        if self.in_cooldown(trigger):
            logger.info(f"Rollback trigger {trigger_id} in cooldown, ignoring signal")
            return None

        return await self.trigger_rollback(trigger_id, TriggeredBy.SYSTEM, reason)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def trigger_rollback(
        self,
        trigger_id: str,
        triggered_by: TriggeredBy = TriggeredBy.MANUAL,
        reason: str = "",
        actor: Optional[str] = None
    ) -> str:
        """
        Create a rollback event and start executing it in the background

        Manual calls skip the trigger's conditions but still start its
        cooldown window.

        Args:
            trigger_id: Trigger whose actions to run
            triggered_by: SYSTEM for automatic firing, MANUAL for operators
            reason: Why the rollback was requested
            actor: Who requested it (defaults to the triggered_by value)

        Returns:
            Id of the new rollback event

        Raises:
            NotFoundError: Unknown trigger id
        """
        trigger = self._triggers.get(trigger_id)
        if trigger is None:
            raise NotFoundError(f"Rollback trigger not found: {trigger_id}", details={"trigger_id": trigger_id})

        now = self.clock()
        event = RollbackEvent(
            id=str(uuid.uuid4()),
            trigger_id=trigger_id,
            reason=reason or f"Rollback via {trigger.name}",
            triggered_by=triggered_by,
            actions=sort_actions(trigger.actions),
            timestamp=now,
            actor=actor or triggered_by.value
        )
        trigger.last_triggered_at = now
        self._history.append(event)

        log_event(
            logger,
            "rollback.triggered",
            level=logging.WARNING,
            event_id=event.id,
            trigger_id=trigger_id,
            triggered_by=triggered_by,
            actor=event.actor,
            reason=event.reason,
            actions=len(event.actions)
        )

        task = asyncio.get_running_loop().create_task(self._execute_event(event, trigger))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        return event.id

    async def _execute_event(self, event: RollbackEvent, trigger: RollbackTrigger):
        """Run actions in order; the first failure fails the event"""
        event.transition(RollbackStatus.IN_PROGRESS)

        for action in event.actions:
            try:
                await asyncio.wait_for(
                    self._execute_action(action, event, trigger),
                    timeout=self.action_timeout_seconds
                )
                event.executed_actions += 1
            except asyncio.TimeoutError:
                self._fail_event(
                    event, action,
                    f"Action {action.kind.value} timed out after {self.action_timeout_seconds}s"
                )
                return
            except Exception as e:
                self._fail_event(event, action, f"Action {action.kind.value} failed: {e}")
                return

        event.transition(RollbackStatus.COMPLETED, at=self.clock())
        rollback_events.labels(event.trigger_id, event.triggered_by.value, event.status.value).inc()
        log_event(
            logger,
            "rollback.completed",
            event_id=event.id,
            trigger_id=event.trigger_id,
            executed_actions=event.executed_actions
        )

    def _fail_event(self, event: RollbackEvent, action: RollbackAction, error: str):
        rollback_action_failures.labels(action.kind.value).inc()
        event.transition(RollbackStatus.FAILED, error=error, at=self.clock())
        rollback_events.labels(event.trigger_id, event.triggered_by.value, event.status.value).inc()
        log_event(
            logger,
            "rollback.failed",
            level=logging.ERROR,
            event_id=event.id,
            trigger_id=event.trigger_id,
            executed_actions=event.executed_actions,
            error=error
        )

    async def _execute_action(self, action: RollbackAction, event: RollbackEvent, trigger: RollbackTrigger):
        kind = action.kind
        actor = f"rollback:{event.actor}"

        if kind is RollbackActionKind.DISABLE_FEATURE:
            for flag_id in self._action_flags(action):
                self._set_flag_percentage(flag_id, 0, actor, event.reason)
            return

        if kind is RollbackActionKind.REDUCE_ROLLOUT:
            if action.percentage is None:
                raise ActionExecutionError("reduce_rollout requires a percentage", action_kind=kind.value)
            for flag_id in self._action_flags(action):
                flag = self.engine.get_flag(flag_id)
                if flag is None:
                    raise ActionExecutionError(f"Feature flag not found: {flag_id}", action_kind=kind.value)
                target = min(flag.rollout_percentage, action.percentage)
                if target == flag.rollout_percentage:
                    logger.debug(f"Flag {flag_id} already at or below {action.percentage}%, leaving it untouched")
                    continue
                self._set_flag_percentage(flag_id, target, actor, event.reason)
            return

        if kind is RollbackActionKind.EMERGENCY_ROLLBACK:
            self.engine.emergency_rollback(event.reason, actor)
            return

        if kind is RollbackActionKind.NOTIFY:
            if self.notifier is None:
                raise ActionExecutionError("No notifier configured", action_kind=kind.value)
            await self.notifier.send(
                action.message or f"Rollback '{trigger.name}' triggered: {event.reason}",
                severity=trigger.severity,
                channel=action.channel,
                metadata={
                    "event_id": event.id,
                    "trigger_id": event.trigger_id,
                    "triggered_by": event.triggered_by.value,
                }
            )
            return

        if kind is RollbackActionKind.REDIRECT:
            logger.warning(f"Redirect action on trigger {event.trigger_id} is not supported, skipping")
            return

        raise ActionExecutionError(f"Unsupported rollback action: {kind}", action_kind=str(kind))

    @staticmethod
    def _action_flags(action: RollbackAction) -> List[str]:
        flag_ids = list(action.flag_ids)
        if action.flag_id:
            flag_ids.insert(0, action.flag_id)
        if not flag_ids:
            raise ActionExecutionError(
                f"{action.kind.value} action names no feature flag",
                action_kind=action.kind.value
            )
        return flag_ids

    def _set_flag_percentage(self, flag_id: str, percentage: int, actor: str, reason: str):
        result = self.engine.update_rollout_percentage(
            flag_id,
            percentage,
            actor,
            reason=reason,
            cancel_pending=True
        )
        if not result.success:
            raise ActionExecutionError(result.message, action_kind="set_percentage")

    async def drain(self):
        """Wait for in-flight rollback executions (tests and shutdown)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_event(self, event_id: str) -> Optional[RollbackEvent]:
        """Event by id, or None once it has been evicted from the bounded history"""
        for event in self._history:
            if event.id == event_id:
                return event
        return None

    def get_history(self, limit: int = 10, trigger_id: Optional[str] = None) -> List[RollbackEvent]:
        """Most recent events first"""
        history = list(self._history)

        if trigger_id:
            history = [e for e in history if e.trigger_id == trigger_id]

        history.reverse()
        return history[:limit]

    def get_rollback_stats(self) -> Dict[str, Any]:
        """Get rollback statistics"""
        events = list(self._history)
        successful = [e for e in events if e.status is RollbackStatus.COMPLETED]
        failed = [e for e in events if e.status is RollbackStatus.FAILED]

        durations = [
            e.execution_seconds for e in successful + failed
            if e.execution_seconds is not None
        ]

        # Group by trigger
        by_trigger: Dict[str, int] = {}
        for event in events:
            by_trigger[event.trigger_id] = by_trigger.get(event.trigger_id, 0) + 1

        return {
            "total_events": len(events),
            "successful_rollbacks": len(successful),
            "failed_rollbacks": len(failed),
            "in_progress": len(events) - len(successful) - len(failed),
            "average_execution_time": round(sum(durations) / len(durations), 3) if durations else 0.0,
            "last_rollback": events[-1].to_dict() if events else None,
            "by_trigger": by_trigger,
        }
