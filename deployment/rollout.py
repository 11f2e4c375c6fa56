"""
Gradual Rollout Scheduler

Advances a flag through its rollout plan. Instead of chaining in-memory
timers, each plan persists the time its next step is due (``next_step_at``)
and a periodic due-check tick applies whatever has come due, so a restart
resumes an in-flight rollout instead of abandoning it.
"""
from typing import List, Optional, Callable, Any, Dict
from datetime import datetime, timedelta

from logger import get_logger, log_event
from metrics import rollout_steps_applied
from deployment.exceptions import OperationResult, ErrorKind
from deployment.flag_store import FlagStore
from deployment.models import RolloutPlan, RolloutStep, utcnow

logger = get_logger(__name__)

ApplyStep = Callable[[str, int, str, str], OperationResult]


class RolloutScheduler:
    """
    Schedules gradual rollout steps for flags

    Step semantics:
    - The first step is applied immediately by ``start``.
    - Each following step becomes due once the previous step's
      ``hold_seconds`` have elapsed since that step was applied.
    - A step with ``hold_seconds == 0`` is terminal and ends the schedule.
    - At most one step per plan is applied per tick.

    A manual percentage change does not cancel a pending step; the step still
    fires and overwrites it. Rollback mitigations cancel explicitly.

    Example:
        scheduler.configure("checkout-v2", [
            RolloutStep(5, hold_seconds=3600),
            RolloutStep(25, hold_seconds=3600),
            RolloutStep(100),
        ], actor="alice")
        scheduler.start("checkout-v2", actor="alice")

        # Called by the control loop every few seconds
        scheduler.advance_due()
    """

    def __init__(
        self,
        store: FlagStore,
        apply_step: ApplyStep,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            store: FlagStore holding the plans
            apply_step: Callback ``(flag_id, percentage, actor, reason)``
                that writes the percentage (the engine's update path)
            clock: Source of "now"
        """
        self.store = store
        self.apply_step = apply_step
        self.clock = clock

    def configure(self, flag_id: str, steps: List[Any], actor: str) -> OperationResult:
        """Store a plan, replacing any previous plan for the flag"""
        parsed: List[RolloutStep] = []
        for step in steps:
            if isinstance(step, dict):
                step = RolloutStep(
                    percentage=step.get("percentage"),
                    hold_seconds=float(step.get("hold_seconds", 0))
                )
            pct = step.percentage
            if isinstance(pct, bool) or not isinstance(pct, int) or not 0 <= pct <= 100:
                return OperationResult.fail(
                    ErrorKind.INVALID_RANGE,
                    f"Rollout step percentage must be an integer between 0 and 100, got {pct!r}"
                )
            if step.hold_seconds < 0:
                return OperationResult.fail(
                    ErrorKind.INVALID_RANGE,
                    f"Rollout step hold must not be negative, got {step.hold_seconds}"
                )
            parsed.append(step)

        self.store.set_plan(RolloutPlan(flag_id=flag_id, steps=parsed))
        self.store.save()

        logger.info(
            f"Configured rollout plan for {flag_id} by {actor}: "
            f"{' -> '.join(f'{s.percentage}%' for s in parsed) or 'empty'}"
        )
        return OperationResult.ok(f"Rollout plan with {len(parsed)} steps configured for {flag_id}")

    def start(self, flag_id: str, actor: str) -> OperationResult:
        """Apply the first step and schedule the next"""
        plan = self.store.get_plan(flag_id)
        if plan is None or not plan.steps:
            return OperationResult.fail(
                ErrorKind.NO_PLAN_CONFIGURED,
                f"No rollout plan configured for {flag_id}"
            )

        now = self.clock()
        plan.current_step = 0
        plan.started_at = now
        plan.started_by = actor
        plan.completed_at = None
        plan.cancelled = False
        plan.next_step_at = None

        result = self._apply(plan, now)
        if not result.success:
            return result

        log_event(
            logger,
            "rollout.started",
            flag_id=flag_id,
            actor=actor,
            steps=len(plan.steps),
            next_step_at=plan.next_step_at.isoformat() if plan.next_step_at else None
        )
        first = plan.steps[0].percentage
        return OperationResult.ok(f"Gradual rollout started for {flag_id} at {first}%")

    def advance_due(self, now: Optional[datetime] = None) -> List[str]:
        """
        Apply the next step of every plan that has come due

        Returns:
            Ids of the flags that advanced
        """
        now = now or self.clock()
        advanced = []

        for plan in self.store.list_plans():
            if plan.next_step_at is None or plan.next_step_at > now:
                continue

            plan.current_step = (plan.current_step or 0) + 1
            if plan.current_step >= len(plan.steps):
                self._complete(plan, now)
                continue

            result = self._apply(plan, now)
            if result.success:
                advanced.append(plan.flag_id)

        return advanced

    def cancel(self, flag_id: str, actor: str, reason: Optional[str] = None) -> bool:
        """Drop the pending step of a flag's rollout; False if nothing was pending"""
        plan = self.store.get_plan(flag_id)
        if plan is None or plan.next_step_at is None:
            return False

        plan.next_step_at = None
        plan.cancelled = True
        self.store.save()

        log_event(logger, "rollout.cancelled", flag_id=flag_id, actor=actor, reason=reason)
        return True

    def active_plans(self) -> List[RolloutPlan]:
        return [p for p in self.store.list_plans() if p.is_active]

    def get_status(self, flag_id: str) -> Optional[Dict[str, Any]]:
        plan = self.store.get_plan(flag_id)
        return plan.to_dict() if plan else None

    def _apply(self, plan: RolloutPlan, now: datetime) -> OperationResult:
        index = plan.current_step
        step = plan.steps[index]
        actor = f"rollout:{plan.started_by or 'system'}"
        reason = f"gradual rollout step {index + 1}/{len(plan.steps)}"

        result = self.apply_step(plan.flag_id, step.percentage, actor, reason)
        if not result.success:
            logger.error(f"Rollout step for {plan.flag_id} failed, stopping plan: {result.message}")
            plan.next_step_at = None
            plan.cancelled = True
            self.store.save()
            return result

        rollout_steps_applied.labels(plan.flag_id).inc()

        if step.is_terminal or index == len(plan.steps) - 1:
            self._complete(plan, now)
        else:
            plan.next_step_at = now + timedelta(seconds=step.hold_seconds)
            self.store.save()

        return result

    def _complete(self, plan: RolloutPlan, now: datetime):
        plan.next_step_at = None
        plan.completed_at = now
        self.store.save()
        log_event(
            logger,
            "rollout.completed",
            flag_id=plan.flag_id,
            final_step=(plan.current_step or 0) + 1,
            steps=len(plan.steps)
        )
