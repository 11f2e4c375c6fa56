"""
Feature Flag Engine

Decides per request whether a flag is active, using AND-combined targeting
conditions and deterministic percentage bucketing, and owns every flag
mutation (percentage updates, toggles, gradual rollouts, emergency rollback).
"""
from typing import Dict, List, Optional, Any, Callable, Iterable
from datetime import datetime
import hashlib
import logging

from logger import get_logger, log_event
from metrics import flag_evaluations, flag_rollout_percentage
from deployment.exceptions import OperationResult, ErrorKind
from deployment.flag_store import FlagStore
from deployment.models import (
    AttributeKind,
    ConditionOperator,
    EvaluationContext,
    FeatureFlag,
    FlagAuditEntry,
    FlagCondition,
    RolloutStep,
    utcnow,
)
from deployment.rollout import RolloutScheduler

logger = get_logger(__name__)

ANONYMOUS_USER = "anonymous"


def stable_bucket(flag_id: str, user_id: Optional[str]) -> int:
    """
    Deterministic bucket in [0, 100) for a flag/identity pair

    MD5 of ``"<flag_id>:<user_id or 'anonymous'>"`` read as a big integer.
    Stable across calls and restarts; not meant to be cryptographically
    secure. Every anonymous caller lands in the same bucket for a given flag.
    """
    hash_input = f"{flag_id}:{user_id or ANONYMOUS_USER}".encode('utf-8')
    hash_value = int(hashlib.md5(hash_input).hexdigest(), 16)
    return hash_value % 100


class FeatureFlagEngine:
    """
    Evaluates and mutates feature flags

    Features:
    - Percentage-based rollout with consistent hashing
    - Attribute targeting conditions (user, country, user agent, custom)
    - Gradual rollout plans advanced by a due-check tick
    - Emergency rollback (force every active flag to 0%)
    - Audit trail for every mutation

    Example:
        engine = FeatureFlagEngine(FlagStore())
        engine.store.add_flag(FeatureFlag(id="checkout-v2", name="Checkout v2",
                                          enabled=True, rollout_percentage=10))

        if engine.is_enabled("checkout-v2", EvaluationContext(user_id="user123")):
            # Serve new checkout
            ...

        engine.update_rollout_percentage("checkout-v2", 25, actor="alice")
    """

    def __init__(
        self,
        store: FlagStore,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize the engine

        Args:
            store: FlagStore holding flags, plans and audit entries
            clock: Source of "now"; injectable for tests
        """
        self.store = store
        self.clock = clock
        self.rollouts = RolloutScheduler(
            store=store,
            apply_step=self._apply_rollout_step,
            clock=clock
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def is_enabled(self, flag_id: str, context: Optional[EvaluationContext] = None) -> bool:
        """
        Check if a flag is active for the given context

        Never raises: unknown or malformed flags evaluate to False so the
        request-serving path cannot fail on flag evaluation.
        """
        try:
            result = self._evaluate(flag_id, context or EvaluationContext())
        except Exception as e:
            logger.error(f"Error evaluating flag {flag_id}, defaulting to disabled: {e}")
            return False

        flag_evaluations.labels(flag_id, "enabled" if result else "disabled").inc()
        return result

    def _evaluate(self, flag_id: str, context: EvaluationContext) -> bool:
        flag = self.store.get_flag(flag_id)
        if flag is None:
            logger.debug(f"Feature flag not found: {flag_id}, defaulting to disabled")
            return False

        if not flag.enabled:
            flag.disabled_count += 1
            return False

        for condition in flag.conditions:
            if not self._condition_matches(condition, context):
                flag.disabled_count += 1
                return False

        if flag.rollout_percentage <= 0:
            flag.disabled_count += 1
            return False

        if flag.rollout_percentage >= 100:
            flag.enabled_count += 1
            return True

        enabled = stable_bucket(flag.id, context.user_id) < flag.rollout_percentage
        if enabled:
            flag.enabled_count += 1
        else:
            flag.disabled_count += 1
        return enabled

    def bucket_for(self, flag_id: str, user_id: Optional[str]) -> int:
        """Bucket an identity falls into for a flag"""
        return stable_bucket(flag_id, user_id)

    def evaluate_all(
        self,
        context: EvaluationContext,
        flag_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, bool]:
        """Evaluate several flags at once (all flags when none are named)"""
        ids = list(flag_ids) if flag_ids else [f.id for f in self.store.list_flags()]
        return {flag_id: self.is_enabled(flag_id, context) for flag_id in ids}

    @staticmethod
    def _attribute_value(condition: FlagCondition, context: EvaluationContext) -> Any:
        kind = condition.attribute_kind
        if kind is AttributeKind.USER_ID:
            return context.user_id
        if kind is AttributeKind.COUNTRY:
            return context.country
        if kind is AttributeKind.USER_AGENT:
            return context.user_agent
        if kind is AttributeKind.CUSTOM:
            return context.attributes.get(condition.attribute)
        raise ValueError(f"Unhandled attribute kind: {kind}")

    def _condition_matches(self, condition: FlagCondition, context: EvaluationContext) -> bool:
        """
        Evaluate one condition; a missing attribute fails the condition

        Supports equality, membership, substring/prefix and numeric
        comparisons.
        """
        actual = self._attribute_value(condition, context)
        if actual is None:
            return False

        op = condition.operator
        expected = condition.value

        if op is ConditionOperator.EQUALS:
            return actual == expected
        if op is ConditionOperator.NOT_EQUALS:
            return actual != expected
        if op is ConditionOperator.IN:
            return actual in expected
        if op is ConditionOperator.NOT_IN:
            return actual not in expected
        if op is ConditionOperator.CONTAINS:
            return str(expected) in str(actual)
        if op is ConditionOperator.STARTS_WITH:
            return str(actual).startswith(str(expected))
        if op is ConditionOperator.GT:
            return float(actual) > float(expected)
        if op is ConditionOperator.GTE:
            return float(actual) >= float(expected)
        if op is ConditionOperator.LT:
            return float(actual) < float(expected)
        if op is ConditionOperator.LTE:
            return float(actual) <= float(expected)
        raise ValueError(f"Unhandled condition operator: {op}")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def get_flag(self, flag_id: str) -> Optional[FeatureFlag]:
        return self.store.get_flag(flag_id)

    def list_flags(self) -> List[FeatureFlag]:
        return self.store.list_flags()

    def register_flag(self, flag: FeatureFlag):
        """Seed a flag (process start or state restore)"""
        self.store.add_flag(flag)
        flag_rollout_percentage.labels(flag.id).set(flag.rollout_percentage)

    def update_rollout_percentage(
        self,
        flag_id: str,
        percentage: Any,
        actor: str,
        reason: Optional[str] = None,
        cancel_pending: bool = False
    ) -> OperationResult:
        """
        Set a flag's rollout percentage

        A pending gradual-rollout step is left in place unless
        ``cancel_pending`` is set; it will overwrite this value when it fires.

        Args:
            flag_id: Flag to update
            percentage: Integer in [0, 100]
            actor: Who made the change (audit)
            reason: Optional reason stored with the audit entry
            cancel_pending: Cancel the flag's pending rollout step
        """
        if isinstance(percentage, bool) or not isinstance(percentage, int) or not 0 <= percentage <= 100:
            return OperationResult.fail(
                ErrorKind.INVALID_RANGE,
                f"Rollout percentage must be an integer between 0 and 100, got {percentage!r}"
            )

        flag = self.store.get_flag(flag_id)
        if flag is None:
            return OperationResult.fail(ErrorKind.NOT_FOUND, f"Feature flag not found: {flag_id}")

        if cancel_pending:
            self.rollouts.cancel(flag_id, actor, reason=reason)

        old = flag.rollout_percentage
        self._set_percentage(flag, percentage, actor, reason, action="update_rollout")

        return OperationResult.ok(f"Rollout for {flag_id} updated from {old}% to {percentage}%")

    def toggle(self, flag_id: str, enabled: bool, actor: str, reason: Optional[str] = None) -> OperationResult:
        """Flip a flag's enabled bit (does not cancel a pending rollout step)"""
        flag = self.store.get_flag(flag_id)
        if flag is None:
            return OperationResult.fail(ErrorKind.NOT_FOUND, f"Feature flag not found: {flag_id}")

        old = flag.enabled
        flag.enabled = bool(enabled)
        self._stamp(flag, actor, reason)
        self.store.record_audit(FlagAuditEntry(
            flag_id=flag_id,
            action="toggle",
            actor=actor,
            old_value=old,
            new_value=flag.enabled,
            reason=reason,
            timestamp=flag.updated_at
        ))
        self.store.save()

        log_event(logger, "flag.toggled", flag_id=flag_id, old=old, new=flag.enabled, actor=actor)
        state = "enabled" if flag.enabled else "disabled"
        return OperationResult.ok(f"Feature flag {flag_id} {state}")

    def emergency_rollback(self, reason: str, actor: str) -> List[str]:
        """
        Force every active flag to 0%

        Applies to flags that are enabled with a non-zero percentage, stamps
        the audit fields with the actor and reason, and cancels any pending
        rollout step for those flags. Calling it again is a no-op.

        Returns:
            Ids of the flags that were changed
        """
        affected = []
        for flag in self.store.list_flags():
            if not flag.enabled or flag.rollout_percentage <= 0:
                continue

            self.rollouts.cancel(flag.id, actor, reason=reason)
            self._set_percentage(flag, 0, actor, reason, action="emergency_rollback")
            affected.append(flag.id)

        log_event(
            logger,
            "flag.emergency_rollback",
            level=logging.WARNING if affected else logging.INFO,
            actor=actor,
            reason=reason,
            flags=",".join(affected) or "none"
        )
        return affected

    def _stamp(self, flag: FeatureFlag, actor: str, reason: Optional[str]):
        flag.updated_at = self.clock()
        flag.updated_by = actor
        flag.last_change_reason = reason

    def _set_percentage(
        self,
        flag: FeatureFlag,
        percentage: int,
        actor: str,
        reason: Optional[str],
        action: str
    ):
        old = flag.rollout_percentage
        flag.rollout_percentage = percentage
        self._stamp(flag, actor, reason)
        self.store.record_audit(FlagAuditEntry(
            flag_id=flag.id,
            action=action,
            actor=actor,
            old_value=old,
            new_value=percentage,
            reason=reason,
            timestamp=flag.updated_at
        ))
        self.store.save()

        flag_rollout_percentage.labels(flag.id).set(percentage)
        log_event(
            logger,
            f"flag.{action}",
            flag_id=flag.id,
            old=old,
            new=percentage,
            actor=actor,
            reason=reason
        )

    # ------------------------------------------------------------------
    # Gradual rollout
    # ------------------------------------------------------------------

    def configure_rollout_plan(
        self,
        flag_id: str,
        steps: List[RolloutStep],
        actor: str
    ) -> OperationResult:
        """Attach a gradual rollout plan to a flag"""
        if not self.store.has_flag(flag_id):
            return OperationResult.fail(ErrorKind.NOT_FOUND, f"Feature flag not found: {flag_id}")
        return self.rollouts.configure(flag_id, steps, actor)

    def start_gradual_rollout(self, flag_id: str, actor: str) -> OperationResult:
        """Apply the first plan step now and schedule the rest"""
        if not self.store.has_flag(flag_id):
            return OperationResult.fail(ErrorKind.NOT_FOUND, f"Feature flag not found: {flag_id}")
        return self.rollouts.start(flag_id, actor)

    def advance_due_rollouts(self, now: Optional[datetime] = None) -> List[str]:
        """Due-check tick: apply every rollout step whose time has come"""
        return self.rollouts.advance_due(now)

    def cancel_gradual_rollout(self, flag_id: str, actor: str) -> OperationResult:
        if not self.store.has_flag(flag_id):
            return OperationResult.fail(ErrorKind.NOT_FOUND, f"Feature flag not found: {flag_id}")
        if not self.rollouts.cancel(flag_id, actor):
            return OperationResult.fail(ErrorKind.NO_PLAN_CONFIGURED, f"No active rollout for {flag_id}")
        return OperationResult.ok(f"Gradual rollout for {flag_id} cancelled")

    def _apply_rollout_step(self, flag_id: str, percentage: int, actor: str, reason: str) -> OperationResult:
        return self.update_rollout_percentage(flag_id, percentage, actor, reason=reason)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_rollout_stats(self) -> Dict[str, Any]:
        """Aggregate rollout statistics for the dashboard"""
        flags = self.store.list_flags()
        enabled = [f for f in flags if f.enabled]
        average = (
            sum(f.rollout_percentage for f in enabled) / len(enabled)
            if enabled else 0.0
        )
        return {
            "total_flags": len(flags),
            "enabled_flags": len(enabled),
            "active_rollouts": len(self.rollouts.active_plans()),
            "average_rollout_percentage": round(average, 2),
        }

    def get_flag_stats(self, flag_id: str) -> Dict[str, Any]:
        """Evaluation statistics for a flag"""
        flag = self.store.get_flag(flag_id)
        if flag is None:
            return {}

        total_checks = flag.enabled_count + flag.disabled_count
        return {
            "id": flag.id,
            "enabled": flag.enabled,
            "rollout_percentage": flag.rollout_percentage,
            "enabled_count": flag.enabled_count,
            "disabled_count": flag.disabled_count,
            "total_checks": total_checks,
            "actual_enabled_percentage": (
                flag.enabled_count / total_checks * 100 if total_checks > 0 else 0
            ),
        }
