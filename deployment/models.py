"""
Deployment Data Model

Shared types for feature flags, rollout plans, metric samples, alert rules,
rollback triggers and rollback events.

Condition, metric and action kinds are closed enumerations. Configuration
coming from outside (JSON state files, seed dictionaries) is parsed through
the ``parse_*`` helpers, which log and skip unknown kinds so that newer
configuration never breaks an older process.
"""
from typing import Dict, List, Optional, Any, Tuple, Iterable
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime, timezone

from logger import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Timezone-aware UTC now"""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Feature flags
# ---------------------------------------------------------------------------

class AttributeKind(Enum):
    """Context attribute a flag condition reads"""
    USER_ID = "user_id"
    COUNTRY = "country"
    USER_AGENT = "user_agent"
    CUSTOM = "custom"


class ConditionOperator(Enum):
    """Operators for flag conditions"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"


@dataclass
class FlagCondition:
    """
    Targeting condition on a flag

    ``attribute`` names the key inside ``EvaluationContext.attributes`` and is
    required for ``AttributeKind.CUSTOM``.
    """
    attribute_kind: AttributeKind
    operator: ConditionOperator
    value: Any
    attribute: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attribute_kind": self.attribute_kind.value,
            "operator": self.operator.value,
            "value": self.value,
            "attribute": self.attribute,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlagCondition":
        kind = AttributeKind(data["attribute_kind"])
        if kind == AttributeKind.CUSTOM and not data.get("attribute"):
            raise ValueError("custom conditions require an attribute name")
        return cls(
            attribute_kind=kind,
            operator=ConditionOperator(data["operator"]),
            value=data.get("value", data.get("values")),
            attribute=data.get("attribute"),
        )


@dataclass
class EvaluationContext:
    """Per-request context used to evaluate flags"""
    user_id: Optional[str] = None
    country: Optional[str] = None
    user_agent: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FeatureFlag:
    """
    Feature flag with percentage rollout and targeting conditions

    Seeded at process start and mutated in place; never deleted.
    """
    id: str
    name: str
    description: str = ""
    enabled: bool = False

    # Percentage rollout (0-100)
    rollout_percentage: int = 0

    # AND-combined targeting conditions
    conditions: List[FlagCondition] = field(default_factory=list)

    # Audit
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    updated_by: str = "system"
    last_change_reason: Optional[str] = None

    # Evaluation tracking
    enabled_count: int = 0
    disabled_count: int = 0

    def __post_init__(self):
        if not 0 <= self.rollout_percentage <= 100:
            raise ValueError(
                f"rollout_percentage must be within 0-100, got {self.rollout_percentage}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "rollout_percentage": self.rollout_percentage,
            "conditions": [c.to_dict() for c in self.conditions],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "updated_by": self.updated_by,
            "last_change_reason": self.last_change_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureFlag":
        now = utcnow()
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            description=data.get("description", ""),
            enabled=bool(data.get("enabled", False)),
            rollout_percentage=int(data.get("rollout_percentage", 0)),
            conditions=parse_flag_conditions(data.get("conditions", [])),
            created_at=_parse_dt(data.get("created_at")) or now,
            updated_at=_parse_dt(data.get("updated_at")) or now,
            updated_by=data.get("updated_by", "system"),
            last_change_reason=data.get("last_change_reason"),
        )


@dataclass
class FlagAuditEntry:
    """Append-only record of a flag mutation"""
    flag_id: str
    action: str
    actor: str
    old_value: Any
    new_value: Any
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag_id": self.flag_id,
            "action": self.action,
            "actor": self.actor,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "reason": self.reason,
            "timestamp": _iso(self.timestamp),
        }


# ---------------------------------------------------------------------------
# Gradual rollout
# ---------------------------------------------------------------------------

@dataclass
class RolloutStep:
    """One step of a gradual rollout; hold_seconds == 0 ends the schedule"""
    percentage: int
    hold_seconds: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.hold_seconds <= 0


@dataclass
class RolloutPlan:
    """
    Ordered rollout steps for one flag plus persisted scheduler state

    ``next_step_at`` survives restarts, so a due-check tick can resume an
    in-flight rollout after the process comes back.
    """
    flag_id: str
    steps: List[RolloutStep] = field(default_factory=list)

    current_step: Optional[int] = None
    next_step_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    started_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled: bool = False

    @property
    def is_active(self) -> bool:
        return self.next_step_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag_id": self.flag_id,
            "steps": [
                {"percentage": s.percentage, "hold_seconds": s.hold_seconds}
                for s in self.steps
            ],
            "current_step": self.current_step,
            "next_step_at": _iso(self.next_step_at),
            "started_at": _iso(self.started_at),
            "started_by": self.started_by,
            "completed_at": _iso(self.completed_at),
            "cancelled": self.cancelled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolloutPlan":
        return cls(
            flag_id=data["flag_id"],
            steps=[
                RolloutStep(int(s["percentage"]), float(s.get("hold_seconds", 0)))
                for s in data.get("steps", [])
            ],
            current_step=data.get("current_step"),
            next_step_at=_parse_dt(data.get("next_step_at")),
            started_at=_parse_dt(data.get("started_at")),
            started_by=data.get("started_by"),
            completed_at=_parse_dt(data.get("completed_at")),
            cancelled=bool(data.get("cancelled", False)),
        )


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

WEB_VITALS = ("lcp", "fid", "cls", "fcp", "ttfb")


@dataclass
class MetricSample:
    """Single request observation"""
    route: str
    method: str
    duration_ms: float
    status_code: int
    timestamp: datetime = field(default_factory=utcnow)

    # Optional web vitals reported by the client tier
    lcp: Optional[float] = None
    fid: Optional[float] = None
    cls: Optional[float] = None
    fcp: Optional[float] = None
    ttfb: Optional[float] = None

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


@dataclass
class WebVitalsAverages:
    lcp: float = 0.0
    fid: float = 0.0
    cls: float = 0.0
    fcp: float = 0.0
    ttfb: float = 0.0

    def get(self, vital: str) -> float:
        if vital not in WEB_VITALS:
            raise KeyError(f"Unknown web vital: {vital}")
        return getattr(self, vital)

    def to_dict(self) -> Dict[str, float]:
        return {vital: getattr(self, vital) for vital in WEB_VITALS}


@dataclass
class Stats:
    """Rolling statistics over a time window"""
    avg_duration: float = 0.0
    p95_duration: float = 0.0
    error_rate_pct: float = 0.0
    request_count: int = 0
    slow_count: int = 0
    web_vitals: WebVitalsAverages = field(default_factory=WebVitalsAverages)
    window_minutes: int = 5
    computed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "average_response_time": round(self.avg_duration, 2),
            "p95_response_time": round(self.p95_duration, 2),
            "error_rate": round(self.error_rate_pct, 2),
            "request_count": self.request_count,
            "slow_request_count": self.slow_count,
            "web_vitals": self.web_vitals.to_dict(),
            "window_minutes": self.window_minutes,
            "computed_at": _iso(self.computed_at),
        }


class ComparisonOperator(Enum):
    """Threshold comparisons for alert rules and trigger conditions"""
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"

    def compare(self, value: float, threshold: float) -> bool:
        if self is ComparisonOperator.GT:
            return value > threshold
        if self is ComparisonOperator.GTE:
            return value >= threshold
        if self is ComparisonOperator.LT:
            return value < threshold
        if self is ComparisonOperator.LTE:
            return value <= threshold
        if self is ComparisonOperator.EQ:
            return value == threshold
        raise ValueError(f"Unhandled comparison operator: {self}")


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# ---------------------------------------------------------------------------
# Alerting
# ---------------------------------------------------------------------------

class AlertMetric(Enum):
    """Stats field an alert rule reads"""
    AVG_DURATION = "avg_duration"
    P95_DURATION = "p95_duration"
    ERROR_RATE = "error_rate"
    REQUEST_COUNT = "request_count"
    SLOW_COUNT = "slow_count"
    LCP = "lcp"
    FID = "fid"
    CLS = "cls"
    FCP = "fcp"
    TTFB = "ttfb"

    def read(self, stats: Stats) -> float:
        if self is AlertMetric.AVG_DURATION:
            return stats.avg_duration
        if self is AlertMetric.P95_DURATION:
            return stats.p95_duration
        if self is AlertMetric.ERROR_RATE:
            return stats.error_rate_pct
        if self is AlertMetric.REQUEST_COUNT:
            return float(stats.request_count)
        if self is AlertMetric.SLOW_COUNT:
            return float(stats.slow_count)
        if self.value in WEB_VITALS:
            return stats.web_vitals.get(self.value)
        raise ValueError(f"Unhandled alert metric: {self}")


class AlertActionKind(Enum):
    LOG = "log"
    NOTIFY = "notify"
    ROLLBACK_SIGNAL = "rollback_signal"


@dataclass(frozen=True)
class AlertAction:
    kind: AlertActionKind
    channel: Optional[str] = None
    trigger_id: Optional[str] = None
    message: Optional[str] = None


@dataclass
class AlertRule:
    """Threshold rule evaluated on every alert tick"""
    id: str
    name: str
    metric: AlertMetric
    operator: ComparisonOperator
    threshold: float
    window_minutes: int = 5
    severity: Severity = Severity.WARNING
    actions: List[AlertAction] = field(default_factory=list)
    enabled: bool = True
    cooldown_minutes: float = 5.0
    last_fired_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "metric": self.metric.value,
            "operator": self.operator.value,
            "threshold": self.threshold,
            "window_minutes": self.window_minutes,
            "severity": self.severity.value,
            "actions": [a.kind.value for a in self.actions],
            "enabled": self.enabled,
            "cooldown_minutes": self.cooldown_minutes,
            "last_fired_at": _iso(self.last_fired_at),
        }


@dataclass
class AlertNotification:
    """A fired alert"""
    id: str
    rule_id: str
    rule_name: str
    message: str
    severity: Severity
    source: str = "rule"
    timestamp: datetime = field(default_factory=utcnow)
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "message": self.message,
            "severity": self.severity.value,
            "source": self.source,
            "timestamp": _iso(self.timestamp),
            "resolved": self.resolved,
            "resolved_at": _iso(self.resolved_at),
            "metadata": self.metadata,
        }


# ---------------------------------------------------------------------------
# Health checks
# ---------------------------------------------------------------------------

@dataclass
class HealthCheck:
    """External HTTP probe definition"""
    name: str
    endpoint: str
    method: str = "GET"
    expected_status: int = 200
    timeout_seconds: float = 10.0
    interval_seconds: int = 60
    enabled: bool = True


@dataclass
class HealthCheckResult:
    name: str
    healthy: bool
    message: str = ""
    status_code: Optional[int] = None
    duration_ms: float = 0.0
    checked_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "message": self.message,
            "status_code": self.status_code,
            "duration_ms": round(self.duration_ms, 2),
            "checked_at": _iso(self.checked_at),
        }


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------

class TriggerConditionKind(Enum):
    """Aggregated signal a rollback trigger condition reads"""
    ERROR_RATE = "error_rate"
    AVG_DURATION = "avg_duration"
    WEB_VITAL = "web_vital"
    HEALTH_CHECK_FAILURES = "health_check_failures"


@dataclass(frozen=True)
class TriggerCondition:
    kind: TriggerConditionKind
    operator: ComparisonOperator
    threshold: float
    window_minutes: int = 5
    vital: Optional[str] = None

    def describe(self) -> str:
        subject = f"{self.kind.value}:{self.vital}" if self.vital else self.kind.value
        return f"{subject} {self.operator.value} {self.threshold} ({self.window_minutes}m)"


class RollbackActionKind(Enum):
    DISABLE_FEATURE = "disable_feature"
    REDUCE_ROLLOUT = "reduce_rollout"
    EMERGENCY_ROLLBACK = "emergency_rollback"
    NOTIFY = "notify"
    REDIRECT = "redirect"  # placeholder, intentionally a no-op


@dataclass(frozen=True)
class RollbackAction:
    """One ordered mitigation step"""
    kind: RollbackActionKind
    order: int = 0
    flag_id: Optional[str] = None
    flag_ids: Tuple[str, ...] = ()
    percentage: Optional[int] = None
    message: Optional[str] = None
    channel: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "order": self.order,
            "flag_id": self.flag_id,
            "flag_ids": list(self.flag_ids),
            "percentage": self.percentage,
            "message": self.message,
            "channel": self.channel,
        }


@dataclass
class RollbackTrigger:
    """Automatic rollback rule with per-trigger cooldown"""
    id: str
    name: str
    conditions: List[TriggerCondition] = field(default_factory=list)
    actions: List[RollbackAction] = field(default_factory=list)
    severity: Severity = Severity.ERROR
    cooldown_seconds: float = 900.0
    enabled: bool = True
    last_triggered_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "conditions": [c.describe() for c in self.conditions],
            "actions": [a.to_dict() for a in self.actions],
            "severity": self.severity.value,
            "cooldown_seconds": self.cooldown_seconds,
            "enabled": self.enabled,
            "last_triggered_at": _iso(self.last_triggered_at),
        }


class TriggeredBy(Enum):
    SYSTEM = "system"
    MANUAL = "manual"


class RollbackStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RollbackStateMachine:
    """Validates rollback event status transitions"""

    VALID_TRANSITIONS = {
        RollbackStatus.PENDING: {RollbackStatus.IN_PROGRESS},
        RollbackStatus.IN_PROGRESS: {RollbackStatus.COMPLETED, RollbackStatus.FAILED},
        RollbackStatus.COMPLETED: set(),  # Terminal
        RollbackStatus.FAILED: set(),     # Terminal
    }

    @classmethod
    def is_valid_transition(cls, from_status: RollbackStatus, to_status: RollbackStatus) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, set())

    @classmethod
    def is_terminal_state(cls, status: RollbackStatus) -> bool:
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0


def sort_actions(actions: Iterable[RollbackAction]) -> Tuple[RollbackAction, ...]:
    """Ascending ``order``; Python's sort is stable so ties keep declaration order"""
    return tuple(sorted(actions, key=lambda a: a.order))


@dataclass
class RollbackEvent:
    """
    One execution of a trigger's actions

    ``actions`` is a frozen, already-ordered snapshot taken when the event is
    created, so later edits to the trigger do not affect it.
    """
    id: str
    trigger_id: str
    reason: str
    triggered_by: TriggeredBy
    actions: Tuple[RollbackAction, ...]
    timestamp: datetime = field(default_factory=utcnow)
    status: RollbackStatus = RollbackStatus.PENDING
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    executed_actions: int = 0
    actor: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return RollbackStateMachine.is_terminal_state(self.status)

    def transition(self, to_status: RollbackStatus, error: Optional[str] = None, at: Optional[datetime] = None):
        if not RollbackStateMachine.is_valid_transition(self.status, to_status):
            raise ValueError(
                f"Invalid state transition for rollback event {self.id}: "
                f"{self.status.value} -> {to_status.value}"
            )
        self.status = to_status
        if RollbackStateMachine.is_terminal_state(to_status):
            self.completed_at = at or utcnow()
            self.error = error

    @property
    def execution_seconds(self) -> Optional[float]:
        if not self.completed_at:
            return None
        return (self.completed_at - self.timestamp).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "trigger_id": self.trigger_id,
            "timestamp": _iso(self.timestamp),
            "reason": self.reason,
            "triggered_by": self.triggered_by.value,
            "actions": [a.to_dict() for a in self.actions],
            "status": self.status.value,
            "completed_at": _iso(self.completed_at),
            "error": self.error,
            "executed_actions": self.executed_actions,
            "actor": self.actor,
        }


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _parse_each(items: Iterable[Dict[str, Any]], parser, label: str) -> list:
    parsed = []
    for item in items or []:
        try:
            parsed.append(parser(item))
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Skipping unsupported {label} {item!r}: {e}")
    return parsed


def parse_flag_conditions(items: Iterable[Dict[str, Any]]) -> List[FlagCondition]:
    return _parse_each(items, FlagCondition.from_dict, "flag condition")


def _trigger_condition(data: Dict[str, Any]) -> TriggerCondition:
    kind = TriggerConditionKind(data["kind"])
    vital = data.get("vital")
    if kind == TriggerConditionKind.WEB_VITAL and vital not in WEB_VITALS:
        raise ValueError(f"web_vital conditions need one of {WEB_VITALS}")
    return TriggerCondition(
        kind=kind,
        operator=ComparisonOperator(data.get("operator", "gt")),
        threshold=float(data["threshold"]),
        window_minutes=int(data.get("window_minutes", 5)),
        vital=vital,
    )


def parse_trigger_conditions(items: Iterable[Dict[str, Any]]) -> List[TriggerCondition]:
    return _parse_each(items, _trigger_condition, "trigger condition")


def _rollback_action(data: Dict[str, Any]) -> RollbackAction:
    percentage = data.get("percentage")
    return RollbackAction(
        kind=RollbackActionKind(data["kind"]),
        order=int(data.get("order", 0)),
        flag_id=data.get("flag_id"),
        flag_ids=tuple(data.get("flag_ids", ())),
        percentage=int(percentage) if percentage is not None else None,
        message=data.get("message"),
        channel=data.get("channel"),
    )


def parse_rollback_actions(items: Iterable[Dict[str, Any]]) -> List[RollbackAction]:
    return _parse_each(items, _rollback_action, "rollback action")


def _alert_action(data: Dict[str, Any]) -> AlertAction:
    return AlertAction(
        kind=AlertActionKind(data["kind"]),
        channel=data.get("channel"),
        trigger_id=data.get("trigger_id"),
        message=data.get("message"),
    )


def parse_alert_actions(items: Iterable[Dict[str, Any]]) -> List[AlertAction]:
    return _parse_each(items, _alert_action, "alert action")


def parse_feature_flags(items: Iterable[Dict[str, Any]]) -> List[FeatureFlag]:
    return _parse_each(items, FeatureFlag.from_dict, "feature flag")


def _rollout_plan(data: Dict[str, Any]) -> RolloutPlan:
    plan = RolloutPlan.from_dict(data)
    for step in plan.steps:
        if not 0 <= step.percentage <= 100:
            raise ValueError(f"rollout step percentage must be within 0-100, got {step.percentage}")
    return plan


def parse_rollout_plans(items: Iterable[Dict[str, Any]]) -> List[RolloutPlan]:
    return _parse_each(items, _rollout_plan, "rollout plan")
