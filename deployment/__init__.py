"""
Deployment Module

Feature flags with percentage rollout, gradual rollout plans and the shared
deployment data model. The rollback controller (``deployment.rollback``) and
system wiring (``deployment.system``) build on ``monitoring`` and are
imported from their own modules.

Quick Start:
    from deployment import FeatureFlagEngine, FlagStore, FeatureFlag

    engine = FeatureFlagEngine(FlagStore())
    engine.register_flag(FeatureFlag(id="new_checkout", name="New checkout",
                                     enabled=True, rollout_percentage=10))

    # Check if feature is enabled for user
    if engine.is_enabled("new_checkout", EvaluationContext(user_id="user123")):
        # Use new feature
        pass
"""

from .exceptions import (
    DeploymentError,
    ValidationError,
    NotFoundError,
    ActionExecutionError,
    ExternalProbeError,
    ErrorKind,
    OperationResult
)

from .models import (
    FeatureFlag,
    FlagCondition,
    EvaluationContext,
    RolloutStep,
    RolloutPlan,
    MetricSample,
    Stats,
    RollbackTrigger,
    RollbackAction,
    RollbackEvent,
    RollbackStatus,
    TriggeredBy
)

from .flag_store import (
    FlagStore
)

from .feature_flags import (
    FeatureFlagEngine,
    stable_bucket
)

from .rollout import (
    RolloutScheduler
)

__all__ = [
    # Errors
    "DeploymentError",
    "ValidationError",
    "NotFoundError",
    "ActionExecutionError",
    "ExternalProbeError",
    "ErrorKind",
    "OperationResult",

    # Model
    "FeatureFlag",
    "FlagCondition",
    "EvaluationContext",
    "RolloutStep",
    "RolloutPlan",
    "MetricSample",
    "Stats",
    "RollbackTrigger",
    "RollbackAction",
    "RollbackEvent",
    "RollbackStatus",
    "TriggeredBy",

    # Feature flags
    "FlagStore",
    "FeatureFlagEngine",
    "stable_bucket",

    # Rollout
    "RolloutScheduler",
]
