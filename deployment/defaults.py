"""
Default deployment configuration

Seed flags, rollout plan, rollback triggers, alert rules and health probes
for the dual-audience homepage release. Triggers and rules are declared as
plain dictionaries, the same shape the JSON configuration uses, and go
through the ``parse_*`` helpers so unknown kinds are skipped with a warning.
"""
from typing import Dict, List, Optional, Any

from deployment.models import (
    AlertMetric,
    AlertRule,
    ComparisonOperator,
    FeatureFlag,
    HealthCheck,
    RollbackTrigger,
    RolloutStep,
    Severity,
    parse_alert_actions,
    parse_rollback_actions,
    parse_trigger_conditions,
)
from deployment.rollback import MANUAL_EMERGENCY_TRIGGER

HOMEPAGE_FLAGS = [
    {
        "id": "dual_audience_homepage",
        "name": "Dual-audience homepage",
        "description": "Homepage layout serving guests and property owners",
    },
    {
        "id": "enhanced_hero_section",
        "name": "Enhanced hero section",
        "description": "Hero section with search and audience switch",
    },
    {
        "id": "featured_lofts_showcase",
        "name": "Featured lofts showcase",
        "description": "Carousel of featured lofts",
    },
    {
        "id": "trust_social_proof",
        "name": "Trust and social proof",
        "description": "Reviews, ratings and trust badges",
    },
    {
        "id": "repositioned_owner_section",
        "name": "Repositioned owner section",
        "description": "Owner acquisition section moved below the fold",
    },
]

HOMEPAGE_FLAG_IDS = [f["id"] for f in HOMEPAGE_FLAGS]

# 5% canary, then widen every few hours
DEFAULT_ROLLOUT_STEPS = [
    {"percentage": 5, "hold_seconds": 3600},
    {"percentage": 25, "hold_seconds": 7200},
    {"percentage": 50, "hold_seconds": 14400},
    {"percentage": 100, "hold_seconds": 0},
]

HEALTH_CHECK_PATHS = [
    ("homepage", "/"),
    ("api_health", "/api/health"),
    ("monitoring_api", "/api/deployment/monitoring"),
]


def default_flags(initial_percentage: int = 5) -> List[FeatureFlag]:
    return [
        FeatureFlag(
            id=entry["id"],
            name=entry["name"],
            description=entry["description"],
            enabled=True,
            rollout_percentage=initial_percentage,
        )
        for entry in HOMEPAGE_FLAGS
    ]


def default_rollout_steps() -> List[RolloutStep]:
    return [RolloutStep(s["percentage"], s["hold_seconds"]) for s in DEFAULT_ROLLOUT_STEPS]


def trigger_from_dict(data: Dict[str, Any]) -> RollbackTrigger:
    return RollbackTrigger(
        id=data["id"],
        name=data.get("name", data["id"]),
        conditions=parse_trigger_conditions(data.get("conditions", [])),
        actions=parse_rollback_actions(data.get("actions", [])),
        severity=Severity(data.get("severity", "error")),
        cooldown_seconds=float(data.get("cooldown_seconds", 900)),
        enabled=bool(data.get("enabled", True)),
    )


def default_trigger_config(
    error_rate_threshold: float = 5.0,
    response_time_threshold_ms: float = 3000.0,
    lcp_threshold_ms: float = 4000.0,
    cooldown_seconds: float = 900.0,
    emergency_contacts: Optional[List[str]] = None
) -> List[Dict[str, Any]]:
    escalation = ""
    if emergency_contacts:
        escalation = f" Escalate to: {', '.join(emergency_contacts)}"

    return [
        {
            "id": "error_rate_spike",
            "name": "Error rate spike",
            "severity": "error",
            "cooldown_seconds": cooldown_seconds,
            "conditions": [
                {"kind": "error_rate", "operator": "gt",
                 "threshold": error_rate_threshold, "window_minutes": 5},
            ],
            "actions": [
                {"kind": "reduce_rollout", "order": 1, "flag_ids": HOMEPAGE_FLAG_IDS, "percentage": 10},
                {"kind": "notify", "order": 2},
            ],
        },
        {
            "id": "slow_responses",
            "name": "Slow responses",
            "severity": "warning",
            "cooldown_seconds": cooldown_seconds,
            "conditions": [
                {"kind": "avg_duration", "operator": "gt",
                 "threshold": response_time_threshold_ms, "window_minutes": 10},
            ],
            "actions": [
                {"kind": "reduce_rollout", "order": 1, "flag_ids": HOMEPAGE_FLAG_IDS, "percentage": 25},
                {"kind": "notify", "order": 2},
            ],
        },
        {
            "id": "poor_lcp",
            "name": "Poor largest contentful paint",
            "severity": "warning",
            "cooldown_seconds": cooldown_seconds,
            "conditions": [
                {"kind": "web_vital", "vital": "lcp", "operator": "gt",
                 "threshold": lcp_threshold_ms, "window_minutes": 15},
            ],
            "actions": [
                {"kind": "disable_feature", "order": 1, "flag_id": "enhanced_hero_section"},
                {"kind": "notify", "order": 2},
            ],
        },
        {
            "id": "health_checks_failing",
            "name": "Health checks failing",
            "severity": "critical",
            "cooldown_seconds": cooldown_seconds,
            "conditions": [
                {"kind": "health_check_failures", "operator": "gte", "threshold": 3},
            ],
            "actions": [
                {"kind": "emergency_rollback", "order": 1},
                {"kind": "notify", "order": 2},
            ],
        },
        {
            "id": MANUAL_EMERGENCY_TRIGGER,
            "name": "Manual emergency rollback",
            "severity": "critical",
            "cooldown_seconds": 0,
            "conditions": [],
            "actions": [
                {"kind": "emergency_rollback", "order": 1},
                {"kind": "redirect", "order": 2},
                {"kind": "notify", "order": 3,
                 "message": f"Emergency rollback executed, all feature flags set to 0%.{escalation}"},
            ],
        },
    ]


def default_triggers(**kwargs) -> List[RollbackTrigger]:
    return [trigger_from_dict(data) for data in default_trigger_config(**kwargs)]


def default_alert_rules(error_rate_threshold: float = 5.0, lcp_threshold_ms: float = 4000.0) -> List[AlertRule]:
    return [
        AlertRule(
            id="high_error_rate",
            name="High error rate",
            metric=AlertMetric.ERROR_RATE,
            operator=ComparisonOperator.GT,
            threshold=error_rate_threshold,
            window_minutes=5,
            severity=Severity.ERROR,
            actions=parse_alert_actions([{"kind": "log"}, {"kind": "notify"}]),
        ),
        AlertRule(
            id="critical_error_rate",
            name="Critical error rate",
            metric=AlertMetric.ERROR_RATE,
            operator=ComparisonOperator.GT,
            threshold=error_rate_threshold * 4,
            window_minutes=5,
            severity=Severity.CRITICAL,
            actions=parse_alert_actions([
                {"kind": "notify"},
                {"kind": "rollback_signal", "trigger_id": "error_rate_spike"},
            ]),
        ),
        AlertRule(
            id="slow_p95",
            name="Slow p95 response time",
            metric=AlertMetric.P95_DURATION,
            operator=ComparisonOperator.GT,
            threshold=2000,
            window_minutes=5,
            severity=Severity.WARNING,
            actions=parse_alert_actions([{"kind": "log"}]),
        ),
        AlertRule(
            id="poor_lcp",
            name="Poor largest contentful paint",
            metric=AlertMetric.LCP,
            operator=ComparisonOperator.GT,
            threshold=lcp_threshold_ms,
            window_minutes=15,
            severity=Severity.WARNING,
            actions=parse_alert_actions([{"kind": "log"}]),
        ),
    ]


def default_health_checks(
    base_url: str,
    timeout_seconds: float = 10.0,
    interval_seconds: int = 60
) -> List[HealthCheck]:
    base = base_url.rstrip("/")
    return [
        HealthCheck(
            name=name,
            endpoint=f"{base}{path}",
            timeout_seconds=timeout_seconds,
            interval_seconds=interval_seconds,
        )
        for name, path in HEALTH_CHECK_PATHS
    ]
