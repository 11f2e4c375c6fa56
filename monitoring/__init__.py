"""
Monitoring Module

Rolling request statistics, alert rules and external health probes.

Quick Start:
    from monitoring import MetricsAggregator

    aggregator = MetricsAggregator(capacity=1000)

    # Record metrics
    aggregator.record_sample(MetricSample(
        route="/api/lofts",
        method="GET",
        duration_ms=150,
        status_code=200
    ))

    # Stats and alerts
    stats = aggregator.compute_stats(window_minutes=5)
    fired = await aggregator.evaluate_alert_rules()
"""

from .aggregator import (
    MetricsAggregator,
    percentile
)

from .alerts import (
    AlertManager
)

from .health import (
    HealthCheckRunner,
    HealthStatus,
    HttpProbeClient
)

__all__ = [
    # Aggregation
    "MetricsAggregator",
    "percentile",

    # Alerting
    "AlertManager",

    # Health checks
    "HealthCheckRunner",
    "HealthStatus",
    "HttpProbeClient",
]
