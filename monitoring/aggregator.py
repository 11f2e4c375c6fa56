"""
Metrics Aggregator

Collects request samples in a fixed-capacity ring buffer, computes rolling
statistics over time windows, evaluates alert rules against them and runs
external health probes. Rollback triggers read their signals from here.
"""
from typing import Dict, List, Optional, Any, Callable
from collections import deque
from datetime import datetime, timedelta
import math

from logger import get_logger
from metrics import buffered_samples, health_check_failures
from deployment.models import (
    WEB_VITALS,
    AlertNotification,
    AlertRule,
    HealthCheck,
    HealthCheckResult,
    MetricSample,
    Severity,
    Stats,
    WebVitalsAverages,
    utcnow,
)
from monitoring.alerts import AlertManager
from monitoring.health import HealthCheckRunner, HttpProbeClient

logger = get_logger(__name__)


def percentile(sorted_values: List[float], pct: float) -> float:
    """Nearest-rank percentile of an already sorted list"""
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_values)))
    return sorted_values[rank - 1]


class MetricsAggregator:
    """
    Rolling request statistics, alert rules and health probes

    Features:
    - Ring buffer of recent samples (oldest evicted first)
    - Windowed stats: average/p95 duration, error rate, slow requests,
      web vitals averages
    - Alert rule evaluation with background action dispatch
    - Bounded-timeout health probes that raise alerts on failure

    Example:
        aggregator = MetricsAggregator(capacity=1000)
        aggregator.record_sample(MetricSample(route="/api/lofts", method="GET",
                                              duration_ms=120, status_code=200))

        stats = aggregator.compute_stats(window_minutes=5)
        print(f"Error rate: {stats.error_rate_pct:.1f}%")
    """

    def __init__(
        self,
        capacity: int = 1000,
        slow_threshold_ms: float = 2000.0,
        notifier=None,
        probe_client: Optional[HttpProbeClient] = None,
        action_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
        history_limit: int = 500
    ):
        self.capacity = capacity
        self.slow_threshold_ms = slow_threshold_ms
        self.clock = clock

        self._samples: deque = deque(maxlen=capacity)
        self._vitals: deque = deque(maxlen=capacity)
        self.alerts = AlertManager(
            notifier=notifier,
            action_timeout_seconds=action_timeout_seconds,
            history_limit=history_limit,
            clock=clock
        )
        self.health = HealthCheckRunner(client=probe_client)

    # ------------------------------------------------------------------
    # Samples and stats
    # ------------------------------------------------------------------

    def record_sample(self, sample: MetricSample):
        self._samples.append(sample)
        buffered_samples.set(len(self._samples))

    def record_web_vitals(self, sample: MetricSample):
        """
        Client-reported web vitals

        Kept apart from request samples so page-level reports do not count
        as requests; they only feed the web vitals averages.
        """
        self._vitals.append(sample)

    def sample_count(self) -> int:
        return len(self._samples)

    def compute_stats(self, window_minutes: int = 5, now: Optional[datetime] = None) -> Stats:
        """
        Statistics over samples with ``timestamp >= now - window``

        An empty window yields zeroed stats.
        """
        now = now or self.clock()
        cutoff = now - timedelta(minutes=window_minutes)
        window = [s for s in self._samples if s.timestamp >= cutoff]

        vitals = WebVitalsAverages()
        reports = window + [s for s in self._vitals if s.timestamp >= cutoff]
        for vital in WEB_VITALS:
            values = [getattr(s, vital) for s in reports if getattr(s, vital) is not None]
            if values:
                setattr(vitals, vital, sum(values) / len(values))

        if not window:
            return Stats(web_vitals=vitals, window_minutes=window_minutes, computed_at=now)

        durations = sorted(s.duration_ms for s in window)
        errors = sum(1 for s in window if s.is_error)
        slow = sum(1 for s in window if s.duration_ms > self.slow_threshold_ms)

        return Stats(
            avg_duration=sum(durations) / len(durations),
            p95_duration=percentile(durations, 95),
            error_rate_pct=errors / len(window) * 100,
            request_count=len(window),
            slow_count=slow,
            web_vitals=vitals,
            window_minutes=window_minutes,
            computed_at=now
        )

    # ------------------------------------------------------------------
    # Alert rules
    # ------------------------------------------------------------------

    def add_rule(self, rule: AlertRule):
        self.alerts.add_rule(rule)

    def remove_rule(self, rule_id: str) -> bool:
        return self.alerts.remove_rule(rule_id)

    def list_rules(self) -> List[AlertRule]:
        return self.alerts.list_rules()

    async def evaluate_alert_rules(self, now: Optional[datetime] = None) -> List[AlertNotification]:
        """
        Alert tick: check every enabled rule outside its cooldown

        Actions of fired rules run as background tasks; one failing rule
        does not stop the others.
        """
        now = now or self.clock()
        fired = []

        for rule in self.alerts.list_rules():
            if not rule.enabled or self.alerts.in_cooldown(rule, now):
                continue
            try:
                stats = self.compute_stats(rule.window_minutes, now=now)
                alert = self.alerts.check_rule(rule, stats, now)
                if alert is not None:
                    fired.append(alert)
            except Exception as e:
                logger.error(f"Error evaluating alert rule {rule.id}: {e}")

        if fired:
            logger.info(f"Alert tick fired {len(fired)} alert(s)")
        return fired

    def get_active_alerts(self) -> List[AlertNotification]:
        return self.alerts.get_active_alerts()

    def get_alert_history(self, limit: int = 100) -> List[AlertNotification]:
        return self.alerts.get_alert_history(limit)

    def resolve_alert(self, alert_id: str) -> bool:
        return self.alerts.resolve_alert(alert_id)

    def get_alert_stats(self) -> Dict[str, Any]:
        return self.alerts.get_stats()

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    def register_health_check(self, check: HealthCheck):
        self.health.register(check)

    def list_health_checks(self) -> List[HealthCheck]:
        return self.health.list_checks()

    async def run_health_check(self, check: HealthCheck) -> HealthCheckResult:
        """
        Probe once; a failure is logged, alerted and counted, never raised

        A passing probe resolves the check's active alert.
        """
        result = await self.health.run(check)
        rule_id = f"health_check:{check.name}"

        if result.healthy:
            if self.alerts.resolve_rule_alerts(rule_id):
                logger.info(f"Health check recovered: {check.name}")
        else:
            health_check_failures.labels(check.name).inc()
            logger.error(f"Health check failed: {check.name} - {result.message}")
            self.alerts.raise_alert(
                rule_id=rule_id,
                rule_name=f"Health check {check.name}",
                message=f"Health check {check.name} failed: {result.message}",
                severity=Severity.ERROR,
                source="health_check",
                metadata={
                    "endpoint": check.endpoint,
                    "status_code": result.status_code,
                    "consecutive_failures": self.health.consecutive_failures(check.name),
                }
            )

        return result

    def health_failure_count(self) -> int:
        return self.health.failure_count()

    def get_health_status(self) -> Dict[str, Any]:
        return self.health.get_health_status()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_monitoring_status(self) -> Dict[str, Any]:
        return {
            "buffered_samples": len(self._samples),
            "buffer_capacity": self.capacity,
            "alert_rules": len(self.alerts.list_rules()),
            "active_alerts": [a.to_dict() for a in self.alerts.get_active_alerts()],
            "alert_stats": self.alerts.get_stats(),
            "health": self.health.get_health_status(),
            "health_failure_count": self.health.failure_count(),
        }

    async def drain(self):
        await self.alerts.drain()
