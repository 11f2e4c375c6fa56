"""
metrics.py - Prometheus metrics for the deployment safety control loop
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest

# Metrics definitions
request_count = Counter(
    'deploy_guard_requests_total',
    'Total requests observed by the monitoring middleware',
    ['method', 'route', 'status']
)

request_duration = Histogram(
    'deploy_guard_request_duration_seconds',
    'Request duration',
    ['method', 'route']
)

flag_evaluations = Counter(
    'deploy_guard_flag_evaluations_total',
    'Feature flag evaluations',
    ['flag', 'result']  # 'enabled' or 'disabled'
)

flag_rollout_percentage = Gauge(
    'deploy_guard_flag_rollout_percentage',
    'Current rollout percentage per flag',
    ['flag']
)

rollout_steps_applied = Counter(
    'deploy_guard_rollout_steps_applied_total',
    'Gradual rollout steps applied',
    ['flag']
)

rollback_events = Counter(
    'deploy_guard_rollback_events_total',
    'Rollback events by outcome',
    ['trigger', 'triggered_by', 'status']
)

rollback_action_failures = Counter(
    'deploy_guard_rollback_action_failures_total',
    'Rollback actions that failed',
    ['kind']
)

alerts_fired = Counter(
    'deploy_guard_alerts_fired_total',
    'Alerts fired by rule and severity',
    ['rule', 'severity']
)

health_check_failures = Counter(
    'deploy_guard_health_check_failures_total',
    'Failed health probes',
    ['check']
)

buffered_samples = Gauge(
    'deploy_guard_buffered_samples',
    'Samples currently held in the metrics ring buffer'
)


def get_metrics():
    """Get Prometheus metrics"""
    return generate_latest()
