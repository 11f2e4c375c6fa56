"""
Test suite for health check probes
"""
import asyncio

import pytest

from deployment.exceptions import ExternalProbeError
from deployment.models import HealthCheck
from monitoring.aggregator import MetricsAggregator
from monitoring.health import HealthCheckRunner, HttpProbeClient


class StaticProbeClient(HttpProbeClient):
    """Returns queued status codes, or raises queued exceptions"""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def probe(self, method, url, timeout_seconds):
        self.calls.append((method, url))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class HangingProbeClient(HttpProbeClient):
    async def probe(self, method, url, timeout_seconds):
        await asyncio.sleep(10)
        return 200


def api_check(**kwargs):
    defaults = dict(name="api_health", endpoint="https://lofts.example.com/api/health", timeout_seconds=1)
    defaults.update(kwargs)
    return HealthCheck(**defaults)


@pytest.mark.asyncio
async def test_expected_status_is_healthy():
    runner = HealthCheckRunner(client=StaticProbeClient(200))
    check = api_check()
    runner.register(check)

    result = await runner.run(check)

    assert result.healthy
    assert result.status_code == 200
    assert runner.failure_count() == 0
    assert runner.get_health_status()["overall_status"] == "healthy"


@pytest.mark.asyncio
async def test_status_mismatch_is_unhealthy():
    runner = HealthCheckRunner(client=StaticProbeClient(503))
    check = api_check()
    runner.register(check)

    result = await runner.run(check)

    assert not result.healthy
    assert "expected 200" in result.message
    assert runner.consecutive_failures("api_health") == 1


@pytest.mark.asyncio
async def test_timeout_is_unhealthy():
    runner = HealthCheckRunner(client=HangingProbeClient())
    check = api_check(timeout_seconds=0.05)
    runner.register(check)

    result = await asyncio.wait_for(runner.run(check), timeout=2)

    assert not result.healthy
    assert "timed out" in result.message


@pytest.mark.asyncio
async def test_unreachable_endpoint_is_unhealthy():
    error = ExternalProbeError("Endpoint unreachable: connection refused", target="api")
    runner = HealthCheckRunner(client=StaticProbeClient(error))
    check = api_check()
    runner.register(check)

    result = await runner.run(check)

    assert not result.healthy
    assert "unreachable" in result.message


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures():
    runner = HealthCheckRunner(client=StaticProbeClient(500, 500, 200))
    check = api_check()
    runner.register(check)

    await runner.run(check)
    await runner.run(check)
    assert runner.consecutive_failures("api_health") == 2

    await runner.run(check)
    assert runner.consecutive_failures("api_health") == 0


@pytest.mark.asyncio
async def test_failure_count_sums_all_checks():
    runner = HealthCheckRunner(client=StaticProbeClient(500))
    first, second = api_check(name="homepage"), api_check(name="api_health")
    runner.register(first)
    runner.register(second)

    await runner.run(first)
    await runner.run(first)
    await runner.run(second)

    assert runner.failure_count() == 3
    assert runner.get_health_status()["overall_status"] == "unhealthy"


@pytest.mark.asyncio
async def test_aggregator_alerts_on_failed_probe(clock):
    aggregator = MetricsAggregator(probe_client=StaticProbeClient(502), clock=clock)
    check = api_check()
    aggregator.register_health_check(check)

    result = await aggregator.run_health_check(check)

    assert not result.healthy
    alerts = aggregator.get_active_alerts()
    assert len(alerts) == 1
    assert alerts[0].source == "health_check"
    assert alerts[0].rule_id == "health_check:api_health"
    assert aggregator.health_failure_count() == 1


@pytest.mark.asyncio
async def test_aggregator_healthy_probe_raises_no_alert(clock):
    aggregator = MetricsAggregator(probe_client=StaticProbeClient(200), clock=clock)
    check = api_check()
    aggregator.register_health_check(check)

    await aggregator.run_health_check(check)

    assert aggregator.get_active_alerts() == []
    assert aggregator.health_failure_count() == 0


@pytest.mark.asyncio
async def test_repeated_failures_keep_one_active_alert_until_recovery(clock):
    aggregator = MetricsAggregator(probe_client=StaticProbeClient(*([502] * 200 + [200])), clock=clock)
    check = api_check()
    aggregator.register_health_check(check)

    for _ in range(200):
        await aggregator.run_health_check(check)

    active = aggregator.get_active_alerts()
    assert len(active) == 1
    assert active[0].metadata["consecutive_failures"] == 200
    assert aggregator.get_alert_stats()["alerts_last_24h"] == 200

    result = await aggregator.run_health_check(check)

    assert result.healthy
    assert aggregator.get_active_alerts() == []
    assert active[0].resolved
    assert aggregator.health_failure_count() == 0


def test_unregister_drops_failures():
    runner = HealthCheckRunner(client=StaticProbeClient(200))
    runner.register(api_check())
    runner.unregister("api_health")
    assert runner.get_check("api_health") is None
    assert runner.list_checks() == []
