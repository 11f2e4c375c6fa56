"""
Test suite for control loop assembly and lifecycle
"""
import pytest

from config import Settings
from deployment.defaults import HOMEPAGE_FLAG_IDS
from deployment.system import DeploymentSafetySystem


def make_settings(**kwargs):
    defaults = dict(enable_scheduler=False, log_to_file=False, environment="testing")
    defaults.update(kwargs)
    return Settings(**defaults)


def test_seeds_default_configuration():
    system = DeploymentSafetySystem(make_settings(initial_rollout_percentage=10))

    assert sorted(f.id for f in system.engine.list_flags()) == sorted(HOMEPAGE_FLAG_IDS)
    assert all(f.rollout_percentage == 10 for f in system.engine.list_flags())
    assert {t.id for t in system.controller.list_triggers()} == {
        "error_rate_spike", "slow_responses", "poor_lcp", "health_checks_failing", "manual_emergency"
    }
    assert system.aggregator.list_rules()
    assert system.aggregator.list_health_checks() == []
    assert [s.percentage for s in system.store.get_plan("dual_audience_homepage").steps] == [5, 25, 50, 100]


def test_seeding_can_be_disabled():
    system = DeploymentSafetySystem(make_settings(seed_default_flags=False))
    assert system.engine.list_flags() == []


def test_health_checks_registered_for_base_url():
    system = DeploymentSafetySystem(make_settings(health_check_base_url="https://lofts.example.com"))

    endpoints = {c.name: c.endpoint for c in system.aggregator.list_health_checks()}
    assert endpoints["api_health"] == "https://lofts.example.com/api/health"
    assert set(endpoints) == {"homepage", "api_health", "monitoring_api"}


def test_restored_state_wins_over_seed(tmp_path):
    state_path = str(tmp_path / "flags.json")
    first = DeploymentSafetySystem(make_settings(flag_state_path=state_path))
    first.engine.update_rollout_percentage("trust_social_proof", 40, actor="alice")

    second = DeploymentSafetySystem(make_settings(flag_state_path=state_path))

    assert second.engine.get_flag("trust_social_proof").rollout_percentage == 40


@pytest.mark.asyncio
async def test_start_and_shutdown_without_scheduler():
    system = DeploymentSafetySystem(make_settings())

    await system.start()
    assert system.is_running
    assert system.scheduler is None

    await system.shutdown()
    assert not system.is_running


@pytest.mark.asyncio
async def test_start_schedules_ticks():
    system = DeploymentSafetySystem(make_settings(
        enable_scheduler=True,
        health_check_base_url="https://lofts.example.com"
    ))

    await system.start()
    try:
        job_ids = {job.id for job in system.scheduler.get_jobs()}
        assert {"evaluate_alert_rules", "evaluate_rollback_triggers", "advance_due_rollouts"} <= job_ids
        assert "health_check_api_health" in job_ids
        assert system.dashboard_snapshot()["scheduler_running"] is True
    finally:
        await system.shutdown()

    assert system.scheduler is None


@pytest.mark.asyncio
async def test_alert_signal_reaches_rollback_controller():
    system = DeploymentSafetySystem(make_settings())

    event_id = await system.aggregator.alerts.rollback_signal_handler("error_rate_spike", "critical error rate")
    await system.controller.drain()

    event = system.controller.get_event(event_id)
    assert event.status.value == "completed"
    assert all(f.rollout_percentage <= 10 for f in system.engine.list_flags())
