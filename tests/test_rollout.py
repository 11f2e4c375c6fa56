"""
Test suite for gradual rollout plans and the due-check tick
"""
from datetime import timedelta

import pytest

from conftest import FakeClock, make_flag
from deployment.exceptions import ErrorKind
from deployment.feature_flags import FeatureFlagEngine
from deployment.flag_store import FlagStore
from deployment.models import RolloutStep

PLAN = [
    RolloutStep(5, hold_seconds=3600),
    RolloutStep(25, hold_seconds=7200),
    RolloutStep(100),
]


@pytest.fixture
def rollout_engine(engine):
    engine.register_flag(make_flag("checkout-v2", 0))
    assert engine.configure_rollout_plan("checkout-v2", PLAN, actor="alice").success
    return engine


def percentage(engine, flag_id="checkout-v2"):
    return engine.get_flag(flag_id).rollout_percentage


def test_start_without_plan_fails(engine):
    engine.register_flag(make_flag("checkout-v2", 0))
    result = engine.start_gradual_rollout("checkout-v2", actor="alice")
    assert not result.success
    assert result.error_kind == ErrorKind.NO_PLAN_CONFIGURED


def test_start_with_empty_plan_fails(engine):
    engine.register_flag(make_flag("checkout-v2", 0))
    engine.configure_rollout_plan("checkout-v2", [], actor="alice")
    result = engine.start_gradual_rollout("checkout-v2", actor="alice")
    assert result.error_kind == ErrorKind.NO_PLAN_CONFIGURED


def test_start_unknown_flag_is_not_found(engine):
    result = engine.start_gradual_rollout("missing", actor="alice")
    assert result.error_kind == ErrorKind.NOT_FOUND


def test_configure_rejects_out_of_range_step(engine):
    engine.register_flag(make_flag("checkout-v2", 0))
    result = engine.configure_rollout_plan("checkout-v2", [RolloutStep(150)], actor="alice")
    assert result.error_kind == ErrorKind.INVALID_RANGE
    assert engine.store.get_plan("checkout-v2") is None


def test_configure_accepts_dict_steps(engine):
    engine.register_flag(make_flag("checkout-v2", 0))
    result = engine.configure_rollout_plan(
        "checkout-v2",
        [{"percentage": 10, "hold_seconds": 60}, {"percentage": 100}],
        actor="alice"
    )
    assert result.success
    assert [s.percentage for s in engine.store.get_plan("checkout-v2").steps] == [10, 100]


def test_start_applies_first_step_immediately(rollout_engine, clock):
    result = rollout_engine.start_gradual_rollout("checkout-v2", actor="alice")

    assert result.success
    assert result.message == "Gradual rollout started for checkout-v2 at 5%"
    assert percentage(rollout_engine) == 5

    plan = rollout_engine.store.get_plan("checkout-v2")
    assert plan.next_step_at == clock.now + timedelta(seconds=3600)
    assert plan.is_active


def test_steps_fire_after_previous_hold(rollout_engine, clock):
    rollout_engine.start_gradual_rollout("checkout-v2", actor="alice")

    assert rollout_engine.advance_due_rollouts(clock.advance(minutes=59)) == []
    assert percentage(rollout_engine) == 5

    assert rollout_engine.advance_due_rollouts(clock.advance(minutes=1)) == ["checkout-v2"]
    assert percentage(rollout_engine) == 25

    # Second step holds for two hours
    assert rollout_engine.advance_due_rollouts(clock.advance(minutes=90)) == []
    assert rollout_engine.advance_due_rollouts(clock.advance(minutes=30)) == ["checkout-v2"]
    assert percentage(rollout_engine) == 100

    plan = rollout_engine.store.get_plan("checkout-v2")
    assert plan.completed_at == clock.now
    assert not plan.is_active
    assert rollout_engine.advance_due_rollouts(clock.advance(days=1)) == []


def test_one_step_per_tick_scheduled_from_application_time(rollout_engine, clock):
    rollout_engine.start_gradual_rollout("checkout-v2", actor="alice")

    late = clock.advance(hours=10)
    assert rollout_engine.advance_due_rollouts(late) == ["checkout-v2"]
    assert percentage(rollout_engine) == 25

    plan = rollout_engine.store.get_plan("checkout-v2")
    assert plan.next_step_at == late + timedelta(seconds=7200)


def test_terminal_step_ends_schedule_early(engine, clock):
    engine.register_flag(make_flag("checkout-v2", 0))
    engine.configure_rollout_plan(
        "checkout-v2",
        [RolloutStep(10, 60), RolloutStep(50, 0), RolloutStep(100, 60)],
        actor="alice"
    )
    engine.start_gradual_rollout("checkout-v2", actor="alice")
    engine.advance_due_rollouts(clock.advance(seconds=60))

    assert percentage(engine) == 50
    assert engine.advance_due_rollouts(clock.advance(hours=1)) == []
    assert percentage(engine) == 50


def test_rollout_steps_are_audited_with_rollout_actor(rollout_engine, store):
    rollout_engine.start_gradual_rollout("checkout-v2", actor="alice")
    entry = store.audit_log("checkout-v2")[-1]
    assert entry.actor == "rollout:alice"
    assert entry.reason == "gradual rollout step 1/3"


def test_manual_update_does_not_cancel_pending_step(rollout_engine, clock):
    rollout_engine.start_gradual_rollout("checkout-v2", actor="alice")
    rollout_engine.update_rollout_percentage("checkout-v2", 2, actor="bob")

    assert rollout_engine.store.get_plan("checkout-v2").is_active
    rollout_engine.advance_due_rollouts(clock.advance(hours=1))
    assert percentage(rollout_engine) == 25


def test_cancel_pending_on_update_stops_schedule(rollout_engine, clock):
    rollout_engine.start_gradual_rollout("checkout-v2", actor="alice")
    rollout_engine.update_rollout_percentage("checkout-v2", 0, actor="rollback", cancel_pending=True)

    plan = rollout_engine.store.get_plan("checkout-v2")
    assert not plan.is_active
    assert plan.cancelled
    assert rollout_engine.advance_due_rollouts(clock.advance(hours=2)) == []
    assert percentage(rollout_engine) == 0


def test_emergency_rollback_cancels_pending_step(rollout_engine, clock):
    rollout_engine.start_gradual_rollout("checkout-v2", actor="alice")
    rollout_engine.emergency_rollback("spike", actor="oncall")

    rollout_engine.advance_due_rollouts(clock.advance(hours=2))
    assert percentage(rollout_engine) == 0


def test_cancel_gradual_rollout(rollout_engine):
    assert rollout_engine.cancel_gradual_rollout("checkout-v2", actor="alice").error_kind == \
        ErrorKind.NO_PLAN_CONFIGURED

    rollout_engine.start_gradual_rollout("checkout-v2", actor="alice")
    assert rollout_engine.get_rollout_stats()["active_rollouts"] == 1

    assert rollout_engine.cancel_gradual_rollout("checkout-v2", actor="alice").success
    assert rollout_engine.get_rollout_stats()["active_rollouts"] == 0


def test_restart_resumes_in_flight_rollout(tmp_path):
    """next_step_at survives a restart and the due-check picks it up"""
    state_path = tmp_path / "flags.json"
    clock = FakeClock()

    first = FeatureFlagEngine(FlagStore(state_path=state_path), clock=clock)
    first.register_flag(make_flag("checkout-v2", 0))
    first.configure_rollout_plan("checkout-v2", PLAN, actor="alice")
    first.start_gradual_rollout("checkout-v2", actor="alice")
    due_at = first.store.get_plan("checkout-v2").next_step_at

    restarted = FeatureFlagEngine(FlagStore(state_path=state_path), clock=clock)
    plan = restarted.store.get_plan("checkout-v2")

    assert plan.next_step_at == due_at
    assert percentage(restarted) == 5
    assert restarted.advance_due_rollouts(clock.advance(hours=1)) == ["checkout-v2"]
    assert percentage(restarted) == 25
