"""
Test suite for alert action dispatch
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from deployment.models import (
    AlertAction,
    AlertActionKind,
    AlertMetric,
    AlertRule,
    ComparisonOperator,
    Severity,
    Stats,
)
from monitoring.alerts import AlertManager


def rule_with(*actions, **kwargs):
    return AlertRule(
        id=kwargs.pop("id", "high_error_rate"),
        name="High error rate",
        metric=AlertMetric.ERROR_RATE,
        operator=ComparisonOperator.GT,
        threshold=5,
        severity=Severity.ERROR,
        actions=list(actions),
        **kwargs
    )


@pytest.mark.asyncio
async def test_notify_action_goes_through_notifier(clock):
    notifier = AsyncMock()
    manager = AlertManager(notifier=notifier, clock=clock)
    rule = rule_with(AlertAction(AlertActionKind.NOTIFY, channel="webhook"))

    alert = manager.check_rule(rule, Stats(error_rate_pct=20.0, request_count=10), clock.now)
    await manager.drain()

    notifier.send.assert_awaited_once()
    args, kwargs = notifier.send.call_args
    assert "High error rate" in args[0]
    assert kwargs["severity"] == Severity.ERROR
    assert kwargs["channel"] == "webhook"
    assert kwargs["metadata"]["alert_id"] == alert.id


@pytest.mark.asyncio
async def test_check_rule_below_threshold_returns_none(clock):
    manager = AlertManager(clock=clock)
    rule = rule_with(AlertAction(AlertActionKind.LOG))

    assert manager.check_rule(rule, Stats(error_rate_pct=5.0), clock.now) is None
    assert rule.last_fired_at is None


@pytest.mark.asyncio
async def test_failing_action_does_not_stop_the_next(clock):
    notifier = AsyncMock()
    notifier.send.side_effect = RuntimeError("webhook down")
    signal = AsyncMock(return_value="event-1")

    manager = AlertManager(notifier=notifier, clock=clock)
    manager.rollback_signal_handler = signal
    rule = rule_with(
        AlertAction(AlertActionKind.NOTIFY),
        AlertAction(AlertActionKind.ROLLBACK_SIGNAL, trigger_id="error_rate_spike"),
    )

    manager.check_rule(rule, Stats(error_rate_pct=20.0), clock.now)
    await manager.drain()

    signal.assert_awaited_once()
    assert signal.call_args.args[0] == "error_rate_spike"


@pytest.mark.asyncio
async def test_slow_action_is_bounded_by_timeout(clock):
    calls = []

    async def slow_send(*args, **kwargs):
        await asyncio.sleep(5)

    notifier = AsyncMock()
    notifier.send.side_effect = slow_send

    async def record_signal(trigger_id, reason):
        calls.append(trigger_id)

    manager = AlertManager(notifier=notifier, action_timeout_seconds=0.05, clock=clock)
    manager.rollback_signal_handler = record_signal
    rule = rule_with(
        AlertAction(AlertActionKind.NOTIFY),
        AlertAction(AlertActionKind.ROLLBACK_SIGNAL, trigger_id="error_rate_spike"),
    )

    manager.check_rule(rule, Stats(error_rate_pct=20.0), clock.now)
    await asyncio.wait_for(manager.drain(), timeout=2)

    assert calls == ["error_rate_spike"]


@pytest.mark.asyncio
async def test_check_rule_returns_before_actions_finish(clock):
    started = asyncio.Event()
    release = asyncio.Event()

    async def blocking_send(*args, **kwargs):
        started.set()
        await release.wait()

    notifier = AsyncMock()
    notifier.send.side_effect = blocking_send
    manager = AlertManager(notifier=notifier, clock=clock)

    alert = manager.check_rule(rule_with(AlertAction(AlertActionKind.NOTIFY)), Stats(error_rate_pct=20.0), clock.now)

    assert alert is not None
    await asyncio.wait_for(started.wait(), timeout=1)
    release.set()
    await manager.drain()


@pytest.mark.asyncio
async def test_rollback_signal_without_handler_is_ignored(clock):
    manager = AlertManager(clock=clock)
    rule = rule_with(AlertAction(AlertActionKind.ROLLBACK_SIGNAL, trigger_id="error_rate_spike"))

    assert manager.check_rule(rule, Stats(error_rate_pct=20.0), clock.now) is not None
    await manager.drain()


def test_cooldown_window(clock):
    manager = AlertManager(clock=clock)
    rule = rule_with(cooldown_minutes=5)

    assert not manager.in_cooldown(rule, clock.now)
    rule.last_fired_at = clock.now
    assert manager.in_cooldown(rule, clock.advance(minutes=4, seconds=59))
    assert not manager.in_cooldown(rule, clock.advance(seconds=1))


def test_alert_stats(clock):
    manager = AlertManager(clock=clock)
    manager.add_rule(rule_with())
    for _ in range(2):
        manager.raise_alert("high_error_rate", "High error rate", "spike", Severity.ERROR)
    manager.raise_alert("slow_p95", "Slow p95", "slow", Severity.WARNING)

    stats = manager.get_stats()

    assert stats["total_rules"] == 1
    assert stats["active_alerts"] == 2
    assert stats["alerts_last_24h"] == 3
    assert stats["severity_breakdown"] == {"error": 2, "warning": 1}
    assert stats["top_alert_rules"][0] == {"rule_id": "high_error_rate", "count": 2}


def test_remove_rule(clock):
    manager = AlertManager(clock=clock)
    manager.add_rule(rule_with())
    assert manager.remove_rule("high_error_rate")
    assert not manager.remove_rule("high_error_rate")
    assert manager.list_rules() == []


def test_newer_alert_replaces_active_alert_of_same_rule(clock):
    manager = AlertManager(clock=clock)
    first = manager.raise_alert("high_error_rate", "High error rate", "spike", Severity.ERROR)
    second = manager.raise_alert("high_error_rate", "High error rate", "still spiking", Severity.ERROR)
    other = manager.raise_alert("slow_p95", "Slow p95", "slow", Severity.WARNING)

    assert {a.id for a in manager.get_active_alerts()} == {second.id, other.id}
    assert [a.id for a in manager.get_alert_history()] == [first.id, second.id, other.id]
    assert not manager.resolve_alert(first.id)


def test_resolve_rule_alerts(clock):
    manager = AlertManager(clock=clock)
    alert = manager.raise_alert("high_error_rate", "High error rate", "spike", Severity.ERROR)
    manager.raise_alert("slow_p95", "Slow p95", "slow", Severity.WARNING)

    assert manager.resolve_rule_alerts("high_error_rate") == 1
    assert manager.resolve_rule_alerts("high_error_rate") == 0
    assert alert.resolved
    assert alert.resolved_at == clock.now
    assert [a.rule_id for a in manager.get_active_alerts()] == ["slow_p95"]
