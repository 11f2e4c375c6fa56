"""
Test suite for notification channels and dispatch
"""
import asyncio

import pytest

from deployment.exceptions import ExternalProbeError
from deployment.models import Severity
from notifications import CallbackChannel, LogChannel, Notification, NotificationDispatcher


def recording_channel(name, sink):
    async def callback(notification):
        sink.append((name, notification))
    return CallbackChannel(name, callback)


@pytest.mark.asyncio
async def test_send_to_every_channel():
    sink = []
    dispatcher = NotificationDispatcher(channels=[recording_channel("email", sink), recording_channel("slack", sink)])

    await dispatcher.send("Error rate above 5%", Severity.ERROR, metadata={"rule_id": "high_error_rate"})

    assert [name for name, _ in sink] == ["email", "slack"]
    notification = sink[0][1]
    assert notification.severity == Severity.ERROR
    assert notification.metadata == {"rule_id": "high_error_rate"}
    assert dispatcher.sent_count == 2


@pytest.mark.asyncio
async def test_send_to_named_channel():
    sink = []
    dispatcher = NotificationDispatcher(channels=[recording_channel("email", sink), recording_channel("slack", sink)])

    await dispatcher.send("Rollback complete", channel="slack")

    assert [name for name, _ in sink] == ["slack"]


@pytest.mark.asyncio
async def test_unknown_channel_raises():
    dispatcher = NotificationDispatcher()
    with pytest.raises(ExternalProbeError):
        await dispatcher.send("hello", channel="pager")


@pytest.mark.asyncio
async def test_failure_is_raised_after_all_channels_tried():
    sink = []

    async def broken(notification):
        raise RuntimeError("smtp refused")

    dispatcher = NotificationDispatcher(channels=[CallbackChannel("email", broken), recording_channel("slack", sink)])

    with pytest.raises(ExternalProbeError) as exc_info:
        await dispatcher.send("Error rate above 5%")

    assert "smtp refused" in str(exc_info.value)
    assert len(sink) == 1
    assert dispatcher.failed_count == 1


@pytest.mark.asyncio
async def test_slow_channel_times_out():
    async def slow(notification):
        await asyncio.sleep(5)

    dispatcher = NotificationDispatcher(timeout_seconds=0.05, channels=[CallbackChannel("slow", slow)])

    with pytest.raises(ExternalProbeError) as exc_info:
        await asyncio.wait_for(dispatcher.send("hello"), timeout=2)

    assert "timed out" in str(exc_info.value)


@pytest.mark.asyncio
async def test_log_channel_is_the_default():
    dispatcher = NotificationDispatcher()
    assert dispatcher.list_channels() == ["log"]
    await LogChannel().send(Notification("deploy finished", Severity.INFO))


def test_notification_payload():
    payload = Notification("Rollback started", Severity.CRITICAL, {"event_id": "e1"}).to_payload()
    assert payload["severity"] == "critical"
    assert payload["metadata"] == {"event_id": "e1"}
    assert "timestamp" in payload
