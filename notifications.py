"""
Notification channels for alerts and rollback events

Concrete delivery (email, chat, paging) belongs to collaborators; this module
provides the channel abstraction, a log channel, a JSON webhook channel and a
dispatcher that bounds every delivery with a timeout.
"""
from typing import Dict, List, Optional, Any, Callable, Awaitable
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import asyncio
import logging

import aiohttp

from logger import get_logger, log_event
from deployment.exceptions import ExternalProbeError
from deployment.models import Severity, utcnow

logger = get_logger(__name__)


@dataclass
class Notification:
    """Message handed to a channel"""
    message: str
    severity: Severity = Severity.INFO
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    def to_payload(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


class NotificationChannel(ABC):
    """Delivery target for notifications"""

    name: str = "channel"

    @abstractmethod
    async def send(self, notification: Notification):
        """Deliver the notification or raise ExternalProbeError"""


class LogChannel(NotificationChannel):
    """Writes notifications to the operational log"""

    name = "log"

    _LEVELS = {
        Severity.INFO: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.ERROR: logging.ERROR,
        Severity.CRITICAL: logging.CRITICAL,
    }

    async def send(self, notification: Notification):
        log_event(
            logger,
            "notification",
            level=self._LEVELS.get(notification.severity, logging.INFO),
            severity=notification.severity,
            message=notification.message
        )


class WebhookChannel(NotificationChannel):
    """POSTs the notification as JSON to a webhook URL"""

    name = "webhook"

    def __init__(self, url: str, timeout_seconds: float = 5.0, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.headers = headers or {}

    async def send(self, notification: Notification):
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=notification.to_payload(), headers=self.headers) as response:
                    if response.status >= 300:
                        raise ExternalProbeError(
                            f"Webhook returned status {response.status}",
                            target=self.url,
                            status_code=response.status
                        )
        except asyncio.TimeoutError as e:
            raise ExternalProbeError(
                f"Webhook timed out after {self.timeout_seconds}s",
                target=self.url,
                original_error=e
            )
        except aiohttp.ClientError as e:
            raise ExternalProbeError(f"Webhook unreachable: {e}", target=self.url, original_error=e)


class CallbackChannel(NotificationChannel):
    """Adapts an async callable (e.g. an email sender) into a channel"""

    def __init__(self, name: str, callback: Callable[[Notification], Awaitable[Any]]):
        self.name = name
        self.callback = callback

    async def send(self, notification: Notification):
        await self.callback(notification)


class NotificationDispatcher:
    """
    Routes notifications to named channels

    Example:
        dispatcher = NotificationDispatcher(timeout_seconds=5)
        dispatcher.register(WebhookChannel("https://hooks.example.com/deploy"))

        await dispatcher.send("Error rate above 5%", Severity.ERROR)
        await dispatcher.send("Rollback complete", channel="webhook")
    """

    def __init__(self, timeout_seconds: float = 5.0, channels: Optional[List[NotificationChannel]] = None):
        self.timeout_seconds = timeout_seconds
        self._channels: Dict[str, NotificationChannel] = {}
        self.sent_count = 0
        self.failed_count = 0

        for channel in channels or [LogChannel()]:
            self.register(channel)

    def register(self, channel: NotificationChannel):
        if channel.name in self._channels:
            logger.warning(f"Overwriting notification channel: {channel.name}")
        self._channels[channel.name] = channel
        logger.info(f"Registered notification channel: {channel.name}")

    def list_channels(self) -> List[str]:
        return list(self._channels.keys())

    async def send(
        self,
        message: str,
        severity: Severity = Severity.INFO,
        channel: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """
        Deliver to one named channel, or to every channel when none is named

        All channels are attempted even when one fails; any failure is then
        raised as a single ExternalProbeError.
        """
        notification = Notification(message=message, severity=severity, metadata=metadata or {})

        if channel is not None:
            if channel not in self._channels:
                raise ExternalProbeError(f"Unknown notification channel: {channel}", target=channel)
            targets = [self._channels[channel]]
        else:
            targets = list(self._channels.values())

        failures = []
        for target in targets:
            try:
                await asyncio.wait_for(target.send(notification), timeout=self.timeout_seconds)
                self.sent_count += 1
            except asyncio.TimeoutError:
                failures.append(f"{target.name}: timed out after {self.timeout_seconds}s")
            except Exception as e:
                failures.append(f"{target.name}: {e}")

        if failures:
            self.failed_count += len(failures)
            logger.error(f"Notification delivery failed: {'; '.join(failures)}")
            raise ExternalProbeError(
                f"Notification delivery failed: {'; '.join(failures)}",
                target=channel
            )
