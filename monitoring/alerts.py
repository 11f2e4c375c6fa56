"""
Alert Rules

Keeps alert rules, fired alerts and alert history, and dispatches each
fired rule's ordered actions (log, notify, rollback signal) in the
background so a slow notification never holds up the evaluation tick.
"""
from typing import Dict, List, Optional, Any, Callable, Awaitable, Set
from collections import deque
from datetime import datetime, timedelta
import asyncio
import logging
import uuid

from logger import get_logger, log_event
from metrics import alerts_fired
from deployment.exceptions import ActionExecutionError
from deployment.models import (
    AlertAction,
    AlertActionKind,
    AlertNotification,
    AlertRule,
    Severity,
    Stats,
    utcnow,
)

logger = get_logger(__name__)

RollbackSignalHandler = Callable[[str, str], Awaitable[Optional[str]]]

_SEVERITY_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class AlertManager:
    """
    Alert rule registry and alert dispatcher

    Features:
    - Threshold rules over rolling stats with per-rule cooldown
    - Active alerts with manual resolution
    - Bounded alert history and 24h statistics
    - Background, timeout-bounded action dispatch

    Example:
        manager = AlertManager(notifier=dispatcher)
        manager.add_rule(AlertRule(
            id="high-error-rate",
            name="High error rate",
            metric=AlertMetric.ERROR_RATE,
            operator=ComparisonOperator.GT,
            threshold=5,
            actions=[AlertAction(AlertActionKind.NOTIFY)]
        ))
    """

    def __init__(
        self,
        notifier=None,
        action_timeout_seconds: float = 10.0,
        history_limit: int = 500,
        clock: Callable[[], datetime] = utcnow
    ):
        self.notifier = notifier
        self.action_timeout_seconds = action_timeout_seconds
        self.clock = clock
        self.rollback_signal_handler: Optional[RollbackSignalHandler] = None

        self._rules: Dict[str, AlertRule] = {}
        self._active: Dict[str, AlertNotification] = {}
        self._history: deque = deque(maxlen=history_limit)
        self._tasks: Set[asyncio.Task] = set()

    # Rules

    def add_rule(self, rule: AlertRule):
        self._rules[rule.id] = rule
        logger.info(f"Alert rule added: {rule.name} ({rule.id})")

    def remove_rule(self, rule_id: str) -> bool:
        removed = self._rules.pop(rule_id, None) is not None
        if removed:
            logger.info(f"Alert rule removed: {rule_id}")
        return removed

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        return self._rules.get(rule_id)

    def list_rules(self) -> List[AlertRule]:
        return list(self._rules.values())

    def in_cooldown(self, rule: AlertRule, now: datetime) -> bool:
        if rule.last_fired_at is None or rule.cooldown_minutes <= 0:
            return False
        return now < rule.last_fired_at + timedelta(minutes=rule.cooldown_minutes)

    def check_rule(self, rule: AlertRule, stats: Stats, now: datetime) -> Optional[AlertNotification]:
        """Fire the rule if its metric crosses the threshold"""
        value = rule.metric.read(stats)
        if not rule.operator.compare(value, rule.threshold):
            return None

        rule.last_fired_at = now
        alert = self.raise_alert(
            rule_id=rule.id,
            rule_name=rule.name,
            message=(
                f"{rule.name}: {rule.metric.value} is {value:.2f} "
                f"({rule.operator.value} {rule.threshold}) over {rule.window_minutes}m"
            ),
            severity=rule.severity,
            metadata={
                "metric": rule.metric.value,
                "value": value,
                "threshold": rule.threshold,
                "window_minutes": rule.window_minutes,
                "request_count": stats.request_count,
            },
            timestamp=now
        )
        self._spawn(self._dispatch_actions(rule, alert))
        return alert

    # Alerts

    def raise_alert(
        self,
        rule_id: str,
        rule_name: str,
        message: str,
        severity: Severity,
        source: str = "rule",
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> AlertNotification:
        """
        Record a fired alert

        At most one alert per ``rule_id`` stays active: a newer alert
        replaces the previous one, which remains in the history.
        """
        for previous in [a for a in self._active.values() if a.rule_id == rule_id]:
            del self._active[previous.id]

        alert = AlertNotification(
            id=str(uuid.uuid4()),
            rule_id=rule_id,
            rule_name=rule_name,
            message=message,
            severity=severity,
            source=source,
            timestamp=timestamp or self.clock(),
            metadata=metadata or {}
        )
        self._active[alert.id] = alert
        self._history.append(alert)

        alerts_fired.labels(rule_id, severity.value).inc()
        log_event(
            logger,
            "alert.fired",
            level=_SEVERITY_LEVELS.get(severity, logging.WARNING),
            rule_id=rule_id,
            severity=severity,
            source=source,
            message=message
        )
        return alert

    def resolve_alert(self, alert_id: str) -> bool:
        alert = self._active.pop(alert_id, None)
        if alert is None:
            return False

        alert.resolved = True
        alert.resolved_at = self.clock()
        logger.info(f"Alert resolved: {alert.rule_name} ({alert_id})")
        return True

    def resolve_rule_alerts(self, rule_id: str) -> int:
        """Resolve the active alerts of a rule; returns how many were resolved"""
        alert_ids = [a.id for a in self._active.values() if a.rule_id == rule_id]
        for alert_id in alert_ids:
            self.resolve_alert(alert_id)
        return len(alert_ids)

    def get_active_alerts(self) -> List[AlertNotification]:
        return list(self._active.values())

    def get_alert_history(self, limit: int = 100) -> List[AlertNotification]:
        return list(self._history)[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        last_24h = self.clock() - timedelta(hours=24)
        recent = [a for a in self._history if a.timestamp > last_24h]

        severity_counts: Dict[str, int] = {}
        rule_counts: Dict[str, int] = {}
        for alert in recent:
            severity_counts[alert.severity.value] = severity_counts.get(alert.severity.value, 0) + 1
            rule_counts[alert.rule_id] = rule_counts.get(alert.rule_id, 0) + 1

        top_rules = sorted(rule_counts.items(), key=lambda item: item[1], reverse=True)[:5]

        return {
            "total_rules": len(self._rules),
            "active_alerts": len(self._active),
            "alerts_last_24h": len(recent),
            "severity_breakdown": severity_counts,
            "top_alert_rules": [{"rule_id": r, "count": c} for r, c in top_rules],
        }

    # Dispatch

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self):
        """Wait for in-flight action dispatches (tests and shutdown)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _dispatch_actions(self, rule: AlertRule, alert: AlertNotification):
        """Run the rule's actions in order; a failing action is logged and skipped"""
        for action in rule.actions:
            try:
                await asyncio.wait_for(
                    self._run_action(rule, alert, action),
                    timeout=self.action_timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.error(
                    f"Alert action {action.kind.value} for rule {rule.id} timed out "
                    f"after {self.action_timeout_seconds}s"
                )
            except Exception as e:
                logger.error(f"Alert action {action.kind.value} for rule {rule.id} failed: {e}")

    async def _run_action(self, rule: AlertRule, alert: AlertNotification, action: AlertAction):
        kind = action.kind

        if kind is AlertActionKind.LOG:
            logger.log(
                _SEVERITY_LEVELS.get(rule.severity, logging.WARNING),
                action.message or alert.message
            )
            return

        if kind is AlertActionKind.NOTIFY:
            if self.notifier is None:
                raise ActionExecutionError("No notifier configured", action_kind=kind.value)
            await self.notifier.send(
                action.message or alert.message,
                severity=rule.severity,
                channel=action.channel,
                metadata={"alert_id": alert.id, "rule_id": rule.id, **alert.metadata}
            )
            return

        if kind is AlertActionKind.ROLLBACK_SIGNAL:
            if not action.trigger_id:
                logger.warning(f"Rollback signal on rule {rule.id} names no trigger, skipping")
                return
            if self.rollback_signal_handler is None:
                logger.warning(f"No rollback handler wired, ignoring signal from rule {rule.id}")
                return
            await self.rollback_signal_handler(action.trigger_id, alert.message)
            return

        logger.warning(f"Unsupported alert action kind {kind}, skipping")
