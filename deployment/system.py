"""
Deployment Safety System

Owns one instance of every control loop component, seeds the default
configuration and drives the periodic ticks (alert rules, rollback triggers,
rollout due-check, health probes) with an APScheduler AsyncIOScheduler.
"""
from typing import Dict, Optional, Any, Callable
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings as default_settings
from logger import get_logger
from notifications import NotificationDispatcher, WebhookChannel
from deployment.defaults import (
    default_alert_rules,
    default_flags,
    default_health_checks,
    default_rollout_steps,
    default_triggers,
)
from deployment.feature_flags import FeatureFlagEngine
from deployment.flag_store import FlagStore
from deployment.models import utcnow
from deployment.rollback import RollbackController
from monitoring.aggregator import MetricsAggregator
from monitoring.health import HttpProbeClient

logger = get_logger(__name__)


class DeploymentSafetySystem:
    """
    Composition root of the deployment control loop

    Features:
    - Builds flag engine, aggregator, rollback controller and notifier
    - Restores flag state and seeds the default homepage configuration
    - Schedules alert, trigger, rollout and health check ticks
    - Dashboard snapshot for the monitoring endpoint

    Example:
        system = DeploymentSafetySystem()
        await system.start()

        system.engine.is_enabled("dual_audience_homepage", context)
        snapshot = system.dashboard_snapshot()

        await system.shutdown()
    """

    def __init__(
        self,
        settings=None,
        probe_client: Optional[HttpProbeClient] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.settings = settings or default_settings
        cfg = self.settings

        # Notifications
        self.notifier = NotificationDispatcher(timeout_seconds=cfg.notification_timeout_seconds)
        if cfg.notification_webhook_url:
            self.notifier.register(WebhookChannel(
                cfg.notification_webhook_url,
                timeout_seconds=cfg.notification_timeout_seconds
            ))

        # Flags
        self.store = FlagStore(state_path=cfg.flag_state_path)
        self.engine = FeatureFlagEngine(self.store, clock=clock)

        # Monitoring
        self.aggregator = MetricsAggregator(
            capacity=cfg.metrics_buffer_capacity,
            slow_threshold_ms=cfg.slow_request_threshold_ms,
            notifier=self.notifier,
            probe_client=probe_client,
            action_timeout_seconds=cfg.action_timeout_seconds,
            clock=clock,
            history_limit=cfg.alert_history_limit
        )

        # Rollback
        self.controller = RollbackController(
            engine=self.engine,
            aggregator=self.aggregator,
            notifier=self.notifier,
            action_timeout_seconds=cfg.action_timeout_seconds,
            clock=clock,
            history_limit=cfg.rollback_history_limit
        )
        self.aggregator.alerts.rollback_signal_handler = self.controller.handle_rollback_signal

        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

        self._seed()

    def _seed(self):
        """Seed flags, plans, triggers, alert rules and health checks"""
        cfg = self.settings

        if cfg.seed_default_flags:
            for flag in default_flags(cfg.initial_rollout_percentage):
                if not self.store.has_flag(flag.id):
                    self.engine.register_flag(flag)
                if self.store.get_plan(flag.id) is None:
                    self.engine.configure_rollout_plan(flag.id, default_rollout_steps(), actor="system")

        # Restored flags still need their gauges
        for flag in self.store.list_flags():
            self.engine.register_flag(flag)

        for trigger in default_triggers(
            error_rate_threshold=cfg.rollback_error_rate_threshold,
            response_time_threshold_ms=cfg.rollback_response_time_threshold_ms,
            lcp_threshold_ms=cfg.rollback_lcp_threshold_ms,
            cooldown_seconds=cfg.rollback_cooldown_seconds,
            emergency_contacts=cfg.emergency_contacts
        ):
            self.controller.add_trigger(trigger)

        for rule in default_alert_rules(
            error_rate_threshold=cfg.rollback_error_rate_threshold,
            lcp_threshold_ms=cfg.rollback_lcp_threshold_ms
        ):
            self.aggregator.add_rule(rule)

        if cfg.health_check_base_url:
            for check in default_health_checks(
                cfg.health_check_base_url,
                timeout_seconds=cfg.health_check_timeout_seconds,
                interval_seconds=cfg.health_check_interval_seconds
            ):
                self.aggregator.register_health_check(check)

        logger.info(
            f"Deployment safety system ready: {len(self.store.list_flags())} flags, "
            f"{len(self.controller.list_triggers())} rollback triggers, "
            f"{len(self.aggregator.list_rules())} alert rules, "
            f"{len(self.aggregator.list_health_checks())} health checks"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start the periodic ticks"""
        if self._running:
            logger.warning("Deployment safety system already running")
            return

        # Catch up on rollout steps that came due while the process was down
        resumed = self.engine.advance_due_rollouts()
        if resumed:
            logger.info(f"Resumed gradual rollouts after restart: {', '.join(resumed)}")

        if not self.settings.enable_scheduler:
            logger.info("Scheduler disabled, control loop ticks will not run")
            self._running = True
            return

        cfg = self.settings
        self.scheduler = AsyncIOScheduler()

        self.scheduler.add_job(
            self._alert_tick,
            trigger=IntervalTrigger(seconds=cfg.alert_evaluation_interval_seconds),
            id='evaluate_alert_rules',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.add_job(
            self._trigger_tick,
            trigger=IntervalTrigger(seconds=cfg.trigger_evaluation_interval_seconds),
            id='evaluate_rollback_triggers',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.add_job(
            self._rollout_tick,
            trigger=IntervalTrigger(seconds=cfg.rollout_check_interval_seconds),
            id='advance_due_rollouts',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        for check in self.aggregator.list_health_checks():
            if not check.enabled:
                continue
            self.scheduler.add_job(
                self.aggregator.run_health_check,
                trigger=IntervalTrigger(seconds=check.interval_seconds),
                args=[check],
                id=f'health_check_{check.name}',
                replace_existing=True,
                max_instances=1,
                coalesce=True
            )

        self.scheduler.start()
        self._running = True

        logger.info(
            f"Control loop started (alerts every {cfg.alert_evaluation_interval_seconds}s, "
            f"triggers every {cfg.trigger_evaluation_interval_seconds}s, "
            f"rollouts every {cfg.rollout_check_interval_seconds}s)"
        )

    async def shutdown(self):
        """Stop the ticks and wait for in-flight actions"""
        logger.info("Shutting down deployment safety system...")

        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        await self.aggregator.drain()
        await self.controller.drain()
        self.store.save()

        self._running = False
        logger.info("Deployment safety system shut down")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _alert_tick(self):
        try:
            await self.aggregator.evaluate_alert_rules()
        except Exception as e:
            logger.error(f"Alert tick failed: {e}")

    async def _trigger_tick(self):
        try:
            await self.controller.evaluate_triggers()
        except Exception as e:
            logger.error(f"Rollback trigger tick failed: {e}")

    async def _rollout_tick(self):
        try:
            self.engine.advance_due_rollouts()
        except Exception as e:
            logger.error(f"Rollout due-check failed: {e}")

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def dashboard_snapshot(self) -> Dict[str, Any]:
        """Everything the monitoring dashboard shows, in one payload"""
        stats = self.aggregator.compute_stats(self.settings.stats_window_minutes)

        return {
            "environment": self.settings.environment,
            "timestamp": utcnow().isoformat(),
            "scheduler_running": self.scheduler is not None and self._running,
            "monitoring": self.aggregator.get_monitoring_status(),
            "performance": stats.to_dict(),
            "rollout": self.engine.get_rollout_stats(),
            "rollback": self.controller.get_rollback_stats(),
            "recent_rollbacks": [e.to_dict() for e in self.controller.get_history(limit=10)],
            "triggers": [t.to_dict() for t in self.controller.list_triggers()],
            "feature_flags": [f.to_dict() for f in self.engine.list_flags()],
            "rollout_plans": [p.to_dict() for p in self.store.list_plans()],
        }
