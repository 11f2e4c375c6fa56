"""
Configuration management using Pydantic Settings with safe access wrapper
"""
from pydantic_settings import BaseSettings
from typing import List, Optional, Any


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Deploy Guard"
    version: str = "1.0.0"
    debug: bool = False
    environment: str = "production"

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080

    # Flag state
    flag_state_path: Optional[str] = None
    seed_default_flags: bool = True
    exposed_flags: List[str] = []
    initial_rollout_percentage: int = 5

    # Rollback thresholds
    rollback_error_rate_threshold: float = 5.0
    rollback_response_time_threshold_ms: float = 3000.0
    rollback_lcp_threshold_ms: float = 4000.0
    rollback_cooldown_seconds: float = 900.0

    # Health probes (registered when a base URL is set)
    health_check_base_url: Optional[str] = None
    health_check_interval_seconds: int = 60

    # Metrics aggregation
    metrics_buffer_capacity: int = 1000
    slow_request_threshold_ms: float = 2000.0
    stats_window_minutes: int = 5

    # Control loop ticks
    enable_scheduler: bool = True
    alert_evaluation_interval_seconds: int = 30
    trigger_evaluation_interval_seconds: int = 30
    rollout_check_interval_seconds: int = 15

    # Outbound calls
    action_timeout_seconds: float = 10.0
    health_check_timeout_seconds: float = 10.0
    notification_timeout_seconds: float = 5.0
    notification_webhook_url: Optional[str] = None
    emergency_contacts: List[str] = []

    # Rollback history
    rollback_history_limit: int = 500
    alert_history_limit: int = 500

    # Logging settings
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "deploy_guard.log"
    log_to_file: bool = True
    log_file_max_bytes: int = 10485760
    log_file_backup_count: int = 10

    # Monitoring
    enable_metrics: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"   # allow unknown env vars without error

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.validate_settings()

    def validate_settings(self):
        """Validate control loop settings on startup"""
        errors = []

        if self.environment not in ["development", "testing", "staging", "production"]:
            errors.append(f"Invalid environment: {self.environment}")

        if self.metrics_buffer_capacity <= 0:
            errors.append("metrics_buffer_capacity must be positive")

        if not 0 <= self.initial_rollout_percentage <= 100:
            errors.append("initial_rollout_percentage must be between 0 and 100")

        for name in (
            "alert_evaluation_interval_seconds",
            "trigger_evaluation_interval_seconds",
            "rollout_check_interval_seconds",
            "health_check_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        for name in (
            "action_timeout_seconds",
            "health_check_timeout_seconds",
            "notification_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")


class SafeSettings:
    """Safe wrapper for settings with fallback defaults"""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._defaults = {
            "log_level": "INFO",
            "environment": "production",
            "debug": False,
            "enable_metrics": True,
            "enable_scheduler": True,
            "metrics_buffer_capacity": 1000,
            "slow_request_threshold_ms": 2000.0,
            "alert_evaluation_interval_seconds": 30,
            "trigger_evaluation_interval_seconds": 30,
            "rollout_check_interval_seconds": 15,
            "action_timeout_seconds": 10.0,
            "notification_timeout_seconds": 5.0,
            "exposed_flags": [],
            "emergency_contacts": [],
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Safely get setting value with fallback"""
        value = getattr(self._settings, key, None)
        if value is None:
            value = self._defaults.get(key, default)
        return value

    def __getattr__(self, key: str) -> Any:
        """Proxy attribute access with safety"""
        return self.get(key)

    @property
    def raw(self) -> Settings:
        """Get raw settings object"""
        return self._settings


# Initialize settings with safety wrapper
_raw_settings = Settings()
settings = SafeSettings(_raw_settings)
