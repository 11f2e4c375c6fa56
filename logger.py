"""
Logging configuration with rotation and a structured operational event helper
"""
import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Optional
from config import settings

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _file_handlers(log_file: str, formatter: logging.Formatter):
    """Build the rotating main log and the error-only log handlers"""
    log_dir = Path(settings.get('log_dir', 'logs'))
    log_dir.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        log_dir / log_file,
        maxBytes=settings.log_file_max_bytes,
        backupCount=settings.log_file_backup_count
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    error_handler = RotatingFileHandler(
        log_dir / "errors.log",
        maxBytes=settings.log_file_max_bytes,
        backupCount=settings.log_file_backup_count
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    return [file_handler, error_handler]


def get_logger(name: str, log_file: Optional[str] = None) -> logging.Logger:
    """Get configured logger instance with rotation"""
    logger = logging.getLogger(name)

    log_level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    logger.setLevel(log_level)

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console_handler)

    if settings.get('log_to_file', True):
        file_format = logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT)
        for handler in _file_handlers(log_file or settings.get('log_file', 'deploy_guard.log'), file_format):
            logger.addHandler(handler)

    # Operational events are routed through our own handlers only
    logger.propagate = False

    return logger


def _format_value(value: Any) -> str:
    if hasattr(value, "value"):
        value = value.value
    text = str(value)
    if " " in text or "=" in text:
        return f'"{text}"'
    return text


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any):
    """
    Emit a structured operational event

    Renders as ``event key=value ...`` and attaches the raw fields to the
    record as ``event`` / ``event_fields`` so handlers can ship them as JSON.

    Example:
        log_event(logger, "flag.rollout_updated", flag_id="checkout-v2",
                  old=10, new=25, actor="alice")
    """
    rendered = " ".join(
        f"{key}={_format_value(value)}"
        for key, value in fields.items()
        if value is not None
    )
    message = f"{event} {rendered}" if rendered else event
    logger.log(level, message, extra={"event": event, "event_fields": fields})


def configure_root_logger():
    """Configure the root logger for third-party libraries"""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.WARNING)  # Less verbose for third-party

    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        root_logger.addHandler(handler)


# Call this when the application starts
configure_root_logger()
