from __future__ import annotations

import logging
import logging.config
import os
from dataclasses import dataclass
from typing import Any

from pythonjsonlogger import jsonlogger

LOG_FORMATS = ("json", "text")


@dataclass(frozen=True)
class Settings:
    db_path: str
    host: str
    port: int
    admin_username: str | None
    admin_password: str | None
    sweep_enabled: bool
    sweep_interval_seconds: int
    event_queue_size: int
    webhook_timeout_seconds: float
    log_level: str
    log_format: str = "json"

    @property
    def admin_enabled(self) -> bool:
        return bool(self.admin_username and self.admin_password)


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _parse_float(value: str, name: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc


def _parse_bool(value: str, name: str) -> bool:
    candidate = value.strip().lower()
    if candidate in ("1", "true", "yes", "on"):
        return True
    if candidate in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean")


def _parse_optional_str(value: str | None) -> str | None:
    if value is None:
        return None
    candidate = value.strip()
    return candidate or None


def get_settings() -> Settings:
    db_path = os.getenv("DB_PATH", "./data/licenses.db")
    host = os.getenv("HOST", "0.0.0.0")
    port = _parse_int(os.getenv("PORT", "8000"), "PORT")
    admin_username = _parse_optional_str(os.getenv("ADMIN_USERNAME"))
    admin_password = _parse_optional_str(os.getenv("ADMIN_PASSWORD"))
    sweep_enabled = _parse_bool(os.getenv("SWEEP_ENABLED", "true"), "SWEEP_ENABLED")
    sweep_interval_seconds = _parse_int(
        os.getenv("SWEEP_INTERVAL_SECONDS", "900"), "SWEEP_INTERVAL_SECONDS"
    )
    event_queue_size = _parse_int(os.getenv("EVENT_QUEUE_SIZE", "1000"), "EVENT_QUEUE_SIZE")
    webhook_timeout_seconds = _parse_float(
        os.getenv("WEBHOOK_TIMEOUT_SECONDS", "5"), "WEBHOOK_TIMEOUT_SECONDS"
    )
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    log_format = os.getenv("LOG_FORMAT", "json").strip().lower()

    if port < 1 or port > 65535:
        raise ValueError("PORT must be between 1 and 65535")

    if (admin_username is None) != (admin_password is None):
        raise ValueError("ADMIN_USERNAME and ADMIN_PASSWORD must be set together")

    if sweep_interval_seconds < 1:
        raise ValueError("SWEEP_INTERVAL_SECONDS must be >= 1")

    if event_queue_size < 1:
        raise ValueError("EVENT_QUEUE_SIZE must be >= 1")

    if webhook_timeout_seconds <= 0:
        raise ValueError("WEBHOOK_TIMEOUT_SECONDS must be > 0")

    if not isinstance(logging.getLevelName(log_level), int):
        raise ValueError("LOG_LEVEL must be a logging level name")

    if log_format not in LOG_FORMATS:
        raise ValueError("LOG_FORMAT must be json or text")

    return Settings(
        db_path=db_path,
        host=host,
        port=port,
        admin_username=admin_username,
        admin_password=admin_password,
        sweep_enabled=sweep_enabled,
        sweep_interval_seconds=sweep_interval_seconds,
        event_queue_size=event_queue_size,
        webhook_timeout_seconds=webhook_timeout_seconds,
        log_level=log_level,
        log_format=log_format,
    )


def get_logging_config(level: str, log_format: str = "json") -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": jsonlogger.JsonFormatter,
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
            },
            "text": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": log_format,
                "stream": "ext://sys.stderr",
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
    }


def configure_logging(level: str, log_format: str = "json") -> None:
    logging.config.dictConfig(get_logging_config(level, log_format))
