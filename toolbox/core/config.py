"""Глобальные константы и настройки toolbox."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("toolbox.core.config")

PROTOCOL_VERSION = "2024-11-05"

APP_ENV = os.getenv("APP_ENV", "production").strip().lower()
IS_DEVELOPMENT = APP_ENV == "development"
PORT = int(os.getenv("PORT", "3000"))

DEFAULT_HEARTBEAT_INTERVAL = 1.0
DEFAULT_NEGOTIATION_ATTEMPTS = 10
DEFAULT_NEGOTIATION_DELAY = 0.1
DEFAULT_REQUEST_TIMEOUT = 10.0
# Максимальная длина одной JSON-строки stdio-транспорта.
DEFAULT_STDIO_LINE_LIMIT = 32 * 1024 * 1024


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Некорректное значение %s=%r, используем %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Значение %s должно быть положительным (%r), используем %s", name, raw, default)
        return default
    return value


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        logger.warning("Некорректное значение %s=%r, используем %s", name, raw, default)
        return default


@dataclass(slots=True)
class SessionSettings:
    """Тайминги сессии (heartbeat, согласование, ожидание ответов пира) и лимит строки stdio."""

    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    negotiation_attempts: int = DEFAULT_NEGOTIATION_ATTEMPTS
    negotiation_delay: float = DEFAULT_NEGOTIATION_DELAY
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    stdio_line_limit: int = DEFAULT_STDIO_LINE_LIMIT

    @classmethod
    def from_env(cls) -> "SessionSettings":
        return cls(
            heartbeat_interval=_get_float("TOOLBOX_HEARTBEAT_INTERVAL", DEFAULT_HEARTBEAT_INTERVAL),
            negotiation_attempts=_get_int("TOOLBOX_NEGOTIATION_ATTEMPTS", DEFAULT_NEGOTIATION_ATTEMPTS),
            negotiation_delay=_get_float("TOOLBOX_NEGOTIATION_DELAY", DEFAULT_NEGOTIATION_DELAY),
            request_timeout=_get_float("TOOLBOX_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            stdio_line_limit=_get_int("TOOLBOX_STDIO_LINE_LIMIT", DEFAULT_STDIO_LINE_LIMIT),
        )


SESSION_SETTINGS: Optional[SessionSettings] = None


def get_session_settings() -> SessionSettings:
    """Лениво читает настройки из окружения один раз на процесс."""
    global SESSION_SETTINGS
    if SESSION_SETTINGS is None:
        SESSION_SETTINGS = SessionSettings.from_env()
    return SESSION_SETTINGS


__all__ = [
    "APP_ENV",
    "DEFAULT_STDIO_LINE_LIMIT",
    "IS_DEVELOPMENT",
    "PORT",
    "PROTOCOL_VERSION",
    "SessionSettings",
    "get_session_settings",
]
