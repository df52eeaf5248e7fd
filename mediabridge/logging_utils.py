"""Logging configuration helpers with structured output."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Any

from .config import AppConfig
from .secrets import redact, secret_value

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}
_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default")


class JsonFormatter(logging.Formatter):
    """JSON line formatter; ``extra=`` fields are merged into the payload."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "event": getattr(record, "event", record.funcName),
            "environment": getattr(record, "environment", "unknown"),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in payload or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextFilter(logging.Filter):
    """Stamps the environment on every record and masks configured secrets."""

    def __init__(self, environment: str, secrets: tuple[str, ...] = ()) -> None:
        super().__init__()
        self._environment = environment
        self._secrets = secrets

    def filter(self, record: logging.LogRecord) -> bool:
        record.environment = self._environment
        record.event = getattr(record, "event", record.funcName)
        if self._secrets:
            message = record.getMessage()
            masked = redact(message, *self._secrets)
            if masked != message:
                record.msg, record.args = masked, ()
        return True


def configure_logging(config: AppConfig, *, level: int | None = None) -> None:
    """Configure structured logging with both console and rotating file outputs."""
    root = logging.getLogger()
    if level is None:
        level = logging.INFO if config.environment != "development" else logging.DEBUG
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    token = secret_value(config.telegram_token)
    context_filter = ContextFilter(config.environment, (token,) if token else ())

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    console_handler.addFilter(context_filter)
    root.addHandler(console_handler)

    config.log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = TimedRotatingFileHandler(
        filename=str(config.log_path),
        when="midnight",
        backupCount=14,
        utc=True,
        encoding="utf-8",
    )
    file_handler.setFormatter(JsonFormatter())
    file_handler.addFilter(context_filter)
    root.addHandler(file_handler)

    # httpx logs every long-poll request at INFO.
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
