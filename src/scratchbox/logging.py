"""Logging configuration for Scratchbox.

Supports two formats:
- text: Human-readable for local runs
- json: Structured logging for CI log collection
"""

import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import json as jsonlogger

from scratchbox.config import LoggingConfig


# extra fields that identify "the same thing happening again"
RATE_LIMIT_FIELDS = ("event", "container", "status", "command")

_CONTAINER_ID_LENGTH = 64


def _is_container_id(value: str) -> bool:
    return len(value) == _CONTAINER_ID_LENGTH and all(c in "0123456789abcdef" for c in value)


class RateLimitFilter(logging.Filter):
    """Drops repeats of the same event for the same container.

    Readiness polling and ``wait_until`` retries emit one record per cycle
    for as long as a service takes to come up. Records carrying an ``event``
    extra are keyed on RATE_LIMIT_FIELDS, so a status change or a different
    command always passes; other records are keyed on their message.

    Args:
        rate_limit_seconds: Minimum seconds between repeats (default: 5)
        max_cache_size: Maximum number of keys to track (default: 1000)
    """

    def __init__(
        self,
        rate_limit_seconds: float = 5.0,
        max_cache_size: int = 1000,
        name: str = "",
    ) -> None:
        super().__init__(name)
        self._rate_limit = rate_limit_seconds
        self._max_cache = max_cache_size
        self._last_log: dict[tuple, float] = {}

    @staticmethod
    def key(record: logging.LogRecord) -> tuple:
        if getattr(record, "event", None) is None:
            return (record.name, record.lineno, record.getMessage())
        return tuple(str(getattr(record, field, "")) for field in RATE_LIMIT_FIELDS)

    def filter(self, record: logging.LogRecord) -> bool:
        # WARNING and above always pass through
        if record.levelno >= logging.WARNING:
            return True

        key = self.key(record)
        now = time.monotonic()
        last_time = self._last_log.get(key)
        if last_time is not None and now - last_time < self._rate_limit:
            return False

        self._last_log[key] = now
        if len(self._last_log) > self._max_cache:
            oldest_keys = sorted(self._last_log, key=self._last_log.get)[:100]  # type: ignore[arg-type]
            for old_key in oldest_keys:
                del self._last_log[old_key]
        return True


class ScratchboxJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter for CI log collection.

    Every line carries ``event`` and ``container`` so one instance's
    provisioning can be followed with a single query. ``event`` is the
    LogEvent value, or ``"log"`` for records without one. A full container
    ID is shortened to the 12-character form the engine prints, the full ID
    moving to ``container_id``.
    """

    def __init__(self, config: LoggingConfig, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._service = config.service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = self._service

        event = getattr(record, "event", None)
        log_record["event"] = str(event) if event is not None else "log"

        container = getattr(record, "container", None)
        if container is not None and _is_container_id(str(container)):
            log_record.setdefault("container_id", container)
            container = container[:12]
        log_record["container"] = container

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


def setup_logging(config: LoggingConfig) -> None:
    """Configure the ``scratchbox`` logger hierarchy.

    Only the library's own logger is touched so that the test runner keeps
    control of the root logger.

    Args:
        config: Logging configuration settings.
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    if config.format == "json":
        formatter: logging.Formatter = ScratchboxJsonFormatter(config)
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.addFilter(RateLimitFilter(rate_limit_seconds=5.0))

    lib_logger = logging.getLogger("scratchbox")
    lib_logger.handlers.clear()
    lib_logger.addHandler(handler)
    lib_logger.setLevel(level)
    lib_logger.propagate = False

    # Suppress verbose HTTP client logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
