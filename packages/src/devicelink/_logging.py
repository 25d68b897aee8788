"""Structured JSON log formatter and logging configuration.

A devicelink process supervises many device sessions at once, so every
per-device log line must be attributable to its device.  Two pieces
cooperate here:

- :class:`JsonFormatter` emits one JSON object per record (NDJSON) and
  promotes a ``device_id`` attribute, when present on the record, to a
  top-level field so aggregators can filter a single device's history.
- :class:`DeviceLoggerAdapter` stamps ``device_id`` onto records and
  prefixes the message with ``[device_id]`` for the text format.

Each line also carries ``service`` and ``version`` correlation metadata.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from devicelink._settings import LoggingSettings

_ONE_MB = 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects (NDJSON).

    Each record produces a JSON object with these fields:

    - ``timestamp`` — ISO 8601 with timezone (always UTC)
    - ``level`` — Python log level name
    - ``logger`` — dotted logger name
    - ``message`` — the formatted log message
    - ``service`` — application name for log correlation
    - ``version`` — application version (omitted when empty)
    - ``device_id`` — device the record belongs to (only when set)
    - ``exception`` — formatted traceback (only when logged)
    - ``stack_info`` — stack trace (only when ``stack_info=True``)

    Args:
        service: Application name included in every log line.
        version: Application version string.  Omitted from
            output when empty.
    """

    def __init__(
        self,
        *,
        service: str = "",
        version: str = "",
    ) -> None:
        super().__init__()
        self._service = service
        self._version = version

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }

        if self._version:
            entry["version"] = self._version

        device_id = getattr(record, "device_id", None)
        if device_id is not None:
            entry["device_id"] = device_id

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)


class DeviceLoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """Logger adapter scoping records to a single device.

    Usage::

        log = DeviceLoggerAdapter(logger, "dev-1")
        log.info("Session opened")   # -> "[dev-1] Session opened"
    """

    def __init__(self, logger: logging.Logger, device_id: str) -> None:
        super().__init__(logger, {"device_id": device_id})
        self.device_id = device_id

    def process(
        self,
        msg: Any,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("device_id", self.device_id)
        kwargs["extra"] = extra
        return f"[{self.device_id}] {msg}", kwargs


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Configure the root logger from settings.

    Clears any existing handlers on the root logger, then installs a
    ``stderr`` stream handler and, when ``settings.file`` is set, a
    :class:`~logging.handlers.RotatingFileHandler` rotating at
    ``settings.max_file_size_mb`` with ``settings.backup_count``
    generations.

    Args:
        settings: Logging configuration (level, format, file).
        service: Application name passed to :class:`JsonFormatter`.
        version: Application version passed to :class:`JsonFormatter`.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if settings.format == "json":
        formatter: logging.Formatter = JsonFormatter(service=service, version=version)
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.file is not None:
        file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_file_size_mb * _ONE_MB,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(settings.level)
