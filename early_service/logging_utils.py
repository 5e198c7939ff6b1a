# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Log formatting and handler setup for the service process.

Provides :class:`JsonFormatter`, which renders each record as one line of
JSON including every ``extra`` field (``connection_id``, ``counter``,
``socket_path`` ...), and :func:`configure_logging`, which the CLI uses to
attach a single stderr handler to the ``early_service`` logger tree.

During a handoff two instances log to the same journal, so every JSON line
carries the ``pid`` of the process that wrote it and a UTC timestamp that
sorts across both.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import PurePath
from typing import TextIO

__all__ = ["JsonFormatter", "LogFormat", "configure_logging"]

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Anything on a record that is *not* in this set was injected via ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset(
    {"timestamp", "level", "logger", "pid", "message", "exception", "stack_info"}
)


class LogFormat(StrEnum):
    """Output format for service logs."""

    text = "text"
    json = "json"


def _json_default(value: object) -> object:
    """Encode the non-JSON values the service puts in ``extra``."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, PurePath):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("ascii", errors="replace")
    return str(value)


class JsonFormatter(logging.Formatter):
    """Format records as single-line JSON objects.

    ``timestamp`` (ISO 8601, UTC, millisecond precision), ``level``,
    ``logger``, ``pid`` and ``message`` are always present and win over
    ``extra`` fields of the same name.  Exception and stack information
    appear under ``exception`` and ``stack_info``.  Enums are written as
    their value, bytes as ASCII text, anything else JSON cannot encode
    with ``str``.
    """

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: N802
        """Return the record time as an ISO 8601 UTC string, or *datefmt* when given."""
        created = datetime.fromtimestamp(record.created, tz=UTC)
        if datefmt:
            return created.strftime(datefmt)
        return created.isoformat(timespec="milliseconds")

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        obj: dict[str, object] = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _DEFAULT_RECORD_ATTRS and key not in _RESERVED_KEYS
        }
        obj.update(
            timestamp=self.formatTime(record, self.datefmt),
            level=record.levelname,
            logger=record.name,
            pid=record.process,
            message=record.getMessage(),
        )
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=_json_default)


def configure_logging(
    fmt: LogFormat = LogFormat.text,
    level: int = logging.INFO,
    stream: TextIO | None = None,
) -> logging.Handler:
    """Route ``early_service`` logs to *stream* (stderr by default).

    Replaces any handler installed by a previous call, so it is safe to call
    more than once.

    Returns:
        The installed handler.

    """
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(JsonFormatter() if fmt == LogFormat.json else logging.Formatter(TEXT_FORMAT))
    handler.set_name("early_service")

    logger = logging.getLogger("early_service")
    for existing in list(logger.handlers):
        if existing.get_name() == "early_service":
            logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(level)
    return handler
