# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Logging setup helpers and a JSON formatter for structured output.

Provides :class:`GrpcJsonFormatter`, a :class:`logging.Formatter` subclass
that serializes log records as single-line JSON objects.  All ``extra``
fields attached to a record are included automatically.

``configure_logging()`` attaches a stderr handler to the ``dyngrpc``
logger hierarchy; the CLI calls it, library users normally configure
logging themselves.

This module is **not** auto-imported by ``dyngrpc``; import it explicitly::

    from dyngrpc.logging_utils import GrpcJsonFormatter
"""

from __future__ import annotations

import json
import logging
import sys
from typing import TextIO

__all__ = ["GrpcJsonFormatter", "configure_logging"]

# Every attribute a LogRecord has by default; anything else came from ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger", "message", "exception", "stack_info"})

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class GrpcJsonFormatter(logging.Formatter):
    """JSON formatter that emits all structured extra fields.

    Standard fields (``timestamp``, ``level``, ``logger``, ``message``) are
    always present and cannot be overwritten by extra fields with the same
    name.  Exception information goes under ``"exception"``.  Values that
    are not JSON-serializable are coerced with ``str``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            **{k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS and k not in _RESERVED_KEYS},
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)


def configure_logging(
    *,
    verbose: bool = False,
    json_format: bool = False,
    stream: TextIO | None = None,
) -> logging.Handler:
    """Route ``dyngrpc`` log records to *stream* (stderr by default).

    Args:
        verbose: Log at DEBUG instead of WARNING.
        json_format: Use :class:`GrpcJsonFormatter` instead of plain text.
        stream: Destination; ``sys.stderr`` when ``None``.

    Returns:
        The installed handler, so callers can remove it again.

    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(GrpcJsonFormatter() if json_format else logging.Formatter(_TEXT_FORMAT))
    logger = logging.getLogger("dyngrpc")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    return handler
