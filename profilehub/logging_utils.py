"""Structured logging utility shared by the domain services."""

from __future__ import annotations

import logging
from typing import Any


def structured_log(
    logger: logging.Logger,
    level: str,
    event: str,
    /,
    **fields: Any,
) -> None:
    """Emit a structured log entry.

    The event name is passed as the log message. JsonLogFormatter extracts it
    via record.getMessage() when no explicit 'event' key exists in extra, so
    it is not duplicated into the fields.

    Usage:
        structured_log(logger, "info", "collector.run_started", collector="bdtd", run_id=3)
    """
    log_method = getattr(logger, level.lower())
    log_method(event, extra=fields)
