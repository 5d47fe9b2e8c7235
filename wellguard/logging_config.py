"""Logging setup with structlog for JSON or console output."""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

from wellguard.config import LoggingSettings


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag every entry with the emitting service."""
    event_dict.setdefault("service", "wellguard")
    return event_dict


def setup_logging(settings: Optional[LoggingSettings] = None) -> None:
    """Configure stdlib logging and structlog.

    Args:
        settings: Level and renderer choice.  Defaults to ``LoggingSettings()``.
    """
    settings = settings or LoggingSettings()
    log_level = getattr(logging, settings.level, logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_service_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
