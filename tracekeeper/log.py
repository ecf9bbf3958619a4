"""structlog setup on top of stdlib logging handlers."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import structlog

LOG_LEVEL_ENV = "TRACEKEEPER_LOG_LEVEL"

_LEVEL_MAP = {
    "VERBOSE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "NONE": logging.CRITICAL + 10,
}


def resolve_level(level: str | None = None) -> int:
    """Map a level name to a logging level, falling back to the env var, then INFO."""
    name = level or os.getenv(LOG_LEVEL_ENV) or "INFO"
    return _LEVEL_MAP.get(name.upper(), logging.INFO)


def configure_logging(
    level: str | None = None,
    json_format: bool = False,
    log_file: Path | None = None
) -> None:
    """Configure structlog to render through stdlib logging.

    Args:
        level: Level name; VERBOSE folds into DEBUG and NONE silences output
        json_format: Render JSON lines instead of the console format
        log_file: Optional file to append to in addition to stderr
    """
    default_level = resolve_level(level)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", key="timestamp"),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        # structlog only knows levels up to CRITICAL; NONE is enforced by the handlers.
        wrapper_class=structlog.make_filtering_bound_logger(min(default_level, logging.CRITICAL)),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            pad_event_to=0,
        )
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(default_level)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode="a"))

    for handler in handlers:
        handler.setLevel(default_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Lazy logger; binds to whatever configure_logging set up at first use."""
    if name:
        return structlog.get_logger(name)  # type: ignore[no-any-return]
    return structlog.get_logger()  # type: ignore[no-any-return]
