"""Structured logging singleton.

Reads os.environ directly: the logger must exist before pydantic Settings
load so that config errors themselves can be logged.

Environment:
    LOG_LEVEL   stdlib level name (default INFO)
    LOG_FORMAT  "console" (default) or "json" for one JSON object per line
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    as_json = os.environ.get("LOG_FORMAT", "console").lower() == "json"

    # stdlib root first so filter_by_level sees the right threshold
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if as_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("tenantbox")


logger = _setup_logging()


def set_level(level_name: str) -> None:
    """Apply the configured level unless LOG_LEVEL already pinned one."""
    if "LOG_LEVEL" in os.environ:
        return
    logging.getLogger().setLevel(getattr(logging, level_name.upper(), logging.INFO))


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
