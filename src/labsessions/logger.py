"""Structured logging singleton.

The first configuration reads LOG_LEVEL / LOG_FORMAT from os.environ so that
config loading errors are logged too. ``configure`` re-applies the values from
Settings once they are available.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _renderer(fmt: str) -> structlog.types.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def _configure_structlog(fmt: str) -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            *([structlog.processors.format_exc_info] if fmt == "json" else []),
            _renderer(fmt),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
    # stdlib root logger backs filter_by_level
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    _configure_structlog(os.environ.get("LOG_FORMAT", "console").lower())
    return structlog.get_logger("labsessions")


logger = _setup_logging()


def configure(level_name: str, fmt: str = "console") -> None:
    """Apply the configured level and output format."""
    logging.getLogger().setLevel(getattr(logging, level_name.upper(), logging.INFO))
    _configure_structlog(fmt)


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
