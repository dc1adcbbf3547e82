"""Structured logging for stackrun.

Configured at import from ``LOG_LEVEL`` so modules can log before
Settings are loaded.  Entry points then call :func:`configure_level`
with the ``[logging] level`` setting; an explicit ``LOG_LEVEL`` in the
environment still takes precedence.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

LEVEL_ENV_VAR = "LOG_LEVEL"
DEFAULT_LEVEL = logging.INFO


def resolve_level(name: str | None) -> int:
    """Map a level name to its number; unknown or empty names give INFO."""
    if not name:
        return DEFAULT_LEVEL
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else DEFAULT_LEVEL


def configure_level(level: str | None = None) -> int:
    """Set the root level from *level* unless ``LOG_LEVEL`` overrides it.

    Returns the level that was applied.  structlog's ``filter_by_level``
    consults the stdlib logger on every call, so the change takes effect
    for loggers that were already created.
    """
    resolved = resolve_level(os.environ.get(LEVEL_ENV_VAR) or level)
    logging.getLogger().setLevel(resolved)
    return resolved


def _processors(colors: bool) -> list[structlog.types.Processor]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.dev.ConsoleRenderer(colors=colors),
    ]


def _setup_logging() -> structlog.stdlib.BoundLogger:
    # stdlib first: filter_by_level reads the stdlib logger's level
    logging.basicConfig(format="%(message)s", stream=sys.stderr)
    configure_level()

    structlog.configure(
        processors=_processors(colors=sys.stderr.isatty()),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("stackrun")


logger = _setup_logging()
