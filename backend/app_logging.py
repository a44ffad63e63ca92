"""
app_logging.py - structlog configuration.

Logs go to stderr; uvicorn's access log keeps stdout.
"""
import logging
import sys
from typing import Any, Optional

import structlog

_LOG_LEVELS = {
    "debug":    logging.DEBUG,
    "info":     logging.INFO,
    "warning":  logging.WARNING,
    "error":    logging.ERROR,
    "critical": logging.CRITICAL,
}


class _LazyStderrFactory:
    """Resolve sys.stderr when a logger is created, not at configure() time.

    Test runners swap sys.stderr between tests; a handle captured once
    would point at a closed stream.
    """

    def __call__(self, *args: Any, **kwargs: Any) -> structlog.PrintLogger:
        return structlog.PrintLogger(file=sys.stderr)


def setup_logging(level: str = "info") -> None:
    """Configure structlog for the API process.

    Unknown level names fall back to INFO.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LOG_LEVELS.get(level.lower(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=_LazyStderrFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: Optional[str] = None) -> Any:
    """Return a structlog logger, optionally bound with a name."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger=name)
    return logger
