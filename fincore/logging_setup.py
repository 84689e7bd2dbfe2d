"""
Structured logging for the financial core.

Every module logs through ``structlog.get_logger(__name__)``. Applications
call :func:`configure_logging` once at startup; library code never configures
logging on import.
"""

from __future__ import annotations

import logging

import structlog

from fincore.settings import get_log_format

_configured = False


def configure_logging(level: int = logging.INFO, log_format: str | None = None) -> None:
    """Configure structlog on top of the stdlib logging module.

    Args:
        level: Minimum stdlib level to emit.
        log_format: ``"json"`` or ``"console"``. Defaults to ``LOG_FORMAT``.
    """
    global _configured
    if _configured:
        return

    renderer_name = log_format or get_log_format()
    renderer = (
        structlog.processors.JSONRenderer()
        if renderer_name == "json"
        else structlog.dev.ConsoleRenderer()
    )

    logging.basicConfig(format="%(message)s", level=level)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    _configured = True
