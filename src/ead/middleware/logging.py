"""structlog setup shared by the API process and the reconciliation worker."""

import logging

import structlog

from ead.config import Settings


def setup_logging(settings: Settings) -> None:
    """Render structlog events as JSON (``EAD_LOG_FORMAT=json``) or for the console.

    Request ids bound by RequestIdMiddleware are merged into every event.
    The gamification services log through stdlib loggers, which share the
    configured level.
    """
    if settings.log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = logging.getLevelName(settings.log_level.upper())
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
