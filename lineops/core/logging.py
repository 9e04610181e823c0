import logging
import sys

import structlog
from structlog.types import Processor

from .config import settings


_HANDLER_NAME = "lineops"


def configure_logging() -> None:
    """
    Configure structlog for the application.
    - JSON output in production
    - Console output in development
    - Adds timestamp, log_level, service and env to all entries

    Both the API module and the ``python -m lineops`` entry point call this;
    the stdout handler is installed only once.
    """
    # Determine if we're in development
    is_development = settings.app_env == "development"

    # Shared processors for both structlog and stdlib
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer() if is_development else structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=shared_processors,
    )

    root_logger = logging.getLogger()
    handler = next((h for h in root_logger.handlers if h.get_name() == _HANDLER_NAME), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(_HANDLER_NAME)
        root_logger.addHandler(handler)
    handler.setFormatter(formatter)
    root_logger.setLevel(settings.log_level.upper())

    # uvicorn's access log duplicates LoggingMiddleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str, **context) -> structlog.stdlib.BoundLogger:
    """
    Get a logger instance with the given name.
    All logs will include service="lineops" and env by default, plus any
    extra ``context`` (e.g. the stream URL of a StreamClient).

    Usage:
        logger = get_logger(__name__)
        logger.info("cache.status_applied", line_id="line-1")

        stream_logger = get_logger(__name__, stream_url=settings.stream_url)
        stream_logger.info("stream.connected")
    """
    logger = structlog.get_logger(name)
    return logger.bind(service="lineops", env=settings.app_env, **context)
