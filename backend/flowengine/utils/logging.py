# /flowengine/utils/logging.py

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from flowengine.config.settings import settings

# Loggers of client libraries that report every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "google_genai")


def setup_logging(level: str | None = None):
    """
    Route structlog and stdlib logging through one handler. Events carry the
    conversation/flow keys bound by `flow_log_context`, rendered as JSON
    outside development.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.environment == "development":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared_processors))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def flow_log_context(**values: Any) -> Iterator[None]:
    """Bind keys such as conversation_id / flow to every log event of one run."""
    tokens = structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
