import logging
import sys

import structlog

from ..config import settings


def setup_logging(level: str | None = None, json_logs: bool | None = None):
    level_name = (level or settings.LOG_LEVEL).upper()
    use_json = settings.LOG_JSON if json_logs is None else json_logs
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # Lock waits show up here at INFO; keep them out of the booking logs.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    structlog.get_logger("slotkeeper").info(
        "logging_initialized", level=level_name, json=use_json
    )
