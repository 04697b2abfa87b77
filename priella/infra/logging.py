"""
Structured logging setup.

structlog renders event-style records (`log.info("ledger_completed",
checkout_request_id=...)`); the stdlib root logger gets a JSON formatter so
uvicorn/sqlalchemy output lands in the same stream.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from .. import config


def _add_service(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    event_dict["service"] = "priella"
    return event_dict


def configure_logging(level: str | None = None, json: bool | None = None):
    level = (level or config.LOG_LEVEL).upper()
    json = config.LOG_JSON if json is None else json

    renderer = (
        structlog.processors.JSONRenderer() if json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _add_service,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if json:
        handler.setFormatter(jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level"},
        ))
    root.addHandler(handler)

    # chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
