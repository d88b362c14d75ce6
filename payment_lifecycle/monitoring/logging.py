"""
Structured logging configuration.

structlog renders each event as JSON; the stdlib root handler wraps it with
a timestamp, level and logger name so that third-party library records
(SQLAlchemy, stripe, uvicorn) land in the same stream.
"""
import logging
import sys
import time
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payment_lifecycle.config import Settings, get_settings

# Stdlib record attributes emitted by the root handler, and their output names
RECORD_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
RECORD_FIELD_NAMES = {
    "asctime": "@timestamp",
    "levelname": "level",
    "name": "logger",
}


def app_context(settings: Settings) -> Callable[..., dict[str, Any]]:
    """Processor stamping every event with the configured app name and environment."""
    app_name = settings.app_name
    app_env = settings.app_env

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict.setdefault("app_name", app_name)
        event_dict.setdefault("app_env", app_env)
        return event_dict

    return add_app_context


def build_json_formatter() -> logging.Formatter:
    """JSON formatter for stdlib records, ISO-8601 UTC timestamps."""
    formatter = jsonlogger.JsonFormatter(
        RECORD_FORMAT,
        rename_fields=RECORD_FIELD_NAMES,
        datefmt="%Y-%m-%dT%H:%M:%SZ",
    )
    formatter.converter = time.gmtime
    return formatter


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root stdlib handler.

    Safe to call more than once: the root handlers are replaced, not stacked.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            app_context(settings),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_json_formatter())
    root_logger.addHandler(handler)

    logging.getLogger("stripe").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )
