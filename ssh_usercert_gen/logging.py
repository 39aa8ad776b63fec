"""Centralized logging configuration for the certificate service."""

import json
import logging
import os
from datetime import datetime
from typing import Any

import structlog

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# Both echo bind requests or hash comparisons at DEBUG
QUIET_LOGGERS = ("ldap3", "passlib")

# Event keys whose values never reach the output
REDACTED_KEYS = frozenset({"password", "secret", "authorization", "credential"})


class JSONFormatter(logging.Formatter):
    """JSON formatter for stdlib records that bypass structlog (uvicorn)."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "event": record.getMessage(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "timestamp": self.formatTime(record, self.datefmt),
        }

        # Tracebacks only, never locals
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: N802
        dt = datetime.fromtimestamp(record.created)
        return dt.isoformat() + "Z"


def redact_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor masking any secret-bearing key on an event."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def get_log_level(debug: bool = False) -> int:
    """``--debug`` wins; otherwise ``LOG_LEVEL`` (default INFO)."""
    if debug:
        return logging.DEBUG
    return getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)


def configure_logging(debug: bool = False) -> None:
    """Configure structured logging for the entire application."""
    log_level = get_log_level(debug)

    # stdlib root handler renders whatever structlog hands it as JSON
    json_formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
    )
    handler = logging.StreamHandler()
    handler.setFormatter(json_formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            # Rendering happens in the stdlib formatter above
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    uvicorn_handler = logging.StreamHandler()
    uvicorn_handler.setFormatter(JSONFormatter())
    for logger_name in UVICORN_LOGGERS:
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.addHandler(uvicorn_handler)
        logger.setLevel(log_level)
        logger.propagate = False

    for logger_name in QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_uvicorn_log_config(debug: bool = False) -> dict:
    """Uvicorn dictConfig that keeps its loggers on the same JSON output."""
    level = logging.getLevelName(get_log_level(debug))
    return {
        "version": 1,
        "disable_existing_loggers": False,  # keep loggers configured above
        "formatters": {
            "json": {
                "()": "ssh_usercert_gen.logging.JSONFormatter",
            },
        },
        "handlers": {
            "default": {
                "formatter": "json",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            name: {"handlers": ["default"], "level": level, "propagate": False}
            for name in UVICORN_LOGGERS
        },
    }
