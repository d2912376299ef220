"""
NGSILink Logging Module

Structured logging configuration using structlog.
Provides consistent, machine-readable logs with device and entity context.
"""

import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

import structlog
from structlog.types import EventDict, Processor

# Context variables for per-update logging
device_id_var: ContextVar[str | None] = ContextVar("device_id", default=None)
entity_id_var: ContextVar[str | None] = ContextVar("entity_id", default=None)
service_var: ContextVar[str | None] = ContextVar("service", default=None)

SENSITIVE_KEYS = {
    "password",
    "token",
    "secret",
    "authorization",
    "x-auth-token",
    "access_token",
}


def add_timestamp(_logger: logging.Logger, _method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO format timestamp to log event."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_context(_logger: logging.Logger, _method_name: str, event_dict: EventDict) -> EventDict:
    """Add context variables to log event."""
    device_id = device_id_var.get()
    entity_id = entity_id_var.get()
    service = service_var.get()

    if device_id:
        event_dict.setdefault("device_id", device_id)
    if entity_id:
        event_dict.setdefault("entity_id", entity_id)
    if service:
        event_dict.setdefault("service", service)

    return event_dict


def add_service_info(
    _logger: logging.Logger, _method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict["app"] = "ngsilink"
    return event_dict


def format_exception(
    _logger: logging.Logger, _method_name: str, event_dict: EventDict
) -> EventDict:
    """Render NGSILink errors through their ``to_dict`` form."""
    exc_info = event_dict.get("exc_info")
    if isinstance(exc_info, BaseException):
        event_dict.pop("exc_info")
        event_dict["exception"] = {
            "type": type(exc_info).__name__,
            "message": str(exc_info),
        }
        if hasattr(exc_info, "to_dict"):
            event_dict["exception"]["details"] = exc_info.to_dict()
    return event_dict


def censor_value(key: str, value: Any) -> Any:
    if any(s in key.lower() for s in SENSITIVE_KEYS):
        return "***REDACTED***"
    if isinstance(value, dict):
        return {k: censor_value(str(k), v) for k, v in value.items()}
    if isinstance(value, list):
        return [censor_value("", item) for item in value]
    return value


def censor_sensitive_data(
    _logger: logging.Logger, _method_name: str, event_dict: EventDict
) -> EventDict:
    """Censor sensitive data in logs, including broker request headers."""
    return {key: censor_value(key, value) for key, value in event_dict.items()}


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = True,
    development: bool = False,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Whether to output JSON formatted logs
        development: Whether to use development-friendly formatting
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_timestamp,
        add_context,
        add_service_info,
        format_exception,
        censor_sensitive_data,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
    elif json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Set levels for noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for adding temporary logging context.

    Usage:
        with LogContext(device_id="sensor-01", service="smartcity"):
            logger.info("translator.sending")
    """

    def __init__(
        self,
        device_id: str | None = None,
        entity_id: str | None = None,
        service: str | None = None,
    ):
        self.device_id = device_id
        self.entity_id = entity_id
        self.service = service
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        if self.device_id:
            self._tokens.append(device_id_var.set(self.device_id))
        if self.entity_id:
            self._tokens.append(entity_id_var.set(self.entity_id))
        if self.service:
            self._tokens.append(service_var.set(self.service))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for token in reversed(self._tokens):
            token.var.reset(token)
        self._tokens.clear()
