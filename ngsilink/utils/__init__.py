"""
NGSILink Utilities

Common utilities for configuration, logging, metrics and error handling.
"""

from ngsilink.utils.config import (
    Settings,
    get_settings,
    reload_settings,
)
from ngsilink.utils.exceptions import (
    AccessForbidden,
    AttributeNotFound,
    BadAnswer,
    BadGeocoordinates,
    BadRequest,
    BadTimestamp,
    BrokerRejected,
    ConfigurationError,
    DeviceNotFound,
    EntityGenericError,
    ExchangeCancelled,
    ExpressionError,
    NGSILinkError,
    TransportError,
    TypeNotFound,
)
from ngsilink.utils.logging import (
    LogContext,
    configure_logging,
    get_logger,
)
from ngsilink.utils.metrics import (
    NGSILinkMetrics,
    get_metrics,
    metrics,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "reload_settings",
    # Exceptions
    "AccessForbidden",
    "AttributeNotFound",
    "BadAnswer",
    "BadGeocoordinates",
    "BadRequest",
    "BadTimestamp",
    "BrokerRejected",
    "ConfigurationError",
    "DeviceNotFound",
    "EntityGenericError",
    "ExchangeCancelled",
    "ExpressionError",
    "NGSILinkError",
    "TransportError",
    "TypeNotFound",
    # Logging
    "LogContext",
    "configure_logging",
    "get_logger",
    # Metrics
    "NGSILinkMetrics",
    "get_metrics",
    "metrics",
]
