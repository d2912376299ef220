"""
NGSILink Custom Exceptions

Centralized exception definitions for consistent error handling across the application.
All exceptions inherit from NGSILinkError so that callers can surface them as typed
outcomes instead of handling each one separately.
"""

from typing import Any, Dict, Optional


class NGSILinkError(Exception):
    """
    Base exception for all NGSILink errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional error context
        recoverable: Whether the error is recoverable
    """

    def __init__(
        self,
        message: str,
        code: str = "NGSILINK_ERROR",
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.recoverable = recoverable

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }

    def __str__(self) -> str:
        if self.details:
            return f"[{self.code}] {self.message} - {self.details}"
        return f"[{self.code}] {self.message}"


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(NGSILinkError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        super().__init__(
            message=message,
            code="CONFIG_ERROR",
            details=details,
            recoverable=False,
            **kwargs
        )


# =============================================================================
# Translation Errors
# =============================================================================

class BadRequest(NGSILinkError):
    """Raised when an attribute is malformed (missing name or type, bad value)."""

    def __init__(self, reason: str, entity: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["reason"] = reason
        if entity:
            details["entity"] = entity
        super().__init__(
            message=f"Request error connecting to the Context Broker: {reason}",
            code="BAD_REQUEST",
            details=details,
            recoverable=False,
            **kwargs
        )


class BadTimestamp(NGSILinkError):
    """Raised when a device timestamp cannot be parsed while timestamping is on."""

    def __init__(self, payload: Any, **kwargs):
        details = kwargs.pop("details", {})
        details["payload"] = str(payload)
        super().__init__(
            message=f"Invalid ISO8601 time format in payload: {payload}",
            code="BAD_TIMESTAMP",
            details=details,
            recoverable=False,
            **kwargs
        )


class BadGeocoordinates(NGSILinkError):
    """Raised when a geometry value cannot be turned into GeoJSON coordinates."""

    def __init__(self, value: Any, **kwargs):
        details = kwargs.pop("details", {})
        details["value"] = str(value)
        super().__init__(
            message=f"Invalid rfc7946 coordinates in payload: {value}",
            code="BAD_GEOCOORDINATES",
            details=details,
            recoverable=False,
            **kwargs
        )


class TypeNotFound(NGSILinkError):
    """Raised when the device has no entity type to address the broker with."""

    def __init__(self, entity: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["entity"] = entity
        super().__init__(
            message=f"Type not found for entity: {entity}",
            code="TYPE_NOT_FOUND",
            details=details,
            recoverable=False,
            **kwargs
        )


class ExpressionError(NGSILinkError):
    """Raised when an expression cannot be parsed or evaluated."""

    def __init__(self, expression: str, reason: str, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"expression": expression, "reason": reason})
        super().__init__(
            message=f"Invalid expression '{expression}': {reason}",
            code="EXPRESSION_ERROR",
            details=details,
            recoverable=False,
            **kwargs
        )


# =============================================================================
# Broker Exchange Errors
# =============================================================================

class TransportError(NGSILinkError):
    """Raised when the Context Broker cannot be reached (network, DNS, timeout)."""

    def __init__(self, url: str, reason: str, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"url": url, "reason": reason})
        super().__init__(
            message=f"Error connecting to the Context Broker at {url}: {reason}",
            code="TRANSPORT_ERROR",
            details=details,
            **kwargs
        )


class BrokerRejected(NGSILinkError):
    """Raised when the broker answers with a structured error body."""

    def __init__(self, broker_details: Any, **kwargs):
        details = kwargs.pop("details", {})
        details["broker_details"] = broker_details
        super().__init__(
            message=f"Context Broker rejected the request: {broker_details}",
            code="BROKER_REJECTED",
            details=details,
            recoverable=False,
            **kwargs
        )


class AccessForbidden(NGSILinkError):
    """Raised on 401/403 answers."""

    def __init__(
        self,
        token: Optional[str],
        service: Optional[str],
        subservice: Optional[str],
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "token_present": bool(token),
            "service": service,
            "subservice": subservice,
        })
        super().__init__(
            message=(
                f"The access to the CB was rejected for service [{service}] "
                f"and subservice [{subservice}]"
            ),
            code="ACCESS_FORBIDDEN",
            details=details,
            recoverable=False,
            **kwargs
        )


class DeviceNotFound(NGSILinkError):
    """Raised when the broker reports the device entity does not exist."""

    def __init__(self, entity: str, **kwargs):
        details = kwargs.pop("details", {})
        details["entity"] = entity
        super().__init__(
            message=f"No device was found with id: {entity}",
            code="DEVICE_NOT_FOUND",
            details=details,
            **kwargs
        )


class AttributeNotFound(NGSILinkError):
    """Raised when the broker reports a generic not-found for the attributes."""

    def __init__(self, **kwargs):
        super().__init__(
            message="Some of the attributes does not exist",
            code="ATTRIBUTE_NOT_FOUND",
            **kwargs
        )


class EntityGenericError(NGSILinkError):
    """Raised for any broker answer that no other rule recognizes."""

    def __init__(
        self,
        entity: str,
        entity_type: Optional[str],
        body: Any = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "entity": entity,
            "type": entity_type,
            "body": body,
        })
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(
            message=f"Error accesing entity data for device: {entity} of type: {entity_type}",
            code="ENTITY_GENERIC_ERROR",
            details=details,
            **kwargs
        )


class BadAnswer(NGSILinkError):
    """Raised when the broker violates the protocol (a query without body)."""

    def __init__(self, status_code: int, operation: str, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"status_code": status_code, "operation": operation})
        super().__init__(
            message=f"Invalid response from the Context Broker for {operation}: {status_code}",
            code="BAD_ANSWER",
            details=details,
            **kwargs
        )


class ExchangeCancelled(NGSILinkError):
    """Raised when a multi-entity exchange is cancelled between two sends."""

    def __init__(self, pending: int, **kwargs):
        details = kwargs.pop("details", {})
        details["pending_entities"] = pending
        super().__init__(
            message=f"Exchange cancelled with {pending} entities pending",
            code="EXCHANGE_CANCELLED",
            details=details,
            **kwargs
        )
