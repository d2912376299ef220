"""
NGSILink Broker Exchange Client Module

This module executes the request/response cycle against the Context Broker:
it builds the update and query requests for both data models, sends them
strictly one after another and classifies each answer into a typed outcome,
toggling the shared alarm gate along the way.
"""

import asyncio
import copy
import json
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol
from urllib.parse import quote

import httpx
import structlog

from ngsilink.models.schemas import DataModel, TypeInformation
from ngsilink.modules.alarm_gate import ORION_ALARM, AlarmGate
from ngsilink.modules.protocol_encoder import to_ngsi_ld_urn
from ngsilink.utils.exceptions import (
    AccessForbidden,
    AttributeNotFound,
    BadAnswer,
    BrokerRejected,
    DeviceNotFound,
    EntityGenericError,
    ExchangeCancelled,
    NGSILinkError,
    TransportError,
    TypeNotFound,
)
from ngsilink.utils.metrics import NGSILinkMetrics, get_metrics

logger = structlog.get_logger(__name__)

Operation = Literal["update", "query"]


# ============================================================================
# Transport
# ============================================================================


@dataclass
class TransportResponse:
    status_code: int
    body: Any = None


class Transport(Protocol):
    """Single HTTP exchange. Pooling, TLS and retries belong to the implementation."""

    async def send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        json_body: Any = None,
    ) -> TransportResponse:
        """
        Raises:
            TransportError: If no HTTP answer was received
        """
        ...


def decode_body(content: bytes) -> Any:
    """Decode a response body: JSON when possible, text otherwise, None when empty."""
    if not content or not content.strip():
        return None
    text = content.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class HTTPXTransport:
    """Transport on top of a shared ``httpx.AsyncClient``."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        json_body: Any = None,
    ) -> TransportResponse:
        content = None
        if json_body is not None:
            content = json.dumps(json_body).encode("utf-8")
        try:
            response = await self.client.request(method, url, headers=headers, content=content)
        except (httpx.RequestError, httpx.InvalidURL) as e:
            logger.error("broker.request_error", method=method, url=url, error=str(e))
            raise TransportError(url, str(e) or type(e).__name__) from e
        return TransportResponse(response.status_code, decode_body(response.content))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


# ============================================================================
# Outcomes
# ============================================================================


@dataclass
class BrokerOutcome:
    """Result of one translate-and-send or translate-and-query call."""

    kind: Literal["updated", "queried", "error"]
    payload: Any = None
    error: NGSILinkError | None = None
    applied: list[str] = field(default_factory=list)

    @classmethod
    def updated(cls, applied: list[str]) -> "BrokerOutcome":
        return cls(kind="updated", applied=applied)

    @classmethod
    def queried(cls, payload: Any) -> "BrokerOutcome":
        return cls(kind="queried", payload=payload)

    @classmethod
    def failed(cls, error: NGSILinkError, applied: list[str] | None = None) -> "BrokerOutcome":
        return cls(kind="error", error=error, applied=list(applied or []))

    @property
    def ok(self) -> bool:
        return self.kind != "error"


@dataclass
class BrokerRequest:
    method: str
    url: str
    headers: dict[str, str]
    body: Any = None
    entity_id: str = ""


def error_field(body: Any) -> tuple[str, str | None]:
    """Extract ``(details, code)`` from a broker error body of either data model."""
    if not isinstance(body, dict):
        return (str(body) if body is not None else "", None)
    err = body.get("orionError") or body.get("error") or body
    if not isinstance(err, dict):
        err = body
    details = err.get("details") or err.get("description") or err.get("detail") or ""
    code = err.get("code")
    return (str(details), str(code) if code is not None else None)


# ============================================================================
# Broker Exchange Client
# ============================================================================


class BrokerExchangeClient:
    """
    Builds, sends and classifies Context Broker requests.

    Exchanges run strictly in order: each response is classified before the
    next request is issued and the first failure ends the sequence.
    """

    def __init__(
        self,
        transport: Transport,
        alarm_gate: AlarmGate,
        broker_url: str = "http://localhost:1026",
        metrics: NGSILinkMetrics | None = None,
    ):
        self.transport = transport
        self.alarm_gate = alarm_gate
        self.broker_url = broker_url.rstrip("/")
        self.metrics = metrics or get_metrics()

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def base_url(self, type_information: TypeInformation) -> str:
        return (type_information.cb_host or self.broker_url).rstrip("/")

    @staticmethod
    def build_headers(
        type_information: TypeInformation,
        data_model: DataModel,
        token: str | None = None,
        with_body: bool = True,
    ) -> dict[str, str]:
        if data_model == DataModel.LINKED_DATA:
            headers: dict[str, str] = {}
            if type_information.service:
                headers["NGSILD-Tenant"] = type_information.service
            if type_information.subservice:
                headers["NGSILD-Path"] = type_information.subservice
            content_type = "application/ld+json"
        else:
            headers = {"fiware-servicepath": type_information.subservice or "/"}
            if type_information.service:
                headers["fiware-service"] = type_information.service
            content_type = "application/json"

        if with_body:
            headers["Content-Type"] = content_type
        if token:
            headers["X-Auth-Token"] = token
        return headers

    def build_update(
        self,
        envelope: dict[str, Any],
        type_information: TypeInformation,
        data_model: DataModel,
        token: str | None = None,
    ) -> BrokerRequest:
        # The envelope stays untouched; id and type travel in the URL
        body = copy.deepcopy(envelope)
        entity_id = body.pop("id")
        entity_type = body.pop("type", None)
        base = self.base_url(type_information)

        if data_model == DataModel.LINKED_DATA:
            url = f"{base}/ngsi-ld/v1/entities/{quote(entity_id, safe=':')}/attrs"
            method = "PATCH"
        else:
            url = f"{base}/v2/entities/{quote(entity_id, safe='')}/attrs"
            if entity_type:
                url += f"?type={quote(entity_type, safe='')}"
            method = "POST"

        return BrokerRequest(
            method=method,
            url=url,
            headers=self.build_headers(type_information, data_model, token),
            body=body,
            entity_id=entity_id,
        )

    def build_query(
        self,
        attribute_names: list[str],
        type_information: TypeInformation,
        data_model: DataModel,
        token: str | None = None,
    ) -> BrokerRequest:
        entity_type = type_information.type
        if not entity_type:
            raise TypeNotFound(type_information.entity_id)

        base = self.base_url(type_information)
        attrs = ",".join(quote(name, safe="") for name in attribute_names)

        if data_model == DataModel.LINKED_DATA:
            entity_id = to_ngsi_ld_urn(type_information.entity_id, entity_type)
            url = f"{base}/ngsi-ld/v1/entities/{quote(entity_id, safe=':')}"
            if attrs:
                url += f"?attrs={attrs}"
        else:
            entity_id = type_information.entity_id
            url = (
                f"{base}/v2/entities/{quote(entity_id, safe='')}/attrs"
                f"?type={quote(entity_type, safe='')}"
            )
            if attrs:
                url += f"&attrs={attrs}"

        return BrokerRequest(
            method="GET",
            url=url,
            headers=self.build_headers(type_information, data_model, token, with_body=False),
            entity_id=entity_id,
        )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(
        self,
        operation: Operation,
        response: TransportResponse,
        request: BrokerRequest,
        type_information: TypeInformation,
        token: str | None = None,
    ) -> BrokerOutcome:
        """
        Turn one broker answer into an outcome.

        Successful answers release the broker alarm; error answers leave it
        untouched, only transport failures raise it.
        """
        status = response.status_code
        body = response.body
        entity_type = type_information.type

        if isinstance(body, dict) and body.get("orionError") is not None:
            details, _ = error_field(body)
            logger.debug("broker.orion_error", operation=operation, body=body)
            return BrokerOutcome.failed(BrokerRejected(details or body["orionError"]))

        if 200 <= status < 300:
            if operation == "update":
                if body is None:
                    self.alarm_gate.release(ORION_ALARM)
                    return BrokerOutcome.updated([request.entity_id])
                return BrokerOutcome.failed(
                    EntityGenericError(request.entity_id, entity_type, body, status)
                )
            if body is not None:
                self.alarm_gate.release(ORION_ALARM)
                return BrokerOutcome.queried(body)
            logger.error(
                "broker.bad_answer",
                operation=operation,
                status_code=status,
                reason="a query must always return a body",
            )
            return BrokerOutcome.failed(BadAnswer(status, operation))

        if status in (401, 403):
            logger.debug("broker.access_forbidden", operation=operation)
            return BrokerOutcome.failed(
                AccessForbidden(token, type_information.service, type_information.subservice)
            )

        if status == 404 and body is not None:
            logger.error("broker.not_found", operation=operation, body=body)
            details, code = error_field(body)
            if entity_type and entity_type in details:
                return BrokerOutcome.failed(DeviceNotFound(request.entity_id))
            if code == "404":
                return BrokerOutcome.failed(AttributeNotFound())
            return BrokerOutcome.failed(EntityGenericError(request.entity_id, entity_type, body))

        logger.debug("broker.unknown_error", operation=operation, status_code=status)
        return BrokerOutcome.failed(
            EntityGenericError(request.entity_id, entity_type, body, status)
        )

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    async def exchange(
        self,
        operation: Operation,
        request: BrokerRequest,
        type_information: TypeInformation,
        token: str | None = None,
    ) -> BrokerOutcome:
        """Send one request and classify the answer."""
        logger.debug(
            "broker.request",
            operation=operation,
            method=request.method,
            url=request.url,
            headers=request.headers,
        )
        try:
            with self.metrics.time_exchange(operation):
                response = await self.transport.send(
                    request.method, request.url, request.headers, request.body
                )
        except TransportError as e:
            logger.error("broker.transport_error", operation=operation, error=e.message)
            self.alarm_gate.raise_alarm(ORION_ALARM, e.message)
            outcome = BrokerOutcome.failed(e)
        else:
            outcome = self.classify(operation, response, request, type_information, token)

        self.metrics.record_exchange(
            operation, outcome.kind if outcome.ok else outcome.error.code.lower()
        )
        return outcome

    async def send_updates(
        self,
        envelopes: list[dict[str, Any]],
        type_information: TypeInformation,
        data_model: DataModel,
        token: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BrokerOutcome:
        """
        Send one update per envelope, in order.

        Args:
            envelopes: Encoded entities
            type_information: Device configuration
            data_model: Data model the envelopes were encoded for
            token: Optional security token
            cancel: Checked before every send; when set the sequence stops

        Returns:
            ``updated`` with every entity id, or ``error`` with the first
            failure and the ids applied before it
        """
        applied: list[str] = []
        requests = [
            self.build_update(envelope, type_information, data_model, token)
            for envelope in envelopes
        ]

        for index, request in enumerate(requests):
            if cancel is not None and cancel.is_set():
                pending = len(requests) - index
                logger.info("broker.exchange_cancelled", applied=applied, pending=pending)
                return BrokerOutcome.failed(ExchangeCancelled(pending), applied)

            outcome = await self.exchange("update", request, type_information, token)
            if not outcome.ok:
                logger.error(
                    "broker.update_failed",
                    entity_id=request.entity_id,
                    error=outcome.error.code,
                    applied=applied,
                    skipped=len(requests) - index - 1,
                )
                return BrokerOutcome.failed(outcome.error, applied)
            applied.append(request.entity_id)

        logger.debug("broker.updated", entities=applied)
        return BrokerOutcome.updated(applied)

    async def query(
        self,
        attribute_names: list[str],
        type_information: TypeInformation,
        data_model: DataModel,
        token: str | None = None,
    ) -> BrokerOutcome:
        try:
            request = self.build_query(attribute_names, type_information, data_model, token)
        except TypeNotFound as e:
            logger.error("broker.type_not_found", entity_id=type_information.entity_id)
            return BrokerOutcome.failed(e)
        return await self.exchange("query", request, type_information, token)
