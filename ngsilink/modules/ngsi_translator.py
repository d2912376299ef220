"""
NGSILink Translator Module

Entry point of the package. Runs the full translation pipeline for one
device update (expressions, multi-entity expansion, casting, timestamping
and encoding) and hands the resulting entities to the broker exchange
client.
"""

import asyncio
from typing import Any

import structlog

from ngsilink import __version__
from ngsilink.models.schemas import (
    TIMESTAMP_ATTRIBUTE,
    AttributeMapping,
    AttributeUpdate,
    DataModel,
    TargetEntity,
    TypeInformation,
)
from ngsilink.modules.alarm_gate import AlarmGate
from ngsilink.modules.attribute_caster import (
    AttributeCaster,
    is_geo_type,
    is_relationship_type,
)
from ngsilink.modules.broker_client import (
    BrokerExchangeClient,
    BrokerOutcome,
    HTTPXTransport,
    Transport,
)
from ngsilink.modules.expression_evaluator import ExpressionEvaluator, get_evaluator
from ngsilink.modules.multi_entity import MultiEntityExpander
from ngsilink.modules.protocol_encoder import (
    LegacyEncoder,
    LinkedDataEncoder,
    apply_timestamp,
    select_data_model,
)
from ngsilink.utils.config import Settings, get_settings
from ngsilink.utils.exceptions import BadRequest, NGSILinkError, TypeNotFound
from ngsilink.utils.logging import LogContext, configure_logging
from ngsilink.utils.metrics import NGSILinkMetrics, get_metrics

logger = structlog.get_logger(__name__)

ENVELOPE_KEYS = ("id", "type", "@context")


class NGSITranslator:
    """
    Translates device attribute updates into Context Broker entities.

    Usage:
        async with NGSITranslator() as translator:
            outcome = await translator.translate_and_send(attributes, type_information)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: Transport | None = None,
        alarm_gate: AlarmGate | None = None,
        metrics: NGSILinkMetrics | None = None,
    ):
        self.settings = settings or get_settings()
        self.metrics = metrics or get_metrics()
        self.alarm_gate = alarm_gate or AlarmGate(metrics=self.metrics)

        broker = self.settings.context_broker
        translation = self.settings.translation

        self._owned_transport: HTTPXTransport | None = None
        if transport is None:
            self._owned_transport = HTTPXTransport(timeout=broker.timeout_seconds)
            transport = self._owned_transport

        self.caster = AttributeCaster(numeric_default=translation.numeric_default)
        self.expander = MultiEntityExpander(default_conjunction=translation.name_conjunction)
        self.legacy_encoder = LegacyEncoder()
        self.linked_data_encoder = LinkedDataEncoder(
            caster=self.caster,
            context=list(broker.jsonld_context),
            policy=translation.duplicate_attribute_policy,
        )
        self.client = BrokerExchangeClient(
            transport=transport,
            alarm_gate=self.alarm_gate,
            broker_url=broker.url,
            metrics=self.metrics,
        )
        self._evaluators: dict[str, ExpressionEvaluator] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, transport: Transport | None = None
    ) -> "NGSITranslator":
        """
        Build a translator with logging configured from the settings.

        With metrics disabled the translator records into a registry nobody exports.
        """
        settings = settings or get_settings()
        configure_logging(
            log_level=settings.log_level,
            json_logs=settings.json_logs,
            development=not settings.is_production and not settings.json_logs,
        )
        metrics = get_metrics() if settings.metrics.enabled else NGSILinkMetrics()
        metrics.set_app_info(__version__, settings.env)
        logger.info("translator.configured", env=settings.env, broker=settings.context_broker.url)
        return cls(settings, transport=transport, metrics=metrics)

    async def __aenter__(self) -> "NGSITranslator":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owned_transport is not None:
            await self._owned_transport.aclose()

    # ------------------------------------------------------------------
    # Per-device settings
    # ------------------------------------------------------------------

    def data_model_for(self, type_information: TypeInformation) -> DataModel:
        return select_data_model(self.settings.context_broker.data_model, type_information)

    def timestamp_enabled(self, type_information: TypeInformation) -> bool:
        if type_information.timestamp is not None:
            return type_information.timestamp
        return self.settings.translation.timestamp

    def evaluator_for(self, type_information: TypeInformation) -> ExpressionEvaluator:
        language = (
            type_information.expression_language
            or self.settings.translation.expression_language
        )
        key = str(getattr(language, "value", language))
        if key not in self._evaluators:
            self._evaluators[key] = get_evaluator(language)
        return self._evaluators[key]

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    @staticmethod
    def apply_mappings(
        attributes: list[AttributeUpdate], type_information: TypeInformation
    ) -> list[AttributeUpdate]:
        """
        Rename measures to their configured attribute names and add the static
        attributes. Attributes left without name or type are rejected.
        """
        prepared: list[AttributeUpdate] = []

        for attribute in attributes:
            mapping = type_information.find_mapping(attribute.name, attribute.object_id)
            if mapping is not None:
                metadata = {**mapping.metadata, **(attribute.metadata or {})}
                attribute = attribute.model_copy(
                    update={
                        "name": mapping.name,
                        "type": mapping.type,
                        "object_id": attribute.object_id or mapping.object_id,
                        "metadata": metadata or None,
                    }
                )
            if not attribute.name or not attribute.type:
                raise BadRequest(
                    f"attribute without name or type: {attribute.model_dump(exclude_none=True)}",
                    entity=type_information.entity_id,
                )
            prepared.append(attribute)

        for static in type_information.static_attributes:
            attribute = AttributeUpdate.model_validate(static)
            if not attribute.name or not attribute.type:
                raise BadRequest(
                    f"static attribute without name or type: {static}",
                    entity=type_information.entity_id,
                )
            prepared.append(attribute)

        return prepared

    def apply_expressions(
        self, attributes: list[AttributeUpdate], type_information: TypeInformation
    ) -> list[AttributeUpdate]:
        """
        Compute every mapping expression against the update.

        Expressions see the raw values of the whole update, by attribute name
        and by measure name, plus the results of the expressions before them.
        """
        mappings = [m for m in type_information.attributes if m.expression]
        if not mappings:
            return attributes

        evaluator = self.evaluator_for(type_information)
        context: dict[str, Any] = {}
        for attribute in attributes:
            if attribute.object_id:
                context.setdefault(attribute.object_id, attribute.value)
            context[attribute.name] = attribute.value

        result = list(attributes)
        for mapping in mappings:
            value = evaluator.evaluate(mapping.expression, context)
            targets = [i for i, attr in enumerate(result) if self._bound_to(attr, mapping)]

            if not targets:
                if value is not None:
                    logger.debug("translator.computed_attribute", name=mapping.name)
                    result.append(
                        AttributeUpdate(
                            name=mapping.name,
                            type=mapping.type,
                            value=value,
                            object_id=mapping.object_id,
                            metadata=mapping.metadata or None,
                        )
                    )
                    context[mapping.name] = value
                continue

            if value is None:
                if is_geo_type(mapping.type) or is_relationship_type(mapping.type):
                    raise BadRequest(
                        f"expression for {mapping.name} produced no value",
                        entity=type_information.entity_id,
                    )
                logger.debug("translator.attribute_dropped", name=mapping.name)
                result = [attr for i, attr in enumerate(result) if i not in targets]
                context.pop(mapping.name, None)
                continue

            for i in targets:
                result[i] = result[i].model_copy(update={"value": value})
            context[mapping.name] = value

        return result

    @staticmethod
    def _bound_to(attribute: AttributeUpdate, mapping: AttributeMapping) -> bool:
        if attribute.name != mapping.name:
            return False
        return mapping.object_id is None or attribute.object_id == mapping.object_id

    def cast_entity(self, entity: TargetEntity, linked_data: bool) -> TargetEntity:
        attributes = []
        for attribute in entity.attributes:
            # TimeInstant is validated by the timestamp policy instead
            if attribute.name == TIMESTAMP_ATTRIBUTE:
                attributes.append(attribute)
                continue
            value = self.caster.cast(attribute.value, attribute.type, linked_data=linked_data)
            attributes.append(attribute.model_copy(update={"value": value}))
        return entity.model_copy(update={"attributes": attributes})

    def encode(
        self,
        entity: TargetEntity,
        data_model: DataModel,
        type_information: TypeInformation,
    ) -> dict[str, Any]:
        if data_model == DataModel.LINKED_DATA:
            return self.linked_data_encoder.encode(entity, type_information.jsonld_context)
        return self.legacy_encoder.encode(entity)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def _translate(
        self, attributes: list[AttributeUpdate], type_information: TypeInformation
    ) -> tuple[DataModel, list[dict[str, Any]]]:
        data_model = self.data_model_for(type_information)
        linked_data = data_model == DataModel.LINKED_DATA
        if linked_data and not type_information.type:
            # An NGSI-LD entity URN cannot be built without a type
            raise TypeNotFound(type_information.entity_id)

        prepared = self.apply_mappings(attributes, type_information)
        computed = self.apply_expressions(prepared, type_information)
        entities = [
            entity
            for entity in self.expander.expand(computed, type_information)
            if entity.attributes
        ]

        envelopes = []
        for entity in entities:
            entity = self.cast_entity(entity, linked_data)
            if self.timestamp_enabled(type_information):
                entity = apply_timestamp(entity, type_information.timezone)
            envelope = self.encode(entity, data_model, type_information)
            if all(key in ENVELOPE_KEYS for key in envelope):
                logger.debug("translator.empty_entity_skipped", entity_id=entity.id)
                continue
            envelopes.append(envelope)

        return data_model, envelopes

    def translate(
        self, attributes: list[AttributeUpdate], type_information: TypeInformation
    ) -> list[dict[str, Any]]:
        """
        Translate one device update into broker envelopes, one per target entity.

        Raises:
            NGSILinkError: If any pipeline stage rejects the update
        """
        _, envelopes = self._translate(attributes, type_information)
        return envelopes

    async def translate_and_send(
        self,
        attributes: list[AttributeUpdate],
        type_information: TypeInformation,
        token: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BrokerOutcome:
        """
        Translate a device update and send one update per target entity.

        Args:
            attributes: Measures of the device, in arrival order
            type_information: Device configuration
            token: Optional security token for the broker
            cancel: Event checked between entity updates

        Returns:
            A BrokerOutcome; translation and broker errors are reported in it
        """
        with LogContext(device_id=type_information.device_id, service=type_information.service):
            self.metrics.record_measures(type_information.type or "", len(attributes))
            try:
                data_model, envelopes = self._translate(attributes, type_information)
            except NGSILinkError as e:
                logger.error("translator.translation_failed", error=e.code, details=e.details)
                self.metrics.record_translation_failure(e.code)
                return BrokerOutcome.failed(e)

            if not envelopes:
                logger.debug("translator.nothing_to_send")
                return BrokerOutcome.updated([])

            logger.debug(
                "translator.sending",
                data_model=data_model.value,
                entities=len(envelopes),
            )
            return await self.client.send_updates(
                envelopes, type_information, data_model, token=token, cancel=cancel
            )

    async def translate_and_query(
        self,
        attribute_names: list[str],
        type_information: TypeInformation,
        token: str | None = None,
    ) -> BrokerOutcome:
        """Query the current values of some attributes of the device entity."""
        with LogContext(device_id=type_information.device_id, service=type_information.service):
            data_model = self.data_model_for(type_information)
            return await self.client.query(attribute_names, type_information, data_model, token)
