"""
NGSILink Protocol Encoder Module

This module turns expanded, cast target entities into the wire envelopes of
the two supported data models: the legacy NGSIv2 JSON representation and
the NGSI-LD (JSON-LD) representation. It also applies the device
timestamp policy shared by both.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from ngsilink.models.schemas import (
    TIMESTAMP_ATTRIBUTE,
    TIMESTAMP_TYPE,
    AttributeUpdate,
    DataModel,
    DuplicateAttributePolicy,
    TargetEntity,
    TypeInformation,
)
from ngsilink.modules.attribute_caster import (
    AttributeCaster,
    format_datetime,
    is_geo_type,
    is_relationship_type,
    parse_timestamp,
)
from ngsilink.utils.config import DEFAULT_JSONLD_CONTEXT
from ngsilink.utils.exceptions import BadTimestamp, ConfigurationError

logger = structlog.get_logger(__name__)

NGSI_LD_URN = "urn:ngsi-ld:"
NGSI_LD_DATASET_PREFIX = "urn:ngsi-ld:Dataset:"
ATTRIBUTE_DEFAULT = " "
DATETIME_DEFAULT = "1970-01-01T00:00:00.000Z"


# ============================================================================
# Data Model Selection
# ============================================================================


def select_data_model(configured: DataModel, type_information: TypeInformation) -> DataModel:
    """
    Pick the encoding for a device. In mixed mode the device's own data model
    decides (legacy when unset); otherwise the configured model applies to all.
    """
    if configured != DataModel.MIXED:
        return configured
    if type_information.data_model == DataModel.LINKED_DATA:
        return DataModel.LINKED_DATA
    return DataModel.LEGACY


def to_ngsi_ld_urn(entity_id: str, entity_type: str) -> str:
    if entity_id.startswith(NGSI_LD_URN):
        return entity_id
    return f"{NGSI_LD_URN}{entity_type}:{entity_id}"


# ============================================================================
# Timestamp Policy
# ============================================================================


def is_valid_iso8601(value: Any) -> bool:
    if not isinstance(value, str) or value.strip().isdigit():
        return False
    return parse_timestamp(value) is not None


def current_timestamp(tz_name: str | None = None, now: datetime | None = None) -> str:
    """Current time as ISO-8601, in the device timezone when one is configured."""
    now = now or datetime.now(timezone.utc)
    if not tz_name:
        return format_datetime(now)
    try:
        local = now.astimezone(ZoneInfo(tz_name))
    except ZoneInfoNotFoundError as e:
        raise ConfigurationError(f"Unknown timezone: {tz_name}", field="timezone") from e
    return local.isoformat(timespec="milliseconds")


def _with_timestamp_metadata(attribute: AttributeUpdate, timestamp: str) -> AttributeUpdate:
    metadata = dict(attribute.metadata or {})
    if TIMESTAMP_ATTRIBUTE in metadata:
        return attribute
    metadata[TIMESTAMP_ATTRIBUTE] = {"type": TIMESTAMP_TYPE, "value": timestamp}
    return attribute.model_copy(update={"metadata": metadata})


def apply_timestamp(
    entity: TargetEntity,
    tz_name: str | None = None,
    now: datetime | None = None,
) -> TargetEntity:
    """
    Make sure an entity carries a valid ``TimeInstant``.

    An entity without one gets the current time as a ``TimeInstant`` attribute;
    an existing valid one is kept. Either way every attribute lacking timestamp
    metadata gets it.

    Raises:
        BadTimestamp: If the entity carries a ``TimeInstant`` that is not ISO-8601
    """
    existing = entity.get_attribute(TIMESTAMP_ATTRIBUTE)
    if existing is not None and not is_valid_iso8601(existing.value):
        logger.error("encoder.invalid_timestamp", entity_id=entity.id, value=existing.value)
        raise BadTimestamp({entity.id: existing.value})

    if existing is None:
        timestamp = current_timestamp(tz_name, now)
        timestamp_attribute = AttributeUpdate(
            name=TIMESTAMP_ATTRIBUTE, type=TIMESTAMP_TYPE, value=timestamp
        )
    else:
        timestamp = existing.value
        timestamp_attribute = existing

    attributes = [
        _with_timestamp_metadata(attr, timestamp)
        for attr in entity.attributes
        if attr.name != TIMESTAMP_ATTRIBUTE
    ]
    attributes.append(timestamp_attribute)
    return entity.model_copy(update={"attributes": attributes})


# ============================================================================
# Duplicate Attribute Union
# ============================================================================


@dataclass
class WireAttribute:
    """An attribute ready for encoding, with the disambiguation key resolved."""

    name: str
    attribute: AttributeUpdate
    dataset_id: str | None = None


def union_attributes(
    entity: TargetEntity,
    policy: DuplicateAttributePolicy,
) -> list[WireAttribute]:
    """
    Resolve same-named attributes into distinct wire attributes.

    The first instance of a name keeps it. Later instances either become
    dataset instances of the same attribute or siblings named
    ``<name>_<object_id>``. The internal ``object_id`` is stripped either way.
    """
    seen: dict[str, int] = {}
    result: list[WireAttribute] = []

    for attribute in entity.attributes:
        stripped = attribute.without_internal_keys()
        count = seen.get(attribute.name, 0)
        seen[attribute.name] = count + 1

        if count == 0:
            result.append(WireAttribute(attribute.name, stripped))
            continue

        suffix = attribute.object_id or str(count)
        if policy == DuplicateAttributePolicy.DATASET:
            result.append(
                WireAttribute(attribute.name, stripped, f"{NGSI_LD_DATASET_PREFIX}{suffix}")
            )
        else:
            result.append(WireAttribute(f"{attribute.name}_{suffix}", stripped))

    return result


# ============================================================================
# Encoders
# ============================================================================


@dataclass
class LegacyEncoder:
    """
    Builds NGSIv2 entities: ``{id, type, <name>: {value, type, metadata?}}``.
    """

    data_model = DataModel.LEGACY

    def encode(self, entity: TargetEntity) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": entity.id, "type": entity.type}
        # NGSIv2 has no multi-instance attributes
        for wire in union_attributes(entity, DuplicateAttributePolicy.SIBLINGS):
            payload[wire.name] = self.encode_attribute(wire.attribute)
        return payload

    @staticmethod
    def encode_attribute(attribute: AttributeUpdate) -> dict[str, Any]:
        attribute_type = "geo:json" if is_geo_type(attribute.type) else attribute.type
        encoded: dict[str, Any] = {"value": attribute.value, "type": attribute_type}
        if attribute.metadata:
            encoded["metadata"] = attribute.metadata
        return encoded


@dataclass
class LinkedDataEncoder:
    """
    Builds NGSI-LD entities:
    ``{'@context': [...], id: <urn>, type, <name>: {type: Property|GeoProperty|Relationship, ...}}``.
    """

    caster: AttributeCaster = field(default_factory=AttributeCaster)
    context: list[str] = field(default_factory=lambda: [DEFAULT_JSONLD_CONTEXT])
    policy: DuplicateAttributePolicy = DuplicateAttributePolicy.DATASET

    data_model = DataModel.LINKED_DATA

    def encode(self, entity: TargetEntity, context: list[str] | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "@context": list(context or self.context),
            "id": to_ngsi_ld_urn(entity.id, entity.type),
            "type": entity.type,
        }

        for wire in union_attributes(entity, self.policy):
            # The root timestamp is carried as observedAt instead
            if wire.name in (TIMESTAMP_ATTRIBUTE, "@context"):
                continue
            converted = self.convert_attribute(wire.attribute)
            if wire.dataset_id:
                converted["datasetId"] = wire.dataset_id

            if wire.name not in payload:
                payload[wire.name] = converted
            elif isinstance(payload[wire.name], list):
                payload[wire.name].append(converted)
            else:
                payload[wire.name] = [payload[wire.name], converted]

        return payload

    def convert_attribute(self, attribute: AttributeUpdate, cast: bool = False) -> dict[str, Any]:
        """
        Convert one attribute, whose value is already cast unless ``cast`` is set.
        Metadata entries go through the same conversion, cast on the fly.
        """
        attribute_type = attribute.type or "Property"
        value = attribute.value
        if cast:
            value = self.caster.cast(value, attribute_type, linked_data=True)

        if is_relationship_type(attribute_type):
            converted: dict[str, Any] = {"type": "Relationship", "object": value}
        elif is_geo_type(attribute_type):
            converted = {"type": "GeoProperty", "value": value}
        else:
            converted = {"type": "Property", "value": value}

        for key, meta in (attribute.metadata or {}).items():
            if key == TIMESTAMP_ATTRIBUTE:
                converted["observedAt"] = self.observed_at(meta)
            elif key == "unitCode":
                converted["unitCode"] = meta.get("value") if isinstance(meta, dict) else meta
            else:
                converted[key] = self.convert_attribute(self._as_attribute(key, meta), cast=True)

        return converted

    @staticmethod
    def observed_at(meta: Any) -> str:
        timestamp = meta.get("value") if isinstance(meta, dict) else meta
        if timestamp == ATTRIBUTE_DEFAULT:
            return DATETIME_DEFAULT
        moment = parse_timestamp(timestamp)
        if moment is None:
            logger.warning("encoder.invalid_observed_at", value=str(timestamp))
            return DATETIME_DEFAULT
        return format_datetime(moment)

    @staticmethod
    def _as_attribute(key: str, meta: Any) -> AttributeUpdate:
        if isinstance(meta, dict):
            return AttributeUpdate(
                name=key,
                type=meta.get("type"),
                value=meta.get("value"),
                metadata=meta.get("metadata"),
            )
        return AttributeUpdate(name=key, type="Property", value=meta)
