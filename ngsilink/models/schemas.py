"""
NGSILink Pydantic Models

This module defines the data models used throughout the NGSILink system
for translating device attribute updates into Context Broker entities.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

TIMESTAMP_ATTRIBUTE = "TimeInstant"
TIMESTAMP_TYPE = "DateTime"


# ============================================================================
# Enums
# ============================================================================

class DataModel(str, Enum):
    """Entity representation understood by the Context Broker."""
    LEGACY = "legacy"
    LINKED_DATA = "ld"
    MIXED = "mixed"


class ExpressionLanguage(str, Enum):
    """Expression dialects available for computed attributes."""
    LEGACY = "legacy"
    JEXL = "jexl"


class DuplicateAttributePolicy(str, Enum):
    """How same-named attributes from different sources share one entity."""
    DATASET = "dataset"
    SIBLINGS = "siblings"


# ============================================================================
# Device Configuration Models
# ============================================================================

class AttributeMapping(BaseModel):
    """
    Static configuration of one device attribute.
    Binds an incoming measure to its final name, type, target entity and
    optional expression.
    """
    object_id: Optional[str] = Field(None, description="Name of the measure as sent by the device")
    name: str = Field(..., description="Attribute name in the Context Broker")
    type: str = Field(..., description="Declared attribute type")
    expression: Optional[str] = Field(None, description="Expression computing the value")
    entity_name: Optional[str] = Field(None, description="Target entity for multi-entity mapping")
    entity_type: Optional[str] = Field(None, description="Type of the target entity")
    name_conjunction: Optional[str] = Field(
        None, description="Conjunction between device id and entity_name"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Static metadata")


class TypeInformation(BaseModel):
    """
    Per-device configuration needed to translate and send an update.
    Owned by the caller and never modified by the translation.
    """
    device_id: str = Field(..., description="Device identifier")
    type: Optional[str] = Field(None, description="Entity type of the device")
    entity_name: Optional[str] = Field(
        None, description="Entity id template ({device_id} and {type} are expanded)"
    )
    attributes: List[AttributeMapping] = Field(default_factory=list, description="Active attributes")
    static_attributes: List[Dict[str, Any]] = Field(
        default_factory=list, description="Attributes appended to every update"
    )
    timezone: Optional[str] = Field(None, description="IANA timezone for injected timestamps")
    timestamp: Optional[bool] = Field(None, description="Per-device timestamp policy")
    data_model: Optional[DataModel] = Field(None, description="Data model used in mixed mode")
    service: Optional[str] = Field(None, description="Tenant")
    subservice: Optional[str] = Field(None, description="Service path")
    cb_host: Optional[str] = Field(None, description="Per-device Context Broker URL")
    expression_language: Optional[ExpressionLanguage] = Field(
        None, description="Per-device expression dialect"
    )
    name_conjunction: Optional[str] = Field(
        None, description="Per-device multi-entity conjunction"
    )
    jsonld_context: Optional[List[str]] = Field(None, description="Per-device @context list")

    @property
    def entity_id(self) -> str:
        """Entity id of the device's own entity."""
        if not self.entity_name:
            return self.device_id
        # Only the two known placeholders are substituted; other braces stay literal
        return self.entity_name.replace("{device_id}", self.device_id).replace(
            "{type}", self.type or ""
        )

    def find_mapping(
        self, name: Optional[str], object_id: Optional[str] = None
    ) -> Optional[AttributeMapping]:
        """Find the mapping for a measure, by object_id first, then by name."""
        if object_id:
            for mapping in self.attributes:
                if mapping.object_id == object_id:
                    return mapping
        for mapping in self.attributes:
            if mapping.object_id and mapping.object_id == name:
                return mapping
        for mapping in self.attributes:
            if mapping.name == name and not (object_id and mapping.object_id):
                return mapping
        return None


# ============================================================================
# Translation Models
# ============================================================================

class AttributeUpdate(BaseModel):
    """
    One raw or derived measurement of a device.
    """
    name: Optional[str] = Field(None, description="Attribute name")
    type: Optional[str] = Field(None, description="Declared attribute type")
    value: Any = Field(None, description="Attribute value")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Attribute metadata")
    object_id: Optional[str] = Field(
        None, description="Internal disambiguation key, never sent to the broker"
    )

    def without_internal_keys(self) -> "AttributeUpdate":
        """Copy of the attribute with the disambiguation key removed."""
        return self.model_copy(update={"object_id": None})


class TargetEntity(BaseModel):
    """
    An entity produced by multi-entity expansion.
    Attributes keep arrival order; same-named attributes are kept side by side.
    """
    id: str = Field(..., description="Entity id")
    type: str = Field(..., description="Entity type")
    attributes: List[AttributeUpdate] = Field(default_factory=list, description="Entity attributes")

    def has_attribute(self, name: str) -> bool:
        return any(attr.name == name for attr in self.attributes)

    def get_attribute(self, name: str) -> Optional[AttributeUpdate]:
        for attr in self.attributes:
            if attr.name == name:
                return attr
        return None
