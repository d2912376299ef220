"""
NGSILink Multi-Entity Expander Module

This module distributes the attributes of a single device update across the
device's own entity and any other entities bound through the attribute
mappings of the device.
"""

from dataclasses import dataclass

import structlog

from ngsilink.models.schemas import (
    AttributeMapping,
    AttributeUpdate,
    TargetEntity,
    TypeInformation,
)

logger = structlog.get_logger(__name__)

CONJUNCTION_NONE = "none"
CONJUNCTION_SPACE = "space"


def join_entity_name(device_id: str, entity_name: str, conjunction: str | None) -> str:
    """
    Combine the device id and an attribute-supplied entity name.

    ``None`` and ``"none"`` use the entity name as is; ``"space"`` joins with a
    blank (deprecated); any other string is used as the separator.
    """
    if entity_name.startswith("urn:"):
        return entity_name
    if conjunction is None or conjunction.lower() == CONJUNCTION_NONE:
        return entity_name
    if conjunction.lower() == CONJUNCTION_SPACE:
        logger.warning(
            "multi_entity.deprecated_space_conjunction",
            device_id=device_id,
            entity_name=entity_name,
        )
        return f"{device_id} {entity_name}"
    return f"{device_id}{conjunction}{entity_name}"


@dataclass
class MultiEntityExpander:
    """
    Partitions the attributes of one update into target entities.

    Conjunction precedence: attribute mapping, then device, then ``default_conjunction``.
    """

    default_conjunction: str | None = None

    def resolve_conjunction(
        self, mapping: AttributeMapping, type_information: TypeInformation
    ) -> str | None:
        if mapping.name_conjunction is not None:
            return mapping.name_conjunction
        if type_information.name_conjunction is not None:
            return type_information.name_conjunction
        return self.default_conjunction

    def expand(
        self,
        attributes: list[AttributeUpdate],
        type_information: TypeInformation,
    ) -> list[TargetEntity]:
        """
        Distribute attributes across target entities.

        The device entity always comes first; other entities follow in the
        order their first attribute arrived. Attribute order is preserved and
        same-named attributes from different sources are all kept.
        """
        device_entity = TargetEntity(
            id=type_information.entity_id,
            type=type_information.type or "",
        )
        entities: dict[tuple[str, str], TargetEntity] = {
            (device_entity.id, device_entity.type): device_entity
        }

        for attribute in attributes:
            mapping = type_information.find_mapping(attribute.name, attribute.object_id)
            target = device_entity

            if mapping is not None and mapping.entity_name:
                entity_id = join_entity_name(
                    type_information.device_id,
                    mapping.entity_name,
                    self.resolve_conjunction(mapping, type_information),
                )
                entity_type = mapping.entity_type or device_entity.type
                key = (entity_id, entity_type)
                if key not in entities:
                    entities[key] = TargetEntity(id=entity_id, type=entity_type)
                target = entities[key]

            if attribute.object_id is None and mapping is not None and mapping.object_id:
                attribute = attribute.model_copy(update={"object_id": mapping.object_id})

            index = self._same_source_index(target, attribute)
            if index is None:
                target.attributes.append(attribute)
            else:
                target.attributes[index] = attribute

        logger.debug(
            "multi_entity.expanded",
            device_id=type_information.device_id,
            entities=[entity.id for entity in entities.values()],
        )
        return list(entities.values())

    @staticmethod
    def _same_source_index(target: TargetEntity, attribute: AttributeUpdate) -> int | None:
        """
        Index of an attribute with the same name and disambiguator, if any.
        Same-named attributes with different disambiguators are siblings, not repeats.
        """
        for index, existing in enumerate(target.attributes):
            if existing.name != attribute.name:
                continue
            if existing.object_id == attribute.object_id:
                return index
            logger.debug(
                "multi_entity.duplicate_attribute",
                entity_id=target.id,
                name=attribute.name,
                object_ids=[existing.object_id, attribute.object_id],
            )
        return None
