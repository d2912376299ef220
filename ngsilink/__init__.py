"""
NGSILink - NGSI Context Broker translation core for IoT agents

Translates normalized device attribute updates into NGSIv2 or NGSI-LD
entities and drives the update/query exchange with the Context Broker.
"""

__version__ = "0.1.0"

from ngsilink.models.schemas import (
    AttributeMapping,
    AttributeUpdate,
    DataModel,
    TypeInformation,
)
from ngsilink.modules.broker_client import BrokerOutcome
from ngsilink.modules.ngsi_translator import NGSITranslator

__all__ = [
    "__version__",
    "AttributeMapping",
    "AttributeUpdate",
    "BrokerOutcome",
    "DataModel",
    "NGSITranslator",
    "TypeInformation",
]
