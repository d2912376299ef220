"""
NGSILink Core Modules

This package contains the translation pipeline of the NGSILink system:
- attribute_caster: Type-driven value casting
- expression_evaluator: Legacy and JEXL expression dialects
- multi_entity: Fan-out of attributes across target entities
- protocol_encoder: NGSIv2 and NGSI-LD envelopes, timestamp policy
- broker_client: Context Broker request/response exchange
- alarm_gate: Shared broker reachability alarm
- ngsi_translator: Pipeline orchestration
"""

from ngsilink.modules.alarm_gate import (
    ORION_ALARM,
    AlarmGate,
    AlarmSink,
    AlarmState,
)
from ngsilink.modules.attribute_caster import (
    AttributeCaster,
    cast_geometry,
    parse_timestamp,
)
from ngsilink.modules.broker_client import (
    BrokerExchangeClient,
    BrokerOutcome,
    HTTPXTransport,
    Transport,
    TransportResponse,
)
from ngsilink.modules.expression_evaluator import (
    ExpressionEvaluator,
    JexlExpressionEvaluator,
    LegacyExpressionEvaluator,
    get_evaluator,
)
from ngsilink.modules.multi_entity import (
    MultiEntityExpander,
    join_entity_name,
)
from ngsilink.modules.ngsi_translator import NGSITranslator
from ngsilink.modules.protocol_encoder import (
    LegacyEncoder,
    LinkedDataEncoder,
    apply_timestamp,
    select_data_model,
)

__all__ = [
    # Alarm gate
    "ORION_ALARM",
    "AlarmGate",
    "AlarmSink",
    "AlarmState",
    # Caster
    "AttributeCaster",
    "cast_geometry",
    "parse_timestamp",
    # Broker client
    "BrokerExchangeClient",
    "BrokerOutcome",
    "HTTPXTransport",
    "Transport",
    "TransportResponse",
    # Expressions
    "ExpressionEvaluator",
    "JexlExpressionEvaluator",
    "LegacyExpressionEvaluator",
    "get_evaluator",
    # Multi-entity
    "MultiEntityExpander",
    "join_entity_name",
    # Encoders
    "LegacyEncoder",
    "LinkedDataEncoder",
    "apply_timestamp",
    "select_data_model",
    # Translator
    "NGSITranslator",
]
