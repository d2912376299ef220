"""
Pytest configuration and shared fixtures.
"""

import json

import httpx
import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from ngsilink.models.schemas import (
    AttributeMapping,
    AttributeUpdate,
    DataModel,
    TypeInformation,
)
from ngsilink.modules.alarm_gate import AlarmGate
from ngsilink.modules.broker_client import HTTPXTransport
from ngsilink.modules.ngsi_translator import NGSITranslator
from ngsilink.utils.config import (
    ContextBrokerSettings,
    Settings,
    TranslationSettings,
)
from ngsilink.utils.metrics import NGSILinkMetrics


class RecordingBroker:
    """
    Fake Context Broker for httpx.MockTransport.
    Answers from a queue of (status, body) pairs and records every request.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0) if self.responses else (204, None)
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def json_bodies(self) -> list:
        return [json.loads(r.content) if r.content else None for r in self.requests]


@pytest.fixture
def metrics() -> NGSILinkMetrics:
    """Metrics on a private registry so tests never share counters."""
    return NGSILinkMetrics(registry=CollectorRegistry())


@pytest.fixture
def alarm_gate(metrics) -> AlarmGate:
    return AlarmGate(metrics=metrics)


@pytest.fixture
def broker() -> RecordingBroker:
    return RecordingBroker()


@pytest_asyncio.fixture
async def transport(broker):
    client = httpx.AsyncClient(transport=httpx.MockTransport(broker))
    yield HTTPXTransport(client)
    await client.aclose()


def make_settings(data_model: DataModel = DataModel.LEGACY, **translation) -> Settings:
    return Settings(
        context_broker=ContextBrokerSettings(url="http://orion:1026", data_model=data_model),
        translation=TranslationSettings(**translation),
    )


@pytest.fixture
def settings_for():
    """Settings factory: data model plus translation overrides."""
    return make_settings


@pytest.fixture
def legacy_settings() -> Settings:
    return make_settings(DataModel.LEGACY)


@pytest.fixture
def linked_data_settings() -> Settings:
    return make_settings(DataModel.LINKED_DATA)


@pytest.fixture
def make_translator(transport, alarm_gate, metrics):
    """Build a translator wired to the recording broker."""

    def factory(settings: Settings) -> NGSITranslator:
        return NGSITranslator(
            settings=settings,
            transport=transport,
            alarm_gate=alarm_gate,
            metrics=metrics,
        )

    return factory


@pytest.fixture
def sensor_type_information() -> TypeInformation:
    """Device s1 of type Sensor, without mappings."""
    return TypeInformation(
        device_id="s1",
        type="Sensor",
        service="smartcity",
        subservice="/environment",
    )


@pytest.fixture
def weather_station() -> TypeInformation:
    """Device with one attribute routed to a second entity."""
    return TypeInformation(
        device_id="ws01",
        type="WeatherStation",
        service="smartcity",
        subservice="/weather",
        attributes=[
            AttributeMapping(object_id="t", name="temperature", type="Number"),
            AttributeMapping(
                object_id="p",
                name="pressure",
                type="Number",
                entity_name="Barometer01",
                entity_type="Barometer",
            ),
        ],
    )


@pytest.fixture
def sample_attributes() -> list[AttributeUpdate]:
    return [
        AttributeUpdate(name="t", type="Number", value="21.5"),
        AttributeUpdate(name="p", type="Number", value="1013"),
    ]
