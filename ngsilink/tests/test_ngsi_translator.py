"""
Integration tests for the NGSI Translator.

Each test runs the whole pipeline against a recording fake Context Broker.
"""

import pytest

from ngsilink import __version__
from ngsilink.models.schemas import (
    AttributeMapping,
    AttributeUpdate,
    DataModel,
    ExpressionLanguage,
    TypeInformation,
)
from ngsilink.modules.ngsi_translator import NGSITranslator
from ngsilink.utils.config import DEFAULT_JSONLD_CONTEXT, MetricsSettings
from ngsilink.utils.exceptions import (
    BadRequest,
    BadTimestamp,
    EntityGenericError,
    TypeNotFound,
)
from ngsilink.utils.metrics import get_metrics


def device_with(*mappings: AttributeMapping, **extra) -> TypeInformation:
    return TypeInformation(
        device_id="dev1",
        type="Device",
        service="smartcity",
        subservice="/",
        attributes=list(mappings),
        **extra,
    )


class TestTranslate:
    """Tests for the pure translation pipeline."""

    @pytest.mark.asyncio
    async def test_sensor_example(self, make_translator, linked_data_settings, sensor_type_information):
        translator = make_translator(linked_data_settings)
        attributes = [AttributeUpdate(name="t", type="float", value="21.5")]

        envelopes = translator.translate(attributes, sensor_type_information)

        assert envelopes == [
            {
                "@context": [DEFAULT_JSONLD_CONTEXT],
                "id": "urn:ngsi-ld:Sensor:s1",
                "type": "Sensor",
                "t": {"type": "Property", "value": 21.5},
            }
        ]

    @pytest.mark.asyncio
    async def test_device_context(self, make_translator, linked_data_settings, sensor_type_information):
        translator = make_translator(linked_data_settings)
        device = sensor_type_information.model_copy(
            update={"jsonld_context": ["https://example.org/ctx.jsonld"]}
        )

        envelopes = translator.translate([AttributeUpdate(name="t", type="Number", value=1)], device)

        assert envelopes[0]["@context"] == ["https://example.org/ctx.jsonld"]

    @pytest.mark.asyncio
    async def test_mappings_rename_and_type(self, make_translator, legacy_settings, weather_station):
        translator = make_translator(legacy_settings)

        envelopes = translator.translate(
            [AttributeUpdate(name="t", type="Text", value="21.5")], weather_station
        )

        assert envelopes == [
            {"id": "ws01", "type": "WeatherStation", "temperature": {"value": 21.5, "type": "Number"}}
        ]

    @pytest.mark.asyncio
    async def test_static_attributes(self, make_translator, legacy_settings):
        translator = make_translator(legacy_settings)
        device = device_with(static_attributes=[{"name": "model", "type": "Text", "value": "WS-1"}])

        envelopes = translator.translate([AttributeUpdate(name="t", type="Number", value=1)], device)

        assert envelopes[0]["model"] == {"value": "WS-1", "type": "Text"}

    @pytest.mark.asyncio
    async def test_missing_type_is_rejected(self, make_translator, legacy_settings):
        translator = make_translator(legacy_settings)
        with pytest.raises(BadRequest):
            translator.translate([AttributeUpdate(name="x", value=1)], device_with())

    @pytest.mark.asyncio
    async def test_mixed_mode(self, make_translator, settings_for):
        translator = make_translator(settings_for(DataModel.MIXED))
        attributes = [AttributeUpdate(name="t", type="Number", value=1)]

        linked = translator.translate(attributes, device_with(data_model=DataModel.LINKED_DATA))
        legacy = translator.translate(attributes, device_with())

        assert linked[0]["id"] == "urn:ngsi-ld:Device:dev1"
        assert legacy[0]["id"] == "dev1"


class TestExpressions:
    """Tests for expression evaluation inside the pipeline."""

    @pytest.mark.asyncio
    async def test_legacy_expression(self, make_translator, legacy_settings):
        translator = make_translator(legacy_settings)
        device = device_with(
            AttributeMapping(object_id="t", name="temperature", type="Number", expression="${@t * 2}")
        )

        envelopes = translator.translate([AttributeUpdate(name="t", value="10")], device)

        assert envelopes[0]["temperature"]["value"] == 20

    @pytest.mark.asyncio
    async def test_zero_text_in_both_dialects(self, make_translator, legacy_settings):
        translator = make_translator(legacy_settings)
        for language, expression in [
            (ExpressionLanguage.LEGACY, "${@t + 0}"),
            (ExpressionLanguage.JEXL, "t + 0"),
        ]:
            device = device_with(
                AttributeMapping(object_id="t", name="t", type="Number", expression=expression),
                expression_language=language,
            )
            envelopes = translator.translate([AttributeUpdate(name="t", value="0")], device)
            assert envelopes[0]["t"]["value"] == 0

    @pytest.mark.asyncio
    async def test_jexl_expression(self, make_translator, legacy_settings):
        translator = make_translator(legacy_settings)
        device = device_with(
            AttributeMapping(
                object_id="t",
                name="status",
                type="Text",
                expression="t > 15 ? 'warm' : 'cold'",
            ),
            expression_language=ExpressionLanguage.JEXL,
        )

        envelopes = translator.translate([AttributeUpdate(name="t", value=20)], device)

        assert envelopes[0]["status"] == {"value": "warm", "type": "Text"}

    @pytest.mark.asyncio
    async def test_computed_attribute(self, make_translator, legacy_settings):
        translator = make_translator(legacy_settings)
        device = device_with(
            AttributeMapping(name="fahrenheit", type="Number", expression="${@t * 1.8 + 32}")
        )

        envelopes = translator.translate([AttributeUpdate(name="t", type="Number", value="10")], device)

        assert envelopes[0]["t"]["value"] == 10
        assert envelopes[0]["fahrenheit"]["value"] == 50

    @pytest.mark.asyncio
    async def test_none_result_drops_attribute(self, make_translator, legacy_settings):
        translator = make_translator(legacy_settings)
        device = device_with(
            AttributeMapping(object_id="h", name="humidity", type="Number"),
            AttributeMapping(
                object_id="t", name="temperature", type="Number", expression="${@missing * 2}"
            ),
        )

        envelopes = translator.translate(
            [AttributeUpdate(name="t", value="10"), AttributeUpdate(name="h", value="40")], device
        )

        assert "temperature" not in envelopes[0]
        assert envelopes[0]["humidity"]["value"] == 40

    @pytest.mark.asyncio
    async def test_none_result_for_geometry_is_rejected(self, make_translator, legacy_settings):
        translator = make_translator(legacy_settings)
        device = device_with(
            AttributeMapping(
                object_id="loc", name="location", type="geo:point", expression="${@missing}"
            )
        )

        with pytest.raises(BadRequest):
            translator.translate([AttributeUpdate(name="loc", value="40.4,-3.7")], device)


class TestTranslateAndSend:
    """Tests for the update cycle."""

    @pytest.mark.asyncio
    async def test_linked_data_update(
        self, make_translator, broker, linked_data_settings, sensor_type_information
    ):
        translator = make_translator(linked_data_settings)
        attributes = [AttributeUpdate(name="t", type="float", value="21.5")]

        outcome = await translator.translate_and_send(attributes, sensor_type_information)

        assert outcome.kind == "updated"
        assert outcome.applied == ["urn:ngsi-ld:Sensor:s1"]
        request = broker.requests[0]
        assert request.method == "PATCH"
        assert request.url.path == "/ngsi-ld/v1/entities/urn:ngsi-ld:Sensor:s1/attrs"
        assert request.headers["Content-Type"] == "application/ld+json"
        assert request.headers["NGSILD-Tenant"] == "smartcity"
        assert broker.json_bodies()[0] == {
            "@context": [DEFAULT_JSONLD_CONTEXT],
            "t": {"type": "Property", "value": 21.5},
        }

    @pytest.mark.asyncio
    async def test_legacy_timestamp_injection(
        self, make_translator, broker, settings_for, sensor_type_information
    ):
        translator = make_translator(settings_for(DataModel.LEGACY, timestamp=True))

        await translator.translate_and_send(
            [AttributeUpdate(name="t", type="Number", value=1)], sensor_type_information
        )

        body = broker.json_bodies()[0]
        assert body["TimeInstant"]["type"] == "DateTime"
        assert body["t"]["metadata"]["TimeInstant"]["value"] == body["TimeInstant"]["value"]

    @pytest.mark.asyncio
    async def test_linked_data_observed_at(
        self, make_translator, broker, settings_for, sensor_type_information
    ):
        translator = make_translator(settings_for(DataModel.LINKED_DATA, timestamp=True))

        await translator.translate_and_send(
            [AttributeUpdate(name="t", type="Number", value=1)], sensor_type_information
        )

        body = broker.json_bodies()[0]
        assert "TimeInstant" not in body
        assert body["t"]["observedAt"].endswith("Z")

    @pytest.mark.asyncio
    async def test_device_timestamp_overrides_global(
        self, make_translator, broker, settings_for, sensor_type_information
    ):
        translator = make_translator(settings_for(DataModel.LEGACY, timestamp=True))
        device = sensor_type_information.model_copy(update={"timestamp": False})

        await translator.translate_and_send([AttributeUpdate(name="t", type="Number", value=1)], device)

        assert "TimeInstant" not in broker.json_bodies()[0]

    @pytest.mark.asyncio
    async def test_invalid_timestamp(self, make_translator, broker, settings_for, sensor_type_information):
        translator = make_translator(settings_for(DataModel.LEGACY, timestamp=True))
        attributes = [
            AttributeUpdate(name="t", type="Number", value=1),
            AttributeUpdate(name="TimeInstant", type="DateTime", value="yesterday"),
        ]

        outcome = await translator.translate_and_send(attributes, sensor_type_information)

        assert isinstance(outcome.error, BadTimestamp)
        assert broker.requests == []

    @pytest.mark.asyncio
    async def test_multi_entity_update(
        self, make_translator, broker, legacy_settings, weather_station, sample_attributes
    ):
        translator = make_translator(legacy_settings)

        outcome = await translator.translate_and_send(sample_attributes, weather_station)

        assert outcome.applied == ["ws01", "Barometer01"]
        assert [str(r.url) for r in broker.requests] == [
            "http://orion:1026/v2/entities/ws01/attrs?type=WeatherStation",
            "http://orion:1026/v2/entities/Barometer01/attrs?type=Barometer",
        ]
        assert broker.json_bodies() == [
            {"temperature": {"value": 21.5, "type": "Number"}},
            {"pressure": {"value": 1013, "type": "Number"}},
        ]

    @pytest.mark.asyncio
    async def test_failure_on_second_entity(
        self, make_translator, broker, legacy_settings, weather_station, sample_attributes
    ):
        translator = make_translator(legacy_settings)
        broker.responses = [(204, None), (422, {"error": "Unprocessable"})]

        outcome = await translator.translate_and_send(sample_attributes, weather_station)

        assert outcome.kind == "error"
        assert isinstance(outcome.error, EntityGenericError)
        assert outcome.applied == ["ws01"]

    @pytest.mark.asyncio
    async def test_duplicate_attributes_as_datasets(self, make_translator, broker, linked_data_settings):
        translator = make_translator(linked_data_settings)
        device = device_with(
            AttributeMapping(object_id="t1", name="temperature", type="Number"),
            AttributeMapping(object_id="t2", name="temperature", type="Number"),
        )

        await translator.translate_and_send(
            [AttributeUpdate(name="t1", value="20"), AttributeUpdate(name="t2", value="22")], device
        )

        assert broker.json_bodies()[0]["temperature"] == [
            {"type": "Property", "value": 20},
            {"type": "Property", "value": 22, "datasetId": "urn:ngsi-ld:Dataset:t2"},
        ]

    @pytest.mark.asyncio
    async def test_nothing_to_send(self, make_translator, broker, legacy_settings):
        translator = make_translator(legacy_settings)

        outcome = await translator.translate_and_send([], device_with())

        assert outcome.kind == "updated"
        assert outcome.applied == []
        assert broker.requests == []

    @pytest.mark.asyncio
    async def test_linked_data_update_without_type(self, make_translator, broker, linked_data_settings):
        translator = make_translator(linked_data_settings)
        device = TypeInformation(device_id="s1", service="smartcity")

        outcome = await translator.translate_and_send(
            [AttributeUpdate(name="t", type="Number", value=1)], device
        )

        assert outcome.kind == "error"
        assert isinstance(outcome.error, TypeNotFound)
        assert broker.requests == []

    @pytest.mark.asyncio
    async def test_entity_name_with_braces(self, make_translator, broker, legacy_settings):
        translator = make_translator(legacy_settings)
        device = TypeInformation(
            device_id="s1", type="Sensor", service="smartcity", entity_name="Sensor:{room-1}"
        )

        outcome = await translator.translate_and_send(
            [AttributeUpdate(name="t", type="Number", value=1)], device
        )

        assert outcome.ok
        assert outcome.applied == ["Sensor:{room-1}"]
        assert len(broker.requests) == 1

    @pytest.mark.asyncio
    async def test_token_is_forwarded(self, make_translator, broker, legacy_settings, sensor_type_information):
        translator = make_translator(legacy_settings)

        await translator.translate_and_send(
            [AttributeUpdate(name="t", type="Number", value=1)], sensor_type_information, token="tk"
        )

        assert broker.requests[0].headers["X-Auth-Token"] == "tk"


class TestTranslateAndQuery:
    """Tests for the query cycle."""

    @pytest.mark.asyncio
    async def test_query(self, make_translator, broker, legacy_settings, sensor_type_information):
        translator = make_translator(legacy_settings)
        broker.responses = [(200, {"t": {"type": "Number", "value": 21.5}})]

        outcome = await translator.translate_and_query(["t"], sensor_type_information)

        assert outcome.kind == "queried"
        assert outcome.payload == {"t": {"type": "Number", "value": 21.5}}
        assert broker.requests[0].url.path == "/v2/entities/s1/attrs"

    @pytest.mark.asyncio
    async def test_linked_data_query(
        self, make_translator, broker, linked_data_settings, sensor_type_information
    ):
        translator = make_translator(linked_data_settings)
        broker.responses = [(200, {"id": "urn:ngsi-ld:Sensor:s1"})]

        outcome = await translator.translate_and_query(["t"], sensor_type_information)

        assert outcome.ok
        assert broker.requests[0].url.path == "/ngsi-ld/v1/entities/urn:ngsi-ld:Sensor:s1"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_owned_transport_is_closed(self, legacy_settings, metrics):
        async with NGSITranslator(settings=legacy_settings, metrics=metrics) as translator:
            http = translator.client.transport.client
            assert not http.is_closed
        assert http.is_closed

    @pytest.mark.asyncio
    async def test_from_settings_without_metrics(self, settings_for, transport):
        settings = settings_for(DataModel.LEGACY)
        settings.metrics = MetricsSettings(enabled=False)

        translator = NGSITranslator.from_settings(settings, transport=transport)

        assert translator.metrics is not get_metrics()
        info = translator.metrics.registry.get_sample_value(
            "ngsilink_info", {"version": __version__, "environment": "development"}
        )
        assert info == 1.0
        assert translator.client.transport is transport
