"""
NGSILink Attribute Caster Module

This module casts raw attribute values into the native JSON shapes implied
by their declared type: numbers, booleans, temporal values, GeoJSON
geometries and opaque typed values.
"""

import json
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any

import structlog

from ngsilink.utils.exceptions import BadGeocoordinates, BadRequest

logger = structlog.get_logger(__name__)


# ============================================================================
# Type Tags
# ============================================================================

GEOJSON_TYPES: dict[str, str] = {
    "geoproperty": "Point",
    "point": "Point",
    "linestring": "LineString",
    "polygon": "Polygon",
    "multipoint": "MultiPoint",
    "multilinestring": "MultiLineString",
    "multipolygon": "MultiPolygon",
}

TEMPORAL_TYPES: dict[str, str] = {
    "datetime": "DateTime",
    "date": "Date",
    "time": "Time",
}


def normalize_type(declared_type: str) -> str:
    """Lowercase a type tag and drop the NGSIv2 ``geo:`` prefix."""
    tag = declared_type.strip().lower()
    if tag.startswith("geo:") and tag[4:] in GEOJSON_TYPES:
        return tag[4:]
    return tag


def is_geo_type(declared_type: str | None) -> bool:
    return bool(declared_type) and normalize_type(declared_type) in GEOJSON_TYPES


def is_temporal_type(declared_type: str | None) -> bool:
    return bool(declared_type) and normalize_type(declared_type) in TEMPORAL_TYPES


def is_relationship_type(declared_type: str | None) -> bool:
    return bool(declared_type) and normalize_type(declared_type) == "relationship"


# ============================================================================
# Numbers and Booleans
# ============================================================================


def _parse_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _looks_like_float(value: Any) -> bool:
    if isinstance(value, float):
        return not value.is_integer()
    if isinstance(value, str):
        text = value.strip().lower()
        return "." in text or "e" in text
    return False


def cast_integer(value: Any, default: float) -> int | float:
    parsed = _parse_float(value)
    if parsed is None:
        return default
    return int(parsed)


def cast_float(value: Any, default: float) -> float:
    parsed = _parse_float(value)
    return default if parsed is None else parsed


def cast_number(value: Any, default: float) -> int | float:
    if _looks_like_float(value):
        return cast_float(value, default)
    return cast_integer(value, default)


def cast_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


# ============================================================================
# Temporal Values
# ============================================================================


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse ISO-8601 text, epoch seconds or epoch milliseconds into an aware UTC datetime.
    Returns None when the value is not a valid timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        if value > 1e12:
            value = value / 1000  # Milliseconds to seconds
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isascii() and text.isdigit():
            return parse_timestamp(int(text))
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                parsed = datetime.combine(
                    date.today(), time.fromisoformat(text), tzinfo=timezone.utc
                )
            except ValueError:
                return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_datetime(moment: datetime) -> str:
    """Format an aware datetime as ISO-8601 UTC with milliseconds."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


TEMPORAL_FORMATTERS: dict[str, Callable[[datetime], str]] = {
    "datetime": format_datetime,
    "date": lambda moment: moment.strftime("%Y-%m-%d"),
    "time": lambda moment: moment.strftime("%H:%M:%S"),
}


# ============================================================================
# Geometries
# ============================================================================


def _flatten_coordinates(value: Any) -> list[float]:
    if isinstance(value, str):
        items: list[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        items = [value]

    flat: list[float] = []
    for item in items:
        if isinstance(item, (list, tuple)) or (isinstance(item, str) and "," in item):
            flat.extend(_flatten_coordinates(item))
            continue
        number = _parse_float(item)
        if number is None:
            raise BadGeocoordinates(value)
        flat.append(number)
    return flat


def lng_lat_pairs(value: Any) -> list[list[float]]:
    """
    Split a ``lat,lng[,lat,lng...]`` list into GeoJSON ``[lng, lat]`` pairs.
    """
    flat = _flatten_coordinates(value)
    if not flat or len(flat) % 2 != 0:
        logger.error("caster.bad_geocoordinates", value=str(value))
        raise BadGeocoordinates(value)
    return [[flat[i + 1], flat[i]] for i in range(0, len(flat), 2)]


def _is_nested(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and any(isinstance(v, (list, tuple)) for v in value)


def _numeric_tree(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_numeric_tree(v) for v in value]
    number = _parse_float(value)
    if number is None:
        raise BadGeocoordinates(value)
    return number


def cast_geometry(value: Any, tag: str) -> dict[str, Any]:
    """Build a GeoJSON geometry for one of the six geometry tags."""
    geojson_type = GEOJSON_TYPES[tag]

    if isinstance(value, dict) and "coordinates" in value:
        return {"type": value.get("type", geojson_type), "coordinates": value["coordinates"]}
    if isinstance(value, str) and value.strip().startswith(("{", "[")):
        try:
            return cast_geometry(json.loads(value), tag)
        except json.JSONDecodeError as e:
            raise BadGeocoordinates(value) from e

    if geojson_type in ("MultiLineString", "MultiPolygon") and _is_nested(value):
        return {"type": geojson_type, "coordinates": _numeric_tree(value)}

    pairs = lng_lat_pairs(value)
    if geojson_type == "Point":
        if len(pairs) != 1:
            raise BadGeocoordinates(value)
        coordinates: Any = pairs[0]
    elif geojson_type == "Polygon":
        coordinates = [pairs]
    elif geojson_type == "MultiLineString":
        coordinates = [pairs]
    elif geojson_type == "MultiPolygon":
        coordinates = [[pairs]]
    else:
        coordinates = pairs
    return {"type": geojson_type, "coordinates": coordinates}


# ============================================================================
# Attribute Caster
# ============================================================================


@dataclass
class AttributeCaster:
    """
    Casts raw values into broker-understood JSON values.

    The dispatch table is closed: every known tag maps to one strategy and
    anything else falls through to a pass-through that tags the literal type.
    """

    numeric_default: float = 0

    def __post_init__(self):
        self._strategies: dict[str, Callable[[Any, str, bool], Any]] = {
            "integer": lambda v, _t, _ld: cast_integer(v, self.numeric_default),
            "float": lambda v, _t, _ld: cast_float(v, self.numeric_default),
            "number": lambda v, _t, _ld: cast_number(v, self.numeric_default),
            "boolean": lambda v, _t, _ld: cast_boolean(v),
            "string": self._passthrough,
            "text": self._passthrough,
            "property": self._passthrough,
            "relationship": self._passthrough,
            "array": self._cast_json,
            "object": self._cast_json,
            "structuredvalue": self._cast_json,
            "json": self._cast_json,
        }
        for tag in TEMPORAL_TYPES:
            self._strategies[tag] = self._cast_temporal
        for tag in GEOJSON_TYPES:
            self._strategies[tag] = lambda v, t, _ld: cast_geometry(v, t)

    def cast(self, value: Any, declared_type: str, linked_data: bool = False) -> Any:
        """
        Cast a value according to its declared type.

        Args:
            value: Raw value
            declared_type: Type tag of the attribute (case-insensitive)
            linked_data: Whether the value is encoded for the linked-data model

        Returns:
            The native JSON value
        """
        tag = normalize_type(declared_type)
        strategy = self._strategies.get(tag)
        if strategy is None:
            return self._fallback(value, declared_type, linked_data)
        return strategy(value, tag, linked_data)

    @staticmethod
    def _passthrough(value: Any, _tag: str, _linked_data: bool) -> Any:
        return value

    @staticmethod
    def _fallback(value: Any, declared_type: str, linked_data: bool) -> Any:
        if linked_data:
            return {"@type": declared_type, "@value": value}
        return value

    @staticmethod
    def _cast_json(value: Any, _tag: str, _linked_data: bool) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value

    @staticmethod
    def _cast_temporal(value: Any, tag: str, linked_data: bool) -> Any:
        moment = parse_timestamp(value)
        if moment is None:
            raise BadRequest(f"invalid {TEMPORAL_TYPES[tag]} value: {value}")
        formatted = TEMPORAL_FORMATTERS[tag](moment)
        if linked_data:
            return {"@type": TEMPORAL_TYPES[tag], "@value": formatted}
        return formatted
