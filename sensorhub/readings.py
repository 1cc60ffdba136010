"""
Sensor field rules shared by ingestion and search.

Every stored value goes through `quantize` before insert, and every search
value goes through the same function before comparison, so a value the
dashboard displays is always a value that can be searched for.
"""

import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Callable

from dateutil import parser as dtparser

from .errors import MalformedMessage, ValidationError

# field -> (payload key, decimal places); light is truncated to an integer
FIELDS: dict[str, tuple[str, int]] = {
    "temperature": ("temp", 1),
    "humidity": ("humi", 1),
    "light": ("light", 0),
    "rainfall": ("rain_mm", 2),
}

FIELD_ALIASES = {
    "temperature": "temperature", "temp": "temperature",
    "humidity": "humidity", "humi": "humidity",
    "light": "light",
    "rainfall": "rainfall", "rain": "rainfall", "rain_mm": "rainfall",
}

TIMESTAMP_KEYS = ("ts", "timestamp")

# anything beyond this is a firmware glitch, not a reading
MAX_ABS_VALUE = 1e9


def resolve_field(name: str) -> str:
    field = FIELD_ALIASES.get(str(name or "").strip().lower())
    if field is None:
        raise ValidationError("Invalid field. Use temperature | humidity | light | rainfall")
    return field


def quantize(field: str, value: float) -> float | int:
    """Round to display precision: half-up on the written decimal, light truncated."""
    d = Decimal(repr(float(value)))
    if field == "light":
        return int(d.to_integral_value(rounding=ROUND_DOWN))
    places = FIELDS[field][1]
    return float(d.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP))


def step(field: str) -> float:
    return 10.0 ** -FIELDS[field][1]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Aware UTC; a naive value is taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    return None if dt is None else to_utc(dt)


def parse_timestamp(value: Any) -> datetime:
    """ISO-8601 string or epoch seconds/milliseconds -> aware UTC."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e12 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    return to_utc(dtparser.isoparse(str(value)))


def parse_query_time(value: str | None, name: str) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        return to_utc(dtparser.parse(value))
    except (ValueError, OverflowError):
        raise ValidationError(f"Invalid {name} timestamp: {value!r}")


def _number(payload: dict, key: str) -> float:
    raw = payload.get(key)
    if raw is None:
        raise MalformedMessage(f"missing field {key!r}")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise MalformedMessage(f"field {key!r} is not a number: {raw!r}")
    value = float(raw)
    if not math.isfinite(value):
        raise MalformedMessage(f"field {key!r} is not finite: {raw!r}")
    if abs(value) > MAX_ABS_VALUE:
        raise MalformedMessage(f"field {key!r} is out of range: {raw!r}")
    return value


@dataclass
class SensorReading:
    device_id: str
    temperature: float
    humidity: float
    light: int
    rainfall: float
    created_at: datetime
    clock_assigned: bool = False


def decode_payload(raw: bytes | str) -> dict:
    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        payload = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"invalid JSON: {e}")
    if not isinstance(payload, dict):
        raise MalformedMessage("payload is not a JSON object")
    return payload


def parse_sensor_payload(
    payload: dict,
    default_device: str,
    clock: Callable[[], datetime] = utcnow,
) -> SensorReading:
    values = {field: _number(payload, key) for field, (key, _) in FIELDS.items()}

    device_id = payload.get("deviceId") or default_device
    if not isinstance(device_id, str):
        raise MalformedMessage(f"deviceId is not a string: {device_id!r}")

    created_at = None
    for key in TIMESTAMP_KEYS:
        if payload.get(key) not in (None, ""):
            try:
                created_at = parse_timestamp(payload[key])
            except (ValueError, OverflowError, OSError):
                created_at = None
            break

    return SensorReading(
        device_id=device_id,
        temperature=quantize("temperature", values["temperature"]),
        humidity=quantize("humidity", values["humidity"]),
        light=quantize("light", values["light"]),
        rainfall=quantize("rainfall", values["rainfall"]),
        created_at=created_at or to_utc(clock()),
        clock_assigned=created_at is None,
    )


def parse_search_value(raw: str | None) -> float:
    if raw is None or raw.strip() == "":
        raise ValidationError("value is required")
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(f"value must be a number: {raw!r}")
    if not math.isfinite(value) or abs(value) > MAX_ABS_VALUE:
        raise ValidationError(f"value is out of range: {raw!r}")
    return value
