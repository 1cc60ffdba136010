import json
from datetime import datetime, timezone

import pytest

from sensorhub.devices import normalize_status, resolve_actuator
from sensorhub.errors import MalformedMessage, ValidationError
from sensorhub.readings import (
    decode_payload, parse_query_time, parse_sensor_payload, parse_timestamp, quantize, resolve_field,
)

FIXED = datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


def _payload(**overrides):
    p = {"temp": 24.97, "humi": 61.04, "light": 312.9, "rain_mm": 1.005}
    p.update(overrides)
    return p


@pytest.mark.parametrize("field,value,expected", [
    ("temperature", 24.97, 25.0),
    ("temperature", 24.95, 25.0),
    ("temperature", 24.94, 24.9),
    ("temperature", -3.25, -3.3),
    ("humidity", 55.55, 55.6),
    ("rainfall", 1.005, 1.01),
    ("rainfall", 0.004, 0.0),
    ("light", 312.9, 312),
    ("light", 0.99, 0),
])
def test_quantize_display_precision(field, value, expected):
    assert quantize(field, value) == expected


def test_light_quantizes_to_int():
    assert isinstance(quantize("light", 100.7), int)


def test_resolve_field_aliases():
    assert resolve_field("temp") == "temperature"
    assert resolve_field("HUMI") == "humidity"
    assert resolve_field("rain") == "rainfall"
    with pytest.raises(ValidationError):
        resolve_field("pressure")


def test_parse_sensor_payload_rounds_and_defaults_device():
    reading = parse_sensor_payload(_payload(), "esp32-001", clock=lambda: FIXED)
    assert reading.device_id == "esp32-001"
    assert (reading.temperature, reading.humidity, reading.light, reading.rainfall) == (25.0, 61.0, 312, 1.01)
    assert reading.created_at == FIXED
    assert reading.clock_assigned


def test_parse_sensor_payload_uses_capture_timestamp():
    reading = parse_sensor_payload(
        _payload(deviceId="esp32-xyz", ts="2025-02-03T10:00:00+07:00"), "esp32-001", clock=lambda: FIXED,
    )
    assert reading.device_id == "esp32-xyz"
    assert reading.created_at == datetime(2025, 2, 3, 3, 0, 0, tzinfo=timezone.utc)
    assert not reading.clock_assigned


def test_unparseable_timestamp_falls_back_to_clock():
    reading = parse_sensor_payload(_payload(ts="yesterday-ish"), "esp32-001", clock=lambda: FIXED)
    assert reading.created_at == FIXED
    assert reading.clock_assigned


@pytest.mark.parametrize("bad", [
    {"humi": 50, "light": 1, "rain_mm": 0},
    _payload(temp=None),
    _payload(humi="61"),
    _payload(light=True),
    _payload(rain_mm=float("nan")),
    _payload(temp=float("inf")),
])
def test_parse_sensor_payload_rejects_missing_or_non_finite(bad):
    with pytest.raises(MalformedMessage):
        parse_sensor_payload(bad, "esp32-001", clock=lambda: FIXED)


def test_decode_payload_rejects_garbage():
    with pytest.raises(MalformedMessage):
        decode_payload(b"{not json")
    with pytest.raises(MalformedMessage):
        decode_payload(json.dumps([1, 2, 3]).encode())
    assert decode_payload(b'{"temp": 1}') == {"temp": 1}


def test_parse_timestamp_epoch_seconds_and_millis():
    assert parse_timestamp(1700000000) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert parse_timestamp(1700000000000) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def test_parse_query_time():
    assert parse_query_time(None, "since") is None
    assert parse_query_time("2025-01-01T00:00:00Z", "since") == FIXED
    with pytest.raises(ValidationError):
        parse_query_time("not a date", "since")


def test_normalize_status():
    assert normalize_status(b" on \n") == "ON"
    assert normalize_status("Off") == "OFF"
    assert normalize_status(b"toggle") is None
    assert normalize_status(b"\xff") is None


def test_resolve_actuator_by_name_or_slug():
    assert resolve_actuator("đèn").slug == "led1"
    assert resolve_actuator("LED2").name == "Quạt"
    assert resolve_actuator("Điều hòa").control_topic == "control/led3"
    with pytest.raises(ValidationError):
        resolve_actuator("heater")
