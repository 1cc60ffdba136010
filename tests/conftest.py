import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest
from fastapi.testclient import TestClient

from sensorhub.db import Store
from sensorhub.main import create_app
from sensorhub.mqtt_handler import MqttBridge
from sensorhub.settings import Settings


class FakeInfo:
    def __init__(self, rc=mqtt.MQTT_ERR_SUCCESS, published=True):
        self.rc = rc
        self.published = published

    def wait_for_publish(self, timeout=None):
        return None

    def is_published(self):
        return self.published


class FakeMqttClient:
    """Stands in for paho's Client: records publishes and subscriptions."""

    def __init__(self, connected=True):
        self.connected = connected
        self.acknowledge = True
        self.published = []
        self.subscriptions = []
        self._lock = threading.Lock()

    def is_connected(self):
        return self.connected

    def publish(self, topic, payload=None, qos=0, retain=False):
        with self._lock:
            self.published.append((topic, payload, qos, retain))
        return FakeInfo(published=self.acknowledge)

    def subscribe(self, topic, qos=0):
        self.subscriptions.append((topic, qos))
        return mqtt.MQTT_ERR_SUCCESS, len(self.subscriptions)

    def disconnect(self):
        self.connected = False

    def loop_stop(self):
        pass

    def to(self, topic):
        return [p for p in self.published if p[0] == topic]


class RecordingSink:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def publish(self, event):
        with self._lock:
            self.events.append(event)

    def of_kind(self, kind):
        return [e for e in self.events if e["kind"] == kind]


class TickingClock:
    def __init__(self, start=datetime(2025, 3, 1, 8, 0, 0, tzinfo=timezone.utc)):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.now += timedelta(seconds=1)
            return self.now


def message(topic, payload):
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return SimpleNamespace(topic=topic, payload=payload)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'sensorhub-test.db'}",
        db_retries=3,
        db_retry_backoff=0,
        mqtt_enabled=False,
        api_token=None,
        log_level="WARNING",
    )


@pytest.fixture
def store(settings):
    s = Store.from_settings(settings)
    s.init_db()
    yield s
    s.dispose()


@pytest.fixture
def fake_client():
    return FakeMqttClient()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def bridge(store, sink, settings, fake_client, clock):
    b = MqttBridge(store, sink, settings, clock=clock)
    b.attach(fake_client)
    return b


@pytest.fixture
def app(settings, fake_client):
    return create_app(settings, mqtt_client=fake_client)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
