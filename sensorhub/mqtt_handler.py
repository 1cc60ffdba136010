import logging
import threading
import time
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Callable, Optional, Protocol

import paho.mqtt.client as mqtt
from sqlmodel import select

from .db import Store
from .devices import ACTUATORS, Actuator, by_slug, normalize_status
from .errors import MalformedMessage, StoreUnavailable, TransportUnavailable
from .models import DeviceCommand, Telemetry
from .readings import TIMESTAMP_KEYS, as_utc, decode_payload, parse_sensor_payload, to_utc, utcnow
from .settings import Settings

log = logging.getLogger("mqtt")

SENSOR_TOPIC = "dataSensor"
STATE_TOPIC = "device/+/state"
GET_STATE_TOPIC = "devices/+/get_state"
RAIN_THRESHOLD_TOPIC = "config/rain_threshold"


class EventSink(Protocol):
    def publish(self, event: dict) -> None: ...


def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except Exception:
        return -1


def _rc_str(rc) -> str:
    name = getattr(rc, "getName", None)
    if callable(name):
        try:
            return f"{_rc_int(rc)}:{name()}"
        except Exception:
            pass
    return str(getattr(rc, "value", rc))


def telemetry_event(row: Telemetry) -> dict:
    return {
        "kind": "telemetry",
        "id": row.id,
        "deviceId": row.device_id,
        "temperature": row.temperature,
        "humidity": row.humidity,
        "light": row.light,
        "rainfall": row.rainfall,
        "createdAt": as_utc(row.created_at).isoformat(),
    }


class MqttBridge:
    """The single broker connection.

    Ingests sensor readings and observed actuator states into the store,
    pushes each one to the event sink, and publishes commands and resync
    replies back to the device.
    """

    def __init__(
        self,
        store: Store,
        events: Optional[EventSink],
        settings: Settings,
        client=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.settings = settings
        self.client = client
        self.clock = clock
        self.stats = {"rx_total": 0, "rx_tel": 0, "rx_state": 0, "rx_get_state": 0, "dropped": 0}
        self._device_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    # ---------------- lifecycle ----------------

    def build_client(self) -> mqtt.Client:
        s = self.settings
        client = mqtt.Client(
            client_id=f"{s.mqtt_client_id}-{uuid.uuid4().hex[:6]}",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        client.enable_logger(log)
        if s.mqtt_username:
            client.username_pw_set(s.mqtt_username, s.mqtt_password or "")
        client.reconnect_delay_set(min_delay=s.mqtt_reconnect_min, max_delay=s.mqtt_reconnect_max)
        self.attach(client)
        return client

    def attach(self, client) -> None:
        client.on_connect = self.on_connect
        client.on_subscribe = self.on_subscribe
        client.on_disconnect = self.on_disconnect
        client.on_message = self.on_message
        self.client = client

    def start(self) -> None:
        s = self.settings
        if self.client is None:
            self.build_client()
        log.info(
            "bootstrapping host=%s port=%s user=%s",
            s.mqtt_host, s.mqtt_port, "<set>" if s.mqtt_username else "<none>",
        )
        # async connect: an unreachable broker at startup is retried by the loop thread
        self.client.connect_async(s.mqtt_host, s.mqtt_port, keepalive=s.mqtt_keepalive)
        self.client.loop_start()

    def stop(self) -> None:
        if self.client is None:
            return
        try:
            self.client.disconnect()
            self.client.loop_stop()
        except Exception as e:
            log.warning("error stopping client: %s", e)

    @property
    def connected(self) -> bool:
        return self.client is not None and bool(self.client.is_connected())

    # ---------------- paho callbacks ----------------

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.warning("connect failed rc=%s (5=not authorized), retrying", _rc_str(reason_code))
            return
        qos = self.settings.mqtt_qos
        for topic in (SENSOR_TOPIC, STATE_TOPIC, GET_STATE_TOPIC):
            res, mid = client.subscribe(topic, qos=qos)
            log.info("SUB %s res=%s mid=%s", topic, res, mid)
        self.clear_retained_commands(client)

    def clear_retained_commands(self, client) -> None:
        # a rebooted device must not re-apply a stale retained command before it resyncs
        for actuator in ACTUATORS:
            client.publish(actuator.control_topic, b"", qos=self.settings.mqtt_qos, retain=True)
        log.info("cleared retained command topics for %d actuators", len(ACTUATORS))

    def on_subscribe(self, client, userdata, mid, reason_codes, properties=None):
        log.debug("SUBACK mid=%s granted=%s", mid, [_rc_str(rc) for rc in reason_codes])
        if any(_rc_int(rc) >= 0x80 for rc in reason_codes):
            log.warning("subscription rejected by broker ACL (mid=%s)", mid)

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        log.warning("disconnected rc=%s, reconnecting", _rc_str(reason_code))

    def on_message(self, client, userdata, msg):
        self.stats["rx_total"] += 1
        topic = msg.topic
        try:
            if topic == SENSOR_TOPIC:
                self.handle_sensor(msg.payload)
            elif mqtt.topic_matches_sub(STATE_TOPIC, topic):
                self.handle_state(topic.split("/")[1], msg.payload)
            elif mqtt.topic_matches_sub(GET_STATE_TOPIC, topic):
                self.handle_get_state(topic.split("/")[1])
        except StoreUnavailable as e:
            log.error("store unavailable, dropping message on %s: %s", topic, e)
        except Exception:
            log.exception("on_message error for topic %s", topic)

        if self.stats["rx_total"] % 100 == 1:
            log.info(
                "msg counts: total=%(rx_total)s tel=%(rx_tel)s state=%(rx_state)s "
                "get_state=%(rx_get_state)s dropped=%(dropped)s",
                self.stats,
            )

    # ---------------- inbound handlers ----------------

    def _emit(self, event: dict) -> None:
        if self.events is None:
            return
        try:
            self.events.publish(event)
        except Exception as e:
            log.warning("failed to emit %s event: %s", event.get("kind"), e)

    def handle_sensor(self, raw: bytes) -> Optional[Telemetry]:
        self.stats["rx_tel"] += 1
        try:
            payload = decode_payload(raw)
            return self.ingest(payload)
        except MalformedMessage as e:
            self.stats["dropped"] += 1
            log.warning("dropping %s message: %s", SENSOR_TOPIC, e)
            return None

    def ingest(self, payload: dict) -> Telemetry:
        """Persist one reading, then emit it. Raises MalformedMessage, StoreUnavailable."""
        reading = parse_sensor_payload(payload, self.settings.telemetry_default_device, self.clock)
        if reading.clock_assigned and any(payload.get(k) not in (None, "") for k in TIMESTAMP_KEYS):
            log.warning("unparseable capture timestamp, using arrival time for %s", reading.device_id)

        def _insert(s):
            row = Telemetry(
                device_id=reading.device_id,
                temperature=reading.temperature,
                humidity=reading.humidity,
                light=reading.light,
                rainfall=reading.rainfall,
                created_at=reading.created_at,
            )
            s.add(row)
            s.commit()
            s.refresh(row)
            return row

        row = self.store.run(_insert)
        log.debug(
            "telemetry id=%s device=%s temp=%s humi=%s light=%s rain=%s",
            row.id, row.device_id, row.temperature, row.humidity, row.light, row.rainfall,
        )
        self._emit(telemetry_event(row))
        return row

    def _device_lock(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._device_locks[name]

    def record_state(self, actuator: Actuator, status: str) -> Optional[DeviceCommand]:
        """Append a record only if it differs from the latest one for this device."""

        def _append_if_changed(s):
            last = s.exec(
                select(DeviceCommand)
                .where(DeviceCommand.device == actuator.name)
                .order_by(DeviceCommand.id.desc())
                .limit(1)
            ).first()
            if last is not None and last.status == status:
                return None
            row = DeviceCommand(device=actuator.name, status=status, created_at=to_utc(self.clock()))
            s.add(row)
            s.commit()
            s.refresh(row)
            return row

        with self._device_lock(actuator.name):
            return self.store.run(_append_if_changed)

    def handle_state(self, slug: str, raw: bytes) -> Optional[DeviceCommand]:
        self.stats["rx_state"] += 1
        actuator = by_slug(slug)
        if actuator is None:
            self.stats["dropped"] += 1
            log.warning("dropping state for unknown device %r", slug)
            return None
        status = normalize_status(raw)
        if status is None:
            self.stats["dropped"] += 1
            log.warning("dropping unrecognized state %r for %s", raw, slug)
            return None

        row = self.record_state(actuator, status)
        if row is not None:
            log.info("state change persisted: %s -> %s", actuator.name, status)
        self._emit({
            "kind": "device_state",
            "device": actuator.slug,
            "name": actuator.name,
            "state": status,
            "changed": row is not None,
            "ts": as_utc(row.created_at if row is not None else self.clock()).isoformat(),
        })
        return row

    def latest_status(self, actuator: Actuator) -> Optional[str]:
        stmt = (
            select(DeviceCommand.status)
            .where(DeviceCommand.device == actuator.name)
            .order_by(DeviceCommand.id.desc())
            .limit(1)
        )
        return self.store.run(lambda s: s.exec(stmt).first())

    def handle_get_state(self, slug: str) -> int:
        """Replay the last known status of every actuator, non-retained."""
        self.stats["rx_get_state"] += 1
        sent = 0
        for actuator in ACTUATORS:
            status = self.latest_status(actuator)
            if status is None:
                continue
            try:
                self._publish(actuator.control_topic, status, retain=False)
                sent += 1
            except TransportUnavailable as e:
                log.warning("resync publish to %s failed: %s", actuator.control_topic, e)
        log.info("resync requested by %s: replayed %d states", slug, sent)
        return sent

    # ---------------- outbound ----------------

    def _publish(self, topic: str, payload: str, retain: bool = False):
        if not self.connected:
            raise TransportUnavailable("MQTT disconnected")
        info = self.client.publish(topic, payload, qos=self.settings.mqtt_qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportUnavailable(f"publish rc={info.rc}")
        return info

    def _publish_confirmed(self, topic: str, payload: str, retain: bool = False) -> None:
        # must not be called from the network thread: it waits for the broker ack
        info = self._publish(topic, payload, retain=retain)
        timeout = self.settings.mqtt_publish_timeout
        started = time.monotonic()
        try:
            info.wait_for_publish(timeout=timeout)
        except (RuntimeError, ValueError) as e:
            raise TransportUnavailable(f"publish failed: {e}")
        if not info.is_published():
            raise TransportUnavailable(
                f"broker did not acknowledge within {time.monotonic() - started:.1f}s"
            )

    def publish_command(self, actuator: Actuator, status: str) -> str:
        topic = actuator.control_topic
        self._publish_confirmed(topic, status, retain=False)
        log.info("command published %s <- %s", topic, status)
        return topic

    def publish_rain_threshold(self, threshold: float) -> str:
        self._publish_confirmed(RAIN_THRESHOLD_TOPIC, f"{threshold:g}", retain=True)
        log.info("rain threshold published: %s", threshold)
        return RAIN_THRESHOLD_TOPIC


def probe_broker(settings: Settings, timeout: Optional[float] = None) -> bool:
    """Open a throwaway connection and report whether CONNACK arrives in time."""
    ok = threading.Event()
    probe = mqtt.Client(
        client_id=f"{settings.mqtt_client_id}-probe-{uuid.uuid4().hex[:6]}",
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )
    if settings.mqtt_username:
        probe.username_pw_set(settings.mqtt_username, settings.mqtt_password or "")

    def _on_connect(client, userdata, flags, reason_code, properties=None):
        if _rc_int(reason_code) == mqtt.CONNACK_ACCEPTED:
            ok.set()

    probe.on_connect = _on_connect
    try:
        probe.connect_async(settings.mqtt_host, settings.mqtt_port, keepalive=10)
        probe.loop_start()
        return ok.wait(timeout if timeout is not None else settings.mqtt_health_timeout)
    finally:
        probe.disconnect()
        probe.loop_stop()
