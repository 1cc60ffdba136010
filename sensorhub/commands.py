"""
Command gateway.

Forwards a dashboard command to the broker and reports only whether the broker
took it. Nothing is written to the store here: the device's own state report,
picked up by the bridge, is the only thing that records a state change.
"""

import logging
import math
from dataclasses import dataclass

from .devices import normalize_status, resolve_actuator
from .errors import ValidationError
from .mqtt_handler import MqttBridge

log = logging.getLogger("commands")


@dataclass
class CommandResult:
    device: str
    slug: str
    status: str
    topic: str


class CommandGateway:
    def __init__(self, bridge: MqttBridge) -> None:
        self.bridge = bridge

    def issue(self, device: str | None, status: str | None) -> CommandResult:
        if not device or not status:
            raise ValidationError("device and status are required")
        actuator = resolve_actuator(device)
        state = normalize_status(status)
        if state is None:
            raise ValidationError("status must be ON or OFF")
        topic = self.bridge.publish_command(actuator, state)
        return CommandResult(device=actuator.name, slug=actuator.slug, status=state, topic=topic)

    def set_rain_threshold(self, threshold) -> str:
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
            raise ValidationError("threshold must be a number")
        if not math.isfinite(threshold) or threshold < 0:
            raise ValidationError("threshold must be a finite, non-negative number")
        return self.bridge.publish_rain_threshold(float(threshold))
