"""
Fixed actuator table.

The device table stores canonical display names; firmware talks in topic
slugs. This module is the only place the two are mapped, in both directions.
"""

from typing import NamedTuple

from .errors import ValidationError

STATUSES = ("ON", "OFF")


class Actuator(NamedTuple):
    slug: str
    name: str

    @property
    def control_topic(self) -> str:
        return f"control/{self.slug}"

    @property
    def state_topic(self) -> str:
        return f"device/{self.slug}/state"


ACTUATORS: tuple[Actuator, ...] = (
    Actuator("led1", "Đèn"),
    Actuator("led2", "Quạt"),
    Actuator("led3", "Điều hòa"),
)

_BY_SLUG = {a.slug: a for a in ACTUATORS}
_BY_NAME = {a.name.casefold(): a for a in ACTUATORS}


def by_slug(slug: str) -> Actuator | None:
    return _BY_SLUG.get((slug or "").strip().lower())


def by_name(name: str) -> Actuator | None:
    return _BY_NAME.get((name or "").strip().casefold())


def resolve_actuator(device: str) -> Actuator:
    """Accept a display name (any case) or a topic slug."""
    actuator = by_name(device) or by_slug(device)
    if actuator is None:
        known = ", ".join(f"{a.name} ({a.slug})" for a in ACTUATORS)
        raise ValidationError(f"Unknown device {device!r}. Use one of: {known}")
    return actuator


def normalize_status(value) -> str | None:
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(value, str):
        return None
    state = value.strip().upper()
    return state if state in STATUSES else None
