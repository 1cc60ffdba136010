from datetime import datetime
from pydantic import BaseModel
from typing import Any

from .models import DeviceCommand, Telemetry
from .readings import as_utc


class TelemetryOut(BaseModel):
    id: int
    deviceId: str
    temperature: float
    humidity: float
    light: int
    rainfall: float
    createdAt: datetime

    @classmethod
    def from_row(cls, r: Telemetry) -> "TelemetryOut":
        return cls(
            id=r.id, deviceId=r.device_id, temperature=r.temperature, humidity=r.humidity,
            light=r.light, rainfall=r.rainfall, createdAt=as_utc(r.created_at),
        )


class TelemetryIngest(BaseModel):
    deviceId: str
    data: dict[str, Any]
    timestamp: str | float | None = None


class CommandOut(BaseModel):
    id: int
    device: str
    status: str
    createdAt: datetime
    updatedAt: datetime | None = None

    @classmethod
    def from_row(cls, r: DeviceCommand) -> "CommandOut":
        return cls(
            id=r.id, device=r.device, status=r.status,
            createdAt=as_utc(r.created_at), updatedAt=as_utc(r.updated_at),
        )


class CommandRequest(BaseModel):
    device: str | None = None
    status: str | None = None


class CommandResponse(BaseModel):
    success: bool
    device: str
    slug: str
    status: str
    topic: str


class RainThresholdRequest(BaseModel):
    threshold: Any = None


class FieldStats(BaseModel):
    avg: float | None = None
    max: float | None = None
    min: float | None = None


class TelemetryStats(BaseModel):
    hours: float
    deviceId: str | None = None
    recordCount: int
    temperature: FieldStats
    humidity: FieldStats
    light: FieldStats
    rainfall: FieldStats
