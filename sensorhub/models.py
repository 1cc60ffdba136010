from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field

from .readings import utcnow


class Telemetry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    temperature: float
    humidity: float
    light: int
    rainfall: float
    created_at: datetime = Field(index=True)  # device capture time, UTC


class DeviceCommand(SQLModel, table=True):
    __tablename__ = "device_commands"

    id: Optional[int] = Field(default=None, primary_key=True)
    device: str = Field(index=True)  # canonical display name
    status: str  # ON|OFF
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: Optional[datetime] = None
