"""
Read side: filtered, sorted and bounded history queries over telemetry and
device command records, plus tolerant value search.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, and_
from sqlmodel import select

from .db import Store
from .errors import ValidationError
from .models import DeviceCommand, Telemetry
from .readings import FIELDS, quantize, resolve_field, step, utcnow

TELEMETRY_SORT_FIELDS = {
    "id": Telemetry.id,
    "temperature": Telemetry.temperature, "temp": Telemetry.temperature,
    "humidity": Telemetry.humidity, "humi": Telemetry.humidity,
    "light": Telemetry.light,
    "rainfall": Telemetry.rainfall, "rain": Telemetry.rainfall, "rain_mm": Telemetry.rainfall,
    "created_at": Telemetry.created_at, "time": Telemetry.created_at,
}

COMMAND_SORT_FIELDS = {
    "id": DeviceCommand.id,
    "device": DeviceCommand.device,
    "status": DeviceCommand.status,
    "created_at": DeviceCommand.created_at,
}

SORT_ORDERS = ("asc", "desc")


def _order_by(whitelist: dict, id_column, sort_field: Optional[str], sort_order: Optional[str]):
    field = (sort_field or "id").strip()
    order = (sort_order or "desc").strip().lower()
    if field not in whitelist:
        raise ValidationError(f"Invalid sortField {field!r}. Use one of: {', '.join(whitelist)}")
    if order not in SORT_ORDERS:
        raise ValidationError("Invalid sortOrder. Use asc | desc")
    column = whitelist[field]
    if order == "asc":
        return (column.asc(), id_column.asc())
    return (column.desc(), id_column.desc())


class HistoryService:
    def __init__(self, store: Store, default_limit: int = 100, max_limit: int = 1000) -> None:
        self.store = store
        self.default_limit = default_limit
        self.max_limit = max_limit

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return min(self.default_limit, self.max_limit)
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        return min(limit, self.max_limit)

    # ---------------- telemetry ----------------

    def list_telemetry(
        self,
        device_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        sort_field: Optional[str] = None,
        sort_order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Telemetry]:
        lim = self.clamp_limit(limit)
        order = _order_by(TELEMETRY_SORT_FIELDS, Telemetry.id, sort_field, sort_order)
        stmt = select(Telemetry)
        if device_id:
            stmt = stmt.where(Telemetry.device_id == device_id)
        if since is not None:
            stmt = stmt.where(Telemetry.created_at >= since)
        if until is not None:
            stmt = stmt.where(Telemetry.created_at <= until)
        stmt = stmt.order_by(*order).limit(lim)
        return self.store.run(lambda s: list(s.exec(stmt).all()))

    def latest_telemetry(self, device_id: str) -> Optional[Telemetry]:
        stmt = (
            select(Telemetry)
            .where(Telemetry.device_id == device_id)
            .order_by(Telemetry.created_at.desc(), Telemetry.id.desc())
            .limit(1)
        )
        return self.store.run(lambda s: s.exec(stmt).first())

    def _match(self, field: str, target: float | int):
        # stored values are already quantized, so only an exact display match falls inside
        column = getattr(Telemetry, field)
        if field == "light":
            return column == target
        half = step(field) / 2
        return and_(column >= target - half, column < target + half)

    def _search(self, fields: list[str], value: float, device_id: Optional[str], limit: Optional[int]):
        lim = self.clamp_limit(limit)
        stmt = select(Telemetry).where(or_(*(self._match(f, quantize(f, value)) for f in fields)))
        if device_id:
            stmt = stmt.where(Telemetry.device_id == device_id)
        stmt = stmt.order_by(Telemetry.id.desc()).limit(lim)
        return self.store.run(lambda s: list(s.exec(stmt).all()))

    def search_field(self, field: str, value: float, device_id: Optional[str] = None,
                     limit: Optional[int] = None) -> list[Telemetry]:
        return self._search([resolve_field(field)], value, device_id, limit)

    def search_any(self, value: float, device_id: Optional[str] = None,
                   limit: Optional[int] = None) -> list[Telemetry]:
        return self._search(list(FIELDS), value, device_id, limit)

    def telemetry_stats(self, device_id: Optional[str] = None, hours: float = 24) -> dict:
        if hours <= 0:
            raise ValidationError("hours must be positive")
        since = utcnow() - timedelta(hours=hours)
        cols = []
        for field in FIELDS:
            column = getattr(Telemetry, field)
            cols += [func.avg(column), func.max(column), func.min(column)]
        stmt = select(*cols, func.count(Telemetry.id)).where(Telemetry.created_at >= since)
        if device_id:
            stmt = stmt.where(Telemetry.device_id == device_id)
        row = self.store.run(lambda s: s.exec(stmt).one())
        out: dict = {"hours": hours, "deviceId": device_id, "recordCount": row[-1]}
        for i, field in enumerate(FIELDS):
            avg, hi, lo = row[3 * i: 3 * i + 3]
            out[field] = {"avg": avg, "max": hi, "min": lo}
        return out

    # ---------------- device commands ----------------

    def list_commands(
        self,
        device: Optional[str] = None,
        status: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        sort_field: Optional[str] = None,
        sort_order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[DeviceCommand]:
        lim = self.clamp_limit(limit)
        order = _order_by(COMMAND_SORT_FIELDS, DeviceCommand.id, sort_field, sort_order)
        stmt = select(DeviceCommand)
        if device:
            stmt = stmt.where(DeviceCommand.device == device)
        if status:
            stmt = stmt.where(DeviceCommand.status == status.strip().upper())
        if since is not None:
            stmt = stmt.where(DeviceCommand.created_at >= since)
        if until is not None:
            stmt = stmt.where(DeviceCommand.created_at <= until)
        stmt = stmt.order_by(*order).limit(lim)
        return self.store.run(lambda s: list(s.exec(stmt).all()))

    def latest_command(self, device: str) -> Optional[DeviceCommand]:
        stmt = (
            select(DeviceCommand)
            .where(DeviceCommand.device == device)
            .order_by(DeviceCommand.id.desc())
            .limit(1)
        )
        return self.store.run(lambda s: s.exec(stmt).first())

    def device_states(self, device: Optional[str] = None) -> dict[str, str]:
        """Latest status per device name (highest id wins)."""
        latest = select(func.max(DeviceCommand.id)).group_by(DeviceCommand.device)
        stmt = select(DeviceCommand).where(DeviceCommand.id.in_(latest))
        if device:
            stmt = stmt.where(DeviceCommand.device == device)
        stmt = stmt.order_by(DeviceCommand.device)
        rows = self.store.run(lambda s: list(s.exec(stmt).all()))
        return {r.device: r.status for r in rows}
