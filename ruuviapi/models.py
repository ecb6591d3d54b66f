"""Measurement record returned by the retrieval service."""
from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, Mapping, Optional


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(slots=True)
class Record:
    """One sparse measurement row.

    Only ``time`` is always set. Every other field is ``None`` when the column
    was not requested or the stored value was NULL; the two cases are not
    distinguished.
    """

    time: datetime
    mac: Optional[str] = None
    name: Optional[str] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    dew_point: Optional[float] = None
    battery_voltage: Optional[float] = None
    tx_power: Optional[int] = None
    acceleration_x: Optional[int] = None
    acceleration_y: Optional[int] = None
    acceleration_z: Optional[int] = None
    movement_counter: Optional[int] = None
    measurement_number: Optional[int] = None

    def pop_identity(self) -> Optional[str]:
        """Remove and return the device identity, preferring ``name`` over ``mac``."""
        if self.name:
            identity, self.name = self.name, None
            return identity
        identity, self.mac = self.mac, None
        self.name = None
        return identity

    def values(self) -> Dict[str, Any]:
        """Logical field -> value for every field that carries a value."""
        payload: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if value is not None:
                payload[item.name] = value
        return payload

    def to_dict(
        self,
        column_map: Optional[Mapping[str, str]] = None,
        *,
        tz: Optional[tzinfo] = None,
    ) -> Dict[str, Any]:
        """JSON-ready payload keyed by physical column name when ``column_map`` is given."""
        payload: Dict[str, Any] = {}
        for logical, value in self.values().items():
            if logical == "time":
                stamp = ensure_utc(value)
                value = (stamp.astimezone(tz) if tz else stamp).isoformat()
            key = column_map.get(logical, logical) if column_map else logical
            payload[key] = value
        return payload


__all__ = ["Record", "ensure_utc"]
