"""Logical-to-physical column mapping for the measurement table.

The measurement table's column names are configured at runtime. A
:class:`ColumnMap` binds the fixed set of logical RuuviTag fields to whatever
the physical columns happen to be called, and is validated once when built.
Requested column lists are validated separately on every call, since they come
from the caller.
"""
from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

from ruuviapi.errors import ConfigError, InvalidColumnError

# Order matters: when two logical fields share a physical column, the first
# one listed here wins the reverse lookup.
LOGICAL_FIELDS: Tuple[str, ...] = (
    "time",
    "mac",
    "name",
    "temperature",
    "humidity",
    "pressure",
    "battery_voltage",
    "tx_power",
    "acceleration_x",
    "acceleration_y",
    "acceleration_z",
    "movement_counter",
    "measurement_number",
    "dew_point",
)

IDENTITY_FIELDS: Tuple[str, ...] = ("name", "mac")

FLOAT_FIELDS = frozenset({"temperature", "humidity", "pressure", "dew_point", "battery_voltage"})
INT_FIELDS = frozenset(
    {
        "tx_power",
        "acceleration_x",
        "acceleration_y",
        "acceleration_z",
        "movement_counter",
        "measurement_number",
    }
)
STRING_FIELDS = frozenset(IDENTITY_FIELDS)

DEFAULT_COLUMN_MAP: Mapping[str, str] = MappingProxyType({field: field for field in LOGICAL_FIELDS})


def validate_column_map(mapping: Mapping[str, str]) -> None:
    """Raise :class:`ConfigError` unless ``mapping`` is usable as a column map."""
    if not mapping:
        raise ConfigError("columns cannot be empty")
    unknown = sorted(key for key in mapping if key not in LOGICAL_FIELDS)
    if unknown:
        raise ConfigError(f"unknown logical columns: {', '.join(unknown)}")
    for logical, physical in mapping.items():
        if not isinstance(physical, str) or not physical.strip():
            raise ConfigError(f"column {logical} must map to a non-empty column name")
    if "time" not in mapping:
        raise ConfigError("column time is required")
    if "name" not in mapping and "mac" not in mapping:
        raise ConfigError("identifier column name or mac is required")


def validate_requested_columns(mapping: Mapping[str, str], requested: Sequence[str]) -> None:
    """Check a caller-supplied list of physical column names against ``mapping``."""
    if not requested:
        raise InvalidColumnError("requested columns cannot be empty")
    known = set(mapping.values())
    for column in requested:
        if column not in known:
            raise InvalidColumnError(f"unknown column {column}")
    time_column = mapping.get("time")
    if time_column not in requested:
        raise InvalidColumnError(f"column {time_column} is required")
    name_column = mapping.get("name")
    mac_column = mapping.get("mac")
    if name_column not in requested and mac_column not in requested:
        wanted = " or ".join(column for column in (name_column, mac_column) if column)
        raise InvalidColumnError(f"identifier column {wanted} is required")


class ColumnMap(Mapping[str, str]):
    """Validated, read-only view of a logical-to-physical column mapping."""

    def __init__(self, mapping: Mapping[str, str]) -> None:
        validate_column_map(mapping)
        self._columns: Mapping[str, str] = MappingProxyType(dict(mapping))
        reverse: Dict[str, str] = {}
        for logical in LOGICAL_FIELDS:
            physical = self._columns.get(logical)
            if physical is not None:
                reverse.setdefault(physical, logical)
        self._reverse: Mapping[str, str] = MappingProxyType(reverse)

    @classmethod
    def default(cls) -> "ColumnMap":
        return cls(DEFAULT_COLUMN_MAP)

    def __getitem__(self, key: str) -> str:
        return self._columns[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    def __repr__(self) -> str:
        return f"ColumnMap({dict(self._columns)!r})"

    @property
    def time_column(self) -> str:
        return self._columns["time"]

    @property
    def name_column(self) -> Optional[str]:
        return self._columns.get("name")

    @property
    def mac_column(self) -> Optional[str]:
        return self._columns.get("mac")

    @property
    def identity_column(self) -> str:
        """Physical column that identifies a device; ``name`` wins over ``mac``."""
        return self.name_column or self._columns["mac"]

    @property
    def physical_names(self) -> Tuple[str, ...]:
        """Every distinct physical column, in mapping order."""
        return tuple(dict.fromkeys(self._columns.values()))

    def logical_for(self, physical: str) -> Optional[str]:
        return self._reverse.get(physical)

    def validate_requested(self, requested: Sequence[str]) -> None:
        validate_requested_columns(self._columns, requested)

    def resolve_requested(self, requested: Optional[Iterable[str]]) -> Tuple[str, ...]:
        """Default an empty request to every physical column, then validate it."""
        columns = tuple(requested or ())
        if not columns:
            columns = self.physical_names
        self.validate_requested(columns)
        return columns


__all__ = [
    "LOGICAL_FIELDS",
    "IDENTITY_FIELDS",
    "FLOAT_FIELDS",
    "INT_FIELDS",
    "STRING_FIELDS",
    "DEFAULT_COLUMN_MAP",
    "ColumnMap",
    "validate_column_map",
    "validate_requested_columns",
]
