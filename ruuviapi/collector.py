"""Decode result rows into sparse :class:`~ruuviapi.models.Record` objects."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence

from ruuviapi.columns import FLOAT_FIELDS, INT_FIELDS, STRING_FIELDS, ColumnMap
from ruuviapi.errors import DecodeError, UnknownColumnError
from ruuviapi.models import Record, ensure_utc

Converter = Callable[[Any], Any]


def _to_time(value: Any) -> datetime:
    if not isinstance(value, datetime):
        raise TypeError(f"expected a timestamp, got {type(value).__name__}")
    return ensure_utc(value)


def _to_float(value: Any) -> float:
    if isinstance(value, (bool, str, bytes)):
        raise TypeError(f"expected a number, got {type(value).__name__}")
    return float(value)


def _to_int(value: Any) -> int:
    if isinstance(value, (bool, str, bytes)):
        raise TypeError(f"expected an integer, got {type(value).__name__}")
    number = int(value)
    if number != value:
        raise ValueError(f"expected an integer, got {value!r}")
    return number


def _to_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _converter_for(logical: str) -> Converter:
    if logical == "time":
        return _to_time
    if logical in FLOAT_FIELDS:
        return _to_float
    if logical in INT_FIELDS:
        return _to_int
    if logical in STRING_FIELDS:
        return _to_str
    raise UnknownColumnError(f"no decoder for field {logical}")


@dataclass(frozen=True, slots=True)
class FieldBinding:
    column: str
    field: str
    convert: Converter


class RowCollector:
    """Decode rows for any subset of the physical columns of a column map.

    The physical-column lookup table is built once; decoding a row is a plain
    dictionary lookup per column.
    """

    def __init__(self, columns: ColumnMap) -> None:
        self.columns = columns
        self._bindings: Dict[str, FieldBinding] = {}
        for physical in columns.physical_names:
            logical = columns.logical_for(physical) or ""
            self._bindings[physical] = FieldBinding(physical, logical, _converter_for(logical))

    def binding(self, column: str) -> FieldBinding:
        try:
            return self._bindings[column]
        except KeyError:
            raise UnknownColumnError(f"unknown column: {column}") from None

    def collect(self, row: Sequence[Any], requested: Sequence[str]) -> Record:
        """Decode one positional row whose columns are ``requested``, in order."""
        bindings = [self.binding(column) for column in requested]
        if len(row) != len(bindings):
            raise DecodeError(f"row has {len(row)} values but {len(bindings)} columns were requested")

        timestamp: Optional[datetime] = None
        values: Dict[str, Any] = {}
        for binding, raw in zip(bindings, row):
            if raw is None:
                if binding.field == "time":
                    raise DecodeError(f"column {binding.column} is NULL")
                continue
            try:
                value = binding.convert(raw)
            except (TypeError, ValueError, OverflowError, UnicodeDecodeError) as exc:
                raise DecodeError(f"column {binding.column}: {exc}") from exc
            if binding.field == "time":
                timestamp = value
            else:
                values[binding.field] = value

        if timestamp is None:
            raise DecodeError(f"column {self.columns.time_column} was not selected")
        return Record(time=timestamp, **values)


__all__ = ["RowCollector", "FieldBinding"]
