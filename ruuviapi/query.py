"""SQL text construction for the measurement table.

Nothing here touches the network. Table and column identifiers come from the
validated configuration and are quoted with :class:`psycopg.sql.Identifier`;
the device identity is always a bound ``%s`` parameter.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from psycopg import sql

from ruuviapi.columns import ColumnMap
from ruuviapi.errors import ValidationError

_WHITESPACE = re.compile(r"\s+")

_IDENTITY_LIST = sql.SQL("SELECT {identity} FROM {table} ORDER BY {identity}")
_LATEST = sql.SQL(
    """
    SELECT {columns}
    FROM {table}
    WHERE {identity} = %s
    ORDER BY {time} DESC
    LIMIT {limit}
    """
)


def table_identifier(name: str) -> sql.Identifier:
    """Quote a possibly schema-qualified table name such as ``public.ruuvitag``."""
    parts = [part for part in name.split(".") if part]
    if not parts:
        raise ValidationError(f"invalid table name: {name!r}")
    return sql.Identifier(*parts)


def clean_for_logging(query: str) -> str:
    """Collapse whitespace so a rendered query fits on one log line."""
    return _WHITESPACE.sub(" ", query).strip()


@dataclass(frozen=True)
class QueryBuilder:
    table: str
    name_table: str
    columns: ColumnMap

    def identity_list_query(self) -> str:
        query = _IDENTITY_LIST.format(
            identity=sql.Identifier(self.columns.identity_column),
            table=table_identifier(self.name_table),
        )
        return query.as_string(None)

    def latest_query(self, requested: Sequence[str], limit: int) -> str:
        """Newest ``limit`` rows of ``requested`` columns for one bound identity."""
        if not requested:
            raise ValidationError("no columns specified")
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError(f"n must be an integer, got {limit!r}")
        if limit < 1:
            raise ValidationError("n must be at least 1")
        table = table_identifier(self.table)
        selected = sql.SQL(", ").join(
            sql.SQL("{}.{}").format(table, sql.Identifier(column)) for column in requested
        )
        query = _LATEST.format(
            columns=selected,
            table=table,
            identity=sql.Identifier(self.columns.identity_column),
            time=sql.Identifier(self.columns.time_column),
            limit=sql.SQL(str(limit)),
        )
        return query.as_string(None)


__all__ = ["QueryBuilder", "clean_for_logging", "table_identifier"]
