"""Latest-N measurement retrieval across devices."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import psycopg

from ruuviapi.collector import RowCollector
from ruuviapi.columns import ColumnMap
from ruuviapi.connection import ResilientConnection, deadline_after
from ruuviapi.errors import QueryError, RetrievalError
from ruuviapi.models import Record
from ruuviapi.query import QueryBuilder, clean_for_logging

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ruuviapi.config import ServiceConfig
    from ruuviapi.connection import ConnectFactory
    from ruuviapi.metrics import MetricsLogger

logger = logging.getLogger(__name__)


class MeasurementService:
    """Read the newest measurements of every device from the measurement table.

    Devices are queried one after another over the single store connection.
    Any failure aborts the whole call; results gathered for earlier devices
    are discarded.
    """

    def __init__(
        self,
        *,
        table: str,
        name_table: str,
        columns: Union[ColumnMap, Mapping[str, str]],
        connection: ResilientConnection,
    ) -> None:
        self.columns = columns if isinstance(columns, ColumnMap) else ColumnMap(columns)
        self.queries = QueryBuilder(table=table, name_table=name_table, columns=self.columns)
        self.collector = RowCollector(self.columns)
        self.connection = connection
        logger.debug("Column map: %s", dict(self.columns))

    @classmethod
    def from_config(
        cls,
        config: "ServiceConfig",
        *,
        metrics: Optional["MetricsLogger"] = None,
        connect_factory: Optional["ConnectFactory"] = None,
    ) -> "MeasurementService":
        connection = ResilientConnection(
            config.conninfo(),
            backoff=config.backoff,
            metrics=metrics,
            connect_factory=connect_factory,
        )
        return cls(
            table=config.table,
            name_table=config.name_table,
            columns=config.columns,
            connection=connection,
        )

    async def connect(self, *, timeout: Optional[float] = None) -> None:
        await self.connection.connect(timeout=timeout)

    async def ping(self, *, timeout: Optional[float] = None) -> None:
        await self.connection.ping(timeout=timeout)

    async def close(self) -> None:
        await self.connection.close()

    async def identities(self, *, timeout: Optional[float] = None, deadline: Optional[float] = None) -> List[str]:
        """Every known device identity, in ascending order."""
        query = self.queries.identity_list_query()
        logger.debug("Rendered identity query: %s", clean_for_logging(query))
        try:
            rows = await self.connection.fetch_all(query, timeout=timeout, deadline=deadline)
        except psycopg.Error as exc:
            raise QueryError(f"listing device identities failed: {exc}") from exc
        return [str(row[0]) for row in rows if row[0] is not None]

    async def latest(
        self,
        n: int,
        columns: Optional[Sequence[str]] = None,
        identities: Optional[Iterable[str]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, List[Record]]:
        """Newest ``n`` records per device, newest first.

        ``columns`` are physical column names and default to every mapped
        column. ``identities`` default to every device in the name table.
        Each returned record has the device identity removed, since it is
        already the key of the result.
        """
        requested = self.columns.resolve_requested(columns)
        logger.debug("Requested columns: %s", list(requested))
        query = self.queries.latest_query(requested, n)
        deadline = deadline_after(timeout)

        names = list(dict.fromkeys(identities or ()))
        if not names:
            names = await self.identities(deadline=deadline)
        logger.debug("Rendered query: %s", clean_for_logging(query))

        def decode(row: Sequence[Any]) -> Record:
            return self.collector.collect(row, requested)

        results: Dict[str, List[Record]] = {}
        for identity in names:
            try:
                records = await self.connection.fetch_all(
                    query,
                    (identity,),
                    row_decoder=decode,
                    deadline=deadline,
                )
            except RetrievalError as exc:
                if exc.identity is None:
                    exc.identity = identity
                raise
            except psycopg.Error as exc:
                raise QueryError(f"querying {identity} failed: {exc}", identity=identity) from exc

            for record in records:
                record.pop_identity()
            results[identity] = records
            logger.debug("Found %d measurements for %s", len(records), identity)
        return results


__all__ = ["MeasurementService"]
