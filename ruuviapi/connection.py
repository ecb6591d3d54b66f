"""Single long-lived store connection with reconnect-and-retry-once semantics."""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass
from time import monotonic
from typing import Any, Awaitable, Callable, Iterator, List, Optional, Sequence, TypeVar

import psycopg
import psycopg.errors

from ruuviapi.errors import DeadlineExceededError, StoreConnectionError
from ruuviapi.metrics import MetricsLogger

logger = logging.getLogger(__name__)

T = TypeVar("T")
ConnectFactory = Callable[[str], Awaitable[Any]]
Operation = Callable[[Any], Awaitable[T]]
RowDecoder = Callable[[Sequence[Any]], Any]


class ConnectionState(enum.Enum):
	DISCONNECTED = "disconnected"
	CONNECTED = "connected"
	BROKEN = "broken"


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
	"""Exponential backoff for dialling the store."""

	base: float = 0.5
	maximum: float = 10.0
	attempts: int = 5

	def __post_init__(self) -> None:
		if self.attempts < 1:
			raise ValueError("attempts must be at least 1")
		if self.base < 0 or self.maximum < 0:
			raise ValueError("backoff delays cannot be negative")

	def delays(self) -> Iterator[float]:
		"""Waits between consecutive attempts; one fewer than ``attempts``."""
		delay = self.base
		for _ in range(self.attempts - 1):
			yield min(delay, self.maximum)
			delay *= 2


def deadline_after(timeout: Optional[float]) -> Optional[float]:
	"""Monotonic instant ``timeout`` seconds from now, or ``None`` for no deadline."""
	if timeout is None:
		return None
	return monotonic() + max(0.0, timeout)


def remaining(deadline: Optional[float]) -> Optional[float]:
	if deadline is None:
		return None
	return deadline - monotonic()


async def _connect_psycopg(conninfo: str) -> psycopg.AsyncConnection:
	return await psycopg.AsyncConnection.connect(conninfo, autocommit=True)


class ResilientConnection:
	"""Owns the one physical connection of a service instance.

	Every operation runs under a lock for one query-plus-decode cycle. When an
	operation fails because the connection dropped, the connection is redialled
	and the operation retried exactly once.
	"""

	def __init__(
		self,
		conninfo: str,
		*,
		backoff: Optional[BackoffPolicy] = None,
		connect_factory: Optional[ConnectFactory] = None,
		metrics: Optional[MetricsLogger] = None,
	) -> None:
		self.conninfo = conninfo
		self.backoff = backoff or BackoffPolicy()
		self.metrics = metrics
		self._connect_factory: ConnectFactory = connect_factory or _connect_psycopg
		self._conn: Any = None
		self._state = ConnectionState.DISCONNECTED
		self._lock = asyncio.Lock()

	@property
	def state(self) -> ConnectionState:
		return self._state

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------
	async def connect(self, *, timeout: Optional[float] = None, deadline: Optional[float] = None) -> None:
		async def _connect() -> None:
			async with self._lock:
				if self._state is not ConnectionState.CONNECTED:
					await self._dial(deadline)

		deadline = deadline if deadline is not None else deadline_after(timeout)
		await self._with_deadline("connect", _connect(), deadline)

	async def close(self) -> None:
		async with self._lock:
			if self._conn is None:
				self._state = ConnectionState.DISCONNECTED
				return
			await self._discard()
			self._metrics_log("close", status="ok")
			logger.debug("Store connection closed")

	async def __aenter__(self) -> "ResilientConnection":
		await self.connect()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
		await self.close()

	# ------------------------------------------------------------------
	# Operations
	# ------------------------------------------------------------------
	async def ping(self, *, timeout: Optional[float] = None, deadline: Optional[float] = None) -> None:
		async def _ping(conn: Any) -> None:
			await conn.execute("SELECT 1")

		await self.run("ping", _ping, timeout=timeout, deadline=deadline)

	async def fetch_all(
		self,
		query: str,
		params: Optional[Sequence[Any]] = None,
		*,
		row_decoder: Optional[RowDecoder] = None,
		timeout: Optional[float] = None,
		deadline: Optional[float] = None,
	) -> List[Any]:
		"""Run ``query`` and return its rows, decoded while the lock is held."""

		async def _fetch(conn: Any) -> List[Any]:
			cursor = await conn.execute(query, params)
			rows = await cursor.fetchall()
			if row_decoder is None:
				return list(rows)
			return [row_decoder(row) for row in rows]

		return await self.run("query", _fetch, timeout=timeout, deadline=deadline)

	async def run(
		self,
		name: str,
		operation: Operation[T],
		*,
		timeout: Optional[float] = None,
		deadline: Optional[float] = None,
	) -> T:
		deadline = deadline if deadline is not None else deadline_after(timeout)
		return await self._with_deadline(name, self._run_locked(name, operation, deadline), deadline)

	async def _with_deadline(self, name: str, coro: Awaitable[T], deadline: Optional[float]) -> T:
		left = remaining(deadline)
		if left is not None and left <= 0:
			coro.close()  # type: ignore[attr-defined]
			raise DeadlineExceededError(f"deadline expired before {name} started")
		try:
			return await asyncio.wait_for(coro, timeout=left)
		except DeadlineExceededError:
			raise
		except asyncio.TimeoutError as exc:
			raise DeadlineExceededError(f"deadline expired during {name}") from exc

	async def _run_locked(self, name: str, operation: Operation[T], deadline: Optional[float]) -> T:
		async with self._lock:
			if self._state is not ConnectionState.CONNECTED:
				await self._dial(deadline)

			try:
				return await self._attempt(name, operation)
			except Exception as exc:
				if not self._is_connection_lost(exc):
					raise
				first_error = exc

			self._state = ConnectionState.BROKEN
			logger.warning("Store connection lost during %s: %s", name, first_error)
			self._metrics_log("connection_lost", status="error", message=str(first_error), extra={"operation": name})

			try:
				await self._dial(deadline, reconnect=True)
			except StoreConnectionError as reconnect_error:
				raise StoreConnectionError(
					f"{name} failed and reconnecting failed",
					errors=(first_error, reconnect_error),
				) from reconnect_error

			try:
				return await self._attempt(name, operation)
			except Exception as exc:
				if not self._is_connection_lost(exc):
					raise
				self._state = ConnectionState.BROKEN
				raise StoreConnectionError(
					f"{name} failed again after reconnecting",
					errors=(first_error, exc),
				) from exc

	async def _attempt(self, name: str, operation: Operation[T]) -> T:
		timer = contextlib.nullcontext()
		if self.metrics:
			timer = self.metrics.timer(name)
		try:
			with timer:
				return await operation(self._conn)
		except asyncio.CancelledError:
			# The cancelled query may still be running server side.
			self._state = ConnectionState.BROKEN
			await self._discard(state=ConnectionState.BROKEN)
			raise

	# ------------------------------------------------------------------
	# Dialling
	# ------------------------------------------------------------------
	async def _dial(self, deadline: Optional[float], *, reconnect: bool = False) -> None:
		await self._discard(state=self._state)
		event = "reconnect" if reconnect else "connect"
		delays = self.backoff.delays()
		last_error: Optional[BaseException] = None

		for attempt in range(1, self.backoff.attempts + 1):
			self._metrics_log("connect_attempt", status="pending", extra={"attempt": attempt, "reconnect": reconnect})
			try:
				conn = await self._connect_factory(self.conninfo)
			except (psycopg.Error, OSError) as exc:
				last_error = exc
				logger.debug("Store %s attempt %d failed: %s", event, attempt, exc)
				delay = next(delays, None)
				if delay is None:
					break
				await self._sleep(delay, deadline)
				continue

			self._conn = conn
			self._state = ConnectionState.CONNECTED
			self._metrics_log(event, status="ok", extra={"attempt": attempt})
			logger.debug("Store %s succeeded on attempt %d", event, attempt)
			return

		self._state = ConnectionState.DISCONNECTED
		self._metrics_log(event, status="error", message=str(last_error))
		logger.error("Store %s failed after %d attempts: %s", event, self.backoff.attempts, last_error)
		raise StoreConnectionError(
			f"could not {event} to store after {self.backoff.attempts} attempts",
			errors=[last_error] if last_error else (),
		)

	async def _sleep(self, duration: float, deadline: Optional[float]) -> None:
		left = remaining(deadline)
		if left is not None and left <= duration:
			raise DeadlineExceededError("deadline expires before the next connect attempt")
		if duration > 0:
			await asyncio.sleep(duration)

	async def _discard(self, *, state: ConnectionState = ConnectionState.DISCONNECTED) -> None:
		conn, self._conn = self._conn, None
		self._state = state if state is not ConnectionState.CONNECTED else ConnectionState.DISCONNECTED
		if conn is None:
			return
		try:
			await conn.close()
		except (psycopg.Error, OSError) as exc:
			logger.debug("Ignoring error while closing store connection: %s", exc)

	def _is_connection_lost(self, exc: BaseException) -> bool:
		conn = self._conn
		if conn is not None and (getattr(conn, "closed", False) or getattr(conn, "broken", False)):
			return True
		if not isinstance(exc, (psycopg.OperationalError, psycopg.InterfaceError)):
			return False
		# Class 08 is connection exception, 57P0x is server shutdown; no SQLSTATE means
		# the client lost the socket.
		sqlstate = getattr(exc, "sqlstate", None)
		return sqlstate is None or sqlstate.startswith(("08", "57P0"))

	# ------------------------------------------------------------------
	# Metrics helper
	# ------------------------------------------------------------------
	def _metrics_log(
		self,
		event: str,
		*,
		status: Optional[str] = None,
		message: Optional[str] = None,
		extra: Optional[dict] = None,
	) -> None:
		if not self.metrics:
			return
		self.metrics.log(event, status=status, message=message, extra=extra)


__all__ = [
	"BackoffPolicy",
	"ConnectionState",
	"ResilientConnection",
	"deadline_after",
	"remaining",
]
