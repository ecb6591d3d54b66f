"""CSV log of store events: dials, reconnects, queries, pings and closes."""
from __future__ import annotations

import contextlib
import csv
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence

from ruuviapi.models import ensure_utc

logger = logging.getLogger(__name__)

COLUMNS: Sequence[str] = ("timestamp", "event", "status", "duration", "message", "extra")


class MetricsLogger:
    """One CSV row per store event, flushed as soon as it is written.

    ``static_extra`` (typically the measurement table) is merged into the JSON
    ``extra`` column of every row. A failed write is logged at debug level and
    never reaches the store operation that triggered it.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        static_extra: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.static_extra = dict(static_extra or {})
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists() or self.path.stat().st_size == 0:
            self._append(COLUMNS)

    def log(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        duration: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        details = {**self.static_extra, **(extra or {})}
        row = (
            ensure_utc(self._now()).isoformat(timespec="milliseconds"),
            event,
            status or "",
            "" if duration is None else f"{duration:.6f}",
            message or "",
            json.dumps(details, sort_keys=True, separators=(",", ":"), default=str) if details else "",
        )
        try:
            self._append(row)
        except OSError:
            logger.debug("Could not write store event %s to %s", event, self.path, exc_info=True)

    @contextlib.contextmanager
    def timer(self, event: str, **extra: Any) -> Iterator[None]:
        """Log ``event`` as ok or error with its duration in seconds."""
        started = perf_counter()
        try:
            yield
        except BaseException as exc:
            name = type(exc).__name__
            self.log(
                event,
                status="error",
                duration=perf_counter() - started,
                message=str(exc) or name,
                extra={**extra, "exception": name},
            )
            raise
        self.log(event, status="ok", duration=perf_counter() - started, extra=extra)

    def _append(self, row: Sequence[Any]) -> None:
        with self._lock, self.path.open("a", newline="", encoding="utf-8") as handle:
            csv.writer(handle).writerow(row)


__all__ = ["COLUMNS", "MetricsLogger"]
