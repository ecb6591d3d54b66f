"""HTTP API serving the latest RuuviTag measurements."""
from __future__ import annotations

import hmac
import logging
import re
from contextlib import asynccontextmanager
from datetime import timezone, tzinfo
from typing import Any, Dict, List, Optional, Sequence

import psycopg
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ruuviapi.errors import DeadlineExceededError, InvalidColumnError, RetrievalError, ValidationError
from ruuviapi.models import Record
from ruuviapi.service import MeasurementService

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5.0
NO_STORE = {"Cache-Control": "no-store, max-age=0"}

_CSV_PATTERN = re.compile(r"^[\w\s,]*\w$")


def parse_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    if not _CSV_PATTERN.match(value):
        raise ValueError(f"invalid values: {value}")
    return value.split(",")


def parse_location(tz: Optional[str]) -> tzinfo:
    if not tz:
        return timezone.utc
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown timezone: {tz}") from exc


def parse_n(value: Optional[str]) -> int:
    if value is None or value == "":
        return 1
    n = int(value)
    if n < 1:
        raise ValueError("n must be at least 1")
    return n


def shape_response(
    measurements: Dict[str, List[Record]],
    n: int,
    columns: Dict[str, str],
    loc: tzinfo,
) -> Dict[str, Any]:
    """Flatten to one record per device for ``n == 1``, else lists of records."""
    response: Dict[str, Any] = {}
    for identity, records in measurements.items():
        if not records:
            continue
        if n == 1:
            response[identity] = records[0].to_dict(columns, tz=loc)
        else:
            response[identity] = [record.to_dict(columns, tz=loc) for record in records[:n]]
    return response


def token_checker(tokens: Sequence[str]):
    allowed = [token.encode("utf-8") for token in tokens]

    async def _check(authorization: Optional[str] = Header(None)) -> None:
        if not allowed:
            return
        presented = (authorization or "").removeprefix("Bearer ").encode("utf-8")
        if not any(hmac.compare_digest(presented, token) for token in allowed):
            raise HTTPException(status_code=403, detail="Forbidden")

    return _check


def create_app(
    service: MeasurementService,
    *,
    tokens: Sequence[str] = (),
    request_timeout: float = REQUEST_TIMEOUT,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        try:
            await service.connect(timeout=request_timeout)
        except (RetrievalError, psycopg.Error) as exc:
            logger.warning("Store not reachable at startup, will retry on first request: %s", exc)
        try:
            yield
        finally:
            await service.close()

    if tokens:
        logger.info("Using authentication with %d token(s)", len(tokens))
    else:
        logger.info("Not using authentication")

    app = FastAPI(
        title="RuuviTag measurement API",
        version="0.1.0",
        lifespan=lifespan,
        dependencies=[Depends(token_checker(tokens))],
    )
    columns = dict(service.columns)

    @app.get("/")
    async def latest(
        n: Optional[str] = Query(None, description="Measurements per device"),
        columns_param: Optional[str] = Query(None, alias="columns", description="Comma-separated columns"),
        names: Optional[str] = Query(None, description="Comma-separated device names"),
        tz: Optional[str] = Query(None, description="IANA timezone for timestamps"),
    ):
        try:
            loc = parse_location(tz)
        except ValueError:
            logger.warning("Invalid timezone %r", tz)
            raise HTTPException(status_code=400, detail="Invalid timezone")
        try:
            count = parse_n(n)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid n")
        try:
            requested = parse_csv(columns_param)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid columns")
        try:
            identities = parse_csv(names)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid names")
        logger.debug("Columns %s and names %s from query", requested, identities)

        try:
            measurements = await service.latest(count, requested, identities, timeout=request_timeout)
        except DeadlineExceededError as exc:
            logger.error("Timeout while querying measurements: %s", exc)
            raise HTTPException(status_code=504, detail="Timeout while querying measurements")
        except (InvalidColumnError, ValidationError) as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except (RetrievalError, psycopg.Error) as exc:
            logger.error("Error while getting measurements: %s", exc)
            raise HTTPException(status_code=500, detail="Error while getting measurements")

        return JSONResponse(shape_response(measurements, count, columns, loc), headers=NO_STORE)

    @app.get("/health")
    async def health():
        try:
            await service.ping(timeout=request_timeout)
        except (RetrievalError, psycopg.Error) as exc:
            logger.error("Error during status check: %s", exc)
            return JSONResponse({"status": "error", "error": str(exc)}, status_code=500)
        return {"status": "ok"}

    @app.get("/ready")
    async def ready():
        return {"status": "ok"}

    return app


__all__ = ["create_app", "parse_csv", "parse_location", "parse_n", "shape_response"]
