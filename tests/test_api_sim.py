"""Integration-style tests for the FastAPI layer using a fake service."""
from __future__ import annotations

import unittest
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg
from fastapi.testclient import TestClient

from ruuviapi.api import create_app, parse_csv, parse_location, parse_n, shape_response
from ruuviapi.columns import ColumnMap
from ruuviapi.errors import (
    DeadlineExceededError,
    InvalidColumnError,
    QueryError,
    StoreConnectionError,
    ValidationError,
)
from ruuviapi.models import Record

STAMP = datetime(2020, 12, 10, 12, 10, 39, tzinfo=timezone.utc)
EARLIER = datetime(2020, 12, 10, 12, 9, 39, tzinfo=timezone.utc)


class _FakeService:
    def __init__(self) -> None:
        self.columns = ColumnMap({"time": "ts", "name": "device", "temperature": "temp_c"})
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[BaseException] = None
        self.ping_error: Optional[BaseException] = None
        self.connect_error: Optional[BaseException] = None
        self.connected = 0
        self.closed = 0

    async def connect(self, *, timeout: Optional[float] = None) -> None:
        self.connected += 1
        if self.connect_error is not None:
            raise self.connect_error

    async def close(self) -> None:
        self.closed += 1

    async def ping(self, *, timeout: Optional[float] = None) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    async def latest(self, n, columns=None, identities=None, *, timeout=None) -> Dict[str, List[Record]]:
        self.calls.append({"n": n, "columns": columns, "identities": identities, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return {
            "Sauna": [
                Record(time=STAMP, temperature=80.5),
                Record(time=EARLIER, temperature=79.0),
            ][:n],
            "Attic": [],
        }


class ApiSimulationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.service = _FakeService()
        self.client = TestClient(create_app(self.service, tokens=["secret"], request_timeout=2.5))
        self.auth = {"Authorization": "Bearer secret"}

    def tearDown(self) -> None:
        self.client.close()

    def test_missing_or_wrong_token_is_forbidden(self) -> None:
        self.assertEqual(self.client.get("/").status_code, 403)
        response = self.client.get("/", headers={"Authorization": "Bearer wrong"})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["detail"], "Forbidden")
        self.assertEqual(self.client.get("/health").status_code, 403)
        self.assertEqual(self.service.calls, [])

    def test_latest_single_measurement_is_flattened(self) -> None:
        response = self.client.get("/", headers=self.auth)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"Sauna": {"ts": "2020-12-10T12:10:39+00:00", "temp_c": 80.5}})
        self.assertIn("no-store", response.headers["cache-control"])
        self.assertEqual(
            self.service.calls,
            [{"n": 1, "columns": [], "identities": [], "timeout": 2.5}],
        )

    def test_timezone_is_applied_to_timestamps(self) -> None:
        response = self.client.get("/", params={"tz": "Europe/Helsinki"}, headers=self.auth)
        self.assertEqual(response.json()["Sauna"]["ts"], "2020-12-10T14:10:39+02:00")

    def test_several_measurements_are_lists(self) -> None:
        response = self.client.get(
            "/",
            params={"n": "2", "columns": "ts,device,temp_c", "names": "Sauna,Attic"},
            headers=self.auth,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {
                "Sauna": [
                    {"ts": "2020-12-10T12:10:39+00:00", "temp_c": 80.5},
                    {"ts": "2020-12-10T12:09:39+00:00", "temp_c": 79.0},
                ]
            },
        )
        call = self.service.calls[0]
        self.assertEqual(call["n"], 2)
        self.assertEqual(call["columns"], ["ts", "device", "temp_c"])
        self.assertEqual(call["identities"], ["Sauna", "Attic"])

    def test_invalid_parameters_are_bad_requests(self) -> None:
        cases = [
            ({"tz": "Mars/Olympus"}, "Invalid timezone"),
            ({"n": "zero"}, "Invalid n"),
            ({"n": "0"}, "Invalid n"),
            ({"columns": "ts;drop table"}, "Invalid columns"),
            ({"columns": "ts,"}, "Invalid columns"),
            ({"names": "Sauna,'x'"}, "Invalid names"),
        ]
        for params, detail in cases:
            response = self.client.get("/", params=params, headers=self.auth)
            self.assertEqual(response.status_code, 400, msg=str(params))
            self.assertEqual(response.json()["detail"], detail)
        self.assertEqual(self.service.calls, [])

    def test_column_and_validation_errors_are_bad_requests(self) -> None:
        for error in (InvalidColumnError("unknown column humidity"), ValidationError("n must be at least 1")):
            self.service.error = error
            response = self.client.get("/", headers=self.auth)
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["detail"], str(error))

    def test_deadline_is_gateway_timeout(self) -> None:
        self.service.error = DeadlineExceededError("deadline expired during query")
        response = self.client.get("/", headers=self.auth)
        self.assertEqual(response.status_code, 504)

    def test_store_failures_are_internal_errors(self) -> None:
        for error in (
            QueryError("querying Sauna failed", identity="Sauna"),
            StoreConnectionError("could not connect to store after 5 attempts"),
            psycopg.OperationalError("boom"),
        ):
            self.service.error = error
            response = self.client.get("/", headers=self.auth)
            self.assertEqual(response.status_code, 500)
            self.assertEqual(response.json()["detail"], "Error while getting measurements")

    def test_health_reports_store_state(self) -> None:
        response = self.client.get("/health", headers=self.auth)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

        self.service.ping_error = StoreConnectionError("could not reconnect to store after 5 attempts")
        response = self.client.get("/health", headers=self.auth)
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["status"], "error")
        self.assertIn("could not reconnect", response.json()["error"])

    def test_ready_is_always_ok(self) -> None:
        self.service.ping_error = StoreConnectionError("down")
        response = self.client.get("/ready", headers=self.auth)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})


class ApiWithoutTokensTest(unittest.TestCase):
    def test_no_tokens_means_no_authentication(self) -> None:
        client = TestClient(create_app(_FakeService()))
        self.assertEqual(client.get("/ready").status_code, 200)
        self.assertEqual(client.get("/").status_code, 200)

    def test_lifespan_connects_and_closes(self) -> None:
        service = _FakeService()
        service.connect_error = StoreConnectionError("refused")
        with TestClient(create_app(service)) as client:
            self.assertEqual(service.connected, 1)
            self.assertEqual(client.get("/ready").status_code, 200)
        self.assertEqual(service.closed, 1)


class HelperTest(unittest.TestCase):
    def test_parse_csv(self) -> None:
        self.assertEqual(parse_csv(None), [])
        self.assertEqual(parse_csv(""), [])
        self.assertEqual(parse_csv("ts,device"), ["ts", "device"])
        with self.assertRaises(ValueError):
            parse_csv("ts,device,")

    def test_parse_n(self) -> None:
        self.assertEqual(parse_n(None), 1)
        self.assertEqual(parse_n("4"), 4)
        for value in ("-1", "0", "1.5"):
            with self.assertRaises(ValueError):
                parse_n(value)

    def test_parse_location(self) -> None:
        self.assertIs(parse_location(None), timezone.utc)
        self.assertEqual(parse_location("Europe/Helsinki").utcoffset(STAMP.replace(tzinfo=None)).total_seconds(), 7200)
        with self.assertRaises(ValueError):
            parse_location("Not/AZone")

    def test_shape_response_skips_devices_without_rows(self) -> None:
        shaped = shape_response({"A": [], "B": [Record(time=STAMP)]}, 1, {"time": "ts"}, timezone.utc)
        self.assertEqual(shaped, {"B": {"ts": "2020-12-10T12:10:39+00:00"}})


if __name__ == "__main__":
    unittest.main()
