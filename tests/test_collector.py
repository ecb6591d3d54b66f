"""Tests for decoding result rows into records."""
from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from ruuviapi.collector import RowCollector
from ruuviapi.columns import LOGICAL_FIELDS, ColumnMap
from ruuviapi.errors import DecodeError, UnknownColumnError
from ruuviapi.models import Record

STAMP = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)


class RowCollectorTest(unittest.TestCase):
    def setUp(self) -> None:
        self.columns = ColumnMap({field: f"p_{field}" for field in LOGICAL_FIELDS})
        self.collector = RowCollector(self.columns)

    def test_requested_values_come_back_and_others_stay_absent(self) -> None:
        requested = ["p_time", "p_name", "p_temperature", "p_tx_power", "p_movement_counter"]
        record = self.collector.collect((STAMP, "Sauna", 81.25, 4, 17), requested)

        self.assertEqual(
            record.values(),
            {
                "time": STAMP,
                "name": "Sauna",
                "temperature": 81.25,
                "tx_power": 4,
                "movement_counter": 17,
            },
        )
        self.assertIsNone(record.humidity)
        self.assertIsNone(record.mac)

    def test_every_field_decodes_to_its_type(self) -> None:
        requested = [f"p_{field}" for field in LOGICAL_FIELDS]
        raw = {
            "time": STAMP,
            "mac": "AA:BB:CC:DD:EE:FF",
            "name": "Kitchen",
            "temperature": Decimal("21.5"),
            "humidity": 40,
            "pressure": 1001.2,
            "battery_voltage": 2.9,
            "tx_power": 4,
            "acceleration_x": -12,
            "acceleration_y": 8.0,
            "acceleration_z": 1000,
            "movement_counter": 3,
            "measurement_number": 512,
            "dew_point": 7.4,
        }
        record = self.collector.collect(tuple(raw[field] for field in LOGICAL_FIELDS), requested)

        self.assertEqual(record.temperature, 21.5)
        self.assertIsInstance(record.temperature, float)
        self.assertIsInstance(record.humidity, float)
        self.assertEqual(record.acceleration_y, 8)
        self.assertIsInstance(record.acceleration_y, int)
        self.assertEqual(record.mac, "AA:BB:CC:DD:EE:FF")
        self.assertEqual(record.measurement_number, 512)

    def test_null_is_absent_not_zero(self) -> None:
        record = self.collector.collect((STAMP, "Sauna", None, None), ["p_time", "p_name", "p_temperature", "p_tx_power"])
        self.assertIsNone(record.temperature)
        self.assertIsNone(record.tx_power)
        self.assertNotIn("temperature", record.values())

    def test_column_order_follows_request(self) -> None:
        record = self.collector.collect(("Sauna", 70.0, STAMP), ["p_name", "p_temperature", "p_time"])
        self.assertEqual(record, Record(time=STAMP, name="Sauna", temperature=70.0))

    def test_naive_timestamps_are_treated_as_utc(self) -> None:
        record = self.collector.collect((datetime(2024, 3, 1, 12, 30), "x"), ["p_time", "p_name"])
        self.assertEqual(record.time, STAMP)
        offset = timezone(timedelta(hours=2))
        record = self.collector.collect((datetime(2024, 3, 1, 14, 30, tzinfo=offset), "x"), ["p_time", "p_name"])
        self.assertEqual(record.time.tzinfo, timezone.utc)
        self.assertEqual(record.time, STAMP)

    def test_unknown_column(self) -> None:
        with self.assertRaises(UnknownColumnError) as ctx:
            self.collector.collect((STAMP, 1), ["p_time", "bogus"])
        self.assertIsInstance(ctx.exception, DecodeError)

    def test_row_width_must_match(self) -> None:
        with self.assertRaisesRegex(DecodeError, "2 values but 3 columns"):
            self.collector.collect((STAMP, "x"), ["p_time", "p_name", "p_humidity"])

    def test_null_time_is_a_decode_error(self) -> None:
        with self.assertRaisesRegex(DecodeError, "p_time is NULL"):
            self.collector.collect((None, "x"), ["p_time", "p_name"])

    def test_missing_time_is_a_decode_error(self) -> None:
        with self.assertRaisesRegex(DecodeError, "not selected"):
            self.collector.collect(("x",), ["p_name"])

    def test_wrong_types_are_decode_errors(self) -> None:
        cases = [
            (("not a time", "x"), ["p_time", "p_name"]),
            ((STAMP, "warm"), ["p_time", "p_temperature"]),
            ((STAMP, 2.5), ["p_time", "p_tx_power"]),
            ((STAMP, True), ["p_time", "p_humidity"]),
            ((STAMP, Decimal("4.7")), ["p_time", "p_tx_power"]),
            ((STAMP, float("inf")), ["p_time", "p_movement_counter"]),
        ]
        for row, requested in cases:
            with self.assertRaises(DecodeError, msg=str(row)):
                self.collector.collect(row, requested)

    def test_integral_decimals_become_ints(self) -> None:
        record = self.collector.collect((STAMP, Decimal("4")), ["p_time", "p_tx_power"])
        self.assertEqual(record.tx_power, 4)
        self.assertIsInstance(record.tx_power, int)

    def test_custom_physical_names(self) -> None:
        collector = RowCollector(ColumnMap({"time": "ts", "name": "device", "temperature": "temp_c"}))
        record = collector.collect((STAMP, "A", 19.5), ["ts", "device", "temp_c"])
        self.assertEqual(record, Record(time=STAMP, name="A", temperature=19.5))


class RecordTest(unittest.TestCase):
    def test_pop_identity_prefers_name(self) -> None:
        record = Record(time=STAMP, name="Sauna", mac="AA:BB")
        self.assertEqual(record.pop_identity(), "Sauna")
        self.assertIsNone(record.name)
        self.assertEqual(record.mac, "AA:BB")

    def test_pop_identity_falls_back_to_mac(self) -> None:
        record = Record(time=STAMP, name="", mac="AA:BB")
        self.assertEqual(record.pop_identity(), "AA:BB")
        self.assertIsNone(record.name)
        self.assertIsNone(record.mac)

    def test_to_dict_uses_physical_names_and_timezone(self) -> None:
        record = Record(time=STAMP, temperature=20.5, humidity=None)
        helsinki = timezone(timedelta(hours=2))
        self.assertEqual(
            record.to_dict({"time": "ts", "temperature": "temp_c"}, tz=helsinki),
            {"ts": "2024-03-01T14:30:00+02:00", "temp_c": 20.5},
        )
        self.assertEqual(record.to_dict(), {"time": "2024-03-01T12:30:00+00:00", "temperature": 20.5})


if __name__ == "__main__":
    unittest.main()
