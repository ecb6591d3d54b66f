"""Command-line interface for the RuuviTag measurement API."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

import psycopg
import uvicorn
from rich.console import Console
from rich.table import Table

from ruuviapi.api import create_app
from ruuviapi.config import ServiceConfig, load_config
from ruuviapi.errors import ConfigError, RetrievalError
from ruuviapi.metrics import MetricsLogger
from ruuviapi.models import Record
from ruuviapi.service import MeasurementService

logger = logging.getLogger("ruuviapi.cli")

# argparse dest -> dotted config key
OVERRIDES: Dict[str, str] = {
	"postgres_host": "postgres.host",
	"postgres_port": "postgres.port",
	"postgres_username": "postgres.username",
	"postgres_password": "postgres.password",
	"postgres_database": "postgres.database",
	"postgres_table": "postgres.table",
	"postgres_name_table": "postgres.name_table",
	"server_port": "server.port",
	"token": "server.token",
	"columns": "columns",
	"loglevel": "loglevel",
}


def _load(args: argparse.Namespace) -> ServiceConfig:
	overrides = {key: getattr(args, dest, None) for dest, key in OVERRIDES.items()}
	config = load_config(args.config, overrides=overrides)
	logging.basicConfig(
		level=config.loglevel.upper(),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		force=True,
	)
	logger.info("Connecting to PostgreSQL %s", config.describe())
	return config


def _service(args: argparse.Namespace, config: ServiceConfig) -> MeasurementService:
	metrics = MetricsLogger(args.metrics_log, static_extra={"table": config.table}) if args.metrics_log else None
	return MeasurementService.from_config(config, metrics=metrics)


def _rows(measurements: Dict[str, List[Record]], columns: Dict[str, str]) -> List[Dict[str, Any]]:
	rows: List[Dict[str, Any]] = []
	for identity, records in measurements.items():
		for record in records:
			rows.append({"device": identity, **record.to_dict(columns)})
	return rows


async def _cmd_serve(args: argparse.Namespace) -> int:
	config = _load(args)
	service = _service(args, config)
	app = create_app(service, tokens=config.tokens)
	server = uvicorn.Server(
		uvicorn.Config(app, host=args.host, port=config.server_port, log_level=config.loglevel)
	)
	logger.info("Starting server on port %d", config.server_port)
	await server.serve()
	return 0


async def _cmd_latest(args: argparse.Namespace) -> int:
	config = _load(args)
	service = _service(args, config)
	try:
		measurements = await service.latest(args.n, args.column or None, args.name or None, timeout=args.timeout)
	except (RetrievalError, psycopg.Error) as exc:
		sys.stderr.write(f"error: {exc}\n")
		return 1
	finally:
		await service.close()

	columns = dict(service.columns)
	if args.json:
		data = {
			identity: [record.to_dict(columns) for record in records]
			for identity, records in measurements.items()
		}
		json.dump(data, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0

	rows = _rows(measurements, columns)
	headers = ["device"] + [column for column in dict.fromkeys(k for row in rows for k in row) if column != "device"]
	table = Table(title="Latest measurements", show_lines=False)
	for column in headers:
		table.add_column(column.upper())
	for row in rows:
		table.add_row(*(str(row.get(column, "")) for column in headers))
	Console().print(table)
	return 0


async def _cmd_ping(args: argparse.Namespace) -> int:
	config = _load(args)
	service = _service(args, config)
	try:
		await service.ping(timeout=args.timeout)
	except (RetrievalError, psycopg.Error) as exc:
		sys.stderr.write(f"error: {exc}\n")
		return 1
	finally:
		await service.close()
	sys.stdout.write("ok\n")
	return 0


def _add_common(parser: argparse.ArgumentParser) -> None:
	parser.add_argument("-c", "--config", help="Config file path")
	parser.add_argument("--loglevel", help="Log level (debug, info, warning, error)")
	parser.add_argument("--metrics-log", help="Append store events to this CSV file")
	parser.add_argument("--postgres-host", help="PostgreSQL host")
	parser.add_argument("--postgres-port", type=int, help="PostgreSQL port")
	parser.add_argument("--postgres-username", help="PostgreSQL username")
	parser.add_argument("--postgres-password", help="PostgreSQL password")
	parser.add_argument("--postgres-database", help="Database name")
	parser.add_argument("--postgres-table", help="Measurement table name")
	parser.add_argument("--postgres-name-table", help="RuuviTag name table name")
	parser.add_argument("--columns", help="Column map as logical=physical pairs, comma-separated")


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="ruuviapi",
		description="REST API for reading current RuuviTag measurement values from PostgreSQL",
	)
	sub = parser.add_subparsers(dest="command", required=True)

	serve = sub.add_parser("serve", help="Start the HTTP API server")
	_add_common(serve)
	serve.add_argument("--host", default="0.0.0.0", help="Bind address")
	serve.add_argument("--server-port", type=int, help="Server port")
	serve.add_argument("--token", action="append", help="Allowed API access token (repeatable)")
	serve.set_defaults(handler=_cmd_serve)

	latest = sub.add_parser("latest", help="Print the latest measurements")
	_add_common(latest)
	latest.add_argument("-n", type=int, default=1, help="Measurements per device")
	latest.add_argument("--column", action="append", help="Physical column to return (repeatable)")
	latest.add_argument("--name", action="append", help="Device to query (repeatable)")
	latest.add_argument("--timeout", type=float, default=5.0, help="Query timeout in seconds")
	latest.add_argument("--json", action="store_true", help="Output JSON")
	latest.set_defaults(handler=_cmd_latest)

	ping = sub.add_parser("ping", help="Check that the store is reachable")
	_add_common(ping)
	ping.add_argument("--timeout", type=float, default=5.0, help="Ping timeout in seconds")
	ping.set_defaults(handler=_cmd_ping)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	try:
		return asyncio.run(args.handler(args))
	except ConfigError as exc:
		parser.error(str(exc))
	return 2


if __name__ == "__main__":
	sys.exit(main())
