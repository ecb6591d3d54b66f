"""Latest RuuviTag measurements from a PostgreSQL table with configurable columns."""
from ruuviapi.columns import DEFAULT_COLUMN_MAP, ColumnMap
from ruuviapi.connection import BackoffPolicy, ConnectionState, ResilientConnection
from ruuviapi.errors import (
    ConfigError,
    DeadlineExceededError,
    DecodeError,
    InvalidColumnError,
    QueryError,
    RetrievalError,
    StoreConnectionError,
    UnknownColumnError,
    ValidationError,
)
from ruuviapi.models import Record
from ruuviapi.service import MeasurementService

__version__ = "0.1.0"

__all__ = [
    "BackoffPolicy",
    "ColumnMap",
    "ConfigError",
    "ConnectionState",
    "DEFAULT_COLUMN_MAP",
    "DeadlineExceededError",
    "DecodeError",
    "InvalidColumnError",
    "MeasurementService",
    "QueryError",
    "Record",
    "ResilientConnection",
    "RetrievalError",
    "StoreConnectionError",
    "UnknownColumnError",
    "ValidationError",
]
