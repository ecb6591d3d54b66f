"""Exception hierarchy for measurement retrieval."""
from __future__ import annotations

from typing import Optional, Sequence


class RetrievalError(Exception):
    """Base class for every error raised by :mod:`ruuviapi`."""

    def __init__(self, message: str, *, identity: Optional[str] = None) -> None:
        super().__init__(message)
        self.identity = identity


class ConfigError(RetrievalError):
    """Invalid column map or service configuration; the service must not start."""


class InvalidColumnError(RetrievalError):
    """The caller requested an unknown column or omitted a required one."""


class ValidationError(RetrievalError):
    """A query could not be built from the given arguments."""


class StoreConnectionError(RetrievalError):
    """Dialling or re-dialling the store failed."""

    def __init__(
        self,
        message: str,
        *,
        errors: Sequence[BaseException] = (),
        identity: Optional[str] = None,
    ) -> None:
        if errors:
            details = "; ".join(f"{type(exc).__name__}: {exc}" for exc in errors)
            message = f"{message} ({details})"
        super().__init__(message, identity=identity)
        self.errors = tuple(errors)


class DeadlineExceededError(RetrievalError, TimeoutError):
    """The caller's deadline expired before the operation finished."""


class DecodeError(RetrievalError):
    """A result row did not match the expected column set."""


class UnknownColumnError(DecodeError):
    """A column has no logical field in the column map."""


class QueryError(RetrievalError):
    """The store rejected a query for a reason other than a lost connection."""


__all__ = [
    "RetrievalError",
    "ConfigError",
    "InvalidColumnError",
    "ValidationError",
    "StoreConnectionError",
    "DeadlineExceededError",
    "DecodeError",
    "UnknownColumnError",
    "QueryError",
]
