"""
Error Taxonomy.

This module provides the exception hierarchy surfaced by graphlink:
- ClientError: caller mistakes, never retried
- TransientError: server-declared safe-to-retry conditions
- DatabaseError: server-side failures not marked transient
- NetworkError: connection loss, timeouts and pool exhaustion
- RoutingError: no eligible server for the requested access mode
- RetriesExhaustedError: aggregate raised when the retry budget is spent
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories."""
    CLIENT = "client"
    TRANSIENT = "transient"
    DATABASE = "database"
    NETWORK = "network"
    ROUTING = "routing"
    RETRY = "retry"


class GraphLinkError(Exception):
    """Base exception for graphlink errors."""

    category: ErrorCategory = ErrorCategory.CLIENT

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "category": self.category.value,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class ClientError(GraphLinkError):
    """The caller did something wrong; retrying cannot help."""

    category = ErrorCategory.CLIENT


class SessionBusyError(ClientError):
    """A session already hosts an active transaction or is in use by another task."""


class SessionClosedError(ClientError):
    """Operation attempted on a closed session."""


class ResultNotSingleError(ClientError):
    """A result expected to hold exactly one record held some other number."""


class TransactionClosedError(ClientError):
    """Operation attempted on a transaction that reached a terminal state."""

    def __init__(self, message: str, state: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {}) or {}
        if state:
            details["state"] = state
        super().__init__(message, details=details, **kwargs)


class BookmarkValidationError(ClientError):
    """Bookmarks supplied for a database other than the session's target."""

    def __init__(
        self,
        message: str,
        expected: str | None = None,
        found: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if expected:
            details["expected_database"] = expected
        if found:
            details["found_databases"] = found
        super().__init__(message, details=details, **kwargs)


class ConfigurationError(ClientError):
    """Invalid driver or session configuration."""

    def __init__(self, message: str, config_key: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {}) or {}
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details=details, **kwargs)


class TransientError(GraphLinkError):
    """The server says the operation may succeed if retried (deadlock, resource pressure)."""

    category = ErrorCategory.TRANSIENT


class DatabaseError(GraphLinkError):
    """The server failed for a reason it did not mark as transient."""

    category = ErrorCategory.DATABASE


class NetworkError(GraphLinkError):
    """Connection-level failure; the server's view of the work is unknown."""

    category = ErrorCategory.NETWORK

    def __init__(self, message: str, address: Any = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {}) or {}
        if address is not None:
            details["address"] = str(address)
        super().__init__(message, details=details, **kwargs)
        self.address = address


class ConnectionLostError(NetworkError):
    """The transport failed while a request was in flight."""


class PoolTimeoutError(NetworkError):
    """No connection became available within the acquisition timeout."""


class PoolClosedError(NetworkError):
    """The connection pool has been closed."""


class IncompleteCommitError(NetworkError):
    """The connection was lost during commit; the outcome is unknown."""


class DeadlineExceededError(NetworkError):
    """A caller-supplied deadline expired before the work completed."""


class RoutingError(GraphLinkError):
    """No known server satisfies the requested access mode."""

    category = ErrorCategory.ROUTING

    def __init__(
        self,
        message: str,
        access_mode: str | None = None,
        database: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if access_mode:
            details["access_mode"] = access_mode
        if database:
            details["database"] = database
        super().__init__(message, details=details, **kwargs)


class RetriesExhaustedError(GraphLinkError):
    """The retry budget ran out; carries every cause seen along the way."""

    category = ErrorCategory.RETRY

    def __init__(
        self,
        message: str,
        causes: list[BaseException],
        attempts: int,
        elapsed: float,
    ) -> None:
        super().__init__(
            message,
            details={
                "attempts": attempts,
                "elapsed_seconds": round(elapsed, 3),
                "causes": [f"{type(c).__name__}: {c}" for c in causes],
            },
        )
        self.causes = list(causes)
        self.attempts = attempts
        self.elapsed = elapsed

    @property
    def last_error(self) -> BaseException | None:
        return self.causes[-1] if self.causes else None


_CLASSIFICATIONS: dict[str, type[GraphLinkError]] = {
    "ClientError": ClientError,
    "TransientError": TransientError,
    "DatabaseError": DatabaseError,
}

# Reported as transient by the server, but caused by an explicit client
# or administrator action, so replaying the work would be wrong.
NON_RETRYABLE_TRANSIENT_CODES = frozenset({
    "Neo.TransientError.Transaction.Terminated",
    "Neo.TransientError.Transaction.LockClientStopped",
})


def error_from_failure(code: str | None, message: str | None) -> GraphLinkError:
    """
    Map a server failure response to an exception instance.

    Codes look like ``<Vendor>.<Classification>.<Category>.<Title>``; the
    classification segment selects the class. Unknown shapes become
    DatabaseError.
    """
    message = message or "Server reported a failure"
    if not code:
        return DatabaseError(message)

    if code in NON_RETRYABLE_TRANSIENT_CODES:
        return ClientError(message, code=code)

    parts = code.split(".")
    classification = parts[1] if len(parts) > 1 else ""
    error_class = _CLASSIFICATIONS.get(classification, DatabaseError)
    return error_class(message, code=code)
