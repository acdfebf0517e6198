"""
graphlink - transaction execution core for a clustered, causally consistent graph database.

Provides:
- Driver / Session: application entry points
- Transaction / Result: atomic query sequences and their records
- TransactionRunner: retrying executor for transaction functions
- ConnectionPool: bounded per-address connection pooling
- Bookmarks: causal sequencing tokens
- Routers: static and routing-table based server selection
"""

from graphlink.bookmarks import Bookmarks
from graphlink.config import DriverConfig
from graphlink.connection import (
    Connection,
    ConnectionPool,
    PoolStats,
    Request,
    RequestKind,
    Response,
    Transport,
)
from graphlink.driver import Driver, EagerResult
from graphlink.exceptions import (
    BookmarkValidationError,
    ClientError,
    ConfigurationError,
    ConnectionLostError,
    DatabaseError,
    DeadlineExceededError,
    GraphLinkError,
    IncompleteCommitError,
    NetworkError,
    PoolClosedError,
    PoolTimeoutError,
    ResultNotSingleError,
    RetriesExhaustedError,
    RoutingError,
    SessionBusyError,
    SessionClosedError,
    TransactionClosedError,
    TransientError,
)
from graphlink.logging_config import get_logger, log_context, setup_logging
from graphlink.retry import ErrorClassifier, RetryPolicy
from graphlink.routing import (
    AccessMode,
    Router,
    RoutingTable,
    RoutingTableRouter,
    ServerAddress,
    StaticRouter,
)
from graphlink.runner import RunOutcome, TransactionRunner
from graphlink.session import Session
from graphlink.transaction import Result, ResultSummary, Transaction, TransactionState

__version__ = "0.1.0"

__all__ = [
    "AccessMode",
    "Bookmarks",
    "BookmarkValidationError",
    "ClientError",
    "ConfigurationError",
    "Connection",
    "ConnectionLostError",
    "ConnectionPool",
    "DatabaseError",
    "DeadlineExceededError",
    "Driver",
    "DriverConfig",
    "EagerResult",
    "ErrorClassifier",
    "GraphLinkError",
    "IncompleteCommitError",
    "NetworkError",
    "PoolClosedError",
    "PoolStats",
    "PoolTimeoutError",
    "Request",
    "RequestKind",
    "Response",
    "Result",
    "ResultNotSingleError",
    "ResultSummary",
    "RetriesExhaustedError",
    "RetryPolicy",
    "Router",
    "RoutingError",
    "RoutingTable",
    "RoutingTableRouter",
    "RunOutcome",
    "ServerAddress",
    "Session",
    "SessionBusyError",
    "SessionClosedError",
    "StaticRouter",
    "Transaction",
    "TransactionClosedError",
    "TransactionRunner",
    "TransactionState",
    "TransientError",
    "Transport",
    "get_logger",
    "log_context",
    "setup_logging",
]
