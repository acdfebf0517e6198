"""
Transaction Management - atomic query sequences over a leased connection.

Provides:
- TransactionState: Active, Committed, RolledBack, Failed
- Transaction: issues queries and drives commit/rollback
- Result / ResultSummary: records returned by a query
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from graphlink.bookmarks import Bookmarks
from graphlink.connection import Connection, RequestKind
from graphlink.exceptions import (
    ConnectionLostError,
    GraphLinkError,
    IncompleteCommitError,
    ResultNotSingleError,
    TransactionClosedError,
)
from graphlink.logging_config import get_logger
from graphlink.routing import AccessMode, ServerAddress


logger = get_logger(__name__)


class TransactionState(str, Enum):
    """Transaction state. Everything but ACTIVE is terminal."""
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass
class ResultSummary:
    """Metadata about an executed query."""
    query: str
    parameters: dict[str, Any] = field(default_factory=dict)
    database: str | None = None
    server: ServerAddress | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class Result:
    """
    Records produced by one query.

    Usage:
        result = await tx.run("MATCH (n) RETURN n.name AS name")
        async for record in result:
            print(record["name"])
    """

    def __init__(self, keys: list[str], records: list[dict[str, Any]], summary: ResultSummary):
        self._keys = list(keys)
        self._records = list(records)
        self._summary = summary

    def keys(self) -> list[str]:
        return list(self._keys)

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        for record in self._records:
            yield record

    def __len__(self) -> int:
        return len(self._records)

    def data(self) -> list[dict[str, Any]]:
        return [dict(record) for record in self._records]

    def single(self) -> dict[str, Any]:
        if len(self._records) != 1:
            raise ResultNotSingleError(
                f"Expected exactly one record, found {len(self._records)}"
            )
        return self._records[0]

    def value(self, key: str | int = 0, default: Any = None) -> list[Any]:
        """One column of every record, by name or position."""
        if isinstance(key, int):
            key = self._keys[key] if key < len(self._keys) else None
        return [record.get(key, default) for record in self._records]

    def consume(self) -> ResultSummary:
        return self._summary


class Transaction:
    """
    An atomic sequence of queries bound to one connection.

    State machine:
        ACTIVE --commit--> COMMITTED
        ACTIVE --rollback--> ROLLED_BACK
        ACTIVE --unrecoverable failure--> FAILED

    The connection is exclusively owned by the transaction until it reaches
    a terminal state, at which point ``on_closed`` hands it back to the owner.
    """

    def __init__(
        self,
        connection: Connection,
        database: str,
        access_mode: AccessMode,
        bookmarks: Bookmarks | None = None,
        on_closed: Callable[["Transaction"], Awaitable[None]] | None = None,
        metadata: dict[str, Any] | None = None,
        timeout: float | None = None,
    ):
        self.transaction_id = f"txn_{uuid.uuid4().hex[:12]}"
        self._connection = connection
        self._database = database
        self._access_mode = access_mode
        self._initial_bookmarks = bookmarks or Bookmarks.empty()
        self._on_closed = on_closed
        self._metadata = metadata or {}
        self._timeout = timeout
        self._state = TransactionState.ACTIVE
        self._queries: list[tuple[str, dict[str, Any]]] = []
        self._bookmarks: Bookmarks | None = None
        self._closed_notified = False

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def database(self) -> str:
        return self._database

    @property
    def access_mode(self) -> AccessMode:
        return self._access_mode

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def queries(self) -> list[tuple[str, dict[str, Any]]]:
        return list(self._queries)

    @property
    def bookmarks(self) -> Bookmarks | None:
        """Bookmarks issued by the server on commit; None until committed."""
        return self._bookmarks

    def is_open(self) -> bool:
        return self._state is TransactionState.ACTIVE

    def closed(self) -> bool:
        return not self.is_open()

    async def begin(self) -> None:
        """Open the transaction on the server, carrying the causal bookmarks."""
        payload: dict[str, Any] = {
            "database": self._database,
            "mode": self._access_mode.value,
            "bookmarks": sorted(self._initial_bookmarks.raw_values),
        }
        if self._metadata:
            payload["metadata"] = self._metadata
        if self._timeout is not None:
            payload["timeout"] = self._timeout
        try:
            await self._connection.request(RequestKind.BEGIN, **payload)
        except BaseException as e:
            await self._fail(e)
            raise
        logger.debug(
            f"Transaction {self.transaction_id} begun on {self._connection.address} "
            f"({self._access_mode.value}, database={self._database})"
        )

    def _ensure_open(self, operation: str) -> None:
        if self._state is not TransactionState.ACTIVE:
            raise TransactionClosedError(
                f"Cannot {operation}: transaction is {self._state.value}",
                state=self._state.value,
            )

    async def run(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
        **kwparameters: Any,
    ) -> Result:
        """
        Execute one query inside the transaction.

        Raises:
            TransactionClosedError: the transaction is no longer active
        """
        self._ensure_open("run query")
        params = {**(parameters or {}), **kwparameters}
        self._queries.append((query, params))
        try:
            response = await self._connection.request(RequestKind.RUN, query=query, parameters=params)
        except BaseException as e:
            await self._fail(e)
            raise

        summary = ResultSummary(
            query=query,
            parameters=params,
            database=self._database,
            server=self._connection.address,
            metadata=dict(response.metadata),
        )
        return Result(response.keys, response.records, summary)

    async def commit(self) -> Bookmarks:
        """
        Commit and return the bookmarks issued for this transaction.

        Raises:
            TransactionClosedError: the transaction is no longer active
            IncompleteCommitError: the connection dropped mid-commit; outcome unknown
        """
        self._ensure_open("commit")
        try:
            response = await self._connection.request(RequestKind.COMMIT)
        except ConnectionLostError as e:
            await self._fail(e)
            raise IncompleteCommitError(
                f"Connection to {self._connection.address} lost during commit; "
                "the transaction may or may not have been applied",
                address=self._connection.address,
            ) from e
        except BaseException as e:
            await self._fail(e)
            raise

        token = response.metadata.get("bookmark")
        self._bookmarks = Bookmarks.from_raw_values([token] if token else [], self._database)
        self._state = TransactionState.COMMITTED
        logger.debug(f"Transaction {self.transaction_id} committed")
        await self._notify_closed()
        return self._bookmarks

    async def rollback(self) -> None:
        """
        Roll back. Best-effort: the work is void from the client's view either way.

        Raises:
            TransactionClosedError: the transaction was already committed
            ConnectionLostError: the rollback message could not be delivered
        """
        if self._state in (TransactionState.ROLLED_BACK, TransactionState.FAILED):
            return
        self._ensure_open("roll back")
        self._state = TransactionState.ROLLED_BACK
        try:
            await self._connection.request(RequestKind.ROLLBACK)
        except ConnectionLostError:
            raise
        except GraphLinkError as e:
            self._connection.mark_unhealthy(f"rollback rejected: {e}")
            logger.warning(f"Rollback of {self.transaction_id} rejected by server: {e}")
        finally:
            logger.debug(f"Transaction {self.transaction_id} rolled back")
            await self._notify_closed()

    def abandon(self) -> None:
        """Mark FAILED without contacting the server; the connection is about to be discarded."""
        if self._state is TransactionState.ACTIVE:
            self._state = TransactionState.FAILED

    async def close(self) -> None:
        """Roll back if still active."""
        if self.is_open():
            await self.rollback()

    async def _fail(self, error: BaseException) -> None:
        self._state = TransactionState.FAILED
        if isinstance(error, GraphLinkError) and not isinstance(error, ConnectionLostError):
            await self._reset_quietly()
        logger.debug(f"Transaction {self.transaction_id} failed: {type(error).__name__}: {error}")
        await self._notify_closed()

    async def _reset_quietly(self) -> None:
        if not self._connection.healthy:
            return
        try:
            await self._connection.request(RequestKind.RESET)
        except GraphLinkError as e:
            self._connection.mark_unhealthy(f"reset failed: {e}")

    async def _notify_closed(self) -> None:
        if self._closed_notified:
            return
        self._closed_notified = True
        if self._on_closed is not None:
            await self._on_closed(self)

    async def __aenter__(self) -> "Transaction":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if not self.is_open():
            return
        if exc_type is None:
            await self.commit()
            return
        try:
            await self.rollback()
        except ConnectionLostError as e:
            logger.debug(f"Rollback after error failed: {e}")

    def __repr__(self) -> str:
        return f"<Transaction {self.transaction_id} {self._state.value}>"
