"""
Session - the unit applications interact with.

A session binds a target database, a default access mode and the current
bookmarks. It hosts at most one open transaction and is not safe for use
from more than one task at a time.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Iterable

from graphlink.bookmarks import Bookmarks, coerce_bookmarks
from graphlink.connection import ConnectionPool
from graphlink.exceptions import (
    ConfigurationError,
    ConnectionLostError,
    SessionBusyError,
    SessionClosedError,
)
from graphlink.logging_config import get_logger, log_context
from graphlink.routing import AccessMode, Router
from graphlink.runner import TransactionRunner, TransactionWork
from graphlink.transaction import Result, Transaction, TransactionState


logger = get_logger(__name__)


class Session:
    """
    Causally chained sequence of transactions against one database.

    Usage:
        async with driver.session(database="movies") as session:
            await session.execute_write(create_person, "Alice")
            bookmarks = session.last_bookmarks()
    """

    def __init__(
        self,
        pool: ConnectionPool,
        router: Router,
        runner: TransactionRunner,
        database: str,
        default_access_mode: AccessMode = AccessMode.WRITE,
        bookmarks: Bookmarks | Iterable[str] | None = None,
        acquisition_timeout: float | None = None,
    ):
        if not database or not database.strip():
            raise ConfigurationError("Session database must be a non-empty name", config_key="database")
        self.session_id = f"session_{uuid.uuid4().hex[:12]}"
        self._pool = pool
        self._router = router
        self._runner = runner
        self._database = database
        self._default_access_mode = AccessMode(default_access_mode)
        self._bookmarks = coerce_bookmarks(bookmarks, database)
        self._acquisition_timeout = acquisition_timeout
        self._transaction: Transaction | None = None
        self._in_use = False
        self._closed = False

    @property
    def database(self) -> str:
        return self._database

    @property
    def default_access_mode(self) -> AccessMode:
        return self._default_access_mode

    @property
    def closed(self) -> bool:
        return self._closed

    def last_bookmarks(self) -> Bookmarks:
        """Current bookmarks, for handing to another session."""
        return self._bookmarks

    def _check_usable(self) -> None:
        if self._closed:
            raise SessionClosedError(f"Session {self.session_id} is closed")
        if self._transaction is not None:
            raise SessionBusyError(
                f"Session {self.session_id} already has an open transaction "
                f"({self._transaction.transaction_id})"
            )

    @contextmanager
    def _exclusive(self):
        self._check_usable()
        if self._in_use:
            raise SessionBusyError(f"Session {self.session_id} is already in use by another task")
        self._in_use = True
        try:
            with log_context(session=self.session_id, database=self._database):
                yield
        finally:
            self._in_use = False

    async def _open_transaction(
        self,
        access_mode: AccessMode,
        metadata: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Transaction:
        address = await self._router.route(access_mode, self._database)
        connection = await self._pool.acquire(address, access_mode, timeout=self._acquisition_timeout)
        tx = Transaction(
            connection,
            self._database,
            access_mode,
            self._bookmarks,
            on_closed=self._transaction_closed,
            metadata=metadata,
            timeout=timeout,
        )
        self._transaction = tx
        await tx.begin()
        return tx

    async def _transaction_closed(self, tx: Transaction) -> None:
        if tx.state is TransactionState.COMMITTED and tx.bookmarks:
            self._bookmarks = Bookmarks.merge(self._bookmarks, tx.bookmarks)
        if self._transaction is tx:
            self._transaction = None
        await self._pool.release(tx.connection)

    async def run(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
        access_mode: AccessMode | None = None,
        **kwparameters: Any,
    ) -> Result:
        """
        Auto-commit a single query. Not retried.

        Raises:
            SessionBusyError: another transaction is open on this session
        """
        with self._exclusive():
            tx = await self._open_transaction(access_mode or self._default_access_mode)
            try:
                result = await tx.run(query, parameters, **kwparameters)
                await tx.commit()
            except BaseException:
                if tx.is_open():
                    try:
                        await tx.rollback()
                    except ConnectionLostError as e:
                        logger.debug(f"Rollback of auto-commit transaction failed: {e}")
                raise
            return result

    async def begin_transaction(
        self,
        access_mode: AccessMode | None = None,
        metadata: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Transaction:
        """
        Open an unmanaged transaction. The caller commits or rolls back; nothing is retried.

        Raises:
            SessionBusyError: another transaction is open on this session
        """
        with self._exclusive():
            return await self._open_transaction(access_mode or self._default_access_mode, metadata, timeout)

    async def execute_read(
        self,
        work: TransactionWork,
        *args: Any,
        timeout_: float | None = None,
        metadata_: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> Any:
        """Run ``work(tx, *args, **kwargs)`` in a retried read transaction."""
        return await self._execute(AccessMode.READ, work, args, kwargs, timeout_, metadata_)

    async def execute_write(
        self,
        work: TransactionWork,
        *args: Any,
        timeout_: float | None = None,
        metadata_: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> Any:
        """Run ``work(tx, *args, **kwargs)`` in a retried write transaction."""
        return await self._execute(AccessMode.WRITE, work, args, kwargs, timeout_, metadata_)

    async def _execute(
        self,
        access_mode: AccessMode,
        work: TransactionWork,
        args: tuple,
        kwargs: dict[str, Any],
        timeout: float | None,
        metadata: dict[str, Any] | None,
    ) -> Any:
        with self._exclusive():
            outcome = await self._runner.run(
                access_mode,
                work,
                self._database,
                self._bookmarks,
                args=args,
                kwargs=kwargs,
                timeout=timeout,
                metadata=metadata,
            )
        if outcome.bookmarks:
            self._bookmarks = Bookmarks.merge(self._bookmarks, outcome.bookmarks)
        return outcome.value

    async def close(self) -> None:
        """Roll back any open transaction, release its connection and retire the session."""
        if self._closed:
            return
        tx = self._transaction
        if tx is not None and tx.is_open():
            try:
                await tx.rollback()
            except ConnectionLostError as e:
                logger.debug(f"Rollback on session close failed: {e}")
        self._transaction = None
        self._closed = True
        logger.debug(f"Session {self.session_id} closed")

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
