"""
Driver - entry point owning the connection pool and the router.

Usage:
    driver = Driver(open_transport, router, DriverConfig(database="movies"))
    async with driver:
        async with driver.session() as session:
            await session.execute_write(work)

        result = await driver.execute_query(
            "GET", {"key": "answer"}, routing_=AccessMode.READ
        )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from graphlink.bookmarks import Bookmarks
from graphlink.config import DriverConfig
from graphlink.connection import ConnectionPool, RequestKind, TransportFactory
from graphlink.exceptions import ClientError
from graphlink.logging_config import get_logger, setup_logging
from graphlink.retry import ErrorClassifier
from graphlink.routing import AccessMode, Router, ServerAddress
from graphlink.runner import TransactionRunner
from graphlink.session import Session
from graphlink.transaction import ResultSummary, Transaction


logger = get_logger(__name__)


@dataclass
class EagerResult:
    """Fully fetched result of ``Driver.execute_query``."""
    records: list[dict[str, Any]]
    keys: list[str]
    summary: ResultSummary
    bookmarks: Bookmarks = field(default_factory=Bookmarks.empty)


class Driver:
    """
    Shared session factory, safe to use from many tasks at once.

    One driver per process and cluster; sessions are cheap and short-lived.
    """

    def __init__(
        self,
        opener: TransportFactory,
        router: Router,
        config: DriverConfig | None = None,
        classifier: Callable[[BaseException], bool] | None = None,
    ):
        self._config = config or DriverConfig()
        if self._config.configure_logging:
            setup_logging(self._config.log_level)
        self._router = router
        self._pool = ConnectionPool(
            opener,
            max_size=self._config.max_connection_pool_size,
            acquisition_timeout=self._config.connection_acquisition_timeout,
            max_lifetime=self._config.max_connection_lifetime,
        )
        self._runner = TransactionRunner(
            router,
            self._pool,
            retry_policy=self._config.retry_policy(),
            classifier=classifier or ErrorClassifier(),
        )
        self._closed = False

    @property
    def config(self) -> DriverConfig:
        return self._config

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def router(self) -> Router:
        return self._router

    @property
    def closed(self) -> bool:
        return self._closed

    def session(
        self,
        database: str | None = None,
        default_access_mode: AccessMode | None = None,
        bookmarks: Bookmarks | Iterable[str] | None = None,
    ) -> Session:
        """Create a session. Bookmarks are validated here, before any network activity."""
        if self._closed:
            raise ClientError("Driver is closed")
        return Session(
            self._pool,
            self._router,
            self._runner,
            database or self._config.database,
            default_access_mode=default_access_mode or self._config.default_access_mode,
            bookmarks=bookmarks,
        )

    async def execute_query(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
        routing_: AccessMode | str = AccessMode.WRITE,
        database_: str | None = None,
        bookmarks_: Bookmarks | Iterable[str] | None = None,
        **kwparameters: Any,
    ) -> EagerResult:
        """Run one query in a retried managed transaction and fetch every record."""
        params = {**(parameters or {}), **kwparameters}

        async def work(tx: Transaction) -> EagerResult:
            result = await tx.run(query, params)
            return EagerResult(records=result.data(), keys=result.keys(), summary=result.consume())

        routing_ = AccessMode(routing_)
        async with self.session(database=database_, bookmarks=bookmarks_) as session:
            if routing_ is AccessMode.READ:
                eager = await session.execute_read(work)
            else:
                eager = await session.execute_write(work)
            eager.bookmarks = session.last_bookmarks()
        return eager

    async def verify_connectivity(self, database: str | None = None) -> ServerAddress:
        """Route a read, then ping the chosen server over a pooled connection."""
        database = database or self._config.database
        address = await self._router.route(AccessMode.READ, database)
        connection = await self._pool.acquire(address, AccessMode.READ)
        try:
            await connection.request(RequestKind.PING)
        finally:
            await self._pool.release(connection)
        logger.debug(f"Connectivity verified against {address}")
        return address

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pool.close()
        logger.debug("Driver closed")

    async def __aenter__(self) -> "Driver":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
