"""
Connection Management - server connections and per-address pooling.

Provides:
- Request / Response: the structured messages exchanged with a transport
- Transport: protocol implemented by the network layer
- Connection: a transport bound to one server, with a health flag
- ConnectionPool: bounded, per-address pool shared by all sessions
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from graphlink.exceptions import (
    ConnectionLostError,
    PoolClosedError,
    PoolTimeoutError,
    error_from_failure,
)
from graphlink.logging_config import get_logger
from graphlink.routing import AccessMode, ServerAddress


logger = get_logger(__name__)


class RequestKind(str, Enum):
    """Request kinds understood by the server."""
    BEGIN = "begin"
    RUN = "run"
    COMMIT = "commit"
    ROLLBACK = "rollback"
    RESET = "reset"
    PING = "ping"


@dataclass
class Request:
    """A single request sent over a transport."""
    kind: RequestKind
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class Response:
    """
    Structured server response.

    Attributes:
        success: False when the server reported a failure
        metadata: Server metadata (a COMMIT response carries "bookmark")
        keys: Column names of a RUN response
        records: Decoded records of a RUN response
        failure_code: Dotted status code of a failure
        failure_message: Human-readable failure description
    """
    success: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)
    keys: list[str] = field(default_factory=list)
    records: list[dict[str, Any]] = field(default_factory=list)
    failure_code: str | None = None
    failure_message: str | None = None

    @classmethod
    def failure(cls, code: str, message: str) -> "Response":
        return cls(success=False, failure_code=code, failure_message=message)


@runtime_checkable
class Transport(Protocol):
    """
    Network collaborator: opaque request in, structured response out.

    ``send`` raises OSError (including the built-in ConnectionError) or
    asyncio.TimeoutError when the exchange fails at the network level.
    """

    async def send(self, request: Request) -> Response:
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[ServerAddress], Awaitable[Transport]]


class Connection:
    """
    A transport bound to one server address.

    A connection is exclusively owned by whoever leased it from the pool.
    Once marked unhealthy it is never lent again.
    """

    def __init__(
        self,
        transport: Transport,
        address: ServerAddress,
        created_at: float | None = None,
    ):
        self._transport = transport
        self.address = address
        self.connection_id = f"conn_{uuid.uuid4().hex[:12]}"
        self.created_at = time.monotonic() if created_at is None else created_at
        self.access_mode: AccessMode | None = None
        self.in_use = False
        self._healthy = True
        self._closed = False

    @property
    def healthy(self) -> bool:
        return self._healthy and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_unhealthy(self, reason: str = "") -> None:
        if self._healthy:
            logger.debug(f"Connection {self.connection_id} to {self.address} marked unhealthy: {reason}")
        self._healthy = False

    async def request(self, kind: RequestKind, **payload: Any) -> Response:
        """
        Send one request and return the successful response.

        Raises:
            ConnectionLostError: on transport failure (connection marked unhealthy)
            GraphLinkError: subclass matching the server's failure code
        """
        if not self.healthy:
            raise ConnectionLostError(
                f"Connection {self.connection_id} is no longer usable",
                address=self.address,
            )
        try:
            response = await self._transport.send(Request(kind, payload))
        except (OSError, asyncio.TimeoutError) as e:
            self.mark_unhealthy(f"{kind.value} failed: {e}")
            raise ConnectionLostError(
                f"Connection to {self.address} lost during {kind.value}: {e}",
                address=self.address,
            ) from e
        except asyncio.CancelledError:
            self.mark_unhealthy(f"{kind.value} cancelled")
            raise

        if not response.success:
            raise error_from_failure(response.failure_code, response.failure_message)
        return response

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._transport.close()
        except OSError as e:
            logger.debug(f"Error closing connection {self.connection_id}: {e}")

    def __repr__(self) -> str:
        state = "healthy" if self.healthy else "unhealthy"
        return f"<Connection {self.connection_id} {self.address} {state}>"


@dataclass
class PoolStats:
    """Connection counts for one address."""
    idle: int = 0
    in_use: int = 0

    @property
    def total(self) -> int:
        return self.idle + self.in_use


@dataclass
class _AddressPool:
    idle: deque[Connection] = field(default_factory=deque)
    in_use: int = 0

    @property
    def total(self) -> int:
        return len(self.idle) + self.in_use


class ConnectionPool:
    """
    Bounded connection pool keyed by server address.

    Features:
    - Per-address limit on idle + lent-out connections
    - Blocking acquisition with timeout
    - Unhealthy and expired connections are closed instead of reused
    - Graceful shutdown

    Usage:
        pool = ConnectionPool(opener, max_size=50)
        connection = await pool.acquire(address, AccessMode.READ)
        try:
            ...
        finally:
            await pool.release(connection)
    """

    def __init__(
        self,
        opener: TransportFactory,
        max_size: int = 100,
        acquisition_timeout: float = 60.0,
        max_lifetime: float | None = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._opener = opener
        self._max_size = max_size
        self._acquisition_timeout = acquisition_timeout
        self._max_lifetime = max_lifetime
        self._clock = clock
        self._pools: dict[ServerAddress, _AddressPool] = {}
        self._lock = asyncio.Lock()
        self._available = asyncio.Condition(self._lock)
        self._closed = False

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def closed(self) -> bool:
        return self._closed

    def _expired(self, connection: Connection) -> bool:
        if self._max_lifetime is None:
            return False
        return self._clock() - connection.created_at >= self._max_lifetime

    async def acquire(
        self,
        address: ServerAddress,
        access_mode: AccessMode = AccessMode.WRITE,
        timeout: float | None = None,
    ) -> Connection:
        """
        Lease a connection to ``address``.

        Raises:
            PoolTimeoutError: the address is at capacity for longer than ``timeout``
            PoolClosedError: the pool has been closed
            ConnectionLostError: opening a new connection failed
        """
        timeout = self._acquisition_timeout if timeout is None else timeout
        deadline = self._clock() + timeout
        retired: list[Connection] = []
        connection: Connection | None = None
        reserved = False

        try:
            async with self._available:
                while True:
                    if self._closed:
                        raise PoolClosedError("Connection pool is closed", address=address)
                    pool = self._pools.setdefault(address, _AddressPool())

                    while pool.idle:
                        candidate = pool.idle.popleft()
                        if candidate.healthy and not self._expired(candidate):
                            connection = candidate
                            break
                        retired.append(candidate)

                    if connection is not None or pool.total < self._max_size:
                        pool.in_use += 1
                        reserved = True
                        break

                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        raise self._timeout_error(address, timeout)
                    try:
                        await asyncio.wait_for(self._available.wait(), remaining)
                    except asyncio.TimeoutError:
                        raise self._timeout_error(address, timeout) from None
        finally:
            try:
                for stale in retired:
                    await self._close_connection(stale, "expired or unhealthy while idle")
            except BaseException:
                if reserved:
                    await self._cancel_reservation(address, connection)
                raise

        if connection is None:
            connection = await self._open(address)

        connection.in_use = True
        connection.access_mode = access_mode
        return connection

    async def _cancel_reservation(self, address: ServerAddress, connection: Connection | None) -> None:
        # Counters are restored before the first await.
        pool = self._pools[address]
        pool.in_use -= 1
        keep = connection is not None and not self._closed
        if keep:
            pool.idle.appendleft(connection)
        async with self._available:
            self._available.notify_all()
        if connection is not None and not keep:
            await self._close_connection(connection, "acquisition abandoned")

    def _timeout_error(self, address: ServerAddress, timeout: float) -> PoolTimeoutError:
        logger.warning_with_context(
            "Connection acquisition timed out",
            context={"address": str(address), "timeout": timeout, "max_size": self._max_size},
        )
        return PoolTimeoutError(
            f"Failed to acquire a connection to {address} within {timeout}s",
            address=address,
        )

    async def _open(self, address: ServerAddress) -> Connection:
        try:
            transport = await self._opener(address)
        except BaseException as e:
            async with self._available:
                self._pools[address].in_use -= 1
                self._available.notify_all()
            if isinstance(e, (OSError, asyncio.TimeoutError)):
                raise ConnectionLostError(
                    f"Failed to open connection to {address}: {e}",
                    address=address,
                ) from e
            raise

        connection = Connection(transport, address, created_at=self._clock())
        logger.debug(f"Opened connection {connection.connection_id} to {address}")
        return connection

    async def release(self, connection: Connection) -> None:
        """
        Return a leased connection.

        Healthy connections go back to the idle set; unhealthy or expired
        ones, and every connection released after ``close()``, are closed.
        """
        discard = False
        async with self._available:
            if not connection.in_use:
                return
            connection.in_use = False
            pool = self._pools.get(connection.address)
            if pool is not None:
                pool.in_use -= 1
            if self._closed or pool is None or not connection.healthy or self._expired(connection):
                discard = True
            else:
                pool.idle.append(connection)
            self._available.notify_all()

        if discard:
            await self._close_connection(connection, "discarded on release")

    async def discard(self, connection: Connection, reason: str = "discarded") -> None:
        """Release ``connection`` without ever lending it again."""
        connection.mark_unhealthy(reason)
        await self.release(connection)

    async def _close_connection(self, connection: Connection, reason: str) -> None:
        logger.debug(f"Closing connection {connection.connection_id} to {connection.address}: {reason}")
        await connection.close()

    def stats(self, address: ServerAddress) -> PoolStats:
        pool = self._pools.get(address)
        if pool is None:
            return PoolStats()
        return PoolStats(idle=len(pool.idle), in_use=pool.in_use)

    @property
    def addresses(self) -> list[ServerAddress]:
        return list(self._pools)

    async def close(self) -> None:
        """Close all idle connections; leased ones are closed when released."""
        async with self._available:
            self._closed = True
            idle: list[Connection] = []
            for pool in self._pools.values():
                idle.extend(pool.idle)
                pool.idle.clear()
            self._available.notify_all()

        for connection in idle:
            await self._close_connection(connection, "pool closed")
