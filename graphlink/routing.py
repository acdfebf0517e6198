"""
Routing - choose a server for a unit of work.

Provides:
- AccessMode: read or write, used purely for routing
- ServerAddress: host/port pair identifying a cluster member
- Router: protocol consumed by the transaction runner
- StaticRouter: single-server deployments
- RoutingTableRouter: round-robin over a routing table supplied by discovery
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable, Protocol, runtime_checkable

from graphlink.exceptions import RoutingError
from graphlink.logging_config import get_logger


logger = get_logger(__name__)


class AccessMode(str, Enum):
    """Access mode of a unit of work."""
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True, order=True)
class ServerAddress:
    """Network address of a cluster member."""

    host: str
    port: int = 7687

    @classmethod
    def parse(cls, value: "str | ServerAddress") -> "ServerAddress":
        """Parse ``host[:port]``."""
        if isinstance(value, ServerAddress):
            return value
        host, sep, port = value.rpartition(":")
        if not sep:
            return cls(value)
        if not host:
            raise ValueError(f"Invalid server address: {value!r}")
        return cls(host, int(port))

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@runtime_checkable
class Router(Protocol):
    """Selects a server for an access mode and database."""

    async def route(self, access_mode: AccessMode, database: str) -> ServerAddress:
        ...


class StaticRouter:
    """Router that always answers with the same server, whatever the mode."""

    def __init__(self, address: str | ServerAddress):
        self._address = ServerAddress.parse(address)

    @property
    def address(self) -> ServerAddress:
        return self._address

    async def route(self, access_mode: AccessMode, database: str) -> ServerAddress:
        return self._address


@dataclass
class RoutingTable:
    """
    Cluster roles for one database, as reported by topology discovery.

    Attributes:
        database: Database the table describes
        readers: Servers accepting read work
        writers: Servers accepting write work
        ttl: Seconds after which the table should be refreshed
    """
    database: str
    readers: list[ServerAddress] = field(default_factory=list)
    writers: list[ServerAddress] = field(default_factory=list)
    ttl: float = 300.0
    created_at: float = field(default_factory=time.monotonic)

    def servers_for(self, access_mode: AccessMode) -> list[ServerAddress]:
        return self.readers if access_mode is AccessMode.READ else self.writers

    def is_stale(self, now: float | None = None) -> bool:
        now = time.monotonic() if now is None else now
        return now - self.created_at >= self.ttl

    def remove(self, address: ServerAddress) -> None:
        self.readers = [a for a in self.readers if a != address]
        self.writers = [a for a in self.writers if a != address]


class RoutingTableRouter:
    """
    Round-robin router over per-database routing tables.

    Discovery itself lives outside this class: it either pushes fresh tables
    through ``update()``, or is passed in as ``discovery`` and consulted when
    a table is missing, stale, or has no server for the requested role.
    Servers that fail are dropped with ``deactivate()`` until the next update.
    """

    def __init__(
        self,
        tables: Iterable[RoutingTable] = (),
        discovery: Callable[[str], Awaitable[RoutingTable]] | None = None,
    ):
        self._discovery = discovery
        self._tables: dict[str, RoutingTable] = {}
        self._counters: dict[tuple[str, AccessMode], itertools.count] = {}
        self._lock = asyncio.Lock()
        for table in tables:
            self._tables[table.database] = table

    async def update(self, table: RoutingTable) -> None:
        """Replace the routing table of ``table.database``."""
        async with self._lock:
            self._tables[table.database] = table
        logger.debug(
            f"Routing table updated for '{table.database}': "
            f"{len(table.readers)} readers, {len(table.writers)} writers"
        )

    def table(self, database: str) -> RoutingTable | None:
        return self._tables.get(database)

    async def route(self, access_mode: AccessMode, database: str) -> ServerAddress:
        async with self._lock:
            table = self._tables.get(database)
            if self._discovery is not None and (
                table is None or table.is_stale() or not table.servers_for(access_mode)
            ):
                table = await self._discover(access_mode, database)
                self._tables[database] = table
            servers = table.servers_for(access_mode) if table else []
            if not servers:
                logger.warning_with_context(
                    "No server available",
                    context={"access_mode": access_mode.value, "database": database},
                )
                raise RoutingError(
                    f"No {access_mode.value} server known for database '{database}'",
                    access_mode=access_mode.value,
                    database=database,
                )
            counter = self._counters.setdefault((database, access_mode), itertools.count())
            return servers[next(counter) % len(servers)]

    async def _discover(self, access_mode: AccessMode, database: str) -> RoutingTable:
        try:
            return await self._discovery(database)
        except RoutingError:
            raise
        except Exception as e:
            logger.warning_with_context(
                "Routing table discovery failed",
                context={"database": database, "error": f"{type(e).__name__}: {e}"},
            )
            raise RoutingError(
                f"Routing table discovery for database '{database}' failed: {e}",
                access_mode=access_mode.value,
                database=database,
            ) from e

    async def deactivate(self, address: ServerAddress) -> None:
        """Forget ``address`` in every table after a connection failure."""
        async with self._lock:
            for table in self._tables.values():
                table.remove(address)
        logger.debug(f"Deactivated server {address}")
