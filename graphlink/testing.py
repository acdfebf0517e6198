"""
In-memory cluster for tests and examples.

Simulates one writer and a set of read replicas that lag behind it. A
replica only catches up when a transaction begins with a bookmark newer
than what it has applied, which is exactly the causal guarantee
bookmarks exist for.

Query language understood by the fake server:
- ``SET``    parameters ``key`` and ``value``; write
- ``GET``    parameter ``key``; returns one record {"key", "value"}
- ``RETURN`` echoes its parameters as one record

Usage:
    cluster = InMemoryCluster(writer="core-1:7687", readers=["replica-1:7687"])
    driver = Driver(cluster.open, cluster.router(), DriverConfig())
    cluster.inject_failure(RequestKind.RUN, code="Neo.TransientError.Transaction.DeadlockDetected")
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable

from graphlink.connection import Request, RequestKind, Response
from graphlink.routing import RoutingTable, RoutingTableRouter, ServerAddress


@dataclass
class _Fault:
    kind: RequestKind
    address: ServerAddress | None
    code: str | None
    message: str
    error: BaseException | None
    delay: float
    apply_first: bool
    remaining: int

    def matches(self, address: ServerAddress, kind: RequestKind) -> bool:
        return self.remaining > 0 and self.kind is kind and self.address in (None, address)


@dataclass
class _ServerTransaction:
    database: str
    mode: str
    snapshot: int
    writes: list[tuple[str, Any]] = field(default_factory=list)


class InMemoryCluster:
    """A writer plus lagging replicas, sharing one committed write log per database."""

    def __init__(
        self,
        writer: str = "core-1:7687",
        readers: Iterable[str] = ("replica-1:7687",),
        databases: Iterable[str] = ("neo4j",),
    ):
        self.writer = ServerAddress.parse(writer)
        self.readers = [ServerAddress.parse(r) for r in readers]
        self.databases = set(databases)
        self._log: dict[str, list[tuple[str, Any]]] = {db: [] for db in self.databases}
        self._applied: dict[tuple[ServerAddress, str], int] = {}
        self._faults: list[_Fault] = []
        self._unreachable: set[ServerAddress] = set()
        self.connections_opened: Counter[ServerAddress] = Counter()
        self.requests: list[tuple[ServerAddress, RequestKind]] = []
        self.transports: list[InMemoryTransport] = []
        self.discoveries = 0

    def routing_table(self, database: str = "neo4j") -> RoutingTable:
        """Roles of the currently reachable members."""
        return RoutingTable(
            database=database,
            readers=[r for r in self.readers if r not in self._unreachable],
            writers=[self.writer] if self.writer not in self._unreachable else [],
        )

    async def discover(self, database: str) -> RoutingTable:
        await asyncio.sleep(0)
        self.discoveries += 1
        return self.routing_table(database)

    def router(self, with_discovery: bool = True) -> RoutingTableRouter:
        return RoutingTableRouter(
            (self.routing_table(db) for db in sorted(self.databases)),
            discovery=self.discover if with_discovery else None,
        )

    async def open(self, address: ServerAddress) -> "InMemoryTransport":
        """Transport factory for ConnectionPool / Driver."""
        await asyncio.sleep(0)
        if address in self._unreachable or (address != self.writer and address not in self.readers):
            raise ConnectionRefusedError(f"{address} is unreachable")
        self.connections_opened[address] += 1
        transport = InMemoryTransport(self, address)
        self.transports.append(transport)
        return transport

    def set_unreachable(self, address: str | ServerAddress, unreachable: bool = True) -> None:
        address = ServerAddress.parse(address)
        if unreachable:
            self._unreachable.add(address)
        else:
            self._unreachable.discard(address)

    def inject_failure(
        self,
        kind: RequestKind,
        code: str | None = None,
        message: str = "injected failure",
        error: BaseException | None = None,
        address: str | ServerAddress | None = None,
        times: int = 1,
        delay: float = 0.0,
        apply_first: bool = False,
    ) -> None:
        """
        Make the next ``times`` requests of ``kind`` fail.

        Args:
            code: Status code of a failure response
            error: Exception raised by the transport instead (network failure)
            address: Restrict the fault to one server
            delay: Seconds to stall before failing (or answering, with neither code nor error)
            apply_first: For COMMIT, apply the commit before failing
        """
        self._faults.append(_Fault(
            kind=kind,
            address=ServerAddress.parse(address) if address else None,
            code=code,
            message=message,
            error=error,
            delay=delay,
            apply_first=apply_first,
            remaining=times,
        ))

    def version(self, database: str = "neo4j") -> int:
        return len(self._log[database])

    def applied(self, address: ServerAddress, database: str) -> int:
        if address == self.writer:
            return self.version(database)
        return self._applied.get((address, database), 0)

    def replicate(self, database: str | None = None) -> None:
        """Bring every replica up to date."""
        for db in [database] if database else self.databases:
            for reader in self.readers:
                self._applied[(reader, db)] = self.version(db)

    def state(self, database: str = "neo4j", version: int | None = None) -> dict[str, Any]:
        log = self._log[database]
        version = len(log) if version is None else version
        state: dict[str, Any] = {}
        for key, value in log[:version]:
            state[key] = value
        return state

    def bookmark(self, database: str, version: int) -> str:
        return f"{database}:v{version}"

    def _required_version(self, database: str, bookmarks: list[str]) -> int:
        required = 0
        for token in bookmarks:
            db, _, version = token.rpartition(":v")
            if db == database and version.isdigit():
                required = max(required, int(version))
        return required

    def _take_fault(self, address: ServerAddress, kind: RequestKind) -> _Fault | None:
        for fault in self._faults:
            if fault.matches(address, kind):
                fault.remaining -= 1
                return fault
        return None


class InMemoryTransport:
    """One connection to one member of an InMemoryCluster."""

    def __init__(self, cluster: InMemoryCluster, address: ServerAddress):
        self._cluster = cluster
        self.address = address
        self.closed = False
        self._tx: _ServerTransaction | None = None

    async def send(self, request: Request) -> Response:
        await asyncio.sleep(0)
        if self.closed:
            raise ConnectionResetError("transport is closed")
        self._cluster.requests.append((self.address, request.kind))

        fault = self._cluster._take_fault(self.address, request.kind)
        if fault is not None:
            if fault.delay:
                await asyncio.sleep(fault.delay)
            if fault.apply_first:
                self._handle(request)
            if fault.error is not None:
                self.closed = True
                raise fault.error
            if fault.code is not None:
                self._tx = None
                return Response.failure(fault.code, fault.message)

        return self._handle(request)

    async def close(self) -> None:
        self.closed = True
        self._tx = None

    def _handle(self, request: Request) -> Response:
        handler = {
            RequestKind.BEGIN: self._begin,
            RequestKind.RUN: self._run,
            RequestKind.COMMIT: self._commit,
            RequestKind.ROLLBACK: self._rollback,
            RequestKind.RESET: self._reset,
            RequestKind.PING: lambda payload: Response(),
        }[request.kind]
        return handler(request.payload)

    def _begin(self, payload: dict[str, Any]) -> Response:
        cluster = self._cluster
        database = payload.get("database", "neo4j")
        if database not in cluster.databases:
            return Response.failure(
                "Neo.ClientError.Database.DatabaseNotFound",
                f"Database '{database}' does not exist",
            )
        required = cluster._required_version(database, payload.get("bookmarks", []))
        if required > cluster.version(database):
            return Response.failure(
                "Neo.ClientError.Transaction.InvalidBookmark",
                f"Bookmark version {required} is ahead of the cluster",
            )
        if self.address != cluster.writer and cluster.applied(self.address, database) < required:
            # Wait for replication up to the requested bookmark.
            cluster._applied[(self.address, database)] = required
        self._tx = _ServerTransaction(
            database=database,
            mode=payload.get("mode", "write"),
            snapshot=cluster.applied(self.address, database),
        )
        return Response()

    def _run(self, payload: dict[str, Any]) -> Response:
        if self._tx is None:
            return Response.failure("Neo.ClientError.Request.Invalid", "No open transaction")
        query = payload.get("query", "").strip().upper()
        params = payload.get("parameters", {})

        if query == "SET":
            if self.address != self._cluster.writer:
                return Response.failure(
                    "Neo.ClientError.Cluster.NotALeader",
                    f"{self.address} cannot accept writes",
                )
            self._tx.writes.append((params["key"], params.get("value")))
            return Response(metadata={"type": "w"})

        if query == "GET":
            key = params["key"]
            visible = self._cluster.state(self._tx.database, self._tx.snapshot)
            visible.update(dict(self._tx.writes))
            return Response(
                keys=["key", "value"],
                records=[{"key": key, "value": visible.get(key)}],
                metadata={"type": "r"},
            )

        if query == "RETURN":
            return Response(keys=list(params), records=[dict(params)], metadata={"type": "r"})

        return Response.failure("Neo.ClientError.Statement.SyntaxError", f"Invalid input '{query}'")

    def _commit(self, payload: dict[str, Any]) -> Response:
        if self._tx is None:
            return Response.failure("Neo.ClientError.Request.Invalid", "No open transaction")
        tx, self._tx = self._tx, None
        log = self._cluster._log[tx.database]
        log.extend(tx.writes)
        version = len(log) if tx.writes else tx.snapshot
        return Response(metadata={"bookmark": self._cluster.bookmark(tx.database, version)})

    def _rollback(self, payload: dict[str, Any]) -> Response:
        self._tx = None
        return Response()

    def _reset(self, payload: dict[str, Any]) -> Response:
        self._tx = None
        return Response()
