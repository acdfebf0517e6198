"""
Tests for server addresses and routers.
"""

import pytest

from graphlink import (
    AccessMode,
    RetryPolicy,
    Router,
    RoutingError,
    RoutingTable,
    RoutingTableRouter,
    ServerAddress,
    StaticRouter,
    TransactionRunner,
)


A = ServerAddress("a", 7687)
B = ServerAddress("b", 7687)
W = ServerAddress("w", 7687)


class TestServerAddress:
    """Parsing and formatting."""

    def test_parse(self):
        assert ServerAddress.parse("db.local:7688") == ServerAddress("db.local", 7688)
        assert ServerAddress.parse("db.local") == ServerAddress("db.local", 7687)
        assert ServerAddress.parse(A) is A

    def test_parse_rejects_missing_host(self):
        with pytest.raises(ValueError):
            ServerAddress.parse(":7687")

    def test_str(self):
        assert str(ServerAddress("db.local", 7688)) == "db.local:7688"


class TestStaticRouter:
    @pytest.mark.asyncio
    async def test_routes_every_mode_to_one_server(self):
        router = StaticRouter("w:7687")
        assert isinstance(router, Router)
        assert await router.route(AccessMode.READ, "neo4j") == W
        assert await router.route(AccessMode.WRITE, "other") == W


class TestRoutingTableRouter:
    """Round-robin selection, deactivation and discovery."""

    @pytest.mark.asyncio
    async def test_round_robin_over_readers(self):
        router = RoutingTableRouter([RoutingTable("neo4j", readers=[A, B], writers=[W])])
        picks = [await router.route(AccessMode.READ, "neo4j") for _ in range(4)]
        assert picks == [A, B, A, B]
        assert await router.route(AccessMode.WRITE, "neo4j") == W

    @pytest.mark.asyncio
    async def test_no_writer_is_a_routing_error(self):
        router = RoutingTableRouter([RoutingTable("neo4j", readers=[A])])
        with pytest.raises(RoutingError) as exc_info:
            await router.route(AccessMode.WRITE, "neo4j")
        assert exc_info.value.details == {"access_mode": "write", "database": "neo4j"}

    @pytest.mark.asyncio
    async def test_unknown_database_without_discovery(self):
        router = RoutingTableRouter()
        with pytest.raises(RoutingError):
            await router.route(AccessMode.READ, "neo4j")

    @pytest.mark.asyncio
    async def test_deactivate_removes_server_everywhere(self):
        router = RoutingTableRouter([
            RoutingTable("neo4j", readers=[A, W], writers=[W]),
            RoutingTable("other", readers=[W], writers=[W]),
        ])
        await router.deactivate(W)
        assert router.table("neo4j").readers == [A]
        assert router.table("neo4j").writers == []
        assert router.table("other").readers == []

    @pytest.mark.asyncio
    async def test_update_replaces_table(self):
        router = RoutingTableRouter([RoutingTable("neo4j", writers=[W])])
        await router.update(RoutingTable("neo4j", writers=[A]))
        assert await router.route(AccessMode.WRITE, "neo4j") == A

    @pytest.mark.asyncio
    async def test_discovery_fills_missing_and_empty_tables(self):
        calls = []

        async def discover(database):
            calls.append(database)
            return RoutingTable(database, readers=[A], writers=[W])

        router = RoutingTableRouter(discovery=discover)
        assert await router.route(AccessMode.WRITE, "neo4j") == W
        assert await router.route(AccessMode.READ, "neo4j") == A
        assert calls == ["neo4j"]

        await router.deactivate(W)
        assert await router.route(AccessMode.WRITE, "neo4j") == W
        assert calls == ["neo4j", "neo4j"]

    @pytest.mark.asyncio
    async def test_stale_table_is_refreshed(self):
        calls = []

        async def discover(database):
            calls.append(database)
            return RoutingTable(database, writers=[A])

        router = RoutingTableRouter([RoutingTable("neo4j", writers=[W], ttl=0.0)], discovery=discover)
        assert await router.route(AccessMode.WRITE, "neo4j") == A
        assert calls == ["neo4j"]


class TestRoutingTable:
    def test_is_stale(self):
        table = RoutingTable("neo4j", ttl=10.0, created_at=100.0)
        assert not table.is_stale(now=105.0)
        assert table.is_stale(now=110.0)

    def test_servers_for(self):
        table = RoutingTable("neo4j", readers=[A], writers=[W])
        assert table.servers_for(AccessMode.READ) == [A]
        assert table.servers_for(AccessMode.WRITE) == [W]


class TestDiscoveryFailures:
    """Failures of the discovery collaborator surface as RoutingError."""

    @pytest.mark.asyncio
    async def test_discovery_error_is_wrapped(self):
        async def discover(database):
            raise ConnectionRefusedError("seed router down")

        router = RoutingTableRouter(discovery=discover)
        with pytest.raises(RoutingError) as exc_info:
            await router.route(AccessMode.WRITE, "neo4j")
        assert isinstance(exc_info.value.__cause__, ConnectionRefusedError)
        assert exc_info.value.details == {"access_mode": "write", "database": "neo4j"}

    @pytest.mark.asyncio
    async def test_runner_retries_until_discovery_recovers(self, pool, sleeps):
        calls = []

        async def discover(database):
            calls.append(database)
            if len(calls) == 1:
                raise OSError("seed router unreachable")
            return RoutingTable(database, writers=[ServerAddress("core-1", 7687)])

        runner = TransactionRunner(
            RoutingTableRouter(discovery=discover),
            pool,
            RetryPolicy(max_retry_time=5.0, initial_delay=0.01, jitter=0.0),
            sleep=sleeps,
        )

        async def work(tx):
            return "routed"

        outcome = await runner.run(AccessMode.WRITE, work, "foo")
        assert outcome.value == "routed"
        assert outcome.attempts == 2
        assert calls == ["foo", "foo"]
