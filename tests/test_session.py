"""
Tests for Session: exclusivity, bookmark bookkeeping and transaction styles.
"""

import asyncio

import pytest

from graphlink import (
    AccessMode,
    Bookmarks,
    BookmarkValidationError,
    ClientError,
    ConfigurationError,
    IncompleteCommitError,
    RequestKind,
    ServerAddress,
    SessionBusyError,
    SessionClosedError,
    TransactionState,
)


WRITER = ServerAddress("core-1", 7687)


async def write_x(tx, value=1):
    await tx.run("SET", {"key": "x", "value": value})


class TestSessionExclusivity:
    """At most one open transaction per session."""

    @pytest.mark.asyncio
    async def test_second_begin_fails_before_network(self, driver, cluster):
        session = driver.session()
        tx = await session.begin_transaction()
        sent = len(cluster.requests)

        with pytest.raises(SessionBusyError):
            await session.begin_transaction()
        with pytest.raises(SessionBusyError):
            await session.run("RETURN", {"a": 1})
        with pytest.raises(SessionBusyError):
            await session.execute_write(write_x)

        assert len(cluster.requests) == sent
        await tx.rollback()
        await session.close()

    @pytest.mark.asyncio
    async def test_session_reusable_after_transaction_closes(self, driver):
        session = driver.session()
        tx = await session.begin_transaction()
        await tx.commit()

        second = await session.begin_transaction()
        await second.rollback()
        await session.close()

    @pytest.mark.asyncio
    async def test_concurrent_use_is_rejected(self, driver):
        session = driver.session()
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(tx):
            started.set()
            await release.wait()

        task = asyncio.create_task(session.execute_write(slow))
        await started.wait()
        with pytest.raises(SessionBusyError):
            await session.execute_read(slow)

        release.set()
        await task
        await session.close()

    @pytest.mark.asyncio
    async def test_closed_session_rejects_work(self, driver):
        session = driver.session()
        await session.close()
        assert session.closed
        with pytest.raises(SessionClosedError):
            await session.run("RETURN", {"a": 1})
        with pytest.raises(SessionClosedError):
            await session.begin_transaction()

    def test_blank_database_rejected(self, driver):
        with pytest.raises(ConfigurationError):
            driver.session(database="  ")


class TestSessionBookmarks:
    """The session's bookmarks only move on commit."""

    @pytest.mark.asyncio
    async def test_managed_commit_updates_bookmarks(self, driver):
        async with driver.session() as session:
            assert session.last_bookmarks().is_empty()
            await session.execute_write(write_x)
            assert session.last_bookmarks().raw_values == {"foo:v1"}
            await session.execute_write(write_x, 2)
            assert session.last_bookmarks().raw_values == {"foo:v1", "foo:v2"}

    @pytest.mark.asyncio
    async def test_rollback_leaves_bookmarks_alone(self, driver):
        async with driver.session() as session:
            tx = await session.begin_transaction()
            await write_x(tx)
            await tx.rollback()
            assert session.last_bookmarks().is_empty()

    @pytest.mark.asyncio
    async def test_auto_commit_updates_bookmarks(self, driver, cluster):
        async with driver.session() as session:
            result = await session.run("SET", {"key": "y", "value": 5})
            assert result.consume().database == "foo"
            assert session.last_bookmarks().raw_values == {"foo:v1"}
        assert cluster.state("foo") == {"y": 5}

    @pytest.mark.asyncio
    async def test_failed_managed_work_leaves_bookmarks_alone(self, driver):
        async def broken(tx):
            await write_x(tx)
            raise RuntimeError("abort")

        async with driver.session() as session:
            with pytest.raises(RuntimeError):
                await session.execute_write(broken)
            assert session.last_bookmarks().is_empty()

    @pytest.mark.asyncio
    async def test_initial_bookmarks(self, driver):
        session = driver.session(bookmarks=["foo:v0"])
        assert session.last_bookmarks().raw_values == {"foo:v0"}
        await session.close()

    def test_foreign_bookmarks_rejected_at_construction(self, driver, cluster):
        foreign = Bookmarks.from_raw_values(["neo4j:v1"], "neo4j")
        with pytest.raises(BookmarkValidationError):
            driver.session(database="foo", bookmarks=foreign)
        assert cluster.requests == []


class TestUnmanagedTransactions:
    """Caller-driven commit and rollback."""

    @pytest.mark.asyncio
    async def test_commit_releases_connection(self, driver):
        async with driver.session() as session:
            tx = await session.begin_transaction(metadata={"app": "tests"}, timeout=5.0)
            assert driver.pool.stats(WRITER).in_use == 1
            await write_x(tx)
            await tx.commit()
            assert driver.pool.stats(WRITER).in_use == 0
            assert driver.pool.stats(WRITER).idle == 1

    @pytest.mark.asyncio
    async def test_close_rolls_back_open_transaction(self, driver, cluster):
        session = driver.session()
        tx = await session.begin_transaction()
        await write_x(tx)

        await session.close()

        assert tx.state is TransactionState.ROLLED_BACK
        assert cluster.state("foo") == {}
        assert driver.pool.stats(WRITER).in_use == 0

    @pytest.mark.asyncio
    async def test_connection_loss_during_commit(self, driver, cluster):
        cluster.inject_failure(RequestKind.COMMIT, error=ConnectionResetError("gone"), apply_first=True)
        async with driver.session() as session:
            tx = await session.begin_transaction()
            await write_x(tx)
            with pytest.raises(IncompleteCommitError):
                await tx.commit()
            assert tx.state is TransactionState.FAILED
            assert session.last_bookmarks().is_empty()
        assert driver.pool.stats(WRITER).total == 0

    @pytest.mark.asyncio
    async def test_read_transaction_routes_to_reader(self, driver):
        async with driver.session(default_access_mode=AccessMode.READ) as session:
            tx = await session.begin_transaction()
            assert tx.connection.address == ServerAddress("replica-1", 7687)
            assert tx.connection.access_mode is AccessMode.READ
            await tx.rollback()


class TestManagedTransactions:
    """execute_read / execute_write."""

    @pytest.mark.asyncio
    async def test_arguments_are_forwarded(self, driver):
        async def work(tx, a, *, b):
            result = await tx.run("RETURN", {"a": a, "b": b})
            return result.single()

        async with driver.session() as session:
            assert await session.execute_read(work, 1, b=2) == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, driver, cluster):
        cluster.inject_failure(RequestKind.RUN, code="Neo.TransientError.Transaction.DeadlockDetected")
        async with driver.session() as session:
            await session.execute_write(write_x, 7)
        assert cluster.state("foo") == {"x": 7}

    @pytest.mark.asyncio
    async def test_write_on_reader_is_a_client_error(self, driver):
        async def work(tx):
            await write_x(tx)

        async with driver.session() as session:
            with pytest.raises(ClientError) as exc_info:
                await session.execute_read(work)
        assert exc_info.value.code == "Neo.ClientError.Cluster.NotALeader"
