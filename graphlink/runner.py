"""
Transaction function runner.

Drives one or more attempts of a unit of work against a freshly routed
connection, replaying it from the start on retryable failures.

The work function may run more than once. It must be idempotent, or free
of side effects outside the transaction it is handed. This is the caller's
obligation and is not checked.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from graphlink.bookmarks import Bookmarks
from graphlink.connection import ConnectionPool
from graphlink.exceptions import (
    ConnectionLostError,
    DeadlineExceededError,
    IncompleteCommitError,
    RetriesExhaustedError,
    TransactionClosedError,
)
from graphlink.logging_config import get_logger, log_context
from graphlink.retry import ErrorClassifier, RetryPolicy
from graphlink.routing import AccessMode, Router, ServerAddress
from graphlink.transaction import Transaction, TransactionState


logger = get_logger(__name__)

TransactionWork = Callable[..., Awaitable[Any]]


@dataclass
class RunOutcome:
    """
    Outcome of a runner invocation.

    Attributes:
        value: What the work function returned
        bookmarks: Bookmarks from the commit, None when nothing was committed
        attempts: Number of attempts made, including the successful one
        address: Server the successful attempt ran on
    """
    value: Any
    bookmarks: Bookmarks | None
    attempts: int
    address: ServerAddress | None = None


class TransactionRunner:
    """
    Retrying executor for transaction functions.

    Each attempt routes, leases a connection, begins a transaction seeded
    with the caller's bookmarks, invokes the work and commits. Retryable
    failures discard the connection and start over after a back-off delay,
    until the retry budget is spent.

    Usage:
        runner = TransactionRunner(router, pool, RetryPolicy(max_retry_time=10))
        outcome = await runner.run(AccessMode.WRITE, work, "neo4j", bookmarks)
    """

    def __init__(
        self,
        router: Router,
        pool: ConnectionPool,
        retry_policy: RetryPolicy | None = None,
        classifier: Callable[[BaseException], bool] | None = None,
        acquisition_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ):
        self._router = router
        self._pool = pool
        self._policy = retry_policy or RetryPolicy()
        self._classifier = classifier or ErrorClassifier()
        self._acquisition_timeout = acquisition_timeout
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    async def run(
        self,
        access_mode: AccessMode,
        work: TransactionWork,
        database: str,
        bookmarks: Bookmarks | None = None,
        args: tuple = (),
        kwargs: dict[str, Any] | None = None,
        timeout: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RunOutcome:
        """
        Run ``work(tx, *args, **kwargs)`` with retries.

        Raises:
            RetriesExhaustedError: every attempt failed with a retryable error
            DeadlineExceededError: ``timeout`` expired; the in-flight attempt was aborted
            Exception: any non-retryable error, unmodified
        """
        bookmarks = bookmarks or Bookmarks.empty()
        loop = self._retry_loop(access_mode, work, database, bookmarks, args, kwargs or {}, metadata)
        if timeout is None:
            return await loop

        deadline_fired = False

        async def bounded() -> RunOutcome:
            nonlocal deadline_fired
            try:
                return await loop
            except asyncio.CancelledError:
                deadline_fired = True
                raise

        try:
            return await asyncio.wait_for(bounded(), timeout)
        except asyncio.TimeoutError as e:
            # Only expiry of this deadline becomes DeadlineExceededError.
            if not deadline_fired:
                raise
            logger.warning_with_context(
                "Transaction function deadline exceeded",
                context={"timeout": timeout, "database": database, "access_mode": access_mode.value},
            )
            raise DeadlineExceededError(f"Transaction function did not complete within {timeout}s") from e

    async def _retry_loop(
        self,
        access_mode: AccessMode,
        work: TransactionWork,
        database: str,
        bookmarks: Bookmarks,
        args: tuple,
        kwargs: dict[str, Any],
        metadata: dict[str, Any] | None,
    ) -> RunOutcome:
        start = self._clock()
        causes: list[BaseException] = []
        attempt = 0

        while True:
            attempt += 1
            try:
                with log_context(attempt=attempt, access_mode=access_mode.value, database=database):
                    return await self._attempt(
                        attempt, access_mode, work, database, bookmarks, args, kwargs, metadata
                    )
            except Exception as e:
                if not self._classifier(e):
                    raise
                causes.append(e)
                elapsed = self._clock() - start
                if not self._policy.allows_retry(attempt, elapsed):
                    logger.error_with_context(
                        "Transaction retries exhausted",
                        context={
                            "attempts": attempt,
                            "elapsed": round(elapsed, 3),
                            "last_error": f"{type(e).__name__}: {e}",
                        },
                    )
                    raise RetriesExhaustedError(
                        f"Transaction failed after {attempt} attempt(s) in {elapsed:.3f}s: {e}",
                        causes=causes,
                        attempts=attempt,
                        elapsed=elapsed,
                    ) from e

                delay = self._policy.calculate_delay(attempt, self._rng)
                delay = min(delay, max(self._policy.max_retry_time - elapsed, 0.0))
                logger.warning_with_context(
                    "Transaction attempt failed, retrying",
                    context={
                        "attempt": attempt,
                        "delay": round(delay, 3),
                        "error": f"{type(e).__name__}: {e}",
                        "database": database,
                    },
                )
                await self._sleep(delay)

    async def _attempt(
        self,
        attempt: int,
        access_mode: AccessMode,
        work: TransactionWork,
        database: str,
        bookmarks: Bookmarks,
        args: tuple,
        kwargs: dict[str, Any],
        metadata: dict[str, Any] | None,
    ) -> RunOutcome:
        address = await self._router.route(access_mode, database)
        try:
            connection = await self._pool.acquire(address, access_mode, timeout=self._acquisition_timeout)
        except ConnectionLostError:
            await self._deactivate(address)
            raise
        tx = Transaction(connection, database, access_mode, bookmarks, metadata=metadata)
        discard = False

        try:
            await tx.begin()
            value = await work(tx, *args, **kwargs)
            if tx.is_open():
                await tx.commit()
            elif tx.state is TransactionState.FAILED:
                raise TransactionClosedError(
                    "Transaction function returned after its transaction failed",
                    state=tx.state.value,
                )
            committed = tx.state is TransactionState.COMMITTED
            return RunOutcome(
                value=value,
                bookmarks=tx.bookmarks if committed else None,
                attempts=attempt,
                address=address,
            )
        except asyncio.CancelledError:
            discard = True
            tx.abandon()
            raise
        except Exception as e:
            if self._classifier(e):
                discard = True
                tx.abandon()
            elif tx.is_open():
                try:
                    await tx.rollback()
                except ConnectionLostError as rollback_error:
                    logger.debug(f"Rollback after failed work lost the connection: {rollback_error}")
            if isinstance(e, (ConnectionLostError, IncompleteCommitError)):
                await self._deactivate(address)
            raise
        finally:
            if discard:
                await self._pool.discard(connection, "attempt failed or was cancelled")
            else:
                await self._pool.release(connection)

    async def _deactivate(self, address: ServerAddress) -> None:
        deactivate = getattr(self._router, "deactivate", None)
        if deactivate is not None:
            await deactivate(address)
