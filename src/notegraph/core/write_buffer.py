"""
Write Buffer
============
Debounced batching of mutations in front of the persistent store.

- enqueue() appends and arms a flush timer only if none is armed, so a burst
  of writes inside the window becomes one batch
- flush_now() disarms the timer and flushes immediately
- a flush hands the whole batch, in enqueue order, to the executor; if the
  executor raises, the same batch goes to the rollback routine
- the queue is cleared before the executor runs: one attempt, never a retry

Flushes are serialized with an asyncio.Lock so a manual flush racing a timer
flush cannot reorder batches.
"""

import asyncio
import inspect
import time
from typing import Awaitable, Callable, List, Optional, Union

from loguru import logger

from notegraph.core._utils import Debouncer
from notegraph.core.types import Mutation, MutationStatus

BatchExecutor = Callable[[List[Mutation]], Awaitable[None]]
RollbackHandler = Callable[[List[Mutation], BaseException], Union[Awaitable[None], None]]


class WriteBuffer:
    def __init__(
        self,
        executor: BatchExecutor,
        rollback: RollbackHandler,
        flush_delay_ms: float = 100,
    ):
        self._executor = executor
        self._rollback = rollback
        self._pending: List[Mutation] = []
        self._in_flight = 0
        self._lock: Optional[asyncio.Lock] = None
        self._timer = Debouncer(
            self._flush,
            flush_delay_ms,
            restart=False,
            name="write-buffer-flush",
        )
        self.last_batch: List[Mutation] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def has_pending(self) -> bool:
        """True while any mutation is queued or being written."""
        return bool(self._pending) or self._in_flight > 0

    def enqueue(self, mutation: Mutation) -> None:
        self._pending.append(mutation)
        self._timer.schedule()

    async def flush_now(self) -> None:
        self._timer.cancel()
        await self._flush()

    def discard_pending(self) -> List[Mutation]:
        """Drop queued mutations without writing them (used on shutdown/resync)."""
        self._timer.cancel()
        dropped, self._pending = self._pending, []
        return dropped

    async def _flush(self) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if not self._pending:
                return
            batch, self._pending = self._pending, []
            self._in_flight = len(batch)
            self.last_batch = batch
            started = time.perf_counter()
            try:
                await self._executor(batch)
            except Exception as exc:
                for mutation in batch:
                    mutation.status = MutationStatus.FAILED
                logger.error(
                    f"Flush of {len(batch)} mutations failed after "
                    f"{(time.perf_counter() - started) * 1000:.1f}ms: {exc}"
                )
                await self._run_rollback(batch, exc)
            else:
                for mutation in batch:
                    mutation.status = MutationStatus.COMMITTED
                logger.debug(
                    f"Flushed {len(batch)} mutations in "
                    f"{(time.perf_counter() - started) * 1000:.1f}ms"
                )
            finally:
                self._in_flight = 0

    async def _run_rollback(self, batch: List[Mutation], exc: BaseException) -> None:
        try:
            result = self._rollback(batch, exc)
            if inspect.isawaitable(result):
                await result
        except Exception as rollback_exc:
            logger.opt(exception=rollback_exc).error(
                f"Rollback of {len(batch)} mutations failed: {rollback_exc}"
            )
