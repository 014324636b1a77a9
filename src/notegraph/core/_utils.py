"""
Shared utility functions for the sync engine, projection store and search.

Scheduling helpers live here so every component debounces and fires
background tasks the same way.
"""

import asyncio
import functools
import inspect
import time
import uuid
from typing import Any, Callable, Optional, TypeVar, ParamSpec

from loguru import logger

P = ParamSpec('P')
T = TypeVar('T')


# =============================================================================
# Thread Pool Executor Helper
# =============================================================================

async def run_in_thread(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """
    Run a blocking function in a thread pool executor.

    Used by the SQLite store so blocking queries never stall the event loop.

    Example:
        rows = await run_in_thread(self._query, "SELECT ...")
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


# =============================================================================
# Async Task Exception Handling
# =============================================================================

def log_task_exception(task: asyncio.Task) -> None:
    """
    Callback to log exceptions from fire-and-forget asyncio tasks.

        task = asyncio.ensure_future(some_coro())
        task.add_done_callback(log_task_exception)
    """
    try:
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(
                f"Async task {task.get_name()} failed with exception: {exc}"
            )
    except asyncio.CancelledError:
        logger.debug(f"Async task {task.get_name()} was cancelled")


def safe_ensure_future(coro, *, name: Optional[str] = None) -> asyncio.Task:
    """
    Create an asyncio.Task with automatic exception logging.

    Args:
        coro: The coroutine to schedule.
        name: Optional name for the task (for debugging).
    """
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    task.add_done_callback(log_task_exception)
    return task


# =============================================================================
# Trailing-edge Debouncer
# =============================================================================

class Debouncer:
    """
    Collapse a burst of ``schedule()`` calls into one delayed callback.

    Two policies are supported:

    - ``restart=True`` (trailing edge): every schedule() cancels the pending
      timer and starts a new one, so the callback fires once, ``delay``
      after the last call.
    - ``restart=False``: schedule() is a no-op while a timer is pending, so
      the callback fires ``delay`` after the first call of the burst.

    The callback may be a plain function or a coroutine function; coroutine
    results are wrapped with ``safe_ensure_future``. When no event loop is
    running, schedule() only records that a call is pending and ``flush()``
    must be used to run it.
    """

    def __init__(
        self,
        callback: Callable[[], Any],
        delay_ms: float,
        *,
        restart: bool = True,
        name: str = "debouncer",
    ):
        self._callback = callback
        self._delay = max(0.0, delay_ms) / 1000.0
        self._restart = restart
        self._name = name
        self._handle: Optional[asyncio.TimerHandle] = None
        self._pending = False
        self.fire_count = 0

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def delay_ms(self) -> float:
        return self._delay * 1000.0

    def schedule(self) -> None:
        if self._pending and not self._restart:
            return
        self.cancel()
        self._pending = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"{self._name}: no running loop, deferring until flush()")
            return
        self._handle = loop.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = False

    def flush(self) -> Any:
        """Run the pending callback now. Returns its result (or None)."""
        if not self._pending:
            return None
        self.cancel()
        return self._invoke()

    def _fire(self) -> None:
        self._handle = None
        self._pending = False
        result = self._invoke()
        if inspect.isawaitable(result):
            safe_ensure_future(result, name=self._name)

    def _invoke(self) -> Any:
        self.fire_count += 1
        return self._callback()


# =============================================================================
# Identifiers and time
# =============================================================================

def generate_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
