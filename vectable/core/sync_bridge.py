# vectable/core/sync_bridge.py
# SPDX-License-Identifier: Apache-2.0

"""
SyncBridge: run asynchronous engine work to completion for synchronous callers.

Every engine entry point in vectable is a coroutine. Callers that cannot
suspend (plain scripts, worker threads, host environments calling through
the handle API) go through a SyncBridge, which is the only component
allowed to block a synchronous caller.

Event loop strategy
-------------------
- Each bridge owns one dedicated daemon thread running one asyncio event
  loop, started lazily on first use.
- `run()` submits the coroutine to that loop with
  `asyncio.run_coroutine_threadsafe` and blocks the calling thread on the
  resulting future.
- Many threads may call `run()` on the same bridge concurrently; each call
  gets its own future and blocks only its own thread.
- All engine objects touched through one bridge live on one loop, which
  keeps loop-bound engine resources consistent between calls.
- Calling `run()` from the bridge's own loop thread would deadlock, so it
  fails fast with SyncBridgeError.

Timeouts
--------
A per-call timeout (seconds) or the bridge's `default_timeout` is applied
with `asyncio.wait_for` on the loop and surfaced as SyncBridgeTimeoutError.

Lifecycle
---------
`shutdown()` stops the loop and joins the thread. It is idempotent, and a
later `run()` transparently starts a fresh loop. `get_default_bridge()`
returns a lazily created process-wide bridge for callers that do not want
to manage one.

Example
-------
    bridge = SyncBridge()
    db = bridge.run(connect("memory://demo"))
    count = bridge.run(table.count_rows())

    class Blocking:
        count_rows = bridge.sync_wrapper(Table.count_rows)
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import logging
import threading
from typing import Any, Callable, Coroutine, Optional, ParamSpec, TypeVar

T = TypeVar("T")
P = ParamSpec("P")

logger = logging.getLogger(__name__)

#: Seconds to wait for the loop thread to exit during shutdown.
DEFAULT_JOIN_TIMEOUT: float = 5.0


class SyncBridgeError(RuntimeError):
    """Raised when the bridge itself cannot run a call (e.g. re-entrant use)."""


class SyncBridgeTimeoutError(TimeoutError):
    """Raised when a bridged call exceeds its timeout."""


class SyncBridge:
    """
    Runs coroutines to completion on a dedicated event loop thread.

    Parameters
    ----------
    name:
        Name of the loop thread; visible in thread dumps and log records.
    default_timeout:
        Timeout in seconds applied when `run()` gets none. None disables it.
    join_timeout:
        Seconds `shutdown()` waits for the loop thread to exit.
    """

    def __init__(
        self,
        *,
        name: str = "vectable_sync_bridge",
        default_timeout: Optional[float] = None,
        join_timeout: float = DEFAULT_JOIN_TIMEOUT,
    ) -> None:
        if default_timeout is not None and default_timeout <= 0:
            raise ValueError("default_timeout must be positive when provided")
        self._name = name
        self._default_timeout = default_timeout
        self._join_timeout = float(join_timeout)

        self._lock = threading.RLock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------ #
    # Loop management
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is not None and self._thread is not None and self._thread.is_alive():
                return self._loop

            loop = asyncio.new_event_loop()
            started = threading.Event()

            def _thread_target() -> None:
                asyncio.set_event_loop(loop)
                loop.call_soon(started.set)
                try:
                    loop.run_forever()
                finally:
                    try:
                        pending = asyncio.all_tasks(loop)
                        for task in pending:
                            task.cancel()
                        if pending:
                            loop.run_until_complete(
                                asyncio.gather(*pending, return_exceptions=True)
                            )
                        loop.run_until_complete(loop.shutdown_asyncgens())
                    finally:
                        loop.close()
                        logger.debug("SyncBridge %s: event loop closed", self._name)

            thread = threading.Thread(target=_thread_target, name=self._name, daemon=True)
            thread.start()
            started.wait()

            self._loop = loop
            self._thread = thread
            logger.debug("SyncBridge %s: started event loop thread", self._name)
            return loop

    def _on_loop_thread(self) -> bool:
        with self._lock:
            return self._thread is not None and threading.current_thread() is self._thread

    @staticmethod
    async def _with_timeout(
        coro: Coroutine[Any, Any, T],
        timeout: Optional[float],
    ) -> T:
        if timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise SyncBridgeTimeoutError(
                f"bridged call exceeded timeout={timeout!r} seconds"
            ) from exc

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def run(
        self,
        coro: Coroutine[Any, Any, T],
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run `coro` on the bridge loop and return its result.

        Blocks the calling thread until the coroutine finishes. Exceptions
        raised by the coroutine propagate unchanged.

        Raises:
            SyncBridgeError: when called from the bridge's own loop thread.
            SyncBridgeTimeoutError: when the timeout elapses.
        """
        if self._on_loop_thread():
            coro.close()
            raise SyncBridgeError(
                f"SyncBridge {self._name} cannot be re-entered from its own loop thread"
            )

        effective_timeout = timeout if timeout is not None else self._default_timeout
        loop = self._ensure_loop()
        future: concurrent.futures.Future[T] = asyncio.run_coroutine_threadsafe(
            self._with_timeout(coro, effective_timeout), loop
        )
        try:
            return future.result()
        except KeyboardInterrupt:
            future.cancel()
            logger.debug("SyncBridge %s: call interrupted by KeyboardInterrupt", self._name)
            raise

    def sync_wrapper(
        self,
        async_func: Callable[P, Coroutine[Any, Any, T]],
        *,
        timeout: Optional[float] = None,
    ) -> Callable[P, T]:
        """Wrap an async callable into a blocking one that runs on this bridge."""

        @functools.wraps(async_func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return self.run(async_func(*args, **kwargs), timeout=timeout)

        return wrapper

    def shutdown(self) -> None:
        """
        Stop the loop and join its thread. Safe to call multiple times.

        Calls already dispatched keep running until the loop stops; their
        callers see a cancellation error.
        """
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None

        if loop is None or thread is None:
            return

        if not loop.is_closed():
            loop.call_soon_threadsafe(loop.stop)
        thread.join(self._join_timeout)
        if thread.is_alive():
            logger.warning(
                "SyncBridge %s: loop thread did not exit within %.3fs",
                self._name,
                self._join_timeout,
            )
        else:
            logger.debug("SyncBridge %s: shut down", self._name)

    def __enter__(self) -> "SyncBridge":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    def __repr__(self) -> str:
        return f"SyncBridge(name={self._name!r}, running={self.running})"


# ---------------------------------------------------------------------------
# Process-wide default bridge
# ---------------------------------------------------------------------------

_default_lock = threading.Lock()
_default_bridge: Optional[SyncBridge] = None


def get_default_bridge() -> SyncBridge:
    """Return the lazily created process-wide bridge."""
    global _default_bridge
    with _default_lock:
        if _default_bridge is None:
            _default_bridge = SyncBridge(name="vectable_default_bridge")
        return _default_bridge


def run_sync(
    coro: Coroutine[Any, Any, T],
    timeout: Optional[float] = None,
) -> T:
    """Run `coro` on the default bridge. Convenience for `get_default_bridge().run`."""
    return get_default_bridge().run(coro, timeout=timeout)


__all__ = [
    "DEFAULT_JOIN_TIMEOUT",
    "SyncBridge",
    "SyncBridgeError",
    "SyncBridgeTimeoutError",
    "get_default_bridge",
    "run_sync",
]
