# vectable/core/stream_bridge.py
# SPDX-License-Identifier: Apache-2.0

"""
SyncStreamBridge: iterate an asynchronous stream from synchronous code.

The bridge opens the stream and then pulls one item per `SyncBridge.run`
call, so each item is produced on demand and nothing is buffered ahead of
the consumer. Leaving the loop early (break, exception, garbage
collection of the generator) closes the underlying stream on the bridge
loop, so engine cursors are released without draining them.

    bridge = SyncBridge()
    batches = SyncStreamBridge(lambda: query.execute(), bridge)
    for batch in batches:
        ...

Errors raised while opening or pulling carry the bridge's error context
(see vectable.core.error_context) and propagate to the consumer unchanged.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Generic, Iterator, Optional, TypeVar

from vectable.core.error_context import attach_context
from vectable.core.sync_bridge import SyncBridge, get_default_bridge

T = TypeVar("T")

logger = logging.getLogger(__name__)

_END = object()


class SyncStreamBridge(Generic[T]):
    """
    Synchronous iterator over an async-iterable produced by `stream_factory`.

    Parameters
    ----------
    stream_factory:
        Zero-argument callable returning an awaitable that resolves to an
        async-iterable (e.g. `query.execute`).
    bridge:
        SyncBridge running the stream; defaults to the process-wide bridge.
    component:
        Component name used when attaching error context.
    error_context:
        Extra fields attached to any propagated error.
    timeout:
        Per-pull timeout in seconds forwarded to `SyncBridge.run`.
    """

    def __init__(
        self,
        stream_factory: Callable[[], Awaitable[Any]],
        bridge: Optional[SyncBridge] = None,
        *,
        component: str = "stream",
        error_context: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._stream_factory = stream_factory
        self._bridge = bridge or get_default_bridge()
        self._component = component
        self._error_context: Dict[str, Any] = dict(error_context or {})
        self._timeout = timeout

    async def _open(self) -> Any:
        stream = await self._stream_factory()
        return stream, stream.__aiter__()

    @staticmethod
    async def _pull(iterator: AsyncIterator[T]) -> Any:
        try:
            return await iterator.__anext__()
        except StopAsyncIteration:
            return _END

    @staticmethod
    async def _close(stream: Any, iterator: Any) -> None:
        for obj in (iterator, stream):
            aclose = getattr(obj, "aclose", None)
            if aclose is not None:
                await aclose()
            if iterator is stream:
                break

    def run(self) -> Iterator[T]:
        """Yield items synchronously until the stream ends."""
        bridge = self._bridge
        try:
            stream, iterator = bridge.run(self._open(), timeout=self._timeout)
        except Exception as exc:
            attach_context(exc, self._component, phase="open", **self._error_context)
            raise

        items = 0
        try:
            while True:
                item = bridge.run(self._pull(iterator), timeout=self._timeout)
                if item is _END:
                    logger.debug("SyncStreamBridge: stream ended after %d items", items)
                    return
                items += 1
                yield item
        except Exception as exc:
            attach_context(exc, self._component, phase="pull", items_yielded=items, **self._error_context)
            raise
        finally:
            try:
                bridge.run(self._close(stream, iterator), timeout=self._timeout)
            except Exception as exc:  # noqa: BLE001
                logger.debug("SyncStreamBridge: closing stream failed: %s", exc)

    def __iter__(self) -> Iterator[T]:
        return self.run()


__all__ = ["SyncStreamBridge"]
