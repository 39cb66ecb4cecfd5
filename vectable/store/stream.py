# vectable/store/stream.py
# SPDX-License-Identifier: Apache-2.0
"""
ResultStream: forward-only, single-consumer sequence of result batches.

- Each pull yields exactly one batch or signals the end (None).
- Batch order is the engine's emission order; nothing is yielded twice.
- A failure while pulling terminates the stream: it is wrapped as
  StreamError, remembered, and raised again by every later pull.
- `aclose()` releases the engine cursor; abandoning a stream early is a
  normal path, not an error.

Concurrent pulls from two consumers on one stream are a caller error; the
assignment of batches between them is undefined.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, List, Optional

import pyarrow as pa

from vectable.core.error_context import attach_context
from vectable.store.codec import BatchCodec, default_codec
from vectable.store.engine import BatchCursor
from vectable.store.errors import StreamError, TableStoreError

logger = logging.getLogger(__name__)


class ResultStream:
    """
    Pull-based result stream.

    `next_batch()` returns pyarrow RecordBatches; `next()` returns the same
    batches encoded with the BatchCodec. Both return None at the end.
    """

    def __init__(
        self,
        cursor: BatchCursor,
        *,
        table: Optional[str] = None,
        codec: BatchCodec = default_codec,
    ) -> None:
        self._cursor: Optional[BatchCursor] = cursor
        self._schema: pa.Schema = cursor.schema
        self._table = table
        self._codec = codec
        self._error: Optional[StreamError] = None
        self._batches_yielded = 0

    @property
    def schema(self) -> pa.Schema:
        return self._schema

    @property
    def exhausted(self) -> bool:
        return self._cursor is None

    @property
    def failed(self) -> bool:
        return self._error is not None

    async def next_batch(self) -> Optional[pa.RecordBatch]:
        if self._error is not None:
            raise self._error
        cursor = self._cursor
        if cursor is None:
            return None
        try:
            batch = await cursor.__anext__()
        except StopAsyncIteration:
            logger.debug(
                "ResultStream for %s exhausted after %d batches",
                self._table,
                self._batches_yielded,
            )
            await self._release()
            return None
        except Exception as exc:
            self._error = self._to_stream_error(exc)
            await self._release()
            if self._error is exc:
                raise
            raise self._error from exc
        self._batches_yielded += 1
        return batch

    async def next(self) -> Optional[bytes]:
        batch = await self.next_batch()
        if batch is None:
            return None
        return self._codec.encode([batch], schema=self._schema)

    def encoded_schema(self) -> bytes:
        return self._codec.encode_schema(self._schema)

    async def to_arrow(self) -> pa.Table:
        """Drain the remaining batches into one Table."""
        batches: List[pa.RecordBatch] = []
        while True:
            batch = await self.next_batch()
            if batch is None:
                break
            batches.append(batch)
        return pa.Table.from_batches(batches, schema=self._schema)

    async def aclose(self) -> None:
        """Release the engine cursor. Safe to call repeatedly."""
        await self._release()

    async def _release(self) -> None:
        cursor, self._cursor = self._cursor, None
        if cursor is None:
            return
        try:
            await cursor.aclose()
        except Exception as exc:  # noqa: BLE001
            logger.debug("ResultStream: cursor close failed: %s", exc)

    def _to_stream_error(self, exc: Exception) -> StreamError:
        details = {"operation": "stream_next", "batches_yielded": self._batches_yielded}
        if self._table is not None:
            details["table"] = self._table
        if isinstance(exc, StreamError):
            exc.details.update({k: v for k, v in details.items() if k not in exc.details})
            error = exc
        else:
            message = exc.message if isinstance(exc, TableStoreError) else str(exc)
            details["cause"] = type(exc).__name__
            error = StreamError(f"Failed to pull the next batch: {message}", details=details)
        attach_context(error, "stream", **details)
        return error

    def __aiter__(self) -> AsyncIterator[pa.RecordBatch]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[pa.RecordBatch]:
        while True:
            batch = await self.next_batch()
            if batch is None:
                return
            yield batch

    async def __aenter__(self) -> "ResultStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        if self._error is not None:
            state = "failed"
        elif self._cursor is None:
            state = "exhausted"
        else:
            state = "open"
        return f"ResultStream(table={self._table!r}, state={state}, batches={self._batches_yielded})"


__all__ = ["ResultStream"]
