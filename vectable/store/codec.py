# vectable/store/codec.py
# SPDX-License-Identifier: Apache-2.0
"""
BatchCodec: columnar batches <-> self-describing bytes.

Payloads use the Arrow IPC *file* format. A payload always carries its
schema, so an empty batch sequence and zero-row batches round-trip
faithfully: `decode(encode(b)) == b`.

Schemas on their own are serialized as an IPC file with no batches, which
is what `Table.schema()` returns.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Union

import pyarrow as pa

from vectable.store.errors import CodecError

logger = logging.getLogger(__name__)

BytesLike = Union[bytes, bytearray, memoryview]


def _as_buffer(payload: BytesLike) -> pa.Buffer:
    if isinstance(payload, pa.Buffer):
        return payload
    if not isinstance(payload, (bytes, bytearray, memoryview)):
        raise CodecError(
            f"payload must be bytes-like, got {type(payload).__name__}",
            details={"type": type(payload).__name__},
        )
    return pa.py_buffer(payload)


class BatchCodec:
    """Arrow IPC file codec for record batches and schemas."""

    def encode(
        self,
        batches: Iterable[pa.RecordBatch],
        schema: Optional[pa.Schema] = None,
    ) -> bytes:
        """
        Encode a sequence of record batches.

        `schema` is required only when `batches` is empty; otherwise the
        first batch's schema is used and every batch must match it.
        """
        batches = list(batches)
        if schema is None:
            schema = batches[0].schema if batches else pa.schema([])
        sink = pa.BufferOutputStream()
        try:
            with pa.ipc.new_file(sink, schema) as writer:
                for batch in batches:
                    writer.write_batch(batch)
        except (pa.ArrowException, TypeError) as exc:
            raise CodecError(f"failed to encode batches: {exc}") from exc
        return sink.getvalue().to_pybytes()

    def decode(self, payload: BytesLike) -> List[pa.RecordBatch]:
        """Decode a payload into its record batches (possibly empty)."""
        reader = self._open(payload)
        try:
            return [reader.get_batch(i) for i in range(reader.num_record_batches)]
        except pa.ArrowException as exc:
            raise CodecError(f"failed to read record batch: {exc}") from exc

    def decode_table(self, payload: BytesLike) -> pa.Table:
        """Decode a payload into a single Table, keeping the schema when empty."""
        reader = self._open(payload)
        try:
            return reader.read_all()
        except pa.ArrowException as exc:
            raise CodecError(f"failed to read record batches: {exc}") from exc

    def encode_table(self, table: pa.Table) -> bytes:
        return self.encode(table.to_batches(), schema=table.schema)

    def encode_schema(self, schema: pa.Schema) -> bytes:
        return self.encode([], schema=schema)

    def decode_schema(self, payload: BytesLike) -> pa.Schema:
        return self._open(payload).schema

    def _open(self, payload: BytesLike) -> pa.ipc.RecordBatchFileReader:
        buffer = _as_buffer(payload)
        try:
            return pa.ipc.open_file(buffer)
        except (pa.ArrowException, OSError, ValueError) as exc:
            logger.debug("BatchCodec: rejected payload of %d bytes: %s", buffer.size, exc)
            raise CodecError(
                f"failed to read IPC file: {exc}",
                details={"size": buffer.size},
            ) from exc


def batches_from(data: Union[pa.Table, pa.RecordBatch, Sequence[pa.RecordBatch]]) -> pa.Table:
    """Normalize native pyarrow inputs into one Table."""
    if isinstance(data, pa.Table):
        return data
    if isinstance(data, pa.RecordBatch):
        return pa.Table.from_batches([data])
    batches = list(data)
    if not batches:
        raise CodecError("cannot infer a schema from an empty batch sequence")
    return pa.Table.from_batches(batches)


default_codec = BatchCodec()


__all__ = ["BatchCodec", "BytesLike", "batches_from", "default_codec"]
