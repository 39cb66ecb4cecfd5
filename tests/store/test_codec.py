# SPDX-License-Identifier: Apache-2.0
"""
BatchCodec round-trip contract and decode failures.
"""

import pyarrow as pa
import pytest

from vectable.store.codec import BatchCodec, batches_from, default_codec
from vectable.store.errors import CodecError

from tests.helpers import make_schema, make_table


@pytest.fixture
def codec():
    return BatchCodec()


def test_round_trip_preserves_batches(codec):
    batches = make_table(12).to_batches(max_chunksize=5)
    decoded = codec.decode(codec.encode(batches))

    assert len(decoded) == 3
    assert all(a.equals(b) for a, b in zip(batches, decoded))


def test_round_trip_empty_sequence_keeps_schema(codec):
    schema = make_schema()
    payload = codec.encode([], schema=schema)

    assert codec.decode(payload) == []
    assert codec.decode_table(payload).schema.equals(schema)
    assert codec.decode_table(payload).num_rows == 0


def test_round_trip_zero_row_batch(codec):
    batch = pa.RecordBatch.from_pylist([], schema=make_schema())
    decoded = codec.decode(codec.encode([batch]))

    assert len(decoded) == 1
    assert decoded[0].num_rows == 0
    assert decoded[0].schema.equals(make_schema())


def test_schema_round_trip(codec):
    schema = make_schema()
    assert codec.decode_schema(codec.encode_schema(schema)).equals(schema)


def test_decode_accepts_bytearray_and_memoryview(codec):
    payload = codec.encode_table(make_table(3))
    assert codec.decode_table(bytearray(payload)).num_rows == 3
    assert codec.decode_table(memoryview(payload)).num_rows == 3


def test_decode_garbage_raises_codec_error(codec):
    with pytest.raises(CodecError) as exc_info:
        codec.decode(b"definitely not arrow")

    assert exc_info.value.code == "CODEC_ERROR"
    assert exc_info.value.details["size"] == len(b"definitely not arrow")


def test_decode_truncated_payload_raises_codec_error(codec):
    payload = codec.encode_table(make_table(5))
    with pytest.raises(CodecError):
        codec.decode_table(payload[: len(payload) // 2])


def test_decode_rejects_non_bytes(codec):
    with pytest.raises(CodecError):
        codec.decode("a string")


def test_encode_mismatched_batches_raises_codec_error(codec):
    a = pa.RecordBatch.from_pydict({"x": [1, 2]})
    b = pa.RecordBatch.from_pydict({"y": ["z"]})
    with pytest.raises(CodecError):
        codec.encode([a, b])


def test_batches_from_normalizes_native_inputs():
    table = make_table(4)
    assert batches_from(table) is table
    assert batches_from(table.to_batches()[0]).num_rows == 4
    assert batches_from(table.to_batches(max_chunksize=1)).num_rows == 4


def test_batches_from_empty_sequence_raises():
    with pytest.raises(CodecError):
        batches_from([])


def test_default_codec_is_a_batch_codec():
    assert isinstance(default_codec, BatchCodec)
