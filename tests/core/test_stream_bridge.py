# SPDX-License-Identifier: Apache-2.0
"""
SyncStreamBridge: synchronous iteration over asynchronous streams.

Covers:
  • on-demand pulling (nothing buffered ahead of the consumer)
  • closing the stream on early termination and on exhaustion
  • error context on open and pull failures
  • end-to-end iteration of a ResultStream from the memory engine
"""

import uuid

import pyarrow as pa
import pytest

from vectable.core.error_context import get_context
from vectable.core.stream_bridge import SyncStreamBridge
from vectable.core.sync_bridge import SyncBridge
from vectable.store.connection import connect

from tests.helpers import encode, ids_of, make_table


class FakeStream:
    def __init__(self, items, *, fail_at=None):
        self.items = list(items)
        self.fail_at = fail_at
        self.pulled = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.fail_at is not None and self.pulled == self.fail_at:
            raise RuntimeError("pull failed")
        if self.pulled >= len(self.items):
            raise StopAsyncIteration
        item = self.items[self.pulled]
        self.pulled += 1
        return item

    async def aclose(self):
        self.closed = True


def _factory(stream):
    async def open_stream():
        return stream

    return open_stream


@pytest.fixture
def bridge():
    b = SyncBridge(name="test_stream_bridge")
    yield b
    b.shutdown()


def test_yields_all_items_in_order_and_closes(bridge):
    stream = FakeStream([1, 2, 3])
    assert list(SyncStreamBridge(_factory(stream), bridge)) == [1, 2, 3]
    assert stream.closed


def test_pulls_lazily(bridge):
    stream = FakeStream(range(100))
    it = iter(SyncStreamBridge(_factory(stream), bridge))

    assert next(it) == 0
    assert stream.pulled == 1
    assert next(it) == 1
    assert stream.pulled == 2
    it.close()


def test_early_termination_closes_stream(bridge):
    stream = FakeStream(range(100))
    it = iter(SyncStreamBridge(_factory(stream), bridge))
    next(it)
    assert not stream.closed

    it.close()

    assert stream.closed
    assert stream.pulled == 1


def test_open_failure_carries_context(bridge):
    async def broken():
        raise ValueError("cannot open")

    with pytest.raises(ValueError) as exc_info:
        list(SyncStreamBridge(broken, bridge, component="query", error_context={"table": "items"}))

    ctx = get_context(exc_info.value)
    assert ctx["component"] == "query"
    assert ctx["phase"] == "open"
    assert ctx["table"] == "items"


def test_pull_failure_carries_context_and_closes(bridge):
    stream = FakeStream([1, 2, 3], fail_at=2)
    seen = []

    with pytest.raises(RuntimeError, match="pull failed") as exc_info:
        for item in SyncStreamBridge(_factory(stream), bridge):
            seen.append(item)

    assert seen == [1, 2]
    ctx = get_context(exc_info.value)
    assert ctx["phase"] == "pull"
    assert ctx["items_yielded"] == 2
    assert stream.closed


def test_iterates_result_stream_from_memory_engine(bridge):
    conn = bridge.run(connect(f"memory://bridge-{uuid.uuid4().hex}"))
    try:
        table = bridge.run(conn.create_table("items", encode(make_table(25))))
        query = table.query().where("id >= 5")

        batches = list(SyncStreamBridge(lambda: query.execute(max_batch_length=7), bridge))

        assert all(isinstance(b, pa.RecordBatch) for b in batches)
        assert [b.num_rows for b in batches] == [7, 7, 6]
        assert ids_of(pa.Table.from_batches(batches)) == list(range(5, 25))
    finally:
        conn.close()
