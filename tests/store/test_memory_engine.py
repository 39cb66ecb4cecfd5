# SPDX-License-Identifier: Apache-2.0
"""
Memory engine internals that the table API does not surface directly.

Covers:
  • reads wait for a busy writer without stalling the event loop
  • SQL evaluation stays confined to the registered relations
  • database lifetime across connections
"""

import asyncio
import threading
import uuid

import pytest
import pytest_asyncio

from vectable.store.config import ConnectConfig
from vectable.store.connection import connect
from vectable.store.engine import QueryRequest
from vectable.store.errors import InvalidArgument, InvalidPredicate
from vectable.store.memory_engine import MemoryEngine, _fts_columns, reset_memory_databases

from tests.helpers import encode, make_schema, make_table

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def engine_table():
    engine = await MemoryEngine.connect(f"memory://engine-{uuid.uuid4().hex}", ConnectConfig())
    return await engine.create_table("items", make_table(10))


def _hold_lock(lock, held, release):
    with lock:
        held.set()
        release.wait(2.0)


@pytest.mark.parametrize(
    "read",
    [
        lambda t: t.execute(QueryRequest()),
        lambda t: t.explain_plan(QueryRequest()),
        lambda t: t.schema(),
        lambda t: t.list_indices(),
        lambda t: t.count_rows(),
    ],
    ids=["execute", "explain_plan", "schema", "list_indices", "count_rows"],
)
async def test_read_behind_writer_keeps_loop_running(engine_table, read):
    held, release = threading.Event(), threading.Event()
    writer = threading.Thread(target=_hold_lock, args=(engine_table._state.lock, held, release))
    writer.start()
    assert held.wait(2.0)

    loop = asyncio.get_running_loop()
    pending = asyncio.ensure_future(read(engine_table))
    started = loop.time()
    await asyncio.sleep(0.05)
    stalled = loop.time() - started

    assert not pending.done()
    release.set()
    await asyncio.wait_for(pending, 2.0)
    writer.join(2.0)

    assert stalled < 1.0


async def test_predicate_cannot_read_files(table, tmp_path):
    path = tmp_path / "ids.csv"
    path.write_text("x\n1\n2\n")
    predicate = f"id IN (SELECT x FROM read_csv('{path}'))"

    with pytest.raises(InvalidPredicate):
        await table.query().where(predicate).to_arrow()
    with pytest.raises(InvalidPredicate):
        await table.count_rows(predicate)
    assert await table.count_rows("id IN (1, 2)") == 2


async def test_full_text_columns_require_full_text_query():
    with pytest.raises(InvalidArgument):
        _fts_columns(make_schema(), QueryRequest(), {})


async def test_memory_database_lives_until_reset():
    uri = f"memory://lifetime-{uuid.uuid4().hex}"
    async with await connect(uri) as first:
        await first.create_table("dropped", encode(make_table(2)))
        await first.drop_table("dropped")
        await first.create_table("kept", encode(make_table(2)))

    async with await connect(uri) as second:
        assert await second.table_names() == ["kept"]

    reset_memory_databases()
    async with await connect(uri) as third:
        assert await third.table_names() == []
