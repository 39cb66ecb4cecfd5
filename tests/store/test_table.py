# SPDX-License-Identifier: Apache-2.0
"""
Table operations: schema, add, delete, count, close semantics, error
classification and metrics recording.
"""

import asyncio

import pyarrow as pa
import pytest

from vectable.core.error_context import get_context
from vectable.store.codec import default_codec
from vectable.store.engine import AddResult, DeleteResult
from vectable.store.errors import (
    ClosedResource,
    ExecutionFailed,
    IndexBuildFailed,
    InvalidArgument,
    InvalidPayload,
    InvalidPredicate,
)
from vectable.store.index import IndexSpec
from vectable.store.table import Table

from tests.helpers import encode, ids_of, make_schema, make_table

pytestmark = pytest.mark.asyncio


class RecordingMetrics:
    def __init__(self):
        self.observations = []
        self.counters = []

    def observe(self, **kwargs):
        self.observations.append(kwargs)

    def counter(self, **kwargs):
        self.counters.append((kwargs["name"], kwargs["value"]))


class ExplodingMetrics:
    def observe(self, **kwargs):
        raise RuntimeError("metrics backend down")

    def counter(self, **kwargs):
        raise RuntimeError("metrics backend down")


class FailingInner:
    """Engine table whose every call fails with a non-taxonomy error."""

    name = "broken"

    async def count_rows(self, filter=None):
        raise RuntimeError("disk on fire")

    async def create_index(self, column, config, *, replace=True):
        raise RuntimeError("trainer crashed")


class SlowInner:
    name = "slow"

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def count_rows(self, filter=None):
        self.started.set()
        await self.release.wait()
        return 42


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

async def test_schema_bytes_decode_to_table_schema(table):
    payload = await table.schema()
    assert isinstance(payload, bytes)
    assert default_codec.decode_schema(payload).equals(make_schema())
    assert (await table.arrow_schema()).equals(make_schema())


async def test_hidden_row_id_not_in_schema(table):
    assert "_rowid" not in (await table.arrow_schema()).names


# ---------------------------------------------------------------------------
# add
# ---------------------------------------------------------------------------

async def test_add_append_then_count(table):
    result = await table.add(encode(make_table(5, start=10)))
    assert result == AddResult(rows_added=5)
    assert await table.count_rows() == 15


async def test_add_overwrite_replaces_rows(table):
    result = await table.add(encode(make_table(3, start=50)), mode="overwrite")
    assert result.rows_added == 3
    assert ids_of(await table.query().to_arrow()) == [50, 51, 52]


async def test_add_accepts_native_arrow(table):
    await table.add(make_table(2, start=10).to_batches())
    assert await table.count_rows() == 12


async def test_add_empty_is_noop(table):
    assert await table.add(encode(make_table(0))) == AddResult(rows_added=0)
    assert await table.add([]) == AddResult(rows_added=0)
    assert await table.add(encode(make_table(0)), mode="overwrite") == AddResult(rows_added=0)
    assert await table.count_rows() == 10


async def test_add_reorders_columns_to_table_schema(table):
    data = make_table(2, start=10).select(["vector", "text", "id", "category"])
    await table.add(data)
    got = await table.query().where("id >= 10").to_arrow()
    assert ids_of(got) == [10, 11]
    assert got.schema.names == ["id", "category", "text", "vector"]


async def test_add_unknown_mode(table):
    with pytest.raises(InvalidArgument) as exc_info:
        await table.add(encode(make_table(1)), mode="upsert")
    assert exc_info.value.details["operation"] == "add"
    assert exc_info.value.details["table"] == "items"


async def test_add_invalid_payload(table):
    with pytest.raises(InvalidPayload):
        await table.add(b"not arrow at all")
    assert await table.count_rows() == 10


async def test_add_schema_mismatch(table):
    with pytest.raises(InvalidArgument):
        await table.add(pa.table({"id": [1], "other": ["x"]}))
    assert await table.count_rows() == 10


async def test_add_inconsistent_batches(table):
    a = make_table(1).to_batches()[0]
    b = pa.RecordBatch.from_pydict({"id": [5]})
    with pytest.raises(InvalidPayload):
        await table.add([a, b])


# ---------------------------------------------------------------------------
# delete / count_rows
# ---------------------------------------------------------------------------

async def test_delete_matching_rows(table):
    result = await table.delete("id < 3")
    assert result == DeleteResult(rows_deleted=3)
    assert await table.count_rows() == 7


async def test_delete_zero_matches_is_success(table):
    assert await table.delete("id > 1000") == DeleteResult(rows_deleted=0)
    assert await table.count_rows() == 10


async def test_delete_true_empties_table(table):
    await table.add(encode(make_table(5, start=10)))
    assert await table.count_rows(None) == 15
    await table.delete("true")
    assert await table.count_rows() == 0


async def test_delete_invalid_predicate(table):
    with pytest.raises(InvalidPredicate) as exc_info:
        await table.delete("id > AND 3")

    err = exc_info.value
    assert err.code == "INVALID_PREDICATE"
    assert err.details["operation"] == "delete"
    assert err.details["table"] == "items"
    assert err.details["predicate"] == "id > AND 3"
    assert get_context(err)["component"] == "table"
    assert await table.count_rows() == 10


async def test_delete_unknown_column_is_invalid_predicate(table):
    with pytest.raises(InvalidPredicate):
        await table.delete("no_such_column = 1")


@pytest.mark.parametrize("predicate", ["", "   ", None])
async def test_delete_requires_predicate(table, predicate):
    with pytest.raises(InvalidPredicate):
        await table.delete(predicate)


async def test_count_rows_with_filter(table):
    assert await table.count_rows("category = 'a'") == 5
    assert await table.count_rows("id BETWEEN 2 AND 4") == 3


async def test_count_rows_invalid_filter(table):
    with pytest.raises(InvalidPredicate):
        await table.count_rows("category = ")
    with pytest.raises(InvalidPredicate):
        await table.count_rows(123)


async def test_row_ids_are_stable_and_usable_in_predicates(table):
    await table.delete("id = 0")
    got = await table.query().with_row_id().where("_rowid >= 8").to_arrow()
    assert ids_of(got) == [8, 9]
    assert got.column("_rowid").to_pylist() == [8, 9]


# ---------------------------------------------------------------------------
# close
# ---------------------------------------------------------------------------

async def test_close_is_idempotent(table):
    table.close()
    table.close()
    assert not table.is_open
    assert table.name == "items"
    assert table.display() == "ClosedTable(items)"
    assert repr(table) == "ClosedTable(items)"


async def test_display_open_table(table):
    assert table.display().startswith("Table(items")
    assert "items" in table.display()


async def test_operations_after_close_fail(table):
    table.close()

    for call in (
        lambda: table.schema(),
        lambda: table.count_rows(),
        lambda: table.add(encode(make_table(1))),
        lambda: table.delete("true"),
        lambda: table.list_indices(),
        lambda: table.create_index("id", IndexSpec.btree()),
    ):
        with pytest.raises(ClosedResource) as exc_info:
            await call()
        assert exc_info.value.details["table"] == "items"

    with pytest.raises(ClosedResource):
        table.query()
    with pytest.raises(ClosedResource):
        table.vector_search([0.0, 0.0, 0.0, 0.0])
    with pytest.raises(ClosedResource):
        table.merge_insert("id")


async def test_query_built_before_close_fails_on_execute(table):
    query = table.query().limit(1)
    table.close()
    with pytest.raises(ClosedResource):
        await query.execute()


async def test_close_does_not_cancel_in_flight_operation():
    inner = SlowInner()
    table = Table(inner)

    task = asyncio.create_task(table.count_rows())
    await inner.started.wait()
    table.close()
    inner.release.set()

    assert await task == 42
    with pytest.raises(ClosedResource):
        await table.count_rows()


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

async def test_engine_failure_wrapped_as_execution_failed():
    table = Table(FailingInner())
    with pytest.raises(ExecutionFailed) as exc_info:
        await table.count_rows()

    err = exc_info.value
    assert "count rows" in err.message
    assert "broken" in err.message
    assert err.details["operation"] == "count_rows"
    assert err.details["table"] == "broken"
    assert err.details["cause"] == "RuntimeError"
    assert isinstance(err.__cause__, RuntimeError)


async def test_index_engine_failure_wrapped_as_index_build_failed():
    table = Table(FailingInner())
    with pytest.raises(IndexBuildFailed) as exc_info:
        await table.create_index("vector", IndexSpec.ivf_pq())
    assert exc_info.value.details["index_type"] == "ivf_pq"


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

async def test_metrics_recorded_per_operation(conn):
    metrics = RecordingMetrics()
    conn._metrics = metrics
    table = await conn.create_table("items", encode(make_table(3)))

    await table.count_rows()
    with pytest.raises(InvalidPredicate):
        await table.delete("id > AND 1")

    table_ops = [(o["component"], o["op"], o["ok"], o["code"]) for o in metrics.observations]
    assert ("connection", "create_table", True, "OK") in table_ops
    assert ("table", "count_rows", True, "OK") in table_ops
    assert ("table", "delete", False, "INVALID_PREDICATE") in table_ops
    assert all(o["ms"] >= 0 for o in metrics.observations)


async def test_row_counters(conn):
    metrics = RecordingMetrics()
    conn._metrics = metrics
    table = await conn.create_table("items", encode(make_table(3)))

    await table.add(encode(make_table(2, start=3)))
    await table.delete("id < 2")
    await table.merge_insert("id").when_matched_update_all().when_not_matched_insert_all().execute(
        encode(make_table(2, start=4))
    )

    assert metrics.counters == [
        ("rows_added", 2),
        ("rows_deleted", 2),
        ("rows_inserted", 1),
        ("rows_updated", 1),
        ("rows_deleted", 0),
    ]


async def test_failing_metrics_never_break_operations(table):
    table._metrics = ExplodingMetrics()
    assert await table.count_rows() == 10
