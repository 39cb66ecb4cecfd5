# SPDX-License-Identifier: Apache-2.0
"""
Query execution against the memory engine.

Covers:
  • scalar predicates, projection, limit/offset and batch sizing
  • vector search ranking for l2 / cosine / dot
  • pre-filter vs post-filter divergence under a limit
  • full-text search scoring, filtering and column selection
  • explain_plan output and its read-only nature
"""

import pyarrow as pa
import pytest

from vectable.store.errors import InvalidArgument, InvalidPredicate

from tests.helpers import encode, ids_of, make_table

pytestmark = pytest.mark.asyncio


async def _collect(query, **kwargs):
    stream = await query.execute(**kwargs)
    async with stream:
        return await stream.to_arrow()


# ---------------------------------------------------------------------------
# Scalar queries
# ---------------------------------------------------------------------------

async def test_plain_query_returns_all_rows_in_order(table):
    got = await table.query().to_arrow()
    assert ids_of(got) == list(range(10))
    assert got.schema.names == ["id", "category", "text", "vector"]


async def test_where_limit_offset(table):
    got = await table.query().where("id >= 3").offset(2).limit(4).to_arrow()
    assert ids_of(got) == [5, 6, 7, 8]


async def test_row_count_is_min_of_limit_and_matches(table):
    assert (await table.query().where("category = 'a'").limit(3).to_arrow()).num_rows == 3
    assert (await table.query().where("category = 'a'").limit(50).to_arrow()).num_rows == 5
    assert (await table.query().where("category = 'a'").to_arrow()).num_rows == 5


async def test_limit_zero_returns_no_rows(table):
    got = await table.query().limit(0).to_arrow()
    assert got.num_rows == 0
    assert "id" in got.schema.names


async def test_empty_result_keeps_schema(table):
    got = await table.query().where("id > 100").select(["id", "text"]).to_arrow()
    assert got.num_rows == 0
    assert got.schema.names == ["id", "text"]


async def test_select_columns_in_requested_order(table):
    got = await table.query().select(["text", "id"]).limit(2).to_arrow()
    assert got.schema.names == ["text", "id"]
    assert ids_of(got) == [0, 1]


async def test_select_expressions(table):
    got = await table.query().select({"id": "id", "double_id": "id * 2"}).where("id < 3").to_arrow()
    assert got.column("double_id").to_pylist() == [0, 2, 4]


async def test_select_unknown_column(table):
    with pytest.raises(InvalidArgument):
        await table.query().select(["missing"]).to_arrow()


async def test_select_bad_expression(table):
    with pytest.raises(InvalidArgument):
        await table.query().select({"x": "no_such_col + 1"}).to_arrow()


async def test_invalid_where_fails_at_execute(table):
    query = table.query().where("id = = 3")
    with pytest.raises(InvalidPredicate) as exc_info:
        await query.execute()
    assert exc_info.value.details["operation"] == "execute"


async def test_max_batch_length_bounds_batches_not_results(table):
    await table.add(encode(make_table(15, start=10)))
    stream = await table.query().execute(max_batch_length=4)
    sizes = []
    rows = []
    async for batch in stream:
        sizes.append(batch.num_rows)
        rows.extend(batch.column(0).to_pylist())

    assert max(sizes) <= 4
    assert sum(sizes) == 25
    assert rows == list(range(25))
    assert ids_of(await table.query().to_arrow()) == rows


@pytest.mark.parametrize("value", [0, -3])
async def test_max_batch_length_must_be_positive(table, value):
    with pytest.raises(InvalidArgument):
        await table.query().execute(max_batch_length=value)


# ---------------------------------------------------------------------------
# Vector search
# ---------------------------------------------------------------------------

async def test_vector_search_defaults_to_top_ten(conn):
    table = await conn.create_table("big", encode(make_table(25)))
    got = await table.vector_search([0.0, 0.0, 0.0, 0.0]).to_arrow()

    assert ids_of(got) == list(range(10))
    assert got.schema.field("_distance").type == pa.float32()
    assert got.column("_distance").to_pylist() == [float(i * i) for i in range(10)]


async def test_vector_search_l2_ranking(table):
    got = await table.vector_search([4.2, 0.0, 0.0, 0.0]).limit(3).to_arrow()
    assert ids_of(got) == [4, 5, 3]
    distances = got.column("_distance").to_pylist()
    assert distances == sorted(distances)


async def test_vector_search_offset(table):
    got = await table.vector_search([0.0, 0.0, 0.0, 0.0]).offset(2).limit(3).to_arrow()
    assert ids_of(got) == [2, 3, 4]


async def test_vector_search_cosine(table):
    got = await table.vector_search([1.0, 0.0, 0.0, 0.0]).distance_type("cosine").to_arrow()
    # Every non-zero vector points the same way; the zero vector is farthest.
    assert ids_of(got) == [1, 2, 3, 4, 5, 6, 7, 8, 9, 0]
    assert got.column("_distance").to_pylist()[-1] == pytest.approx(1.0)


async def test_vector_search_dot(table):
    got = await table.vector_search([1.0, 0.0, 0.0, 0.0]).distance_type("dot").limit(3).to_arrow()
    assert ids_of(got) == [9, 8, 7]


async def test_vector_search_select_and_row_id(table):
    got = await table.vector_search([0.0] * 4).select(["id"]).with_row_id().limit(2).to_arrow()
    assert got.schema.names == ["id", "_distance", "_rowid"]
    assert got.column("_rowid").to_pylist() == [0, 1]


async def test_vector_dimension_mismatch_fails_at_execute(table):
    query = table.vector_search([1.0, 2.0, 3.0])
    with pytest.raises(InvalidArgument) as exc_info:
        await query.execute()
    assert exc_info.value.details["expected"] == 4
    assert exc_info.value.details["got"] == 3


async def test_vector_search_requires_column_choice_when_ambiguous(conn):
    vec = pa.list_(pa.float32(), 2)
    data = pa.table(
        {
            "id": pa.array([0, 1], type=pa.int64()),
            "v1": pa.array([[0.0, 0.0], [1.0, 1.0]], type=vec),
            "v2": pa.array([[1.0, 1.0], [0.0, 0.0]], type=vec),
        }
    )
    table = await conn.create_table("two_vectors", data)

    with pytest.raises(InvalidArgument):
        await table.vector_search([0.0, 0.0]).to_arrow()

    assert ids_of(await table.vector_search([0.0, 0.0]).column("v1").to_arrow()) == [0, 1]
    assert ids_of(await table.vector_search([0.0, 0.0]).column("v2").to_arrow()) == [1, 0]


async def test_vector_search_on_non_vector_column(table):
    with pytest.raises(InvalidArgument):
        await table.vector_search([0.0] * 4).column("text").to_arrow()


@pytest.mark.parametrize(
    "metric, distances",
    [("l2", [0.0, 2.0]), ("cosine", [0.0, 1.0]), ("dot", [0.0, 1.0])],
)
async def test_vector_search_skips_null_vectors(conn, metric, distances):
    vec = pa.list_(pa.float32(), 2)
    data = pa.table(
        {
            "id": pa.array([0, 1, 2], type=pa.int64()),
            "vector": pa.array([[1.0, 0.0], None, [0.0, 1.0]], type=vec),
        }
    )
    table = await conn.create_table("nulls", data)
    got = await table.vector_search([1.0, 0.0]).distance_type(metric).to_arrow()

    assert ids_of(got) == [0, 2]
    assert got.column("_distance").to_pylist() == pytest.approx(distances)


# ---------------------------------------------------------------------------
# Pre-filter vs post-filter
# ---------------------------------------------------------------------------

async def test_prefilter_and_postfilter_diverge_under_limit(table):
    base = table.vector_search([0.0, 0.0, 0.0, 0.0]).where("id >= 5").limit(3)

    pre = await base.to_arrow()
    post = await base.postfilter().to_arrow()

    # Pre-filter ranks only matching rows.
    assert ids_of(pre) == [5, 6, 7]
    # Post-filter ranks first: the top 3 are ids 0..2 and none match.
    assert post.num_rows == 0


async def test_postfilter_keeps_matching_rows_of_top_k(table):
    base = table.vector_search([0.0, 0.0, 0.0, 0.0]).where("category = 'b'").limit(4)

    assert ids_of(await base.to_arrow()) == [1, 3, 5, 7]
    assert ids_of(await base.postfilter().to_arrow()) == [1, 3]


async def test_prefilter_results_satisfy_predicate(table):
    got = await table.vector_search([9.0, 0.0, 0.0, 0.0]).where("category = 'a'").to_arrow()
    assert set(got.column("category").to_pylist()) == {"a"}
    assert ids_of(got) == [8, 6, 4, 2, 0]


# ---------------------------------------------------------------------------
# Full-text search
# ---------------------------------------------------------------------------

async def test_full_text_search_scores_by_occurrences(table):
    got = await table.query().full_text_search("brown").to_arrow()
    # "brown bread and brown rice" (ids 3, 8) outranks "the quick brown fox" (ids 0, 5).
    assert ids_of(got) == [3, 8, 0, 5]
    assert got.column("_score").to_pylist() == [2.0, 2.0, 1.0, 1.0]
    assert got.schema.field("_score").type == pa.float32()


async def test_full_text_search_is_case_insensitive(table):
    got = await table.query().full_text_search("QUICK").to_arrow()
    assert ids_of(got) == [0, 2, 5, 7]


async def test_full_text_search_combined_with_where(table):
    got = await table.query().full_text_search("brown").where("category = 'a'").to_arrow()
    assert ids_of(got) == [8, 0]


async def test_full_text_search_limit(table):
    got = await table.query().full_text_search("brown").limit(1).to_arrow()
    assert ids_of(got) == [3]


async def test_full_text_search_explicit_columns(table):
    got = await table.query().full_text_search("a", columns=["category"]).to_arrow()
    assert ids_of(got) == [0, 2, 4, 6, 8]


async def test_full_text_search_no_match(table):
    got = await table.query().full_text_search("zebra").to_arrow()
    assert got.num_rows == 0
    assert "_score" in got.schema.names


async def test_full_text_search_bad_columns(table):
    with pytest.raises(InvalidArgument):
        await table.query().full_text_search("fox", columns=["missing"]).to_arrow()
    with pytest.raises(InvalidArgument):
        await table.query().full_text_search("fox", columns=["id"]).to_arrow()


# ---------------------------------------------------------------------------
# explain_plan
# ---------------------------------------------------------------------------

async def test_explain_plan_scalar(table):
    plan = await table.query().where("id > 3").limit(5).explain_plan()
    lines = plan.splitlines()

    assert lines[0].startswith("ProjectionExec: expr=[id, category, text, vector]")
    assert any("GlobalLimitExec: skip=0, fetch=5" in line for line in lines)
    assert any("FilterExec: id > 3" in line for line in lines)
    assert "LanceScan:" in lines[-1]
    assert "items" in lines[-1]


async def test_explain_plan_vector_filter_position(table):
    base = table.vector_search([0.0] * 4).where("id > 3")

    pre = (await base.explain_plan()).splitlines()
    post = (await base.postfilter().explain_plan()).splitlines()

    def position(lines, prefix):
        return next(i for i, line in enumerate(lines) if line.strip().startswith(prefix))

    assert position(pre, "FilterExec") > position(pre, "KNNVectorDistance")
    assert position(post, "FilterExec") < position(post, "KNNVectorDistance")
    assert any("fetch=10" in line for line in pre)


async def test_explain_plan_full_text(table):
    plan = await table.query().full_text_search("fox").explain_plan()
    assert "MatchQuery: query='fox', columns=[category, text]" in plan
    assert "_score" in plan.splitlines()[0]


async def test_explain_plan_verbose(table):
    plan = await table.query().explain_plan(verbose=True)
    assert "num_rows=10" in plan


async def test_explain_plan_does_not_touch_data(table):
    await table.vector_search([0.0] * 4).where("id > 3").explain_plan(verbose=True)
    assert await table.count_rows() == 10
    assert await table.list_indices() == []


async def test_explain_plan_validates_vector_query(table):
    with pytest.raises(InvalidArgument):
        await table.vector_search([1.0]).explain_plan()
