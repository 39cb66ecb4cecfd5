# vectable/store/memory_engine.py
# SPDX-License-Identifier: Apache-2.0
"""
In-process reference storage engine (`memory://<name>`).

All tables of one URI live in a process-wide database, so every
Connection to the same URI observes the same data. A database lives as
long as the process: closing every Connection or dropping every table
keeps its entry, and only `reset_memory_databases()` releases them all.
The engine is meant for tests, demos and local development; it is exact
rather than fast.

- Data is held as one pyarrow Table per table, with a hidden uint64
  `_rowid` column assigned on insert and never reused.
- Every operation takes its locks and runs its CPU work through
  `asyncio.to_thread`, never on the event loop.
- Mutations build the new table state off to the side and swap it in
  under the table lock, so add/delete/merge are all-or-nothing.
- Predicates and select expressions are DuckDB SQL evaluated over the
  non-vector columns; DuckDB parse/bind errors surface as
  InvalidPredicate.
- Vector search is brute force over the full column (l2 squared, cosine,
  dot). Index builds validate their inputs and record metadata only.
- Full-text search scores a row by how often the query terms occur in
  the searched string columns.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import duckdb
import numpy as np
import pyarrow as pa

from vectable.store.config import ConnectConfig
from vectable.store.engine import (
    DEFAULT_MAX_BATCH_LENGTH,
    DEFAULT_TOP_K,
    DISTANCE_COLUMN,
    ROW_ID_COLUMN,
    SCORE_COLUMN,
    AddMode,
    AddResult,
    CreateMode,
    DeleteResult,
    IndexInfo,
    MergeInsertRequest,
    MergeResult,
    QueryRequest,
    VectorQueryRequest,
    register_engine,
)
from vectable.store.errors import (
    ExecutionFailed,
    IndexBuildFailed,
    InvalidArgument,
    InvalidPredicate,
    NotFound,
    TableExists,
)
from vectable.store.index import FtsConfig, IndexConfig, LabelListConfig

logger = logging.getLogger(__name__)

_POS = "__vectable_pos"
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_SQL_INPUT_ERRORS = (
    duckdb.ParserException,
    duckdb.BinderException,
    duckdb.CatalogException,
    duckdb.PermissionException,
)


# ----------------------------- helpers ------------------------------------- #


def _is_vector_type(dtype: pa.DataType) -> bool:
    return pa.types.is_fixed_size_list(dtype) and pa.types.is_floating(dtype.value_type)


def _is_string_type(dtype: pa.DataType) -> bool:
    return pa.types.is_string(dtype) or pa.types.is_large_string(dtype)


def _is_list_type(dtype: pa.DataType) -> bool:
    return pa.types.is_list(dtype) or pa.types.is_large_list(dtype)


def _quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _sql_relation(data: pa.Table, positions: Optional[np.ndarray] = None) -> pa.Table:
    """Non-vector columns of `data` plus a position column for joining back."""
    columns = [f.name for f in data.schema if not pa.types.is_fixed_size_list(f.type)]
    relation = data.select(columns)
    if positions is None:
        positions = np.arange(data.num_rows, dtype=np.int64)
    return relation.append_column(_POS, pa.array(positions, type=pa.int64()))


def _run_sql(
    sql: str,
    relations: Mapping[str, pa.Table],
    *,
    input_error: type = InvalidPredicate,
    what: str = "predicate",
) -> pa.Table:
    con = duckdb.connect()
    try:
        for name, relation in relations.items():
            con.register(name, relation)
        # SQL sees the registered relations only, never files or extensions.
        con.execute("SET enable_external_access = false")
        return con.execute(sql).fetch_record_batch().read_all()
    except _SQL_INPUT_ERRORS as exc:
        raise input_error(f"Invalid {what}: {exc}", details={"sql": sql}) from exc
    except duckdb.Error as exc:
        raise ExecutionFailed(f"Failed to evaluate {what}: {exc}", details={"sql": sql}) from exc
    finally:
        con.close()


def _column_as_ints(table: pa.Table, index: int) -> np.ndarray:
    return np.asarray(table.column(index).to_pylist(), dtype=np.int64)


def filter_positions(data: pa.Table, predicate: str) -> np.ndarray:
    """Sorted row positions of `data` satisfying a SQL predicate."""
    result = _run_sql(
        f"SELECT {_quote(_POS)} FROM t WHERE {predicate}",
        {"t": _sql_relation(data)},
    )
    positions = _column_as_ints(result, 0)
    positions.sort()
    return positions


def _vector_matrix(column: pa.ChunkedArray, dim: int) -> np.ndarray:
    """(rows, dim) float64 matrix; null vectors become rows of NaN."""
    array = column.combine_chunks()
    matrix = np.full((len(array), dim), np.nan, dtype=np.float64)
    if len(array) == 0:
        return matrix
    if array.null_count == 0:
        flat = np.asarray(array.flatten().to_numpy(zero_copy_only=False), dtype=np.float64)
        matrix[:] = flat.reshape(-1, dim)
        return matrix
    for i, value in enumerate(array.to_pylist()):
        if value is not None:
            matrix[i] = np.asarray(value, dtype=np.float64)
    return matrix


def compute_distances(matrix: np.ndarray, query: np.ndarray, distance_type: str) -> np.ndarray:
    if distance_type == "l2":
        diff = matrix - query
        return np.einsum("ij,ij->i", diff, diff)
    dots = matrix @ query
    if distance_type == "dot":
        return 1.0 - dots
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    with np.errstate(divide="ignore", invalid="ignore"):
        similarity = np.where(norms > 0, dots / norms, 0.0)
    return 1.0 - similarity


def _tokens(text: Any) -> List[str]:
    if text is None:
        return []
    return _TOKEN_RE.findall(str(text).lower())


# ----------------------------- table state --------------------------------- #


@dataclass(frozen=True)
class _IndexEntry:
    name: str
    column: str
    config: IndexConfig
    # Rows with a _rowid below this value were present when the index was built.
    watermark: int


class _TableState:
    """Mutable state of one table; every access goes through `lock`."""

    def __init__(self, uri: str, name: str, data: pa.Table, *, storage_version: Optional[str] = None):
        self.uri = uri
        self.name = name
        self.lock = threading.RLock()
        self.storage_version = storage_version or "stable"
        self.next_row_id = 0
        self.indices: Dict[str, _IndexEntry] = {}
        self.dropped = False
        self.schema = data.schema
        self.data = self._with_row_ids(data)

    # -- invariants ---------------------------------------------------------

    def _with_row_ids(self, data: pa.Table) -> pa.Table:
        start = self.next_row_id
        self.next_row_id += data.num_rows
        row_ids = pa.array(np.arange(start, self.next_row_id, dtype=np.uint64), type=pa.uint64())
        return data.append_column(ROW_ID_COLUMN, row_ids)

    def _conform(self, data: pa.Table) -> pa.Table:
        if ROW_ID_COLUMN in data.column_names:
            raise InvalidArgument(f"Column name {ROW_ID_COLUMN!r} is reserved")
        if set(data.column_names) != set(self.schema.names):
            raise InvalidArgument(
                "Data schema does not match the table schema",
                details={"expected": self.schema.names, "got": data.column_names},
            )
        try:
            return data.select(self.schema.names).cast(self.schema)
        except (pa.ArrowInvalid, pa.ArrowTypeError, pa.ArrowNotImplementedError) as exc:
            raise InvalidArgument(f"Data cannot be cast to the table schema: {exc}") from exc

    def check_live(self) -> None:
        if self.dropped:
            raise NotFound(f"Table '{self.name}' was not found", details={"table": self.name})

    # -- mutations ----------------------------------------------------------

    def replace(self, data: pa.Table) -> None:
        with self.lock:
            self.schema = data.schema
            self.data = self._with_row_ids(data)
            self.indices = {}

    def add(self, data: pa.Table, mode: AddMode) -> AddResult:
        with self.lock:
            self.check_live()
            if mode is AddMode.OVERWRITE:
                if ROW_ID_COLUMN in data.column_names:
                    raise InvalidArgument(f"Column name {ROW_ID_COLUMN!r} is reserved")
                self.replace(data)
                return AddResult(rows_added=data.num_rows)
            appended = self._with_row_ids(self._conform(data))
            self.data = pa.concat_tables([self.data, appended])
            return AddResult(rows_added=data.num_rows)

    def delete(self, predicate: str) -> DeleteResult:
        with self.lock:
            self.check_live()
            positions = filter_positions(self.data, predicate)
            if len(positions) == 0:
                return DeleteResult(rows_deleted=0)
            keep = np.ones(self.data.num_rows, dtype=bool)
            keep[positions] = False
            self.data = self.data.filter(pa.array(keep))
            return DeleteResult(rows_deleted=len(positions))

    def count_rows(self, predicate: Optional[str]) -> int:
        with self.lock:
            self.check_live()
            if predicate is None:
                return self.data.num_rows
            return len(filter_positions(self.data, predicate))

    def create_index(self, column: str, config: IndexConfig, replace: bool) -> None:
        with self.lock:
            self.check_live()
            if column not in self.schema.names:
                raise IndexBuildFailed(
                    f"Column '{column}' not found in table '{self.name}'",
                    details={"column": column},
                )
            dtype = self.schema.field(column).type
            _validate_index(column, dtype, config, self.data.num_rows)
            if column in self.indices and not replace:
                raise IndexBuildFailed(
                    f"Index already exists on column '{column}'",
                    details={"column": column, "index": self.indices[column].name},
                )
            self.indices[column] = _IndexEntry(
                name=f"{column}_idx",
                column=column,
                config=config,
                watermark=self.next_row_id,
            )
            logger.debug(
                "memory engine: built %s index on %s.%s",
                config.index_type,
                self.name,
                column,
            )

    def list_indices(self) -> List[IndexInfo]:
        with self.lock:
            self.check_live()
            entries = sorted(self.indices.values(), key=lambda e: e.name)
        return [IndexInfo(name=e.name, column=e.column, index_type=e.config.index_type) for e in entries]

    def merge_insert(self, request: MergeInsertRequest, source: pa.Table) -> MergeResult:
        with self.lock:
            self.check_live()
            for key in request.on:
                if key not in self.schema.names:
                    raise InvalidArgument(
                        f"Merge key '{key}' not found in table '{self.name}'",
                        details={"column": key},
                    )
            source = self._conform(source)
            plan, result = _plan_merge(request, self.data, source)
            if plan is not None:
                kept, inserted = plan
                if inserted.num_rows:
                    kept = pa.concat_tables([kept, self._with_row_ids(inserted)])
                self.data = kept
            return result

    # -- reads --------------------------------------------------------------

    def read_schema(self) -> pa.Schema:
        with self.lock:
            self.check_live()
            return self.schema

    def snapshot(self) -> Tuple[pa.Table, Dict[str, _IndexEntry]]:
        with self.lock:
            self.check_live()
            return self.data, dict(self.indices)


def _validate_index(column: str, dtype: pa.DataType, config: IndexConfig, num_rows: int) -> None:
    def fail(message: str) -> IndexBuildFailed:
        return IndexBuildFailed(
            message,
            details={"column": column, "index_type": config.index_type, "data_type": str(dtype)},
        )

    if config.is_vector:
        if not _is_vector_type(dtype):
            raise fail(f"{config.index_type} index requires a fixed-size float vector column, '{column}' is {dtype}")
        if num_rows == 0:
            raise fail("Cannot train a vector index on an empty table")
        dim = dtype.list_size
        num_sub_vectors = getattr(config, "num_sub_vectors", None)
        if num_sub_vectors is not None and dim % num_sub_vectors != 0:
            raise fail(f"num_sub_vectors={num_sub_vectors} must divide the vector dimension {dim}")
        num_partitions = getattr(config, "num_partitions", None)
        if num_partitions is not None and num_rows < num_partitions:
            raise fail(f"num_partitions={num_partitions} exceeds the number of rows ({num_rows})")
        return

    if isinstance(config, FtsConfig):
        if not _is_string_type(dtype):
            raise fail(f"fts index requires a string column, '{column}' is {dtype}")
    elif isinstance(config, LabelListConfig):
        if not _is_list_type(dtype):
            raise fail(f"label_list index requires a list column, '{column}' is {dtype}")
    elif pa.types.is_nested(dtype):
        raise fail(f"{config.index_type} index requires a scalar column, '{column}' is {dtype}")


def _plan_merge(
    request: MergeInsertRequest,
    target: pa.Table,
    source: pa.Table,
) -> Tuple[Optional[Tuple[pa.Table, pa.Table]], MergeResult]:
    """
    Compute the merged table without touching state.

    Returns ((kept/updated target rows, source rows to insert), counts).
    """
    t, s = _quote("target"), _quote("source")
    on = " AND ".join(f"{t}.{_quote(k)} = {s}.{_quote(k)}" for k in request.on)
    condition = f"COALESCE(({request.matched_condition}), false)" if request.matched_condition else "true"
    pairs = _run_sql(
        f"SELECT {t}.{_quote(_POS)}, {s}.{_quote(_POS)}, {condition} FROM {t} JOIN {s} ON {on}",
        {"target": _sql_relation(target), "source": _sql_relation(source)},
        what="merge condition",
    )
    target_pos = _column_as_ints(pairs, 0)
    source_pos = _column_as_ints(pairs, 1)
    should_update = np.asarray(pairs.column(2).to_pylist(), dtype=bool)

    updates: Dict[int, int] = {}
    if request.update_matched:
        if len(np.unique(target_pos)) != len(target_pos):
            raise ExecutionFailed(
                "Ambiguous merge insert: a target row matches more than one source row",
                details={"on": list(request.on)},
            )
        updates = {int(t): int(s) for t, s, u in zip(target_pos, source_pos, should_update) if u}

    inserts: List[int] = []
    if request.insert_unmatched:
        matched_sources = set(source_pos.tolist())
        inserts = [i for i in range(source.num_rows) if i not in matched_sources]

    deletes: List[int] = []
    if request.delete_unmatched_by_source:
        matched_targets = set(target_pos.tolist())
        unmatched = np.array([i for i in range(target.num_rows) if i not in matched_targets], dtype=np.int64)
        if request.delete_condition and len(unmatched):
            unmatched = np.intersect1d(unmatched, filter_positions(target, request.delete_condition))
        deletes = unmatched.tolist()

    result = MergeResult(num_inserted=len(inserts), num_updated=len(updates), num_deleted=len(deletes))
    if not (updates or inserts or deletes):
        return None, result

    untouched = np.ones(target.num_rows, dtype=bool)
    untouched[list(updates) + deletes] = False
    parts = [target.filter(pa.array(untouched))]
    if updates:
        ordered = sorted(updates)
        replaced = source.take(pa.array([updates[t] for t in ordered], type=pa.int64()))
        row_ids = target.column(ROW_ID_COLUMN).take(pa.array(ordered, type=pa.int64()))
        parts.append(replaced.append_column(ROW_ID_COLUMN, row_ids))
    table = pa.concat_tables(parts).sort_by(ROW_ID_COLUMN)
    inserted = source.take(pa.array(inserts, type=pa.int64()))
    return (table, inserted), result


# ----------------------------- query execution ----------------------------- #


@dataclass(frozen=True)
class _VectorTarget:
    column: str
    dim: int
    distance_type: str
    index: Optional[_IndexEntry]


def _resolve_vector_target(
    schema: pa.Schema,
    request: VectorQueryRequest,
    indices: Mapping[str, _IndexEntry],
) -> _VectorTarget:
    if request.column is not None:
        if request.column not in schema.names:
            raise InvalidArgument(
                f"Vector column '{request.column}' not found",
                details={"column": request.column},
            )
        column = request.column
        dtype = schema.field(column).type
        if not _is_vector_type(dtype):
            raise InvalidArgument(
                f"Column '{column}' is not a vector column (type {dtype})",
                details={"column": column},
            )
    else:
        candidates = [f.name for f in schema if _is_vector_type(f.type)]
        if not candidates:
            raise InvalidArgument("No vector column found to search")
        if len(candidates) > 1:
            raise InvalidArgument(
                "More than one vector column found; specify one with column()",
                details={"columns": candidates},
            )
        column = candidates[0]
    dim = schema.field(column).type.list_size
    if len(request.vector) != dim:
        raise InvalidArgument(
            f"Query vector has dimension {len(request.vector)}, column '{column}' has dimension {dim}",
            details={"column": column, "expected": dim, "got": len(request.vector)},
        )
    index = indices.get(column)
    if index is not None and not index.config.is_vector:
        index = None
    distance_type = request.distance_type
    if distance_type is None:
        distance_type = getattr(index.config, "distance_type", "l2") if index is not None else "l2"
    return _VectorTarget(column=column, dim=dim, distance_type=distance_type, index=index)


def _fts_columns(schema: pa.Schema, request: QueryRequest, indices: Mapping[str, _IndexEntry]) -> List[str]:
    if request.full_text is None:
        raise InvalidArgument("Request carries no full-text query")
    if request.full_text.columns:
        for column in request.full_text.columns:
            if column not in schema.names:
                raise InvalidArgument(f"Column '{column}' not found", details={"column": column})
            if not _is_string_type(schema.field(column).type):
                raise InvalidArgument(
                    f"Full-text search requires string columns, '{column}' is {schema.field(column).type}",
                    details={"column": column},
                )
        return list(request.full_text.columns)
    indexed = [c for c, e in indices.items() if isinstance(e.config, FtsConfig)]
    if indexed:
        return sorted(indexed, key=schema.names.index)
    return [f.name for f in schema if _is_string_type(f.type)]


def _restrict_to_index(data: pa.Table, positions: np.ndarray, entries: Sequence[_IndexEntry]) -> np.ndarray:
    if not entries:
        return positions
    watermark = min(e.watermark for e in entries)
    row_ids = np.asarray(data.column(ROW_ID_COLUMN).to_numpy(), dtype=np.uint64)
    return positions[row_ids[positions] < watermark]


def _page(positions: np.ndarray, offset: Optional[int], limit: Optional[int]) -> slice:
    start = offset or 0
    return slice(start, None if limit is None else start + limit)


def _project(
    data: pa.Table,
    positions: np.ndarray,
    request: QueryRequest,
    extra: Sequence[Tuple[str, pa.Array]],
) -> pa.Table:
    rows = data.take(pa.array(positions, type=pa.int64()))
    names: List[str] = []
    arrays: List[Any] = []
    user_columns = [n for n in data.column_names if n != ROW_ID_COLUMN]

    if request.projection is None:
        for name in user_columns:
            names.append(name)
            arrays.append(rows.column(name))
    else:
        expressions = [(name, expr) for name, expr in request.projection if expr is not None]
        computed: Optional[pa.Table] = None
        if expressions:
            select_list = ", ".join(f"({expr}) AS {_quote(name)}" for name, expr in expressions)
            computed = _run_sql(
                f"SELECT {select_list} FROM t ORDER BY {_quote(_POS)}",
                {"t": _sql_relation(rows)},
                input_error=InvalidArgument,
                what="select expression",
            )
        for name, expr in request.projection:
            names.append(name)
            if expr is not None:
                arrays.append(computed.column(name))
            elif name in user_columns:
                arrays.append(rows.column(name))
            else:
                raise InvalidArgument(f"Column '{name}' not found", details={"column": name})

    for name, array in extra:
        names.append(name)
        arrays.append(array)
    if request.with_row_id:
        names.append(ROW_ID_COLUMN)
        arrays.append(rows.column(ROW_ID_COLUMN))
    if not names:
        return pa.table({})
    return pa.Table.from_arrays(arrays, names=names)


def run_query(data: pa.Table, indices: Mapping[str, _IndexEntry], request: QueryRequest) -> pa.Table:
    """Evaluate a request against a snapshot. Pure: never touches table state."""
    schema = data.schema
    positions = np.arange(data.num_rows, dtype=np.int64)
    predicate_positions = (
        filter_positions(data, request.predicate) if request.predicate is not None else None
    )

    if isinstance(request, VectorQueryRequest):
        target = _resolve_vector_target(schema.remove(schema.get_field_index(ROW_ID_COLUMN)), request, indices)
        if request.fast_search and target.index is not None and not request.bypass_vector_index:
            positions = _restrict_to_index(data, positions, [target.index])
        if predicate_positions is not None and not request.postfilter:
            positions = np.intersect1d(positions, predicate_positions)

        query = np.asarray(request.vector, dtype=np.float64)
        matrix = _vector_matrix(data.column(target.column), target.dim)[positions]
        # Rows without a vector never rank, whatever the metric.
        present = ~np.isnan(matrix).any(axis=1)
        positions, matrix = positions[present], matrix[present]
        distances = compute_distances(matrix, query, target.distance_type)
        order = np.argsort(distances, kind="stable")
        positions, distances = positions[order], distances[order]

        limit = request.limit if request.limit is not None else DEFAULT_TOP_K
        window = _page(positions, request.offset, limit)
        positions, distances = positions[window], distances[window]
        if predicate_positions is not None and request.postfilter:
            keep = np.isin(positions, predicate_positions)
            positions, distances = positions[keep], distances[keep]
        extra = [(DISTANCE_COLUMN, pa.array(distances.astype(np.float32), type=pa.float32()))]
        return _project(data, positions, request, extra)

    if predicate_positions is not None:
        positions = predicate_positions

    extra: List[Tuple[str, pa.Array]] = []
    if request.full_text is not None:
        user_schema = schema.remove(schema.get_field_index(ROW_ID_COLUMN))
        columns = _fts_columns(user_schema, request, indices)
        if request.fast_search:
            entries = [indices[c] for c in columns if c in indices and isinstance(indices[c].config, FtsConfig)]
            if len(entries) == len(columns):
                positions = _restrict_to_index(data, positions, entries)
        terms = set(_tokens(request.full_text.text))
        scores = np.zeros(len(positions), dtype=np.float64)
        if terms:
            taken = pa.array(positions, type=pa.int64())
            for column in columns:
                values = data.column(column).take(taken).to_pylist()
                scores += [sum(1 for tok in _tokens(v) if tok in terms) for v in values]
        matched = scores > 0
        positions, scores = positions[matched], scores[matched]
        order = np.lexsort((positions, -scores))
        positions, scores = positions[order], scores[order]
        window = _page(positions, request.offset, request.limit)
        positions, scores = positions[window], scores[window]
        extra.append((SCORE_COLUMN, pa.array(scores.astype(np.float32), type=pa.float32())))
    else:
        positions = positions[_page(positions, request.offset, request.limit)]

    return _project(data, positions, request, extra)


def render_plan(
    uri: str,
    data: pa.Table,
    indices: Mapping[str, _IndexEntry],
    request: QueryRequest,
    *,
    verbose: bool = False,
) -> str:
    """Describe how `run_query` would evaluate `request` as an indented operator tree."""
    user_columns = [n for n in data.column_names if n != ROW_ID_COLUMN]
    if request.projection is None:
        output = list(user_columns)
    else:
        output = [name if expr is None else f"{expr} AS {name}" for name, expr in request.projection]

    nodes: List[str] = []
    is_vector = isinstance(request, VectorQueryRequest)
    if is_vector:
        output.append(DISTANCE_COLUMN)
    elif request.full_text is not None:
        output.append(SCORE_COLUMN)
    if request.with_row_id:
        output.append(ROW_ID_COLUMN)
    nodes.append(f"ProjectionExec: expr=[{', '.join(output)}]")

    filter_node = f"FilterExec: {request.predicate}" if request.predicate is not None else None
    limit = request.limit if request.limit is not None or not is_vector else DEFAULT_TOP_K
    if is_vector and request.postfilter and filter_node:
        nodes.append(filter_node)
    if limit is not None or request.offset:
        fetch = "None" if limit is None else str(limit)
        nodes.append(f"GlobalLimitExec: skip={request.offset or 0}, fetch={fetch}")

    fast = request.fast_search
    if is_vector:
        schema = data.schema
        target = _resolve_vector_target(schema.remove(schema.get_field_index(ROW_ID_COLUMN)), request, indices)
        nodes.append(f"SortExec: TopK(fetch={(request.offset or 0) + limit}), expr=[{DISTANCE_COLUMN} ASC]")
        if target.index is not None and not request.bypass_vector_index:
            refine = f", refine_factor={request.refine_factor}" if request.refine_factor else ""
            nodes.append(
                f"ANNSubIndex: name={target.index.name}, k={(request.offset or 0) + limit}, "
                f"metric={target.distance_type}, nprobes={request.nprobes}{refine}"
            )
        else:
            nodes.append(f"KNNVectorDistance: metric={target.distance_type}, column={target.column}")
        fast = fast and target.index is not None and not request.bypass_vector_index
        if filter_node and not request.postfilter:
            nodes.append(filter_node)
    elif request.full_text is not None:
        nodes.append(f"SortExec: expr=[{SCORE_COLUMN} DESC]")
        columns = _fts_columns(data.schema.remove(data.schema.get_field_index(ROW_ID_COLUMN)), request, indices)
        nodes.append(f"MatchQuery: query={request.full_text.text!r}, columns=[{', '.join(columns)}]")
        if filter_node:
            nodes.append(filter_node)
    elif filter_node:
        nodes.append(filter_node)

    scan = f"LanceScan: uri={uri}, projection=[{', '.join(user_columns)}], row_id={str(request.with_row_id).lower()}"
    if fast:
        scan += ", fast_search=true"
    nodes.append(scan)

    lines = [("  " * depth) + node for depth, node in enumerate(nodes)]
    if verbose:
        lines.append("")
        lines.append(f"num_rows={data.num_rows}")
        for entry in sorted(indices.values(), key=lambda e: e.name):
            lines.append(f"index {entry.name}: type={entry.config.index_type}, column={entry.column}, covered_rows<{entry.watermark}")
    return "\n".join(lines)


# ----------------------------- cursor -------------------------------------- #


class MemoryCursor:
    """Forward-only cursor over a materialized result."""

    def __init__(self, result: pa.Table, max_batch_length: int = DEFAULT_MAX_BATCH_LENGTH) -> None:
        self.schema = result.schema
        self._batches = iter(result.combine_chunks().to_batches(max_chunksize=max_batch_length))
        self._closed = False

    def __aiter__(self) -> "MemoryCursor":
        return self

    async def __anext__(self) -> pa.RecordBatch:
        if self._closed:
            raise StopAsyncIteration
        await asyncio.sleep(0)
        batch = next(self._batches, None)
        if batch is None:
            self._closed = True
            raise StopAsyncIteration
        return batch

    async def aclose(self) -> None:
        self._closed = True
        self._batches = iter(())


# ----------------------------- engine -------------------------------------- #


class MemoryTable:
    """EngineTable bound to one table state."""

    def __init__(self, state: _TableState, *, index_cache_size: Optional[int] = None) -> None:
        self._state = state
        self.index_cache_size = index_cache_size

    @property
    def name(self) -> str:
        return self._state.name

    @property
    def uri(self) -> str:
        return f"{self._state.uri}/{self._state.name}"

    @property
    def storage_version(self) -> str:
        return self._state.storage_version

    async def schema(self) -> pa.Schema:
        return await asyncio.to_thread(self._state.read_schema)

    async def add(self, data: pa.Table, mode: AddMode) -> AddResult:
        return await asyncio.to_thread(self._state.add, data, mode)

    async def delete(self, predicate: str) -> DeleteResult:
        return await asyncio.to_thread(self._state.delete, predicate)

    async def count_rows(self, filter: Optional[str] = None) -> int:
        return await asyncio.to_thread(self._state.count_rows, filter)

    async def create_index(self, column: str, config: IndexConfig, *, replace: bool = True) -> None:
        await asyncio.to_thread(self._state.create_index, column, config, replace)

    async def list_indices(self) -> List[IndexInfo]:
        return await asyncio.to_thread(self._state.list_indices)

    async def merge_insert(self, request: MergeInsertRequest, data: pa.Table) -> MergeResult:
        return await asyncio.to_thread(self._state.merge_insert, request, data)

    async def execute(
        self,
        request: QueryRequest,
        *,
        max_batch_length: int = DEFAULT_MAX_BATCH_LENGTH,
    ) -> MemoryCursor:
        result = await asyncio.to_thread(self._run_query, request)
        return MemoryCursor(result, max_batch_length)

    async def explain_plan(self, request: QueryRequest, *, verbose: bool = False) -> str:
        return await asyncio.to_thread(self._render_plan, request, verbose)

    # The snapshot is taken on the worker thread; a writer may hold the lock.

    def _run_query(self, request: QueryRequest) -> pa.Table:
        data, indices = self._state.snapshot()
        return run_query(data, indices, request)

    def _render_plan(self, request: QueryRequest, verbose: bool) -> str:
        data, indices = self._state.snapshot()
        return render_plan(self.uri, data, indices, request, verbose=verbose)


class _Database:
    def __init__(self, uri: str) -> None:
        self.uri = uri
        self.lock = threading.Lock()
        self.tables: Dict[str, _TableState] = {}


_DATABASES: Dict[str, _Database] = {}
_databases_lock = threading.Lock()


def _validate_table_name(name: str) -> None:
    if not isinstance(name, str) or not name or "/" in name or name.strip() != name:
        raise InvalidArgument(f"Invalid table name {name!r}", details={"table": str(name)})


class MemoryEngine:
    """StorageEngine over the process-wide in-memory database for one URI."""

    def __init__(self, uri: str, config: Optional[ConnectConfig] = None) -> None:
        self.uri = uri
        self.config = config or ConnectConfig()
        with _databases_lock:
            db = _DATABASES.get(uri)
            if db is None:
                db = _DATABASES[uri] = _Database(uri)
        self._db = db

    @classmethod
    async def connect(cls, uri: str, config: ConnectConfig) -> "MemoryEngine":
        engine = cls(uri, config)
        logger.debug("memory engine: session opened for %s (region=%s)", uri, engine.config.region)
        return engine

    async def table_names(self) -> List[str]:
        return await asyncio.to_thread(self._table_names)

    def _table_names(self) -> List[str]:
        with self._db.lock:
            return sorted(self._db.tables)

    async def create_table(
        self,
        name: str,
        data: pa.Table,
        *,
        mode: CreateMode = CreateMode.CREATE,
        storage_options: Optional[Mapping[str, str]] = None,
        data_storage_version: Optional[str] = None,
        enable_v2_manifest_paths: Optional[bool] = None,
    ) -> MemoryTable:
        return await asyncio.to_thread(self._create_table, name, data, mode, data_storage_version)

    def _create_table(
        self,
        name: str,
        data: pa.Table,
        mode: CreateMode,
        data_storage_version: Optional[str],
    ) -> MemoryTable:
        _validate_table_name(name)
        if ROW_ID_COLUMN in data.column_names:
            raise InvalidArgument(f"Column name {ROW_ID_COLUMN!r} is reserved")
        with self._db.lock:
            existing = self._db.tables.get(name)
            if existing is not None:
                if mode is CreateMode.CREATE:
                    raise TableExists(f"Table '{name}' already exists", details={"table": name})
                if mode is CreateMode.EXIST_OK:
                    return MemoryTable(existing)
                existing.replace(data)
                if data_storage_version is not None:
                    existing.storage_version = data_storage_version
                return MemoryTable(existing)
            state = _TableState(self.uri, name, data, storage_version=data_storage_version)
            self._db.tables[name] = state
        logger.debug("memory engine: created table %s/%s (%d rows)", self.uri, name, data.num_rows)
        return MemoryTable(state)

    async def open_table(
        self,
        name: str,
        *,
        storage_options: Optional[Mapping[str, str]] = None,
        index_cache_size: Optional[int] = None,
    ) -> MemoryTable:
        return await asyncio.to_thread(self._open_table, name, index_cache_size)

    def _open_table(self, name: str, index_cache_size: Optional[int]) -> MemoryTable:
        with self._db.lock:
            state = self._db.tables.get(name)
        if state is None:
            raise NotFound(f"Table '{name}' was not found", details={"table": name})
        return MemoryTable(state, index_cache_size=index_cache_size)

    async def drop_table(self, name: str) -> None:
        await asyncio.to_thread(self._drop_table, name)

    def _drop_table(self, name: str) -> None:
        with self._db.lock:
            state = self._db.tables.pop(name, None)
        if state is None:
            raise NotFound(f"Table '{name}' was not found", details={"table": name})
        with state.lock:
            state.dropped = True
        logger.debug("memory engine: dropped table %s/%s", self.uri, name)

    def close(self) -> None:
        logger.debug("memory engine: session closed for %s", self.uri)


def reset_memory_databases() -> None:
    """Forget every in-memory database in this process."""
    with _databases_lock:
        _DATABASES.clear()


register_engine("memory", MemoryEngine.connect)


__all__ = [
    "MemoryEngine",
    "MemoryTable",
    "MemoryCursor",
    "compute_distances",
    "filter_positions",
    "run_query",
    "render_plan",
    "reset_memory_databases",
]
