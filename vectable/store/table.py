# vectable/store/table.py
# SPDX-License-Identifier: Apache-2.0
"""
Table: an open handle to one named table.

A Table keeps its name after `close()` so that diagnostics can still say
which table an operation was aimed at. Closing only blocks *new*
operations; calls already awaiting the engine run to completion.

Every engine call goes through `Table._call`, which
- raises ClosedResource once the table is closed,
- records one metrics observation per operation,
- passes taxonomy errors through with `operation`/`table` in their details,
- wraps any other engine failure in the operation's failure kind.

Data arguments (`create_table`, `add`, merge execution) are either
BatchCodec bytes or native pyarrow objects (Table, RecordBatch, a sequence
of RecordBatches or a RecordBatchReader).
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Sequence, TypeVar, Union

import pyarrow as pa

from vectable.core.error_context import attach_context
from vectable.core.metrics import MetricsSink, NoopMetrics
from vectable.store.codec import BatchCodec, batches_from, default_codec
from vectable.store.engine import (
    DEFAULT_MAX_BATCH_LENGTH,
    AddMode,
    AddResult,
    DeleteResult,
    EngineTable,
    IndexInfo,
    MergeInsertRequest,
    MergeResult,
    QueryRequest,
)
from vectable.store.errors import (
    ClosedResource,
    CodecError,
    ExecutionFailed,
    IndexBuildFailed,
    InvalidArgument,
    InvalidPayload,
    InvalidPredicate,
    TableStoreError,
)
from vectable.store.index import IndexSpec
from vectable.store.stream import ResultStream

if TYPE_CHECKING:
    from vectable.store.merge import MergeInsertSpec
    from vectable.store.query import Query, VectorQuery

logger = logging.getLogger(__name__)

T = TypeVar("T")

TableData = Union[bytes, bytearray, memoryview, pa.Table, pa.RecordBatch, Sequence[pa.RecordBatch], pa.RecordBatchReader]


def coerce_data(data: TableData, codec: BatchCodec = default_codec) -> Optional[pa.Table]:
    """
    Turn a data argument into one pyarrow Table.

    Returns None for an empty native batch sequence, which carries no schema.

    Raises:
        InvalidPayload: bytes that fail to decode, or batches with
            inconsistent schemas.
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        try:
            return codec.decode_table(data)
        except CodecError as exc:
            raise InvalidPayload(
                f"Failed to read IPC file: {exc.message}",
                details={"size": len(data)},
            ) from exc
    if isinstance(data, pa.RecordBatchReader):
        return data.read_all()
    if isinstance(data, (pa.Table, pa.RecordBatch)):
        return batches_from(data)
    if isinstance(data, (str, dict)) or not isinstance(data, Sequence):
        raise InvalidPayload(
            f"Unsupported data type {type(data).__name__}; expected bytes or pyarrow batches",
            details={"type": type(data).__name__},
        )
    if len(data) == 0:
        return None
    if not all(isinstance(b, pa.RecordBatch) for b in data):
        raise InvalidPayload("Expected a sequence of pyarrow.RecordBatch")
    try:
        return batches_from(data)
    except (CodecError, pa.ArrowInvalid) as exc:
        raise InvalidPayload(f"Inconsistent record batches: {exc}") from exc


class Instrumented:
    """
    Shared operation wrapper for Connection and Table.

    `_run_op` times the operation, records one metrics observation and
    classifies failures: taxonomy errors pass through with the operation
    context added, anything else is wrapped in `failure`.
    """

    _component = "store"
    _metrics: MetricsSink

    def _record(self, op: str, t0: float, ok: bool, *, code: str = "OK", **extra: Any) -> None:
        try:
            self._metrics.observe(
                component=self._component,
                op=op,
                ms=(time.monotonic() - t0) * 1000.0,
                ok=ok,
                code=code,
                extra=extra or None,
            )
        except Exception:
            # Never let metrics recording break the operation
            pass

    def _count(self, name: str, value: int, **extra: Any) -> None:
        try:
            self._metrics.counter(component=self._component, name=name, value=int(value), extra=extra or None)
        except Exception:
            # Never let metrics recording break the operation
            pass

    async def _run_op(
        self,
        op: str,
        thunk: Callable[[], Awaitable[T]],
        *,
        failure: type = ExecutionFailed,
        **context: Any,
    ) -> T:
        t0 = time.monotonic()
        try:
            result = await thunk()
        except TableStoreError as exc:
            self._record(op, t0, False, code=exc.code)
            exc.details.setdefault("operation", op)
            for key, value in context.items():
                exc.details.setdefault(key, value)
            attach_context(exc, self._component, operation=op, **context)
            raise
        except Exception as exc:
            self._record(op, t0, False, code=failure.default_code)
            target = f" on table {context['table']}" if context.get("table") else ""
            details = {"operation": op, "cause": type(exc).__name__, **context}
            error = failure(f"Failed to {op.replace('_', ' ')}{target}: {exc}", details=details)
            attach_context(error, self._component, operation=op, **context)
            raise error from exc
        self._record(op, t0, True)
        return result


class Table(Instrumented):
    """
    Open handle to a named table.

    Obtain one from `Connection.create_table()` or `Connection.open_table()`.
    """

    _component = "table"

    def __init__(
        self,
        inner: EngineTable,
        *,
        metrics: Optional[MetricsSink] = None,
        codec: BatchCodec = default_codec,
    ) -> None:
        self.name: str = inner.name
        self._inner: Optional[EngineTable] = inner
        self._metrics = metrics or NoopMetrics()
        self._codec = codec

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def is_open(self) -> bool:
        return self._inner is not None

    def close(self) -> None:
        """Close the table. Idempotent; in-flight operations are unaffected."""
        if self._inner is not None:
            self._inner = None
            logger.debug("Table %s closed", self.name)

    def display(self) -> str:
        inner = self._inner
        if inner is None:
            return f"ClosedTable({self.name})"
        uri = getattr(inner, "uri", None)
        return f"Table({self.name}, uri={uri})" if uri else f"Table({self.name})"

    def __repr__(self) -> str:
        return self.display()

    def _inner_ref(self, operation: str) -> EngineTable:
        inner = self._inner
        if inner is None:
            raise ClosedResource(
                f"Table {self.name} is closed",
                details={"operation": operation, "table": self.name},
            )
        return inner

    async def _call(
        self,
        op: str,
        fn: Callable[[EngineTable], Awaitable[T]],
        *,
        failure: type = ExecutionFailed,
        **context: Any,
    ) -> T:
        return await self._run_op(
            op,
            lambda: fn(self._inner_ref(op)),
            failure=failure,
            table=self.name,
            **context,
        )

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    async def arrow_schema(self) -> pa.Schema:
        return await self._call("schema", lambda inner: inner.schema())

    async def schema(self) -> bytes:
        """Column schema serialized as an IPC file without batches."""
        return self._codec.encode_schema(await self.arrow_schema())

    async def count_rows(self, filter: Optional[str] = None) -> int:
        if filter is not None and not isinstance(filter, str):
            raise InvalidPredicate("filter must be a string", details={"table": self.name})
        return await self._call("count_rows", lambda inner: inner.count_rows(filter))

    async def list_indices(self) -> List[IndexInfo]:
        return await self._call("list_indices", lambda inner: inner.list_indices())

    # ------------------------------------------------------------------ #
    # Mutation
    # ------------------------------------------------------------------ #

    async def add(self, data: TableData, mode: Union[str, AddMode] = AddMode.APPEND) -> AddResult:
        """
        Append rows to the table or overwrite it.

        An empty batch set is a successful no-op.
        """
        async def _add(inner: EngineTable) -> AddResult:
            add_mode = AddMode.parse(mode)
            table = coerce_data(data, self._codec)
            if table is None or table.num_rows == 0:
                return AddResult(rows_added=0)
            result = await inner.add(table, add_mode)
            self._count("rows_added", result.rows_added, mode=add_mode.value)
            return result

        return await self._call("add", _add, mode=str(getattr(mode, "value", mode)))

    async def delete(self, predicate: str) -> DeleteResult:
        """Delete rows matching `predicate`. Zero matches is success."""
        if not isinstance(predicate, str) or not predicate.strip():
            raise InvalidPredicate(
                "delete requires a non-empty predicate",
                details={"operation": "delete", "table": self.name},
            )
        result = await self._call("delete", lambda inner: inner.delete(predicate), predicate=predicate)
        self._count("rows_deleted", result.rows_deleted)
        return result

    async def create_index(self, column: str, spec: IndexSpec, *, replace: bool = True) -> None:
        """
        Build an index on `column` from a one-shot IndexSpec.

        Raises:
            AlreadyConsumed: this IndexSpec was submitted before.
            IndexBuildFailed: the engine rejected or failed the build.
        """
        if not isinstance(spec, IndexSpec):
            raise InvalidArgument(f"expected an IndexSpec, got {type(spec).__name__}")

        async def _create(inner: EngineTable) -> None:
            config = spec.consume()
            await inner.create_index(column, config, replace=replace)

        await self._call(
            "create_index",
            _create,
            failure=IndexBuildFailed,
            column=column,
            index_type=spec.index_type,
        )

    # ------------------------------------------------------------------ #
    # Builders
    # ------------------------------------------------------------------ #

    def query(self) -> "Query":
        """A fresh, default-configured query bound to this table."""
        from vectable.store.query import Query

        self._inner_ref("query")
        return Query(self)

    def vector_search(self, vector: Any) -> "VectorQuery":
        """Shorthand for `query().nearest_to(vector)`."""
        return self.query().nearest_to(vector)

    def merge_insert(self, on: Union[str, Sequence[str]]) -> "MergeInsertSpec":
        """Start an upsert keyed on one or more columns."""
        from vectable.store.merge import MergeInsertSpec

        self._inner_ref("merge_insert")
        return MergeInsertSpec(self, on)

    # ------------------------------------------------------------------ #
    # Hooks used by Query and MergeInsertSpec
    # ------------------------------------------------------------------ #

    async def _execute(self, request: QueryRequest, max_batch_length: Optional[int]) -> ResultStream:
        batch_length = max_batch_length or DEFAULT_MAX_BATCH_LENGTH
        cursor = await self._call(
            "execute",
            lambda inner: inner.execute(request, max_batch_length=batch_length),
        )
        return ResultStream(cursor, table=self.name, codec=self._codec)

    async def _explain_plan(self, request: QueryRequest, verbose: bool) -> str:
        return await self._call(
            "explain_plan",
            lambda inner: inner.explain_plan(request, verbose=verbose),
        )

    async def _merge(self, request: MergeInsertRequest, data: TableData) -> MergeResult:
        async def _run(inner: EngineTable) -> MergeResult:
            table = coerce_data(data, self._codec)
            if table is None:
                table = (await inner.schema()).empty_table()
            return await inner.merge_insert(request, table)

        result = await self._call("merge_insert", _run, on=list(request.on))
        self._count("rows_inserted", result.num_inserted)
        self._count("rows_updated", result.num_updated)
        self._count("rows_deleted", result.num_deleted)
        return result


__all__ = ["Instrumented", "Table", "TableData", "coerce_data"]
