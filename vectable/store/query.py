# vectable/store/query.py
# SPDX-License-Identifier: Apache-2.0
"""
Query / VectorQuery: clone-on-write query builders.

A query is an immutable value. Every configuration method returns a new
query that differs from its receiver in exactly one attribute; the
receiver stays a valid, unmodified snapshot that can be executed or
configured further on its own:

    base = table.query().where("category = 'a'")
    first_ten = base.limit(10)      # base is unchanged
    everything = base               # still unlimited

`nearest_to(vector)` is the one transition that changes type: it returns a
VectorQuery carrying every scalar attribute set so far plus vector-search
defaults (top 10, pre-filtering, the table's only vector column).

Setters validate eagerly and raise InvalidArgument; failures that depend
on table contents (unknown columns, vector dimension mismatch) surface
when the query is executed or explained.
"""

from __future__ import annotations

import logging
from dataclasses import fields, replace
from typing import TYPE_CHECKING, Any, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pyarrow as pa

from vectable.store.engine import FullTextQuery, QueryRequest, VectorQueryRequest
from vectable.store.errors import InvalidArgument
from vectable.store.index import parse_distance_type
from vectable.store.stream import ResultStream

if TYPE_CHECKING:
    from vectable.store.table import Table

logger = logging.getLogger(__name__)


def _count(name: str, value: Any, *, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < minimum:
        raise InvalidArgument(
            f"{name} must be an integer >= {minimum}, got {value!r}",
            details={"parameter": name},
        )
    return int(value)


def _text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{name} must be a non-empty string", details={"parameter": name})
    return value


def _coerce_vector(vector: Any) -> Tuple[float, ...]:
    try:
        array = np.asarray(vector, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidArgument(f"Query vector is not numeric: {exc}") from exc
    if array.ndim != 1 or array.size == 0:
        raise InvalidArgument(
            "Query vector must be a non-empty one-dimensional sequence",
            details={"shape": list(array.shape)},
        )
    if not np.all(np.isfinite(array)):
        raise InvalidArgument("Query vector must contain only finite values")
    return tuple(float(x) for x in array)


class Query:
    """Scalar / full-text query over one table."""

    __slots__ = ("_table", "_request")

    def __init__(self, table: "Table", request: Optional[QueryRequest] = None) -> None:
        self._table = table
        self._request = request if request is not None else QueryRequest()

    @property
    def request(self) -> QueryRequest:
        """The immutable descriptor submitted to the engine."""
        return self._request

    @property
    def table(self) -> "Table":
        return self._table

    def _with(self, **changes: Any):
        return type(self)(self._table, replace(self._request, **changes))

    # ------------------------------------------------------------------ #
    # Configuration
    # ------------------------------------------------------------------ #

    def where(self, predicate: str):
        """Only return rows matching a SQL predicate."""
        return self._with(predicate=_text("predicate", predicate))

    def select(self, columns: Union[Sequence[str], Mapping[str, str]]):
        """
        Choose output columns.

        A sequence selects columns by name; a mapping of output name to SQL
        expression computes dynamic columns.
        """
        if isinstance(columns, Mapping):
            projection = tuple((_text("column name", k), _text("select expression", v)) for k, v in columns.items())
        elif isinstance(columns, (str, bytes)) or not isinstance(columns, Sequence):
            raise InvalidArgument("select expects a sequence of column names or a mapping of expressions")
        else:
            projection = tuple((_text("column name", c), None) for c in columns)
        if not projection:
            raise InvalidArgument("select requires at least one column")
        return self._with(projection=projection)

    def limit(self, limit: int):
        return self._with(limit=_count("limit", limit, minimum=0))

    def offset(self, offset: int):
        return self._with(offset=_count("offset", offset, minimum=0))

    def full_text_search(self, text: str, columns: Optional[Union[str, Sequence[str]]] = None):
        if not isinstance(text, str):
            raise InvalidArgument("full-text search term must be a string")
        if columns is not None:
            columns = (columns,) if isinstance(columns, str) else tuple(columns)
            for column in columns:
                _text("column name", column)
            if not columns:
                columns = None
        return self._with(full_text=FullTextQuery(text=text, columns=columns))

    def with_row_id(self):
        return self._with(with_row_id=True)

    def fast_search(self):
        return self._with(fast_search=True)

    def nearest_to(self, vector: Any) -> "VectorQuery":
        """Project this query into a vector query searching for `vector`."""
        if self._request.full_text is not None:
            raise InvalidArgument("Vector search cannot be combined with full-text search")
        values = {f.name: getattr(self._request, f.name) for f in fields(QueryRequest)}
        return VectorQuery(self._table, VectorQueryRequest(vector=_coerce_vector(vector), **values))

    # ------------------------------------------------------------------ #
    # Terminal operations
    # ------------------------------------------------------------------ #

    async def execute(self, max_batch_length: Optional[int] = None) -> ResultStream:
        """
        Run the query and return a stream of result batches.

        `max_batch_length` bounds the rows per batch; the logical result is
        the same for every value.
        """
        if max_batch_length is not None:
            max_batch_length = _count("max_batch_length", max_batch_length, minimum=1)
        return await self._table._execute(self._request, max_batch_length)

    async def explain_plan(self, verbose: bool = False) -> str:
        """Describe how the query would execute. Touches no data."""
        return await self._table._explain_plan(self._request, bool(verbose))

    async def to_arrow(self) -> pa.Table:
        stream = await self.execute()
        async with stream:
            return await stream.to_arrow()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(table={self._table.name!r}, {self._request!r})"


class VectorQuery(Query):
    """Nearest-neighbor query; everything Query has plus vector parameters."""

    __slots__ = ()

    _request: VectorQueryRequest

    def __init__(self, table: "Table", request: VectorQueryRequest) -> None:
        if not isinstance(request, VectorQueryRequest):
            raise InvalidArgument("VectorQuery requires a VectorQueryRequest")
        super().__init__(table, request)

    @property
    def request(self) -> VectorQueryRequest:
        return self._request

    def nearest_to(self, vector: Any) -> "VectorQuery":
        return self._with(vector=_coerce_vector(vector))

    def full_text_search(self, text: str, columns: Optional[Union[str, Sequence[str]]] = None):
        raise InvalidArgument("Vector search cannot be combined with full-text search")

    def column(self, column: str) -> "VectorQuery":
        return self._with(column=_text("column", column))

    def distance_type(self, distance_type: str) -> "VectorQuery":
        return self._with(distance_type=parse_distance_type(distance_type))

    def nprobes(self, nprobes: int) -> "VectorQuery":
        return self._with(nprobes=_count("nprobes", nprobes, minimum=1))

    def refine_factor(self, refine_factor: int) -> "VectorQuery":
        return self._with(refine_factor=_count("refine_factor", refine_factor, minimum=1))

    def bypass_vector_index(self) -> "VectorQuery":
        return self._with(bypass_vector_index=True)

    def postfilter(self) -> "VectorQuery":
        """Rank the nearest rows first, then apply the predicate to them."""
        return self._with(postfilter=True)


__all__ = ["Query", "VectorQuery"]
