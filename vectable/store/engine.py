# vectable/store/engine.py
# SPDX-License-Identifier: Apache-2.0
"""
Storage engine contract.

The physical store, its manifest/versioning, the index algorithms and the
query executor all live behind this boundary. The client layer only:

- describes work with the immutable descriptors defined here
  (QueryRequest, VectorQueryRequest, MergeInsertRequest, IndexConfig),
- awaits the engine's async operations,
- classifies the outcome into the error taxonomy.

Engines are selected by URI scheme. `register_engine("memory", factory)`
binds a scheme to an async factory `factory(uri, config) -> StorageEngine`;
a `"package.module:attr"` spec in ConnectConfig.engine overrides the lookup.
"""

from __future__ import annotations

import importlib
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

import pyarrow as pa

from vectable.store.errors import ConnectFailed, InvalidArgument

if TYPE_CHECKING:
    from vectable.store.config import ConnectConfig
    from vectable.store.index import IndexConfig

logger = logging.getLogger(__name__)

#: Name of the hidden, stable per-row identifier column.
ROW_ID_COLUMN = "_rowid"
#: Column appended to vector search results.
DISTANCE_COLUMN = "_distance"
#: Column appended to full-text search results.
SCORE_COLUMN = "_score"

#: Rows returned by a vector query that has no explicit limit.
DEFAULT_TOP_K = 10
#: Default upper bound on rows per streamed batch.
DEFAULT_MAX_BATCH_LENGTH = 1024
DEFAULT_NPROBES = 20

# =============================================================================
# Modes
# =============================================================================


class CreateMode(str, Enum):
    CREATE = "create"
    OVERWRITE = "overwrite"
    EXIST_OK = "exist_ok"

    @classmethod
    def parse(cls, value: Any) -> "CreateMode":
        return _parse_mode(cls, value)


class AddMode(str, Enum):
    APPEND = "append"
    OVERWRITE = "overwrite"

    @classmethod
    def parse(cls, value: Any) -> "AddMode":
        return _parse_mode(cls, value)


def _parse_mode(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidArgument(
            f"Invalid mode {value!r}; expected one of {allowed}",
            details={"mode": str(value), "allowed": [m.value for m in enum_cls]},
        ) from None


DATA_STORAGE_VERSIONS: Tuple[str, ...] = ("legacy", "0.1", "stable", "2.0", "2.1", "next")


def parse_data_storage_version(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if normalized not in DATA_STORAGE_VERSIONS:
        raise InvalidArgument(
            f"Invalid data storage version {value!r}",
            details={"allowed": list(DATA_STORAGE_VERSIONS)},
        )
    return normalized


# =============================================================================
# Request descriptors
# =============================================================================


@dataclass(frozen=True)
class FullTextQuery:
    text: str
    columns: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class QueryRequest:
    """
    Everything a scalar query asks of the engine.

    Attributes:
        predicate: SQL boolean expression over table columns
        projection: (output name, SQL expression or None for a plain column)
        limit: Maximum rows returned (None = all matches)
        offset: Rows skipped before the limit applies
        full_text: Optional full-text search term and target columns
        with_row_id: Include the hidden `_rowid` column
        fast_search: Only search data covered by an index
    """
    predicate: Optional[str] = None
    projection: Optional[Tuple[Tuple[str, Optional[str]], ...]] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    full_text: Optional[FullTextQuery] = None
    with_row_id: bool = False
    fast_search: bool = False


@dataclass(frozen=True)
class VectorQueryRequest(QueryRequest):
    """
    QueryRequest plus nearest-neighbor parameters.

    With `postfilter=False` (the default) the predicate narrows candidates
    before ranking; with `postfilter=True` the nearest rows are ranked first
    and the predicate is applied to that top slice only.
    """
    vector: Tuple[float, ...] = ()
    column: Optional[str] = None
    distance_type: Optional[str] = None
    nprobes: int = DEFAULT_NPROBES
    refine_factor: Optional[int] = None
    bypass_vector_index: bool = False
    postfilter: bool = False


@dataclass(frozen=True)
class MergeInsertRequest:
    """
    Upsert policy. Each clause is independent and optional.

    Attributes:
        on: Key columns used to match source rows to target rows
        update_matched: Replace matched target rows with the source row
        matched_condition: Extra condition (may reference `target.` and
            `source.` columns) a matched pair must satisfy to be updated
        insert_unmatched: Insert source rows without a matching target row
        delete_unmatched_by_source: Delete target rows with no source match
        delete_condition: Extra condition over target columns restricting
            which unmatched target rows are deleted
    """
    on: Tuple[str, ...]
    update_matched: bool = False
    matched_condition: Optional[str] = None
    insert_unmatched: bool = False
    delete_unmatched_by_source: bool = False
    delete_condition: Optional[str] = None

    @property
    def has_clauses(self) -> bool:
        return self.update_matched or self.insert_unmatched or self.delete_unmatched_by_source


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class AddResult:
    rows_added: int


@dataclass(frozen=True)
class DeleteResult:
    rows_deleted: int


@dataclass(frozen=True)
class MergeResult:
    num_inserted: int
    num_updated: int
    num_deleted: int


@dataclass(frozen=True)
class IndexInfo:
    name: str
    column: str
    index_type: str


# =============================================================================
# Engine protocols
# =============================================================================


@runtime_checkable
class BatchCursor(Protocol):
    """Engine-side cursor behind a ResultStream. Forward-only."""

    schema: pa.Schema

    def __aiter__(self) -> AsyncIterator[pa.RecordBatch]: ...

    async def __anext__(self) -> pa.RecordBatch: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class EngineTable(Protocol):
    """A live engine-side table reference."""

    @property
    def name(self) -> str: ...

    async def schema(self) -> pa.Schema: ...

    async def add(self, data: pa.Table, mode: AddMode) -> AddResult: ...

    async def delete(self, predicate: str) -> DeleteResult: ...

    async def count_rows(self, filter: Optional[str] = None) -> int: ...

    async def create_index(
        self,
        column: str,
        config: "IndexConfig",
        *,
        replace: bool = True,
    ) -> None: ...

    async def list_indices(self) -> List[IndexInfo]: ...

    async def merge_insert(self, request: MergeInsertRequest, data: pa.Table) -> MergeResult: ...

    async def execute(
        self,
        request: QueryRequest,
        *,
        max_batch_length: int = DEFAULT_MAX_BATCH_LENGTH,
    ) -> BatchCursor: ...

    async def explain_plan(self, request: QueryRequest, *, verbose: bool = False) -> str: ...


@runtime_checkable
class StorageEngine(Protocol):
    """A session against one logical store."""

    async def table_names(self) -> List[str]: ...

    async def create_table(
        self,
        name: str,
        data: pa.Table,
        *,
        mode: CreateMode = CreateMode.CREATE,
        storage_options: Optional[Mapping[str, str]] = None,
        data_storage_version: Optional[str] = None,
        enable_v2_manifest_paths: Optional[bool] = None,
    ) -> EngineTable: ...

    async def open_table(
        self,
        name: str,
        *,
        storage_options: Optional[Mapping[str, str]] = None,
        index_cache_size: Optional[int] = None,
    ) -> EngineTable: ...

    async def drop_table(self, name: str) -> None: ...

    def close(self) -> None: ...


EngineFactory = Callable[[str, "ConnectConfig"], Awaitable[StorageEngine]]

# =============================================================================
# Engine registry
# =============================================================================

_registry_lock = threading.Lock()
_ENGINE_FACTORIES: Dict[str, EngineFactory] = {}


def register_engine(scheme: str, factory: EngineFactory) -> None:
    """Bind a URI scheme (e.g. "memory") to an async engine factory."""
    if not scheme or not isinstance(scheme, str):
        raise ValueError("scheme must be a non-empty string")
    with _registry_lock:
        _ENGINE_FACTORIES[scheme.lower()] = factory
    logger.debug("registered storage engine for scheme %r", scheme)


def uri_scheme(uri: str) -> str:
    scheme, sep, rest = uri.partition("://")
    if not sep or not scheme or not rest:
        raise ConnectFailed(
            f"Invalid URI {uri!r}; expected '<scheme>://<location>'",
            details={"uri": uri},
        )
    return scheme.lower()


def load_engine_factory(spec: str) -> EngineFactory:
    """Load an engine factory from a 'package.module:attr' string."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConnectFailed(
            f"Invalid engine spec {spec!r}; expected 'package.module:attr'",
            details={"engine": spec},
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConnectFailed(
            f"Failed to import engine module {module_name!r}",
            details={"engine": spec},
        ) from exc
    try:
        factory = getattr(module, attr)
    except AttributeError as exc:
        raise ConnectFailed(
            f"Engine factory {attr!r} not found in module {module_name!r}",
            details={"engine": spec},
        ) from exc
    # A class exposing an async `connect` classmethod is accepted as well.
    return getattr(factory, "connect", factory)


def resolve_engine_factory(uri: str, engine: Optional[str] = None) -> EngineFactory:
    if engine:
        return load_engine_factory(engine)
    scheme = uri_scheme(uri)
    with _registry_lock:
        factory = _ENGINE_FACTORIES.get(scheme)
    if factory is None:
        raise ConnectFailed(
            f"No storage engine registered for scheme {scheme!r}",
            details={"uri": uri, "scheme": scheme},
        )
    return factory


__all__ = [
    "ROW_ID_COLUMN",
    "DISTANCE_COLUMN",
    "SCORE_COLUMN",
    "DEFAULT_TOP_K",
    "DEFAULT_MAX_BATCH_LENGTH",
    "DEFAULT_NPROBES",
    "CreateMode",
    "AddMode",
    "DATA_STORAGE_VERSIONS",
    "parse_data_storage_version",
    "FullTextQuery",
    "QueryRequest",
    "VectorQueryRequest",
    "MergeInsertRequest",
    "AddResult",
    "DeleteResult",
    "MergeResult",
    "IndexInfo",
    "BatchCursor",
    "EngineTable",
    "StorageEngine",
    "EngineFactory",
    "register_engine",
    "uri_scheme",
    "load_engine_factory",
    "resolve_engine_factory",
]
