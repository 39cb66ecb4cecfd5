# vectable/store/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
vectable table store - Public API

Client layer over columnar tables with vector, full-text and SQL-predicate
search. All public types are re-exported here for clean imports:

    from vectable.store import connect, IndexSpec

    conn = await connect("memory://demo")
    table = await conn.create_table("items", batches)
    await table.create_index("vector", IndexSpec.ivf_pq(distance_type="cosine"))
    stream = await table.vector_search([0.1, 0.2, 0.3]).limit(5).execute()
"""

from vectable.store.codec import BatchCodec, batches_from, default_codec
from vectable.store.config import ConnectConfig
from vectable.store.connection import Connection, connect
from vectable.store.engine import (
    # Reserved columns
    ROW_ID_COLUMN,
    DISTANCE_COLUMN,
    SCORE_COLUMN,
    DEFAULT_TOP_K,
    DEFAULT_MAX_BATCH_LENGTH,

    # Modes
    CreateMode,
    AddMode,

    # Requests and results
    FullTextQuery,
    QueryRequest,
    VectorQueryRequest,
    MergeInsertRequest,
    AddResult,
    DeleteResult,
    MergeResult,
    IndexInfo,

    # Engine contract
    BatchCursor,
    EngineTable,
    StorageEngine,
    register_engine,
)
from vectable.store.errors import (
    TableStoreError,
    ClosedResource,
    NotFound,
    InvalidArgument,
    TableExists,
    CodecError,
    InvalidPayload,
    InvalidPredicate,
    AlreadyConsumed,
    ExecutionFailed,
    IndexBuildFailed,
    StreamError,
    ConnectFailed,
    InvalidHandle,
)
from vectable.store.handles import HandleAPI, HandleRegistry
from vectable.store.index import DISTANCE_TYPES, IndexSpec
from vectable.store.merge import MergeInsertSpec
from vectable.store.query import Query, VectorQuery
from vectable.store.stream import ResultStream
from vectable.store.table import Table

__version__ = "0.3.0"

__all__ = [
    "BatchCodec",
    "batches_from",
    "default_codec",
    "ConnectConfig",
    "Connection",
    "connect",
    "ROW_ID_COLUMN",
    "DISTANCE_COLUMN",
    "SCORE_COLUMN",
    "DEFAULT_TOP_K",
    "DEFAULT_MAX_BATCH_LENGTH",
    "CreateMode",
    "AddMode",
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
    "register_engine",
    "TableStoreError",
    "ClosedResource",
    "NotFound",
    "InvalidArgument",
    "TableExists",
    "CodecError",
    "InvalidPayload",
    "InvalidPredicate",
    "AlreadyConsumed",
    "ExecutionFailed",
    "IndexBuildFailed",
    "StreamError",
    "ConnectFailed",
    "InvalidHandle",
    "HandleAPI",
    "HandleRegistry",
    "DISTANCE_TYPES",
    "IndexSpec",
    "MergeInsertSpec",
    "Query",
    "VectorQuery",
    "ResultStream",
    "Table",
]
