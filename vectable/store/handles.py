# vectable/store/handles.py
# SPDX-License-Identifier: Apache-2.0
"""
Opaque-handle API for hosts without automatic memory reclamation.

Every stateful object (Connection, Table, Query, VectorQuery, ResultStream,
IndexSpec, MergeInsertSpec) is kept in a HandleRegistry and represented to
the host by a positive integer. The host owns the lifetime: it creates a
handle through one of the API calls and destroys it with `release()`.
Releasing a handle twice, or releasing an unknown handle, is a no-op.

No exception crosses this boundary. Every call returns an envelope:

    {"ok": True,  "code": "OK",  "ms": 0.4, "result": ...}
    {"ok": True,  "code": "END", "ms": 0.1, "result": None}   # stream exhausted
    {"ok": False, "code": "NOT_FOUND", "error": "NotFound",
     "message": "...", "details": {...}, "ms": 0.2}

A handle that is unknown, released or of the wrong kind is a programming
error on the host side: its envelope carries `"fatal": True` with code
INVALID_HANDLE, and no state is touched.

Strings may arrive as `str` or as UTF-8 `bytes` (NUL-terminated or not);
batch payloads as `bytes`, `bytearray` or `memoryview` in BatchCodec
format; vectors as a sequence of numbers or little-endian float32 bytes.

All engine work runs on one SyncBridge, so the API is safe to call from
any number of host threads.

    api = HandleAPI()
    conn = api.connection_create("memory://demo")["result"]
    table = api.connection_create_table(conn, "items", payload)["result"]
    stream = api.query_execute(api.table_query(table)["result"])["result"]
    while (env := api.stream_next(stream))["code"] != "END":
        handle_batch(env["result"])
    api.release(stream)
"""

from __future__ import annotations

import inspect
import logging
import threading
import time
from dataclasses import asdict, is_dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from vectable.core.sync_bridge import SyncBridge, SyncBridgeTimeoutError
from vectable.store.config import ConnectConfig
from vectable.store.connection import Connection, connect
from vectable.store.errors import InvalidArgument, InvalidHandle, InvalidPayload, TableStoreError
from vectable.store.index import IndexSpec
from vectable.store.merge import MergeInsertSpec
from vectable.store.query import Query, VectorQuery
from vectable.store.stream import ResultStream
from vectable.store.table import Table

logger = logging.getLogger(__name__)

CONNECTION = "connection"
TABLE = "table"
QUERY = "query"
VECTOR_QUERY = "vector_query"
STREAM = "stream"
INDEX = "index"
MERGE = "merge"

_KIND_OF = (
    (VectorQuery, VECTOR_QUERY),
    (Query, QUERY),
    (Connection, CONNECTION),
    (Table, TABLE),
    (ResultStream, STREAM),
    (IndexSpec, INDEX),
    (MergeInsertSpec, MERGE),
)


# =============================================================================
# Registry
# =============================================================================


class HandleRegistry:
    """Arena of live objects keyed by opaque integer handles. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._next = 1
        self._objects: Dict[int, Tuple[str, Any]] = {}

    def put(self, kind: str, obj: Any) -> int:
        with self._lock:
            handle = self._next
            self._next += 1
            self._objects[handle] = (kind, obj)
        logger.debug("handle %d created (%s)", handle, kind)
        return handle

    def get(self, handle: Any, *kinds: str) -> Any:
        """
        Resolve a handle.

        Raises:
            InvalidHandle: unknown/released handle, or a kind not in `kinds`.
        """
        if isinstance(handle, bool) or not isinstance(handle, int) or handle <= 0:
            raise InvalidHandle(f"Invalid handle {handle!r}", details={"handle": repr(handle)})
        with self._lock:
            entry = self._objects.get(handle)
        if entry is None:
            raise InvalidHandle(
                f"Handle {handle} is not live",
                details={"handle": handle},
            )
        kind, obj = entry
        if kinds and kind not in kinds:
            raise InvalidHandle(
                f"Handle {handle} is a {kind}, expected {' or '.join(kinds)}",
                details={"handle": handle, "kind": kind, "expected": list(kinds)},
            )
        return obj

    def kind(self, handle: int) -> Optional[str]:
        with self._lock:
            entry = self._objects.get(handle)
        return entry[0] if entry else None

    def release(self, handle: Any) -> Optional[Tuple[str, Any]]:
        """Forget a handle. Unknown or already-released handles are a no-op."""
        if isinstance(handle, bool) or not isinstance(handle, int):
            return None
        with self._lock:
            entry = self._objects.pop(handle, None)
        if entry is None:
            logger.debug("handle %r already released", handle)
        else:
            logger.debug("handle %d released (%s)", handle, entry[0])
        return entry

    def drain(self) -> Dict[int, Tuple[str, Any]]:
        with self._lock:
            objects, self._objects = self._objects, {}
        return objects

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def __contains__(self, handle: object) -> bool:
        with self._lock:
            return handle in self._objects


# =============================================================================
# Envelopes
# =============================================================================


def _to_wire(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, list):
        return [_to_wire(v) for v in value]
    return value


class _EndMarker:
    def __repr__(self) -> str:
        return "END"


_End = _EndMarker()


def _success_envelope(result: Any, ms: float, code: str = "OK") -> Dict[str, Any]:
    return {"ok": True, "code": code, "ms": ms, "result": _to_wire(result)}


def _error_envelope(exc: BaseException, ms: float) -> Dict[str, Any]:
    if isinstance(exc, TableStoreError):
        payload = exc.asdict()
        envelope = {
            "ok": False,
            "code": payload["code"],
            "error": type(exc).__name__,
            "message": payload["message"],
            "details": payload["details"] or None,
            "ms": ms,
        }
        if isinstance(exc, InvalidHandle):
            envelope["fatal"] = True
        return envelope
    code = "TIMEOUT" if isinstance(exc, SyncBridgeTimeoutError) else "INTERNAL"
    return {
        "ok": False,
        "code": code,
        "error": type(exc).__name__,
        "message": str(exc) or "internal error",
        "details": None,
        "ms": ms,
    }


# =============================================================================
# Argument decoding
# =============================================================================


def _text(value: Any, name: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        end = raw.find(b"\x00")
        if end >= 0:
            raw = raw[:end]
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidArgument(f"{name} is not valid UTF-8", details={"parameter": name}) from exc
    raise InvalidArgument(f"{name} must be a string", details={"parameter": name})


def _opt_text(value: Any, name: str) -> Optional[str]:
    return None if value is None else _text(value, name)


def _texts(values: Optional[Sequence[Any]], name: str) -> Optional[list]:
    if values is None:
        return None
    if isinstance(values, (str, bytes, bytearray, memoryview)):
        return [_text(values, name)]
    return [_text(v, name) for v in values]


def _string_map(values: Optional[Mapping[Any, Any]], name: str) -> Optional[Dict[str, str]]:
    if values is None:
        return None
    if not isinstance(values, Mapping):
        raise InvalidArgument(f"{name} must be a mapping", details={"parameter": name})
    return {_text(k, name): _text(v, name) for k, v in values.items()}


def _payload(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise InvalidPayload(
        f"payload must be bytes, got {type(value).__name__}",
        details={"type": type(value).__name__},
    )


def _vector(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        if len(raw) % 4:
            raise InvalidArgument("vector bytes must hold little-endian float32 values")
        return np.frombuffer(raw, dtype="<f4")
    return value


# =============================================================================
# API
# =============================================================================


class HandleAPI:
    """
    Synchronous, handle-based facade over the async client.

    Parameters
    ----------
    bridge:
        SyncBridge used to run engine calls. When omitted the API creates
        and owns one, and `close()` shuts it down.
    registry:
        HandleRegistry to store objects in; a fresh one by default.
    timeout:
        Per-call timeout in seconds (None disables it).
    """

    _OPERATIONS = frozenset(
        {
            "connection_create",
            "connection_table_names",
            "connection_create_table",
            "connection_open_table",
            "connection_drop_table",
            "connection_close",
            "table_schema",
            "table_add",
            "table_delete",
            "table_count_rows",
            "table_query",
            "table_vector_search",
            "table_create_index",
            "table_list_indices",
            "table_merge_insert",
            "table_display",
            "table_close",
            "query_where",
            "query_select",
            "query_limit",
            "query_offset",
            "query_full_text_search",
            "query_with_row_id",
            "query_fast_search",
            "query_nearest_to",
            "query_column",
            "query_distance_type",
            "query_nprobes",
            "query_refine_factor",
            "query_bypass_vector_index",
            "query_postfilter",
            "query_execute",
            "query_explain_plan",
            "stream_next",
            "stream_schema",
            "index_btree",
            "index_bitmap",
            "index_label_list",
            "index_fts",
            "index_ivf_pq",
            "index_hnsw_pq",
            "index_hnsw_sq",
            "merge_when_matched_update_all",
            "merge_when_not_matched_insert_all",
            "merge_when_not_matched_by_source_delete",
            "merge_execute",
            "handle_release",
        }
    )

    def __init__(
        self,
        bridge: Optional[SyncBridge] = None,
        registry: Optional[HandleRegistry] = None,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self._owns_bridge = bridge is None
        self._bridge = bridge or SyncBridge(name="vectable_handle_bridge")
        self._registry = registry or HandleRegistry()
        self._timeout = timeout

    @property
    def registry(self) -> HandleRegistry:
        return self._registry

    # ------------------------------------------------------------------ #
    # Plumbing
    # ------------------------------------------------------------------ #

    def _invoke(self, op: str, fn: Callable[[], Any]) -> Dict[str, Any]:
        t0 = time.monotonic()
        try:
            result = fn()
        except InvalidHandle as exc:
            logger.error("%s: %s", op, exc.message)
            return _error_envelope(exc, (time.monotonic() - t0) * 1000.0)
        except Exception as exc:
            logger.debug("%s failed: %s", op, exc)
            return _error_envelope(exc, (time.monotonic() - t0) * 1000.0)
        ms = (time.monotonic() - t0) * 1000.0
        if result is _End:
            return _success_envelope(None, ms, code="END")
        return _success_envelope(result, ms)

    def _run(self, coro) -> Any:
        return self._bridge.run(coro, timeout=self._timeout)

    def _get(self, handle: Any, *kinds: str) -> Any:
        return self._registry.get(handle, *kinds)

    def _put(self, obj: Any) -> int:
        for cls, kind in _KIND_OF:
            if isinstance(obj, cls):
                return self._registry.put(kind, obj)
        raise TypeError(f"no handle kind for {type(obj).__name__}")

    def _query(self, handle: Any) -> Query:
        return self._get(handle, QUERY, VECTOR_QUERY)

    def _vector_query(self, handle: Any) -> VectorQuery:
        return self._get(handle, VECTOR_QUERY)

    # ------------------------------------------------------------------ #
    # Connection
    # ------------------------------------------------------------------ #

    def connection_create(
        self,
        uri: Any,
        region: Any = None,
        options: Optional[Mapping[Any, Any]] = None,
        engine: Any = None,
    ) -> Dict[str, Any]:
        def _create() -> int:
            config = ConnectConfig(
                region=_opt_text(region, "region") or ConnectConfig().region,
                options=_string_map(options, "options") or {},
                engine=_opt_text(engine, "engine"),
            )
            return self._put(self._run(connect(_text(uri, "uri"), config)))

        return self._invoke("connection.create", _create)

    def connection_table_names(self, connection: Any) -> Dict[str, Any]:
        return self._invoke(
            "connection.table_names",
            lambda: self._run(self._get(connection, CONNECTION).table_names()),
        )

    def connection_create_table(
        self,
        connection: Any,
        name: Any,
        data: Any,
        mode: Any = "create",
        storage_options: Optional[Mapping[Any, Any]] = None,
        data_storage_version: Any = None,
        enable_v2_manifest_paths: Optional[bool] = None,
    ) -> Dict[str, Any]:
        def _create() -> int:
            conn: Connection = self._get(connection, CONNECTION)
            table = self._run(
                conn.create_table(
                    _text(name, "name"),
                    _payload(data),
                    _text(mode, "mode"),
                    storage_options=_string_map(storage_options, "storage_options"),
                    data_storage_version=_opt_text(data_storage_version, "data_storage_version"),
                    enable_v2_manifest_paths=enable_v2_manifest_paths,
                )
            )
            return self._put(table)

        return self._invoke("connection.create_table", _create)

    def connection_open_table(
        self,
        connection: Any,
        name: Any,
        storage_options: Optional[Mapping[Any, Any]] = None,
        index_cache_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        def _open() -> int:
            conn: Connection = self._get(connection, CONNECTION)
            table = self._run(
                conn.open_table(
                    _text(name, "name"),
                    storage_options=_string_map(storage_options, "storage_options"),
                    index_cache_size=index_cache_size,
                )
            )
            return self._put(table)

        return self._invoke("connection.open_table", _open)

    def connection_drop_table(self, connection: Any, name: Any) -> Dict[str, Any]:
        return self._invoke(
            "connection.drop_table",
            lambda: self._run(self._get(connection, CONNECTION).drop_table(_text(name, "name"))),
        )

    def connection_close(self, connection: Any) -> Dict[str, Any]:
        return self._invoke("connection.close", lambda: self._get(connection, CONNECTION).close())

    # ------------------------------------------------------------------ #
    # Table
    # ------------------------------------------------------------------ #

    def table_schema(self, table: Any) -> Dict[str, Any]:
        return self._invoke("table.schema", lambda: self._run(self._get(table, TABLE).schema()))

    def table_add(self, table: Any, data: Any, mode: Any = "append") -> Dict[str, Any]:
        return self._invoke(
            "table.add",
            lambda: self._run(self._get(table, TABLE).add(_payload(data), _text(mode, "mode"))),
        )

    def table_delete(self, table: Any, predicate: Any) -> Dict[str, Any]:
        return self._invoke(
            "table.delete",
            lambda: self._run(self._get(table, TABLE).delete(_text(predicate, "predicate"))),
        )

    def table_count_rows(self, table: Any, filter: Any = None) -> Dict[str, Any]:
        return self._invoke(
            "table.count_rows",
            lambda: self._run(self._get(table, TABLE).count_rows(_opt_text(filter, "filter"))),
        )

    def table_query(self, table: Any) -> Dict[str, Any]:
        return self._invoke("table.query", lambda: self._put(self._get(table, TABLE).query()))

    def table_vector_search(self, table: Any, vector: Any) -> Dict[str, Any]:
        return self._invoke(
            "table.vector_search",
            lambda: self._put(self._get(table, TABLE).vector_search(_vector(vector))),
        )

    def table_create_index(self, table: Any, column: Any, index: Any, replace: bool = True) -> Dict[str, Any]:
        def _create() -> None:
            target: Table = self._get(table, TABLE)
            spec: IndexSpec = self._get(index, INDEX)
            self._run(target.create_index(_text(column, "column"), spec, replace=bool(replace)))

        return self._invoke("table.create_index", _create)

    def table_list_indices(self, table: Any) -> Dict[str, Any]:
        return self._invoke("table.list_indices", lambda: self._run(self._get(table, TABLE).list_indices()))

    def table_merge_insert(self, table: Any, on: Any) -> Dict[str, Any]:
        return self._invoke(
            "table.merge_insert",
            lambda: self._put(self._get(table, TABLE).merge_insert(_texts(on, "on"))),
        )

    def table_display(self, table: Any) -> Dict[str, Any]:
        return self._invoke("table.display", lambda: self._get(table, TABLE).display())

    def table_close(self, table: Any) -> Dict[str, Any]:
        return self._invoke("table.close", lambda: self._get(table, TABLE).close())

    # ------------------------------------------------------------------ #
    # Query / VectorQuery (each call returns a new handle)
    # ------------------------------------------------------------------ #

    def query_where(self, query: Any, predicate: Any) -> Dict[str, Any]:
        return self._invoke(
            "query.where",
            lambda: self._put(self._query(query).where(_text(predicate, "predicate"))),
        )

    def query_select(self, query: Any, columns: Any) -> Dict[str, Any]:
        def _select() -> int:
            if isinstance(columns, Mapping):
                selection: Any = _string_map(columns, "columns")
            else:
                selection = _texts(columns, "columns")
            return self._put(self._query(query).select(selection))

        return self._invoke("query.select", _select)

    def query_limit(self, query: Any, limit: int) -> Dict[str, Any]:
        return self._invoke("query.limit", lambda: self._put(self._query(query).limit(limit)))

    def query_offset(self, query: Any, offset: int) -> Dict[str, Any]:
        return self._invoke("query.offset", lambda: self._put(self._query(query).offset(offset)))

    def query_full_text_search(self, query: Any, text: Any, columns: Any = None) -> Dict[str, Any]:
        return self._invoke(
            "query.full_text_search",
            lambda: self._put(
                self._query(query).full_text_search(_text(text, "text"), _texts(columns, "columns"))
            ),
        )

    def query_with_row_id(self, query: Any) -> Dict[str, Any]:
        return self._invoke("query.with_row_id", lambda: self._put(self._query(query).with_row_id()))

    def query_fast_search(self, query: Any) -> Dict[str, Any]:
        return self._invoke("query.fast_search", lambda: self._put(self._query(query).fast_search()))

    def query_nearest_to(self, query: Any, vector: Any) -> Dict[str, Any]:
        return self._invoke(
            "query.nearest_to",
            lambda: self._put(self._query(query).nearest_to(_vector(vector))),
        )

    def query_column(self, query: Any, column: Any) -> Dict[str, Any]:
        return self._invoke(
            "query.column",
            lambda: self._put(self._vector_query(query).column(_text(column, "column"))),
        )

    def query_distance_type(self, query: Any, distance_type: Any) -> Dict[str, Any]:
        return self._invoke(
            "query.distance_type",
            lambda: self._put(self._vector_query(query).distance_type(_text(distance_type, "distance_type"))),
        )

    def query_nprobes(self, query: Any, nprobes: int) -> Dict[str, Any]:
        return self._invoke("query.nprobes", lambda: self._put(self._vector_query(query).nprobes(nprobes)))

    def query_refine_factor(self, query: Any, refine_factor: int) -> Dict[str, Any]:
        return self._invoke(
            "query.refine_factor",
            lambda: self._put(self._vector_query(query).refine_factor(refine_factor)),
        )

    def query_bypass_vector_index(self, query: Any) -> Dict[str, Any]:
        return self._invoke(
            "query.bypass_vector_index",
            lambda: self._put(self._vector_query(query).bypass_vector_index()),
        )

    def query_postfilter(self, query: Any) -> Dict[str, Any]:
        return self._invoke("query.postfilter", lambda: self._put(self._vector_query(query).postfilter()))

    def query_execute(self, query: Any, max_batch_length: Optional[int] = None) -> Dict[str, Any]:
        return self._invoke(
            "query.execute",
            lambda: self._put(self._run(self._query(query).execute(max_batch_length))),
        )

    def query_explain_plan(self, query: Any, verbose: bool = False) -> Dict[str, Any]:
        return self._invoke(
            "query.explain_plan",
            lambda: self._run(self._query(query).explain_plan(bool(verbose))),
        )

    # ------------------------------------------------------------------ #
    # ResultStream
    # ------------------------------------------------------------------ #

    def stream_next(self, stream: Any) -> Dict[str, Any]:
        """Next encoded batch, or code END once the stream is exhausted."""
        def _next() -> Any:
            payload = self._run(self._get(stream, STREAM).next())
            return _End if payload is None else payload

        return self._invoke("stream.next", _next)

    def stream_schema(self, stream: Any) -> Dict[str, Any]:
        return self._invoke("stream.schema", lambda: self._get(stream, STREAM).encoded_schema())

    # ------------------------------------------------------------------ #
    # IndexSpec
    # ------------------------------------------------------------------ #

    def index_btree(self) -> Dict[str, Any]:
        return self._invoke("index.btree", lambda: self._put(IndexSpec.btree()))

    def index_bitmap(self) -> Dict[str, Any]:
        return self._invoke("index.bitmap", lambda: self._put(IndexSpec.bitmap()))

    def index_label_list(self) -> Dict[str, Any]:
        return self._invoke("index.label_list", lambda: self._put(IndexSpec.label_list()))

    def index_fts(self, with_position: Optional[bool] = None) -> Dict[str, Any]:
        return self._invoke("index.fts", lambda: self._put(IndexSpec.fts(with_position)))

    def index_ivf_pq(
        self,
        distance_type: Any = None,
        num_partitions: Optional[int] = None,
        num_sub_vectors: Optional[int] = None,
        max_iterations: Optional[int] = None,
        sample_rate: Optional[int] = None,
    ) -> Dict[str, Any]:
        return self._invoke(
            "index.ivf_pq",
            lambda: self._put(
                IndexSpec.ivf_pq(
                    _opt_text(distance_type, "distance_type"),
                    num_partitions,
                    num_sub_vectors,
                    max_iterations,
                    sample_rate,
                )
            ),
        )

    def index_hnsw_pq(
        self,
        distance_type: Any = None,
        num_partitions: Optional[int] = None,
        num_sub_vectors: Optional[int] = None,
        max_iterations: Optional[int] = None,
        sample_rate: Optional[int] = None,
        m: Optional[int] = None,
        ef_construction: Optional[int] = None,
    ) -> Dict[str, Any]:
        return self._invoke(
            "index.hnsw_pq",
            lambda: self._put(
                IndexSpec.hnsw_pq(
                    _opt_text(distance_type, "distance_type"),
                    num_partitions,
                    num_sub_vectors,
                    max_iterations,
                    sample_rate,
                    m,
                    ef_construction,
                )
            ),
        )

    def index_hnsw_sq(
        self,
        distance_type: Any = None,
        num_partitions: Optional[int] = None,
        max_iterations: Optional[int] = None,
        sample_rate: Optional[int] = None,
        m: Optional[int] = None,
        ef_construction: Optional[int] = None,
    ) -> Dict[str, Any]:
        return self._invoke(
            "index.hnsw_sq",
            lambda: self._put(
                IndexSpec.hnsw_sq(
                    _opt_text(distance_type, "distance_type"),
                    num_partitions,
                    max_iterations,
                    sample_rate,
                    m,
                    ef_construction,
                )
            ),
        )

    # ------------------------------------------------------------------ #
    # MergeInsertSpec
    # ------------------------------------------------------------------ #

    def merge_when_matched_update_all(self, merge: Any, condition: Any = None) -> Dict[str, Any]:
        return self._invoke(
            "merge.when_matched_update_all",
            lambda: self._put(self._get(merge, MERGE).when_matched_update_all(_opt_text(condition, "condition"))),
        )

    def merge_when_not_matched_insert_all(self, merge: Any) -> Dict[str, Any]:
        return self._invoke(
            "merge.when_not_matched_insert_all",
            lambda: self._put(self._get(merge, MERGE).when_not_matched_insert_all()),
        )

    def merge_when_not_matched_by_source_delete(self, merge: Any, filter: Any = None) -> Dict[str, Any]:
        return self._invoke(
            "merge.when_not_matched_by_source_delete",
            lambda: self._put(
                self._get(merge, MERGE).when_not_matched_by_source_delete(_opt_text(filter, "filter"))
            ),
        )

    def merge_execute(self, merge: Any, data: Any) -> Dict[str, Any]:
        return self._invoke(
            "merge.execute",
            lambda: self._run(self._get(merge, MERGE).execute(_payload(data))),
        )

    # ------------------------------------------------------------------ #
    # Lifetime
    # ------------------------------------------------------------------ #

    def _dispose(self, kind: str, obj: Any) -> None:
        if kind in (CONNECTION, TABLE):
            obj.close()
        elif kind == STREAM:
            self._run(obj.aclose())

    def release(self, handle: Any) -> Dict[str, Any]:
        """
        Destroy a handle and release its resource.

        Connections and tables are closed, streams release their cursor.
        Releasing an unknown or already-released handle is a no-op.
        """
        def _release() -> None:
            entry = self._registry.release(handle)
            if entry is not None:
                self._dispose(*entry)

        return self._invoke("handle.release", _release)

    handle_release = release

    def close(self) -> None:
        """Release every live handle and stop an owned bridge."""
        for handle, (kind, obj) in sorted(self._registry.drain().items(), reverse=True):
            try:
                self._dispose(kind, obj)
            except Exception as exc:  # noqa: BLE001
                logger.debug("releasing handle %d (%s) failed: %s", handle, kind, exc)
        if self._owns_bridge:
            self._bridge.shutdown()

    def __enter__(self) -> "HandleAPI":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Envelope dispatch
    # ------------------------------------------------------------------ #

    def handle(self, envelope: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Dispatch `{"op": "<group>.<operation>", "args": {...}}`.

        e.g. {"op": "table.count_rows", "args": {"table": 3, "filter": "id > 2"}}
        """
        t0 = time.monotonic()
        try:
            op = envelope.get("op") if isinstance(envelope, Mapping) else None
            if isinstance(op, (bytes, bytearray, memoryview)):
                op = _text(op, "op")
            if not isinstance(op, str) or "." not in op:
                raise InvalidArgument("missing or invalid 'op'")
            name = op.replace(".", "_")
            if name not in self._OPERATIONS:
                raise InvalidArgument(f"unknown operation '{op}'", details={"op": op})
            args = envelope.get("args") or {}
            if not isinstance(args, Mapping):
                raise InvalidArgument("'args' must be an object", details={"op": op})
            method = getattr(self, name)
            try:
                inspect.signature(method).bind(**args)
            except TypeError as exc:
                raise InvalidArgument(f"bad arguments for '{op}': {exc}", details={"op": op}) from exc
        except Exception as exc:
            return _error_envelope(exc, (time.monotonic() - t0) * 1000.0)
        return method(**args)


__all__ = [
    "CONNECTION",
    "TABLE",
    "QUERY",
    "VECTOR_QUERY",
    "STREAM",
    "INDEX",
    "MERGE",
    "HandleRegistry",
    "HandleAPI",
]
