# vectable/store/connection.py
# SPDX-License-Identifier: Apache-2.0
"""
Connection: a session against one logical store.

    conn = await connect("memory://demo")
    table = await conn.create_table("items", data, mode="overwrite")
    ...
    conn.close()

`connect()` may be called any number of times; each call returns an
independent Connection. A Connection creates and opens Tables but does not
own them afterwards: closing a Connection blocks its own new operations
and leaves every Table it already returned usable until that Table is
closed itself.
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Union

from vectable.core.metrics import MetricsSink, NoopMetrics
from vectable.store.codec import BatchCodec, default_codec
from vectable.store.config import ConnectConfig
from vectable.store.engine import (
    CreateMode,
    StorageEngine,
    parse_data_storage_version,
    resolve_engine_factory,
)
from vectable.store.errors import (
    ClosedResource,
    ConnectFailed,
    InvalidArgument,
    InvalidPayload,
)
from vectable.store.table import Instrumented, Table, TableData, coerce_data

# Importing the reference engine registers the memory:// scheme.
from vectable.store import memory_engine  # noqa: F401

logger = logging.getLogger(__name__)


def _name(value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidArgument("table name must be a non-empty string")
    return value


def _storage_options(value: Optional[Mapping[str, str]]) -> Optional[dict]:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise InvalidArgument("storage_options must be a mapping of strings")
    return {str(k): str(v) for k, v in value.items()}


class Connection(Instrumented):
    """Handle to a logical store; factory for Tables."""

    _component = "connection"

    def __init__(
        self,
        uri: str,
        engine: StorageEngine,
        config: ConnectConfig,
        *,
        metrics: Optional[MetricsSink] = None,
        codec: BatchCodec = default_codec,
    ) -> None:
        self._uri = uri
        self._engine: Optional[StorageEngine] = engine
        self._config = config
        self._metrics = metrics or NoopMetrics()
        self._codec = codec

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def region(self) -> str:
        return self._config.region

    @property
    def config(self) -> ConnectConfig:
        return self._config

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def _engine_ref(self, operation: str) -> StorageEngine:
        engine = self._engine
        if engine is None:
            raise ClosedResource(
                "Connection is closed",
                details={"operation": operation, "uri": self._uri},
            )
        return engine

    def _table(self, inner) -> Table:
        return Table(inner, metrics=self._metrics, codec=self._codec)

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    async def table_names(self) -> List[str]:
        async def _names() -> List[str]:
            return sorted(await self._engine_ref("table_names").table_names())

        return await self._run_op("table_names", _names, uri=self._uri)

    async def create_table(
        self,
        name: str,
        data: TableData,
        mode: Union[str, CreateMode] = CreateMode.CREATE,
        *,
        storage_options: Optional[Mapping[str, str]] = None,
        data_storage_version: Optional[str] = None,
        enable_v2_manifest_paths: Optional[bool] = None,
    ) -> Table:
        """
        Create a table from encoded batches or pyarrow data.

        mode:
            "create"    fail with TableExists if the name is taken
            "overwrite" replace an existing table
            "exist_ok"  return the existing table untouched
        """
        async def _create():
            engine = self._engine_ref("create_table")
            create_mode = CreateMode.parse(mode)
            table = coerce_data(data, self._codec)
            if table is None:
                raise InvalidPayload("create_table needs at least one batch or a schema")
            return await engine.create_table(
                _name(name),
                table,
                mode=create_mode,
                storage_options=_storage_options(storage_options),
                data_storage_version=parse_data_storage_version(data_storage_version),
                enable_v2_manifest_paths=enable_v2_manifest_paths,
            )

        inner = await self._run_op("create_table", _create, uri=self._uri, table=name)
        logger.debug("Connection %s: created table %s (mode=%s)", self._uri, name, mode)
        return self._table(inner)

    async def open_table(
        self,
        name: str,
        *,
        storage_options: Optional[Mapping[str, str]] = None,
        index_cache_size: Optional[int] = None,
    ) -> Table:
        """
        Open an existing table.

        `index_cache_size` is a performance hint for the engine's index cache.
        """
        if index_cache_size is not None and (
            isinstance(index_cache_size, bool) or not isinstance(index_cache_size, int) or index_cache_size < 0
        ):
            raise InvalidArgument("index_cache_size must be a non-negative integer")

        async def _open():
            return await self._engine_ref("open_table").open_table(
                _name(name),
                storage_options=_storage_options(storage_options),
                index_cache_size=index_cache_size,
            )

        inner = await self._run_op("open_table", _open, uri=self._uri, table=name)
        return self._table(inner)

    async def drop_table(self, name: str) -> None:
        async def _drop() -> None:
            await self._engine_ref("drop_table").drop_table(_name(name))

        await self._run_op("drop_table", _drop, uri=self._uri, table=name)

    def close(self) -> None:
        """Release the session. Idempotent and irreversible."""
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            engine.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Connection %s: engine close failed: %s", self._uri, exc)
        logger.debug("Connection %s closed", self._uri)

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"Connection(uri={self._uri!r}, region={self.region!r}, {state})"


async def connect(
    uri: str,
    config: Optional[ConnectConfig] = None,
    *,
    metrics: Optional[MetricsSink] = None,
    codec: BatchCodec = default_codec,
) -> Connection:
    """
    Establish a session against `uri`.

    The engine is chosen by `config.engine` when set, otherwise by the URI
    scheme (`memory://` is built in).

    Raises:
        ConnectFailed: malformed URI, unknown scheme or engine failure.
    """
    config = config or ConnectConfig()
    if not isinstance(uri, str) or not uri:
        raise ConnectFailed("uri must be a non-empty string")
    factory = resolve_engine_factory(uri, config.engine)
    try:
        engine = await factory(uri, config)
    except ConnectFailed:
        raise
    except Exception as exc:
        raise ConnectFailed(
            f"Failed to connect to {uri}: {exc}",
            details={"uri": uri, "cause": type(exc).__name__},
        ) from exc
    logger.debug("Connected to %s (region=%s)", uri, config.region)
    return Connection(uri, engine, config, metrics=metrics, codec=codec)


__all__ = ["Connection", "connect"]
