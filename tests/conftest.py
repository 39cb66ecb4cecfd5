# SPDX-License-Identifier: Apache-2.0
"""
Shared fixtures for the vectable test suite.

Every test gets its own `memory://` database (a unique URI), so tables
created by one test are never visible to another. Sample data lives in
tests/helpers.py.
"""

from __future__ import annotations

import uuid

import pytest
import pytest_asyncio

from vectable.store.connection import connect
from vectable.store.memory_engine import reset_memory_databases

from tests.helpers import encode, make_table


@pytest.fixture(autouse=True)
def _isolate_memory_databases():
    yield
    reset_memory_databases()


@pytest.fixture
def db_uri() -> str:
    return f"memory://test-{uuid.uuid4().hex}"


@pytest_asyncio.fixture
async def conn(db_uri):
    connection = await connect(db_uri)
    yield connection
    connection.close()


@pytest_asyncio.fixture
async def table(conn):
    """`items` table with 10 sample rows (see tests/helpers.py)."""
    tbl = await conn.create_table("items", encode(make_table(10)))
    yield tbl
    tbl.close()
