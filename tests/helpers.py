# SPDX-License-Identifier: Apache-2.0
"""
Sample data for the vectable tests.

    id  category  text                          vector (dim 4)
    0   a         "the quick brown fox"         [0, 0, 0, 0]
    1   b         "a lazy dog"                  [1, 0, 0, 0]
    ...

`vector[i] = [i, 0, 0, 0]`, so the l2 distance from `[0, 0, 0, 0]` grows
with the id and nearest-neighbor order is fully predictable.
"""

from __future__ import annotations

from typing import List, Optional

import pyarrow as pa

from vectable.store.codec import default_codec

DIM = 4

TEXTS = [
    "the quick brown fox",
    "a lazy dog",
    "quick thinking",
    "brown bread and brown rice",
    "nothing to see here",
]

VECTOR_TYPE = pa.list_(pa.float32(), DIM)


def make_schema() -> pa.Schema:
    return pa.schema(
        [
            pa.field("id", pa.int64()),
            pa.field("category", pa.string()),
            pa.field("text", pa.string()),
            pa.field("vector", VECTOR_TYPE),
        ]
    )


def make_table(n: int = 10, *, start: int = 0, category: Optional[str] = None) -> pa.Table:
    """n rows with ids start..start+n-1; categories alternate a/b unless fixed."""
    ids = list(range(start, start + n))
    return pa.table(
        {
            "id": pa.array(ids, type=pa.int64()),
            "category": pa.array([category or ("a" if i % 2 == 0 else "b") for i in ids], type=pa.string()),
            "text": pa.array([TEXTS[i % len(TEXTS)] for i in ids], type=pa.string()),
            "vector": pa.array([[float(i), 0.0, 0.0, 0.0] for i in ids], type=VECTOR_TYPE),
        },
        schema=make_schema(),
    )


def encode(table: pa.Table) -> bytes:
    return default_codec.encode_table(table)


def ids_of(table: pa.Table) -> List[int]:
    return table.column("id").to_pylist()
