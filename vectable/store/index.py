# vectable/store/index.py
# SPDX-License-Identifier: Apache-2.0
"""
IndexSpec: one-shot description of an index build.

An IndexSpec holds exactly one IndexConfig variant in a slot guarded by a
lock. `consume()` takes the config out of the slot atomically, so of any
number of concurrent submissions exactly one proceeds and every other one
fails with AlreadyConsumed. The IndexSpec is inert afterwards.

Variants
--------
Scalar:  btree, bitmap, label_list, fts(with_position)
Vector:  ivf_pq, hnsw_pq, hnsw_sq

Each constructor validates its own parameters before any engine call;
an unknown distance metric or a non-positive count fails with
InvalidArgument.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import ClassVar, Optional, Tuple

from vectable.store.errors import AlreadyConsumed, InvalidArgument

logger = logging.getLogger(__name__)

DISTANCE_TYPES: Tuple[str, ...] = ("l2", "cosine", "dot")


def parse_distance_type(value: str) -> str:
    """Normalize a distance metric name (case-insensitive)."""
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in DISTANCE_TYPES:
            return normalized
    raise InvalidArgument(
        f"Invalid distance type '{value}'. Must be one of l2, cosine, or dot",
        details={"distance_type": str(value), "allowed": list(DISTANCE_TYPES)},
    )


def _positive(name: str, value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidArgument(
            f"{name} must be a positive integer, got {value!r}",
            details={"parameter": name},
        )
    return value


# =============================================================================
# Index configurations
# =============================================================================


@dataclass(frozen=True)
class IndexConfig:
    index_type: ClassVar[str] = "index"
    is_vector: ClassVar[bool] = False


@dataclass(frozen=True)
class BTreeConfig(IndexConfig):
    index_type: ClassVar[str] = "btree"


@dataclass(frozen=True)
class BitmapConfig(IndexConfig):
    index_type: ClassVar[str] = "bitmap"


@dataclass(frozen=True)
class LabelListConfig(IndexConfig):
    index_type: ClassVar[str] = "label_list"


@dataclass(frozen=True)
class FtsConfig(IndexConfig):
    index_type: ClassVar[str] = "fts"

    with_position: bool = True


@dataclass(frozen=True)
class IvfPqConfig(IndexConfig):
    index_type: ClassVar[str] = "ivf_pq"
    is_vector: ClassVar[bool] = True

    distance_type: str = "l2"
    num_partitions: Optional[int] = None
    num_sub_vectors: Optional[int] = None
    max_iterations: Optional[int] = None
    sample_rate: Optional[int] = None


@dataclass(frozen=True)
class HnswPqConfig(IvfPqConfig):
    index_type: ClassVar[str] = "ivf_hnsw_pq"

    m: Optional[int] = None
    ef_construction: Optional[int] = None


@dataclass(frozen=True)
class HnswSqConfig(IndexConfig):
    index_type: ClassVar[str] = "ivf_hnsw_sq"
    is_vector: ClassVar[bool] = True

    distance_type: str = "l2"
    num_partitions: Optional[int] = None
    max_iterations: Optional[int] = None
    sample_rate: Optional[int] = None
    m: Optional[int] = None
    ef_construction: Optional[int] = None


# =============================================================================
# IndexSpec
# =============================================================================


class IndexSpec:
    """
    One-shot holder of an IndexConfig.

    Build with the classmethod constructors, submit with
    `Table.create_index(column, spec)`.
    """

    __slots__ = ("_lock", "_config", "_index_type")

    def __init__(self, config: IndexConfig) -> None:
        if not isinstance(config, IndexConfig):
            raise InvalidArgument(
                f"IndexSpec requires an IndexConfig, got {type(config).__name__}"
            )
        self._lock = threading.Lock()
        self._config: Optional[IndexConfig] = config
        self._index_type = config.index_type

    @classmethod
    def btree(cls) -> "IndexSpec":
        return cls(BTreeConfig())

    @classmethod
    def bitmap(cls) -> "IndexSpec":
        return cls(BitmapConfig())

    @classmethod
    def label_list(cls) -> "IndexSpec":
        return cls(LabelListConfig())

    @classmethod
    def fts(cls, with_position: Optional[bool] = None) -> "IndexSpec":
        if with_position is None:
            return cls(FtsConfig())
        return cls(FtsConfig(with_position=bool(with_position)))

    @classmethod
    def ivf_pq(
        cls,
        distance_type: Optional[str] = None,
        num_partitions: Optional[int] = None,
        num_sub_vectors: Optional[int] = None,
        max_iterations: Optional[int] = None,
        sample_rate: Optional[int] = None,
    ) -> "IndexSpec":
        return cls(
            IvfPqConfig(
                distance_type=parse_distance_type(distance_type) if distance_type is not None else "l2",
                num_partitions=_positive("num_partitions", num_partitions),
                num_sub_vectors=_positive("num_sub_vectors", num_sub_vectors),
                max_iterations=_positive("max_iterations", max_iterations),
                sample_rate=_positive("sample_rate", sample_rate),
            )
        )

    @classmethod
    def hnsw_pq(
        cls,
        distance_type: Optional[str] = None,
        num_partitions: Optional[int] = None,
        num_sub_vectors: Optional[int] = None,
        max_iterations: Optional[int] = None,
        sample_rate: Optional[int] = None,
        m: Optional[int] = None,
        ef_construction: Optional[int] = None,
    ) -> "IndexSpec":
        return cls(
            HnswPqConfig(
                distance_type=parse_distance_type(distance_type) if distance_type is not None else "l2",
                num_partitions=_positive("num_partitions", num_partitions),
                num_sub_vectors=_positive("num_sub_vectors", num_sub_vectors),
                max_iterations=_positive("max_iterations", max_iterations),
                sample_rate=_positive("sample_rate", sample_rate),
                m=_positive("m", m),
                ef_construction=_positive("ef_construction", ef_construction),
            )
        )

    @classmethod
    def hnsw_sq(
        cls,
        distance_type: Optional[str] = None,
        num_partitions: Optional[int] = None,
        max_iterations: Optional[int] = None,
        sample_rate: Optional[int] = None,
        m: Optional[int] = None,
        ef_construction: Optional[int] = None,
    ) -> "IndexSpec":
        return cls(
            HnswSqConfig(
                distance_type=parse_distance_type(distance_type) if distance_type is not None else "l2",
                num_partitions=_positive("num_partitions", num_partitions),
                max_iterations=_positive("max_iterations", max_iterations),
                sample_rate=_positive("sample_rate", sample_rate),
                m=_positive("m", m),
                ef_construction=_positive("ef_construction", ef_construction),
            )
        )

    @property
    def index_type(self) -> str:
        return self._index_type

    @property
    def consumed(self) -> bool:
        with self._lock:
            return self._config is None

    def consume(self) -> IndexConfig:
        """
        Take the config out of this spec. Succeeds exactly once.

        Raises:
            AlreadyConsumed: if the config was already taken.
        """
        with self._lock:
            config, self._config = self._config, None
        if config is None:
            raise AlreadyConsumed(
                "Attempt to use an index more than once",
                details={"index_type": self._index_type},
            )
        logger.debug("IndexSpec consumed: %s", self._index_type)
        return config

    def __repr__(self) -> str:
        state = "consumed" if self.consumed else "pending"
        return f"IndexSpec({self._index_type}, {state})"


__all__ = [
    "DISTANCE_TYPES",
    "parse_distance_type",
    "IndexConfig",
    "BTreeConfig",
    "BitmapConfig",
    "LabelListConfig",
    "FtsConfig",
    "IvfPqConfig",
    "HnswPqConfig",
    "HnswSqConfig",
    "IndexSpec",
]
