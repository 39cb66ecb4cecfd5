# vectable/core/metrics.py
# SPDX-License-Identifier: Apache-2.0

"""
Metrics interface (low-cardinality, no row data).

Table operations report one observation per call through a MetricsSink.
Sinks must never raise into the caller; the recording side additionally
guards every call so a faulty sink cannot break an operation.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol


class MetricsSink(Protocol):
    """Protocol for metrics collection implementations."""

    def observe(
        self,
        *,
        component: str,
        op: str,
        ms: float,
        ok: bool,
        code: str = "OK",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Record operation timing and status."""
        ...

    def counter(
        self,
        *,
        component: str,
        name: str,
        value: int = 1,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Increment a counter metric."""
        ...


class NoopMetrics:
    """No-operation metrics sink for testing or when metrics are disabled."""
    def observe(self, **_: Any) -> None: ...
    def counter(self, **_: Any) -> None: ...


__all__ = ["MetricsSink", "NoopMetrics"]
