# vectable/store/errors.py
# SPDX-License-Identifier: Apache-2.0
"""
Normalized errors for the table-store client.

Every failure surfaced by Connection, Table, Query, ResultStream, IndexSpec
and MergeInsertSpec is a TableStoreError subclass carrying a machine-readable
`code` (UPPER_SNAKE_CASE) and a shallow, JSON-friendly `details` mapping.
Engine failures that are not already part of this taxonomy are wrapped into
the kind that matches the failing operation, with the original exception
chained as `__cause__`.

"Nothing happened" outcomes are not errors: deleting zero rows succeeds,
and an exhausted stream returns None rather than raising.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional


class TableStoreError(Exception):
    """
    Base exception for all table-store errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code
        details: Additional context (operation, table, predicate, ...)
    """

    default_code = "TABLE_STORE_ERROR"

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: Dict[str, Any] = dict(details or {})

    def asdict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization and logging."""
        return {
            "message": self.message,
            "code": self.code,
            "details": {k: self.details[k] for k in sorted(self.details)},
        }


class ClosedResource(TableStoreError):
    """Operation on a Connection or Table after it was closed."""
    default_code = "CLOSED_RESOURCE"


class NotFound(TableStoreError):
    """Open or query against a table that does not exist."""
    default_code = "NOT_FOUND"


class InvalidArgument(TableStoreError):
    """Malformed mode string, unknown distance metric, bad index parameters, ..."""
    default_code = "INVALID_ARGUMENT"


class TableExists(InvalidArgument):
    """create_table(mode="create") against a name that already exists."""
    default_code = "TABLE_EXISTS"


class CodecError(TableStoreError):
    """Batch bytes could not be encoded or decoded."""
    default_code = "CODEC_ERROR"


class InvalidPayload(CodecError):
    """A payload handed to a table operation failed to decode."""
    default_code = "INVALID_PAYLOAD"


class InvalidPredicate(TableStoreError):
    """Malformed filter or predicate expression."""
    default_code = "INVALID_PREDICATE"


class AlreadyConsumed(TableStoreError):
    """A one-shot IndexSpec was submitted a second time."""
    default_code = "ALREADY_CONSUMED"


class ExecutionFailed(TableStoreError):
    """Engine-side failure while executing a query, plan or mutation."""
    default_code = "EXECUTION_FAILED"


class IndexBuildFailed(TableStoreError):
    """Engine-side failure while building an index."""
    default_code = "INDEX_BUILD_FAILED"


class StreamError(TableStoreError):
    """Failure while pulling the next batch from a ResultStream."""
    default_code = "STREAM_ERROR"


class ConnectFailed(TableStoreError):
    """Session establishment failed."""
    default_code = "CONNECT_FAILED"


class InvalidHandle(TableStoreError):
    """
    A handle passed across the handle boundary is unknown, released, or of
    the wrong kind. This is a programming error on the host side.
    """
    default_code = "INVALID_HANDLE"


__all__ = [
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
]
