# vectable/core/error_context.py
# SPDX-License-Identifier: Apache-2.0

"""
Error context utilities for the table-store client.

Exceptions raised while talking to a storage engine travel through several
layers (engine, table, query, stream, handle boundary). Each layer knows
something useful for diagnosis: the operation name, the table name, the
predicate or the handle involved. This module lets every layer contribute
that knowledge without changing the exception's type or message.

The attached context is stored as exception attributes:

- `__vectable_context__` (canonical, always present once attached)
- `__<component>_context__` (same mapping, named after the component that
  attached it first, e.g. `__table_context__`, `__stream_context__`)

Typical usage
-------------

    from vectable.core.error_context import attach_context

    try:
        await inner.delete(predicate)
    except Exception as exc:
        attach_context(exc, "table", operation="delete", table=name)
        raise

and later, in a handler:

    context = get_context(exc)
    logger.error("delete failed on %s", context.get("table"))

Design notes
------------
* Lightweight: plain attribute assignment, no serialization.
* Non-invasive: message, type and traceback are untouched.
* Safe: attachment failures are logged at DEBUG and swallowed; they never
  replace the original exception.
* Composable: repeated calls merge into the existing mapping. The
  `component` key keeps the first value it was given.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping, Optional

logger = logging.getLogger(__name__)

_CANONICAL_ATTR = "__vectable_context__"


def attach_context(
    exc: BaseException,
    component: str,
    **context: Any,
) -> None:
    """
    Attach debugging context to an exception.

    Parameters
    ----------
    exc:
        The exception to enrich. Any BaseException works.

    component:
        Origin of this context ("table", "connection", "stream", "bridge",
        "handles", ...). Used as a context key and to build the
        component-specific attribute name.

    **context:
        Arbitrary keyword arguments. Common keys are `operation`, `table`,
        `uri`, `predicate` and `handle`. Keep values small and free of row
        data.
    """
    try:
        merged: MutableMapping[str, Any] = {}

        if hasattr(exc, _CANONICAL_ATTR):
            try:
                existing = getattr(exc, _CANONICAL_ATTR)
                if isinstance(existing, Mapping):
                    merged.update(existing)
            except Exception as merge_error:  # noqa: BLE001
                logger.debug(
                    "Failed to merge existing %s: %s",
                    _CANONICAL_ATTR,
                    merge_error,
                    extra={"component": component},
                )

        merged.setdefault("component", component)
        merged.update(context)

        setattr(exc, _CANONICAL_ATTR, merged)
        setattr(exc, f"__{component}_context__", merged)

    except Exception as attachment_error:  # noqa: BLE001
        logger.debug(
            "Failed to attach error context to %s: %s",
            type(exc).__name__,
            attachment_error,
            extra={"component": component},
        )


def get_context(
    exc: BaseException,
    *,
    component: Optional[str] = None,
) -> Mapping[str, Any]:
    """
    Retrieve attached context from an exception.

    If `component` is given, its specific attribute is tried first before
    falling back to the canonical `__vectable_context__`. Returns an empty
    dict when nothing is attached.
    """
    try:
        if component:
            ctx = getattr(exc, f"__{component}_context__", None)
            if isinstance(ctx, Mapping):
                return ctx

        ctx = getattr(exc, _CANONICAL_ATTR, None)
        if isinstance(ctx, Mapping):
            return ctx

    except Exception as retrieval_error:  # noqa: BLE001
        logger.debug(
            "Failed to retrieve error context from %s: %s",
            type(exc).__name__,
            retrieval_error,
        )

    return {}


def has_context(
    exc: BaseException,
    *,
    component: Optional[str] = None,
) -> bool:
    """Return True if a non-empty context is attached."""
    return len(get_context(exc, component=component)) > 0


def clear_context(
    exc: BaseException,
    *,
    component: Optional[str] = None,
) -> None:
    """
    Remove attached context from an exception.

    With `component`, only that component's attribute is removed along with
    the canonical one. Without it, every attribute following the
    `__<name>_context__` convention is removed.
    """
    names = [_CANONICAL_ATTR]
    if component:
        names.append(f"__{component}_context__")
    else:
        names.extend(
            attr
            for attr in vars(exc)
            if attr.startswith("__") and attr.endswith("_context__")
        )

    for attr in names:
        if not hasattr(exc, attr):
            continue
        try:
            delattr(exc, attr)
        except Exception as clear_error:  # noqa: BLE001
            logger.debug(
                "Failed to delete %s from %s: %s",
                attr,
                type(exc).__name__,
                clear_error,
            )


__all__ = [
    "attach_context",
    "get_context",
    "has_context",
    "clear_context",
]
