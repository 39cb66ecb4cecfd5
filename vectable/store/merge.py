# vectable/store/merge.py
# SPDX-License-Identifier: Apache-2.0
"""
MergeInsertSpec: reusable upsert template.

Three independent clauses, each optional:

    when_matched_update_all(condition=None)
    when_not_matched_insert_all()
    when_not_matched_by_source_delete(filter=None)

Each call returns a new spec with that clause set (a later call for the
same clause replaces the earlier one). Unlike IndexSpec the template is
not consumed by `execute()`; it can be run against any number of
batches. The engine commits each execution as one atomic operation.
"""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Optional, Sequence, Union

from vectable.store.engine import MergeInsertRequest, MergeResult
from vectable.store.errors import InvalidArgument

if TYPE_CHECKING:
    from vectable.store.table import Table, TableData


def _condition(name: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{name} must be a non-empty string when provided")
    return value


class MergeInsertSpec:
    __slots__ = ("_table", "_request")

    def __init__(
        self,
        table: "Table",
        on: Union[str, Sequence[str], None] = None,
        *,
        request: Optional[MergeInsertRequest] = None,
    ) -> None:
        self._table = table
        if request is None:
            keys = (on,) if isinstance(on, str) else tuple(on or ())
            if not keys or not all(isinstance(k, str) and k for k in keys):
                raise InvalidArgument("merge_insert requires at least one key column")
            request = MergeInsertRequest(on=keys)
        self._request = request

    @property
    def request(self) -> MergeInsertRequest:
        return self._request

    def _with(self, **changes) -> "MergeInsertSpec":
        return MergeInsertSpec(self._table, request=replace(self._request, **changes))

    def when_matched_update_all(self, condition: Optional[str] = None) -> "MergeInsertSpec":
        """Update matched target rows; `condition` may reference `target.` and `source.` columns."""
        return self._with(update_matched=True, matched_condition=_condition("condition", condition))

    def when_not_matched_insert_all(self) -> "MergeInsertSpec":
        return self._with(insert_unmatched=True)

    def when_not_matched_by_source_delete(self, filter: Optional[str] = None) -> "MergeInsertSpec":
        """Delete target rows with no source match, optionally only those matching `filter`."""
        return self._with(delete_unmatched_by_source=True, delete_condition=_condition("filter", filter))

    async def execute(self, data: "TableData") -> MergeResult:
        if not self._request.has_clauses:
            raise InvalidArgument(
                "merge_insert has no clauses; call one of the when_* methods first",
                details={"table": self._table.name, "operation": "merge_insert"},
            )
        return await self._table._merge(self._request, data)

    def __repr__(self) -> str:
        r = self._request
        clauses = []
        if r.update_matched:
            clauses.append("update_all" + (f"({r.matched_condition})" if r.matched_condition else ""))
        if r.insert_unmatched:
            clauses.append("insert_all")
        if r.delete_unmatched_by_source:
            clauses.append("delete_by_source" + (f"({r.delete_condition})" if r.delete_condition else ""))
        return f"MergeInsertSpec(table={self._table.name!r}, on={list(r.on)}, clauses={clauses})"


__all__ = ["MergeInsertSpec"]
