# SPDX-License-Identifier: Apache-2.0
"""
Error context attachment on exceptions.
"""

from vectable.core.error_context import attach_context, clear_context, get_context, has_context


def test_attach_sets_canonical_and_component_attributes():
    exc = RuntimeError("boom")
    attach_context(exc, "table", operation="add", table="items")

    assert exc.__vectable_context__ == {"component": "table", "operation": "add", "table": "items"}
    assert exc.__table_context__ is exc.__vectable_context__
    assert str(exc) == "boom"


def test_repeated_attach_merges_and_keeps_first_component():
    exc = ValueError("bad")
    attach_context(exc, "table", operation="delete")
    attach_context(exc, "handles", handle=7)

    ctx = get_context(exc)
    assert ctx["component"] == "table"
    assert ctx["operation"] == "delete"
    assert ctx["handle"] == 7
    assert get_context(exc, component="handles")["handle"] == 7


def test_get_context_without_attachment_is_empty():
    exc = KeyError("x")
    assert get_context(exc) == {}
    assert not has_context(exc)


def test_attach_on_exception_with_slots_does_not_raise():
    class Frozen(Exception):
        def __setattr__(self, name, value):
            raise AttributeError("read-only")

    exc = Frozen("nope")
    attach_context(exc, "stream", operation="stream_next")

    assert get_context(exc) == {}


def test_clear_context_removes_all_context_attributes():
    exc = RuntimeError("boom")
    attach_context(exc, "table", operation="add")
    attach_context(exc, "stream", operation="stream_next")

    clear_context(exc)

    assert not has_context(exc)
    assert not hasattr(exc, "__table_context__")
    assert not hasattr(exc, "__stream_context__")


def test_clear_context_for_one_component():
    exc = RuntimeError("boom")
    attach_context(exc, "table", operation="add")

    clear_context(exc, component="table")

    assert not has_context(exc, component="table")
