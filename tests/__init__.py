# SPDX-License-Identifier: Apache-2.0
"""
vectable tests

Unit and integration tests for the synchronous bridges (tests/core) and the
table-store client against the in-process memory:// engine (tests/store).
"""
