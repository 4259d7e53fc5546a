"""
Unit tests for mcplink.utils module.
"""

from __future__ import annotations

import logging

from mcplink.utils import ContextFilter, connection_context, get_server_name


def _record() -> logging.LogRecord:
    return logging.LogRecord("test", logging.INFO, __file__, 1, "hello", None, None)


class TestConnectionContext:
    """Tests for the connection context variable."""

    def test_default_is_none(self):
        assert get_server_name() is None

    def test_set_inside_block(self):
        with connection_context("alpha"):
            assert get_server_name() == "alpha"
        assert get_server_name() is None

    def test_nested_blocks_restore(self):
        with connection_context("alpha"):
            with connection_context("beta"):
                assert get_server_name() == "beta"
            assert get_server_name() == "alpha"

    def test_empty_name_is_none(self):
        with connection_context(""):
            assert get_server_name() is None


class TestContextFilter:
    """Tests for ContextFilter."""

    def test_adds_prefix_inside_context(self):
        record = _record()
        with connection_context("alpha"):
            assert ContextFilter().filter(record) is True
        assert record.context == "[alpha] "

    def test_empty_prefix_outside_context(self):
        record = _record()
        ContextFilter().filter(record)
        assert record.context == ""
