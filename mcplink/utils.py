"""
Shared utilities for mcplink.

This module provides:
- Logging setup for the CLI and long-running supervisor
- Connection context (which tool server a log line belongs to)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(context)s%(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# =============================================================================
# Connection Context
# =============================================================================

_server_name: ContextVar[Optional[str]] = ContextVar("server_name", default=None)


def get_server_name() -> Optional[str]:
    """Get the name of the tool server the current thread is working on."""
    return _server_name.get()


@contextmanager
def connection_context(server_name: Optional[str]) -> Iterator[None]:
    """
    Tag log records emitted inside the block with a tool server name.

    Args:
        server_name: Human-readable server name (ignored when empty)
    """
    token = _server_name.set(server_name or None)
    try:
        yield
    finally:
        _server_name.reset(token)


class ContextFilter(logging.Filter):
    """
    Logging filter that adds the connection context to log records.

    Adds:
        - context: "[server-name] " while a connection is being worked on
    """

    def filter(self, record: logging.LogRecord) -> bool:
        server_name = get_server_name()
        record.context = f"[{server_name}] " if server_name else ""
        return True


# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str = "info") -> None:
    """
    Configure root logging with the connection context filter.

    Call this once at process startup.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )

    context_filter = ContextFilter()
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in logging.root.handlers:
        handler.addFilter(context_filter)
        handler.setFormatter(formatter)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
