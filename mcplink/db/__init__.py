"""Database package for mcplink."""

from mcplink.db.database import (  # noqa: F401
    get_db,
    get_engine,
    get_session_factory,
    init_db,
    reset_engine,
)
