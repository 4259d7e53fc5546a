"""SQLAlchemy models for mcplink."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ServerStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


def _new_id() -> str:
    return str(uuid.uuid4())


class ServerRecord(Base):
    __tablename__ = "tool_servers"
    __table_args__ = (
        # At most one row may carry active = true.
        Index(
            "uq_tool_servers_single_active",
            "active",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    url: Mapped[str] = mapped_column(String(512), nullable=False)
    encrypted_credential: Mapped[str] = mapped_column(Text, nullable=False, default="")

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=ServerStatus.DISCONNECTED.value)
    status_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    capability_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_tested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def has_credential(self) -> bool:
        return bool(self.encrypted_credential)
