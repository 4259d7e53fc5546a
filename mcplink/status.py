"""Runtime connection status (in memory only, rebuilt on restart)."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    ERROR = "error"
    DISABLED = "disabled"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConnectionStatus:
    server_id: str
    server_name: str
    endpoint_url: str
    enabled: bool = True
    state: ConnectionState = ConnectionState.CONNECTING
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_error_message: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    capability_names: List[str] = field(default_factory=list)
    # Bumped by disable/enable/manual retry so in-flight attempts can tell they are stale.
    generation: int = field(default=0, repr=False, compare=False)

    @property
    def capability_count(self) -> int:
        return len(self.capability_names)

    def mark_connecting(self) -> None:
        self.state = ConnectionState.CONNECTING
        self.next_retry_at = None

    def mark_success(self, capability_names: List[str]) -> None:
        self.state = ConnectionState.ACTIVE
        self.last_success_at = _now()
        self.last_error_message = None
        self.retry_count = 0
        self.next_retry_at = None
        self.capability_names = list(capability_names)

    def mark_failure(self, error_message: str) -> None:
        self.state = ConnectionState.ERROR
        self.last_failure_at = _now()
        self.last_error_message = error_message
        self.capability_names = []

    def mark_disabled(self) -> None:
        self.state = ConnectionState.DISABLED
        self.enabled = False
        self.next_retry_at = None
        self.capability_names = []

    def snapshot(self) -> "ConnectionStatus":
        return dataclasses.replace(self, capability_names=list(self.capability_names))

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "server_id": self.server_id,
            "server_name": self.server_name,
            "endpoint_url": self.endpoint_url,
            "enabled": self.enabled,
            "state": self.state.value,
            "last_success_at": iso(self.last_success_at),
            "last_failure_at": iso(self.last_failure_at),
            "last_error_message": self.last_error_message,
            "retry_count": self.retry_count,
            "next_retry_at": iso(self.next_retry_at),
            "capability_names": list(self.capability_names),
            "capability_count": self.capability_count,
        }
