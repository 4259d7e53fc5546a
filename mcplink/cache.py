"""
Capability Cache.

Serves the orchestrator the capability list of the live connection(s).
Non-empty results live for the full TTL; empty results expire quickly so a
server that finishes connecting shortly after boot shows up almost at once.

Readers get a copy of an immutable snapshot; only one thread refreshes at a
time. get_capabilities() never raises.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from mcplink.supervisor import ConnectionSupervisor
from mcplink.transport import CapabilityDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Snapshot:
    capabilities: Tuple[CapabilityDescriptor, ...]
    computed_at: float
    version: int


class CapabilityCache:
    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        ttl: float = 30.0,
        empty_ttl: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._supervisor = supervisor
        self._ttl = ttl
        self._empty_ttl = empty_ttl
        self._clock = clock

        self._snapshot: Optional[_Snapshot] = None
        self._version = 0
        self._version_lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._warmup_timer: Optional[threading.Timer] = None

        supervisor.add_listener(self.invalidate)

    def get_capabilities(self) -> List[CapabilityDescriptor]:
        snapshot = self._snapshot
        if self._is_fresh(snapshot):
            return list(snapshot.capabilities)

        with self._refresh_lock:
            snapshot = self._snapshot
            if self._is_fresh(snapshot):
                return list(snapshot.capabilities)

            version = self._version
            try:
                capabilities, failed = self._collect()
            except Exception:
                logger.exception("Unexpected error while collecting capabilities")
                capabilities, failed = [], True

            # A failure we reported ourselves invalidates the cache; keep the result anyway.
            if failed:
                version = self._version
            if version == self._version:
                self._snapshot = _Snapshot(tuple(capabilities), self._clock(), version)
            return list(capabilities)

    def invalidate(self) -> None:
        """Drop the cached list; the next read queries the live connection(s)."""
        with self._version_lock:
            self._version += 1
            self._snapshot = None

    def warm_up(self, delay: float = 5.0) -> threading.Timer:
        """Populate the cache once in the background after delay seconds."""

        def run() -> None:
            capabilities = self.get_capabilities()
            logger.info(f"Capability cache warm-up finished ({len(capabilities)} capabilities)")

        timer = threading.Timer(delay, run)
        timer.daemon = True
        timer.name = "mcplink-cache-warmup"
        self._warmup_timer = timer
        timer.start()
        return timer

    def close(self) -> None:
        if self._warmup_timer is not None:
            self._warmup_timer.cancel()
            self._warmup_timer = None

    def _is_fresh(self, snapshot: Optional[_Snapshot]) -> bool:
        if snapshot is None or snapshot.version != self._version:
            return False
        ttl = self._ttl if snapshot.capabilities else self._empty_ttl
        return self._clock() - snapshot.computed_at < ttl

    def _collect(self) -> Tuple[List[CapabilityDescriptor], bool]:
        handles = self._supervisor.active_connections()
        capabilities: List[CapabilityDescriptor] = []
        failed = False

        for handle in handles:
            try:
                capabilities.extend(handle.list_capabilities())
            except Exception as exc:
                failed = True
                logger.warning(f"Failed to list capabilities from {handle.endpoint}: {exc}")
                self._supervisor.report_failure(handle.server_id, exc, handle)

        if not capabilities:
            if handles:
                logger.warning("Live tool server connection reported no capabilities")
            else:
                logger.warning("No live tool server connection; serving an empty capability list")
        else:
            logger.debug(f"Refreshed capability cache ({len(capabilities)} capabilities)")
        return capabilities, failed
