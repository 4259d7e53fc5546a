"""
Tool connection runtime.

One object per process that wires the vault, registry, supervisor, capability
cache and tester together, with explicit start() and shutdown().

Usage:
    runtime = ToolConnectionRuntime()
    runtime.start()
    capabilities = runtime.get_active_capabilities()
    ...
    runtime.shutdown()
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from mcplink.cache import CapabilityCache
from mcplink.config import Settings, get_settings
from mcplink.db import init_db
from mcplink.registry import ServerRegistry, to_public_dict
from mcplink.scheduler import RetryScheduler
from mcplink.supervisor import ConnectionSupervisor
from mcplink.tester import ConnectionTester
from mcplink.transport import CapabilityDescriptor, Connector, HttpConnector
from mcplink.vault import CredentialVault

logger = logging.getLogger(__name__)


class ToolConnectionRuntime:
    """
    Process-scoped connection subsystem.

    Args:
        settings: Configuration (defaults to get_settings())
        connector: Opens tool server connections (defaults to HttpConnector)
        scheduler: Background workers and retry timers
        clock: Monotonic clock for the capability cache
        supervise: When False, nothing connects in the background; used for
            one-shot administration where only the registry and tester matter
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        connector: Optional[Connector] = None,
        scheduler: Optional[RetryScheduler] = None,
        clock: Optional[Callable[[], float]] = None,
        supervise: bool = True,
    ):
        self.settings = settings or get_settings()
        self.supervise = supervise

        self.vault = CredentialVault.from_settings(self.settings)
        self.registry = ServerRegistry(self.vault)
        self.connector: Connector = connector or HttpConnector(self.settings)
        self.supervisor = ConnectionSupervisor(
            self.registry,
            self.vault,
            self.settings,
            scheduler=scheduler,
            connector=self.connector,
        )
        self.cache = CapabilityCache(
            self.supervisor,
            ttl=self.settings.capability_cache_ttl_seconds,
            empty_ttl=self.settings.capability_cache_empty_ttl_seconds,
            clock=clock or time.monotonic,
        )
        self.tester = ConnectionTester(
            self.vault,
            self.registry,
            self.connector,
            timeout=self.settings.test_timeout_seconds,
        )
        self._started = False

    def __enter__(self) -> "ToolConnectionRuntime":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    # =========================
    # Lifecycle
    # =========================

    def start(self, warm_up: bool = True) -> None:
        """Create the schema and, when supervising, connect in the background."""
        if self._started:
            return
        init_db()
        self._started = True

        if not self.supervise:
            return

        logger.info("Starting tool connection runtime")
        self.supervisor.start()
        if self.settings.registry_poll_interval_seconds > 0:
            self.supervisor.watch_registry(self.settings.registry_poll_interval_seconds)
        if warm_up:
            self.cache.warm_up(self.settings.cache_warmup_delay_seconds)

    def shutdown(self) -> None:
        self.cache.close()
        self.supervisor.shutdown()

    # =========================
    # Orchestrator
    # =========================

    def get_active_capabilities(self) -> List[CapabilityDescriptor]:
        """Capabilities of the active server; empty (never an error) when unavailable."""
        return self.cache.get_capabilities()

    # =========================
    # Administration
    # =========================

    def list_servers(self) -> List[Dict[str, Any]]:
        return [to_public_dict(record) for record in self.registry.find_all()]

    def get_server(self, server_id: str) -> Dict[str, Any]:
        return to_public_dict(self.registry.get(server_id))

    def get_active_server(self) -> Optional[Dict[str, Any]]:
        record = self.registry.find_active()
        return to_public_dict(record) if record is not None else None

    def create_server(
        self,
        name: str,
        url: str,
        credential: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        return to_public_dict(self.registry.create(name, url, credential, description))

    def update_server(
        self,
        server_id: str,
        name: str,
        url: str,
        credential: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = self.registry.update(server_id, name, url, credential, description)
        if record.active and self.supervise:
            # Live connection still uses the old url/credential.
            self.supervisor.reconnect_active_server()
        return to_public_dict(record)

    def delete_server(self, server_id: str) -> None:
        self.registry.delete(server_id)

    def activate_server(self, server_id: str) -> Dict[str, Any]:
        record = self.registry.activate(server_id)
        if self.supervise:
            self.supervisor.reconnect_active_server()
        return to_public_dict(record)

    def deactivate_all(self) -> int:
        count = self.registry.deactivate_all()
        if self.supervise:
            self.supervisor.reconnect_active_server()
        return count

    def test_server(self, server_id: str) -> Dict[str, Any]:
        return self.tester.test_server(server_id).to_dict()

    def test_candidate(self, url: str, credential: Optional[str]) -> Dict[str, Any]:
        return self.tester.test_candidate(url, credential).to_dict()

    def connection_statuses(self) -> List[Dict[str, Any]]:
        return [status.to_dict() for status in self.supervisor.get_all_statuses()]

    def retry_active_connection(self) -> Optional[Dict[str, Any]]:
        status = self.supervisor.retry_active_connection()
        return status.to_dict() if status is not None else None

    def disable_connection(self, server_id: str) -> Dict[str, Any]:
        return self.supervisor.disable(server_id).to_dict()

    def enable_connection(self, server_id: str) -> Dict[str, Any]:
        return self.supervisor.enable(server_id).to_dict()
