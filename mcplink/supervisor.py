"""
Connection Supervisor.

Owns the lifecycle of the live connection to the active tool server:
connect, fail, retry with backoff, disable, enable and swap when the active
server changes.

State machine per tracked server:
- connecting -> active      handshake and capability listing succeeded
- connecting/active -> error any failure; retryable ones schedule a retry
- error -> connecting       backoff timer fired (at most retry_max_attempts times)
- any -> disabled           disable(); live handle closed, timers cancelled
- disabled -> connecting    enable(); retry counter reset

Connection errors never propagate to callers of the supervisor; they end up
in ConnectionStatus and drive the retry scheduler. Network I/O always runs
without holding the supervisor lock.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from mcplink.config import Settings
from mcplink.db.models import ServerRecord, ServerStatus
from mcplink.errors import CryptoError, NotFoundError, RemoteConnectionError
from mcplink.registry import ServerRegistry
from mcplink.scheduler import RetryScheduler, retry_delay
from mcplink.status import ConnectionState, ConnectionStatus
from mcplink.transport import Connector, HttpConnector, ToolServerConnection
from mcplink.utils import connection_context
from mcplink.vault import CredentialVault

logger = logging.getLogger(__name__)

# Fallback for connector errors that don't carry a classification.
RETRYABLE_MARKERS = (
    "connection refused",
    "connect exception",
    "timeout",
    "timed out",
    "connection reset",
    "closed channel",
    "no route to host",
    "network unreachable",
    "network is unreachable",
    "failed to initialize",
)

# Scheduler key of the periodic registry poll.
REGISTRY_WATCH_KEY = "registry-watch"


def is_retryable(exc: BaseException) -> bool:
    """Network-level failures are retryable; everything else waits for an operator."""
    if isinstance(exc, CryptoError):
        return False
    if isinstance(exc, RemoteConnectionError):
        return exc.retryable
    if isinstance(exc, (httpx.TransportError, OSError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


class ConnectionSupervisor:
    """
    Supervises at most one live connection: the one to the active server.

    Args:
        registry: Server registry (active record lookup, status write-back)
        vault: Decrypts the stored credential right before connecting
        settings: Retry and timeout configuration
        scheduler: Background workers and retry timers
        connector: Opens connections (defaults to HttpConnector)
    """

    def __init__(
        self,
        registry: ServerRegistry,
        vault: CredentialVault,
        settings: Settings,
        scheduler: Optional[RetryScheduler] = None,
        connector: Optional[Connector] = None,
    ):
        self._registry = registry
        self._vault = vault
        self._settings = settings
        self._scheduler = scheduler or RetryScheduler(settings.scheduler_workers)
        self._connector: Connector = connector or HttpConnector(settings)

        self._handles: Dict[str, ToolServerConnection] = {}
        self._statuses: Dict[str, ConnectionStatus] = {}
        self._listeners: List[Callable[[], None]] = []
        self._lock = threading.RLock()
        self._closed = False
        # (id, url, ciphertext) of the active record last acted on.
        self._active_fingerprint: Optional[Tuple[str, str, str]] = None
        self._watch_interval: Optional[float] = None

    @property
    def max_attempts(self) -> int:
        return self._settings.retry_max_attempts

    # =========================
    # Startup / activation change
    # =========================

    def start(self) -> Optional[ConnectionStatus]:
        """Begin supervising the active server without blocking the caller."""
        return self.initialize_connections()

    def initialize_connections(self) -> Optional[ConnectionStatus]:
        logger.info("Initializing tool server connection from registry")

        record = self._registry.find_active()
        with self._lock:
            self._active_fingerprint = _fingerprint(record)

        if record is None:
            logger.warning("No active tool server configured; running without tool capabilities")
            return None

        logger.info(f"Found active tool server '{record.name}' at {record.url}")
        with self._lock:
            if self._closed:
                return None
            status = ConnectionStatus(server_id=record.id, server_name=record.name, endpoint_url=record.url)
            self._statuses[record.id] = status
            snapshot = status.snapshot()

        self._scheduler.submit(self.attempt_connection, record)
        return snapshot

    def reconnect_active_server(self) -> Optional[ConnectionStatus]:
        """Drop every connection and status, then connect to the newly active server."""
        with self._lock:
            closed = self._drop_all()

        self._close_handles(closed)
        return self.initialize_connections()

    def sync_with_registry(self) -> bool:
        """Reconnect if the active record changed behind this supervisor.

        Other processes (the CLI in particular) write to the same registry;
        activation changes and edits of the active server's url or credential
        they make are only seen here. Returns True when a reconnect happened.
        """
        record = self._registry.find_active()
        with self._lock:
            if self._closed or _fingerprint(record) == self._active_fingerprint:
                return False

        if record is None:
            logger.info("Active tool server was deactivated in the registry")
        else:
            logger.info(f"Active tool server in the registry is now '{record.name}'; reconnecting")
        self.reconnect_active_server()
        return True

    def watch_registry(self, interval: float) -> None:
        """Poll the registry every interval seconds until shutdown."""
        with self._lock:
            if self._closed:
                return
            self._watch_interval = interval
        self._scheduler.schedule(REGISTRY_WATCH_KEY, interval, self._watch_tick)

    def _watch_tick(self) -> None:
        try:
            self.sync_with_registry()
        finally:
            with self._lock:
                interval = None if self._closed else self._watch_interval
            if interval is not None:
                self._scheduler.schedule(REGISTRY_WATCH_KEY, interval, self._watch_tick)

    # =========================
    # Connection attempts
    # =========================

    def attempt_connection(self, record: ServerRecord) -> None:
        """Connect to a server: decrypt, handshake, list capabilities.

        Runs on the calling thread (a scheduler worker for automatic attempts).
        Failures are recorded, never raised.
        """
        with self._lock:
            status = self._statuses.get(record.id)
            if status is None or status.state is ConnectionState.DISABLED:
                logger.debug(f"Skipping attempt for '{record.name}': not tracked or disabled")
                return
            status.mark_connecting()
            generation = status.generation

        with connection_context(record.name):
            logger.info(f"Attempting to connect to tool server at {record.url}")
            try:
                credential = self._vault.decrypt(record.encrypted_credential)
                handle = self._connector(record.id, record.url, credential, server_name=record.name)
            except Exception as exc:
                self._handle_failure(status, generation, exc)
                return

            self._install(status, generation, handle)

    def _install(self, status: ConnectionStatus, generation: int, handle: ToolServerConnection) -> None:
        server_id = status.server_id
        previous: Optional[ToolServerConnection] = None

        with self._lock:
            current = self._is_current(status, generation)
            if current:
                previous = self._handles.get(server_id)
                self._handles[server_id] = handle
                status.mark_success([capability.name for capability in handle.capabilities])
                count = status.capability_count

        if not current:
            logger.info("Discarding connection: superseded by a later state change")
            _close_quietly(handle)
            return

        if previous is not None and previous is not handle:
            _close_quietly(previous)

        logger.info(f"Connected to tool server ({count} capabilities)")
        self._persist(server_id, ServerStatus.CONNECTED, "Connected successfully", count, connected=True)
        self._notify_listeners()

    def _handle_failure(self, status: ConnectionStatus, generation: int, exc: BaseException) -> None:
        message = _error_message(exc)
        retryable = is_retryable(exc)
        delay: Optional[float] = None

        with self._lock:
            if not self._is_current(status, generation):
                logger.debug(f"Ignoring failure of a superseded attempt: {message}")
                return

            status.mark_failure(message)
            if retryable and status.retry_count < self.max_attempts:
                status.retry_count += 1
                attempt = status.retry_count
                delay = retry_delay(
                    attempt,
                    self._settings.retry_initial_delay_seconds,
                    self._settings.retry_max_delay_seconds,
                )
                status.next_retry_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
                self._scheduler.schedule(status.server_id, delay, self._retry, status.server_id, generation)

        server_id = status.server_id
        if delay is not None:
            logger.warning(
                f"Connection failed: {message}. Retry {attempt}/{self.max_attempts} scheduled in {delay:g}s"
            )
            self._persist(server_id, ServerStatus.ERROR, message, 0)
        elif retryable:
            logger.error(
                f"Connection failed: {message}. Max retry attempts ({self.max_attempts}) exceeded; "
                "waiting for a manual retry"
            )
            self._persist(server_id, ServerStatus.ERROR, f"Max retry attempts exceeded: {message}", 0)
        else:
            logger.error(f"Non-retryable connection failure: {message}")
            self._persist(server_id, ServerStatus.ERROR, message, 0)

    def _retry(self, server_id: str, generation: int) -> None:
        with self._lock:
            status = self._statuses.get(server_id)
            if status is None or status.generation != generation or status.state is not ConnectionState.ERROR:
                return
            attempt = status.retry_count

        record = self._registry.find_by_id(server_id)
        if record is None or not record.active:
            logger.info(f"Server {server_id} is no longer active; dropping scheduled retry")
            return

        with connection_context(record.name):
            logger.info(f"Executing retry {attempt}/{self.max_attempts}")
        self.attempt_connection(record)

    def report_failure(
        self,
        server_id: str,
        exc: BaseException,
        handle: Optional[ToolServerConnection] = None,
    ) -> None:
        """A live handle failed while in use: close it and treat it as a connection failure."""
        with self._lock:
            status = self._statuses.get(server_id)
            current = self._handles.get(server_id)
            if status is None or current is None or status.state is not ConnectionState.ACTIVE:
                return
            if handle is not None and current is not handle:
                return
            del self._handles[server_id]
            generation = status.generation

        _close_quietly(current)
        self._notify_listeners()
        with connection_context(status.server_name):
            logger.warning(f"Live connection failed: {_error_message(exc)}")
            self._handle_failure(status, generation, exc)

    # =========================
    # Operator actions
    # =========================

    def retry_active_connection(self) -> Optional[ConnectionStatus]:
        """Manual retry: reset the retry counter and reconnect now, on this thread."""
        record = self._registry.find_active()
        if record is None:
            raise RemoteConnectionError("No active tool server configured")

        with self._lock:
            if self._closed:
                raise RemoteConnectionError("Connection supervisor is shut down")

            # Activation may have changed behind our back (e.g. from the CLI).
            closed = []
            for sid in [sid for sid in self._statuses if sid != record.id]:
                self._scheduler.cancel(sid)
                stale = self._statuses.pop(sid)
                if sid in self._handles:
                    closed.append((sid, self._handles.pop(sid), stale.capability_count))

            status = self._statuses.get(record.id)
            if status is None:
                status = ConnectionStatus(server_id=record.id, server_name=record.name, endpoint_url=record.url)
                self._statuses[record.id] = status

            self._active_fingerprint = _fingerprint(record)
            self._scheduler.cancel(record.id)
            status.generation += 1
            status.retry_count = 0
            status.enabled = True
            status.mark_connecting()
            previous = self._handles.pop(record.id, None)
            if previous is not None:
                closed.append((record.id, previous, None))

        self._close_handles(closed)

        with connection_context(record.name):
            logger.info("Manual retry requested")
        self.attempt_connection(record)
        return self.get_status(record.id)

    def disable(self, server_id: str) -> ConnectionStatus:
        """Stop supervising a server: close its handle and cancel pending retries."""
        with self._lock:
            status = self._statuses.get(server_id)
            if status is None:
                raise NotFoundError(server_id)

            self._scheduler.cancel(server_id)
            already_disabled = status.state is ConnectionState.DISABLED
            status.generation += 1
            status.mark_disabled()
            handle = self._handles.pop(server_id, None)
            snapshot = status.snapshot()

        if handle is not None:
            self._close_handles([(server_id, handle, None)])

        if not already_disabled:
            with connection_context(status.server_name):
                logger.info("Connection disabled")
            self._persist(server_id, ServerStatus.DISCONNECTED, "Connection disabled", 0)
        return snapshot

    def enable(self, server_id: str) -> ConnectionStatus:
        """Re-enable a disabled server; the attempt runs in the background."""
        with self._lock:
            status = self._statuses.get(server_id)
            if status is None:
                raise NotFoundError(server_id)
            if status.state is not ConnectionState.DISABLED:
                return status.snapshot()

            status.enabled = True
            status.retry_count = 0
            status.generation += 1
            status.mark_connecting()
            snapshot = status.snapshot()

        record = self._registry.find_by_id(server_id)
        if record is None:
            logger.warning(f"Server {server_id} vanished from the registry; nothing to enable")
            return snapshot

        with connection_context(record.name):
            logger.info("Connection enabled")
        self._scheduler.submit(self.attempt_connection, record)
        return snapshot

    # =========================
    # Queries
    # =========================

    def active_connections(self) -> List[ToolServerConnection]:
        with self._lock:
            return list(self._handles.values())

    def get_status(self, server_id: str) -> Optional[ConnectionStatus]:
        with self._lock:
            status = self._statuses.get(server_id)
            return status.snapshot() if status is not None else None

    def get_all_statuses(self) -> List[ConnectionStatus]:
        with self._lock:
            return [status.snapshot() for status in self._statuses.values()]

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback invoked whenever the set of live connections changes."""
        with self._lock:
            self._listeners.append(listener)

    # =========================
    # Shutdown
    # =========================

    def shutdown(self) -> None:
        """Cancel timers and close every live connection. Safe to call twice.

        Closed servers are recorded as disconnected, so the registry never
        reports a connection this process no longer holds.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            closed = self._drop_all()

        self._scheduler.shutdown()
        logger.info(f"Shutting down connection supervisor ({len(closed)} live connection(s))")
        for server_id, handle, count in closed:
            _close_quietly(handle)
            self._persist(server_id, ServerStatus.DISCONNECTED, "Connection closed", count)

    # =========================
    # Internals
    # =========================

    def _is_current(self, status: ConnectionStatus, generation: int) -> bool:
        return (
            not self._closed
            and self._statuses.get(status.server_id) is status
            and status.generation == generation
            and status.state is not ConnectionState.DISABLED
        )

    def _drop_all(self) -> List[Tuple[str, ToolServerConnection, Optional[int]]]:
        """Forget every status and handle. Caller holds the lock."""
        dropped = []
        for server_id, handle in self._handles.items():
            status = self._statuses.get(server_id)
            count = status.capability_count if status is not None else 0
            dropped.append((server_id, handle, count))
        for server_id in self._statuses:
            self._scheduler.cancel(server_id)
        self._handles.clear()
        self._statuses.clear()
        return dropped

    def _close_handles(self, closed: List[Tuple[str, ToolServerConnection, Optional[int]]]) -> None:
        """Close dropped handles; a non-None count records the server as disconnected."""
        if not closed:
            return
        for server_id, handle, count in closed:
            _close_quietly(handle)
            if count is not None:
                self._persist(server_id, ServerStatus.DISCONNECTED, "Connection closed", count)
        self._notify_listeners()

    def _persist(
        self,
        server_id: str,
        status: ServerStatus,
        message: Optional[str],
        capability_count: int,
        connected: bool = False,
    ) -> None:
        try:
            self._registry.update_status(server_id, status, message, capability_count, connected=connected)
        except Exception:
            logger.exception(f"Failed to record status '{status.value}' for server {server_id}")

    def _notify_listeners(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Connection listener failed")


def _fingerprint(record: Optional[ServerRecord]) -> Optional[Tuple[str, str, str]]:
    if record is None:
        return None
    return (record.id, record.url, record.encrypted_credential)


def _error_message(exc: BaseException) -> str:
    text = str(exc)
    return text if text else type(exc).__name__


def _close_quietly(handle: ToolServerConnection) -> None:
    try:
        handle.close()
    except Exception as exc:
        logger.warning(f"Error closing connection to {getattr(handle, 'endpoint', '?')}: {exc}")
