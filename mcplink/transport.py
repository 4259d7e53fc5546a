"""MCP streamable HTTP client for external tool servers.

Talks JSON-RPC 2.0 over HTTP POST. Replies may come back either as a plain
JSON body or as an SSE stream; both are accepted. The credential travels in a
header added by an httpx auth flow, so every request (including session
teardown) carries it.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol

import httpx
from httpx_sse import EventSource
from mcp.types import LATEST_PROTOCOL_VERSION, Implementation, InitializeResult, ListToolsResult
from pydantic import ValidationError as SchemaValidationError

from mcplink.config import Settings
from mcplink.errors import RemoteConnectionError

logger = logging.getLogger(__name__)

ACCEPT = "application/json, text/event-stream"
SESSION_HEADER = "mcp-session-id"
PROTOCOL_HEADER = "mcp-protocol-version"

# Server still starting up or shedding load.
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class CapabilityDescriptor:
    """A remotely invocable tool exposed by a server."""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


class ApiKeyAuth(httpx.Auth):
    """Adds the tool server credential header to every request."""

    def __init__(self, api_key: Optional[str], header_name: str = "X-API-Key"):
        self._api_key = api_key or ""
        self._header_name = header_name

    def auth_flow(self, request: httpx.Request) -> Iterator[httpx.Request]:
        if self._api_key:
            request.headers[self._header_name] = self._api_key
        yield request


def resolve_endpoint(url: str, endpoint_path: str) -> str:
    """Append the MCP endpoint path to a base URL unless it is already there."""
    base = url.strip().rstrip("/")
    if not endpoint_path or not endpoint_path.strip("/"):
        return base
    path = "/" + endpoint_path.strip("/")
    if base.endswith(path):
        return base
    return base + path


class ToolServerConnection:
    """An initialized MCP session with one tool server.

    Instances are created closed; open() performs the handshake and the first
    capability listing. Requests are serialized per connection.
    """

    def __init__(
        self,
        server_id: str,
        url: str,
        credential: Optional[str],
        *,
        endpoint_path: str = "/mcp",
        credential_header: str = "X-API-Key",
        timeout: float = 20.0,
        client_name: str = "mcplink",
        client_version: str = "0",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.server_id = server_id
        self.endpoint = resolve_endpoint(url, endpoint_path)
        self.client_info = Implementation(name=client_name, version=client_version)
        self.server_info: Optional[Implementation] = None
        self.capabilities: List[CapabilityDescriptor] = []

        self._client = httpx.Client(
            auth=ApiKeyAuth(credential, credential_header),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._ids = itertools.count(1)
        # _lock serializes requests; _state_lock only guards the open/closed flags.
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._session_id: Optional[str] = None
        self._protocol_version: Optional[str] = None
        self._open = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def __enter__(self) -> "ToolServerConnection":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # =========================
    # Lifecycle
    # =========================

    def open(self) -> None:
        """Run the initialize handshake and discover capabilities."""
        if self._closed:
            raise RemoteConnectionError(f"Connection to {self.endpoint} already closed")
        if self._open:
            return

        logger.debug(f"Opening MCP session with {self.endpoint}")
        self._initialize()
        self._open = True
        self.list_capabilities()
        logger.debug(f"MCP session with {self.endpoint} ready ({len(self.capabilities)} capabilities)")

    def close(self) -> None:
        """Terminate the session and release the HTTP client. Safe to call twice."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            self._open = False

        if self._session_id:
            try:
                self._client.delete(self.endpoint, headers=self._headers())
            except httpx.HTTPError as exc:
                logger.debug(f"Session teardown for {self.endpoint} failed: {exc!r}")

        self._client.close()

    def _initialize(self) -> None:
        params = {
            "protocolVersion": LATEST_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": self.client_info.model_dump(exclude_none=True),
        }
        try:
            result = self._request("initialize", params)
            init = InitializeResult.model_validate(result)
            self._notify("notifications/initialized")
        except RemoteConnectionError as exc:
            # HTTP-level rejections (bad credential, unknown path) keep their classification.
            if not exc.retryable and "status_code" in (exc.details or {}):
                raise
            raise RemoteConnectionError(
                f"Failed to initialize MCP session: {exc.message}",
                retryable=True,
                details=exc.details,
            ) from exc
        except SchemaValidationError as exc:
            raise RemoteConnectionError(
                f"Failed to initialize MCP session: malformed initialize result ({exc.error_count()} errors)",
                retryable=True,
            ) from exc

        self.server_info = init.serverInfo
        self._protocol_version = str(init.protocolVersion)

    # =========================
    # Capabilities
    # =========================

    def list_capabilities(self) -> List[CapabilityDescriptor]:
        """Query the server for its tools, following pagination cursors."""
        if not self.is_open:
            raise RemoteConnectionError(f"Connection to {self.endpoint} is not open", retryable=True)

        descriptors: List[CapabilityDescriptor] = []
        cursor: Optional[str] = None
        seen: set[str] = set()

        while True:
            params = {"cursor": cursor} if cursor else {}
            result = self._request("tools/list", params)
            try:
                page = ListToolsResult.model_validate(result)
            except SchemaValidationError as exc:
                raise RemoteConnectionError(
                    f"Malformed tools/list result from {self.endpoint} ({exc.error_count()} errors)"
                ) from exc

            for tool in page.tools:
                descriptors.append(
                    CapabilityDescriptor(
                        name=tool.name,
                        description=tool.description or "",
                        input_schema=dict(tool.inputSchema or {}),
                    )
                )

            cursor = page.nextCursor
            if not cursor or cursor in seen:
                break
            seen.add(cursor)

        self.capabilities = descriptors
        return list(descriptors)

    # =========================
    # JSON-RPC
    # =========================

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": ACCEPT}
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        if self._protocol_version:
            headers[PROTOCOL_HEADER] = self._protocol_version
        return headers

    def _request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Send a JSON-RPC request and wait for its reply."""
        with self._lock:
            message_id = next(self._ids)
            response = self._post({"jsonrpc": "2.0", "id": message_id, "method": method, "params": params})
            if method == "initialize" and response.headers.get(SESSION_HEADER):
                self._session_id = response.headers[SESSION_HEADER]
            reply = _read_reply(response, message_id)

        if reply is None:
            raise RemoteConnectionError(f"No reply to '{method}' from {self.endpoint}")
        if "error" in reply:
            error = reply.get("error") or {}
            raise RemoteConnectionError(
                f"'{method}' failed: {error.get('message', 'Unknown error')}",
                details={"rpc_code": error.get("code")},
            )
        return reply.get("result") or {}

    def _notify(self, method: str) -> None:
        """Send a JSON-RPC notification (no reply expected)."""
        with self._lock:
            self._post({"jsonrpc": "2.0", "method": method})

    def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        try:
            response = self._client.post(self.endpoint, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise RemoteConnectionError(
                f"Timed out talking to {self.endpoint}: {_describe(exc)}", retryable=True
            ) from exc
        except httpx.TransportError as exc:
            raise RemoteConnectionError(
                f"Connection to {self.endpoint} failed: {_describe(exc)}", retryable=True
            ) from exc

        if response.status_code >= 400:
            code = response.status_code
            if code == 404 and self._session_id:
                # Server dropped our session; a fresh handshake is needed.
                raise RemoteConnectionError(
                    f"Session expired on {self.endpoint}", retryable=True, details={"status_code": code}
                )
            raise RemoteConnectionError(
                f"{self.endpoint} returned HTTP {code}",
                retryable=code in RETRYABLE_STATUS_CODES,
                details={"status_code": code},
            )
        return response


def open_connection(
    server_id: str,
    url: str,
    credential: Optional[str],
    **options: Any,
) -> ToolServerConnection:
    """Build a connection and open it; a connection that fails to open is closed before re-raising."""
    connection = ToolServerConnection(server_id, url, credential, **options)
    try:
        connection.open()
    except Exception:
        connection.close()
        raise
    return connection


class Connector(Protocol):
    def __call__(
        self,
        server_id: str,
        url: str,
        credential: Optional[str],
        *,
        server_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ToolServerConnection: ...


class HttpConnector:
    """Builds opened connections from settings.

    Both the supervisor and the connection tester go through this, so a
    candidate credential is validated exactly the way it will later be used.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings
        self.transport = transport

    def __call__(
        self,
        server_id: str,
        url: str,
        credential: Optional[str],
        *,
        server_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ToolServerConnection:
        client_name = self.settings.client_name
        if server_name:
            client_name = f"{client_name} - {server_name}"

        return open_connection(
            server_id,
            url,
            credential,
            endpoint_path=self.settings.mcp_endpoint_path,
            credential_header=self.settings.credential_header,
            timeout=timeout or self.settings.request_timeout_seconds,
            client_name=client_name,
            client_version=self.settings.client_version,
            transport=self.transport,
        )


# =========================
# Helpers
# =========================


def _describe(exc: BaseException) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _read_reply(response: httpx.Response, message_id: int) -> Optional[Dict[str, Any]]:
    content_type = response.headers.get("content-type", "").lower()
    try:
        if "text/event-stream" in content_type:
            messages = [event.json() for event in EventSource(response).iter_sse() if event.data]
        elif response.content:
            body = response.json()
            messages = body if isinstance(body, list) else [body]
        else:
            return None
    except ValueError as exc:
        raise RemoteConnectionError(f"Malformed JSON-RPC reply: {exc}") from exc

    for message in messages:
        if isinstance(message, dict) and message.get("id") == message_id:
            return message
    return None

