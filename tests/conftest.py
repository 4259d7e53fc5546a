"""
Shared pytest fixtures for mcplink tests.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Set

import httpx
import pytest

# Ensure the project root is in the Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from mcplink.config import Settings, get_settings
from mcplink.db import init_db, reset_engine
from mcplink.registry import ServerRegistry
from mcplink.supervisor import ConnectionSupervisor
from mcplink.transport import HttpConnector
from mcplink.vault import CredentialVault, generate_key


# ==================== Fake MCP Server ====================


@dataclass
class FakeServerConfig:
    tools: List[str]
    api_key: Optional[str] = None
    sse: bool = False
    page_size: Optional[int] = None
    status_code: Optional[int] = None
    list_error: Optional[Dict[str, Any]] = None


@dataclass
class FakeToolServer:
    """
    In-process MCP server reachable through httpx.MockTransport.

    Servers are keyed by host name; unknown or "down" hosts refuse the
    connection like a closed port would.
    """

    servers: Dict[str, FakeServerConfig] = field(default_factory=dict)
    down: Set[str] = field(default_factory=set)
    requests: List[httpx.Request] = field(default_factory=list)
    deleted_sessions: List[str] = field(default_factory=list)

    def add(self, host: str, tools: List[str], **options: Any) -> FakeServerConfig:
        config = FakeServerConfig(tools=list(tools), **options)
        self.servers[host] = config
        return config

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def methods(self, host: Optional[str] = None) -> List[str]:
        """JSON-RPC methods received (optionally for one host)."""
        result = []
        for request in self.requests:
            if host and request.url.host != host:
                continue
            if request.method == "POST":
                result.append(json.loads(request.content).get("method"))
        return result

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host

        if host in self.down or host not in self.servers:
            raise httpx.ConnectError("Connection refused", request=request)

        server = self.servers[host]
        if server.status_code:
            return httpx.Response(server.status_code, json={"error": "unavailable"})
        if server.api_key and request.headers.get("X-API-Key") != server.api_key:
            return httpx.Response(401, json={"error": "invalid api key"})

        if request.method == "DELETE":
            self.deleted_sessions.append(request.headers.get("mcp-session-id", ""))
            return httpx.Response(204)

        payload = json.loads(request.content)
        if "id" not in payload:
            return httpx.Response(202)

        headers = {}
        method = payload.get("method")
        if method == "initialize":
            result = {
                "protocolVersion": payload["params"]["protocolVersion"],
                "capabilities": {"tools": {"listChanged": False}},
                "serverInfo": {"name": f"fake-{host}", "version": "1.0.0"},
            }
            headers["mcp-session-id"] = f"session-{host}"
        elif method == "tools/list" and server.list_error:
            body = {"jsonrpc": "2.0", "id": payload["id"], "error": server.list_error}
            return httpx.Response(200, json=body)
        elif method == "tools/list":
            result = self._tools_page(server, (payload.get("params") or {}).get("cursor"))
        else:
            body = {"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32601, "message": "Method not found"}}
            return httpx.Response(200, json=body)

        body = {"jsonrpc": "2.0", "id": payload["id"], "result": result}
        if server.sse:
            headers["content-type"] = "text/event-stream"
            return httpx.Response(200, headers=headers, text=f"event: message\ndata: {json.dumps(body)}\n\n")
        return httpx.Response(200, json=body, headers=headers)

    @staticmethod
    def _tools_page(server: FakeServerConfig, cursor: Optional[str]) -> Dict[str, Any]:
        tools = [
            {
                "name": name,
                "description": f"{name} tool",
                "inputSchema": {"type": "object", "properties": {}},
            }
            for name in server.tools
        ]
        if not server.page_size:
            return {"tools": tools}

        start = int(cursor or 0)
        end = start + server.page_size
        page: Dict[str, Any] = {"tools": tools[start:end]}
        if end < len(tools):
            page["nextCursor"] = str(end)
        return page


# ==================== Scheduler Fixtures ====================


class ManualScheduler:
    """
    Scheduler double: submitted work runs inline, timers are only recorded.

    Tests fire timers explicitly with fire().
    """

    def __init__(self):
        self.timers: Dict[str, tuple] = {}
        self.delays: List[float] = []
        self.cancelled: List[str] = []
        self.closed = False

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        if not self.closed:
            fn(*args)

    def schedule(self, key: str, delay: float, fn: Callable[..., Any], *args: Any) -> None:
        if self.closed:
            return
        self.delays.append(delay)
        self.timers[key] = (delay, fn, args)

    def cancel(self, key: str) -> bool:
        self.cancelled.append(key)
        return self.timers.pop(key, None) is not None

    def pending(self) -> List[str]:
        return list(self.timers)

    def fire(self, key: str) -> None:
        _, fn, args = self.timers.pop(key)
        fn(*args)

    def shutdown(self) -> None:
        self.closed = True
        self.timers.clear()


# ==================== Core Fixtures ====================


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Settings, None, None]:
    """
    Settings backed by a fresh SQLite database in tmp_path.

    The schema is created; engine and settings caches are reset afterwards.
    """
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'mcplink.db'}")
    monkeypatch.setenv("ENCRYPTION_KEY", generate_key())
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    get_settings.cache_clear()
    reset_engine()
    init_db()

    yield get_settings()

    reset_engine()
    get_settings.cache_clear()


@pytest.fixture
def vault(settings: Settings) -> CredentialVault:
    return CredentialVault.from_settings(settings)


@pytest.fixture
def registry(vault: CredentialVault) -> ServerRegistry:
    return ServerRegistry(vault)


@pytest.fixture
def fake_server() -> FakeToolServer:
    return FakeToolServer()


@pytest.fixture
def connector(settings: Settings, fake_server: FakeToolServer) -> HttpConnector:
    return HttpConnector(settings, transport=fake_server.transport())


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def supervisor(
    settings: Settings,
    registry: ServerRegistry,
    vault: CredentialVault,
    scheduler: ManualScheduler,
    connector: HttpConnector,
) -> Generator[ConnectionSupervisor, None, None]:
    sup = ConnectionSupervisor(registry, vault, settings, scheduler=scheduler, connector=connector)
    yield sup
    sup.shutdown()
