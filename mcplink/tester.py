"""
Connection Tester.

One-shot connectivity checks, either for a candidate (url, credential) pair
before it is saved or for an existing record. The connection is built through
the same connector the supervisor uses, never handed to the supervisor, and
always closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mcplink.db.models import ServerStatus
from mcplink.errors import CryptoError
from mcplink.registry import ServerRegistry
from mcplink.transport import Connector
from mcplink.utils import connection_context
from mcplink.vault import CredentialVault

logger = logging.getLogger(__name__)

CANDIDATE_ID = "candidate"


@dataclass
class TestResult:
    # Not a pytest test class.
    __test__ = False

    success: bool
    message: str
    capability_count: int = 0
    capabilities: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "capability_count": self.capability_count,
            "capabilities": list(self.capabilities),
        }


class ConnectionTester:
    def __init__(
        self,
        vault: CredentialVault,
        registry: ServerRegistry,
        connector: Connector,
        timeout: Optional[float] = None,
    ):
        self._vault = vault
        self._registry = registry
        self._connector = connector
        self._timeout = timeout

    def test_candidate(self, url: str, credential: Optional[str]) -> TestResult:
        """Test an unsaved server.

        The credential goes through the vault once, so it is checked exactly
        as it would be after being stored.
        """
        encrypted = self._vault.encrypt(credential)
        with connection_context(url):
            return self._run(CANDIDATE_ID, url, encrypted)

    def test_server(self, server_id: str) -> TestResult:
        """Re-test a stored server. Raises NotFoundError / CryptoError."""
        record = self._registry.get(server_id)

        with connection_context(record.name):
            try:
                result = self._run(record.id, record.url, record.encrypted_credential, record.name)
            finally:
                self._registry.mark_tested(record.id)

        if result.success:
            self._registry.update_status(
                record.id, ServerStatus.CONNECTED, result.message, result.capability_count, connected=False
            )
        return result

    def _run(
        self,
        server_id: str,
        url: str,
        encrypted_credential: str,
        server_name: Optional[str] = None,
    ) -> TestResult:
        credential = self._vault.decrypt(encrypted_credential)

        logger.info(f"Testing connection to {url}")
        try:
            connection = self._connector(server_id, url, credential, server_name=server_name, timeout=self._timeout)
        except CryptoError:
            raise
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning(f"Connection test failed: {message}")
            return TestResult(success=False, message=f"Connection failed: {message}")

        try:
            names = [capability.name for capability in connection.capabilities]
        finally:
            connection.close()

        logger.info(f"Connection test succeeded ({len(names)} capabilities)")
        return TestResult(
            success=True,
            message=f"Connected successfully. Found {len(names)} capabilities.",
            capability_count=len(names),
            capabilities=names,
        )
