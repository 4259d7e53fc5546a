from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(eq=False)
class ConnectorError(Exception):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details or {}}


class ValidationError(ConnectorError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="validation_error", message=message, details=details)


class NotFoundError(ConnectorError):
    def __init__(self, server_id: str):
        super().__init__(
            code="not_found",
            message=f"Tool server not found: {server_id}",
            details={"server_id": server_id},
        )


class ConflictError(ConnectorError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="conflict", message=message, details=details)


class CryptoError(ConnectorError):
    """Key material is invalid or a stored secret cannot be decrypted.

    Never retried: it points at corrupted ciphertext or a mismatched key,
    not at a transient condition.
    """

    def __init__(self, message: str = "Unable to decrypt credential", details: Optional[Dict[str, Any]] = None):
        super().__init__(code="crypto_error", message=message, details=details)


class RemoteConnectionError(ConnectorError):
    """Transport, handshake or protocol failure talking to a tool server."""

    def __init__(self, message: str, retryable: bool = False, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="connection_error", message=message, details=details)
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["details"] = {**data["details"], "retryable": self.retryable}
        return data
