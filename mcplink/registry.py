"""
Server Registry.

CRUD over tool server records. Enforces that at most one record is active:
activation deactivates every record and activates the target inside a single
transaction, so no reader ever observes two active records.

Security:
- Credentials are encrypted before they are written; the registry never decrypts
- Admin output carries only a has_credential flag, never the ciphertext
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from mcplink.db.database import get_db
from mcplink.db.models import ServerRecord, ServerStatus
from mcplink.errors import ConflictError, NotFoundError, ValidationError
from mcplink.vault import CredentialVault

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def to_public_dict(record: ServerRecord) -> Dict[str, Any]:
    """Convert a record to a safe dict (no ciphertext)."""
    return {
        "id": record.id,
        "name": record.name,
        "url": record.url,
        "description": record.description,
        "active": record.active,
        "status": record.status,
        "status_message": record.status_message,
        "capability_count": record.capability_count,
        "has_credential": record.has_credential,
        "last_tested_at": _isoformat(record.last_tested_at),
        "last_connected_at": _isoformat(record.last_connected_at),
        "created_at": _isoformat(record.created_at),
        "updated_at": _isoformat(record.updated_at),
    }


class ServerRegistry:
    """Persistent store of tool server configurations."""

    # Shared by every registry in the process so activations never interleave.
    _activation_lock = threading.Lock()

    def __init__(self, vault: CredentialVault):
        self.vault = vault

    # =========================
    # Queries
    # =========================

    def find_all(self) -> List[ServerRecord]:
        with get_db() as db:
            rows = db.execute(select(ServerRecord).order_by(ServerRecord.created_at, ServerRecord.name))
            return list(rows.scalars().all())

    def find_by_id(self, server_id: str) -> Optional[ServerRecord]:
        with get_db() as db:
            return db.get(ServerRecord, server_id)

    def get(self, server_id: str) -> ServerRecord:
        record = self.find_by_id(server_id)
        if record is None:
            raise NotFoundError(server_id)
        return record

    def find_active(self) -> Optional[ServerRecord]:
        with get_db() as db:
            return db.execute(
                select(ServerRecord).where(ServerRecord.active.is_(True))
            ).scalars().first()

    # =========================
    # Create / Update / Delete
    # =========================

    def create(
        self,
        name: str,
        url: str,
        credential: Optional[str],
        description: Optional[str] = None,
    ) -> ServerRecord:
        name, url = _validate(name, url)

        with get_db() as db:
            _ensure_unique_name(db, name)

            record = ServerRecord(
                name=name,
                url=url,
                encrypted_credential=self.vault.encrypt(credential),
                description=description,
                status=ServerStatus.DISCONNECTED.value,
                active=False,
                capability_count=0,
            )
            db.add(record)
            _commit_named(db, name)
            db.refresh(record)

        logger.info(f"Created tool server '{name}' (id={record.id})")
        return record

    def update(
        self,
        server_id: str,
        name: str,
        url: str,
        credential: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ServerRecord:
        """
        Update a tool server.

        The stored credential is only replaced when a non-blank one is given,
        so editing a record never requires re-entering its secret.
        """
        name, url = _validate(name, url)

        with get_db() as db:
            record = db.get(ServerRecord, server_id)
            if record is None:
                raise NotFoundError(server_id)
            _ensure_unique_name(db, name, exclude_id=server_id)

            record.name = name
            record.url = url
            record.description = description
            if credential is not None and credential.strip():
                record.encrypted_credential = self.vault.encrypt(credential)
            record.updated_at = _now()

            _commit_named(db, name)
            db.refresh(record)

        logger.info(f"Updated tool server '{name}' (id={server_id})")
        return record

    def delete(self, server_id: str) -> None:
        with get_db() as db:
            record = db.get(ServerRecord, server_id)
            if record is None:
                raise NotFoundError(server_id)
            if record.active:
                raise ConflictError(
                    "Cannot delete the active tool server. Deactivate it first.",
                    details={"server_id": server_id},
                )
            name = record.name
            db.delete(record)
            db.commit()

        logger.info(f"Deleted tool server '{name}' (id={server_id})")

    # =========================
    # Activation
    # =========================

    def activate(self, server_id: str) -> ServerRecord:
        """Make one record active and every other record inactive, atomically."""
        with self._activation_lock, get_db() as db:
            try:
                now = _now()
                db.execute(
                    update(ServerRecord)
                    .where(ServerRecord.active.is_(True))
                    .values(active=False, updated_at=now)
                )
                result = db.execute(
                    update(ServerRecord)
                    .where(ServerRecord.id == server_id)
                    .values(active=True, updated_at=now)
                )
                if result.rowcount != 1:
                    raise NotFoundError(server_id)
                db.commit()
            except Exception:
                db.rollback()
                raise

            record = db.get(ServerRecord, server_id)

        logger.info(f"Activated tool server '{record.name}' (id={server_id})")
        return record

    def deactivate_all(self) -> int:
        with self._activation_lock, get_db() as db:
            result = db.execute(
                update(ServerRecord)
                .where(ServerRecord.active.is_(True))
                .values(active=False, updated_at=_now())
            )
            db.commit()

        if result.rowcount:
            logger.info("Deactivated all tool servers")
        return result.rowcount

    # =========================
    # Status updates (Supervisor / Tester)
    # =========================

    def update_status(
        self,
        server_id: str,
        status: ServerStatus,
        message: Optional[str],
        capability_count: int,
        connected: bool = False,
    ) -> None:
        now = _now()
        values: Dict[str, Any] = {
            "status": status.value,
            "status_message": message,
            "capability_count": capability_count,
            "updated_at": now,
        }
        if connected:
            values["last_connected_at"] = now

        with get_db() as db:
            db.execute(update(ServerRecord).where(ServerRecord.id == server_id).values(**values))
            db.commit()

    def mark_tested(self, server_id: str) -> None:
        now = _now()
        with get_db() as db:
            db.execute(
                update(ServerRecord)
                .where(ServerRecord.id == server_id)
                .values(last_tested_at=now, updated_at=now)
            )
            db.commit()


def _validate(name: Optional[str], url: Optional[str]) -> tuple[str, str]:
    name = (name or "").strip()
    url = (url or "").strip()
    if not name:
        raise ValidationError("Server name is required", details={"field": "name"})
    if not url:
        raise ValidationError("Server URL is required", details={"field": "url"})
    if not url.lower().startswith(("http://", "https://")):
        raise ValidationError("Server URL must start with http:// or https://", details={"field": "url", "url": url})
    return name, url


def _ensure_unique_name(db, name: str, exclude_id: Optional[str] = None) -> None:
    existing = db.execute(select(ServerRecord).where(ServerRecord.name == name)).scalars().first()
    if existing is not None and existing.id != exclude_id:
        raise _duplicate_name(name)


def _commit_named(db, name: str) -> None:
    """Commit; a concurrent writer that took the name first surfaces as a ValidationError."""
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise _duplicate_name(name) from exc


def _duplicate_name(name: str) -> ValidationError:
    return ValidationError(
        f"Tool server with name '{name}' already exists",
        details={"field": "name", "name": name},
    )
