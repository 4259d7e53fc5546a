"""
Unit tests for mcplink/registry.py - ServerRegistry.
"""

from __future__ import annotations

import threading

import pytest

from mcplink.db.models import ServerStatus
from mcplink.errors import ConflictError, NotFoundError, ValidationError
from mcplink.registry import ServerRegistry, to_public_dict


def _active_ids(registry: ServerRegistry) -> list:
    return [record.id for record in registry.find_all() if record.active]


class TestCreate:
    """Tests for ServerRegistry.create()."""

    def test_create_encrypts_credential(self, registry, vault):
        record = registry.create("alpha", "http://alpha:8000", "secret1")

        assert record.id
        assert record.encrypted_credential != "secret1"
        assert vault.decrypt(record.encrypted_credential) == "secret1"
        assert record.active is False
        assert record.status == ServerStatus.DISCONNECTED.value
        assert record.capability_count == 0

    def test_create_without_credential(self, registry):
        record = registry.create("alpha", "http://alpha:8000", None)
        assert record.encrypted_credential == ""
        assert record.has_credential is False

    def test_create_strips_fields(self, registry):
        record = registry.create("  alpha  ", "  http://alpha:8000  ", None)
        assert record.name == "alpha"
        assert record.url == "http://alpha:8000"

    def test_duplicate_name_rejected(self, registry):
        registry.create("alpha", "http://alpha:8000", None)
        with pytest.raises(ValidationError, match="already exists"):
            registry.create("alpha", "http://other:8000", None)

    def test_duplicate_name_committed_concurrently(self, registry, monkeypatch):
        registry.create("alpha", "http://alpha:8000", None)
        # Another writer inserted the name after our pre-check passed.
        monkeypatch.setattr("mcplink.registry._ensure_unique_name", lambda db, name, exclude_id=None: None)

        with pytest.raises(ValidationError, match="already exists") as exc_info:
            registry.create("alpha", "http://other:8000", None)

        assert exc_info.value.details == {"field": "name", "name": "alpha"}
        assert [record.url for record in registry.find_all()] == ["http://alpha:8000"]

    @pytest.mark.parametrize(
        "name,url",
        [("", "http://x"), ("alpha", ""), ("alpha", "ftp://x"), ("alpha", "alpha:8000")],
    )
    def test_invalid_input_rejected(self, registry, name, url):
        with pytest.raises(ValidationError):
            registry.create(name, url, None)


class TestQueries:
    """Tests for find_* and get()."""

    def test_find_all_and_by_id(self, registry):
        alpha = registry.create("alpha", "http://alpha", None)
        beta = registry.create("beta", "http://beta", None)

        assert {record.name for record in registry.find_all()} == {"alpha", "beta"}
        assert registry.find_by_id(beta.id).name == "beta"
        assert registry.get(alpha.id).name == "alpha"

    def test_get_unknown_raises(self, registry):
        with pytest.raises(NotFoundError):
            registry.get("missing")

    def test_find_by_id_unknown_returns_none(self, registry):
        assert registry.find_by_id("missing") is None

    def test_find_active_none(self, registry):
        registry.create("alpha", "http://alpha", None)
        assert registry.find_active() is None


class TestUpdate:
    """Tests for ServerRegistry.update()."""

    def test_blank_credential_keeps_existing(self, registry, vault):
        record = registry.create("alpha", "http://alpha", "secret1")

        updated = registry.update(record.id, "alpha", "http://alpha:9000", "   ")

        assert updated.url == "http://alpha:9000"
        assert vault.decrypt(updated.encrypted_credential) == "secret1"

    def test_new_credential_replaces(self, registry, vault):
        record = registry.create("alpha", "http://alpha", "secret1")
        updated = registry.update(record.id, "alpha", "http://alpha", "secret2")
        assert vault.decrypt(updated.encrypted_credential) == "secret2"

    def test_rename_to_existing_name_rejected(self, registry):
        registry.create("alpha", "http://alpha", None)
        beta = registry.create("beta", "http://beta", None)
        with pytest.raises(ValidationError):
            registry.update(beta.id, "alpha", "http://beta", None)

    def test_rename_committed_concurrently(self, registry, monkeypatch):
        registry.create("alpha", "http://alpha", None)
        beta = registry.create("beta", "http://beta", None)
        monkeypatch.setattr("mcplink.registry._ensure_unique_name", lambda db, name, exclude_id=None: None)

        with pytest.raises(ValidationError):
            registry.update(beta.id, "alpha", "http://beta", None)

        assert registry.get(beta.id).name == "beta"

    def test_keep_own_name(self, registry):
        alpha = registry.create("alpha", "http://alpha", None)
        updated = registry.update(alpha.id, "alpha", "http://alpha", None, description="primary")
        assert updated.description == "primary"

    def test_update_unknown_raises(self, registry):
        with pytest.raises(NotFoundError):
            registry.update("missing", "alpha", "http://alpha", None)


class TestDelete:
    """Tests for ServerRegistry.delete()."""

    def test_delete_inactive(self, registry):
        record = registry.create("alpha", "http://alpha", None)
        registry.delete(record.id)
        assert registry.find_by_id(record.id) is None

    def test_delete_active_conflicts_and_keeps_record(self, registry):
        record = registry.create("alpha", "http://alpha", "secret1")
        registry.activate(record.id)

        with pytest.raises(ConflictError):
            registry.delete(record.id)

        kept = registry.get(record.id)
        assert kept.active is True
        assert kept.encrypted_credential == record.encrypted_credential

    def test_delete_unknown_raises(self, registry):
        with pytest.raises(NotFoundError):
            registry.delete("missing")


class TestActivation:
    """Tests for activate() / deactivate_all()."""

    def test_activate_switches_active(self, registry):
        alpha = registry.create("alpha", "http://alpha", None)
        beta = registry.create("beta", "http://beta", None)

        registry.activate(alpha.id)
        assert _active_ids(registry) == [alpha.id]

        registry.activate(beta.id)
        assert _active_ids(registry) == [beta.id]
        assert registry.find_active().id == beta.id

    def test_activate_twice_is_harmless(self, registry):
        alpha = registry.create("alpha", "http://alpha", None)
        registry.activate(alpha.id)
        registry.activate(alpha.id)
        assert _active_ids(registry) == [alpha.id]

    def test_activate_unknown_rolls_back(self, registry):
        alpha = registry.create("alpha", "http://alpha", None)
        registry.activate(alpha.id)

        with pytest.raises(NotFoundError):
            registry.activate("missing")

        assert _active_ids(registry) == [alpha.id]

    def test_concurrent_activation_keeps_single_active(self, registry):
        records = [registry.create(f"server-{i}", f"http://server-{i}", None) for i in range(6)]
        errors = []
        barrier = threading.Barrier(len(records))

        def activate(server_id):
            barrier.wait()
            try:
                for _ in range(3):
                    registry.activate(server_id)
                    assert len(_active_ids(registry)) <= 1
            except Exception as exc:  # collected for the main thread
                errors.append(exc)

        threads = [threading.Thread(target=activate, args=(record.id,)) for record in records]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        assert len(_active_ids(registry)) == 1

    def test_deactivate_all(self, registry):
        alpha = registry.create("alpha", "http://alpha", None)
        registry.activate(alpha.id)

        assert registry.deactivate_all() == 1
        assert registry.find_active() is None
        assert registry.deactivate_all() == 0


class TestStatusUpdates:
    """Tests for update_status() and mark_tested()."""

    def test_update_status_connected(self, registry):
        record = registry.create("alpha", "http://alpha", None)

        registry.update_status(record.id, ServerStatus.CONNECTED, "Connected", 2, connected=True)

        stored = registry.get(record.id)
        assert stored.status == "connected"
        assert stored.status_message == "Connected"
        assert stored.capability_count == 2
        assert stored.last_connected_at is not None

    def test_update_status_without_connect_keeps_last_connected(self, registry):
        record = registry.create("alpha", "http://alpha", None)
        registry.update_status(record.id, ServerStatus.ERROR, "refused", 0)

        stored = registry.get(record.id)
        assert stored.status == "error"
        assert stored.last_connected_at is None

    def test_mark_tested(self, registry):
        record = registry.create("alpha", "http://alpha", None)
        registry.mark_tested(record.id)

        stored = registry.get(record.id)
        assert stored.last_tested_at is not None
        assert stored.active is False
        assert stored.last_connected_at is None


class TestPublicDict:
    """Tests for to_public_dict()."""

    def test_never_exposes_ciphertext(self, registry):
        record = registry.create("alpha", "http://alpha", "secret1")
        data = to_public_dict(record)

        assert data["has_credential"] is True
        assert "encrypted_credential" not in data
        assert record.encrypted_credential not in data.values()
        assert "secret1" not in str(data)
