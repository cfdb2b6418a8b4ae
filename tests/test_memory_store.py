"""MemoryStore behaviour, including JSON persistence."""

import pytest

from keyward.storage.errors import ConstraintViolation
from keyward.storage.memory import MemoryStore
from keyward.storage.models import AdminScale, AuthProvider, UserUpdate


def _create(store, username="alice", **kwargs):
    kwargs.setdefault("email", f"{username}@example.com")
    return store.create_user(username, "hash", **kwargs)


class TestUsers:
    def test_create_and_lookup(self):
        store = MemoryStore()
        user = _create(store, phone="+15550001")
        assert store.get_user(user.id).username == "alice"
        assert store.get_user_by_username("alice").id == user.id
        assert store.get_user_by_email("alice@example.com").id == user.id
        assert store.get_user_by_phone("+15550001").id == user.id

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"username": "alice", "email": "x@example.com"}, "username"),
            ({"username": "bob", "email": "alice@example.com"}, "email"),
            ({"username": "bob", "email": None, "phone": "+15550001"}, "phone"),
        ],
    )
    def test_unique_fields(self, kwargs, field):
        store = MemoryStore()
        _create(store, phone="+15550001")
        username = kwargs.pop("username")
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user(username, "hash", **kwargs)
        assert excinfo.value.field == field

    def test_null_contacts_do_not_collide(self):
        store = MemoryStore()
        _create(store, "alice", email=None, phone="+1")
        _create(store, "bob", email=None, phone="+2")

    def test_partial_update_skips_unset_and_clears_none(self):
        store = MemoryStore()
        user = _create(store, phone="+15550001")
        updated = store.update_user(user.id, UserUpdate(phone=None, phone_verified=True))
        assert updated.phone is None
        assert updated.phone_verified is True
        assert updated.email == "alice@example.com"
        assert updated.username == "alice"

    def test_update_missing_user(self):
        assert MemoryStore().update_user("missing", UserUpdate(username="x")) is None

    def test_returned_users_are_copies(self):
        store = MemoryStore()
        user = _create(store)
        user.username = "mutated"
        assert store.get_user(user.id).username == "alice"

    def test_soft_delete(self):
        store = MemoryStore()
        user = _create(store, phone="+15550001", email_verified=True)
        deleted = store.soft_delete_user(user.id)
        assert deleted.is_deleted is True
        assert (deleted.email, deleted.phone) == (None, None)
        assert deleted.email_verified is False


class TestAdminGrants:
    def test_one_grant_per_user(self):
        store = MemoryStore()
        user = _create(store)
        store.save_admin_grant(user.id, AdminScale.MINOR)
        with pytest.raises(ConstraintViolation):
            store.save_admin_grant(user.id, AdminScale.MAJOR)

    def test_grant_for_unknown_user(self):
        with pytest.raises(ConstraintViolation) as excinfo:
            MemoryStore().save_admin_grant("missing", AdminScale.MINOR)
        assert excinfo.value.field == "user_id"

    def test_delete_grant(self):
        store = MemoryStore()
        user = _create(store)
        store.save_admin_grant(user.id, AdminScale.MINOR)
        assert store.delete_admin_grant(user.id) is True
        assert store.delete_admin_grant(user.id) is False

    def test_grant_tracks_renamed_user(self):
        store = MemoryStore()
        user = _create(store)
        store.save_admin_grant(user.id, AdminScale.MINOR)
        store.update_user(user.id, UserUpdate(username="alicia"))
        assert store.get_admin_grant(user.id).username == "alicia"


class TestExternalIdentities:
    def test_add_and_lookup(self):
        store = MemoryStore()
        user = store.add_external_user(
            "bob000123", "hash", provider=AuthProvider.TELEGRAM, external_id="424242"
        )
        assert store.get_user_by_external_id(AuthProvider.TELEGRAM, "424242").id == user.id
        assert store.get_user_by_external_id(AuthProvider.TELEGRAM, "999") is None
        assert store.has_external_identity(user.id) is True
        assert store.has_external_identity(_create(store).id) is False

    def test_identity_links_once(self):
        store = MemoryStore()
        store.add_external_user("bob000123", "hash", provider=AuthProvider.TELEGRAM, external_id="424242")
        with pytest.raises(ConstraintViolation) as excinfo:
            store.add_external_user(
                "bob000456", "hash", provider=AuthProvider.TELEGRAM, external_id="424242"
            )
        assert excinfo.value.field == "external_identity"
        assert store.get_user_by_username("bob000456") is None


def test_state_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _create(store, email_verified=True)
    store.save_admin_grant(user.id, AdminScale.MAJOR)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    restored = reloaded.get_user(user.id)
    assert restored.username == "alice"
    assert restored.email_verified is True
    assert restored.created_at == user.created_at
    assert reloaded.get_admin_grant(user.id).scale == AdminScale.MAJOR
    assert (tmp_path / "state" / "memory_store.json").exists()


def test_external_identity_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.add_external_user(
        "bob000123", "hash", provider=AuthProvider.TELEGRAM, external_id="424242"
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_user_by_external_id(AuthProvider.TELEGRAM, "424242").id == user.id
    assert reloaded.has_external_identity(user.id) is True


def test_state_path_requires_fs_root():
    with pytest.raises(RuntimeError):
        MemoryStore()._state_path()
