import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from storekeep.storage.errors import ConstraintViolation
from storekeep.storage.memory import MemoryStore

SECRET = "persistence-test-secret-key-0123456789abcdef"


def test_memory_store_persists_users_roles_and_secrets(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
    user = store.create_user("alice", "alice@example.com", name="Alice", location_id=5)
    store.save_password(user.id, "hash", "argon2id")
    store.set_security_question(user.id, "First pet?", "Rex")
    store.set_two_factor_secret(user.id, "JBSWY3DPEHPK3PXP")
    role = store.create_role("Manager")
    store.add_user_to_role(user.id, role.id)
    lockout_end = datetime.now(timezone.utc) + timedelta(minutes=5)
    store.update_user(user.id, access_failed_count=0, lockout_end=lockout_end)

    reloaded = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)

    again = reloaded.get_user(user.id)
    assert again.user_name == "alice"
    assert again.location_id == 5
    assert again.lockout_end == lockout_end
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert reloaded.get_security_answer(user.id) == "Rex"
    assert reloaded.get_two_factor_secret(user.id) == "JBSWY3DPEHPK3PXP"
    assert reloaded.get_user_role_names(user.id) == ["Manager"]


def test_secrets_are_not_written_in_clear(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
    user = store.create_user("alice", "alice@example.com")
    store.set_security_question(user.id, "First pet?", "Rumpelstiltskin")
    raw = (Path(tmp_path) / "state" / "storekeep.json").read_text()
    assert "Rumpelstiltskin" not in raw
    assert json.loads(raw)["security_answers"][user.id]


def test_wrong_key_cannot_read_secrets(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
    user = store.create_user("alice", "alice@example.com")
    store.set_security_question(user.id, "First pet?", "Rex")
    other = MemoryStore(fs_root=str(tmp_path), secret_key="a-completely-different-secret-key")
    assert other.get_security_answer(user.id) is None


def test_user_ids_continue_after_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
    first = store.create_user("alice", "alice@example.com")
    reloaded = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
    second = reloaded.create_user("bob", "bob@example.com")
    assert int(second.id) == int(first.id) + 1


def test_inventory_round_trip(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
    location = store.create_location("North")
    product = store.create_product("GL-01", "Glass", price=Decimal("9.99"))
    store.add_inventory(product.id, location.id, shelf="A1", quantity=3)

    reloaded = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
    rows = reloaded.list_inventory(location.id)
    assert len(rows) == 1
    assert rows[0].quantity == 3
    assert reloaded.get_product(product.id).price == Decimal("9.99")
    assert reloaded.get_location(location.id).name == "North"


class TestConstraints:
    def test_unique_user_name_and_email(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
        store.create_user("alice", "alice@example.com")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user("Alice", "other@example.com")
        assert exc.value.detail == {"field": "user_name"}
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user("bob", "ALICE@example.com")
        assert exc.value.detail == {"field": "email"}

    def test_unique_product_code(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
        store.create_product("GL-01", "Glass")
        with pytest.raises(ConstraintViolation):
            store.create_product("GL-01", "Other glass")

    def test_inventory_requires_known_references(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
        with pytest.raises(ConstraintViolation):
            store.add_inventory(42, None, quantity=1)

    def test_update_user_rejects_unknown_fields(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
        user = store.create_user("alice", "alice@example.com")
        with pytest.raises(ValueError):
            store.update_user(user.id, password="nope")


class TestRememberedClients:
    def test_expired_record_is_dropped_on_lookup(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
        user = store.create_user("alice", "alice@example.com")
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        store.add_remembered_client("digest-old", user.id, past)

        assert store.get_remembered_client("digest-old") is None
        assert "digest-old" not in store.remembered_clients
        reloaded = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
        assert "digest-old" not in reloaded.remembered_clients

    def test_adding_a_client_sweeps_expired_rows(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET)
        user = store.create_user("alice", "alice@example.com")
        now = datetime.now(timezone.utc)
        store.add_remembered_client("digest-old", user.id, now - timedelta(days=1))
        store.add_remembered_client("digest-new", user.id, now + timedelta(days=30))

        assert set(store.remembered_clients) == {"digest-new"}
        assert store.get_remembered_client("digest-new").user_id == user.id
