from datetime import timedelta

import pytest

from portal.storage.errors import ConstraintViolation, StorageError
from portal.storage.memory import MemoryStore
from portal.storage.models import OrganizationEmployee, utcnow


def _refresh(store, user, token="tok-1", days=7):
    return store.create_refresh_token(user.id, user.tenant_id, token, utcnow() + timedelta(days=days))


class TestUsers:
    def test_email_and_username_are_unique_case_insensitive(self, store):
        store.create_user("Ayse", "Ayse@Example.com", "hash")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user("other", "ayse@example.com", "hash")
        assert exc.value.detail == {"field": "email"}
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user("AYSE", "another@example.com", "hash")
        assert exc.value.detail == {"field": "username"}

    def test_same_username_in_another_tenant(self, store):
        store.create_user("ayse", "ayse@example.com", "hash", tenant_id="00")
        other = store.create_user("ayse", "ayse2@example.com", "hash", tenant_id="01")
        assert store.get_user_by_username("ayse", "01").id == other.id

    def test_pending_users_are_hidden_unless_asked(self, store):
        pending = store.create_user("bob", "bob@example.com", "hash", pending=True)
        assert store.get_user_by_username("bob") is None
        assert store.get_user_by_email("bob@example.com") is None
        assert store.get_user_by_email("bob@example.com", include_pending=True).id == pending.id
        assert not store.user_exists("bob", "x@example.com", "00")
        assert store.user_exists("bob", "x@example.com", "00", include_pending=True)
        with pytest.raises(ConstraintViolation):
            store.create_user("bob", "bob2@example.com", "hash")

    def test_pending_unsupported(self):
        store = MemoryStore(supports_pending=False)
        with pytest.raises(StorageError):
            store.create_user("bob", "bob@example.com", "hash", pending=True)

    def test_verify_and_deactivate(self, store):
        user = store.create_user("bob", "bob@example.com", "hash", pending=True)
        store.verify_user_email(user.id)
        fetched = store.get_user(user.id)
        assert fetched.is_active and fetched.is_email_verified and not fetched.is_pending
        store.deactivate_user(user.id)
        assert store.get_user_by_username("bob") is None
        assert not store.get_user(user.id).is_active

    def test_deactivated_user_no_longer_blocks_signup(self, store):
        user = store.create_user("bob", "bob@example.com", "hash")
        store.deactivate_user(user.id)
        replacement = store.create_user("bob", "bob@example.com", "hash")
        assert replacement.id != user.id

    def test_list_users_newest_first(self, store):
        first = store.create_user("a", "a@example.com", "hash")
        second = store.create_user("b", "b@example.com", "hash", tenant_id="01")
        second.created_at = first.created_at + timedelta(seconds=1)
        assert [u.id for u in store.list_users()] == [second.id, first.id]
        assert [u.id for u in store.list_users(tenant_id="01")] == [second.id]
        assert len(store.list_users(limit=1)) == 1


class TestRefreshTokens:
    def test_fetch_carries_owner(self, store):
        user = store.create_user("bob", "bob@example.com", "hash")
        _refresh(store, user)
        record = store.get_refresh_token("tok-1")
        assert record.user.id == user.id
        assert record.is_active()

    def test_duplicate_token_rejected(self, store):
        user = store.create_user("bob", "bob@example.com", "hash")
        _refresh(store, user)
        with pytest.raises(ConstraintViolation):
            _refresh(store, user)

    def test_revoke_only_once(self, store):
        user = store.create_user("bob", "bob@example.com", "hash")
        _refresh(store, user)
        assert store.revoke_refresh_token("tok-1", "10.0.0.1", replaced_by_token="tok-2")
        assert not store.revoke_refresh_token("tok-1")
        record = store.get_refresh_token("tok-1")
        assert record.replaced_by_token == "tok-2"
        assert record.revoked_by_ip == "10.0.0.1"
        assert not store.revoke_refresh_token("missing")

    def test_revoke_all_except_one(self, store):
        user = store.create_user("bob", "bob@example.com", "hash")
        other = store.create_user("eve", "eve@example.com", "hash")
        for token in ("a", "b", "c"):
            _refresh(store, user, token)
        _refresh(store, other, "d")
        store.revoke_refresh_token("c")
        assert store.revoke_user_refresh_tokens(user.id, "10.0.0.1", except_token="a") == 1
        states = {t.token: t.is_revoked for t in store.list_refresh_tokens(user.id)}
        assert states == {"a": False, "b": True, "c": True}
        assert store.get_refresh_token("d").is_active()


class TestSingleUseTokens:
    def test_mark_used_and_invalidate(self, store):
        user = store.create_user("bob", "bob@example.com", "hash")
        expires = utcnow() + timedelta(hours=1)
        store.create_password_reset_token(user.id, user.username, user.email, "r1", expires)
        store.create_password_reset_token(user.id, user.username, user.email, "r2", expires)
        store.mark_password_reset_token_used("r1")
        assert store.get_password_reset_token("r1").is_used
        assert store.invalidate_password_reset_tokens(user.id) == 1
        assert store.get_password_reset_token("r2").is_used

    def test_verification_token_round_trip(self, store):
        user = store.create_user("bob", "bob@example.com", "hash", pending=True)
        expires = utcnow() + timedelta(hours=24)
        store.create_email_verification_token(user.id, user.username, "BOB@example.com", "v1", expires)
        record = store.get_email_verification_token("v1")
        assert record.email == "bob@example.com"
        assert not record.is_used and not record.is_expired()
        store.mark_email_verification_token_used("v1")
        assert store.get_email_verification_token("v1").used_at is not None
        assert store.get_email_verification_token("nope") is None


class TestRbacCatalogue:
    def test_seeded_catalogue(self, store):
        assert [r.code for r in store.list_roles()] == ["CALISAN", "IK_YONETICI", "BUTCE_YONETICI", "ADMIN"]
        assert store.get_role_permission_ids(1) == [1, 3, 6]
        assert len(store.list_permissions()) == 9
        assert [m.code for m in store.list_modules()] == ["IK", "BUTCE", "ADMIN"]
        assert [lv.level for lv in store.list_permission_levels()] == [1, 2, 3, 4]
        assert store.get_role_by_code("ADMIN").id == 4

    def test_set_role_permissions_replaces(self, store):
        store.set_role_permissions(1, [9, 1, 1])
        assert store.get_role_permission_ids(1) == [1, 9]
        with pytest.raises(ConstraintViolation):
            store.set_role_permissions(1, [99])
        with pytest.raises(ConstraintViolation):
            store.set_role_permissions(99, [1])

    def test_inactive_role_grants_nothing(self, store):
        user = store.create_user("bob", "bob@example.com", "hash")
        store.set_user_roles(user.id, [1, 3])
        store.roles[3].is_active = False
        assert store.get_user_roles(user.id).value == ["CALISAN"]
        assert "BUTCE.Duzenle" not in store.get_user_permissions(user.id).value
        assert store.get_user_role_ids(user.id).value == [1]

    def test_set_user_roles_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.set_user_roles("missing", [1])


class TestOrganizationRules:
    def test_crud(self, store):
        rule = store.create_organization_rule("%@hr.example.com", "HR", "İK", 2, priority=5)
        assert rule.id == 1
        updated = store.update_organization_rule(rule.id, priority=9, default_role_id=3)
        assert (updated.priority, updated.default_role_id) == (9, 3)
        assert store.update_organization_rule(99, priority=1) is None
        with pytest.raises(ConstraintViolation):
            store.update_organization_rule(rule.id, default_role_id=42)
        assert store.deactivate_organization_rule(rule.id)
        assert store.list_organization_rules() == []
        assert len(store.list_organization_rules(include_inactive=True)) == 1
        assert not store.deactivate_organization_rule(99)

    def test_rule_requires_existing_role(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_organization_rule("%", "X", "X", 42)


def test_state_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("bob", "bob@example.com", "hash", pending=True)
    store.set_user_roles(user.id, [2])
    store.create_refresh_token(user.id, "00", "tok", utcnow() + timedelta(days=1))
    store.create_organization_rule("%@example.com", "HR", "İK", 2, priority=1)
    store.add_employee(OrganizationEmployee(email="Mehmet@Partner.test", first_name="Mehmet", last_name="Y"))

    reloaded = MemoryStore(fs_root=str(tmp_path))
    again = reloaded.get_user(user.id)
    assert again.is_pending
    assert again.created_at == user.created_at
    assert reloaded.get_user_roles(user.id).value == ["IK_YONETICI"]
    assert reloaded.get_refresh_token("tok").expires_at.tzinfo is not None
    assert reloaded.get_employee_by_email("mehmet@partner.test").value.first_name == "Mehmet"
    assert reloaded.create_organization_rule("%", "X", "X", 1).id == 2


def test_persist_leaves_no_temporary_files(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("bob", "bob@example.com", "hash")
    store.create_user("carol", "carol@example.com", "hash")
    assert [p.name for p in (tmp_path / "state").iterdir()] == ["memory_store.json"]


def test_failed_persist_keeps_previous_state(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("bob", "bob@example.com", "hash")
    state_file = tmp_path / "state" / "memory_store.json"
    before = state_file.read_text()

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("portal.storage.memory.os.replace", fail_replace)
    with pytest.raises(StorageError):
        store.create_user("carol", "carol@example.com", "hash")
    monkeypatch.undo()

    assert state_file.read_text() == before
    assert [p.name for p in state_file.parent.iterdir()] == ["memory_store.json"]
    assert MemoryStore(fs_root=str(tmp_path)).get_user_by_username("bob") is not None
