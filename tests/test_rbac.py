"""Tests for role/permission resolution and default-role selection."""

import pytest

from conftest import make_settings
from portal.service.rbac import RbacResolver, pattern_matches, rule_matches
from portal.storage.errors import ConstraintViolation, StorageError, StorageResult
from portal.storage.models import OrganizationRule


def _rule(pattern="", department_name="", department_code="", role_id=1, priority=0, rule_id=1):
    return OrganizationRule(
        id=rule_id,
        email_pattern=pattern,
        department_code=department_code,
        department_name=department_name,
        default_role_id=role_id,
        priority=priority,
    )


class TestPatternMatching:
    @pytest.mark.parametrize(
        "pattern,email",
        [
            ("%@hr.example.com", "ayse@hr.example.com"),
            ("*@hr.example.com", "ayse@hr.example.com"),
            ("budget_@example.com", "budget1@example.com"),
            ("budget?@example.com", "budgetX@example.com"),
            ("%@HR.example.com", "Ayse@hr.EXAMPLE.com"),
            ("exact@example.com", "exact@example.com"),
        ],
    )
    def test_matches(self, pattern, email):
        assert pattern_matches(pattern, email)

    @pytest.mark.parametrize(
        "pattern,email",
        [
            ("%@hr.example.com", "ayse@example.com"),
            ("budget_@example.com", "budget12@example.com"),
            ("a.b@example.com", "axb@example.com"),
            ("", "anyone@example.com"),
        ],
    )
    def test_does_not_match(self, pattern, email):
        assert not pattern_matches(pattern, email)

    def test_department_name_or_code_matches(self):
        rule = _rule(pattern="%@nowhere.test", department_name="İnsan Kaynakları", department_code="HR")
        assert rule_matches(rule, "x@example.com", "İnsan Kaynakları")
        assert rule_matches(rule, "x@example.com", " hr ")
        assert not rule_matches(rule, "x@example.com", "Finance")
        assert not rule_matches(rule, "x@example.com", None)


class TestDefaultRole:
    def test_highest_priority_rule_wins(self, services):
        store = services.store
        store.create_organization_rule("%@example.com", "GEN", "General", 1, priority=1)
        store.create_organization_rule("%@example.com", "BUD", "Budget", 3, priority=10)
        decision = services.rbac.default_role_for_email("someone@example.com")
        assert decision.role_code == "BUTCE_YONETICI"
        assert decision.source == "rule"
        assert decision.rule_id == 2

    def test_tie_goes_to_oldest_rule(self, services):
        store = services.store
        store.create_organization_rule("%@example.com", "HR", "HR", 2, priority=5)
        store.create_organization_rule("%@example.com", "BUD", "Budget", 3, priority=5)
        decision = services.rbac.default_role_for_email("someone@example.com")
        assert decision.role_code == "IK_YONETICI"
        assert decision.rule_id == 1

    def test_inactive_rules_are_ignored(self, services):
        store = services.store
        rule = store.create_organization_rule("%@example.com", "BUD", "Budget", 3, priority=5)
        store.deactivate_organization_rule(rule.id)
        decision = services.rbac.default_role_for_email("someone@example.com")
        assert decision.role_code == "CALISAN"
        assert decision.source == "home_domain"

    def test_department_rule(self, services):
        services.store.create_organization_rule("%@hr.invalid", "HR", "İnsan Kaynakları", 2)
        decision = services.rbac.default_role_for_email("ayse@example.com", "hr")
        assert decision.role_code == "IK_YONETICI"

    def test_external_domain_gets_hard_default(self, services):
        decision = services.rbac.default_role_for_email("guest@partner.test")
        assert decision.role_code == "CALISAN"
        assert decision.source == "default"

    def test_rule_pointing_at_inactive_role_falls_back(self, services):
        store = services.store
        store.create_organization_rule("%@example.com", "BUD", "Budget", 3, priority=5)
        store.roles[3].is_active = False
        decision = services.rbac.default_role_for_email("someone@example.com")
        assert decision.role_code == "CALISAN"
        assert decision.source == "home_domain"

    def test_missing_default_role(self, tmp_path, store):
        rbac = RbacResolver(store, make_settings(tmp_path, default_role_code="NOPE"))
        decision = rbac.default_role_for_email("someone@example.com")
        assert decision.role_id is None

    def test_assign_default_role_replaces_roles(self, services):
        store = services.store
        user = store.create_user("ayse", "ayse@example.com", "x" * 64)
        store.set_user_roles(user.id, [2, 3])
        services.rbac.assign_default_role(user)
        assert store.get_user_roles(user.id).value == ["CALISAN"]


class TestGrants:
    def test_permissions_are_deduplicated_across_roles(self, services):
        store = services.store
        user = store.create_user("ayse", "ayse@example.com", "x" * 64)
        services.rbac.assign_roles(user, [1, 2, 3])
        permissions = services.rbac.permissions_for(user).value
        assert permissions == frozenset(
            {
                "IK.Bordro.KendiGoruntule",
                "IK.Bordro.TumGoruntule",
                "IK.Izin.KendiGoruntule",
                "IK.Izin.TumGoruntule",
                "IK.Izin.Onayla",
                "BUTCE.Kendi.Goruntule",
                "BUTCE.Tum.Goruntule",
                "BUTCE.Duzenle",
            }
        )
        assert services.rbac.roles_for(user).value == frozenset(
            {"CALISAN", "IK_YONETICI", "BUTCE_YONETICI"}
        )

    def test_assign_replaces_instead_of_merging(self, services):
        store = services.store
        user = store.create_user("ayse", "ayse@example.com", "x" * 64)
        services.rbac.assign_roles(user, [4])
        services.rbac.assign_roles(user, [1])
        assert services.rbac.roles_for(user).value == frozenset({"CALISAN"})
        assert "ADMIN.Yetki.Yonet" not in services.rbac.permissions_for(user).value

    def test_unknown_role_rejected(self, services):
        user = services.store.create_user("ayse", "ayse@example.com", "x" * 64)
        with pytest.raises(ConstraintViolation):
            services.rbac.assign_roles(user, [1, 42])

    def test_store_failure_is_reported_not_hidden(self, services, monkeypatch):
        user = services.store.create_user("ayse", "ayse@example.com", "x" * 64)
        monkeypatch.setattr(
            services.store,
            "get_user_permissions",
            lambda user_id: StorageResult.failure(StorageError("boom")),
        )
        result = services.rbac.permissions_for(user)
        assert not result.ok
        assert result.error.message == "boom"


class TestVisibleModules:
    def test_modules_in_display_order_with_granted_permissions(self, services):
        modules = services.rbac.visible_modules(
            ["ADMIN.Yetki.Yonet", "BUTCE.Duzenle", "IK.Izin.Onayla", "IK.Bordro.KendiGoruntule"]
        )
        assert [m.code for m in modules] == ["IK", "BUTCE", "ADMIN"]
        assert modules[0].permissions == ["IK.Bordro.KendiGoruntule", "IK.Izin.Onayla"]
        assert modules[1].icon == "wallet"

    def test_modules_without_grants_are_omitted(self, services):
        modules = services.rbac.visible_modules(["BUTCE.Kendi.Goruntule"])
        assert [m.code for m in modules] == ["BUTCE"]

    def test_inactive_module_hidden(self, services):
        services.store.modules[2].is_active = False
        modules = services.rbac.visible_modules(["BUTCE.Kendi.Goruntule", "IK.Izin.Onayla"])
        assert [m.code for m in modules] == ["IK"]

    def test_no_permissions_no_modules(self, services):
        assert services.rbac.visible_modules([]) == []
