from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol

from portal.config import Settings
from portal.logging import get_logger
from portal.service.directory import email_domain
from portal.storage.errors import StorageResult
from portal.storage.models import (
    Module,
    OrganizationRule,
    PermissionDetail,
    Role,
    User,
    VisibleModule,
)

logger = get_logger(__name__)


class RbacStore(Protocol):
    def get_user_roles(self, user_id: str) -> StorageResult[List[str]]: ...

    def get_user_permissions(self, user_id: str) -> StorageResult[List[str]]: ...

    def get_role(self, role_id: int) -> Optional[Role]: ...

    def get_role_by_code(self, code: str) -> Optional[Role]: ...

    def list_organization_rules(self, *, include_inactive: bool = False) -> List[OrganizationRule]: ...

    def set_user_roles(self, user_id: str, role_ids: Iterable[int]) -> None: ...

    def list_permissions(self) -> List[PermissionDetail]: ...

    def list_modules(self) -> List[Module]: ...


@dataclass
class RoleDecision:
    role_id: Optional[int]
    role_code: Optional[str]
    # "rule", "home_domain" or "default"
    source: str
    rule_id: Optional[int] = None


def _wildcard_regex(pattern: str) -> re.Pattern:
    parts = []
    for ch in pattern:
        if ch in "%*":
            parts.append(".*")
        elif ch in "_?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.IGNORECASE)


def pattern_matches(pattern: str, email: str) -> bool:
    """Match ``email`` against a LIKE-style pattern (``%``/``*`` and ``_``/``?``)."""
    if not pattern:
        return False
    return _wildcard_regex(pattern.strip()).fullmatch(email.strip()) is not None


def rule_matches(rule: OrganizationRule, email: str, department: Optional[str]) -> bool:
    if pattern_matches(rule.email_pattern, email):
        return True
    if department:
        wanted = department.strip().casefold()
        return wanted in {
            (rule.department_name or "").strip().casefold(),
            (rule.department_code or "").strip().casefold(),
        }
    return False


class RbacResolver:
    """Resolves effective roles and permissions and picks default roles."""

    def __init__(self, store: RbacStore, settings: Settings) -> None:
        self.store = store
        self.default_role_code = settings.default_role_code
        self.home_domain = settings.home_email_domain

    def permissions_for(self, user: User) -> StorageResult[FrozenSet[str]]:
        result = self.store.get_user_permissions(user.id)
        if not result.ok:
            return StorageResult.failure(result.error)
        return StorageResult.success(frozenset(result.value or []))

    def roles_for(self, user: User) -> StorageResult[FrozenSet[str]]:
        result = self.store.get_user_roles(user.id)
        if not result.ok:
            return StorageResult.failure(result.error)
        return StorageResult.success(frozenset(result.value or []))

    def match_rule(self, email: str, department: Optional[str] = None) -> Optional[OrganizationRule]:
        """Highest-priority active rule for the email/department; ties go to the oldest rule."""
        candidates = [
            rule
            for rule in self.store.list_organization_rules()
            if rule.is_active and rule_matches(rule, email, department)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda r: (-r.priority, r.id))

    def default_role_for_email(self, email: str, department: Optional[str] = None) -> RoleDecision:
        rule = self.match_rule(email, department)
        if rule:
            role = self.store.get_role(rule.default_role_id)
            if role and role.is_active:
                return RoleDecision(role.id, role.code, "rule", rule_id=rule.id)
            logger.warning(
                "organization_rule_role_unavailable",
                rule_id=rule.id,
                role_id=rule.default_role_id,
            )
        source = "home_domain" if email_domain(email) == self.home_domain else "default"
        role = self.store.get_role_by_code(self.default_role_code)
        if not role:
            logger.error("default_role_missing", role_code=self.default_role_code)
            return RoleDecision(None, None, source)
        return RoleDecision(role.id, role.code, source)

    def assign_roles(self, user: User, role_ids: Iterable[int]) -> None:
        """Replace the user's role set with ``role_ids``."""
        self.store.set_user_roles(user.id, list(role_ids))

    def assign_default_role(self, user: User, department: Optional[str] = None) -> RoleDecision:
        decision = self.default_role_for_email(user.email, department or user.department)
        if decision.role_id is not None:
            self.assign_roles(user, [decision.role_id])
        logger.info(
            "default_role_assigned",
            user_id=user.id,
            role_code=decision.role_code,
            source=decision.source,
            rule_id=decision.rule_id,
        )
        return decision

    def visible_modules(self, permission_codes: Iterable[str]) -> List[VisibleModule]:
        """Active modules in display order with the caller's permissions in each."""
        granted = set(permission_codes)
        by_module: Dict[str, List[str]] = {}
        for detail in self.store.list_permissions():
            if detail.code in granted:
                by_module.setdefault(detail.module_code, []).append(detail.code)
        modules = sorted(
            (m for m in self.store.list_modules() if m.is_active),
            key=lambda m: (m.display_order, m.id),
        )
        return [
            VisibleModule(code=m.code, name=m.name, icon=m.icon, permissions=by_module[m.code])
            for m in modules
            if by_module.get(m.code)
        ]
