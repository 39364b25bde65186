from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from portal.logging import get_logger
from portal.storage import seed
from portal.storage.errors import ConstraintViolation, StorageError, StorageResult
from portal.storage.models import (
    EmailVerificationToken,
    Module,
    OrganizationEmployee,
    OrganizationRule,
    PasswordResetToken,
    Permission,
    PermissionDetail,
    PermissionLevel,
    RefreshToken,
    Role,
    SubModule,
    User,
    utcnow,
)

R = TypeVar("R")

_DATETIME_FIELDS = {
    "created_at",
    "last_login_at",
    "expires_at",
    "revoked_at",
    "used_at",
}


class MemoryStore:
    """In-process credential and RBAC store.

    Used for development and tests. State can optionally be written to
    ``fs_root/state/memory_store.json`` after every mutation so a dev server
    keeps its users across restarts.
    """

    def __init__(self, fs_root: Optional[str] = None, *, supports_pending: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.supports_pending = supports_pending
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.verification_tokens: Dict[str, EmailVerificationToken] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.roles: Dict[int, Role] = {}
        self.modules: Dict[int, Module] = {}
        self.sub_modules: Dict[int, SubModule] = {}
        self.permission_levels: Dict[int, PermissionLevel] = {}
        self.permissions: Dict[int, Permission] = {}
        self.role_permissions: Dict[int, List[int]] = {}
        self.user_roles: Dict[str, List[int]] = {}
        self.organization_rules: Dict[int, OrganizationRule] = {}
        self.employees: Dict[str, OrganizationEmployee] = {}
        self._rule_id_seq = 1
        # RLock so helpers can re-enter from already-locked methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None

        if not self._load_state():
            self.default_rbac()
            self._persist_state()

    def default_rbac(self) -> None:
        """Load the default module/permission/role catalogue."""
        with self._data_lock:
            self.modules = {m.id: replace(m) for m in seed.MODULES}
            self.sub_modules = {s.id: replace(s) for s in seed.SUB_MODULES}
            self.permission_levels = {lv.id: replace(lv) for lv in seed.PERMISSION_LEVELS}
            self.permissions = {p.id: replace(p) for p in seed.PERMISSIONS}
            self.roles = {r.id: replace(r) for r in seed.ROLES}
            self.role_permissions = {
                role_id: list(perm_ids) for role_id, perm_ids in seed.ROLE_PERMISSIONS.items()
            }

    # users
    @staticmethod
    def _visible(user: User, include_pending: bool) -> bool:
        return user.is_active or (include_pending and user.is_pending)

    def _find_conflict(
        self, username: str, email: str, tenant_id: str, include_pending: bool
    ) -> Optional[User]:
        uname = username.lower()
        mail = email.lower()
        for existing in self.users.values():
            if not self._visible(existing, include_pending):
                continue
            if existing.email == mail:
                return existing
            if existing.username.lower() == uname and existing.tenant_id == tenant_id:
                return existing
        return None

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        department: Optional[str] = None,
        tenant_id: str = "00",
        pending: bool = False,
    ) -> User:
        if pending and not self.supports_pending:
            raise StorageError("pending verification state unsupported", operation="create_user")
        with self._data_lock:
            conflict = self._find_conflict(username, email, tenant_id, include_pending=True)
            if conflict:
                field_name = "email" if conflict.email == email.lower() else "username"
                raise ConstraintViolation(f"{field_name} already exists", {"field": field_name})
            user = User.new(
                username,
                email,
                password_hash,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                department=department,
                tenant_id=tenant_id,
                pending=pending,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(
        self, username: str, tenant_id: Optional[str] = None, *, include_pending: bool = False
    ) -> Optional[User]:
        uname = username.lower()
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if u.username.lower() == uname
                and (tenant_id is None or u.tenant_id == tenant_id)
                and self._visible(u, include_pending)
            ]
            return min(matches, key=lambda u: u.created_at, default=None)

    def get_user_by_email(self, email: str, *, include_pending: bool = False) -> Optional[User]:
        mail = email.lower()
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email == mail and self._visible(u, include_pending)
                ),
                None,
            )

    def user_exists(
        self, username: str, email: str, tenant_id: str, *, include_pending: bool = False
    ) -> bool:
        with self._data_lock:
            return self._find_conflict(username, email, tenant_id, include_pending) is not None

    def list_users(self, tenant_id: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = [
                u for u in self.users.values() if not tenant_id or u.tenant_id == tenant_id
            ]
            return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def _mutate_user(self, user_id: str, **changes: Any) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            for key, value in changes.items():
                setattr(user, key, value)
            self._persist_state()

    def update_last_login(self, user_id: str) -> None:
        self._mutate_user(user_id, last_login_at=utcnow())

    def update_password(self, user_id: str, password_hash: str) -> None:
        self._mutate_user(user_id, password_hash=password_hash)

    def verify_user_email(self, user_id: str) -> None:
        self._mutate_user(user_id, is_active=True, is_email_verified=True, is_pending=False)

    def deactivate_user(self, user_id: str) -> None:
        self._mutate_user(user_id, is_active=False, is_pending=False)

    # refresh tokens
    def create_refresh_token(
        self,
        user_id: str,
        tenant_id: str,
        token: str,
        expires_at: datetime,
        created_by_ip: Optional[str] = None,
    ) -> RefreshToken:
        with self._data_lock:
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken(
                token=token,
                user_id=user_id,
                tenant_id=tenant_id,
                expires_at=expires_at,
                created_by_ip=created_by_ip,
            )
            self.refresh_tokens[token] = record
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record:
                return None
            return replace(record, user=self.users.get(record.user_id))

    def revoke_refresh_token(
        self,
        token: str,
        revoked_by_ip: Optional[str] = None,
        replaced_by_token: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = utcnow()
            record.revoked_by_ip = revoked_by_ip
            record.replaced_by_token = replaced_by_token
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        revoked_by_ip: Optional[str] = None,
        except_token: Optional[str] = None,
    ) -> int:
        now = utcnow()
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id != user_id or record.token == except_token:
                    continue
                if record.is_active(now):
                    record.revoked_at = now
                    record.revoked_by_ip = revoked_by_ip
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return sorted(
                (replace(t) for t in self.refresh_tokens.values() if t.user_id == user_id),
                key=lambda t: t.created_at,
            )

    # single-use tokens
    def create_email_verification_token(
        self, user_id: str, username: str, email: str, token: str, expires_at: datetime
    ) -> EmailVerificationToken:
        record = EmailVerificationToken(
            token=token, user_id=user_id, username=username, email=email.lower(), expires_at=expires_at
        )
        with self._data_lock:
            self.verification_tokens[token] = record
            self._persist_state()
        return replace(record)

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            record = self.verification_tokens.get(token)
            return replace(record) if record else None

    def mark_email_verification_token_used(self, token: str) -> None:
        with self._data_lock:
            record = self.verification_tokens.get(token)
            if record and not record.is_used:
                record.is_used = True
                record.used_at = utcnow()
                self._persist_state()

    def create_password_reset_token(
        self, user_id: str, username: str, email: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        record = PasswordResetToken(
            token=token, user_id=user_id, username=username, email=email.lower(), expires_at=expires_at
        )
        with self._data_lock:
            self.reset_tokens[token] = record
            self._persist_state()
        return replace(record)

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token)
            return replace(record) if record else None

    def mark_password_reset_token_used(self, token: str) -> None:
        with self._data_lock:
            record = self.reset_tokens.get(token)
            if record and not record.is_used:
                record.is_used = True
                record.used_at = utcnow()
                self._persist_state()

    def invalidate_password_reset_tokens(self, user_id: str) -> int:
        now = utcnow()
        with self._data_lock:
            stale = [
                t for t in self.reset_tokens.values() if t.user_id == user_id and not t.is_used
            ]
            for record in stale:
                record.is_used = True
                record.used_at = now
            if stale:
                self._persist_state()
            return len(stale)

    # rbac
    def _active_role_ids(self, user_id: str) -> List[int]:
        return [
            rid
            for rid in self.user_roles.get(user_id, [])
            if rid in self.roles and self.roles[rid].is_active
        ]

    def _permission_details(self, permission_ids: Iterable[int]) -> List[PermissionDetail]:
        details = []
        for pid in set(permission_ids):
            perm = self.permissions.get(pid)
            if not perm:
                continue
            sub = self.sub_modules.get(perm.sub_module_id)
            module = self.modules.get(sub.module_id) if sub else None
            level = self.permission_levels.get(perm.level_id)
            if not sub or not module or not level:
                continue
            details.append(
                PermissionDetail(
                    id=perm.id,
                    code=perm.code,
                    name=perm.name,
                    sub_module_id=perm.sub_module_id,
                    level_id=perm.level_id,
                    module_code=module.code,
                    module_name=module.name,
                    sub_module_name=sub.name,
                    level_name=level.name,
                    level=level.level,
                    module_order=module.display_order,
                    sub_module_order=sub.display_order,
                    description=perm.description,
                )
            )
        details.sort(key=lambda d: (d.module_order, d.sub_module_order, d.level, d.id))
        return details

    def get_user_role_ids(self, user_id: str) -> StorageResult[List[int]]:
        with self._data_lock:
            return StorageResult.success(self._active_role_ids(user_id))

    def get_user_roles(self, user_id: str) -> StorageResult[List[str]]:
        with self._data_lock:
            return StorageResult.success(
                [self.roles[rid].code for rid in sorted(self._active_role_ids(user_id))]
            )

    def get_user_permissions(self, user_id: str) -> StorageResult[List[str]]:
        with self._data_lock:
            perm_ids = {
                pid
                for rid in self._active_role_ids(user_id)
                for pid in self.role_permissions.get(rid, [])
            }
            return StorageResult.success([d.code for d in self._permission_details(perm_ids)])

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [replace(r) for r in sorted(self.roles.values(), key=lambda r: r.id)]

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.code == code), None)
            return replace(role) if role else None

    def list_permissions(self) -> List[PermissionDetail]:
        with self._data_lock:
            return self._permission_details(self.permissions.keys())

    def list_permission_levels(self) -> List[PermissionLevel]:
        with self._data_lock:
            return sorted(self.permission_levels.values(), key=lambda lv: lv.level)

    def list_modules(self) -> List[Module]:
        with self._data_lock:
            return sorted(self.modules.values(), key=lambda m: (m.display_order, m.id))

    def list_sub_modules(self) -> List[SubModule]:
        with self._data_lock:
            return sorted(
                self.sub_modules.values(), key=lambda s: (s.module_id, s.display_order, s.id)
            )

    def get_role_permission_ids(self, role_id: int) -> List[int]:
        with self._data_lock:
            return sorted(self.role_permissions.get(role_id, []))

    def set_role_permissions(self, role_id: int, permission_ids: Iterable[int]) -> None:
        ids = sorted(set(permission_ids))
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role missing", {"role_id": role_id})
            unknown = [pid for pid in ids if pid not in self.permissions]
            if unknown:
                raise ConstraintViolation("unknown permission", {"permission_ids": unknown})
            self.role_permissions[role_id] = ids
            self._persist_state()

    def set_user_roles(self, user_id: str, role_ids: Iterable[int]) -> None:
        ids = sorted(set(role_ids))
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user missing", {"user_id": user_id})
            unknown = [rid for rid in ids if rid not in self.roles]
            if unknown:
                raise ConstraintViolation("unknown role", {"role_ids": unknown})
            self.user_roles[user_id] = ids
            self._persist_state()

    # organization rules
    def list_organization_rules(self, *, include_inactive: bool = False) -> List[OrganizationRule]:
        with self._data_lock:
            rules = [
                replace(r)
                for r in self.organization_rules.values()
                if include_inactive or r.is_active
            ]
            return sorted(rules, key=lambda r: (-r.priority, r.id))

    def get_organization_rule(self, rule_id: int) -> Optional[OrganizationRule]:
        with self._data_lock:
            rule = self.organization_rules.get(rule_id)
            return replace(rule) if rule else None

    def create_organization_rule(
        self,
        email_pattern: str,
        department_code: str,
        department_name: str,
        default_role_id: int,
        priority: int = 0,
    ) -> OrganizationRule:
        with self._data_lock:
            if default_role_id not in self.roles:
                raise ConstraintViolation("role missing", {"role_id": default_role_id})
            rule = OrganizationRule(
                id=self._rule_id_seq,
                email_pattern=email_pattern,
                department_code=department_code,
                department_name=department_name,
                default_role_id=default_role_id,
                priority=priority,
            )
            self._rule_id_seq += 1
            self.organization_rules[rule.id] = rule
            self._persist_state()
            return replace(rule)

    def update_organization_rule(self, rule_id: int, **changes: Any) -> Optional[OrganizationRule]:
        allowed = {
            "email_pattern",
            "department_code",
            "department_name",
            "default_role_id",
            "priority",
            "is_active",
        }
        with self._data_lock:
            rule = self.organization_rules.get(rule_id)
            if not rule:
                return None
            role_id = changes.get("default_role_id")
            if role_id is not None and role_id not in self.roles:
                raise ConstraintViolation("role missing", {"role_id": role_id})
            for key, value in changes.items():
                if key in allowed and value is not None:
                    setattr(rule, key, value)
            self._persist_state()
            return replace(rule)

    def deactivate_organization_rule(self, rule_id: int) -> bool:
        with self._data_lock:
            rule = self.organization_rules.get(rule_id)
            if not rule:
                return False
            rule.is_active = False
            self._persist_state()
            return True

    # organization directory
    def add_employee(self, employee: OrganizationEmployee) -> None:
        with self._data_lock:
            self.employees[employee.email.lower()] = employee
            self._persist_state()

    def get_employee_by_email(self, email: str) -> StorageResult[Optional[OrganizationEmployee]]:
        with self._data_lock:
            return StorageResult.success(self.employees.get(email.lower()))

    # persistence
    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(record: Any) -> dict:
        data = asdict(record)
        data.pop("user", None)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(model: Type[R], data: dict) -> R:
        names = {f.name for f in fields(model)}
        kwargs = {}
        for key, value in data.items():
            if key not in names:
                continue
            if key in _DATETIME_FIELDS and isinstance(value, str):
                value = datetime.fromisoformat(value)
            kwargs[key] = value
        return model(**kwargs)

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        with self._data_lock:
            state = {
                "users": [self._serialize(u) for u in self.users.values()],
                "refresh_tokens": [self._serialize(t) for t in self.refresh_tokens.values()],
                "verification_tokens": [
                    self._serialize(t) for t in self.verification_tokens.values()
                ],
                "reset_tokens": [self._serialize(t) for t in self.reset_tokens.values()],
                "roles": [self._serialize(r) for r in self.roles.values()],
                "modules": [self._serialize(m) for m in self.modules.values()],
                "sub_modules": [self._serialize(s) for s in self.sub_modules.values()],
                "permission_levels": [
                    self._serialize(lv) for lv in self.permission_levels.values()
                ],
                "permissions": [self._serialize(p) for p in self.permissions.values()],
                "role_permissions": {str(k): v for k, v in self.role_permissions.items()},
                "user_roles": self.user_roles,
                "organization_rules": [
                    self._serialize(r) for r in self.organization_rules.values()
                ],
                "employees": [self._serialize(e) for e in self.employees.values()],
            }
            # replace under the lock so an older snapshot never lands last
            tmp_path = None
            try:
                fd, tmp_path = tempfile.mkstemp(
                    dir=str(path.parent), prefix=f"{path.stem}_", suffix=".tmp"
                )
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(state, handle, indent=2)
                os.replace(tmp_path, path)
            except OSError as exc:
                if tmp_path and os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                self.logger.error("memory_state_persist_failed", error=str(exc), path=str(path))
                raise StorageError(
                    f"failed to persist in-memory state: {exc}", operation="persist"
                ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        with self._data_lock:
            self.users = {u["id"]: self._deserialize(User, u) for u in data.get("users", [])}
            self.refresh_tokens = {
                t["token"]: self._deserialize(RefreshToken, t)
                for t in data.get("refresh_tokens", [])
            }
            self.verification_tokens = {
                t["token"]: self._deserialize(EmailVerificationToken, t)
                for t in data.get("verification_tokens", [])
            }
            self.reset_tokens = {
                t["token"]: self._deserialize(PasswordResetToken, t)
                for t in data.get("reset_tokens", [])
            }
            self.roles = {r["id"]: self._deserialize(Role, r) for r in data.get("roles", [])}
            self.modules = {m["id"]: self._deserialize(Module, m) for m in data.get("modules", [])}
            self.sub_modules = {
                s["id"]: self._deserialize(SubModule, s) for s in data.get("sub_modules", [])
            }
            self.permission_levels = {
                lv["id"]: self._deserialize(PermissionLevel, lv)
                for lv in data.get("permission_levels", [])
            }
            self.permissions = {
                p["id"]: self._deserialize(Permission, p) for p in data.get("permissions", [])
            }
            self.role_permissions = {
                int(k): list(v) for k, v in data.get("role_permissions", {}).items()
            }
            self.user_roles = {k: list(v) for k, v in data.get("user_roles", {}).items()}
            self.organization_rules = {
                r["id"]: self._deserialize(OrganizationRule, r)
                for r in data.get("organization_rules", [])
            }
            self.employees = {
                e["email"].lower(): self._deserialize(OrganizationEmployee, e)
                for e in data.get("employees", [])
            }
            self._rule_id_seq = max(self.organization_rules, default=0) + 1
        self.logger.info("memory_store_state_loaded", users=len(self.users), path=str(path))
        return True
