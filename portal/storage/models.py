from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    department: Optional[str] = None
    tenant_id: str = "00"
    is_active: bool = True
    is_email_verified: bool = False
    # awaiting email verification; pending users are inactive
    is_pending: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
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
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email.lower(),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            department=department,
            tenant_id=tenant_id,
            is_active=not pending,
            is_email_verified=False,
            is_pending=pending,
        )


@dataclass
class Role:
    id: int
    code: str
    name: str
    description: Optional[str] = None
    is_active: bool = True


@dataclass
class Module:
    id: int
    code: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    display_order: int = 0
    is_active: bool = True


@dataclass
class SubModule:
    id: int
    module_id: int
    code: str
    name: str
    description: Optional[str] = None
    display_order: int = 0
    is_active: bool = True


@dataclass
class PermissionLevel:
    id: int
    level: int
    code: str
    name: str
    description: Optional[str] = None


@dataclass
class Permission:
    id: int
    code: str
    name: str
    sub_module_id: int
    level_id: int
    description: Optional[str] = None


@dataclass
class PermissionDetail:
    """A permission joined with its grouping hierarchy."""

    id: int
    code: str
    name: str
    sub_module_id: int
    level_id: int
    module_code: str
    module_name: str
    sub_module_name: str
    level_name: str
    level: int
    module_order: int = 0
    sub_module_order: int = 0
    description: Optional[str] = None


@dataclass
class OrganizationRule:
    id: int
    email_pattern: str
    department_code: str
    department_name: str
    default_role_id: int
    priority: int = 0
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OrganizationEmployee:
    """A row of the organization directory used for registration eligibility."""

    email: str
    first_name: str
    last_name: str
    department: Optional[str] = None
    position: Optional[str] = None
    title: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class RefreshToken:
    token: str
    user_id: str
    tenant_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    created_by_ip: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by_ip: Optional[str] = None
    replaced_by_token: Optional[str] = None
    # owning user, populated by fetch-by-token
    user: Optional[User] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.revoked_at is None and (now or utcnow()) < self.expires_at


@dataclass
class SingleUseToken:
    token: str
    user_id: str
    username: str
    email: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    is_used: bool = False
    used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls, token: str, user: User, ttl: timedelta
    ) -> "SingleUseToken":
        now = utcnow()
        return cls(
            token=token,
            user_id=user.id,
            username=user.username,
            email=user.email,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class EmailVerificationToken(SingleUseToken):
    pass


@dataclass
class PasswordResetToken(SingleUseToken):
    pass


@dataclass
class VisibleModule:
    code: str
    name: str
    icon: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
