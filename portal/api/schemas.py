from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform response wrapper for every JSON endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ApiModel(BaseModel):
    """Request/response body that speaks camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_email(value: str) -> str:
    """Normalize an address to lower case and NFKC, raising ValueError if malformed."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9._@-]+$")


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if not value:
        raise ValueError("username is required")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may contain letters, digits, '.', '_', '-' and '@'")
    return value


# --- /api/auth requests ---------------------------------------------------


class LoginRequest(ApiModel):
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=256)
    tenant_id: Optional[str] = Field(default=None, max_length=16)


class RegisterRequest(ApiModel):
    username: str = Field(..., max_length=64)
    email: str
    password: str = Field(..., max_length=256)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return validate_email(value)


class EmailRequest(ApiModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return validate_email(value)


class VerifyEmailRequest(ApiModel):
    token: str = Field(..., min_length=1, max_length=256)


class RefreshTokenRequest(ApiModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class ChangePasswordRequest(ApiModel):
    current_password: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)
    # the session to keep when other sessions are revoked
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ResetPasswordRequest(ApiModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=256)


# --- /api/auth responses --------------------------------------------------


class AuthResponse(ApiModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expiration: datetime
    refresh_token_expiration: datetime
    user_id: str
    username: str
    email: str
    first_name: str
    last_name: str
    tenant_id: str
    permissions: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)


class RegisterResponse(ApiModel):
    success: bool
    message: str
    requires_verification: bool
    username: str
    email: str
    first_name: str
    last_name: str
    auth_data: Optional[AuthResponse] = None


class VerifyEmailResponse(ApiModel):
    success: bool
    message: str
    auth_data: Optional[AuthResponse] = None


class MessageResponse(ApiModel):
    success: bool = True
    message: str


class CheckEmailResponse(ApiModel):
    found: bool
    eligible: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    department: Optional[str] = None
    position: Optional[str] = None
    title: Optional[str] = None
    phone: Optional[str] = None


class VisibleModuleResponse(ApiModel):
    code: str
    name: str
    icon: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)


class MeResponse(ApiModel):
    user_id: str
    username: str
    email: str
    first_name: str
    last_name: str
    tenant_id: str
    permissions: List[str]
    roles: List[str]
    modules: List[VisibleModuleResponse]


# --- /api/admin -----------------------------------------------------------


class UserResponse(ApiModel):
    id: str
    username: str
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    department: Optional[str] = None
    tenant_id: str
    is_active: bool
    is_email_verified: bool
    is_pending: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None
    roles: List[str] = Field(default_factory=list)


class UserRolesRequest(ApiModel):
    role_ids: List[int] = Field(default_factory=list, max_length=100)


class RoleResponse(ApiModel):
    id: int
    code: str
    name: str
    description: Optional[str] = None
    is_active: bool
    permission_ids: List[int] = Field(default_factory=list)


class RolePermissionsRequest(ApiModel):
    permission_ids: List[int] = Field(default_factory=list, max_length=1000)


class PermissionResponse(ApiModel):
    id: int
    code: str
    name: str
    description: Optional[str] = None
    module_code: str
    module_name: str
    sub_module_id: int
    sub_module_name: str
    level_id: int
    level: int
    level_name: str


class PermissionLevelResponse(ApiModel):
    id: int
    level: int
    code: str
    name: str
    description: Optional[str] = None


class SubModuleResponse(ApiModel):
    id: int
    code: str
    name: str
    description: Optional[str] = None
    display_order: int
    is_active: bool


class ModuleResponse(ApiModel):
    id: int
    code: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    display_order: int
    is_active: bool
    sub_modules: List[SubModuleResponse] = Field(default_factory=list)


class OrganizationRuleRequest(ApiModel):
    email_pattern: str = Field(..., min_length=1, max_length=254)
    department_code: Optional[str] = Field(default=None, max_length=64)
    department_name: Optional[str] = Field(default=None, max_length=200)
    default_role_id: int
    priority: int = 0

    @field_validator("email_pattern")
    @classmethod
    def _normalize_pattern(cls, value: str) -> str:
        return value.strip().lower()


class OrganizationRuleUpdateRequest(ApiModel):
    email_pattern: Optional[str] = Field(default=None, min_length=1, max_length=254)
    department_code: Optional[str] = Field(default=None, max_length=64)
    department_name: Optional[str] = Field(default=None, max_length=200)
    default_role_id: Optional[int] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class OrganizationRuleResponse(ApiModel):
    id: int
    email_pattern: str
    department_code: Optional[str] = None
    department_name: Optional[str] = None
    default_role_id: int
    priority: int
    is_active: bool
    created_at: datetime
