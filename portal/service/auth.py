from __future__ import annotations

import asyncio
import functools
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol

from portal.config import Settings
from portal.logging import get_logger
from portal.service.directory import DirectoryService
from portal.service.email import EmailService
from portal.service.errors import AuthFailure, AuthResult
from portal.service.passwords import PasswordService
from portal.service.rbac import RbacResolver
from portal.service.tokens import AuthContext, TokenIssuer
from portal.storage.errors import ConstraintViolation, StorageError
from portal.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    RefreshToken,
    SingleUseToken,
    User,
    VisibleModule,
    utcnow,
)

logger = get_logger(__name__)

INTERNAL_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."
FORGOT_PASSWORD_MESSAGE = "If an account exists for this email, a password reset link has been sent."
RESEND_VERIFICATION_MESSAGE = (
    "If a registration is awaiting verification for this email, a new link has been sent."
)


class CredentialStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(
        self, username: str, tenant_id: Optional[str] = None, *, include_pending: bool = False
    ) -> Optional[User]: ...

    def get_user_by_email(self, email: str, *, include_pending: bool = False) -> Optional[User]: ...

    def user_exists(
        self, username: str, email: str, tenant_id: str, *, include_pending: bool = False
    ) -> bool: ...

    def update_last_login(self, user_id: str) -> None: ...

    def update_password(self, user_id: str, password_hash: str) -> None: ...

    def verify_user_email(self, user_id: str) -> None: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, revoked_by_ip: Optional[str] = None, except_token: Optional[str] = None
    ) -> int: ...

    def create_email_verification_token(
        self, user_id: str, username: str, email: str, token: str, expires_at: datetime
    ) -> EmailVerificationToken: ...

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]: ...

    def mark_email_verification_token_used(self, token: str) -> None: ...

    def create_password_reset_token(
        self, user_id: str, username: str, email: str, token: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]: ...

    def mark_password_reset_token_used(self, token: str) -> None: ...

    def invalidate_password_reset_tokens(self, user_id: str) -> int: ...


@dataclass
class AuthPayload:
    user_id: str
    username: str
    email: str
    first_name: str
    last_name: str
    tenant_id: str
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    permissions: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)


@dataclass
class RegistrationOutcome:
    requires_verification: bool
    username: str
    email: str
    first_name: str
    last_name: str
    # set when the account is active immediately
    auth: Optional[AuthPayload] = None


@dataclass
class UserInfo:
    user_id: str
    username: str
    email: str
    first_name: str
    last_name: str
    tenant_id: str
    permissions: List[str]
    roles: List[str]
    modules: List[VisibleModule]


@dataclass
class EmailCheck:
    found: bool
    eligible: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    department: Optional[str] = None
    position: Optional[str] = None
    title: Optional[str] = None
    phone: Optional[str] = None


def _workflow(name: str) -> Callable:
    """Convert unexpected faults inside a workflow into an INTERNAL result."""

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        async def wrapper(self: "AuthService", *args: Any, **kwargs: Any) -> AuthResult:
            try:
                return await fn(self, *args, **kwargs)
            except Exception:
                logger.exception("auth_workflow_failed", workflow=name)
                return AuthResult.fail(AuthFailure.INTERNAL, INTERNAL_ERROR_MESSAGE)

        return wrapper

    return decorator


class AuthService:
    """Login, registration, verification, password and refresh-token workflows.

    Every public workflow returns an :class:`AuthResult`. Business failures
    (bad credentials, ineligible email, stale tokens...) are reported as
    ``AuthFailure`` values; unexpected store or mail faults become
    ``AuthFailure.INTERNAL`` with a generic message.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        passwords: PasswordService,
        tokens: TokenIssuer,
        rbac: RbacResolver,
        directory: DirectoryService,
        email: EmailService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.tokens = tokens
        self.rbac = rbac
        self.directory = directory
        self.email = email
        self._clock = clock
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _new_single_use_token() -> str:
        return secrets.token_urlsafe(32)

    def _burn_password_check(self, password: str) -> None:
        # spend the same hashing time for unknown users as for known ones
        if self._dummy_hash is None:
            self._dummy_hash = self.passwords.hash(secrets.token_urlsafe(16))
        self.passwords.verify(password, self._dummy_hash)

    def _password_too_short(self, password: str) -> Optional[AuthResult]:
        minimum = self.settings.min_password_length
        if len(password or "") < minimum:
            return AuthResult.fail(
                AuthFailure.VALIDATION_ERROR,
                f"Password must be at least {minimum} characters",
            )
        return None

    def _check_single_use(self, record: Optional[SingleUseToken], kind: str) -> Optional[AuthResult]:
        if record is None:
            return AuthResult.fail(AuthFailure.INVALID_TOKEN, f"Invalid {kind} token")
        if record.is_used:
            return AuthResult.fail(AuthFailure.ALREADY_USED, f"This {kind} link has already been used")
        if record.is_expired(self._now()):
            return AuthResult.fail(AuthFailure.EXPIRED, f"This {kind} link has expired")
        return None

    def _resolve_grants(self, user: User) -> tuple[frozenset, frozenset]:
        """Current permissions and roles, with fallbacks when lookups fail."""
        permissions = self.rbac.permissions_for(user)
        if not permissions.ok:
            logger.warning(
                "rbac_permissions_degraded", user_id=user.id, error=permissions.error.message
            )
        roles = self.rbac.roles_for(user)
        if not roles.ok:
            logger.warning("rbac_roles_degraded", user_id=user.id, error=roles.error.message)
        return (
            permissions.unwrap_or(frozenset()),
            roles.unwrap_or(frozenset({self.settings.default_role_code})),
        )

    def _auth_payload(self, user: User, pair, permissions: frozenset, roles: frozenset) -> AuthPayload:
        return AuthPayload(
            user_id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            tenant_id=user.tenant_id,
            access_token=pair.access_token,
            access_token_expires_at=pair.access_token_expires_at,
            refresh_token=pair.refresh_token,
            refresh_token_expires_at=pair.refresh_token_expires_at,
            permissions=sorted(permissions),
            roles=sorted(roles),
        )

    def _issue(self, user: User, client_ip: Optional[str]) -> AuthPayload:
        permissions, roles = self._resolve_grants(user)
        pair = self.tokens.issue_pair(user, permissions, roles, client_ip)
        return self._auth_payload(user, pair, permissions, roles)

    async def _send_verification(self, user: User) -> EmailVerificationToken:
        expires_at = self._now() + timedelta(hours=self.settings.verification_token_ttl_hours)
        record = self.store.create_email_verification_token(
            user.id, user.username, user.email, self._new_single_use_token(), expires_at
        )
        sent = await asyncio.to_thread(
            self.email.send_email_verification, user.email, user.first_name, record.token
        )
        if not sent:
            # registration stands; the user can ask for another link
            logger.warning("verification_email_failed", user_id=user.id)
        return record

    @_workflow("login")
    async def login(
        self,
        username: str,
        password: str,
        client_ip: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> AuthResult[AuthPayload]:
        user = self.store.get_user_by_username(username.strip(), tenant_id)
        if not user:
            self._burn_password_check(password)
            logger.info("login_failed", reason="unknown_user")
            return AuthResult.fail(AuthFailure.INVALID_CREDENTIALS, "Invalid username or password")
        if not self.passwords.verify(password, user.password_hash):
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            return AuthResult.fail(AuthFailure.INVALID_CREDENTIALS, "Invalid username or password")

        if self.passwords.needs_rehash(user.password_hash):
            self.store.update_password(user.id, self.passwords.hash(password))
            logger.info("password_hash_upgraded", user_id=user.id)
        self.store.update_last_login(user.id)
        payload = self._issue(user, client_ip)
        logger.info("login_succeeded", user_id=user.id, client_ip=client_ip)
        return AuthResult.success(payload, "Login successful")

    @_workflow("register")
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        client_ip: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> AuthResult[RegistrationOutcome]:
        tenant = tenant_id or self.settings.default_tenant_id
        username = username.strip()
        email = email.strip().lower()
        too_short = self._password_too_short(password)
        if too_short:
            return too_short

        eligibility = self.directory.eligibility(email)
        if not eligibility.eligible:
            logger.info("registration_ineligible_email", domain=email.rsplit("@", 1)[-1])
            return AuthResult.fail(
                AuthFailure.INELIGIBLE_EMAIL,
                "This email address is not eligible for registration",
            )
        department = None
        phone = None
        employee = eligibility.employee
        if employee:
            # directory data wins over what the registrant typed
            first_name = employee.first_name or first_name
            last_name = employee.last_name or last_name
            department = employee.department
            phone = employee.phone

        if self.store.user_exists(username, email, tenant, include_pending=True):
            return AuthResult.fail(
                AuthFailure.DUPLICATE_USER, "A user with this username or email already exists"
            )

        password_hash = self.passwords.hash(password)
        fields = dict(
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            department=department,
            tenant_id=tenant,
        )
        pending = self.settings.email_verification_enabled
        try:
            user = None
            if pending:
                try:
                    user = self.store.create_user(
                        username, email, password_hash, pending=True, **fields
                    )
                except StorageError as exc:
                    logger.warning("registration_pending_unsupported", error=exc.message)
                    pending = False
            if user is None:
                user = self.store.create_user(username, email, password_hash, pending=False, **fields)
        except ConstraintViolation:
            return AuthResult.fail(
                AuthFailure.DUPLICATE_USER, "A user with this username or email already exists"
            )

        outcome = RegistrationOutcome(
            requires_verification=pending,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
        )
        if pending:
            await self._send_verification(user)
            logger.info("registration_pending_verification", user_id=user.id)
            return AuthResult.success(
                outcome, "Registration received. Check your email to verify your account."
            )

        # no verification step will follow, so the role is assigned now
        self.rbac.assign_default_role(user, department)
        outcome.auth = self._issue(user, client_ip)
        logger.info("registration_completed", user_id=user.id)
        return AuthResult.success(outcome, "Registration complete")

    @_workflow("verify_email")
    async def verify_email(self, token: str, client_ip: Optional[str] = None) -> AuthResult[AuthPayload]:
        record = self.store.get_email_verification_token(token)
        rejected = self._check_single_use(record, "verification")
        if rejected:
            logger.info("email_verification_rejected", reason=rejected.failure.value)
            return rejected
        user = self.store.get_user(record.user_id)
        if not user or not (user.is_pending or user.is_active):
            return AuthResult.fail(AuthFailure.INVALID_TOKEN, "Invalid verification token")
        self.store.mark_email_verification_token_used(record.token)
        if user.is_email_verified:
            return AuthResult.fail(AuthFailure.ALREADY_USED, "This email address is already verified")

        self.store.verify_user_email(user.id)
        user = self.store.get_user(user.id)
        self.rbac.assign_default_role(user)
        payload = self._issue(user, client_ip)
        logger.info("email_verified", user_id=user.id)
        return AuthResult.success(payload, "Email verified")

    @_workflow("resend_verification")
    async def resend_verification(self, email: str) -> AuthResult[None]:
        email = email.strip().lower()
        if not self.directory.eligibility(email).eligible:
            return AuthResult.fail(
                AuthFailure.INELIGIBLE_EMAIL,
                "This email address is not eligible for registration",
            )
        user = self.store.get_user_by_email(email, include_pending=True)
        if user and user.is_pending:
            await self._send_verification(user)
            logger.info("verification_resent", user_id=user.id)
        return AuthResult.success(None, RESEND_VERIFICATION_MESSAGE)

    @_workflow("change_password")
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        client_ip: Optional[str] = None,
        keep_refresh_token: Optional[str] = None,
    ) -> AuthResult[None]:
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            return AuthResult.fail(AuthFailure.NOT_FOUND, "User not found")
        if not self.passwords.verify(current_password, user.password_hash):
            return AuthResult.fail(AuthFailure.INVALID_CREDENTIALS, "Current password is incorrect")
        too_short = self._password_too_short(new_password)
        if too_short:
            return too_short

        self.store.update_password(user.id, self.passwords.hash(new_password))
        revoked = 0
        if self.settings.revoke_sessions_on_password_change:
            revoked = self.store.revoke_user_refresh_tokens(
                user.id, client_ip, except_token=keep_refresh_token
            )
        logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        return AuthResult.success(None, "Password changed")

    @_workflow("forgot_password")
    async def forgot_password(self, email: str) -> AuthResult[None]:
        user = self.store.get_user_by_email(email.strip().lower())
        if not user:
            logger.info("password_reset_unknown_email")
            return AuthResult.success(None, FORGOT_PASSWORD_MESSAGE)

        invalidated = self.store.invalidate_password_reset_tokens(user.id)
        expires_at = self._now() + timedelta(minutes=self.settings.reset_token_ttl_minutes)
        record = self.store.create_password_reset_token(
            user.id, user.username, user.email, self._new_single_use_token(), expires_at
        )
        logger.info("password_reset_requested", user_id=user.id, invalidated=invalidated)
        sent = await asyncio.to_thread(
            self.email.send_password_reset, user.email, user.first_name, record.token
        )
        if not sent:
            logger.warning("password_reset_email_failed", user_id=user.id)
            return AuthResult.fail(
                AuthFailure.INTERNAL, "Your request could not be processed. Please try again later."
            )
        return AuthResult.success(None, FORGOT_PASSWORD_MESSAGE)

    @_workflow("reset_password")
    async def reset_password(
        self, token: str, new_password: str, client_ip: Optional[str] = None
    ) -> AuthResult[None]:
        record = self.store.get_password_reset_token(token)
        rejected = self._check_single_use(record, "password reset")
        if rejected:
            logger.info("password_reset_rejected", reason=rejected.failure.value)
            return rejected
        too_short = self._password_too_short(new_password)
        if too_short:
            return too_short
        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            return AuthResult.fail(AuthFailure.NOT_FOUND, "User not found")

        self.store.mark_password_reset_token_used(record.token)
        self.store.update_password(user.id, self.passwords.hash(new_password))
        revoked = self.store.revoke_user_refresh_tokens(user.id, client_ip)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return AuthResult.success(None, "Password has been reset")

    @_workflow("refresh")
    async def refresh(self, refresh_token: str, client_ip: Optional[str] = None) -> AuthResult[AuthPayload]:
        record = self.store.get_refresh_token(refresh_token)
        if not record or not record.is_active(self._now()):
            if record and record.replaced_by_token:
                logger.warning("refresh_token_replayed", user_id=record.user_id)
            return AuthResult.fail(AuthFailure.INVALID_TOKEN, "Invalid or expired refresh token")
        user = record.user or self.store.get_user(record.user_id)
        if not user or not user.is_active:
            return AuthResult.fail(AuthFailure.INVALID_TOKEN, "Invalid or expired refresh token")

        permissions, roles = self._resolve_grants(user)
        pair = self.tokens.rotate(record, user, permissions, roles, client_ip)
        if pair is None:
            return AuthResult.fail(AuthFailure.INVALID_TOKEN, "Invalid or expired refresh token")
        logger.info("refresh_token_rotated", user_id=user.id)
        return AuthResult.success(self._auth_payload(user, pair, permissions, roles))

    @_workflow("logout")
    async def logout(
        self,
        refresh_token: str,
        client_ip: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> AuthResult[None]:
        """Revoke ``refresh_token``; succeeds whether or not anything was revoked.

        With ``user_id`` set, tokens owned by other users are left alone.
        """
        record = self.store.get_refresh_token(refresh_token)
        if record and record.is_active(self._now()):
            if user_id and record.user_id != user_id:
                logger.warning("logout_foreign_token", user_id=user_id)
            else:
                self.tokens.revoke(record.token, client_ip)
                logger.info("logout", user_id=record.user_id)
        return AuthResult.success(None, "Logged out")

    @_workflow("me")
    async def me(self, ctx: AuthContext) -> AuthResult[UserInfo]:
        user = self.store.get_user(ctx.user_id)
        if not user or not user.is_active:
            return AuthResult.fail(AuthFailure.NOT_FOUND, "User not found")
        permissions, roles = self._resolve_grants(user)
        return AuthResult.success(
            UserInfo(
                user_id=user.id,
                username=user.username,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                tenant_id=user.tenant_id,
                permissions=sorted(permissions),
                roles=sorted(roles),
                modules=self.rbac.visible_modules(permissions),
            )
        )

    @_workflow("check_email")
    async def check_email(self, email: str) -> AuthResult[EmailCheck]:
        email = email.strip().lower()
        employee = self.directory.lookup(email)
        if not employee:
            return AuthResult.success(
                EmailCheck(found=False, eligible=self.directory.is_home_domain(email))
            )
        return AuthResult.success(
            EmailCheck(
                found=True,
                eligible=True,
                first_name=employee.first_name,
                last_name=employee.last_name,
                department=employee.department,
                position=employee.position,
                title=employee.title,
                phone=employee.phone,
            )
        )
