from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, FrozenSet, Iterable, Optional, Protocol

from portal.config import Settings
from portal.logging import get_logger
from portal.storage.models import RefreshToken, User, utcnow

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 64


class RefreshTokenStore(Protocol):
    def create_refresh_token(
        self,
        user_id: str,
        tenant_id: str,
        token: str,
        expires_at: datetime,
        created_by_ip: Optional[str] = None,
    ) -> RefreshToken: ...

    def revoke_refresh_token(
        self,
        token: str,
        revoked_by_ip: Optional[str] = None,
        replaced_by_token: Optional[str] = None,
    ) -> bool: ...


@dataclass
class AuthContext:
    """Identity and grants carried by a validated access token."""

    user_id: str
    username: str
    tenant_id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    roles: FrozenSet[str] = field(default_factory=frozenset)

    def has_permission(self, code: str) -> bool:
        return code in self.permissions


@dataclass
class TokenPair:
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def new_refresh_token_value() -> str:
    return base64.b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")


class TokenIssuer:
    """Mints HS256 access tokens and opaque rotating refresh tokens.

    Access tokens are validated statelessly (signature, issuer, audience,
    expiry) with no clock-skew allowance. Refresh tokens are random bytes
    persisted in the store; rotation issues the successor before revoking
    the predecessor so a crash in between never locks the user out.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._secret = settings.jwt_secret.encode()

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a valid access token, otherwise None."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        # zero leeway
        if exp_ts <= self._now().timestamp():
            return None
        if payload.get("token_type") != "access":
            return None
        return payload

    def issue_access_token(
        self, user: User, permissions: Iterable[str], roles: Iterable[str]
    ) -> tuple[str, datetime]:
        now = self._now()
        expires_at = (now + timedelta(minutes=self.settings.access_token_ttl_minutes)).replace(
            microsecond=0
        )
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.username,
            "uid": user.id,
            "tenant": user.tenant_id,
            "email": user.email,
            "given_name": user.first_name,
            "family_name": user.last_name,
            "permissions": sorted(set(permissions)),
            "roles": sorted(set(roles)),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": "access",
        }
        return self._encode_jwt(payload), expires_at

    def issue_refresh_token(self, user: User, created_by_ip: Optional[str] = None) -> RefreshToken:
        expires_at = self._now() + timedelta(days=self.settings.refresh_token_ttl_days)
        return self.store.create_refresh_token(
            user.id, user.tenant_id, new_refresh_token_value(), expires_at, created_by_ip
        )

    def issue_pair(
        self,
        user: User,
        permissions: Iterable[str],
        roles: Iterable[str],
        client_ip: Optional[str] = None,
    ) -> TokenPair:
        access_token, access_exp = self.issue_access_token(user, permissions, roles)
        refresh = self.issue_refresh_token(user, client_ip)
        return TokenPair(
            access_token=access_token,
            access_token_expires_at=access_exp,
            refresh_token=refresh.token,
            refresh_token_expires_at=refresh.expires_at,
        )

    def rotate(
        self,
        previous: RefreshToken,
        user: User,
        permissions: Iterable[str],
        roles: Iterable[str],
        client_ip: Optional[str] = None,
    ) -> Optional[TokenPair]:
        """Replace ``previous`` with a fresh pair linked as its successor.

        Returns None when ``previous`` was revoked by someone else first; the
        successor is then revoked again so the chain keeps one live token.
        """
        successor = self.issue_refresh_token(user, client_ip)
        revoked = self.store.revoke_refresh_token(
            previous.token, revoked_by_ip=client_ip, replaced_by_token=successor.token
        )
        if not revoked:
            self.store.revoke_refresh_token(successor.token, revoked_by_ip=client_ip)
            logger.warning("refresh_token_rotation_race", user_id=user.id)
            return None
        access_token, access_exp = self.issue_access_token(user, permissions, roles)
        return TokenPair(
            access_token=access_token,
            access_token_expires_at=access_exp,
            refresh_token=successor.token,
            refresh_token_expires_at=successor.expires_at,
        )

    def revoke(self, token: str, client_ip: Optional[str] = None) -> bool:
        return self.store.revoke_refresh_token(token, revoked_by_ip=client_ip)

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Build an :class:`AuthContext` from an ``Authorization`` header."""
        token = extract_bearer(authorization)
        if not token:
            return None
        claims = self.decode_access_token(token)
        if not claims:
            return None
        permissions = claims.get("permissions") or []
        roles = claims.get("roles") or []
        if not isinstance(permissions, list) or not isinstance(roles, list):
            return None
        return AuthContext(
            user_id=str(claims.get("uid", "")),
            username=str(claims.get("sub", "")),
            tenant_id=str(claims.get("tenant", "")),
            email=str(claims.get("email", "")),
            first_name=str(claims.get("given_name", "")),
            last_name=str(claims.get("family_name", "")),
            permissions=frozenset(str(p) for p in permissions),
            roles=frozenset(str(r) for r in roles),
        )
