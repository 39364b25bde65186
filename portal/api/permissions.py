from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header, Request

from portal.logging import get_logger
from portal.service.errors import AuthenticationError, ForbiddenError
from portal.service.runtime import get_runtime
from portal.service.tokens import AuthContext

logger = get_logger(__name__)


def client_ip_for(request: Request) -> Optional[str]:
    """Peer address, or the first X-Forwarded-For hop behind a trusted proxy."""
    if get_runtime().settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
        if forwarded:
            return forwarded
    return request.client.host if request.client else None


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the caller from the bearer access token or reject with 401."""
    runtime = get_runtime()
    ctx = runtime.tokens.authenticate(authorization)
    if not ctx:
        raise AuthenticationError("authentication required")
    return ctx


def require_permission(code: str) -> Callable:
    """FastAPI dependency that admits callers whose token carries ``code``.

    The check reads only the permission claims minted into the access token,
    so grants changed after issuance apply once the token is refreshed.

    Usage:
        @router.get("/users")
        async def list_users(principal: AuthContext = Depends(require_permission("ADMIN.Yetki.Yonet"))):
            ...
    """

    async def dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        if not principal.has_permission(code):
            logger.warning("permission_denied", user_id=principal.user_id, permission=code)
            raise ForbiddenError("insufficient permissions", detail={"required": code})
        return principal

    # exposed for route introspection
    dependency.required_permission = code
    return dependency
