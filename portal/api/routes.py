from __future__ import annotations

from typing import Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request, Response

from portal.api.error_handling import http_error
from portal.api.permissions import client_ip_for, get_principal
from portal.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    CheckEmailResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshTokenRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    VerifyEmailRequest,
    VerifyEmailResponse,
    VisibleModuleResponse,
    validate_email,
)
from portal.logging import get_logger
from portal.service.auth import AuthPayload
from portal.service.errors import (
    AuthFailure,
    AuthResult,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from portal.service.runtime import check_rate_limit, get_runtime
from portal.service.tokens import AuthContext

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

RATE_LIMIT_WINDOW_SECONDS = 60

_FAILURE_STATUS: Dict[AuthFailure, Tuple[int, str]] = {
    AuthFailure.INVALID_CREDENTIALS: (401, "unauthorized"),
    AuthFailure.NOT_FOUND: (404, "not_found"),
}


def _failure_error(
    result: AuthResult, overrides: Optional[Dict[AuthFailure, Tuple[int, str]]] = None
):
    """HTTP error for a failed workflow; unlisted failures are 400 validation errors."""
    details = {"reason": result.failure.value}
    if result.failure == AuthFailure.INTERNAL:
        return ServerError(result.message, detail=details)
    mapping = {**_FAILURE_STATUS, **(overrides or {})}
    status_code, code = mapping.get(result.failure, (400, "validation_error"))
    return http_error(code, result.message, status_code=status_code, details=details)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, *, response: Optional[Response] = None
) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, RATE_LIMIT_WINDOW_SECONDS, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.warning("rate_limit_exceeded", scope=key.split(":", 1)[0])
        raise RateLimitedError("rate limit exceeded", retry_after=max(1, reset_seconds))


def _auth_response(payload: AuthPayload) -> AuthResponse:
    return AuthResponse(
        access_token=payload.access_token,
        refresh_token=payload.refresh_token,
        expiration=payload.access_token_expires_at,
        refresh_token_expiration=payload.refresh_token_expires_at,
        user_id=payload.user_id,
        username=payload.username,
        email=payload.email,
        first_name=payload.first_name,
        last_name=payload.last_name,
        tenant_id=payload.tenant_id,
        permissions=payload.permissions,
        roles=payload.roles,
    )


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with username and password.

    Raises:
        401: If the username is unknown or the password is wrong (same message)
        429: If the rate limit for this username is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.strip().lower()}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.login(
        body.username,
        body.password,
        client_ip=client_ip_for(request),
        tenant_id=body.tenant_id or runtime.settings.default_tenant_id,
    )
    if not result.ok:
        raise _failure_error(result)
    return Envelope(status="ok", data=_auth_response(result.value).to_json())


@router.post("/register", response_model=Envelope)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Register an employee account.

    Directory members and home-domain addresses are eligible. Unless email
    verification is disabled, the account stays pending until the emailed
    link is followed.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        client_ip=client_ip_for(request),
    )
    if not result.ok:
        raise _failure_error(result)
    outcome = result.value
    data = RegisterResponse(
        success=True,
        message=result.message,
        requires_verification=outcome.requires_verification,
        username=outcome.username,
        email=outcome.email,
        first_name=outcome.first_name,
        last_name=outcome.last_name,
        auth_data=_auth_response(outcome.auth) if outcome.auth else None,
    )
    return Envelope(status="ok", data=data.to_json())


@router.get("/check-email", response_model=Envelope)
async def check_email(request: Request, email: str = Query(..., max_length=254)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"check_email:{client_ip_for(request)}", runtime.settings.signup_rate_limit_per_minute * 4
    )
    try:
        normalized = validate_email(email)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    result = await runtime.auth.check_email(normalized)
    if not result.ok:
        raise _failure_error(result)
    check = result.value
    data = CheckEmailResponse(
        found=check.found,
        eligible=check.eligible,
        first_name=check.first_name,
        last_name=check.last_name,
        department=check.department,
        position=check.position,
        title=check.title,
        phone=check.phone,
    )
    return Envelope(status="ok", data=data.to_json())


@router.post("/verify-email", response_model=Envelope)
async def verify_email(body: VerifyEmailRequest, request: Request):
    runtime = get_runtime()
    client_ip = client_ip_for(request)
    await _enforce_rate_limit(
        runtime, f"verify_email:{client_ip}", runtime.settings.reset_rate_limit_per_minute
    )
    result = await runtime.auth.verify_email(body.token, client_ip=client_ip)
    if not result.ok:
        raise _failure_error(result)
    data = VerifyEmailResponse(
        success=True, message=result.message, auth_data=_auth_response(result.value)
    )
    return Envelope(status="ok", data=data.to_json())


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(body: EmailRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend_verification:{client_ip_for(request)}",
        runtime.settings.signup_rate_limit_per_minute,
    )
    result = await runtime.auth.resend_verification(body.email)
    if not result.ok:
        raise _failure_error(result)
    return Envelope(status="ok", data=MessageResponse(message=result.message).to_json())


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(body: RefreshTokenRequest, request: Request):
    """Exchange a refresh token for a new token pair; the old one is revoked."""
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, client_ip=client_ip_for(request))
    if not result.ok:
        if result.failure == AuthFailure.INTERNAL:
            raise _failure_error(result)
        raise http_error(
            "unauthorized",
            result.message,
            status_code=401,
            details={"reason": result.failure.value},
        )
    return Envelope(status="ok", data=_auth_response(result.value).to_json())


@router.post("/logout", response_model=Envelope)
async def logout(
    body: RefreshTokenRequest,
    request: Request,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    result = await runtime.auth.logout(
        body.refresh_token, client_ip=client_ip_for(request), user_id=principal.user_id
    )
    return Envelope(status="ok", data=MessageResponse(message=result.message).to_json())


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_principal)):
    """Current identity with fresh permissions, roles and visible modules."""
    runtime = get_runtime()
    result = await runtime.auth.me(principal)
    if not result.ok:
        raise _failure_error(result)
    info = result.value
    data = MeResponse(
        user_id=info.user_id,
        username=info.username,
        email=info.email,
        first_name=info.first_name,
        last_name=info.last_name,
        tenant_id=info.tenant_id,
        permissions=info.permissions,
        roles=info.roles,
        modules=[
            VisibleModuleResponse(code=m.code, name=m.name, icon=m.icon, permissions=m.permissions)
            for m in info.modules
        ],
    )
    return Envelope(status="ok", data=data.to_json())


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        client_ip=client_ip_for(request),
        keep_refresh_token=body.refresh_token,
    )
    if not result.ok:
        raise _failure_error(
            result, {AuthFailure.INVALID_CREDENTIALS: (400, "validation_error")}
        )
    return Envelope(status="ok", data=MessageResponse(message=result.message).to_json())


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: EmailRequest, response: Response):
    """Start a password reset; the reply never reveals whether the account exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot_password:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.forgot_password(body.email)
    if not result.ok:
        raise _failure_error(result)
    return Envelope(status="ok", data=MessageResponse(message=result.message).to_json())


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    client_ip = client_ip_for(request)
    await _enforce_rate_limit(
        runtime, f"reset_password:{client_ip}", runtime.settings.reset_rate_limit_per_minute
    )
    result = await runtime.auth.reset_password(body.token, body.new_password, client_ip=client_ip)
    if not result.ok:
        raise _failure_error(result, {AuthFailure.NOT_FOUND: (400, "validation_error")})
    return Envelope(status="ok", data=MessageResponse(message=result.message).to_json())
