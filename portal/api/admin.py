from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request

from portal.api.permissions import client_ip_for, require_permission
from portal.api.schemas import (
    Envelope,
    ModuleResponse,
    OrganizationRuleRequest,
    OrganizationRuleResponse,
    OrganizationRuleUpdateRequest,
    PermissionLevelResponse,
    PermissionResponse,
    RolePermissionsRequest,
    RoleResponse,
    SubModuleResponse,
    UserResponse,
    UserRolesRequest,
)
from portal.logging import get_logger, sanitize_error_message
from portal.service.errors import NotFoundError, ValidationError
from portal.service.runtime import get_runtime
from portal.service.tokens import AuthContext
from portal.storage.errors import ConstraintViolation
from portal.storage.models import OrganizationRule, Role, User
from portal.storage.seed import ADMIN_PERMISSION

logger = get_logger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

admin_principal = require_permission(ADMIN_PERMISSION)


def _user_to_response(runtime, user: User) -> UserResponse:
    roles = runtime.store.get_user_roles(user.id).unwrap_or([])
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        phone=user.phone,
        department=user.department,
        tenant_id=user.tenant_id,
        is_active=user.is_active,
        is_email_verified=user.is_email_verified,
        is_pending=user.is_pending,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
        roles=sorted(roles),
    )


def _role_to_response(runtime, role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        code=role.code,
        name=role.name,
        description=role.description,
        is_active=role.is_active,
        permission_ids=runtime.store.get_role_permission_ids(role.id),
    )


def _rule_to_response(rule: OrganizationRule) -> OrganizationRuleResponse:
    return OrganizationRuleResponse(
        id=rule.id,
        email_pattern=rule.email_pattern,
        department_code=rule.department_code,
        department_name=rule.department_name,
        default_role_id=rule.default_role_id,
        priority=rule.priority,
        is_active=rule.is_active,
        created_at=rule.created_at,
    )


def _require_user(runtime, username: str) -> User:
    user = runtime.store.get_user_by_username(username, include_pending=True)
    if not user:
        raise NotFoundError("user not found")
    return user


def _require_role(runtime, role_id: int) -> Role:
    role = runtime.store.get_role(role_id)
    if not role:
        raise NotFoundError("role not found")
    return role


def _invalid_reference(exc: ConstraintViolation):
    return ValidationError(sanitize_error_message(exc.message), detail=exc.detail)


@router.get("/users", response_model=Envelope)
async def list_users(
    tenant_id: Optional[str] = Query(None, alias="tenantId", max_length=16),
    limit: int = Query(100, ge=1, le=1000),
    principal: AuthContext = Depends(admin_principal),
):
    runtime = get_runtime()
    users = runtime.store.list_users(tenant_id=tenant_id, limit=limit)
    return Envelope(
        status="ok",
        data={"items": [_user_to_response(runtime, u).to_json() for u in users], "count": len(users)},
    )


@router.get("/users/{username}", response_model=Envelope)
async def get_user(username: str = Path(..., max_length=64), principal: AuthContext = Depends(admin_principal)):
    runtime = get_runtime()
    user = _require_user(runtime, username)
    return Envelope(status="ok", data=_user_to_response(runtime, user).to_json())


@router.put("/users/{username}/roles", response_model=Envelope)
async def set_user_roles(
    body: UserRolesRequest,
    username: str = Path(..., max_length=64),
    principal: AuthContext = Depends(admin_principal),
):
    """Replace the user's roles; the change shows in their next access token."""
    runtime = get_runtime()
    user = _require_user(runtime, username)
    try:
        runtime.rbac.assign_roles(user, body.role_ids)
    except ConstraintViolation as exc:
        raise _invalid_reference(exc)
    logger.info(
        "user_roles_updated",
        admin_id=principal.user_id,
        user_id=user.id,
        role_ids=sorted(set(body.role_ids)),
    )
    return Envelope(status="ok", data=_user_to_response(runtime, user).to_json())


@router.delete("/users/{username}", response_model=Envelope)
async def deactivate_user(
    request: Request,
    username: str = Path(..., max_length=64),
    principal: AuthContext = Depends(admin_principal),
):
    runtime = get_runtime()
    user = _require_user(runtime, username)
    if user.id == principal.user_id:
        raise ValidationError("cannot deactivate your own account")
    runtime.store.deactivate_user(user.id)
    client_ip = client_ip_for(request)
    revoked = runtime.store.revoke_user_refresh_tokens(user.id, client_ip)
    logger.info(
        "user_deactivated", admin_id=principal.user_id, user_id=user.id, sessions_revoked=revoked
    )
    return Envelope(status="ok", data={"username": user.username, "sessionsRevoked": revoked})


@router.get("/roles", response_model=Envelope)
async def list_roles(principal: AuthContext = Depends(admin_principal)):
    runtime = get_runtime()
    roles = runtime.store.list_roles()
    return Envelope(status="ok", data=[_role_to_response(runtime, r).to_json() for r in roles])


@router.get("/roles/{role_id}", response_model=Envelope)
async def get_role(role_id: int, principal: AuthContext = Depends(admin_principal)):
    runtime = get_runtime()
    role = _require_role(runtime, role_id)
    return Envelope(status="ok", data=_role_to_response(runtime, role).to_json())


@router.put("/roles/{role_id}/permissions", response_model=Envelope)
async def set_role_permissions(
    role_id: int,
    body: RolePermissionsRequest,
    principal: AuthContext = Depends(admin_principal),
):
    runtime = get_runtime()
    role = _require_role(runtime, role_id)
    try:
        runtime.store.set_role_permissions(role.id, body.permission_ids)
    except ConstraintViolation as exc:
        raise _invalid_reference(exc)
    logger.info(
        "role_permissions_updated",
        admin_id=principal.user_id,
        role_id=role.id,
        permission_count=len(set(body.permission_ids)),
    )
    return Envelope(status="ok", data=_role_to_response(runtime, role).to_json())


@router.get("/permissions", response_model=Envelope)
async def list_permissions(principal: AuthContext = Depends(admin_principal)):
    runtime = get_runtime()
    items = [
        PermissionResponse(
            id=p.id,
            code=p.code,
            name=p.name,
            description=p.description,
            module_code=p.module_code,
            module_name=p.module_name,
            sub_module_id=p.sub_module_id,
            sub_module_name=p.sub_module_name,
            level_id=p.level_id,
            level=p.level,
            level_name=p.level_name,
        ).to_json()
        for p in runtime.store.list_permissions()
    ]
    return Envelope(status="ok", data=items)


@router.get("/permission-levels", response_model=Envelope)
async def list_permission_levels(principal: AuthContext = Depends(admin_principal)):
    runtime = get_runtime()
    items = [
        PermissionLevelResponse(
            id=lvl.id, level=lvl.level, code=lvl.code, name=lvl.name, description=lvl.description
        ).to_json()
        for lvl in runtime.store.list_permission_levels()
    ]
    return Envelope(status="ok", data=items)


@router.get("/modules", response_model=Envelope)
async def list_modules(principal: AuthContext = Depends(admin_principal)):
    runtime = get_runtime()
    children: Dict[int, List[SubModuleResponse]] = {}
    for sub in runtime.store.list_sub_modules():
        children.setdefault(sub.module_id, []).append(
            SubModuleResponse(
                id=sub.id,
                code=sub.code,
                name=sub.name,
                description=sub.description,
                display_order=sub.display_order,
                is_active=sub.is_active,
            )
        )
    items = [
        ModuleResponse(
            id=m.id,
            code=m.code,
            name=m.name,
            description=m.description,
            icon=m.icon,
            display_order=m.display_order,
            is_active=m.is_active,
            sub_modules=children.get(m.id, []),
        ).to_json()
        for m in runtime.store.list_modules()
    ]
    return Envelope(status="ok", data=items)


@router.get("/organization", response_model=Envelope)
async def list_organization_rules(principal: AuthContext = Depends(admin_principal)):
    runtime = get_runtime()
    rules = runtime.store.list_organization_rules(include_inactive=True)
    return Envelope(status="ok", data=[_rule_to_response(r).to_json() for r in rules])


@router.post("/organization", response_model=Envelope)
async def create_organization_rule(
    body: OrganizationRuleRequest, principal: AuthContext = Depends(admin_principal)
):
    runtime = get_runtime()
    try:
        rule = runtime.store.create_organization_rule(
            body.email_pattern,
            body.department_code,
            body.department_name,
            body.default_role_id,
            priority=body.priority,
        )
    except ConstraintViolation as exc:
        raise _invalid_reference(exc)
    logger.info("organization_rule_created", admin_id=principal.user_id, rule_id=rule.id)
    return Envelope(status="ok", data=_rule_to_response(rule).to_json())


@router.put("/organization/{rule_id}", response_model=Envelope)
async def update_organization_rule(
    rule_id: int,
    body: OrganizationRuleUpdateRequest,
    principal: AuthContext = Depends(admin_principal),
):
    runtime = get_runtime()
    changes = body.model_dump(exclude_none=True)
    if "email_pattern" in changes:
        changes["email_pattern"] = changes["email_pattern"].strip().lower()
    try:
        rule = runtime.store.update_organization_rule(rule_id, **changes)
    except ConstraintViolation as exc:
        raise _invalid_reference(exc)
    if not rule:
        raise NotFoundError("organization rule not found")
    logger.info(
        "organization_rule_updated",
        admin_id=principal.user_id,
        rule_id=rule.id,
        fields=sorted(changes),
    )
    return Envelope(status="ok", data=_rule_to_response(rule).to_json())


@router.delete("/organization/{rule_id}", response_model=Envelope)
async def delete_organization_rule(rule_id: int, principal: AuthContext = Depends(admin_principal)):
    runtime = get_runtime()
    if not runtime.store.deactivate_organization_rule(rule_id):
        raise NotFoundError("organization rule not found")
    logger.info("organization_rule_deactivated", admin_id=principal.user_id, rule_id=rule_id)
    return Envelope(status="ok", data={"id": rule_id, "isActive": False})
