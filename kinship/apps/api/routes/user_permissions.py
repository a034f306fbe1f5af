from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.apps.api.deps import get_current_principal, get_db
from kinship.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from kinship.apps.api.response import SuccessEnvelope, success_response
from kinship.core.errors import NotFoundError
from kinship.domain.models import User, UserPermissionOverride
from kinship.persistence.repos import users as users_repo
from kinship.services import permissions as permissions_service
from kinship.services.authz.context import PrincipalContext
from kinship.services.authz.resolver import effective_permissions


router = APIRouter(prefix="/users", tags=["user-permissions"], responses=DEFAULT_ERROR_RESPONSES)


class CustomPermissionRequest(BaseModel):
    permission: str = Field(min_length=1, max_length=128)
    granted: bool

    model_config = {"extra": "forbid"}


class CustomPermissionReplaceRequest(BaseModel):
    custom_permissions: list[CustomPermissionRequest]

    model_config = {"extra": "forbid"}


class SecurityRoleAssignmentRequest(BaseModel):
    role_id: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class CustomPermissionResponse(BaseModel):
    permission: str
    granted: bool
    granted_by: str | None


class EffectivePermissionsResponse(BaseModel):
    user_id: str
    tenant_id: str | None
    implicit_role: str
    security_role: dict[str, Any] | None
    entity_privileges: dict[str, dict[str, str]]
    special_permissions: dict[str, bool]
    custom_permissions: dict[str, bool]


class CustomPermissionListResponse(BaseModel):
    user_id: str
    items: list[CustomPermissionResponse]


class UserRoleResponse(BaseModel):
    user_id: str
    tenant_id: str | None
    security_role_id: str | None


def _override_payload(row: UserPermissionOverride) -> CustomPermissionResponse:
    return CustomPermissionResponse(permission=row.permission_key, granted=row.granted, granted_by=row.granted_by)


def _user_role_payload(user: User) -> UserRoleResponse:
    return UserRoleResponse(user_id=user.id, tenant_id=user.tenant_id, security_role_id=user.security_role_id)


@router.get(
    "/{user_id}/permissions",
    response_model=SuccessEnvelope[EffectivePermissionsResponse] | EffectivePermissionsResponse,
)
async def get_user_permissions(
    user_id: str,
    request: Request,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await users_repo.get_user(db, user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    permissions_service.require_permissions_viewer(principal, user)
    payload = EffectivePermissionsResponse(**await effective_permissions(db, user_id))
    return success_response(request=request, data=payload.model_dump())


@router.put(
    "/{user_id}/permissions",
    response_model=SuccessEnvelope[CustomPermissionResponse] | CustomPermissionResponse,
)
async def set_user_permission(
    user_id: str,
    request: Request,
    payload: CustomPermissionRequest,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await permissions_service.set_custom_permission(
        db,
        principal,
        user_id,
        permission_key=payload.permission,
        granted=payload.granted,
    )
    return success_response(request=request, data=_override_payload(row).model_dump())


@router.patch(
    "/{user_id}/permissions",
    response_model=SuccessEnvelope[CustomPermissionListResponse] | CustomPermissionListResponse,
)
async def replace_user_permissions(
    user_id: str,
    request: Request,
    payload: CustomPermissionReplaceRequest,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Last entry wins when a key is repeated in the request body.
    requested = {item.permission: item.granted for item in payload.custom_permissions}
    rows = await permissions_service.replace_custom_permissions(db, principal, user_id, requested)
    data = CustomPermissionListResponse(user_id=user_id, items=[_override_payload(row) for row in rows])
    return success_response(request=request, data=data.model_dump())


@router.delete("/{user_id}/permissions/{permission_key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user_permission(
    user_id: str,
    permission_key: str,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> None:
    await permissions_service.remove_custom_permission(db, principal, user_id, permission_key=permission_key)


@router.put(
    "/{user_id}/security-role",
    response_model=SuccessEnvelope[UserRoleResponse] | UserRoleResponse,
)
async def assign_user_security_role(
    user_id: str,
    request: Request,
    payload: SecurityRoleAssignmentRequest,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await permissions_service.assign_security_role(db, principal, user_id, role_id=payload.role_id)
    return success_response(request=request, data=_user_role_payload(user).model_dump())


@router.delete(
    "/{user_id}/security-role",
    response_model=SuccessEnvelope[UserRoleResponse] | UserRoleResponse,
)
async def remove_user_security_role(
    user_id: str,
    request: Request,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await permissions_service.remove_security_role(db, principal, user_id)
    return success_response(request=request, data=_user_role_payload(user).model_dump())
