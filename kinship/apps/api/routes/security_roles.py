from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.apps.api.deps import PageParams, get_current_principal, get_db, page_params
from kinship.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from kinship.apps.api.response import PageInfo, SuccessEnvelope, success_response
from kinship.domain.models import SecurityRole
from kinship.services import roles as roles_service
from kinship.services.authz.context import PrincipalContext


router = APIRouter(prefix="/security-roles", tags=["security-roles"], responses=DEFAULT_ERROR_RESPONSES)


class EntityPrivilegeEntry(BaseModel):
    entity_type: str
    # Levels are checked against the closed vocabulary by the role service.
    privileges: dict[str, str] = Field(default_factory=dict)


class RoleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    tenant_id: str | None = None
    is_system_role: bool = False
    is_default: bool = False
    entity_privileges: list[EntityPrivilegeEntry] = Field(default_factory=list)
    special_permissions: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}


class RolePatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    is_default: bool | None = None
    entity_privileges: list[EntityPrivilegeEntry] | None = None
    special_permissions: dict[str, Any] | None = None

    model_config = {"extra": "forbid"}


class RoleResponse(BaseModel):
    id: str
    name: str
    description: str | None
    tenant_id: str | None
    is_system_role: bool
    is_default: bool
    entity_privileges: list[dict[str, Any]]
    special_permissions: dict[str, bool]
    created_by: str | None
    updated_by: str | None
    created_at: str | None
    updated_at: str | None


class RoleListResponse(BaseModel):
    items: list[RoleResponse]
    page: PageInfo


class RoleSeedResponse(BaseModel):
    created: list[RoleResponse]


def _role_payload(role: SecurityRole) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        tenant_id=role.tenant_id,
        is_system_role=role.is_system_role,
        is_default=role.is_default,
        entity_privileges=list(role.entity_privileges or []),
        special_permissions=dict(role.special_permissions or {}),
        created_by=role.created_by,
        updated_by=role.updated_by,
        created_at=role.created_at.isoformat() if role.created_at else None,
        updated_at=role.updated_at.isoformat() if role.updated_at else None,
    )


def _privileges(entries: list[EntityPrivilegeEntry] | None) -> list[dict[str, Any]] | None:
    if entries is None:
        return None
    return [entry.model_dump() for entry in entries]


@router.get("", response_model=SuccessEnvelope[RoleListResponse] | RoleListResponse)
async def list_security_roles(
    request: Request,
    system_only: bool = False,
    tenant_id: str | None = None,
    page: PageParams = Depends(page_params),
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows, total = await roles_service.list_roles(
        db,
        principal,
        tenant_id=tenant_id,
        system_only=system_only,
        offset=page.offset,
        limit=page.limit,
    )
    payload = RoleListResponse(
        items=[_role_payload(role) for role in rows],
        page=PageInfo(total=total, offset=page.offset, limit=page.limit),
    )
    return success_response(request=request, data=payload.model_dump())


@router.post(
    "",
    response_model=SuccessEnvelope[RoleResponse] | RoleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_security_role(
    request: Request,
    payload: RoleCreateRequest,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await roles_service.create_role(
        db,
        principal,
        name=payload.name,
        description=payload.description,
        tenant_id=payload.tenant_id,
        is_system_role=payload.is_system_role,
        is_default=payload.is_default,
        entity_privileges=_privileges(payload.entity_privileges),
        special_permissions=payload.special_permissions,
    )
    return success_response(request=request, data=_role_payload(role).model_dump())


@router.post("/initialize", response_model=SuccessEnvelope[RoleSeedResponse] | RoleSeedResponse)
async def initialize_system_roles(
    request: Request,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    created = await roles_service.initialize_system_roles(db, principal)
    payload = RoleSeedResponse(created=[_role_payload(role) for role in created])
    return success_response(request=request, data=payload.model_dump())


@router.get("/{role_id}", response_model=SuccessEnvelope[RoleResponse] | RoleResponse)
async def get_security_role(
    role_id: str,
    request: Request,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await roles_service.get_role(db, principal, role_id)
    return success_response(request=request, data=_role_payload(role).model_dump())


@router.patch("/{role_id}", response_model=SuccessEnvelope[RoleResponse] | RoleResponse)
async def patch_security_role(
    role_id: str,
    request: Request,
    payload: RolePatchRequest,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await roles_service.update_role(
        db,
        principal,
        role_id,
        name=payload.name,
        description=payload.description,
        is_default=payload.is_default,
        entity_privileges=_privileges(payload.entity_privileges),
        special_permissions=payload.special_permissions,
    )
    return success_response(request=request, data=_role_payload(role).model_dump())


@router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_security_role(
    role_id: str,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> None:
    await roles_service.delete_role(db, principal, role_id)
