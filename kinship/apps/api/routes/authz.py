from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.apps.api.deps import get_current_principal, get_db
from kinship.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from kinship.apps.api.response import SuccessEnvelope, success_response
from kinship.services.authz.context import PrincipalContext
from kinship.services.authz.resolver import check_special, resolve


router = APIRouter(prefix="/authz", tags=["authz"], responses=DEFAULT_ERROR_RESPONSES)


class PrivilegeCheckRequest(BaseModel):
    # Either an entity privilege or a special permission, not both.
    entity_type: str | None = None
    privilege_type: str | None = None
    special_permission: str | None = None
    target_owner_id: str | None = None
    target_tenant_id: str | None = None

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def _one_kind_of_check(self) -> "PrivilegeCheckRequest":
        entity_check = self.entity_type is not None or self.privilege_type is not None
        if entity_check and self.special_permission is not None:
            raise ValueError("Provide entity_type/privilege_type or special_permission, not both")
        if not entity_check and self.special_permission is None:
            raise ValueError("Provide entity_type and privilege_type, or special_permission")
        if entity_check and (self.entity_type is None or self.privilege_type is None):
            raise ValueError("entity_type and privilege_type must be supplied together")
        return self


class PrivilegeCheckResponse(BaseModel):
    allowed: bool
    reason: str | None = None
    access_level: str | None = None
    permission: str = Field(description="Checked permission key")


@router.post("/check", response_model=SuccessEnvelope[PrivilegeCheckResponse] | PrivilegeCheckResponse)
async def check_privilege(
    request: Request,
    payload: PrivilegeCheckRequest,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Decisions are for the calling user only; nothing is enforced or audited here.
    if payload.special_permission is not None:
        allowed = await check_special(db, principal, payload.special_permission)
        data = PrivilegeCheckResponse(
            allowed=allowed,
            permission=f"special:{payload.special_permission}",
        )
        return success_response(request=request, data=data.model_dump())

    decision = await resolve(
        db,
        principal,
        payload.entity_type,
        payload.privilege_type,
        target_owner_id=payload.target_owner_id,
        target_tenant_id=payload.target_tenant_id,
    )
    data = PrivilegeCheckResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        access_level=decision.access_level,
        permission=f"{payload.entity_type}:{payload.privilege_type}",
    )
    return success_response(request=request, data=data.model_dump())
