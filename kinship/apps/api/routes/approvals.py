from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.apps.api.deps import PageParams, get_current_principal, get_db, page_params
from kinship.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from kinship.apps.api.response import PageInfo, SuccessEnvelope, get_request_id, success_response
from kinship.domain.models import ApprovalTicket
from kinship.services import approvals as approvals_service
from kinship.services.authz.context import PrincipalContext


router = APIRouter(prefix="/approvals", tags=["approvals"], responses=DEFAULT_ERROR_RESPONSES)


class DecisionRequest(BaseModel):
    decision: Literal["approve", "reject"]
    comments: str | None = None

    model_config = {"extra": "forbid"}


class TicketResponse(BaseModel):
    id: str
    tenant_id: str
    target_entity_id: str
    target_entity_kind: str
    target_title: str | None = None
    requester_id: str
    reviewer_id: str | None
    status: str
    requested_at: str | None
    reviewed_at: str | None
    comments: str | None
    changes: list[dict[str, Any]] | None


class TicketListResponse(BaseModel):
    items: list[TicketResponse]
    page: PageInfo


def _ticket_payload(ticket: ApprovalTicket, *, title: str | None = None) -> TicketResponse:
    return TicketResponse(
        id=ticket.id,
        tenant_id=ticket.tenant_id,
        target_entity_id=ticket.target_entity_id,
        target_entity_kind=ticket.target_entity_kind,
        target_title=title,
        requester_id=ticket.requester_id,
        reviewer_id=ticket.reviewer_id,
        status=ticket.status,
        requested_at=ticket.requested_at.isoformat() if ticket.requested_at else None,
        reviewed_at=ticket.reviewed_at.isoformat() if ticket.reviewed_at else None,
        comments=ticket.comments,
        changes=ticket.changes,
    )


@router.get("", response_model=SuccessEnvelope[TicketListResponse] | TicketListResponse)
async def list_approvals(
    request: Request,
    status: str | None = "pending",
    tenant_id: str | None = None,
    target_kind: str | None = None,
    page: PageParams = Depends(page_params),
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # "all" lists every status.
    rows, total = await approvals_service.list_tickets(
        db,
        principal,
        status=None if status == "all" else status,
        tenant_id=tenant_id,
        target_kind=target_kind,
        offset=page.offset,
        limit=page.limit,
    )
    items = [
        _ticket_payload(ticket, title=await approvals_service.ticket_title(db, ticket)) for ticket in rows
    ]
    payload = TicketListResponse(
        items=items,
        page=PageInfo(total=total, offset=page.offset, limit=page.limit),
    )
    return success_response(request=request, data=payload.model_dump())


@router.get("/{ticket_id}", response_model=SuccessEnvelope[TicketResponse] | TicketResponse)
async def get_approval(
    ticket_id: str,
    request: Request,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ticket = await approvals_service.get_ticket(db, principal, ticket_id)
    title = await approvals_service.ticket_title(db, ticket)
    return success_response(request=request, data=_ticket_payload(ticket, title=title).model_dump())


@router.post("/{ticket_id}/decision", response_model=SuccessEnvelope[TicketResponse] | TicketResponse)
async def decide_approval(
    ticket_id: str,
    request: Request,
    payload: DecisionRequest,
    principal: PrincipalContext = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ticket = await approvals_service.decide(
        db,
        ticket_id=ticket_id,
        reviewer=principal,
        decision=payload.decision,
        comments=payload.comments,
        request_id=get_request_id(request),
    )
    title = await approvals_service.ticket_title(db, ticket)
    return success_response(request=request, data=_ticket_payload(ticket, title=title).model_dump())
