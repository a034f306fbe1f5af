from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.domain.models import ApprovalTicket
from kinship.domain.vocab import TICKET_STATUS_PENDING
from kinship.persistence.guards import tenant_predicate


async def get_ticket(
    session: AsyncSession,
    ticket_id: str,
    *,
    for_update: bool = False,
) -> ApprovalTicket | None:
    # Row locks serialize concurrent decisions on Postgres; SQLite ignores them.
    stmt = select(ApprovalTicket).where(ApprovalTicket.id == ticket_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_pending_ticket(
    session: AsyncSession,
    *,
    target_kind: str,
    target_id: str,
) -> ApprovalTicket | None:
    result = await session.execute(
        select(ApprovalTicket).where(
            ApprovalTicket.target_entity_kind == target_kind,
            ApprovalTicket.target_entity_id == target_id,
            ApprovalTicket.status == TICKET_STATUS_PENDING,
        )
    )
    return result.scalars().first()


async def transition_ticket(
    session: AsyncSession,
    *,
    ticket_id: str,
    status: str,
    reviewer_id: str,
    reviewed_at: datetime,
    comments: str | None,
) -> bool:
    # Conditional update: only one caller can move a ticket out of pending.
    result = await session.execute(
        update(ApprovalTicket)
        .where(
            ApprovalTicket.id == ticket_id,
            ApprovalTicket.status == TICKET_STATUS_PENDING,
        )
        .values(
            status=status,
            reviewer_id=reviewer_id,
            reviewed_at=reviewed_at,
            comments=comments,
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def list_tickets(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    status: str | None = TICKET_STATUS_PENDING,
    target_kind: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ApprovalTicket]:
    # Oldest first so reviewers work the queue in arrival order.
    stmt = select(ApprovalTicket)
    if tenant_id is not None:
        stmt = stmt.where(tenant_predicate(ApprovalTicket, tenant_id))
    if status:
        stmt = stmt.where(ApprovalTicket.status == status)
    if target_kind:
        stmt = stmt.where(ApprovalTicket.target_entity_kind == target_kind)
    stmt = stmt.order_by(ApprovalTicket.requested_at.asc(), ApprovalTicket.id.asc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_tickets(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    status: str | None = TICKET_STATUS_PENDING,
    target_kind: str | None = None,
) -> int:
    stmt = select(func.count()).select_from(ApprovalTicket)
    if tenant_id is not None:
        stmt = stmt.where(tenant_predicate(ApprovalTicket, tenant_id))
    if status:
        stmt = stmt.where(ApprovalTicket.status == status)
    if target_kind:
        stmt = stmt.where(ApprovalTicket.target_entity_kind == target_kind)
    return int((await session.execute(stmt)).scalar_one())
