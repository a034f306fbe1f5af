from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.domain.models import Tenant


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def adjust_counters(
    session: AsyncSession,
    *,
    tenant_id: str,
    pending_approvals: int = 0,
    member_count: int = 0,
    content_count: int = 0,
) -> bool:
    # Apply deltas in SQL so concurrent transitions never lose updates.
    values: dict[str, object] = {}
    if pending_approvals:
        values["pending_approvals"] = Tenant.pending_approvals + pending_approvals
    if member_count:
        values["member_count"] = Tenant.member_count + member_count
    if content_count:
        values["content_count"] = Tenant.content_count + content_count
    if not values:
        return True
    result = await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def read_counters(session: AsyncSession, tenant_id: str) -> dict[str, int] | None:
    # Read counters straight from the table, bypassing any identity-map copy.
    result = await session.execute(
        select(Tenant.member_count, Tenant.content_count, Tenant.pending_approvals).where(
            Tenant.id == tenant_id
        )
    )
    row = result.first()
    if row is None:
        return None
    return {
        "member_count": int(row.member_count),
        "content_count": int(row.content_count),
        "pending_approvals": int(row.pending_approvals),
    }
