from __future__ import annotations

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.domain.models import SecurityRole, User


async def get_role(session: AsyncSession, role_id: str) -> SecurityRole | None:
    result = await session.execute(select(SecurityRole).where(SecurityRole.id == role_id))
    return result.scalar_one_or_none()


async def get_role_by_name(
    session: AsyncSession,
    *,
    name: str,
    tenant_id: str | None,
) -> SecurityRole | None:
    # System roles carry a NULL tenant, so the predicate switches on it.
    stmt = select(SecurityRole).where(SecurityRole.name == name)
    if tenant_id is None:
        stmt = stmt.where(SecurityRole.tenant_id.is_(None), SecurityRole.is_system_role.is_(True))
    else:
        stmt = stmt.where(SecurityRole.tenant_id == tenant_id)
    result = await session.execute(stmt)
    return result.scalars().first()


def _scope_filter(tenant_id: str | None, *, include_system: bool):
    if tenant_id is None:
        return None
    tenant_clause = SecurityRole.tenant_id == tenant_id
    if include_system:
        return or_(tenant_clause, SecurityRole.is_system_role.is_(True))
    return tenant_clause


async def list_roles(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    include_system: bool = True,
    system_only: bool = False,
    offset: int = 0,
    limit: int = 50,
) -> list[SecurityRole]:
    # System roles sort first so pickers show the built-in catalogue on top.
    stmt = select(SecurityRole)
    if system_only:
        stmt = stmt.where(SecurityRole.is_system_role.is_(True))
    else:
        scope = _scope_filter(tenant_id, include_system=include_system)
        if scope is not None:
            stmt = stmt.where(scope)
    stmt = stmt.order_by(SecurityRole.is_system_role.desc(), SecurityRole.name.asc(), SecurityRole.id.asc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_roles(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    include_system: bool = True,
    system_only: bool = False,
) -> int:
    stmt = select(func.count()).select_from(SecurityRole)
    if system_only:
        stmt = stmt.where(SecurityRole.is_system_role.is_(True))
    else:
        scope = _scope_filter(tenant_id, include_system=include_system)
        if scope is not None:
            stmt = stmt.where(scope)
    return int((await session.execute(stmt)).scalar_one())


async def count_system_roles(session: AsyncSession) -> int:
    result = await session.execute(
        select(func.count()).select_from(SecurityRole).where(SecurityRole.is_system_role.is_(True))
    )
    return int(result.scalar_one())


async def count_role_references(session: AsyncSession, role_id: str) -> int:
    # Count users still pointing at the role before allowing a delete.
    result = await session.execute(
        select(func.count()).select_from(User).where(User.security_role_id == role_id)
    )
    return int(result.scalar_one())
