from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.domain.models import User, UserPermissionOverride


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def list_overrides(session: AsyncSession, user_id: str) -> list[UserPermissionOverride]:
    result = await session.execute(
        select(UserPermissionOverride)
        .where(UserPermissionOverride.user_id == user_id)
        .order_by(UserPermissionOverride.permission_key.asc())
    )
    return list(result.scalars().all())


async def get_override(
    session: AsyncSession,
    *,
    user_id: str,
    permission_key: str,
) -> UserPermissionOverride | None:
    result = await session.execute(
        select(UserPermissionOverride).where(
            UserPermissionOverride.user_id == user_id,
            UserPermissionOverride.permission_key == permission_key,
        )
    )
    return result.scalar_one_or_none()


async def upsert_override(
    session: AsyncSession,
    *,
    user_id: str,
    permission_key: str,
    granted: bool,
    granted_by: str | None,
) -> UserPermissionOverride:
    # Keep exactly one row per key; toggling updates the row in place.
    existing = await get_override(session, user_id=user_id, permission_key=permission_key)
    if existing is None:
        row = UserPermissionOverride(
            user_id=user_id,
            permission_key=permission_key,
            granted=granted,
            granted_by=granted_by,
        )
        session.add(row)
        return row
    existing.granted = granted
    existing.granted_by = granted_by
    return existing


async def delete_override(session: AsyncSession, *, user_id: str, permission_key: str) -> bool:
    result = await session.execute(
        delete(UserPermissionOverride).where(
            UserPermissionOverride.user_id == user_id,
            UserPermissionOverride.permission_key == permission_key,
        )
    )
    return (result.rowcount or 0) > 0


async def delete_all_overrides(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        delete(UserPermissionOverride).where(UserPermissionOverride.user_id == user_id)
    )
    return result.rowcount or 0
