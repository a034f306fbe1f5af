from __future__ import annotations

import logging
from typing import Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from kinship.core.errors import NotFoundError, PermissionDeniedError, ValidationError
from kinship.domain.models import User, UserPermissionOverride
from kinship.persistence.repos import roles as roles_repo
from kinship.persistence.repos import users as users_repo
from kinship.services.audit import record_event
from kinship.services.authz.context import (
    PrincipalContext,
    RoleSnapshot,
    build_principal_context,
    validate_permission_key,
)


logger = logging.getLogger(__name__)


async def load_principal_context(session: AsyncSession, user_id: str) -> PrincipalContext:
    # Fresh per request: overrides and role assignment can change between calls.
    user = await users_repo.get_user(session, user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    if not user.is_active:
        raise PermissionDeniedError("User account is inactive")
    overrides = await users_repo.list_overrides(session, user_id)
    return build_principal_context(user, overrides)


async def _load_target_user(session: AsyncSession, user_id: str) -> User:
    user = await users_repo.get_user(session, user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    return user


def _require_user_manager(context: PrincipalContext, user: User) -> None:
    if context.is_superuser:
        return
    if not context.is_tenant_admin:
        raise PermissionDeniedError("Only administrators can modify user permissions")
    if user.tenant_id is None or user.tenant_id != context.tenant_id:
        raise PermissionDeniedError("You can only modify permissions for users in your tenant")


def require_permissions_viewer(context: PrincipalContext, user: User) -> None:
    # Users read their own permissions; admins read users of their tenant.
    if context.user_id == user.id or context.is_superuser:
        return
    if context.is_tenant_admin and user.tenant_id is not None and user.tenant_id == context.tenant_id:
        return
    raise PermissionDeniedError("You do not have access to view this user's permissions")


async def _audit_permission_change(
    context: PrincipalContext,
    user: User,
    *,
    event_type: str,
    metadata: dict,
) -> None:
    await record_event(
        tenant_id=user.tenant_id,
        actor_id=context.user_id,
        actor_role=context.implicit_role,
        event_type=event_type,
        resource_type="user",
        resource_id=user.id,
        metadata=metadata,
    )


async def set_custom_permission(
    session: AsyncSession,
    context: PrincipalContext,
    user_id: str,
    *,
    permission_key: str,
    granted: bool,
) -> UserPermissionOverride:
    validate_permission_key(permission_key)
    if not isinstance(granted, bool):
        raise ValidationError("granted must be a boolean")
    user = await _load_target_user(session, user_id)
    _require_user_manager(context, user)

    row = await users_repo.upsert_override(
        session,
        user_id=user_id,
        permission_key=permission_key,
        granted=granted,
        granted_by=context.user_id,
    )
    await session.commit()
    await session.refresh(row)

    logger.info(
        "custom_permission_set user_id=%s key=%s granted=%s actor=%s",
        user_id,
        permission_key,
        granted,
        context.user_id,
    )
    await _audit_permission_change(
        context,
        user,
        event_type="user_permission.set",
        metadata={"permission_key": permission_key, "granted": granted},
    )
    return row


async def remove_custom_permission(
    session: AsyncSession,
    context: PrincipalContext,
    user_id: str,
    *,
    permission_key: str,
) -> None:
    validate_permission_key(permission_key)
    user = await _load_target_user(session, user_id)
    _require_user_manager(context, user)

    removed = await users_repo.delete_override(session, user_id=user_id, permission_key=permission_key)
    if not removed:
        await session.rollback()
        raise NotFoundError(f"No custom permission {permission_key} for user {user_id}")
    await session.commit()

    await _audit_permission_change(
        context,
        user,
        event_type="user_permission.removed",
        metadata={"permission_key": permission_key},
    )


async def replace_custom_permissions(
    session: AsyncSession,
    context: PrincipalContext,
    user_id: str,
    permissions: Mapping[str, bool],
) -> list[UserPermissionOverride]:
    # Validate every key before touching storage so a bad key leaves the set unchanged.
    for key, granted in permissions.items():
        validate_permission_key(key)
        if not isinstance(granted, bool):
            raise ValidationError(f"granted for {key} must be a boolean")
    user = await _load_target_user(session, user_id)
    _require_user_manager(context, user)

    await users_repo.delete_all_overrides(session, user_id)
    for key, granted in sorted(permissions.items()):
        session.add(
            UserPermissionOverride(
                user_id=user_id,
                permission_key=key,
                granted=granted,
                granted_by=context.user_id,
            )
        )
    await session.commit()
    rows = await users_repo.list_overrides(session, user_id)

    await _audit_permission_change(
        context,
        user,
        event_type="user_permission.replaced",
        metadata={"keys": sorted(permissions)},
    )
    return rows


def _grants_global_access(role: RoleSnapshot) -> bool:
    return any(level == "global" for levels in role.privileges.values() for level in levels.values())


async def assign_security_role(
    session: AsyncSession,
    context: PrincipalContext,
    user_id: str,
    *,
    role_id: str,
) -> User:
    user = await _load_target_user(session, user_id)
    _require_user_manager(context, user)
    role = await roles_repo.get_role(session, role_id)
    if role is None:
        raise NotFoundError(f"Security role not found: {role_id}")
    if role.tenant_id is not None and role.tenant_id != user.tenant_id:
        raise ValidationError("Security role belongs to another tenant")
    if not context.is_superuser and _grants_global_access(RoleSnapshot.from_row(role)):
        raise PermissionDeniedError("Only system administrators can assign roles with global access")

    previous = user.security_role_id
    user.security_role_id = role.id
    await session.commit()

    logger.info("security_role_assigned user_id=%s role_id=%s actor=%s", user_id, role_id, context.user_id)
    await _audit_permission_change(
        context,
        user,
        event_type="user_security_role.assigned",
        metadata={"role_id": role_id, "previous_role_id": previous},
    )
    return user


async def remove_security_role(session: AsyncSession, context: PrincipalContext, user_id: str) -> User:
    user = await _load_target_user(session, user_id)
    _require_user_manager(context, user)
    previous = user.security_role_id
    if previous is None:
        return user
    user.security_role_id = None
    await session.commit()

    await _audit_permission_change(
        context,
        user,
        event_type="user_security_role.removed",
        metadata={"previous_role_id": previous},
    )
    return user
