from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from kinship.core.config import get_settings
from kinship.core.errors import NotFoundError, PermissionDeniedError, ValidationError
from kinship.domain.vocab import ENTITY_TYPES, PRIVILEGE_TYPES, SPECIAL_PERMISSIONS
from kinship.persistence.repos import roles as roles_repo
from kinship.persistence.repos import users as users_repo
from kinship.services.audit import OUTCOME_FAILURE, record_event
from kinship.services.authz.cache import TtlCache
from kinship.services.authz.context import (
    PrincipalContext,
    RoleSnapshot,
    privilege_key,
    special_key,
)
from kinship.services.authz.defaults import IMPLICIT_ROLE_SPECIALS


logger = logging.getLogger(__name__)

_settings = get_settings()
role_cache: TtlCache[RoleSnapshot] = TtlCache(
    ttl_s=_settings.role_cache_ttl_s,
    max_entries=_settings.role_cache_max_entries,
)


@dataclass(frozen=True)
class PrivilegeDecision:
    # Deterministic resolver output; denials always carry a readable reason.
    allowed: bool
    reason: str
    access_level: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason, "access_level": self.access_level}


def _validate_request(entity_type: str, privilege_type: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Unknown entity type: {entity_type}")
    if privilege_type not in PRIVILEGE_TYPES:
        raise ValidationError(f"Unknown privilege type: {privilege_type}")


def _is_owner(context: PrincipalContext, target_owner_id: str | None) -> bool:
    return target_owner_id is not None and target_owner_id == context.user_id


def _in_tenant(context: PrincipalContext, target_tenant_id: str | None) -> bool:
    return target_tenant_id is not None and target_tenant_id == context.tenant_id


def _apply_level(
    level: str,
    context: PrincipalContext,
    target_owner_id: str | None,
    target_tenant_id: str | None,
) -> PrivilegeDecision:
    if level == "none":
        return PrivilegeDecision(False, "No access", level)
    if level == "owner":
        if _is_owner(context, target_owner_id):
            return PrivilegeDecision(True, "Owner access", level)
        return PrivilegeDecision(False, "Not owner of record", level)
    if level == "tenant":
        if _in_tenant(context, target_tenant_id):
            return PrivilegeDecision(True, "Tenant access", level)
        # Ownership is a superset of tenant scope, never a stricter requirement.
        if _is_owner(context, target_owner_id):
            return PrivilegeDecision(True, "Owner access", level)
        return PrivilegeDecision(False, "Not in same tenant", level)
    if level == "global":
        return PrivilegeDecision(True, "Global access", level)
    logger.warning("role_unknown_access_level user_id=%s level=%s", context.user_id, level)
    return PrivilegeDecision(False, "Unknown access level")


def decide_privilege(
    context: PrincipalContext,
    role: RoleSnapshot | None,
    entity_type: str,
    privilege_type: str,
    *,
    target_owner_id: str | None = None,
    target_tenant_id: str | None = None,
) -> PrivilegeDecision:
    # Pure precedence chain: superuser, override, implicit default, assigned role.
    _validate_request(entity_type, privilege_type)
    if context.is_superuser:
        return PrivilegeDecision(True, "System administrator", "global")

    override = context.custom_permissions.get(privilege_key(entity_type, privilege_type))
    if override is not None:
        if override:
            return PrivilegeDecision(True, "Custom permission granted")
        return PrivilegeDecision(False, "Custom permission denied")

    if context.assigned_role_id is None:
        if context.is_tenant_admin:
            if _in_tenant(context, target_tenant_id):
                return PrivilegeDecision(True, "Tenant administrator", "tenant")
            if _is_owner(context, target_owner_id):
                return PrivilegeDecision(True, "Owner access", "tenant")
            return PrivilegeDecision(False, "Not in same tenant", "tenant")
        return PrivilegeDecision(False, "No security role assigned")

    if role is None:
        return PrivilegeDecision(False, "Security role not found")

    level = role.level_for(entity_type, privilege_type)
    if level is None:
        return PrivilegeDecision(False, "No privileges defined for entity type")
    return _apply_level(level, context, target_owner_id, target_tenant_id)


def decide_special(context: PrincipalContext, role: RoleSnapshot | None, name: str) -> bool:
    if name not in SPECIAL_PERMISSIONS:
        raise ValidationError(f"Unknown special permission: {name}")
    if context.is_superuser:
        return True
    override = context.custom_permissions.get(special_key(name))
    if override is not None:
        return bool(override)
    if context.assigned_role_id is None:
        return name in IMPLICIT_ROLE_SPECIALS.get(context.implicit_role, frozenset())
    if role is None:
        return False
    return bool(role.special_permissions.get(name, False))


async def load_role_snapshot(session: AsyncSession, role_id: str) -> RoleSnapshot | None:
    # Single role lookup per resolution, served from the TTL cache when warm.
    cached = role_cache.get(role_id)
    if cached is not None:
        return cached
    row = await roles_repo.get_role(session, role_id)
    if row is None:
        return None
    snapshot = RoleSnapshot.from_row(row)
    role_cache.set(role_id, snapshot)
    return snapshot


def invalidate_role(role_id: str) -> None:
    role_cache.invalidate(role_id)


def _needs_role(context: PrincipalContext, key: str) -> bool:
    return (
        not context.is_superuser
        and key not in context.custom_permissions
        and context.assigned_role_id is not None
    )


async def resolve(
    session: AsyncSession,
    context: PrincipalContext,
    entity_type: str,
    privilege_type: str,
    *,
    target_owner_id: str | None = None,
    target_tenant_id: str | None = None,
) -> PrivilegeDecision:
    _validate_request(entity_type, privilege_type)
    role = None
    if _needs_role(context, privilege_key(entity_type, privilege_type)):
        role = await load_role_snapshot(session, context.assigned_role_id)
    return decide_privilege(
        context,
        role,
        entity_type,
        privilege_type,
        target_owner_id=target_owner_id,
        target_tenant_id=target_tenant_id,
    )


async def check_special(session: AsyncSession, context: PrincipalContext, name: str) -> bool:
    if name not in SPECIAL_PERMISSIONS:
        raise ValidationError(f"Unknown special permission: {name}")
    role = None
    if _needs_role(context, special_key(name)):
        role = await load_role_snapshot(session, context.assigned_role_id)
    return decide_special(context, role, name)


async def _audit_denial(
    context: PrincipalContext,
    *,
    permission: str,
    reason: str,
    resource_type: str | None,
    resource_id: str | None,
    request_id: str | None,
) -> None:
    if not get_settings().audit_privilege_denials:
        return
    await record_event(
        tenant_id=context.tenant_id,
        actor_id=context.user_id,
        actor_role=context.implicit_role,
        event_type="authz.denied",
        outcome=OUTCOME_FAILURE,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata={"permission": permission, "reason": reason},
        error_code=PermissionDeniedError.code,
    )


async def enforce_privilege(
    session: AsyncSession,
    context: PrincipalContext,
    entity_type: str,
    privilege_type: str,
    *,
    target_owner_id: str | None = None,
    target_tenant_id: str | None = None,
    target_id: str | None = None,
    request_id: str | None = None,
) -> PrivilegeDecision:
    decision = await resolve(
        session,
        context,
        entity_type,
        privilege_type,
        target_owner_id=target_owner_id,
        target_tenant_id=target_tenant_id,
    )
    if not decision.allowed:
        logger.info(
            "privilege_denied user_id=%s permission=%s reason=%s",
            context.user_id,
            privilege_key(entity_type, privilege_type),
            decision.reason,
        )
        await _audit_denial(
            context,
            permission=privilege_key(entity_type, privilege_type),
            reason=decision.reason,
            resource_type=entity_type,
            resource_id=target_id,
            request_id=request_id,
        )
        raise PermissionDeniedError(decision.reason)
    return decision


async def enforce_special(
    session: AsyncSession,
    context: PrincipalContext,
    name: str,
    *,
    request_id: str | None = None,
) -> None:
    if await check_special(session, context, name):
        return
    reason = f"Missing special permission: {name}"
    logger.info("special_permission_denied user_id=%s permission=%s", context.user_id, name)
    await _audit_denial(
        context,
        permission=special_key(name),
        reason=reason,
        resource_type=None,
        resource_id=None,
        request_id=request_id,
    )
    raise PermissionDeniedError(reason)


async def effective_permissions(session: AsyncSession, user_id: str) -> dict[str, Any]:
    # Role matrix, role specials and overrides for display; never used for decisions.
    user = await users_repo.get_user(session, user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    role = None
    if user.security_role_id is not None:
        role = await load_role_snapshot(session, user.security_role_id)
    overrides = await users_repo.list_overrides(session, user_id)
    return {
        "user_id": user.id,
        "tenant_id": user.tenant_id,
        "implicit_role": user.role,
        "security_role": role.to_dict() if role is not None else None,
        "entity_privileges": (
            {entity: dict(levels) for entity, levels in role.privileges.items()} if role else {}
        ),
        "special_permissions": dict(role.special_permissions) if role else {},
        "custom_permissions": {row.permission_key: bool(row.granted) for row in overrides},
    }
