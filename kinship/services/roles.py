from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.core.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from kinship.domain.models import SecurityRole
from kinship.domain.vocab import ACCESS_LEVELS, ENTITY_TYPES, PRIVILEGE_TYPES, SPECIAL_PERMISSIONS
from kinship.persistence.repos import roles as roles_repo
from kinship.persistence.repos import tenants as tenants_repo
from kinship.services.audit import record_event
from kinship.services.authz.context import PrincipalContext
from kinship.services.authz.defaults import SYSTEM_ROLE_TEMPLATES
from kinship.services.authz.resolver import invalidate_role


logger = logging.getLogger(__name__)

_NAME_MAX_CHARS = 100
_DESCRIPTION_MAX_CHARS = 500


def validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Role name is required")
    cleaned = name.strip()
    if len(cleaned) > _NAME_MAX_CHARS:
        raise ValidationError(f"Role name exceeds {_NAME_MAX_CHARS} characters")
    return cleaned


def validate_description(description: Any) -> str | None:
    if description is None:
        return None
    if not isinstance(description, str):
        raise ValidationError("Role description must be a string")
    if len(description) > _DESCRIPTION_MAX_CHARS:
        raise ValidationError(f"Role description exceeds {_DESCRIPTION_MAX_CHARS} characters")
    return description


def validate_entity_privileges(raw: Iterable[Mapping[str, Any]] | None) -> list[dict[str, Any]]:
    # Reject anything outside the closed vocabularies; fill unset privilege types with none.
    if raw is None:
        return []
    if isinstance(raw, (str, bytes, Mapping)):
        raise ValidationError("entity_privileges must be a list")
    normalized: list[dict[str, Any]] = []
    seen: set[str] = set()
    for entry in raw:
        if not isinstance(entry, Mapping):
            raise ValidationError("Each entity privilege entry must be an object")
        entity_type = entry.get("entity_type")
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(f"Invalid entity type: {entity_type}")
        if entity_type in seen:
            raise ValidationError(f"Duplicate entity type: {entity_type}")
        seen.add(entity_type)
        privileges = entry.get("privileges") or {}
        if not isinstance(privileges, Mapping):
            raise ValidationError(f"Privileges for {entity_type} must be an object")
        for privilege_type, level in privileges.items():
            if privilege_type not in PRIVILEGE_TYPES:
                raise ValidationError(f"Invalid privilege type: {privilege_type}")
            if level not in ACCESS_LEVELS:
                raise ValidationError(f"Invalid access level: {level}")
        normalized.append(
            {
                "entity_type": entity_type,
                "privileges": {
                    privilege_type: privileges.get(privilege_type, "none")
                    for privilege_type in PRIVILEGE_TYPES
                },
            }
        )
    return normalized


def validate_special_permissions(raw: Mapping[str, Any] | None) -> dict[str, bool]:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ValidationError("special_permissions must be an object")
    for name, value in raw.items():
        if name not in SPECIAL_PERMISSIONS:
            raise ValidationError(f"Invalid special permission: {name}")
        if not isinstance(value, bool):
            raise ValidationError(f"Special permission {name} must be a boolean")
    return {name: bool(raw.get(name, False)) for name in SPECIAL_PERMISSIONS}


def _require_role_manager(context: PrincipalContext) -> None:
    if not context.is_admin:
        raise PermissionDeniedError("Only administrators can manage security roles")


def _require_role_scope(context: PrincipalContext, role: SecurityRole) -> None:
    # Mutation rules: system roles belong to platform operators, tenant roles to their own admins.
    if context.is_superuser:
        return
    if role.is_system_role:
        raise PermissionDeniedError("Only system administrators can modify system roles")
    if role.tenant_id != context.tenant_id:
        raise PermissionDeniedError("Cannot modify roles of another tenant")


def _require_visible(context: PrincipalContext, role: SecurityRole) -> None:
    if context.is_superuser or role.is_system_role:
        return
    if role.tenant_id != context.tenant_id:
        raise PermissionDeniedError("Cannot view roles of another tenant")


async def _ensure_unique_name(
    session: AsyncSession,
    *,
    name: str,
    tenant_id: str | None,
    exclude_id: str | None = None,
) -> None:
    existing = await roles_repo.get_role_by_name(session, name=name, tenant_id=tenant_id)
    if existing is not None and existing.id != exclude_id:
        raise ConflictError(f"A role named {name!r} already exists")


async def _clear_other_defaults(session: AsyncSession, *, tenant_id: str | None, keep_id: str) -> None:
    # One default role per scope.
    stmt = update(SecurityRole).where(SecurityRole.id != keep_id, SecurityRole.is_default.is_(True))
    if tenant_id is None:
        stmt = stmt.where(SecurityRole.tenant_id.is_(None))
    else:
        stmt = stmt.where(SecurityRole.tenant_id == tenant_id)
    await session.execute(stmt.values(is_default=False).execution_options(synchronize_session=False))


async def create_role(
    session: AsyncSession,
    context: PrincipalContext,
    *,
    name: str,
    description: str | None = None,
    tenant_id: str | None = None,
    is_system_role: bool = False,
    is_default: bool = False,
    entity_privileges: Iterable[Mapping[str, Any]] | None = None,
    special_permissions: Mapping[str, Any] | None = None,
) -> SecurityRole:
    _require_role_manager(context)
    cleaned_name = validate_name(name)
    cleaned_description = validate_description(description)
    privileges = validate_entity_privileges(entity_privileges)
    specials = validate_special_permissions(special_permissions)

    if is_system_role:
        if not context.is_superuser:
            raise PermissionDeniedError("Only system administrators can create system roles")
        if tenant_id is not None:
            raise ValidationError("System roles cannot belong to a tenant")
    elif context.is_superuser:
        if not tenant_id:
            raise ValidationError("tenant_id is required for tenant roles")
    else:
        if context.tenant_id is None:
            raise ValidationError("You must belong to a tenant to create roles")
        tenant_id = tenant_id or context.tenant_id
        if tenant_id != context.tenant_id:
            raise PermissionDeniedError("Cannot create roles for another tenant")

    if tenant_id is not None and await tenants_repo.get_tenant(session, tenant_id) is None:
        raise NotFoundError(f"Tenant not found: {tenant_id}")
    await _ensure_unique_name(session, name=cleaned_name, tenant_id=tenant_id)

    role = SecurityRole(
        id=uuid4().hex,
        name=cleaned_name,
        description=cleaned_description,
        tenant_id=tenant_id,
        is_system_role=is_system_role,
        is_default=is_default,
        entity_privileges=privileges,
        special_permissions=specials,
        created_by=context.user_id,
        updated_by=context.user_id,
    )
    session.add(role)
    try:
        await session.flush()
        if is_default:
            await _clear_other_defaults(session, tenant_id=tenant_id, keep_id=role.id)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(f"A role named {cleaned_name!r} already exists") from exc
    await session.refresh(role)

    logger.info("security_role_created role_id=%s tenant_id=%s actor=%s", role.id, tenant_id, context.user_id)
    await record_event(
        tenant_id=tenant_id,
        actor_id=context.user_id,
        actor_role=context.implicit_role,
        event_type="security_role.created",
        resource_type="security_role",
        resource_id=role.id,
        metadata={"name": role.name, "is_system_role": role.is_system_role},
    )
    return role


async def get_role(session: AsyncSession, context: PrincipalContext, role_id: str) -> SecurityRole:
    _require_role_manager(context)
    role = await roles_repo.get_role(session, role_id)
    if role is None:
        raise NotFoundError(f"Security role not found: {role_id}")
    _require_visible(context, role)
    return role


async def list_roles(
    session: AsyncSession,
    context: PrincipalContext,
    *,
    tenant_id: str | None = None,
    system_only: bool = False,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[SecurityRole], int]:
    _require_role_manager(context)
    if not context.is_superuser:
        # Tenant admins only ever see their own tenant plus the system catalogue.
        if context.tenant_id is None:
            raise PermissionDeniedError("Tenant administrator has no tenant")
        tenant_id = context.tenant_id
    rows = await roles_repo.list_roles(
        session,
        tenant_id=tenant_id,
        include_system=True,
        system_only=system_only,
        offset=offset,
        limit=limit,
    )
    total = await roles_repo.count_roles(
        session,
        tenant_id=tenant_id,
        include_system=True,
        system_only=system_only,
    )
    return rows, total


async def update_role(
    session: AsyncSession,
    context: PrincipalContext,
    role_id: str,
    *,
    name: str | None = None,
    description: str | None = None,
    is_default: bool | None = None,
    entity_privileges: Iterable[Mapping[str, Any]] | None = None,
    special_permissions: Mapping[str, Any] | None = None,
) -> SecurityRole:
    _require_role_manager(context)
    role = await roles_repo.get_role(session, role_id)
    if role is None:
        raise NotFoundError(f"Security role not found: {role_id}")
    _require_role_scope(context, role)

    changed: list[str] = []
    if name is not None:
        cleaned_name = validate_name(name)
        if cleaned_name != role.name:
            await _ensure_unique_name(session, name=cleaned_name, tenant_id=role.tenant_id, exclude_id=role.id)
            role.name = cleaned_name
            changed.append("name")
    if description is not None:
        role.description = validate_description(description)
        changed.append("description")
    if entity_privileges is not None:
        role.entity_privileges = validate_entity_privileges(entity_privileges)
        changed.append("entity_privileges")
    if special_permissions is not None:
        role.special_permissions = validate_special_permissions(special_permissions)
        changed.append("special_permissions")
    if is_default is not None:
        role.is_default = is_default
        changed.append("is_default")
    role.updated_by = context.user_id

    try:
        await session.flush()
        if is_default:
            await _clear_other_defaults(session, tenant_id=role.tenant_id, keep_id=role.id)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Role update conflicts with an existing role") from exc
    finally:
        invalidate_role(role_id)
    await session.refresh(role)

    logger.info("security_role_updated role_id=%s fields=%s actor=%s", role_id, ",".join(changed), context.user_id)
    await record_event(
        tenant_id=role.tenant_id,
        actor_id=context.user_id,
        actor_role=context.implicit_role,
        event_type="security_role.updated",
        resource_type="security_role",
        resource_id=role.id,
        metadata={"fields": changed},
    )
    return role


async def delete_role(session: AsyncSession, context: PrincipalContext, role_id: str) -> None:
    _require_role_manager(context)
    role = await roles_repo.get_role(session, role_id)
    if role is None:
        raise NotFoundError(f"Security role not found: {role_id}")
    if role.is_system_role:
        raise PermissionDeniedError("System roles cannot be deleted")
    _require_role_scope(context, role)

    references = await roles_repo.count_role_references(session, role_id)
    if references:
        raise ConflictError(
            f"Cannot delete role: {references} user(s) are still assigned to it",
            reference_count=references,
        )

    tenant_id = role.tenant_id
    await session.delete(role)
    await session.commit()
    invalidate_role(role_id)

    logger.info("security_role_deleted role_id=%s tenant_id=%s actor=%s", role_id, tenant_id, context.user_id)
    await record_event(
        tenant_id=tenant_id,
        actor_id=context.user_id,
        actor_role=context.implicit_role,
        event_type="security_role.deleted",
        resource_type="security_role",
        resource_id=role_id,
    )


async def seed_system_roles(session: AsyncSession, *, actor_id: str | None = None) -> list[SecurityRole]:
    # Idempotent: only templates without a matching system role are inserted.
    created: list[SecurityRole] = []
    for template in SYSTEM_ROLE_TEMPLATES:
        existing = await roles_repo.get_role_by_name(session, name=template.name, tenant_id=None)
        if existing is not None:
            continue
        role = SecurityRole(
            id=uuid4().hex,
            name=template.name,
            description=template.description,
            tenant_id=None,
            is_system_role=True,
            is_default=template.is_default,
            entity_privileges=template.entity_privileges(),
            special_permissions=template.special_permissions(),
            created_by=actor_id,
            updated_by=actor_id,
        )
        session.add(role)
        created.append(role)
    if created:
        await session.commit()
        logger.info("system_roles_seeded count=%s actor=%s", len(created), actor_id)
    return created


async def initialize_system_roles(session: AsyncSession, context: PrincipalContext) -> list[SecurityRole]:
    if not context.is_superuser:
        raise PermissionDeniedError("Only system administrators can initialize system roles")
    created = await seed_system_roles(session, actor_id=context.user_id)
    if created:
        await record_event(
            tenant_id=None,
            actor_id=context.user_id,
            actor_role=context.implicit_role,
            event_type="security_role.seeded",
            resource_type="security_role",
            metadata={"names": [role.name for role in created]},
        )
    return created
