from __future__ import annotations

import pytest
from sqlalchemy import select

from kinship.core.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from kinship.domain.models import SecurityRole, User
from kinship.persistence.db import SessionLocal
from kinship.persistence.repos import roles as roles_repo
from kinship.services import roles as roles_service
from kinship.services.authz.resolver import resolve
from kinship.tests.utils.factories import (
    context_for,
    create_role,
    create_tenant,
    create_user,
    fetch_audit_events,
    matrix,
)


@pytest.mark.asyncio
async def test_tenant_admin_creates_role_in_own_tenant() -> None:
    # Tenant admins may omit tenant_id; it defaults to their own tenant.
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    async with SessionLocal() as session:
        role = await roles_service.create_role(
            session,
            admin,
            name="Editors",
            entity_privileges=matrix({"news": {"write": "tenant"}}),
            special_permissions={"approve_content": True},
        )
    assert role.tenant_id == tenant.id
    assert role.is_system_role is False
    assert role.special_permissions["approve_content"] is True
    assert role.special_permissions["manage_billing"] is False
    events = await fetch_audit_events(tenant_id=tenant.id, event_type="security_role.created")
    assert [event.resource_id for event in events] == [role.id]


@pytest.mark.asyncio
async def test_duplicate_role_name_conflicts() -> None:
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    async with SessionLocal() as session:
        await roles_service.create_role(session, admin, name="Editors")
        with pytest.raises(ConflictError):
            await roles_service.create_role(session, admin, name="Editors")


@pytest.mark.asyncio
async def test_members_cannot_manage_roles() -> None:
    tenant = await create_tenant()
    member = await context_for(await create_user(tenant_id=tenant.id, role="member"))
    async with SessionLocal() as session:
        with pytest.raises(PermissionDeniedError):
            await roles_service.create_role(session, member, name="Sneaky")


@pytest.mark.asyncio
async def test_superuser_must_name_tenant_for_tenant_roles() -> None:
    platform = await context_for(await create_user(tenant_id=None, role="system_admin"))
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await roles_service.create_role(session, platform, name="Orphan")
        with pytest.raises(NotFoundError):
            await roles_service.create_role(session, platform, name="Orphan", tenant_id="t-missing")


@pytest.mark.asyncio
async def test_delete_blocked_while_users_reference_role() -> None:
    # The conflict reports how many users still hold the role.
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    role = await create_role(tenant_id=tenant.id, levels={"event": {"read": "tenant"}})
    holders = [
        await create_user(tenant_id=tenant.id, role="member", security_role_id=role.id) for _ in range(2)
    ]

    async with SessionLocal() as session:
        with pytest.raises(ConflictError) as excinfo:
            await roles_service.delete_role(session, admin, role.id)
    assert excinfo.value.reference_count == 2
    assert "2 user(s)" in excinfo.value.message

    async with SessionLocal() as session:
        for holder in holders:
            user = await session.get(User, holder.id)
            user.security_role_id = None
        await session.commit()

    async with SessionLocal() as session:
        await roles_service.delete_role(session, admin, role.id)
    async with SessionLocal() as session:
        assert await roles_repo.get_role(session, role.id) is None


@pytest.mark.asyncio
async def test_system_roles_cannot_be_deleted_even_by_superuser() -> None:
    platform = await context_for(await create_user(tenant_id=None, role="system_admin"))
    system_role = await create_role(tenant_id=None, is_system_role=True)
    async with SessionLocal() as session:
        with pytest.raises(PermissionDeniedError) as excinfo:
            await roles_service.delete_role(session, platform, system_role.id)
    assert excinfo.value.reason == "System roles cannot be deleted"


@pytest.mark.asyncio
async def test_tenant_admin_cannot_modify_system_or_foreign_roles() -> None:
    tenant = await create_tenant()
    other = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    system_role = await create_role(tenant_id=None, is_system_role=True)
    foreign_role = await create_role(tenant_id=other.id)

    async with SessionLocal() as session:
        with pytest.raises(PermissionDeniedError) as system_exc:
            await roles_service.update_role(session, admin, system_role.id, description="mine now")
        with pytest.raises(PermissionDeniedError) as foreign_exc:
            await roles_service.update_role(session, admin, foreign_role.id, description="mine now")
        with pytest.raises(PermissionDeniedError):
            await roles_service.delete_role(session, admin, foreign_role.id)
    assert system_exc.value.reason == "Only system administrators can modify system roles"
    assert foreign_exc.value.reason == "Cannot modify roles of another tenant"


@pytest.mark.asyncio
async def test_superuser_may_edit_system_role() -> None:
    platform = await context_for(await create_user(tenant_id=None, role="system_admin"))
    system_role = await create_role(tenant_id=None, is_system_role=True)
    async with SessionLocal() as session:
        updated = await roles_service.update_role(
            session, platform, system_role.id, description="Reviewed by platform"
        )
    assert updated.description == "Reviewed by platform"
    assert updated.updated_by == platform.user_id


@pytest.mark.asyncio
async def test_role_update_is_visible_to_next_resolution() -> None:
    # Mutations invalidate the cached snapshot so the next check sees new levels.
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    role = await create_role(tenant_id=tenant.id, levels={"event": {"read": "none"}})
    member = await context_for(await create_user(tenant_id=tenant.id, role="member", security_role_id=role.id))

    async with SessionLocal() as session:
        before = await resolve(session, member, "event", "read", target_tenant_id=tenant.id)
    assert before.allowed is False

    async with SessionLocal() as session:
        await roles_service.update_role(
            session, admin, role.id, entity_privileges=matrix({"event": {"read": "tenant"}})
        )

    async with SessionLocal() as session:
        after = await resolve(session, member, "event", "read", target_tenant_id=tenant.id)
    assert after.allowed is True
    assert after.reason == "Tenant access"


@pytest.mark.asyncio
async def test_default_flag_is_unique_per_tenant() -> None:
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    async with SessionLocal() as session:
        first = await roles_service.create_role(session, admin, name="First", is_default=True)
        second = await roles_service.create_role(session, admin, name="Second", is_default=True)

    async with SessionLocal() as session:
        result = await session.execute(
            select(SecurityRole.id).where(
                SecurityRole.tenant_id == tenant.id,
                SecurityRole.is_default.is_(True),
            )
        )
        defaults = [row[0] for row in result.all()]
    assert defaults == [second.id]
    assert first.id != second.id


@pytest.mark.asyncio
async def test_tenant_admin_lists_own_and_system_roles_only() -> None:
    tenant = await create_tenant()
    other = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    own = await create_role(tenant_id=tenant.id)
    foreign = await create_role(tenant_id=other.id)
    system_role = await create_role(tenant_id=None, is_system_role=True)

    async with SessionLocal() as session:
        rows, total = await roles_service.list_roles(session, admin, tenant_id=other.id)
    ids = {role.id for role in rows}
    assert own.id in ids
    assert system_role.id in ids
    assert foreign.id not in ids
    assert total == len(rows)


@pytest.mark.asyncio
async def test_seed_system_roles_is_idempotent() -> None:
    async with SessionLocal() as session:
        created = await roles_service.seed_system_roles(session)
    assert {role.name for role in created} == {
        "System Administrator",
        "Tenant Administrator",
        "Tenant Member",
        "Guest",
    }

    async with SessionLocal() as session:
        again = await roles_service.seed_system_roles(session)
        total = await roles_repo.count_system_roles(session)
    assert again == []
    assert total == 4


@pytest.mark.asyncio
async def test_only_superuser_initializes_system_roles() -> None:
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    platform = await context_for(await create_user(tenant_id=None, role="system_admin"))
    async with SessionLocal() as session:
        with pytest.raises(PermissionDeniedError):
            await roles_service.initialize_system_roles(session, admin)
        created = await roles_service.initialize_system_roles(session, platform)
    assert len(created) == 4
    events = await fetch_audit_events(event_type="security_role.seeded")
    assert len(events) == 1
