from __future__ import annotations

import pytest

from kinship.core.errors import NotFoundError, PermissionDeniedError, ValidationError
from kinship.persistence.db import SessionLocal
from kinship.persistence.repos import users as users_repo
from kinship.services import permissions as permissions_service
from kinship.services.authz.resolver import check_special, effective_permissions, resolve
from kinship.tests.utils.factories import (
    context_for,
    create_role,
    create_tenant,
    create_user,
    fetch_audit_events,
)


async def _override_rows(user_id: str) -> dict[str, bool]:
    async with SessionLocal() as session:
        rows = await users_repo.list_overrides(session, user_id)
    return {row.permission_key: row.granted for row in rows}


@pytest.mark.asyncio
async def test_override_grant_beats_role_none() -> None:
    # A member whose role forbids event deletion can still delete once granted an override.
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    role = await create_role(tenant_id=tenant.id, levels={"event": {"read": "tenant", "delete": "none"}})
    user = await create_user(tenant_id=tenant.id, role="member", security_role_id=role.id)

    async with SessionLocal() as session:
        denied = await resolve(session, await context_for(user), "event", "delete", target_tenant_id=tenant.id)
    assert denied.allowed is False

    async with SessionLocal() as session:
        await permissions_service.set_custom_permission(
            session, admin, user.id, permission_key="event:delete", granted=True
        )

    async with SessionLocal() as session:
        granted = await resolve(session, await context_for(user), "event", "delete", target_tenant_id=tenant.id)
    assert granted.allowed is True
    assert granted.reason == "Custom permission granted"


@pytest.mark.asyncio
async def test_toggling_override_keeps_single_row() -> None:
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    user = await create_user(tenant_id=tenant.id, role="member")

    for granted in (True, False):
        async with SessionLocal() as session:
            await permissions_service.set_custom_permission(
                session, admin, user.id, permission_key="special:view_reports", granted=granted
            )
    assert await _override_rows(user.id) == {"special:view_reports": False}

    async with SessionLocal() as session:
        assert await check_special(session, await context_for(user), "view_reports") is False
    events = await fetch_audit_events(tenant_id=tenant.id, event_type="user_permission.set")
    assert len(events) == 2


@pytest.mark.asyncio
async def test_remove_override_and_missing_override() -> None:
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    user = await create_user(tenant_id=tenant.id, role="member")
    async with SessionLocal() as session:
        await permissions_service.set_custom_permission(
            session, admin, user.id, permission_key="news:share", granted=True
        )
    async with SessionLocal() as session:
        await permissions_service.remove_custom_permission(session, admin, user.id, permission_key="news:share")
        with pytest.raises(NotFoundError):
            await permissions_service.remove_custom_permission(
                session, admin, user.id, permission_key="news:share"
            )
    assert await _override_rows(user.id) == {}


@pytest.mark.asyncio
async def test_replace_overrides_is_all_or_nothing() -> None:
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    user = await create_user(tenant_id=tenant.id, role="member")

    async with SessionLocal() as session:
        await permissions_service.replace_custom_permissions(
            session, admin, user.id, {"event:read": True, "news:write": False}
        )
    assert await _override_rows(user.id) == {"event:read": True, "news:write": False}

    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await permissions_service.replace_custom_permissions(
                session, admin, user.id, {"event:read": False, "spaceship:fly": True}
            )
    assert await _override_rows(user.id) == {"event:read": True, "news:write": False}

    async with SessionLocal() as session:
        rows = await permissions_service.replace_custom_permissions(
            session, admin, user.id, {"event:read": False}
        )
    assert [(row.permission_key, row.granted) for row in rows] == [("event:read", False)]


@pytest.mark.asyncio
async def test_only_same_tenant_admins_manage_overrides() -> None:
    tenant = await create_tenant()
    other = await create_tenant()
    member = await context_for(await create_user(tenant_id=tenant.id, role="member"))
    foreign_admin = await context_for(await create_user(tenant_id=other.id, role="tenant_admin"))
    platform = await context_for(await create_user(tenant_id=None, role="system_admin"))
    user = await create_user(tenant_id=tenant.id, role="member")

    async with SessionLocal() as session:
        with pytest.raises(PermissionDeniedError):
            await permissions_service.set_custom_permission(
                session, member, user.id, permission_key="event:read", granted=True
            )
        with pytest.raises(PermissionDeniedError):
            await permissions_service.set_custom_permission(
                session, foreign_admin, user.id, permission_key="event:read", granted=True
            )
        with pytest.raises(ValidationError):
            await permissions_service.set_custom_permission(
                session, platform, user.id, permission_key="event:fly", granted=True
            )
        await permissions_service.set_custom_permission(
            session, platform, user.id, permission_key="event:read", granted=True
        )
    assert await _override_rows(user.id) == {"event:read": True}


@pytest.mark.asyncio
async def test_role_assignment_rules() -> None:
    tenant = await create_tenant()
    other = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    platform = await context_for(await create_user(tenant_id=None, role="system_admin"))
    user = await create_user(tenant_id=tenant.id, role="member")
    own_role = await create_role(tenant_id=tenant.id, levels={"event": {"read": "tenant"}})
    foreign_role = await create_role(tenant_id=other.id)
    global_role = await create_role(tenant_id=None, is_system_role=True, levels={"audit_log": {"read": "global"}})

    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await permissions_service.assign_security_role(session, admin, user.id, role_id=foreign_role.id)
        with pytest.raises(PermissionDeniedError):
            await permissions_service.assign_security_role(session, admin, user.id, role_id=global_role.id)
        with pytest.raises(NotFoundError):
            await permissions_service.assign_security_role(session, admin, user.id, role_id="missing")

    async with SessionLocal() as session:
        assigned = await permissions_service.assign_security_role(session, admin, user.id, role_id=own_role.id)
    assert assigned.security_role_id == own_role.id

    async with SessionLocal() as session:
        promoted = await permissions_service.assign_security_role(
            session, platform, user.id, role_id=global_role.id
        )
    assert promoted.security_role_id == global_role.id

    async with SessionLocal() as session:
        cleared = await permissions_service.remove_security_role(session, admin, user.id)
    assert cleared.security_role_id is None
    removed = await fetch_audit_events(tenant_id=tenant.id, event_type="user_security_role.removed")
    assert removed[0].metadata_json["previous_role_id"] == global_role.id


@pytest.mark.asyncio
async def test_effective_permissions_report() -> None:
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    role = await create_role(
        tenant_id=tenant.id,
        levels={"recipe": {"read": "tenant", "write": "owner"}},
        specials={"send_notifications": True},
    )
    user = await create_user(tenant_id=tenant.id, role="member", security_role_id=role.id)
    async with SessionLocal() as session:
        await permissions_service.set_custom_permission(
            session, admin, user.id, permission_key="recipe:delete", granted=True
        )

    async with SessionLocal() as session:
        report = await effective_permissions(session, user.id)
        with pytest.raises(NotFoundError):
            await effective_permissions(session, "missing")
    assert report["implicit_role"] == "member"
    assert report["security_role"]["id"] == role.id
    assert report["entity_privileges"]["recipe"]["write"] == "owner"
    assert report["special_permissions"]["send_notifications"] is True
    assert report["custom_permissions"] == {"recipe:delete": True}


@pytest.mark.asyncio
async def test_principal_context_loading() -> None:
    tenant = await create_tenant()
    inactive = await create_user(tenant_id=tenant.id, role="member", is_active=False)
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await permissions_service.load_principal_context(session, "missing")
        with pytest.raises(PermissionDeniedError):
            await permissions_service.load_principal_context(session, inactive.id)
