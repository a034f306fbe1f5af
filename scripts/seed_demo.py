from __future__ import annotations

import asyncio
from dataclasses import dataclass

from sqlalchemy import select

from kinship.core.config import get_settings
from kinship.domain.models import SecurityRole, Tenant, User
from kinship.domain.vocab import ROLE_MEMBER, ROLE_SYSTEM_ADMIN, ROLE_TENANT_ADMIN, TENANT_STATUS_ACTIVE
from kinship.persistence.db import SessionLocal
from kinship.services.roles import seed_system_roles


DEMO_TENANT_ID = "t1"
DEMO_TENANT_SLUG = "demo-family"


@dataclass(frozen=True)
class DemoUser:
    id: str
    display_name: str
    role: str
    tenant_id: str | None


DEMO_USERS: tuple[DemoUser, ...] = (
    DemoUser(id="u-platform", display_name="Platform Operator", role=ROLE_SYSTEM_ADMIN, tenant_id=None),
    DemoUser(id="u-admin", display_name="Family Admin", role=ROLE_TENANT_ADMIN, tenant_id=DEMO_TENANT_ID),
    DemoUser(id="u-member", display_name="Family Member", role=ROLE_MEMBER, tenant_id=DEMO_TENANT_ID),
)


async def seed() -> None:
    # Idempotent: existing rows are left untouched.
    async with SessionLocal() as session:
        await seed_system_roles(session, actor_id="u-platform")

        tenant = await session.get(Tenant, DEMO_TENANT_ID)
        if tenant is None:
            session.add(
                Tenant(
                    id=DEMO_TENANT_ID,
                    name="Demo Family",
                    slug=DEMO_TENANT_SLUG,
                    status=TENANT_STATUS_ACTIVE,
                    require_approval_for_content=get_settings().default_require_approval,
                    created_by="u-platform",
                )
            )
            await session.flush()

        default_role = (
            await session.execute(
                select(SecurityRole).where(
                    SecurityRole.is_system_role.is_(True),
                    SecurityRole.is_default.is_(True),
                )
            )
        ).scalars().first()

        for demo in DEMO_USERS:
            if await session.get(User, demo.id) is not None:
                continue
            session.add(
                User(
                    id=demo.id,
                    tenant_id=demo.tenant_id,
                    display_name=demo.display_name,
                    role=demo.role,
                    security_role_id=default_role.id if demo.role == ROLE_MEMBER and default_role else None,
                )
            )
        await session.commit()
        print(f"tenant_id={DEMO_TENANT_ID}")
        for demo in DEMO_USERS:
            print(f"user_id={demo.id} role={demo.role}")


if __name__ == "__main__":
    asyncio.run(seed())
