from __future__ import annotations

import argparse
import asyncio

from kinship.core.logging import configure_logging
from kinship.persistence.db import SessionLocal
from kinship.services.roles import seed_system_roles


async def _seed(actor_id: str | None) -> None:
    async with SessionLocal() as session:
        created = await seed_system_roles(session, actor_id=actor_id)
        for role in created:
            print(f"created_role id={role.id} name={role.name!r}")
        print(f"system_roles_created={len(created)}")


def main() -> None:
    # Operators run this once per deployment; reruns only add missing roles.
    parser = argparse.ArgumentParser(description="Create the built-in system security roles")
    parser.add_argument("--actor-id", default=None, help="User id recorded as the creator")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_seed(args.actor_id))


if __name__ == "__main__":
    main()
