from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from kinship.domain.vocab import ENTITY_TYPES, PRIVILEGE_TYPES, ROLE_TENANT_ADMIN, SPECIAL_PERMISSIONS


# Special permissions granted to implicit roles that have no security role assigned.
IMPLICIT_ROLE_SPECIALS: dict[str, frozenset[str]] = {
    ROLE_TENANT_ADMIN: frozenset(
        {
            "manage_users",
            "manage_tenant",
            "access_admin",
            "approve_content",
            "manage_settings",
            "send_notifications",
        }
    ),
}


@dataclass(frozen=True)
class SystemRoleTemplate:
    name: str
    description: str
    level_for: Callable[[str, str], str]
    specials: frozenset[str]
    is_default: bool = False

    def entity_privileges(self) -> list[dict[str, Any]]:
        return [
            {
                "entity_type": entity_type,
                "privileges": {
                    privilege: self.level_for(entity_type, privilege) for privilege in PRIVILEGE_TYPES
                },
            }
            for entity_type in ENTITY_TYPES
        ]

    def special_permissions(self) -> dict[str, bool]:
        return {name: name in self.specials for name in SPECIAL_PERMISSIONS}


_MEMBER_LEVELS = {
    "create": "tenant",
    "read": "tenant",
    "write": "owner",
    "delete": "owner",
    "assign": "none",
    "share": "tenant",
    "approve": "none",
    "export": "owner",
    "import": "none",
}

_GUEST_READABLE = {"news", "event", "gallery"}


def _member_level(entity_type: str, privilege: str) -> str:
    # Members never create login accounts for others.
    if entity_type == "user" and privilege == "create":
        return "none"
    return _MEMBER_LEVELS[privilege]


def _guest_level(entity_type: str, privilege: str) -> str:
    if privilege == "read" and entity_type in _GUEST_READABLE:
        return "tenant"
    return "none"


SYSTEM_ROLE_TEMPLATES: tuple[SystemRoleTemplate, ...] = (
    SystemRoleTemplate(
        name="System Administrator",
        description="Full access to all system features",
        level_for=lambda _entity, _privilege: "global",
        specials=frozenset(SPECIAL_PERMISSIONS),
    ),
    SystemRoleTemplate(
        name="Tenant Administrator",
        description="Full access to tenant features",
        level_for=lambda _entity, _privilege: "tenant",
        specials=frozenset(SPECIAL_PERMISSIONS)
        - {"export_all", "manage_integrations", "manage_billing", "bulk_operations"},
    ),
    SystemRoleTemplate(
        name="Tenant Member",
        description="Standard tenant member access",
        level_for=_member_level,
        specials=frozenset(),
        is_default=True,
    ),
    SystemRoleTemplate(
        name="Guest",
        description="Read-only access to public content",
        level_for=_guest_level,
        specials=frozenset(),
    ),
)
