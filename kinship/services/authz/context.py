from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from kinship.core.errors import ValidationError
from kinship.domain.models import SecurityRole, User, UserPermissionOverride
from kinship.domain.vocab import (
    ENTITY_TYPES,
    IMPLICIT_ROLES,
    PRIVILEGE_TYPES,
    ROLE_SYSTEM_ADMIN,
    ROLE_TENANT_ADMIN,
    SPECIAL_PERMISSION_PREFIX,
    SPECIAL_PERMISSIONS,
)


def privilege_key(entity_type: str, privilege_type: str) -> str:
    return f"{entity_type}:{privilege_type}"


def special_key(name: str) -> str:
    return f"{SPECIAL_PERMISSION_PREFIX}:{name}"


def validate_permission_key(key: str) -> str:
    # Keys are "<entity_type>:<privilege_type>" or "special:<name>".
    prefix, sep, suffix = key.partition(":")
    if not sep or not prefix or not suffix:
        raise ValidationError(f"Invalid permission key: {key!r}")
    if prefix == SPECIAL_PERMISSION_PREFIX:
        if suffix not in SPECIAL_PERMISSIONS:
            raise ValidationError(f"Unknown special permission: {suffix}")
        return key
    if prefix not in ENTITY_TYPES:
        raise ValidationError(f"Unknown entity type: {prefix}")
    if suffix not in PRIVILEGE_TYPES:
        raise ValidationError(f"Unknown privilege type: {suffix}")
    return key


@dataclass(frozen=True)
class PrincipalContext:
    # Request-scoped facts about the acting user; rebuilt per request, never cached.
    user_id: str
    tenant_id: str | None
    implicit_role: str
    assigned_role_id: str | None = None
    custom_permissions: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def is_superuser(self) -> bool:
        return self.implicit_role == ROLE_SYSTEM_ADMIN

    @property
    def is_tenant_admin(self) -> bool:
        return self.implicit_role == ROLE_TENANT_ADMIN

    @property
    def is_admin(self) -> bool:
        return self.is_superuser or self.is_tenant_admin


def build_principal_context(
    user: User,
    overrides: Iterable[UserPermissionOverride] = (),
) -> PrincipalContext:
    if user.role not in IMPLICIT_ROLES:
        raise ValidationError(f"Unknown implicit role: {user.role}")
    custom = {row.permission_key: bool(row.granted) for row in overrides}
    return PrincipalContext(
        user_id=user.id,
        tenant_id=user.tenant_id,
        implicit_role=user.role,
        assigned_role_id=user.security_role_id,
        custom_permissions=MappingProxyType(custom),
    )


@dataclass(frozen=True)
class RoleSnapshot:
    # Immutable copy of a role row, safe to share through the role cache.
    id: str
    name: str
    tenant_id: str | None
    is_system_role: bool
    is_default: bool
    privileges: Mapping[str, Mapping[str, str]]
    special_permissions: Mapping[str, bool]

    def level_for(self, entity_type: str, privilege_type: str) -> str | None:
        # None means the entity type has no entry; a missing privilege reads as none.
        entry = self.privileges.get(entity_type)
        if entry is None:
            return None
        return entry.get(privilege_type, "none")

    @classmethod
    def from_row(cls, role: SecurityRole) -> "RoleSnapshot":
        privileges: dict[str, Mapping[str, str]] = {}
        for entry in role.entity_privileges or []:
            privileges[entry["entity_type"]] = MappingProxyType(dict(entry.get("privileges") or {}))
        specials = {name: bool(value) for name, value in (role.special_permissions or {}).items()}
        return cls(
            id=role.id,
            name=role.name,
            tenant_id=role.tenant_id,
            is_system_role=bool(role.is_system_role),
            is_default=bool(role.is_default),
            privileges=MappingProxyType(privileges),
            special_permissions=MappingProxyType(specials),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tenant_id": self.tenant_id,
            "is_system_role": self.is_system_role,
            "entity_privileges": {
                entity_type: dict(levels) for entity_type, levels in self.privileges.items()
            },
            "special_permissions": dict(self.special_permissions),
        }
