from __future__ import annotations

from typing import Literal, get_args


AccessLevel = Literal["none", "owner", "tenant", "global"]
PrivilegeType = Literal[
    "create",
    "read",
    "write",
    "delete",
    "assign",
    "share",
    "approve",
    "export",
    "import",
]
EntityType = Literal[
    "user",
    "tenant",
    "member",
    "event",
    "news",
    "document",
    "recipe",
    "poll",
    "memorial",
    "tradition",
    "announcement",
    "gallery",
    "photo",
    "activity",
    "location",
    "service",
    "submission",
    "approval",
    "settings",
    "audit_log",
]
SpecialPermission = Literal[
    "manage_roles",
    "manage_users",
    "manage_tenant",
    "view_audit_logs",
    "export_all",
    "import_data",
    "manage_integrations",
    "access_admin",
    "approve_content",
    "manage_settings",
    "send_notifications",
    "manage_billing",
    "view_reports",
    "bulk_operations",
]
ImplicitRole = Literal["system_admin", "tenant_admin", "member", "guest"]
ContentKind = Literal[
    "event",
    "news",
    "document",
    "recipe",
    "poll",
    "memorial",
    "tradition",
    "announcement",
    "photo",
    "activity",
    "location",
    "submission",
]
StructuralKind = Literal["tenant", "member"]
Decision = Literal["approve", "reject"]

ACCESS_LEVELS: tuple[str, ...] = get_args(AccessLevel)
PRIVILEGE_TYPES: tuple[str, ...] = get_args(PrivilegeType)
ENTITY_TYPES: tuple[str, ...] = get_args(EntityType)
SPECIAL_PERMISSIONS: tuple[str, ...] = get_args(SpecialPermission)
IMPLICIT_ROLES: tuple[str, ...] = get_args(ImplicitRole)
CONTENT_KINDS: tuple[str, ...] = get_args(ContentKind)
TARGET_KINDS: tuple[str, ...] = get_args(StructuralKind) + CONTENT_KINDS
DECISIONS: tuple[str, ...] = get_args(Decision)

# Breadth ordering of access levels, narrowest first.
ACCESS_LEVEL_ORDER: dict[str, int] = {level: rank for rank, level in enumerate(ACCESS_LEVELS)}

ROLE_SYSTEM_ADMIN = "system_admin"
ROLE_TENANT_ADMIN = "tenant_admin"
ROLE_MEMBER = "member"
ROLE_GUEST = "guest"

TARGET_KIND_TENANT = "tenant"
TARGET_KIND_MEMBER = "member"

CONTENT_STATUS_PENDING = "pending"
CONTENT_STATUS_APPROVED = "approved"
CONTENT_STATUS_REJECTED = "rejected"
CONTENT_STATUS_ARCHIVED = "archived"

TENANT_STATUS_PENDING = "pending"
TENANT_STATUS_ACTIVE = "active"
TENANT_STATUS_SUSPENDED = "suspended"
TENANT_STATUS_ARCHIVED = "archived"

TICKET_STATUS_PENDING = "pending"
TICKET_STATUS_APPROVED = "approved"
TICKET_STATUS_REJECTED = "rejected"

SPECIAL_PERMISSION_PREFIX = "special"

# Privilege-matrix entry that governs each moderated target kind.
ENTITY_TYPE_FOR_KIND: dict[str, str] = {kind: kind for kind in TARGET_KINDS}
