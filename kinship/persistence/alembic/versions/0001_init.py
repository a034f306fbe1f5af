"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("require_approval_for_content", sa.Boolean(), nullable=False, server_default=sa.true()),
        # Denormalized counters, only moved by approval transitions.
        sa.Column("member_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("content_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pending_approvals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_tenants_slug", "tenants", ["slug"], unique=True)

    op.create_table(
        "security_roles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=True),
        sa.Column("is_system_role", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("entity_privileges", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("special_permissions", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "name", name="uq_security_roles_tenant_name"),
    )
    op.create_index("ix_security_roles_tenant_id", "security_roles", ["tenant_id"])
    op.create_index("ix_security_roles_system_name", "security_roles", ["is_system_role", "name"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("security_role_id", sa.String(), sa.ForeignKey("security_roles.id"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_tenant_id", "users", ["tenant_id"])
    op.create_index("ix_users_security_role_id", "users", ["security_role_id"])

    op.create_table(
        "user_permission_overrides",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("permission_key", sa.String(), nullable=False),
        sa.Column("granted", sa.Boolean(), nullable=False),
        sa.Column("granted_by", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "permission_key", name="uq_user_permission_overrides_key"),
    )
    op.create_index("ix_user_permission_overrides_user_id", "user_permission_overrides", ["user_id"])

    op.create_table(
        "members",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=False),
        sa.Column("last_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        *_timestamps(),
    )
    op.create_index("ix_members_tenant_id", "members", ["tenant_id"])

    op.create_table(
        "events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        *_timestamps(),
    )
    op.create_index("ix_events_tenant_id", "events", ["tenant_id"])
    op.create_index("ix_events_tenant_status", "events", ["tenant_id", "status"])

    op.create_table(
        "documents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=True),
        sa.Column("storage_ref", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        *_timestamps(),
    )
    op.create_index("ix_documents_tenant_id", "documents", ["tenant_id"])
    op.create_index("ix_documents_tenant_status", "documents", ["tenant_id", "status"])

    op.create_table(
        "content_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        *_timestamps(),
    )
    op.create_index("ix_content_items_tenant_id", "content_items", ["tenant_id"])
    op.create_index(
        "ix_content_items_tenant_kind_status", "content_items", ["tenant_id", "kind", "status"]
    )

    op.create_table(
        "approval_tickets",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("target_entity_id", sa.String(), nullable=False),
        sa.Column("target_entity_kind", sa.String(), nullable=False),
        sa.Column("requester_id", sa.String(), nullable=False),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("requested_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("changes", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_approval_tickets_tenant_id", "approval_tickets", ["tenant_id"])
    op.create_index("ix_approval_tickets_target_entity_id", "approval_tickets", ["target_entity_id"])
    op.create_index("ix_approval_tickets_requester_id", "approval_tickets", ["requester_id"])
    op.create_index("ix_approval_tickets_tenant_status", "approval_tickets", ["tenant_id", "status"])
    op.create_index(
        "ix_approval_tickets_tenant_kind_status",
        "approval_tickets",
        ["tenant_id", "target_entity_kind", "status"],
    )
    op.create_index(
        "ix_approval_tickets_reviewer_reviewed", "approval_tickets", ["reviewer_id", "reviewed_at"]
    )
    # At most one outstanding ticket per target.
    op.create_index(
        "uq_approval_tickets_pending_target",
        "approval_tickets",
        ["target_entity_kind", "target_entity_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("error_code", sa.String(), nullable=True),
    )
    op.create_index("ix_audit_events_tenant_occurred", "audit_events", ["tenant_id", "occurred_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_occurred", table_name="audit_events")
    op.drop_table("audit_events")

    op.drop_index("uq_approval_tickets_pending_target", table_name="approval_tickets")
    op.drop_index("ix_approval_tickets_reviewer_reviewed", table_name="approval_tickets")
    op.drop_index("ix_approval_tickets_tenant_kind_status", table_name="approval_tickets")
    op.drop_index("ix_approval_tickets_tenant_status", table_name="approval_tickets")
    op.drop_index("ix_approval_tickets_requester_id", table_name="approval_tickets")
    op.drop_index("ix_approval_tickets_target_entity_id", table_name="approval_tickets")
    op.drop_index("ix_approval_tickets_tenant_id", table_name="approval_tickets")
    op.drop_table("approval_tickets")

    op.drop_index("ix_content_items_tenant_kind_status", table_name="content_items")
    op.drop_index("ix_content_items_tenant_id", table_name="content_items")
    op.drop_table("content_items")

    op.drop_index("ix_documents_tenant_status", table_name="documents")
    op.drop_index("ix_documents_tenant_id", table_name="documents")
    op.drop_table("documents")

    op.drop_index("ix_events_tenant_status", table_name="events")
    op.drop_index("ix_events_tenant_id", table_name="events")
    op.drop_table("events")

    op.drop_index("ix_members_tenant_id", table_name="members")
    op.drop_table("members")

    op.drop_index("ix_user_permission_overrides_user_id", table_name="user_permission_overrides")
    op.drop_table("user_permission_overrides")

    op.drop_index("ix_users_security_role_id", table_name="users")
    op.drop_index("ix_users_tenant_id", table_name="users")
    op.drop_table("users")

    op.drop_index("ix_security_roles_system_name", table_name="security_roles")
    op.drop_index("ix_security_roles_tenant_id", table_name="security_roles")
    op.drop_table("security_roles")

    op.drop_index("ix_tenants_slug", table_name="tenants")
    op.drop_table("tenants")
