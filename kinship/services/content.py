from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Mapping
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from kinship.core.errors import NotFoundError, ValidationError
from kinship.domain.models import ApprovalTicket, ContentItem, Document, Event, Member, Tenant
from kinship.domain.vocab import (
    CONTENT_KINDS,
    CONTENT_STATUS_APPROVED,
    CONTENT_STATUS_PENDING,
    ENTITY_TYPE_FOR_KIND,
    TARGET_KIND_MEMBER,
)
from kinship.persistence.repos import content as content_repo
from kinship.persistence.repos import tenants as tenants_repo
from kinship.services import approvals
from kinship.services.audit import record_event
from kinship.services.authz.context import PrincipalContext
from kinship.services.authz.resolver import enforce_privilege


logger = logging.getLogger(__name__)

# Fields an edit may touch, per storage model.
_EDITABLE_FIELDS: dict[type, frozenset[str]] = {
    Member: frozenset({"first_name", "last_name"}),
    Event: frozenset({"title", "description", "starts_at", "ends_at"}),
    Document: frozenset({"title", "file_name", "storage_ref"}),
    ContentItem: frozenset({"title", "body"}),
}

_COUNTER_FOR_KIND = {TARGET_KIND_MEMBER: "member_count", **{kind: "content_count" for kind in CONTENT_KINDS}}


def moderation_required(tenant: Tenant, context: PrincipalContext) -> bool:
    # Administrators publish directly; everyone else waits for review when the tenant asks for it.
    return bool(tenant.require_approval_for_content) and not context.is_admin


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


async def _load_tenant(session: AsyncSession, tenant_id: str) -> Tenant:
    tenant = await tenants_repo.get_tenant(session, tenant_id)
    if tenant is None:
        raise NotFoundError(f"Tenant not found: {tenant_id}")
    return tenant


def _build_record(
    kind: str,
    *,
    tenant_id: str,
    owner_id: str,
    status: str,
    title: str,
    fields: Mapping[str, Any],
) -> Event | Document | ContentItem:
    common = {"id": uuid4().hex, "tenant_id": tenant_id, "owner_id": owner_id, "status": status, "title": title}
    if kind == "event":
        return Event(
            **common,
            description=fields.get("description"),
            starts_at=fields.get("starts_at"),
            ends_at=fields.get("ends_at"),
        )
    if kind == "document":
        return Document(**common, file_name=fields.get("file_name"), storage_ref=fields.get("storage_ref"))
    return ContentItem(**common, kind=kind, body=fields.get("body"))


async def _persist_new_record(
    session: AsyncSession,
    context: PrincipalContext,
    *,
    tenant: Tenant,
    kind: str,
    record: Any,
    moderated: bool,
) -> ApprovalTicket | None:
    # Record, ticket and counters commit together.
    ticket = None
    try:
        session.add(record)
        await session.flush()
        if moderated:
            ticket = await approvals.submit(
                session,
                tenant_id=tenant.id,
                target_id=record.id,
                target_kind=kind,
                requester_id=context.user_id,
                commit=False,
            )
        else:
            await tenants_repo.adjust_counters(session, tenant_id=tenant.id, **{_COUNTER_FOR_KIND[kind]: 1})
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "content_created kind=%s record_id=%s tenant_id=%s moderated=%s",
        kind,
        record.id,
        tenant.id,
        moderated,
    )
    await record_event(
        tenant_id=tenant.id,
        actor_id=context.user_id,
        actor_role=context.implicit_role,
        event_type="content.created",
        resource_type=kind,
        resource_id=record.id,
        metadata={"status": record.status, "ticket_id": ticket.id if ticket else None},
    )
    return ticket


async def publish_content(
    session: AsyncSession,
    context: PrincipalContext,
    *,
    tenant_id: str,
    kind: str,
    title: str,
    request_id: str | None = None,
    **fields: Any,
) -> tuple[Any, ApprovalTicket | None]:
    if kind not in CONTENT_KINDS:
        raise ValidationError(f"Unknown content kind: {kind}")
    if not title or not title.strip():
        raise ValidationError("Title is required")
    tenant = await _load_tenant(session, tenant_id)
    await enforce_privilege(
        session,
        context,
        ENTITY_TYPE_FOR_KIND[kind],
        "create",
        target_tenant_id=tenant_id,
        request_id=request_id,
    )

    moderated = moderation_required(tenant, context)
    record = _build_record(
        kind,
        tenant_id=tenant_id,
        owner_id=context.user_id,
        status=CONTENT_STATUS_PENDING if moderated else CONTENT_STATUS_APPROVED,
        title=title.strip(),
        fields=fields,
    )
    ticket = await _persist_new_record(
        session, context, tenant=tenant, kind=kind, record=record, moderated=moderated
    )
    return record, ticket


async def add_member(
    session: AsyncSession,
    context: PrincipalContext,
    *,
    tenant_id: str,
    first_name: str,
    last_name: str,
    user_id: str | None = None,
    request_id: str | None = None,
) -> tuple[Member, ApprovalTicket | None]:
    if not first_name or not first_name.strip():
        raise ValidationError("First name is required")
    tenant = await _load_tenant(session, tenant_id)
    await enforce_privilege(
        session,
        context,
        ENTITY_TYPE_FOR_KIND[TARGET_KIND_MEMBER],
        "create",
        target_tenant_id=tenant_id,
        request_id=request_id,
    )

    moderated = moderation_required(tenant, context)
    member = Member(
        id=uuid4().hex,
        tenant_id=tenant_id,
        user_id=user_id,
        owner_id=context.user_id,
        first_name=first_name.strip(),
        last_name=(last_name or "").strip(),
        status=CONTENT_STATUS_PENDING if moderated else CONTENT_STATUS_APPROVED,
    )
    ticket = await _persist_new_record(
        session, context, tenant=tenant, kind=TARGET_KIND_MEMBER, record=member, moderated=moderated
    )
    return member, ticket


async def update_content(
    session: AsyncSession,
    context: PrincipalContext,
    *,
    kind: str,
    target_id: str,
    changes: Mapping[str, Any],
    request_id: str | None = None,
) -> tuple[Any, ApprovalTicket | None]:
    """Apply an edit, routing it back through moderation when the tenant requires it.

    A moderated edit stores the new values, moves the record back to
    ``pending`` and opens (or extends) a ticket listing each field's old and
    new value. An approved record that returns to pending stops counting
    toward the tenant's totals until it is approved again.
    """
    if kind not in _COUNTER_FOR_KIND:
        raise ValidationError(f"Unknown content kind: {kind}")
    if not changes:
        raise ValidationError("No changes supplied")
    record = await content_repo.get_target(session, kind=kind, target_id=target_id)
    if record is None:
        raise NotFoundError(f"{kind} not found: {target_id}")

    allowed_fields = _EDITABLE_FIELDS[type(record)]
    unknown = sorted(set(changes) - allowed_fields)
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}")

    await enforce_privilege(
        session,
        context,
        ENTITY_TYPE_FOR_KIND[kind],
        "write",
        target_owner_id=record.owner_id,
        target_tenant_id=record.tenant_id,
        target_id=record.id,
        request_id=request_id,
    )
    tenant = await _load_tenant(session, record.tenant_id)

    diff = [
        {"field": field, "old_value": _json_value(getattr(record, field)), "new_value": _json_value(value)}
        for field, value in sorted(changes.items())
        if getattr(record, field) != value
    ]
    if not diff:
        return record, None

    moderated = moderation_required(tenant, context)
    previous_status = record.status
    ticket = None
    try:
        for field, value in changes.items():
            setattr(record, field, value)
        if moderated:
            record.status = CONTENT_STATUS_PENDING
            await session.flush()
            if previous_status == CONTENT_STATUS_APPROVED:
                await tenants_repo.adjust_counters(session, tenant_id=tenant.id, **{_COUNTER_FOR_KIND[kind]: -1})
            ticket = await approvals.submit(
                session,
                tenant_id=tenant.id,
                target_id=record.id,
                target_kind=kind,
                requester_id=context.user_id,
                changes=diff,
                commit=False,
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(record)

    await record_event(
        tenant_id=tenant.id,
        actor_id=context.user_id,
        actor_role=context.implicit_role,
        event_type="content.updated",
        resource_type=kind,
        resource_id=record.id,
        metadata={"fields": [change["field"] for change in diff], "ticket_id": ticket.id if ticket else None},
    )
    return record, ticket
