from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Iterable, Mapping
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.core.config import get_settings
from kinship.core.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from kinship.domain.models import ApprovalTicket
from kinship.domain.vocab import (
    CONTENT_KINDS,
    CONTENT_STATUS_APPROVED,
    CONTENT_STATUS_REJECTED,
    DECISIONS,
    TARGET_KIND_MEMBER,
    TARGET_KIND_TENANT,
    TARGET_KINDS,
    TENANT_STATUS_ACTIVE,
    TENANT_STATUS_SUSPENDED,
    TICKET_STATUS_APPROVED,
    TICKET_STATUS_PENDING,
    TICKET_STATUS_REJECTED,
)
from kinship.persistence.repos import approvals as approvals_repo
from kinship.persistence.repos import content as content_repo
from kinship.persistence.repos import tenants as tenants_repo
from kinship.services.audit import AuditSink, default_sink
from kinship.services.authz.context import PrincipalContext


logger = logging.getLogger(__name__)

_TICKET_STATUSES = (TICKET_STATUS_PENDING, TICKET_STATUS_APPROVED, TICKET_STATUS_REJECTED)

# Counter deltas a decision contributes on top of the pending_approvals decrement.
CounterDelta = dict[str, int]
OutcomeHandler = Callable[[AsyncSession, ApprovalTicket, str], Awaitable[CounterDelta]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _set_target_status(session: AsyncSession, ticket: ApprovalTicket, status: str) -> None:
    updated = await content_repo.set_status(
        session,
        kind=ticket.target_entity_kind,
        target_id=ticket.target_entity_id,
        status=status,
    )
    if not updated:
        raise NotFoundError(
            f"Target {ticket.target_entity_kind} {ticket.target_entity_id} no longer exists"
        )


async def _decide_tenant(session: AsyncSession, ticket: ApprovalTicket, decision: str) -> CounterDelta:
    # A tenant is long-lived: rejection suspends it instead of discarding it.
    status = TENANT_STATUS_ACTIVE if decision == "approve" else TENANT_STATUS_SUSPENDED
    await _set_target_status(session, ticket, status)
    return {}


async def _decide_member(session: AsyncSession, ticket: ApprovalTicket, decision: str) -> CounterDelta:
    if decision == "approve":
        await _set_target_status(session, ticket, CONTENT_STATUS_APPROVED)
        return {"member_count": 1}
    await _set_target_status(session, ticket, CONTENT_STATUS_REJECTED)
    return {}


async def _decide_content(session: AsyncSession, ticket: ApprovalTicket, decision: str) -> CounterDelta:
    if decision == "approve":
        await _set_target_status(session, ticket, CONTENT_STATUS_APPROVED)
        return {"content_count": 1}
    await _set_target_status(session, ticket, CONTENT_STATUS_REJECTED)
    return {}


OUTCOME_HANDLERS: dict[str, OutcomeHandler] = {
    TARGET_KIND_TENANT: _decide_tenant,
    TARGET_KIND_MEMBER: _decide_member,
    **{kind: _decide_content for kind in CONTENT_KINDS},
}

if set(OUTCOME_HANDLERS) != set(TARGET_KINDS):
    raise RuntimeError(
        "approval outcome handlers out of sync: "
        f"missing={sorted(set(TARGET_KINDS) - set(OUTCOME_HANDLERS))} "
        f"extra={sorted(set(OUTCOME_HANDLERS) - set(TARGET_KINDS))}"
    )


async def _emit_audit(sink: AuditSink | None, **event: Any) -> None:
    # Runs after commit; a failing sink is logged and never reaches the caller.
    try:
        await (sink or default_sink).record(**event)
    except Exception as exc:
        logger.warning(
            "audit_event_write_failed event_type=%s tenant_id=%s request_id=%s",
            event.get("event_type"),
            event.get("tenant_id"),
            event.get("request_id"),
            exc_info=exc,
        )


def _require_target_kind(kind: str) -> None:
    if kind not in TARGET_KINDS:
        raise InvariantViolation(f"Unknown approval target kind: {kind}")


def _normalize_changes(changes: Iterable[Mapping[str, Any]] | None) -> list[dict[str, Any]]:
    normalized: list[dict[str, Any]] = []
    for change in changes or []:
        if not isinstance(change, Mapping) or not change.get("field"):
            raise ValidationError("Each change must name a field")
        normalized.append(
            {
                "field": str(change["field"]),
                "old_value": change.get("old_value"),
                "new_value": change.get("new_value"),
            }
        )
    return normalized


async def submit(
    session: AsyncSession,
    *,
    tenant_id: str,
    target_id: str,
    target_kind: str,
    requester_id: str,
    changes: Iterable[Mapping[str, Any]] | None = None,
    commit: bool = True,
    audit_sink: AuditSink | None = None,
) -> ApprovalTicket:
    """Open a pending ticket for a record the caller already stored as pending.

    A second submission for a target that still has a pending ticket reuses
    that ticket and appends its changes; the pending counter is untouched.
    Pass ``commit=False`` to join the caller's transaction.
    """
    _require_target_kind(target_kind)
    normalized_changes = _normalize_changes(changes)

    if await tenants_repo.get_tenant(session, tenant_id) is None:
        raise NotFoundError(f"Tenant not found: {tenant_id}")
    target = await content_repo.get_target(session, kind=target_kind, target_id=target_id)
    if target is None:
        raise NotFoundError(f"Target {target_kind} not found: {target_id}")
    target_tenant = target.id if target_kind == TARGET_KIND_TENANT else target.tenant_id
    if target_tenant != tenant_id:
        raise ValidationError("Target record belongs to another tenant")

    existing = await approvals_repo.find_pending_ticket(
        session, target_kind=target_kind, target_id=target_id
    )
    if existing is not None:
        if normalized_changes:
            # Reassign so the JSON column is flagged dirty.
            existing.changes = list(existing.changes or []) + normalized_changes
        if commit:
            await session.commit()
        logger.info(
            "approval_ticket_reused ticket_id=%s target_kind=%s target_id=%s",
            existing.id,
            target_kind,
            target_id,
        )
        return existing

    ticket = ApprovalTicket(
        id=uuid4().hex,
        tenant_id=tenant_id,
        target_entity_id=target_id,
        target_entity_kind=target_kind,
        requester_id=requester_id,
        status=TICKET_STATUS_PENDING,
        requested_at=_utc_now(),
        changes=normalized_changes or None,
    )
    session.add(ticket)
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(
            f"A pending ticket already exists for {target_kind} {target_id}",
            current_status=TICKET_STATUS_PENDING,
        ) from exc
    await tenants_repo.adjust_counters(session, tenant_id=tenant_id, pending_approvals=1)

    if commit:
        await session.commit()
        logger.info(
            "approval_ticket_submitted ticket_id=%s tenant_id=%s target_kind=%s target_id=%s",
            ticket.id,
            tenant_id,
            target_kind,
            target_id,
        )
        await _emit_audit(
            audit_sink,
            event_type="approval.submitted",
            actor_id=requester_id,
            tenant_id=tenant_id,
            target_type=target_kind,
            target_id=target_id,
            details={"ticket_id": ticket.id},
        )
    return ticket


def _authorize_reviewer(reviewer: PrincipalContext, ticket: ApprovalTicket) -> None:
    if reviewer.is_superuser:
        return
    if not reviewer.is_tenant_admin:
        raise PermissionDeniedError("Only administrators can decide approvals")
    if reviewer.tenant_id != ticket.tenant_id:
        raise PermissionDeniedError("Cannot decide approvals of another tenant")
    # Promoting or suspending a whole tenant affects cross-tenant discovery, so
    # tenant-kind tickets stay with platform administrators.
    if ticket.target_entity_kind == TARGET_KIND_TENANT:
        raise PermissionDeniedError("Only system administrators can decide tenant approvals")


def _validate_comments(comments: str | None) -> str | None:
    if comments is None:
        return None
    limit = get_settings().approval_comment_max_chars
    if len(comments) > limit:
        raise ValidationError(f"Comments exceed {limit} characters")
    return comments


async def decide(
    session: AsyncSession,
    *,
    ticket_id: str,
    reviewer: PrincipalContext,
    decision: str,
    comments: str | None = None,
    request_id: str | None = None,
    audit_sink: AuditSink | None = None,
) -> ApprovalTicket:
    if decision not in DECISIONS:
        raise ValidationError(f"Unknown decision: {decision}")
    comments = _validate_comments(comments)

    ticket = await approvals_repo.get_ticket(session, ticket_id, for_update=True)
    if ticket is None:
        await session.rollback()
        raise NotFoundError(f"Approval ticket not found: {ticket_id}")
    try:
        _authorize_reviewer(reviewer, ticket)
        if ticket.status != TICKET_STATUS_PENDING:
            raise ConflictError(
                f"Ticket has already been {ticket.status}",
                current_status=ticket.status,
            )
        _require_target_kind(ticket.target_entity_kind)

        new_status = TICKET_STATUS_APPROVED if decision == "approve" else TICKET_STATUS_REJECTED
        transitioned = await approvals_repo.transition_ticket(
            session,
            ticket_id=ticket.id,
            status=new_status,
            reviewer_id=reviewer.user_id,
            reviewed_at=_utc_now(),
            comments=comments,
        )
        if not transitioned:
            # Lost a race with a concurrent decision on the same ticket.
            await session.refresh(ticket)
            raise ConflictError(
                f"Ticket has already been {ticket.status}",
                current_status=ticket.status,
            )

        deltas = await OUTCOME_HANDLERS[ticket.target_entity_kind](session, ticket, decision)
        adjusted = await tenants_repo.adjust_counters(
            session,
            tenant_id=ticket.tenant_id,
            pending_approvals=-1,
            **deltas,
        )
        if not adjusted:
            raise InvariantViolation(f"Tenant counters missing for tenant {ticket.tenant_id}")
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    await session.refresh(ticket)
    title = await content_repo.get_title(
        session, kind=ticket.target_entity_kind, target_id=ticket.target_entity_id
    )
    logger.info(
        "approval_decided ticket_id=%s tenant_id=%s target_kind=%s decision=%s reviewer=%s",
        ticket.id,
        ticket.tenant_id,
        ticket.target_entity_kind,
        decision,
        reviewer.user_id,
    )
    await _emit_audit(
        audit_sink,
        event_type=f"approval.{new_status}",
        actor_id=reviewer.user_id,
        tenant_id=ticket.tenant_id,
        target_type=ticket.target_entity_kind,
        target_id=ticket.target_entity_id,
        details={"ticket_id": ticket.id, "title": title, "comments": comments},
        actor_role=reviewer.implicit_role,
        request_id=request_id,
    )
    return ticket


def _require_reviewer(reviewer: PrincipalContext) -> None:
    if not reviewer.is_admin:
        raise PermissionDeniedError("Only administrators can review approvals")


async def list_tickets(
    session: AsyncSession,
    reviewer: PrincipalContext,
    *,
    status: str | None = TICKET_STATUS_PENDING,
    tenant_id: str | None = None,
    target_kind: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[ApprovalTicket], int]:
    _require_reviewer(reviewer)
    if status is not None and status not in _TICKET_STATUSES:
        raise ValidationError(f"Unknown ticket status: {status}")
    if target_kind is not None and target_kind not in TARGET_KINDS:
        raise ValidationError(f"Unknown target kind: {target_kind}")
    if not reviewer.is_superuser:
        if tenant_id is not None and tenant_id != reviewer.tenant_id:
            raise PermissionDeniedError("Cannot list approvals of another tenant")
        tenant_id = reviewer.tenant_id
    rows = await approvals_repo.list_tickets(
        session,
        tenant_id=tenant_id,
        status=status,
        target_kind=target_kind,
        offset=offset,
        limit=limit,
    )
    total = await approvals_repo.count_tickets(
        session, tenant_id=tenant_id, status=status, target_kind=target_kind
    )
    return rows, total


async def get_ticket(session: AsyncSession, viewer: PrincipalContext, ticket_id: str) -> ApprovalTicket:
    ticket = await approvals_repo.get_ticket(session, ticket_id)
    if ticket is None:
        raise NotFoundError(f"Approval ticket not found: {ticket_id}")
    # Requesters can follow their own tickets; reviewers see their tenant.
    if viewer.is_superuser or viewer.user_id == ticket.requester_id:
        return ticket
    if viewer.is_tenant_admin and viewer.tenant_id == ticket.tenant_id:
        return ticket
    raise PermissionDeniedError("You do not have access to this approval")


async def ticket_title(session: AsyncSession, ticket: ApprovalTicket) -> str | None:
    return await content_repo.get_title(
        session, kind=ticket.target_entity_kind, target_id=ticket.target_entity_id
    )
