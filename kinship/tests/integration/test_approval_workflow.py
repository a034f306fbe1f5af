from __future__ import annotations

import logging
import random

import pytest
from sqlalchemy.orm.attributes import set_committed_value

from kinship.core.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from kinship.persistence.db import SessionLocal
from kinship.persistence.repos import approvals as approvals_repo
from kinship.persistence.repos import content as content_repo
from kinship.services import approvals
from kinship.tests.utils.audit import FailingAuditSink, RecordingAuditSink
from kinship.tests.utils.factories import (
    context_for,
    counters,
    create_target,
    create_tenant,
    create_user,
    fetch_audit_events,
)


async def _status(kind: str, target_id: str) -> str | None:
    async with SessionLocal() as session:
        return await content_repo.get_status(session, kind=kind, target_id=target_id)


async def _submit(tenant_id: str, target_id: str, kind: str, requester_id: str, **kwargs):
    async with SessionLocal() as session:
        return await approvals.submit(
            session,
            tenant_id=tenant_id,
            target_id=target_id,
            target_kind=kind,
            requester_id=requester_id,
            **kwargs,
        )


async def _decide(ticket_id: str, reviewer, decision: str, comments: str | None = None):
    async with SessionLocal() as session:
        return await approvals.decide(
            session,
            ticket_id=ticket_id,
            reviewer=reviewer,
            decision=decision,
            comments=comments,
        )


@pytest.mark.asyncio
async def test_member_approval_end_to_end() -> None:
    # Submitting bumps pending; approving publishes the member and moves the counters.
    tenant = await create_tenant()
    requester = await create_user(tenant_id=tenant.id, role="member")
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    member = await create_target(kind="member", tenant_id=tenant.id, owner_id=requester.id, title="Ada Lovelace")

    ticket = await _submit(tenant.id, member.id, "member", requester.id)
    assert ticket.status == "pending"
    assert await counters(tenant.id) == {"member_count": 0, "content_count": 0, "pending_approvals": 1}

    decided = await _decide(ticket.id, admin, "approve", comments="Welcome")
    assert decided.status == "approved"
    assert decided.reviewer_id == admin.user_id
    assert decided.reviewed_at is not None
    assert decided.comments == "Welcome"
    assert await _status("member", member.id) == "approved"
    assert await counters(tenant.id) == {"member_count": 1, "content_count": 0, "pending_approvals": 0}

    events = await fetch_audit_events(tenant_id=tenant.id, event_type="approval.approved")
    assert len(events) == 1
    assert events[0].actor_id == admin.user_id
    assert events[0].metadata_json["title"] == "Ada Lovelace"
    assert events[0].metadata_json["ticket_id"] == ticket.id


@pytest.mark.asyncio
async def test_rejecting_content_moves_only_pending_counter() -> None:
    tenant = await create_tenant()
    requester = await create_user(tenant_id=tenant.id, role="member")
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    recipe = await create_target(kind="recipe", tenant_id=tenant.id, owner_id=requester.id)

    ticket = await _submit(tenant.id, recipe.id, "recipe", requester.id)
    await _decide(ticket.id, admin, "reject", comments="Needs ingredients")

    assert await _status("recipe", recipe.id) == "rejected"
    assert await counters(tenant.id) == {"member_count": 0, "content_count": 0, "pending_approvals": 0}
    assert len(await fetch_audit_events(tenant_id=tenant.id, event_type="approval.rejected")) == 1


@pytest.mark.asyncio
async def test_second_decision_conflicts_and_changes_nothing() -> None:
    tenant = await create_tenant()
    requester = await create_user(tenant_id=tenant.id, role="member")
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    event = await create_target(kind="event", tenant_id=tenant.id, owner_id=requester.id)
    ticket = await _submit(tenant.id, event.id, "event", requester.id)

    await _decide(ticket.id, admin, "approve")
    snapshot = await counters(tenant.id)

    with pytest.raises(ConflictError) as excinfo:
        await _decide(ticket.id, admin, "reject")
    assert excinfo.value.current_status == "approved"
    assert "already been approved" in excinfo.value.message
    assert await counters(tenant.id) == snapshot
    assert await _status("event", event.id) == "approved"


@pytest.mark.asyncio
async def test_resubmitting_reuses_pending_ticket() -> None:
    tenant = await create_tenant()
    requester = await create_user(tenant_id=tenant.id, role="member")
    document = await create_target(kind="document", tenant_id=tenant.id, owner_id=requester.id)

    first = await _submit(
        tenant.id,
        document.id,
        "document",
        requester.id,
        changes=[{"field": "title", "old_value": "a", "new_value": "b"}],
    )
    second = await _submit(
        tenant.id,
        document.id,
        "document",
        requester.id,
        changes=[{"field": "title", "old_value": "b", "new_value": "c"}],
    )
    assert second.id == first.id
    assert [change["new_value"] for change in second.changes] == ["b", "c"]
    assert (await counters(tenant.id))["pending_approvals"] == 1


@pytest.mark.asyncio
async def test_reviewer_must_be_admin_of_ticket_tenant() -> None:
    tenant = await create_tenant()
    other = await create_tenant()
    requester = await create_user(tenant_id=tenant.id, role="member")
    member_reviewer = await context_for(requester)
    foreign_admin = await context_for(await create_user(tenant_id=other.id, role="tenant_admin"))
    news = await create_target(kind="news", tenant_id=tenant.id, owner_id=requester.id)
    ticket = await _submit(tenant.id, news.id, "news", requester.id)

    with pytest.raises(PermissionDeniedError):
        await _decide(ticket.id, member_reviewer, "approve")
    with pytest.raises(PermissionDeniedError):
        await _decide(ticket.id, foreign_admin, "approve")

    assert await _status("news", news.id) == "pending"
    assert (await counters(tenant.id))["pending_approvals"] == 1


@pytest.mark.asyncio
async def test_tenant_tickets_are_decided_by_platform_admins() -> None:
    # Rejecting a tenant suspends it rather than discarding it.
    tenant = await create_tenant(status="pending")
    founder = await create_user(tenant_id=tenant.id, role="tenant_admin")
    founder_context = await context_for(founder)
    platform = await context_for(await create_user(tenant_id=None, role="system_admin"))
    ticket = await _submit(tenant.id, tenant.id, "tenant", founder.id)

    with pytest.raises(PermissionDeniedError):
        await _decide(ticket.id, founder_context, "approve")

    await _decide(ticket.id, platform, "reject", comments="Incomplete application")
    assert await _status("tenant", tenant.id) == "suspended"
    assert await counters(tenant.id) == {"member_count": 0, "content_count": 0, "pending_approvals": 0}


@pytest.mark.asyncio
async def test_approving_tenant_activates_it() -> None:
    tenant = await create_tenant(status="pending")
    founder = await create_user(tenant_id=tenant.id, role="tenant_admin")
    platform = await context_for(await create_user(tenant_id=None, role="system_admin"))
    ticket = await _submit(tenant.id, tenant.id, "tenant", founder.id)

    await _decide(ticket.id, platform, "approve")
    assert await _status("tenant", tenant.id) == "active"
    assert await counters(tenant.id) == {"member_count": 0, "content_count": 0, "pending_approvals": 0}


@pytest.mark.asyncio
async def test_submit_rejects_missing_foreign_or_unknown_targets() -> None:
    tenant = await create_tenant()
    other = await create_tenant()
    requester = await create_user(tenant_id=tenant.id, role="member")
    foreign_event = await create_target(kind="event", tenant_id=other.id)

    with pytest.raises(NotFoundError):
        await _submit(tenant.id, "missing", "event", requester.id)
    with pytest.raises(NotFoundError):
        await _submit("t-missing", foreign_event.id, "event", requester.id)
    with pytest.raises(ValidationError):
        await _submit(tenant.id, foreign_event.id, "event", requester.id)
    with pytest.raises(InvariantViolation):
        await _submit(tenant.id, foreign_event.id, "spaceship", requester.id)
    assert (await counters(tenant.id))["pending_approvals"] == 0


@pytest.mark.asyncio
async def test_decide_rejects_unknown_ticket_and_decision() -> None:
    tenant = await create_tenant()
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    with pytest.raises(NotFoundError):
        await _decide("missing", admin, "approve")
    with pytest.raises(ValidationError):
        await _decide("missing", admin, "maybe")


@pytest.mark.asyncio
async def test_list_tickets_scoped_to_reviewer_tenant() -> None:
    tenant = await create_tenant()
    other = await create_tenant()
    requester = await create_user(tenant_id=tenant.id, role="member")
    other_requester = await create_user(tenant_id=other.id, role="member")
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))

    own = await create_target(kind="poll", tenant_id=tenant.id, owner_id=requester.id)
    foreign = await create_target(kind="poll", tenant_id=other.id, owner_id=other_requester.id)
    own_ticket = await _submit(tenant.id, own.id, "poll", requester.id)
    await _submit(other.id, foreign.id, "poll", other_requester.id)

    async with SessionLocal() as session:
        rows, total = await approvals.list_tickets(session, admin)
        with pytest.raises(PermissionDeniedError):
            await approvals.list_tickets(session, admin, tenant_id=other.id)
    assert [ticket.id for ticket in rows] == [own_ticket.id]
    assert total == 1

    requester_context = await context_for(requester)
    async with SessionLocal() as session:
        fetched = await approvals.get_ticket(session, requester_context, own_ticket.id)
        assert fetched.id == own_ticket.id
        assert await approvals.ticket_title(session, fetched) == "Sunday picnic"
        with pytest.raises(PermissionDeniedError):
            await approvals.list_tickets(session, requester_context)


@pytest.mark.asyncio
async def test_counters_stay_consistent_over_random_sequences() -> None:
    # Counters always equal the number of pending tickets and approved records.
    rng = random.Random(20240501)
    tenant = await create_tenant()
    requester = await create_user(tenant_id=tenant.id, role="member")
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    kinds = ["member", "event", "document", "news", "recipe", "memorial"]

    open_tickets: list[tuple[str, str]] = []
    approved_members = 0
    approved_content = 0
    for _ in range(30):
        if open_tickets and rng.random() < 0.5:
            ticket_id, kind = open_tickets.pop(rng.randrange(len(open_tickets)))
            decision = rng.choice(["approve", "reject"])
            await _decide(ticket_id, admin, decision)
            if decision == "approve":
                if kind == "member":
                    approved_members += 1
                else:
                    approved_content += 1
        else:
            kind = rng.choice(kinds)
            target = await create_target(kind=kind, tenant_id=tenant.id, owner_id=requester.id)
            ticket = await _submit(tenant.id, target.id, kind, requester.id)
            open_tickets.append((ticket.id, kind))

        assert await counters(tenant.id) == {
            "member_count": approved_members,
            "content_count": approved_content,
            "pending_approvals": len(open_tickets),
        }

    async with SessionLocal() as session:
        _rows, pending_total = await approvals.list_tickets(session, admin, status="pending")
    assert pending_total == len(open_tickets)


@pytest.mark.asyncio
async def test_decision_is_reported_to_injected_audit_sink() -> None:
    tenant = await create_tenant()
    requester = await create_user(tenant_id=tenant.id, role="member")
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    memorial = await create_target(kind="memorial", tenant_id=tenant.id, owner_id=requester.id, title="Grandpa Joe")
    sink = RecordingAuditSink()

    async with SessionLocal() as session:
        ticket = await approvals.submit(
            session,
            tenant_id=tenant.id,
            target_id=memorial.id,
            target_kind="memorial",
            requester_id=requester.id,
            audit_sink=sink,
        )
        await approvals.decide(
            session,
            ticket_id=ticket.id,
            reviewer=admin,
            decision="approve",
            request_id="req-42",
            audit_sink=sink,
        )

    assert [event["event_type"] for event in sink.events] == ["approval.submitted", "approval.approved"]
    decided = sink.events[1]
    assert decided["details"]["title"] == "Grandpa Joe"
    assert decided["target_type"] == "memorial"
    assert decided["request_id"] == "req-42"
    assert await fetch_audit_events(tenant_id=tenant.id, event_type="approval.approved") == []


@pytest.mark.asyncio
async def test_losing_a_concurrent_decision_conflicts_without_side_effects(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    # The loser still holds a pending snapshot; the conditional update must reject it.
    tenant = await create_tenant()
    requester = await create_user(tenant_id=tenant.id, role="member")
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    member = await create_target(kind="member", tenant_id=tenant.id, owner_id=requester.id)
    ticket = await _submit(tenant.id, member.id, "member", requester.id)

    await _decide(ticket.id, admin, "approve")
    snapshot = await counters(tenant.id)

    async with SessionLocal() as session:
        stale = await approvals_repo.get_ticket(session, ticket.id)
        assert stale is not None
        set_committed_value(stale, "status", "pending")

        async def _stale_ticket(*_args, **_kwargs):
            return stale

        monkeypatch.setattr(approvals_repo, "get_ticket", _stale_ticket)
        with pytest.raises(ConflictError) as excinfo:
            await approvals.decide(session, ticket_id=ticket.id, reviewer=admin, decision="reject")

    assert excinfo.value.current_status == "approved"
    assert await counters(tenant.id) == snapshot
    assert await _status("member", member.id) == "approved"
    assert await fetch_audit_events(tenant_id=tenant.id, event_type="approval.rejected") == []


@pytest.mark.asyncio
async def test_failing_audit_sink_does_not_undo_committed_decision(
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING, logger="kinship.services.approvals")
    tenant = await create_tenant()
    requester = await create_user(tenant_id=tenant.id, role="member")
    admin = await context_for(await create_user(tenant_id=tenant.id, role="tenant_admin"))
    recipe = await create_target(kind="recipe", tenant_id=tenant.id, owner_id=requester.id)
    sink = FailingAuditSink()

    async with SessionLocal() as session:
        ticket = await approvals.submit(
            session,
            tenant_id=tenant.id,
            target_id=recipe.id,
            target_kind="recipe",
            requester_id=requester.id,
            audit_sink=sink,
        )
        decided = await approvals.decide(
            session,
            ticket_id=ticket.id,
            reviewer=admin,
            decision="approve",
            audit_sink=sink,
        )

    assert sink.calls == 2
    assert decided.status == "approved"
    assert await _status("recipe", recipe.id) == "approved"
    assert await counters(tenant.id) == {"member_count": 0, "content_count": 1, "pending_approvals": 0}
    failures = [r for r in caplog.records if "audit_event_write_failed" in r.getMessage()]
    assert len(failures) == 2
    assert all(r.levelno == logging.WARNING for r in failures)
