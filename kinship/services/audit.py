from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.domain.models import AuditEvent
from kinship.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Substrings that mark a metadata key as personal or credential data.
_REDACT_FRAGMENTS = ("authorization", "token", "secret", "password", "email", "phone")
_REDACTED = "[REDACTED]"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"


def sanitize_metadata(value: Any) -> Any:
    """Return a JSON-safe copy of ``value`` with sensitive keys masked."""
    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for key, item in value.items():
            name = str(key)
            redact = any(fragment in name.lower() for fragment in _REDACT_FRAGMENTS)
            cleaned[name] = _REDACTED if redact else sanitize_metadata(item)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


async def _persist(session: AsyncSession, event: AuditEvent, *, commit: bool) -> None:
    session.add(event)
    if commit:
        await session.commit()


async def record_event(
    *,
    tenant_id: str | None,
    actor_id: str | None,
    event_type: str,
    actor_role: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    occurred_at: datetime | None = None,
    session: AsyncSession | None = None,
    commit: bool = False,
) -> None:
    # Best effort: a failed write is logged and swallowed so the audited action stands.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    try:
        if session is not None:
            await _persist(session, event, commit=commit)
            return
        async with SessionLocal() as audit_session:
            try:
                await _persist(audit_session, event, commit=True)
            except SQLAlchemyError:
                await audit_session.rollback()
                raise
    except SQLAlchemyError as exc:
        if session is not None and commit:
            await session.rollback()
        logger.warning(
            "audit_event_write_failed event_type=%s tenant_id=%s request_id=%s",
            event_type,
            tenant_id,
            request_id,
            exc_info=exc,
        )


class AuditSink:
    """Where workflow services send audit events.

    The default implementation writes ``audit_events`` rows through
    :func:`record_event`; tests substitute a recording subclass.
    """

    async def record(
        self,
        *,
        event_type: str,
        actor_id: str | None,
        tenant_id: str | None,
        target_type: str | None = None,
        target_id: str | None = None,
        details: dict[str, Any] | None = None,
        actor_role: str | None = None,
        outcome: str = OUTCOME_SUCCESS,
        error_code: str | None = None,
        request_id: str | None = None,
    ) -> None:
        await record_event(
            tenant_id=tenant_id,
            actor_id=actor_id,
            actor_role=actor_role,
            event_type=event_type,
            outcome=outcome,
            resource_type=target_type,
            resource_id=target_id,
            request_id=request_id,
            metadata=details,
            error_code=error_code,
        )


default_sink = AuditSink()
