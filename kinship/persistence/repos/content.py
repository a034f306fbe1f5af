from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.core.errors import InvariantViolation
from kinship.domain.models import ContentItem, Document, Event, Member, Tenant
from kinship.domain.vocab import CONTENT_KINDS, TARGET_KINDS


@dataclass(frozen=True)
class TargetStorage:
    # Where a target kind lives and how to render a readable title for it.
    model: type
    title_of: Callable[[Any], str]
    # Shared tables discriminate rows by kind.
    kind_column: str | None = None


def _member_title(row: Member) -> str:
    return f"{row.first_name} {row.last_name}".strip()


_GENERIC = TargetStorage(model=ContentItem, title_of=lambda row: row.title, kind_column="kind")

_STORAGE: dict[str, TargetStorage] = {
    "tenant": TargetStorage(model=Tenant, title_of=lambda row: row.name),
    "member": TargetStorage(model=Member, title_of=_member_title),
    "event": TargetStorage(model=Event, title_of=lambda row: row.title),
    "document": TargetStorage(model=Document, title_of=lambda row: row.title),
    **{
        kind: _GENERIC
        for kind in CONTENT_KINDS
        if kind not in {"event", "document"}
    },
}

if set(_STORAGE) != set(TARGET_KINDS):
    raise RuntimeError(
        f"content storage registry out of sync: missing={sorted(set(TARGET_KINDS) - set(_STORAGE))}"
    )


def storage_for(kind: str) -> TargetStorage:
    try:
        return _STORAGE[kind]
    except KeyError as exc:
        raise InvariantViolation(f"Unknown target kind: {kind}") from exc


def _where(storage: TargetStorage, kind: str, target_id: str) -> list[Any]:
    model = storage.model
    clauses: list[Any] = [model.id == target_id]
    if storage.kind_column:
        clauses.append(getattr(model, storage.kind_column) == kind)
    return clauses


async def get_target(session: AsyncSession, *, kind: str, target_id: str) -> Any | None:
    storage = storage_for(kind)
    result = await session.execute(select(storage.model).where(*_where(storage, kind, target_id)))
    return result.scalar_one_or_none()


async def set_status(session: AsyncSession, *, kind: str, target_id: str, status: str) -> bool:
    # Status writes for moderated records go through here so each kind's table is explicit.
    storage = storage_for(kind)
    result = await session.execute(
        update(storage.model)
        .where(*_where(storage, kind, target_id))
        .values(status=status)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def get_title(session: AsyncSession, *, kind: str, target_id: str) -> str | None:
    row = await get_target(session, kind=kind, target_id=target_id)
    if row is None:
        return None
    return storage_for(kind).title_of(row)


async def get_status(session: AsyncSession, *, kind: str, target_id: str) -> str | None:
    storage = storage_for(kind)
    result = await session.execute(
        select(storage.model.status).where(*_where(storage, kind, target_id))
    )
    return result.scalar_one_or_none()
