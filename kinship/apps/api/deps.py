from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Query, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.core.config import get_settings
from kinship.core.errors import NotFoundError
from kinship.persistence.db import get_session
from kinship.services.authz.context import PrincipalContext
from kinship.services.permissions import load_principal_context


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> PrincipalContext:
    # The gateway authenticates upstream and forwards the user id in a trusted header.
    header_name = get_settings().auth_user_header
    user_id = (request.headers.get(header_name) or "").strip()
    if not user_id:
        raise _auth_error(f"Missing {header_name} header")
    try:
        return await load_principal_context(db, user_id)
    except NotFoundError as exc:
        raise _auth_error("Unknown user") from exc


class PageParams(BaseModel):
    offset: int
    limit: int


def page_params(
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
) -> PageParams:
    # Clamp page sizes to the configured ceiling.
    settings = get_settings()
    resolved = limit or settings.default_page_size
    return PageParams(offset=offset, limit=min(resolved, settings.max_page_size))
