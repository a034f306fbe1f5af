from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kinship.apps.api.deps import get_db
from kinship.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from kinship.apps.api.response import SuccessEnvelope, success_response
from kinship.persistence.db import pool_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    database: str
    pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Report degraded instead of failing so load balancers can read the body.
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_check_failed error=%s", type(exc).__name__)
        database = "unavailable"
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        pool=pool_stats(),
    )
    return success_response(request=request, data=payload.model_dump())
