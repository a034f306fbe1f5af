from __future__ import annotations

import pytest

from kinship.domain.models import Base
from kinship.persistence.db import engine


@pytest.fixture(autouse=True)
async def fresh_schema_per_test() -> None:
    # Each test gets an empty schema; disposing the engine drops the in-memory database.
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()
