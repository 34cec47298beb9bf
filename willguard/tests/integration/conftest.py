from __future__ import annotations

import pytest

from willguard.domain.models import Base
from willguard.persistence.db import engine
from willguard.services.resilience import reset_resilience_redis


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables; dispose keeps connections off the next test's loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    reset_resilience_redis()
