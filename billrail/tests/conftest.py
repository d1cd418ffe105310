from __future__ import annotations

import os
import tempfile

# Settings and the engine are built at import time, so the test database must be chosen first.
_DB_PATH = os.path.join(tempfile.gettempdir(), f"billrail-tests-{os.getpid()}.sqlite3")
if os.path.exists(_DB_PATH):
    os.remove(_DB_PATH)
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ.setdefault("IS_TEST", "true")
os.environ.setdefault("CACHE_INVALIDATION_ENABLED", "false")

import pytest

from billrail.core.config import get_settings
from billrail.domain.models import Base
from billrail.persistence.db import engine


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Rebuild the schema per test so rows never leak between scenarios.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
