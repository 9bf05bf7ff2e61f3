"""Shared test fixtures - in-memory SQLite and a throwaway data directory.

IMPORTANT: DATABASE_URL and DATA_DIR are set at module level, BEFORE any
gantry module is imported during test collection.
"""

import asyncio
import os
import tempfile

# Force in-memory SQLite and a scratch data dir for all tests
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DATA_DIR"] = tempfile.mkdtemp(prefix="gantry-tests-")

import pytest  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _create_test_tables():
    """Create all DB tables in the in-memory SQLite database."""
    from gantry.models.db import Base, engine

    loop = asyncio.new_event_loop()

    async def _create():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    loop.run_until_complete(_create())
    loop.close()


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def storage(tmp_path):
    from gantry.engine.storage import LocalStorage

    return LocalStorage(tmp_path / "storage")


@pytest.fixture
def services(storage):
    """Run services over local storage; cache defaults to the main branch."""
    from gantry.engine.cache import CacheStore
    from gantry.engine.executor import RunServices

    svc = RunServices.create(
        "test-run",
        storage=storage,
        cache=CacheStore(storage, default_scope="refs/heads/main"),
    )
    yield svc
    svc.cleanup()
