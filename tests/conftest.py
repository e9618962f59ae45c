"""Shared fixtures: a scratch SQLite database per test and a recording sleep."""

import pytest

from catalog_sync.services.sync_orchestrator import SyncOrchestrator, SyncPolicy
from catalog_sync.stores.postgres import close_db, create_tables, get_session_factory, init_db


@pytest.fixture
async def session_factory(tmp_path):
    """Fresh schema in a temporary SQLite file (same ORM code as PostgreSQL)."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    await create_tables()
    yield get_session_factory()
    await close_db()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def policy() -> SyncPolicy:
    return SyncPolicy(page_size=10, request_timeout_s=5.0)


@pytest.fixture
def make_orchestrator(session_factory, fake_sleep, policy):
    def _make(client, **kwargs) -> SyncOrchestrator:
        kwargs.setdefault("session_factory", session_factory)
        kwargs.setdefault("policy", policy)
        kwargs.setdefault("sleep", fake_sleep)
        return SyncOrchestrator(client, **kwargs)

    return _make
