from __future__ import annotations

import os

os.environ["ENV"] = "sandbox"
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("FERNET_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./ledger-sync-test.db")
os.environ.setdefault("QBO_CLIENT_ID", "client-id")
os.environ.setdefault("QBO_CLIENT_SECRET", "client-secret")
os.environ.setdefault("QBO_REALM_ID", "realm-1")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from ledger_sync.core.config import Settings
from ledger_sync.db.models import Base
from ledger_sync.db.session import build_session_factory
from ledger_sync.services.cache import LookupCache
from ledger_sync.services.engine import build_engine

from factories import LedgerFactory
from fakes import FakeAccountingClient


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "sandbox",
        "api_key": "test-api-key",
        "fernet_key": os.environ["FERNET_KEY"],
        "database_url": "sqlite+aiosqlite://",
        "qbo_client_id": "client-id",
        "qbo_client_secret": "client-secret",
        "qbo_realm_id": "realm-1",
        "retry_max_attempts": 2,
        "retry_max_wait_seconds": 0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def ledger(session_factory) -> LedgerFactory:
    return LedgerFactory(session_factory)


@pytest.fixture
def fake_client() -> FakeAccountingClient:
    return FakeAccountingClient()


@pytest.fixture
def engine(settings, session_factory, fake_client):
    return build_engine(settings, session_factory, client=fake_client, cache=LookupCache())
