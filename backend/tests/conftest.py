"""
Shared fixtures.

The relational store is a throwaway SQLite file; `down_store` points at a
database path that cannot be opened, which the record store treats exactly
like an unreachable server. Both stores share one JSON fallback document so a
test can write during an outage and read back after recovery.
"""

import os

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ENVIRONMENT", "development")

from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from copytrade.core.database import build_engine, build_session_factory, create_tables
from copytrade.core.dependencies import install_services
from copytrade.core.json_store import JsonDocumentStore
from copytrade.core.security import create_access_token, limiter
from copytrade.models.strategy import Strategy
from copytrade.models.user import User, UserRole
from copytrade.services.record_store import RecordStore, SqlBackend
from copytrade.services.running_strategy_registry import RunningStrategyRegistry
from copytrade.services.sync_reconciler import SyncReconciler
from copytrade.services.transaction_lifecycle import TransactionLifecycle
from copytrade.services.wallet_ledger import WalletLedger


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, address: str, subject: str, body: str) -> None:
        self.sent.append((address, subject))


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'copytrade.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def down_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nested' / 'copytrade.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
def json_store(tmp_path):
    return JsonDocumentStore(tmp_path / "data" / "db.json")


@pytest.fixture
def store(engine, json_store):
    return RecordStore(SqlBackend(build_session_factory(engine)), json_store)


@pytest.fixture
def down_store(down_engine, json_store):
    return RecordStore(SqlBackend(build_session_factory(down_engine)), json_store)


@pytest.fixture
def notifier():
    return RecordingNotifier()


def build_lifecycle(store: RecordStore, notifier, ledger: WalletLedger | None = None) -> TransactionLifecycle:
    return TransactionLifecycle(
        store,
        ledger or WalletLedger(store),
        RunningStrategyRegistry(store),
        SyncReconciler(store),
        notifier,
    )


@pytest.fixture
def lifecycle(store, notifier):
    return build_lifecycle(store, notifier)


@pytest.fixture
def down_lifecycle(down_store, notifier):
    return build_lifecycle(down_store, notifier)


@pytest.fixture
def make_user():
    async def _make(store: RecordStore, **overrides) -> User:
        fields = {
            "name": "Asha Rao",
            "email": f"{uuid4().hex[:10]}@example.com",
            "password_hash": "$2b$12$" + "x" * 53,
            "wallet_balance": Decimal("0"),
        }
        fields.update(overrides)
        return await store.insert(User(**fields))
    return _make


@pytest.fixture
def make_strategy():
    async def _make(store: RecordStore, **overrides) -> Strategy:
        fields = {"name": "Gold Scalper", "risk_level": "medium"}
        fields.update(overrides)
        return await store.insert(Strategy(**fields))
    return _make


# ============================================================================
# API
# ============================================================================

def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.id})}"}


@pytest_asyncio.fixture
async def client(store, notifier):
    from copytrade.main import app

    install_services(app, store, notifier)
    limiter.reset()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def admin(store, make_user):
    return await make_user(store, name="Ops Admin", role=UserRole.ADMIN.value)


@pytest.fixture
def lifecycle_factory(notifier):
    def _build(store: RecordStore, ledger: WalletLedger | None = None) -> TransactionLifecycle:
        return build_lifecycle(store, notifier, ledger)
    return _build


@pytest.fixture
def headers_for():
    return auth_headers
