import itertools
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from celf.database import Base
import celf.models  # noqa: F401 - register all models
from celf.services import ledger
from celf.services.accounts import provision_user
from celf.services.exchange import exchange
from celf.services.rewards import grant_bonus
from celf.services.wallet_guard import WalletGuard, WalletLockRegistry


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def guard(session_factory):
    return WalletGuard(session_factory, locks=WalletLockRegistry(), base_delay=0)


@pytest.fixture
def make_user(session_factory):
    async def _make(email, referral_code=None):
        async with session_factory() as db:
            user, _, _ = await provision_user(db, email, referral_code)
            await db.commit()
            return user
    return _make


@pytest.fixture
def fund(guard):
    """Seed balances through the ledger so wallets stay reconcilable."""
    counter = itertools.count()

    async def _fund(user_id, sendable=0, non_sendable=0):
        sendable, non_sendable = Decimal(str(sendable)), Decimal(str(non_sendable))
        if sendable + non_sendable > 0:
            await grant_bonus(guard, user_id, sendable + non_sendable, "test funding", f"seed:{next(counter)}")
        if sendable > 0:
            await exchange(guard, user_id, sendable)
    return _fund


@pytest.fixture
def wallet_of(session_factory):
    async def _wallet(user_id):
        async with session_factory() as db:
            return await ledger.get_wallet(db, user_id)
    return _wallet


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr("celf.services.mining.utcnow", fake)
    return fake
