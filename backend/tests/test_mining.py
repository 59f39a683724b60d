import pytest
from decimal import Decimal
from sqlalchemy import select, update
from celf.config import settings
from celf.core.exceptions import (
    AlreadyMining, InvalidAmount, MiningSessionNotFound, MiningUnavailable, NotMining, ValidationError, WalletLocked,
)
from celf.models.mining import CompletionMethod, MiningSession, MiningStatus
from celf.models.transaction import Transaction
from celf.models.wallet import Wallet
from celf.services import ledger, mining


def test_clamp_rate():
    assert mining.clamp_rate() == Decimal("1")
    assert mining.clamp_rate("2.5") == Decimal("2.5")
    assert mining.clamp_rate(1000) == Decimal(settings.MINING_MAX_RATE)
    for bad in (0, -1, "NaN", "Infinity", "fast"):
        with pytest.raises(InvalidAmount):
            mining.clamp_rate(bad)


def test_accrued_rounds_down():
    assert mining.accrued(Decimal("1"), 3600) == Decimal("1")
    assert mining.accrued(Decimal("1"), 1) == Decimal("0.00027777")


@pytest.mark.asyncio
async def test_two_hour_session_credits_non_sendable(guard, make_user, wallet_of, session_factory, clock):
    alice = await make_user("alice@celf.io")

    started = await mining.start_mining(guard, alice.id, rate=1)
    assert started.elapsed_seconds == 0
    clock.advance(hours=2)
    result = await mining.stop_mining(guard, alice.id)

    assert result.tokens_earned == Decimal("2")
    assert result.elapsed_seconds == 7200
    assert not result.capped
    assert result.balance.non_sendable == Decimal("2")
    assert result.balance.sendable == Decimal("0")

    wallet = await wallet_of(alice.id)
    assert wallet.total_mined == Decimal("2")
    async with session_factory() as db:
        tx = await db.get(Transaction, result.transaction_id)
        session = await db.get(MiningSession, result.session_id)
    assert tx.source_ref == f"mining:{result.session_id}"
    assert session.status == MiningStatus.completed
    assert session.completion_method == CompletionMethod.user_stopped
    assert (await ledger.reconcile_wallet(guard, alice.id)).ok


@pytest.mark.asyncio
async def test_forgotten_session_is_capped(guard, make_user, session_factory, clock):
    alice = await make_user("alice@celf.io")

    await mining.start_mining(guard, alice.id, rate=1)
    clock.advance(days=30)
    result = await mining.stop_mining(guard, alice.id)

    assert result.capped
    assert result.tokens_earned == Decimal(settings.MINING_MAX_SESSION_HOURS)
    assert result.elapsed_seconds == 30 * 86400


@pytest.mark.asyncio
async def test_start_twice_raises(guard, make_user, clock):
    alice = await make_user("alice@celf.io")
    await mining.start_mining(guard, alice.id)
    clock.advance(minutes=5)
    with pytest.raises(AlreadyMining):
        await mining.start_mining(guard, alice.id)


@pytest.mark.asyncio
async def test_start_after_expired_session_completes_it_first(guard, make_user, wallet_of, session_factory, clock):
    alice = await make_user("alice@celf.io")
    first = await mining.start_mining(guard, alice.id, rate=2)
    clock.advance(hours=25)

    second = await mining.start_mining(guard, alice.id, rate=2)

    assert second.session_id != first.session_id
    assert (await wallet_of(alice.id)).non_sendable_balance == Decimal("48")
    async with session_factory() as db:
        old = await db.get(MiningSession, first.session_id)
    assert old.completion_method == CompletionMethod.auto_completed
    assert old.capped


@pytest.mark.asyncio
async def test_stop_without_session(guard, make_user):
    alice = await make_user("alice@celf.io")
    with pytest.raises(NotMining):
        await mining.stop_mining(guard, alice.id)


@pytest.mark.asyncio
async def test_immediate_stop_earns_nothing(guard, make_user, wallet_of, clock):
    alice = await make_user("alice@celf.io")
    await mining.start_mining(guard, alice.id)
    result = await mining.stop_mining(guard, alice.id)

    assert result.tokens_earned == Decimal("0")
    assert result.transaction_id is None
    assert (await wallet_of(alice.id)).total_balance == Decimal("0")


@pytest.mark.asyncio
async def test_client_report_is_only_compared(guard, make_user, session_factory, clock):
    alice = await make_user("alice@celf.io")
    await mining.start_mining(guard, alice.id, rate=1)
    clock.advance(hours=1)

    result = await mining.stop_mining(guard, alice.id, client_reported_earnings=Decimal("50"))

    assert result.tokens_earned == Decimal("1")
    async with session_factory() as db:
        session = await db.get(MiningSession, result.session_id)
    assert session.suspicious
    assert session.client_reported_earnings == Decimal("50")


@pytest.mark.asyncio
async def test_maintenance_mode(guard, make_user, monkeypatch):
    alice = await make_user("alice@celf.io")
    monkeypatch.setattr(settings, "MINING_MAINTENANCE_MODE", True)
    with pytest.raises(MiningUnavailable):
        await mining.start_mining(guard, alice.id)


@pytest.mark.asyncio
async def test_locked_wallet_cannot_mine(guard, make_user, session_factory):
    alice = await make_user("alice@celf.io")
    async with session_factory() as db:
        await db.execute(update(Wallet).where(Wallet.user_id == alice.id).values(is_locked=True))
        await db.commit()
    with pytest.raises(WalletLocked):
        await mining.start_mining(guard, alice.id)


@pytest.mark.asyncio
async def test_current_session_and_stats(guard, make_user, session_factory, clock):
    alice = await make_user("alice@celf.io")
    async with session_factory() as db:
        assert await mining.get_current_session(db, alice.id) is None

    await mining.start_mining(guard, alice.id, rate=1)
    clock.advance(minutes=30)
    async with session_factory() as db:
        view = await mining.get_current_session(db, alice.id)
        stats = await mining.get_mining_stats(db, alice.id)
    assert view.elapsed_seconds == 1800
    assert view.projected_earnings == Decimal("0.5")
    assert view.remaining_seconds == 24 * 3600 - 1800
    assert stats.is_mining and stats.total_sessions == 1

    await mining.stop_mining(guard, alice.id)
    async with session_factory() as db:
        stats = await mining.get_mining_stats(db, alice.id)
    assert not stats.is_mining
    assert stats.total_mined == Decimal("0.5")


@pytest.mark.asyncio
async def test_auto_complete_expired_sessions(guard, make_user, wallet_of, session_factory, clock):
    alice = await make_user("alice@celf.io")
    bob = await make_user("bob@celf.io")
    await mining.start_mining(guard, alice.id, rate=1)
    clock.advance(hours=20)
    await mining.start_mining(guard, bob.id, rate=1)
    clock.advance(hours=5)

    completed = await mining.auto_complete_expired_sessions(guard)

    assert completed == 1
    assert (await wallet_of(alice.id)).non_sendable_balance == Decimal("24")
    assert (await wallet_of(bob.id)).non_sendable_balance == Decimal("0")
    async with session_factory() as db:
        active = list(await db.scalars(
            select(MiningSession).where(MiningSession.status == MiningStatus.active)
        ))
    assert [s.user_id for s in active] == [bob.id]


@pytest.mark.asyncio
async def test_stop_retry_with_same_key_returns_original_result(guard, make_user, wallet_of, session_factory, clock):
    alice = await make_user("alice@celf.io")
    await mining.start_mining(guard, alice.id, rate=1)
    clock.advance(hours=2)

    first = await mining.stop_mining(guard, alice.id, idempotency_key="stop-1")
    clock.advance(minutes=10)
    retry = await mining.stop_mining(guard, alice.id, idempotency_key="stop-1")

    assert retry == first
    assert retry.tokens_earned == Decimal("2")
    assert (await wallet_of(alice.id)).non_sendable_balance == Decimal("2")
    async with session_factory() as db:
        mined = list(await db.scalars(select(Transaction).where(Transaction.to_user_id == alice.id)))
    assert [tx.id for tx in mined] == [first.transaction_id]

    with pytest.raises(NotMining):
        await mining.stop_mining(guard, alice.id, idempotency_key="stop-2")


@pytest.mark.asyncio
async def test_start_retry_with_same_key_returns_same_session(guard, make_user, clock):
    alice = await make_user("alice@celf.io")

    first = await mining.start_mining(guard, alice.id, idempotency_key="start-1")
    retry = await mining.start_mining(guard, alice.id, idempotency_key="start-1")

    assert retry.session_id == first.session_id
    with pytest.raises(AlreadyMining):
        await mining.start_mining(guard, alice.id, idempotency_key="start-2")


@pytest.mark.asyncio
async def test_session_history(guard, make_user, session_factory, clock):
    alice = await make_user("alice@celf.io")
    bob = await make_user("bob@celf.io")
    await mining.start_mining(guard, alice.id, rate=1)
    clock.advance(days=2)
    capped = await mining.stop_mining(guard, alice.id, client_reported_earnings=Decimal("48"))
    clock.advance(minutes=1)
    await mining.start_mining(guard, alice.id, rate=2)

    async with session_factory() as db:
        page = await mining.list_sessions(db, alice.id, page=1, page_size=1)
        assert page.total == 2
        assert page.items[0].status == MiningStatus.active

        record = await mining.get_session(db, alice.id, capped.session_id)
        assert record.capped and record.suspicious
        assert record.completion_method == CompletionMethod.user_stopped
        assert record.transaction_id == capped.transaction_id
        assert record.tokens_earned == Decimal("24")

        with pytest.raises(MiningSessionNotFound):
            await mining.get_session(db, bob.id, capped.session_id)
        with pytest.raises(ValidationError):
            await mining.list_sessions(db, alice.id, page_size=0)


def test_mining_config(monkeypatch):
    monkeypatch.setattr(settings, "MINING_MAINTENANCE_MODE", True)
    config = mining.get_mining_config()
    assert config.mining_rate == Decimal(settings.MINING_DEFAULT_RATE)
    assert config.max_session_seconds == settings.MINING_MAX_SESSION_HOURS * 3600
    assert config.maintenance_mode is True
