"""
Transaction log and balance projector.

Every balance change goes through :func:`append_transaction`, which writes a
completed :class:`Transaction` and applies its signed bucket effects to the
cached wallet columns inside the caller's database transaction. The cached
columns are a projection of the log; :func:`reconcile` recomputes them from
the log and reports any drift.

Wallets passed to :func:`append_transaction` must have been loaded under
lock by :class:`celf.services.wallet_guard.WalletGuard`.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from celf.core.clock import utcnow
from celf.core.exceptions import (
    InsufficientFunds, InvalidAmount, TransactionNotFound, ValidationError, WalletLocked, WalletNotFound,
)
from celf.models.transaction import Transaction, TransactionStatus, TransactionType
from celf.models.wallet import BALANCE_BUCKETS, CELF_QUANTUM, Wallet
from celf.schemas.wallet import BalanceMismatch, BalanceSnapshot, ReconcileReport, TransactionPage, TransactionView

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
MAX_PAGE_SIZE = 100

NON_SENDABLE_CREDITS = (
    TransactionType.mining,
    TransactionType.referral,
    TransactionType.task_reward,
    TransactionType.bonus,
)


def to_amount(value) -> Decimal:
    """Parse a positive CELF amount with at most 8 decimal places."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite() or amount <= 0:
            raise InvalidAmount(f"Amount must be positive and finite (got {value})")
        if amount != amount.quantize(CELF_QUANTUM):
            raise InvalidAmount(f"Amount supports at most 8 decimal places (got {value})")
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    return amount


def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CELF_QUANTUM)


@dataclass
class DraftTransaction:
    type: TransactionType
    amount: Decimal
    from_user_id: Optional[int] = None
    to_user_id: Optional[int] = None
    fee: Decimal = ZERO
    to_address: Optional[str] = None
    source_ref: Optional[str] = None
    description: Optional[str] = None


def bucket_effects(tx_type: TransactionType, amount: Decimal, fee: Decimal,
                   from_user_id: Optional[int], to_user_id: Optional[int]) -> list[tuple[int, str, Decimal]]:
    """Signed ``(user_id, bucket, delta)`` effects of one completed transaction.

    A transfer is two rows: ``send`` only touches the sender and ``receive``
    only touches the recipient. ``exchange`` moves between the buckets of a
    single wallet and leaves its total unchanged.
    """
    if tx_type in NON_SENDABLE_CREDITS:
        return [(to_user_id, "non_sendable", amount)]
    if tx_type == TransactionType.send:
        return [(from_user_id, "sendable", -(amount + fee))]
    if tx_type == TransactionType.receive:
        return [(to_user_id, "sendable", amount)]
    if tx_type == TransactionType.exchange:
        return [(to_user_id, "non_sendable", -amount), (to_user_id, "sendable", amount)]
    raise ValueError(f"Unknown transaction type: {tx_type}")


def touching(user_id: int):
    """Filter for the transactions whose effects land on ``user_id``'s wallet."""
    return or_(
        and_(Transaction.from_user_id == user_id, Transaction.type == TransactionType.send),
        and_(Transaction.to_user_id == user_id, Transaction.type != TransactionType.send),
    )


async def append_transaction(db: AsyncSession, draft: DraftTransaction, wallets: dict[int, Wallet]) -> Transaction:
    amount = to_amount(draft.amount)
    fee = _dec(draft.fee)
    if fee < 0:
        raise InvalidAmount("Fee cannot be negative")

    effects = bucket_effects(draft.type, amount, fee, draft.from_user_id, draft.to_user_id)

    # Validate everything before touching any wallet
    new_values: dict[tuple[int, str], Decimal] = {}
    for user_id, bucket, delta in effects:
        wallet = wallets.get(user_id)
        if wallet is None:
            raise WalletNotFound(f"Wallet not found for user {user_id}")
        if wallet.is_locked:
            raise WalletLocked(f"Wallet of user {user_id} is locked")
        current = new_values.get((user_id, bucket), wallet.bucket(bucket))
        updated = current + delta
        if updated < 0:
            raise InsufficientFunds(bucket.replace("_", "-"), current, -delta)
        new_values[(user_id, bucket)] = updated

    now = utcnow()
    for (user_id, bucket), value in new_values.items():
        wallet = wallets[user_id]
        wallet.set_bucket(bucket, value)
        wallet.last_activity = now

    if draft.type == TransactionType.send:
        sender = wallets[draft.from_user_id]
        sender.total_sent = _dec(sender.total_sent) + amount
    elif draft.type == TransactionType.receive:
        recipient = wallets[draft.to_user_id]
        recipient.total_received = _dec(recipient.total_received) + amount
    elif draft.type == TransactionType.mining:
        miner = wallets[draft.to_user_id]
        miner.total_mined = _dec(miner.total_mined) + amount

    tx = Transaction(
        type=draft.type,
        from_user_id=draft.from_user_id,
        to_user_id=draft.to_user_id,
        to_address=draft.to_address,
        amount=amount,
        fee=fee,
        status=TransactionStatus.completed,
        source_ref=draft.source_ref,
        description=(draft.description or "")[:200] or None,
        processed_at=now,
    )
    if draft.type == TransactionType.exchange:
        tx.from_bucket, tx.to_bucket = "non_sendable", "sendable"
    db.add(tx)
    await db.flush()
    logger.info("Ledger %s #%s amount=%s from=%s to=%s", draft.type.value, tx.id, amount,
                draft.from_user_id, draft.to_user_id)
    return tx


def snapshot(wallet: Wallet) -> BalanceSnapshot:
    return BalanceSnapshot(
        sendable=_dec(wallet.sendable_balance),
        non_sendable=_dec(wallet.non_sendable_balance),
        pending=_dec(wallet.pending_balance),
        total=_dec(wallet.total_balance),
    )


async def get_wallet(db: AsyncSession, user_id: int) -> Wallet:
    wallet = await db.scalar(select(Wallet).where(Wallet.user_id == user_id))
    if wallet is None:
        raise WalletNotFound()
    return wallet


async def get_balance(db: AsyncSession, user_id: int) -> BalanceSnapshot:
    return snapshot(await get_wallet(db, user_id))


async def list_transactions(db: AsyncSession, user_id: int, page: int = 1, page_size: int = 20,
                            tx_type: Optional[TransactionType] = None) -> TransactionPage:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

    conditions = [touching(user_id)]
    if tx_type is not None:
        conditions.append(Transaction.type == tx_type)

    total = await db.scalar(select(func.count()).select_from(Transaction).where(*conditions))
    rows = await db.scalars(
        select(Transaction).where(*conditions)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .offset((page - 1) * page_size).limit(page_size)
    )
    return TransactionPage(
        items=[TransactionView.model_validate(tx) for tx in rows],
        page=page,
        page_size=page_size,
        total=total or 0,
    )


async def get_transaction(db: AsyncSession, user_id: int, transaction_id: int) -> TransactionView:
    tx = await db.scalar(select(Transaction).where(Transaction.id == transaction_id, touching(user_id)))
    if tx is None:
        raise TransactionNotFound()
    return TransactionView.model_validate(tx)


async def compute_balance(db: AsyncSession, user_id: int) -> BalanceSnapshot:
    """Balance derived from the completed transactions of ``user_id``."""
    rows = await db.execute(
        select(Transaction.type, func.sum(Transaction.amount), func.sum(Transaction.fee))
        .where(touching(user_id), Transaction.status == TransactionStatus.completed)
        .group_by(Transaction.type)
    )
    buckets = {bucket: ZERO for bucket in BALANCE_BUCKETS}
    for tx_type, amount_sum, fee_sum in rows:
        for _, bucket, delta in bucket_effects(tx_type, _dec(amount_sum), _dec(fee_sum), user_id, user_id):
            buckets[bucket] += delta
    return BalanceSnapshot(
        sendable=_dec(buckets["sendable"]),
        non_sendable=_dec(buckets["non_sendable"]),
        pending=_dec(buckets["pending"]),
        total=_dec(sum(buckets.values(), ZERO)),
    )


async def reconcile(db: AsyncSession, wallet: Wallet, repair: bool = False) -> ReconcileReport:
    cached = snapshot(wallet)
    computed = await compute_balance(db, wallet.user_id)
    inconsistent_total = cached.total != cached.sendable + cached.non_sendable + cached.pending
    if cached == computed and not inconsistent_total:
        return ReconcileReport(user_id=wallet.user_id, ok=True)

    logger.error("Balance mismatch for user %s: cached=%s computed=%s",
                 wallet.user_id, cached.model_dump(), computed.model_dump())
    wallet.review_required = True
    if repair:
        for bucket in BALANCE_BUCKETS:
            wallet.set_bucket(bucket, getattr(computed, bucket))
        logger.warning("Repaired cached balance for user %s from %s to %s",
                       wallet.user_id, cached.model_dump(), computed.model_dump())
    return ReconcileReport(
        user_id=wallet.user_id,
        ok=False,
        mismatch=BalanceMismatch(cached=cached, computed=computed),
        repaired=repair,
    )


async def reconcile_wallet(guard, user_id: int, repair: bool = False) -> ReconcileReport:
    async def _reconcile(db, wallets):
        return await reconcile(db, wallets[user_id], repair=repair)

    return await guard.with_wallet_lock(user_id, _reconcile)
