import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from celf.config import settings
from celf.core.clock import utcnow
from celf.core.exceptions import ExchangeLimitExceeded
from celf.models.transaction import Transaction, TransactionStatus, TransactionType
from celf.schemas.wallet import ExchangeResult
from celf.services.ledger import DraftTransaction, append_transaction, snapshot, to_amount
from celf.services.wallet_guard import IdempotencyRequest, WalletGuard

logger = logging.getLogger(__name__)


async def exchanged_last_24h(db: AsyncSession, user_id: int) -> Decimal:
    since = utcnow() - timedelta(hours=24)
    total = await db.scalar(
        select(func.sum(Transaction.amount)).where(
            Transaction.to_user_id == user_id,
            Transaction.type == TransactionType.exchange,
            Transaction.status == TransactionStatus.completed,
            Transaction.processed_at >= since,
        )
    )
    return Decimal(str(total or 0))


async def exchange(guard: WalletGuard, user_id: int, amount,
                   idempotency_key: Optional[str] = None) -> ExchangeResult:
    """Convert non-sendable balance into sendable balance. One-way only."""
    amount = to_amount(amount)
    limit = Decimal(settings.EXCHANGE_DAILY_LIMIT)

    async def _exchange(db, wallets):
        if limit > 0:
            used = await exchanged_last_24h(db, user_id)
            if used + amount > limit:
                raise ExchangeLimitExceeded(
                    f"Daily exchange limit is {limit} CELF ({used} already exchanged)"
                )
        tx = await append_transaction(db, DraftTransaction(
            type=TransactionType.exchange,
            amount=amount,
            from_user_id=user_id,
            to_user_id=user_id,
            description="Exchange non-sendable to sendable",
        ), wallets)
        return ExchangeResult(transaction_id=tx.id, amount=amount, balance=snapshot(wallets[user_id]))

    idempotency = None
    if idempotency_key:
        idempotency = IdempotencyRequest(idempotency_key, "exchange", {"amount": str(amount)})
    return await guard.run([user_id], _exchange, idempotency=idempotency, response_model=ExchangeResult)
