"""
Referral, task and bonus credits.

A claim either credits once (``created``) or reports the earlier credit
(``already_claimed``); asking twice is not an error. Each credit carries a
``source_ref`` so the unique ``(type, to_user_id, source_ref)`` constraint
catches any race the locks miss.
"""

import logging
from decimal import Decimal
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from celf.core.clock import utcnow
from celf.core.exceptions import ReferralNotFound, RewardNotEligible, TaskNotFound
from celf.models.referral import Referral, ReferralStatus
from celf.models.task import TaskClaim
from celf.models.transaction import Transaction, TransactionType
from celf.schemas.rewards import ClaimResult, ClaimStatus, ReferralView
from celf.services import catalog
from celf.services.ledger import DraftTransaction, append_transaction, to_amount
from celf.services.wallet_guard import IdempotencyRequest, WalletGuard

logger = logging.getLogger(__name__)


async def _find_credit(db: AsyncSession, tx_type: TransactionType, user_id: int,
                       source_ref: str) -> Optional[Transaction]:
    return await db.scalar(
        select(Transaction).where(
            Transaction.type == tx_type,
            Transaction.to_user_id == user_id,
            Transaction.source_ref == source_ref,
        )
    )


def _already_claimed(tx: Optional[Transaction]) -> ClaimResult:
    if tx is None:
        return ClaimResult(status=ClaimStatus.already_claimed, amount=Decimal("0"))
    return ClaimResult(status=ClaimStatus.already_claimed, transaction_id=tx.id, amount=tx.amount)


async def claim_referral_reward(guard: WalletGuard, referrer_id: int, referee_id: int,
                                idempotency_key: Optional[str] = None) -> ClaimResult:
    async def _claim(db, wallets):
        referral = await db.scalar(
            select(Referral).where(
                Referral.referrer_id == referrer_id,
                Referral.referee_id == referee_id,
            ).with_for_update()
        )
        if referral is None:
            raise ReferralNotFound()
        source_ref = f"referral:{referral.id}"

        if referral.status == ReferralStatus.rewarded:
            tx = await _find_credit(db, TransactionType.referral, referrer_id, source_ref)
            return _already_claimed(tx)
        if referral.status != ReferralStatus.completed:
            raise RewardNotEligible("Referred user has not completed sign-up yet")

        # A zero reward on either side is skipped, the claim still completes
        tx = None
        if referral.reward_amount and referral.reward_amount > 0:
            tx = await append_transaction(db, DraftTransaction(
                type=TransactionType.referral,
                amount=referral.reward_amount,
                from_user_id=referee_id,
                to_user_id=referrer_id,
                source_ref=source_ref,
                description=f"Referral reward for user #{referee_id}",
            ), wallets)
        if referral.referee_reward_amount and referral.referee_reward_amount > 0:
            await append_transaction(db, DraftTransaction(
                type=TransactionType.referral,
                amount=referral.referee_reward_amount,
                from_user_id=referrer_id,
                to_user_id=referee_id,
                source_ref=source_ref,
                description="Referral sign-up reward",
            ), wallets)

        referral.status = ReferralStatus.rewarded
        referral.rewarded_at = utcnow()
        logger.info("Referral %s rewarded: %s CELF to user %s", referral.id, referral.reward_amount, referrer_id)
        return ClaimResult(
            status=ClaimStatus.created,
            transaction_id=tx.id if tx else None,
            amount=tx.amount if tx else Decimal("0"),
        )

    idempotency = None
    if idempotency_key:
        idempotency = IdempotencyRequest(idempotency_key, "claim_referral", {"referee_id": referee_id})
    return await guard.run(
        [referrer_id, referee_id], _claim, idempotency=idempotency, response_model=ClaimResult,
    )


async def claim_task_reward(guard: WalletGuard, user_id: int, task_key: str,
                            idempotency_key: Optional[str] = None) -> ClaimResult:
    async def _claim(db, wallets):
        task = await catalog.get_task(db, task_key, active_only=False)
        if task is None:
            raise TaskNotFound()

        claim = await db.scalar(
            select(TaskClaim).where(TaskClaim.user_id == user_id, TaskClaim.task_id == task.id)
        )
        if claim is not None:
            return _already_claimed(await db.get(Transaction, claim.transaction_id))
        if not task.is_active:
            raise TaskNotFound()
        if not await catalog.is_task_completed(db, user_id, task.id):
            raise RewardNotEligible("Task must be completed before claiming reward")

        tx = await append_transaction(db, DraftTransaction(
            type=TransactionType.task_reward,
            amount=task.reward,
            to_user_id=user_id,
            source_ref=f"task:{task.task_key}",
            description=f"Task reward: {task.title}",
        ), wallets)
        db.add(TaskClaim(user_id=user_id, task_id=task.id, transaction_id=tx.id))
        await db.flush()
        logger.info("Task %s claimed by user %s: %s CELF", task.task_key, user_id, tx.amount)
        return ClaimResult(status=ClaimStatus.created, transaction_id=tx.id, amount=tx.amount)

    idempotency = None
    if idempotency_key:
        idempotency = IdempotencyRequest(idempotency_key, "claim_task", {"task_key": task_key})
    return await guard.run([user_id], _claim, idempotency=idempotency, response_model=ClaimResult)


async def grant_bonus(guard: WalletGuard, user_id: int, amount, reason: str, source_ref: str) -> ClaimResult:
    """Credit a one-off bonus to non-sendable balance, once per ``source_ref``."""
    amount = to_amount(amount)

    async def _grant(db, wallets):
        existing = await _find_credit(db, TransactionType.bonus, user_id, source_ref)
        if existing is not None:
            return _already_claimed(existing)
        tx = await append_transaction(db, DraftTransaction(
            type=TransactionType.bonus,
            amount=amount,
            to_user_id=user_id,
            source_ref=source_ref,
            description=reason,
        ), wallets)
        return ClaimResult(status=ClaimStatus.created, transaction_id=tx.id, amount=tx.amount)

    return await guard.with_wallet_lock(user_id, _grant)


async def list_referrals(db: AsyncSession, referrer_id: int) -> list[ReferralView]:
    rows = await db.scalars(
        select(Referral).where(Referral.referrer_id == referrer_id).order_by(Referral.created_at.desc())
    )
    return [ReferralView.model_validate(r) for r in rows]
