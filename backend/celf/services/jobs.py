"""Scheduled maintenance jobs run by the APScheduler in ``celf.main``."""

import logging
from datetime import timedelta
from typing import Optional
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker
from celf.config import settings
from celf.core.clock import utcnow
from celf.core.exceptions import LedgerError
from celf.core.redis import get_redis
from celf.database import AsyncSessionLocal
from celf.models.idempotency import IdempotencyRecord
from celf.models.wallet import Wallet
from celf.services.ledger import reconcile_wallet
from celf.services.mining import auto_complete_expired_sessions
from celf.services.wallet_guard import WalletGuard

logger = logging.getLogger(__name__)


async def audit_wallets(guard: WalletGuard) -> list[int]:
    """Reconcile every wallet without repairing. Returns the mismatched user ids."""
    async with guard.session_factory() as db:
        user_ids = list(await db.scalars(select(Wallet.user_id).order_by(Wallet.user_id)))

    mismatched = []
    for user_id in user_ids:
        try:
            report = await reconcile_wallet(guard, user_id, repair=False)
        except LedgerError as e:
            logger.warning("Audit skipped wallet of user %s: %s", user_id, e)
            continue
        if not report.ok:
            mismatched.append(user_id)

    logger.info("Wallet audit finished: %d wallets, %d flagged", len(user_ids), len(mismatched))
    return mismatched


async def purge_idempotency_records(session_factory: async_sessionmaker,
                                    ttl_seconds: Optional[int] = None) -> int:
    ttl = ttl_seconds or settings.IDEMPOTENCY_TTL_SECONDS
    cutoff = utcnow() - timedelta(seconds=ttl)
    async with session_factory() as db:
        result = await db.execute(delete(IdempotencyRecord).where(IdempotencyRecord.created_at < cutoff))
        await db.commit()
    if result.rowcount:
        logger.info("Purged %d idempotency records older than %ss", result.rowcount, ttl)
    return result.rowcount or 0


async def _guard() -> WalletGuard:
    return WalletGuard(AsyncSessionLocal, redis=await get_redis())


async def auto_complete_job():
    try:
        await auto_complete_expired_sessions(await _guard())
    except Exception as e:
        logger.exception("Mining auto-complete job failed: %s", e)


async def audit_job():
    try:
        await audit_wallets(await _guard())
    except Exception as e:
        logger.exception("Wallet audit job failed: %s", e)


async def purge_job():
    try:
        await purge_idempotency_records(AsyncSessionLocal)
    except Exception as e:
        logger.exception("Idempotency purge job failed: %s", e)
