import logging
from decimal import Decimal
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from celf.config import settings
from celf.database import get_db
from celf.core.deps import get_wallet_guard, require_admin
from celf.core.exceptions import LedgerError
from celf.models.user import User
from celf.schemas.admin import (
    CompleteTaskRequest, CreateTaskRequest, LockWalletRequest, ProvisionUserRequest, ProvisionUserResponse,
)
from celf.schemas.wallet import ReconcileReport
from celf.services import accounts, catalog, ledger
from celf.services.rewards import grant_bonus
from celf.services.wallet_guard import WalletGuard

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/users", response_model=ProvisionUserResponse)
async def provision_user(
    body: ProvisionUserRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    guard: WalletGuard = Depends(get_wallet_guard),
):
    """Create a user and wallet, link the referrer and pay the welcome bonus."""
    user, wallet, referral = await accounts.provision_user(db, body.email, body.referral_code)
    await db.commit()

    if Decimal(settings.WELCOME_BONUS) > 0:
        try:
            await grant_bonus(guard, user.id, settings.WELCOME_BONUS, "Welcome bonus", f"welcome:{user.id}")
        except LedgerError as e:
            logger.warning("Welcome bonus for user %s failed: %s", user.id, e)

    return ProvisionUserResponse(
        user_id=user.id,
        address=wallet.current_address,
        referral_code=user.referral_code,
        referred_by=referral.referrer_id if referral else None,
    )


@router.get("/wallets/{user_id}/reconcile", response_model=ReconcileReport)
async def reconcile_wallet(
    user_id: int,
    repair: bool = False,
    admin: User = Depends(require_admin),
    guard: WalletGuard = Depends(get_wallet_guard),
):
    if repair:
        logger.warning("Admin %s requested balance repair for user %s", admin.id, user_id)
    return await ledger.reconcile_wallet(guard, user_id, repair=repair)


async def _set_lock(guard: WalletGuard, user_id: int, locked: bool, reason=None) -> dict:
    async def _apply(db, wallets):
        wallet = wallets[user_id]
        wallet.is_locked = locked
        wallet.lock_reason = reason if locked else None
        return {"user_id": user_id, "is_locked": wallet.is_locked, "lock_reason": wallet.lock_reason}

    return await guard.with_wallet_lock(user_id, _apply)


@router.post("/wallets/{user_id}/lock")
async def lock_wallet(
    user_id: int,
    body: LockWalletRequest,
    admin: User = Depends(require_admin),
    guard: WalletGuard = Depends(get_wallet_guard),
):
    logger.warning("Admin %s locked wallet of user %s: %s", admin.id, user_id, body.reason)
    return await _set_lock(guard, user_id, True, body.reason)


@router.post("/wallets/{user_id}/unlock")
async def unlock_wallet(
    user_id: int,
    admin: User = Depends(require_admin),
    guard: WalletGuard = Depends(get_wallet_guard),
):
    logger.info("Admin %s unlocked wallet of user %s", admin.id, user_id)
    return await _set_lock(guard, user_id, False)


@router.post("/tasks")
async def create_task(
    body: CreateTaskRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    task = await catalog.upsert_task(db, body.task_key, body.title, body.reward)
    await db.commit()
    return {"id": task.id, "task_key": task.task_key, "reward": str(task.reward), "is_active": task.is_active}


@router.post("/tasks/{task_key}/complete")
async def complete_task(
    task_key: str,
    body: CompleteTaskRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user_task = await catalog.mark_task_completed(db, body.user_id, task_key)
    await db.commit()
    return {"user_id": user_task.user_id, "task_key": task_key, "is_completed": user_task.is_completed}
