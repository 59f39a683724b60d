from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from celf.database import get_db
from celf.core.deps import get_current_user, get_idempotency_key, get_wallet_guard
from celf.models.user import User
from celf.schemas.rewards import ClaimResult, ReferralView
from celf.services import rewards
from celf.services.wallet_guard import WalletGuard

router = APIRouter(prefix="/api/rewards", tags=["rewards"])


@router.get("/referrals", response_model=list[ReferralView])
async def my_referrals(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await rewards.list_referrals(db, user.id)


@router.post("/referrals/{referee_id}/claim", response_model=ClaimResult)
async def claim_referral(
    referee_id: int,
    user: User = Depends(get_current_user),
    guard: WalletGuard = Depends(get_wallet_guard),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    return await rewards.claim_referral_reward(guard, user.id, referee_id, idempotency_key=idempotency_key)


@router.post("/tasks/{task_key}/claim", response_model=ClaimResult)
async def claim_task(
    task_key: str,
    user: User = Depends(get_current_user),
    guard: WalletGuard = Depends(get_wallet_guard),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    return await rewards.claim_task_reward(guard, user.id, task_key, idempotency_key=idempotency_key)
