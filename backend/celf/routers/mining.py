from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from celf.database import get_db
from celf.core.deps import get_current_user, get_idempotency_key, get_wallet_guard
from celf.models.user import User
from celf.schemas.mining import (
    MiningConfigView, MiningSessionPage, MiningSessionRecord, MiningSessionView, MiningStats, MiningStopResult,
    StopMiningRequest,
)
from celf.services import mining
from celf.services.wallet_guard import WalletGuard

router = APIRouter(prefix="/api/mining", tags=["mining"])


@router.get("/rate", response_model=MiningConfigView)
async def mining_rate(user: User = Depends(get_current_user)):
    return mining.get_mining_config()


@router.post("/start", response_model=MiningSessionView)
async def start_mining(
    user: User = Depends(get_current_user),
    guard: WalletGuard = Depends(get_wallet_guard),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    return await mining.start_mining(guard, user.id, idempotency_key=idempotency_key)


@router.post("/stop", response_model=MiningStopResult)
async def stop_mining(
    body: Optional[StopMiningRequest] = None,
    user: User = Depends(get_current_user),
    guard: WalletGuard = Depends(get_wallet_guard),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    """Stop mining. Earnings are calculated from the server clock only."""
    reported = body.reported_earnings if body else None
    return await mining.stop_mining(guard, user.id, client_reported_earnings=reported, idempotency_key=idempotency_key)


@router.get("/session", response_model=Optional[MiningSessionView])
async def current_session(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await mining.get_current_session(db, user.id)


@router.get("/sessions", response_model=MiningSessionPage)
async def session_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=mining.MAX_PAGE_SIZE),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await mining.list_sessions(db, user.id, page=page, page_size=page_size)


@router.get("/sessions/{session_id}", response_model=MiningSessionRecord)
async def session_detail(
    session_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await mining.get_session(db, user.id, session_id)


@router.get("/stats", response_model=MiningStats)
async def mining_stats(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await mining.get_mining_stats(db, user.id)
