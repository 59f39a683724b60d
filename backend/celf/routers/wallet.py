from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from celf.database import get_db
from celf.core.deps import get_current_user, get_idempotency_key, get_wallet_guard
from celf.models.transaction import TransactionType
from celf.models.user import User
from celf.schemas.wallet import (
    ExchangeRequest, ExchangeResult, TransactionPage, TransactionView, TransferRequest, TransferResult, WalletView,
)
from celf.services import ledger
from celf.services.exchange import exchange
from celf.services.transfer import transfer
from celf.services.wallet_guard import WalletGuard

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


@router.get("", response_model=WalletView)
async def get_wallet(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    wallet = await ledger.get_wallet(db, user.id)
    return WalletView(
        user_id=user.id,
        address=wallet.current_address,
        is_locked=wallet.is_locked,
        lock_reason=wallet.lock_reason,
        balance=ledger.snapshot(wallet),
        total_sent=wallet.total_sent,
        total_received=wallet.total_received,
        total_mined=wallet.total_mined,
    )


@router.get("/transactions", response_model=TransactionPage)
async def list_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=ledger.MAX_PAGE_SIZE),
    type: Optional[TransactionType] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ledger.list_transactions(db, user.id, page=page, page_size=page_size, tx_type=type)


@router.get("/transactions/{transaction_id}", response_model=TransactionView)
async def get_transaction(
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ledger.get_transaction(db, user.id, transaction_id)


@router.post("/send", response_model=TransferResult)
async def send(
    body: TransferRequest,
    user: User = Depends(get_current_user),
    guard: WalletGuard = Depends(get_wallet_guard),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    """Send sendable CELF to a wallet address, user id or e-mail."""
    return await transfer(guard, user.id, body.to, body.amount, memo=body.memo, idempotency_key=idempotency_key)


@router.post("/exchange", response_model=ExchangeResult)
async def exchange_balance(
    body: ExchangeRequest,
    user: User = Depends(get_current_user),
    guard: WalletGuard = Depends(get_wallet_guard),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    """Convert non-sendable CELF into sendable CELF."""
    return await exchange(guard, user.id, body.amount, idempotency_key=idempotency_key)
