from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from celf.models.transaction import TransactionStatus, TransactionType

class BalanceSnapshot(BaseModel):
    sendable: Decimal
    non_sendable: Decimal
    pending: Decimal
    total: Decimal

class WalletView(BaseModel):
    user_id: int
    address: str
    is_locked: bool
    lock_reason: Optional[str] = None
    balance: BalanceSnapshot
    total_sent: Decimal
    total_received: Decimal
    total_mined: Decimal

class TransactionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    hash: str
    type: TransactionType
    status: TransactionStatus
    amount: Decimal
    fee: Decimal
    from_user_id: Optional[int] = None
    to_user_id: Optional[int] = None
    to_address: Optional[str] = None
    source_ref: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

class TransactionPage(BaseModel):
    items: list[TransactionView]
    page: int
    page_size: int
    total: int

class TransferRequest(BaseModel):
    to: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(gt=0)
    memo: Optional[str] = Field(None, max_length=200)

class TransferResult(BaseModel):
    transaction_id: int
    receive_transaction_id: int
    amount: Decimal
    fee: Decimal
    recipient_user_id: int
    recipient_address: str
    balance: BalanceSnapshot

class ExchangeRequest(BaseModel):
    amount: Decimal = Field(gt=0)

class ExchangeResult(BaseModel):
    transaction_id: int
    amount: Decimal
    balance: BalanceSnapshot

class BalanceMismatch(BaseModel):
    cached: BalanceSnapshot
    computed: BalanceSnapshot

class ReconcileReport(BaseModel):
    user_id: int
    ok: bool
    mismatch: Optional[BalanceMismatch] = None
    repaired: bool = False
