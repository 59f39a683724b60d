import enum
import secrets
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum, ForeignKey, Index, UniqueConstraint, event, inspect,
)
from sqlalchemy.sql import func
from celf.core.exceptions import ImmutableTransactionError
from celf.database import Base
from celf.models.wallet import money

class TransactionType(str, enum.Enum):
    mining = "mining"
    send = "send"
    receive = "receive"
    referral = "referral"
    task_reward = "task_reward"
    exchange = "exchange"
    bonus = "bonus"

class TransactionStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"

FINAL_STATUSES = (TransactionStatus.completed, TransactionStatus.failed)

def _tx_hash() -> str:
    return "0x" + secrets.token_hex(32)

class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("type", "to_user_id", "source_ref", name="uq_transaction_source"),
        Index("ix_transactions_to_user_type", "to_user_id", "type"),
        Index("ix_transactions_from_user_type", "from_user_id", "type"),
    )

    id = Column(Integer, primary_key=True)
    hash = Column(String(66), unique=True, nullable=False, default=_tx_hash)
    type = Column(Enum(TransactionType), nullable=False)
    from_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    to_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    to_address = Column(String(44), nullable=True)
    amount = money(nullable=False)
    fee = money(nullable=False, default=0)
    status = Column(Enum(TransactionStatus), nullable=False, default=TransactionStatus.pending)
    source_ref = Column(String(100), nullable=True)
    description = Column(String(200), nullable=True)
    # exchange only
    from_bucket = Column(String(20), nullable=True)
    to_bucket = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)


@event.listens_for(Transaction, "before_update")
def _reject_finalized_updates(mapper, connection, target):
    history = inspect(target).attrs.status.history
    previous = history.deleted[0] if history.deleted else target.status
    if previous in FINAL_STATUSES:
        raise ImmutableTransactionError(f"Transaction {target.id} is {previous.value} and cannot be modified")
