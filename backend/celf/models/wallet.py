from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Numeric, Boolean, DateTime, ForeignKey, CheckConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from celf.database import Base

CELF_QUANTUM = Decimal("0.00000001")

BALANCE_BUCKETS = ("sendable", "non_sendable", "pending")

def money(**kwargs):
    return Column(Numeric(precision=20, scale=8), **kwargs)

class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("sendable_balance >= 0", name="ck_wallet_sendable_non_negative"),
        CheckConstraint("non_sendable_balance >= 0", name="ck_wallet_non_sendable_non_negative"),
        CheckConstraint("pending_balance >= 0", name="ck_wallet_pending_non_negative"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    sendable_balance = money(nullable=False, default=Decimal("0"))
    non_sendable_balance = money(nullable=False, default=Decimal("0"))
    pending_balance = money(nullable=False, default=Decimal("0"))
    total_balance = money(nullable=False, default=Decimal("0"))
    current_address = Column(String(44), unique=True, nullable=False, index=True)

    total_sent = money(nullable=False, default=Decimal("0"))
    total_received = money(nullable=False, default=Decimal("0"))
    total_mined = money(nullable=False, default=Decimal("0"))

    is_locked = Column(Boolean, nullable=False, default=False)
    lock_reason = Column(String(255), nullable=True)
    review_required = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False)
    last_activity = Column(DateTime(timezone=True), server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="wallet")

    __mapper_args__ = {"version_id_col": version}

    def bucket(self, name: str) -> Decimal:
        return Decimal(getattr(self, f"{name}_balance") or 0)

    def set_bucket(self, name: str, value: Decimal) -> None:
        setattr(self, f"{name}_balance", value.quantize(CELF_QUANTUM))
        self.total_balance = sum((self.bucket(b) for b in BALANCE_BUCKETS), Decimal("0"))
