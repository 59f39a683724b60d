from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
import enum
from celf.database import Base
from celf.models.wallet import money

class ReferralStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    rewarded = "rewarded"

class Referral(Base):
    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("referrer_id", "referee_id", name="uq_referral_pair"),
    )

    id = Column(Integer, primary_key=True)
    referrer_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # a user can only be referred once
    referee_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    referral_code = Column(String(16), nullable=False)
    status = Column(Enum(ReferralStatus), nullable=False, default=ReferralStatus.pending)
    reward_amount = money(nullable=False, default=0)
    referee_reward_amount = money(nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    rewarded_at = Column(DateTime(timezone=True), nullable=True)
