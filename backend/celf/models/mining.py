from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Enum, ForeignKey, Index, text,
)
from sqlalchemy.sql import func
import enum
from celf.database import Base
from celf.models.wallet import money

class MiningStatus(str, enum.Enum):
    active = "active"
    completed = "completed"

class CompletionMethod(str, enum.Enum):
    user_stopped = "user_stopped"
    auto_completed = "auto_completed"

class MiningSession(Base):
    __tablename__ = "mining_sessions"
    __table_args__ = (
        # At most one open session per user
        Index(
            "uq_mining_sessions_open_per_user", "user_id", unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(Enum(MiningStatus), nullable=False, default=MiningStatus.active)
    mining_rate = money(nullable=False)
    max_duration_seconds = Column(Integer, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    tokens_earned = money(nullable=False, default=0)
    capped = Column(Boolean, nullable=False, default=False)
    completion_method = Column(Enum(CompletionMethod), nullable=True)
    client_reported_earnings = money(nullable=True)
    suspicious = Column(Boolean, nullable=False, default=False)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
