from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from celf.database import Base
from celf.models.wallet import money

class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)
    task_key = Column(String(64), unique=True, nullable=False, index=True)
    title = Column(String(200), nullable=False)
    reward = money(nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class UserTask(Base):
    """Completion state reported by the task catalog."""

    __tablename__ = "user_tasks"
    __table_args__ = (
        UniqueConstraint("user_id", "task_id", name="uq_user_task"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

class TaskClaim(Base):
    __tablename__ = "task_claims"
    __table_args__ = (
        UniqueConstraint("user_id", "task_id", name="uq_task_claim"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False)
    claimed_at = Column(DateTime(timezone=True), server_default=func.now())
