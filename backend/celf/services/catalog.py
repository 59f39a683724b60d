"""
Task catalog.

Owns task definitions and per-user completion state. The reward processor
only asks :func:`is_task_completed`; completion itself is reported by the
systems that verify tasks (admin endpoint here).
"""

from decimal import Decimal
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from celf.core.clock import utcnow
from celf.core.exceptions import TaskNotFound
from celf.models.task import Task, UserTask


async def get_task(db: AsyncSession, task_key: str, active_only: bool = True) -> Optional[Task]:
    stmt = select(Task).where(Task.task_key == task_key)
    if active_only:
        stmt = stmt.where(Task.is_active == True)
    return await db.scalar(stmt)


async def upsert_task(db: AsyncSession, task_key: str, title: str, reward: Decimal,
                      is_active: bool = True) -> Task:
    task = await get_task(db, task_key, active_only=False)
    if task is None:
        task = Task(task_key=task_key)
        db.add(task)
    task.title = title
    task.reward = reward
    task.is_active = is_active
    await db.flush()
    return task


async def mark_task_completed(db: AsyncSession, user_id: int, task_key: str) -> UserTask:
    task = await get_task(db, task_key)
    if task is None:
        raise TaskNotFound()
    user_task = await db.scalar(
        select(UserTask).where(UserTask.user_id == user_id, UserTask.task_id == task.id)
    )
    if user_task is None:
        user_task = UserTask(user_id=user_id, task_id=task.id)
        db.add(user_task)
    if not user_task.is_completed:
        user_task.is_completed = True
        user_task.completed_at = utcnow()
    await db.flush()
    return user_task


async def is_task_completed(db: AsyncSession, user_id: int, task_id: int) -> bool:
    completed = await db.scalar(
        select(UserTask.is_completed).where(UserTask.user_id == user_id, UserTask.task_id == task_id)
    )
    return bool(completed)
