"""
Server-authoritative mining accrual.

A session only stores ``started_at`` and the rate; earnings are computed from
the server clock when the session is stopped (or auto-completed), never from
client-reported durations. Elapsed time beyond the session ceiling is not
paid, so a forgotten session yields at most ``rate * max_duration``.
"""

import logging
from datetime import datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Optional
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from celf.config import settings
from celf.core.clock import as_utc, utcnow
from celf.core.exceptions import (
    AlreadyMining, InvalidAmount, LedgerError, MiningSessionNotFound, MiningUnavailable, NotMining,
    ValidationError, WalletLocked,
)
from celf.models.mining import CompletionMethod, MiningSession, MiningStatus
from celf.models.transaction import Transaction, TransactionType
from celf.models.wallet import CELF_QUANTUM, Wallet
from celf.schemas.mining import (
    MiningConfigView, MiningSessionPage, MiningSessionRecord, MiningSessionView, MiningStats, MiningStopResult,
)
from celf.services.ledger import DraftTransaction, append_transaction, snapshot
from celf.services.wallet_guard import IdempotencyRequest, WalletGuard

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = Decimal(3600)
MAX_PAGE_SIZE = 100


def clamp_rate(rate=None) -> Decimal:
    """Validate a mining rate (tokens/hour) and clamp it to ``MINING_MAX_RATE``."""
    if rate is None:
        rate = settings.MINING_DEFAULT_RATE
    try:
        value = rate if isinstance(rate, Decimal) else Decimal(str(rate))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Invalid mining rate: {rate!r}")
    if not value.is_finite() or value <= 0:
        raise InvalidAmount(f"Mining rate must be positive (got {rate})")
    if value > settings.MINING_MAX_RATE:
        logger.warning("Mining rate %s above maximum, clamping to %s", value, settings.MINING_MAX_RATE)
        value = Decimal(settings.MINING_MAX_RATE)
    return value.quantize(CELF_QUANTUM)


def accrued(rate: Decimal, seconds: int) -> Decimal:
    return (Decimal(rate) * Decimal(seconds) / SECONDS_PER_HOUR).quantize(CELF_QUANTUM, rounding=ROUND_DOWN)


def elapsed_seconds(session: MiningSession, now: datetime) -> int:
    return max(0, int((now - as_utc(session.started_at)).total_seconds()))


def is_expired(session: MiningSession, now: datetime) -> bool:
    return elapsed_seconds(session, now) >= session.max_duration_seconds


def session_view(session: MiningSession, now: datetime) -> MiningSessionView:
    elapsed = elapsed_seconds(session, now)
    paid = min(elapsed, session.max_duration_seconds)
    return MiningSessionView(
        session_id=session.id,
        status=session.status,
        started_at=as_utc(session.started_at),
        mining_rate=session.mining_rate,
        max_duration_seconds=session.max_duration_seconds,
        elapsed_seconds=elapsed,
        remaining_seconds=max(0, session.max_duration_seconds - elapsed),
        projected_earnings=accrued(session.mining_rate, paid),
        server_time=now,
    )


async def _active_session(db: AsyncSession, user_id: int, lock: bool = False) -> Optional[MiningSession]:
    stmt = select(MiningSession).where(
        MiningSession.user_id == user_id,
        MiningSession.status == MiningStatus.active,
    )
    if lock:
        stmt = stmt.with_for_update()
    return await db.scalar(stmt)


def _check_client_report(session: MiningSession, earned: Decimal, reported: Optional[Decimal]) -> None:
    if reported is None:
        return
    session.client_reported_earnings = Decimal(reported).quantize(CELF_QUANTUM)
    allowed = earned * Decimal(settings.MINING_CLIENT_TOLERANCE)
    if abs(Decimal(reported) - earned) > allowed:
        session.suspicious = True
        logger.warning(
            "Client reported %s for mining session %s, server calculated %s",
            reported, session.id, earned,
        )


async def complete_session(
    db: AsyncSession,
    session: MiningSession,
    wallets: dict[int, Wallet],
    now: datetime,
    method: CompletionMethod,
    client_reported_earnings: Optional[Decimal] = None,
) -> tuple[Optional[Transaction], int]:
    """Close ``session`` and credit its earnings to non-sendable balance."""
    elapsed = elapsed_seconds(session, now)
    paid = elapsed
    if elapsed > session.max_duration_seconds:
        paid = session.max_duration_seconds
        session.capped = True
        logger.warning(
            "Mining session %s for user %s ran %ss, paying the %ss ceiling only",
            session.id, session.user_id, elapsed, session.max_duration_seconds,
        )

    earned = accrued(session.mining_rate, paid)
    tx = None
    if earned > 0:
        tx = await append_transaction(db, DraftTransaction(
            type=TransactionType.mining,
            amount=earned,
            to_user_id=session.user_id,
            source_ref=f"mining:{session.id}",
            description=f"Mining session #{session.id}",
        ), wallets)
        session.transaction_id = tx.id

    session.status = MiningStatus.completed
    session.completed_at = now
    session.tokens_earned = earned
    session.completion_method = method
    _check_client_report(session, earned, client_reported_earnings)
    await db.flush()
    logger.info("Mining session %s completed (%s): %s CELF for %ss", session.id, method.value, earned, paid)
    return tx, elapsed


async def start_mining(guard: WalletGuard, user_id: int, rate=None,
                       idempotency_key: Optional[str] = None) -> MiningSessionView:
    if settings.MINING_MAINTENANCE_MODE:
        raise MiningUnavailable()
    mining_rate = clamp_rate(rate)

    async def _start(db, wallets):
        if wallets[user_id].is_locked:
            raise WalletLocked()
        now = utcnow()
        existing = await _active_session(db, user_id, lock=True)
        if existing is not None:
            if not is_expired(existing, now):
                raise AlreadyMining()
            await complete_session(db, existing, wallets, now, CompletionMethod.auto_completed)

        session = MiningSession(
            user_id=user_id,
            status=MiningStatus.active,
            mining_rate=mining_rate,
            max_duration_seconds=settings.MINING_MAX_SESSION_HOURS * 3600,
            started_at=now,
            tokens_earned=Decimal("0"),
        )
        db.add(session)
        await db.flush()
        logger.info("Mining session %s started for user %s at %s CELF/h", session.id, user_id, mining_rate)
        return session_view(session, now)

    idempotency = None
    if idempotency_key:
        idempotency = IdempotencyRequest(idempotency_key, "start_mining", {"rate": str(mining_rate)})
    return await guard.run([user_id], _start, idempotency=idempotency, response_model=MiningSessionView)


async def stop_mining(guard: WalletGuard, user_id: int,
                      client_reported_earnings: Optional[Decimal] = None,
                      idempotency_key: Optional[str] = None) -> MiningStopResult:
    """Stop the active session.

    A retry carrying the same ``idempotency_key`` gets the original result
    instead of ``NotMining``.
    """
    async def _stop(db, wallets):
        session = await _active_session(db, user_id, lock=True)
        if session is None:
            raise NotMining()
        tx, elapsed = await complete_session(
            db, session, wallets, utcnow(), CompletionMethod.user_stopped, client_reported_earnings,
        )
        return MiningStopResult(
            session_id=session.id,
            tokens_earned=session.tokens_earned,
            elapsed_seconds=elapsed,
            capped=session.capped,
            transaction_id=tx.id if tx else None,
            balance=snapshot(wallets[user_id]),
        )

    idempotency = None
    if idempotency_key:
        idempotency = IdempotencyRequest(idempotency_key, "stop_mining", {})
    return await guard.run([user_id], _stop, idempotency=idempotency, response_model=MiningStopResult)


async def get_current_session(db: AsyncSession, user_id: int) -> Optional[MiningSessionView]:
    session = await _active_session(db, user_id)
    if session is None:
        return None
    return session_view(session, utcnow())


async def get_mining_stats(db: AsyncSession, user_id: int) -> MiningStats:
    total_sessions, total_mined = (await db.execute(
        select(func.count(MiningSession.id), func.sum(MiningSession.tokens_earned))
        .where(MiningSession.user_id == user_id)
    )).one()
    active = await _active_session(db, user_id)
    return MiningStats(
        total_sessions=total_sessions or 0,
        total_mined=Decimal(str(total_mined or 0)).quantize(CELF_QUANTUM),
        is_mining=active is not None,
    )


async def list_sessions(db: AsyncSession, user_id: int, page: int = 1, page_size: int = 20) -> MiningSessionPage:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

    total = await db.scalar(
        select(func.count()).select_from(MiningSession).where(MiningSession.user_id == user_id)
    )
    rows = await db.scalars(
        select(MiningSession).where(MiningSession.user_id == user_id)
        .order_by(MiningSession.started_at.desc(), MiningSession.id.desc())
        .offset((page - 1) * page_size).limit(page_size)
    )
    return MiningSessionPage(
        items=[MiningSessionRecord.model_validate(s) for s in rows],
        page=page,
        page_size=page_size,
        total=total or 0,
    )


async def get_session(db: AsyncSession, user_id: int, session_id: int) -> MiningSessionRecord:
    session = await db.scalar(
        select(MiningSession).where(MiningSession.id == session_id, MiningSession.user_id == user_id)
    )
    if session is None:
        raise MiningSessionNotFound()
    return MiningSessionRecord.model_validate(session)


def get_mining_config() -> MiningConfigView:
    """Rate and limits a client needs before starting a session."""
    return MiningConfigView(
        mining_rate=clamp_rate(),
        max_rate=Decimal(settings.MINING_MAX_RATE),
        max_session_seconds=settings.MINING_MAX_SESSION_HOURS * 3600,
        maintenance_mode=settings.MINING_MAINTENANCE_MODE,
        server_time=utcnow(),
    )


async def auto_complete_expired_sessions(guard: WalletGuard) -> int:
    """Complete every active session that has reached its ceiling."""
    now = utcnow()
    async with guard.session_factory() as db:
        active = list(await db.scalars(
            select(MiningSession).where(MiningSession.status == MiningStatus.active)
        ))
    expired = [(s.id, s.user_id) for s in active if is_expired(s, now)]

    completed = 0
    for session_id, user_id in expired:
        async def _complete(db, wallets, session_id=session_id):
            session = await db.scalar(
                select(MiningSession).where(
                    MiningSession.id == session_id,
                    MiningSession.status == MiningStatus.active,
                ).with_for_update()
            )
            if session is None:
                return False
            await complete_session(db, session, wallets, utcnow(), CompletionMethod.auto_completed)
            return True

        try:
            if await guard.with_wallet_lock(user_id, _complete):
                completed += 1
        except LedgerError as e:
            logger.warning("Could not auto-complete mining session %s: %s", session_id, e)

    if completed:
        logger.info("Auto-completed %d expired mining sessions", completed)
    return completed
