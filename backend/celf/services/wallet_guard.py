"""
Per-wallet serialization and request deduplication.

Every balance-mutating operation runs through :meth:`WalletGuard.run`:

1. An optional idempotency key is looked up (Redis first, then the
   ``idempotency_records`` table). A hit replays the stored response.
2. In-process locks for the touched wallets are taken in ascending
   ``user_id`` order, then the wallet rows are loaded ``FOR UPDATE`` in the
   same order, so two cross-wallet operations can never deadlock.
3. The operation runs inside a single database transaction. Its result and
   the idempotency record are committed together.
4. Version conflicts, unique-constraint races and lock timeouts roll back
   and are retried with exponential backoff; after the last attempt the
   caller gets :class:`~celf.core.exceptions.TryAgain`.

Example:
    guard = WalletGuard(AsyncSessionLocal, redis=await get_redis())

    async def _credit(db, wallets):
        ...

    result = await guard.with_wallet_lock(user_id, _credit)
"""

import asyncio
import hashlib
import json
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Type
from weakref import WeakValueDictionary
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from celf.config import settings
from celf.core.exceptions import IdempotencyKeyReused, TryAgain, WalletNotFound
from celf.models.idempotency import IdempotencyRecord
from celf.models.wallet import Wallet

logger = logging.getLogger(__name__)

WalletOperation = Callable[[AsyncSession, dict[int, Wallet]], Awaitable[Any]]

# SQLSTATEs for serialization failure / deadlock
_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}
_TRANSIENT_MESSAGES = ("database is locked", "deadlock", "could not serialize", "lock timeout")


def request_hash(operation: str, params: dict) -> str:
    content = json.dumps({"operation": operation, **params}, sort_keys=True, default=str)
    return hashlib.sha256(content.encode()).hexdigest()


@dataclass
class IdempotencyRequest:
    key: str
    operation: str
    params: dict = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        return request_hash(self.operation, self.params)


class WalletLockRegistry:
    """In-process ``asyncio.Lock`` per wallet, created on demand."""

    def __init__(self):
        self._locks: "WeakValueDictionary[int, asyncio.Lock]" = WeakValueDictionary()

    def lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, user_ids: Iterable[int]):
        ordered = sorted(set(user_ids))
        locks = [self.lock_for(user_id) for user_id in ordered]
        acquired = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()


_default_locks = WalletLockRegistry()


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (StaleDataError, IntegrityError)):
        return True
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate in _TRANSIENT_SQLSTATES:
            return True
        message = str(orig).lower()
        return any(fragment in message for fragment in _TRANSIENT_MESSAGES)
    return False


async def load_wallets(db: AsyncSession, user_ids: list[int]) -> dict[int, Wallet]:
    rows = await db.scalars(
        select(Wallet).where(Wallet.user_id.in_(user_ids)).order_by(Wallet.user_id).with_for_update()
    )
    wallets = {wallet.user_id: wallet for wallet in rows}
    missing = [user_id for user_id in user_ids if user_id not in wallets]
    if missing:
        raise WalletNotFound(f"Wallet not found for user {missing[0]}")
    return wallets


class WalletGuard:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        redis=None,
        locks: Optional[WalletLockRegistry] = None,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        idempotency_ttl: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.locks = locks or _default_locks
        self.attempts = attempts or settings.LOCK_RETRY_ATTEMPTS
        self.base_delay = settings.LOCK_RETRY_BASE_DELAY if base_delay is None else base_delay
        self.idempotency_ttl = idempotency_ttl or settings.IDEMPOTENCY_TTL_SECONDS

    async def with_wallet_lock(self, user_id: int, fn: WalletOperation) -> Any:
        return await self.run([user_id], fn)

    async def run(
        self,
        user_ids: list[int],
        fn: WalletOperation,
        idempotency: Optional[IdempotencyRequest] = None,
        response_model: Optional[Type[BaseModel]] = None,
    ) -> Any:
        """Run ``fn(db, wallets)`` with the wallets of ``user_ids`` locked.

        The first user id owns the idempotency key.
        """
        owner = user_ids[0]
        if idempotency is not None:
            if response_model is None:
                raise ValueError("response_model is required for idempotent operations")
            cached = await self._cached_response(owner, idempotency)
            if cached is not None:
                logger.info("Idempotent replay (cache) for user %s key %s", owner, idempotency.key)
                return response_model.model_validate(cached)

        async with self.locks.hold(user_ids) as ordered:
            last_error: Optional[Exception] = None
            for attempt in range(self.attempts):
                try:
                    return await self._attempt(ordered, owner, fn, idempotency, response_model)
                except DBAPIError as exc:
                    if not is_transient(exc):
                        raise
                    last_error = exc
                except StaleDataError as exc:
                    last_error = exc

                if attempt < self.attempts - 1:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "Wallet conflict for users %s (%s), attempt %d/%d, retrying in %.3fs",
                        ordered, type(last_error).__name__, attempt + 1, self.attempts, delay,
                    )
                    await asyncio.sleep(delay)

        logger.error("Giving up on wallet operation for users %s after %d attempts", user_ids, self.attempts)
        raise TryAgain(self.attempts, last_error) from last_error

    async def _attempt(self, user_ids, owner, fn, idempotency, response_model):
        payload = None
        async with self.session_factory() as db:
            async with db.begin():
                if idempotency is not None:
                    record = await db.scalar(
                        select(IdempotencyRecord).where(
                            IdempotencyRecord.user_id == owner,
                            IdempotencyRecord.key == idempotency.key,
                        )
                    )
                    if record is not None:
                        self._check_fingerprint(record.request_hash, idempotency)
                        logger.info("Idempotent replay (db) for user %s key %s", owner, idempotency.key)
                        return response_model.model_validate(record.response)

                wallets = await load_wallets(db, user_ids)
                result = await fn(db, wallets)

                if idempotency is not None:
                    payload = result.model_dump(mode="json")
                    db.add(IdempotencyRecord(
                        user_id=owner,
                        key=idempotency.key,
                        operation=idempotency.operation,
                        request_hash=idempotency.fingerprint,
                        response=payload,
                    ))

        if payload is not None:
            await self._cache_response(owner, idempotency, payload)
        return result

    def _backoff(self, attempt: int) -> float:
        delay = self.base_delay * (2 ** attempt)
        return delay + random.uniform(0, self.base_delay)

    @staticmethod
    def _check_fingerprint(stored_hash: str, idempotency: IdempotencyRequest) -> None:
        if stored_hash != idempotency.fingerprint:
            raise IdempotencyKeyReused(
                f"Idempotency key {idempotency.key!r} was used for a different request"
            )

    @staticmethod
    def _cache_key(owner: int, key: str) -> str:
        return f"idem:{owner}:{key}"

    async def _cached_response(self, owner: int, idempotency: IdempotencyRequest) -> Optional[dict]:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(self._cache_key(owner, idempotency.key))
        except (RedisError, OSError) as e:
            logger.warning("Idempotency cache unavailable, falling back to database: %s", e)
            return None
        if not raw:
            return None
        cached = json.loads(raw)
        self._check_fingerprint(cached["request_hash"], idempotency)
        return cached["response"]

    async def _cache_response(self, owner: int, idempotency: IdempotencyRequest, payload: dict) -> None:
        if self.redis is None:
            return
        value = json.dumps({"request_hash": idempotency.fingerprint, "response": payload})
        try:
            await self.redis.set(self._cache_key(owner, idempotency.key), value, ex=self.idempotency_ttl)
        except (RedisError, OSError) as e:
            logger.warning("Could not cache idempotent response for user %s: %s", owner, e)
