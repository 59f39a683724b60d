"""Account provisioning: users, wallets, addresses and referral codes."""

import hashlib
import logging
import re
import secrets
from decimal import Decimal
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from celf.config import settings
from celf.core.clock import utcnow
from celf.core.exceptions import InvalidReferral, ValidationError
from celf.models.referral import Referral, ReferralStatus
from celf.models.user import User, UserRole
from celf.models.wallet import Wallet

logger = logging.getLogger(__name__)

ADDRESS_PREFIX = "celf"
ADDRESS_RE = re.compile(r"^celf[0-9a-f]{40}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def generate_wallet_address(user_id: int, email: str) -> str:
    seed = f"{user_id}{email}{utcnow().timestamp()}{secrets.token_hex(16)}"
    return ADDRESS_PREFIX + hashlib.sha256(seed.encode()).hexdigest()[:40]


def is_valid_wallet_address(address: str) -> bool:
    return bool(ADDRESS_RE.match(address or ""))


def generate_referral_code() -> str:
    return "CELF" + secrets.token_hex(3).upper()


async def open_wallet(db: AsyncSession, user: User) -> Wallet:
    wallet = Wallet(
        user_id=user.id,
        current_address=generate_wallet_address(user.id, user.email),
        sendable_balance=Decimal("0"),
        non_sendable_balance=Decimal("0"),
        pending_balance=Decimal("0"),
        total_balance=Decimal("0"),
    )
    db.add(wallet)
    await db.flush()
    return wallet


async def register_referral(db: AsyncSession, referrer_id: int, referee_id: int,
                            referral_code: str) -> Referral:
    """Record that ``referee_id`` signed up with ``referrer_id``'s code."""
    if referrer_id == referee_id:
        raise InvalidReferral("Cannot refer yourself")
    existing = await db.scalar(select(Referral).where(Referral.referee_id == referee_id))
    if existing:
        raise InvalidReferral("User was already referred")

    referral = Referral(
        referrer_id=referrer_id,
        referee_id=referee_id,
        referral_code=referral_code,
        status=ReferralStatus.completed,
        reward_amount=Decimal(settings.REFERRER_REWARD),
        referee_reward_amount=Decimal(settings.REFEREE_REWARD),
    )
    db.add(referral)
    await db.flush()
    logger.info("Referral %s registered: %s -> %s", referral.id, referrer_id, referee_id)
    return referral


async def provision_user(db: AsyncSession, email: str,
                         referral_code: Optional[str] = None) -> tuple[User, Wallet, Optional[Referral]]:
    """Create a user with an empty wallet, optionally linked to a referrer."""
    email = email.strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid e-mail address")
    if await db.scalar(select(User).where(User.email == email)):
        raise ValidationError("E-mail already registered")

    referrer = None
    if referral_code:
        referrer = await db.scalar(select(User).where(User.referral_code == referral_code.upper()))
        if referrer is None:
            raise InvalidReferral("Unknown referral code")

    role = UserRole.admin if email in settings.admin_emails else UserRole.user
    user = User(
        email=email,
        role=role,
        referral_code=generate_referral_code(),
        referred_by=referrer.id if referrer else None,
    )
    db.add(user)
    await db.flush()
    wallet = await open_wallet(db, user)

    referral = None
    if referrer is not None:
        referral = await register_referral(db, referrer.id, user.id, referrer.referral_code)

    logger.info("Provisioned user %s (%s) with wallet %s", user.id, role.value, wallet.current_address)
    return user, wallet, referral
