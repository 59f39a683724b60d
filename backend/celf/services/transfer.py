import logging
import uuid
from decimal import Decimal
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from celf.config import settings
from celf.core.exceptions import MalformedAddress, RecipientNotFound, SelfTransfer
from celf.models.transaction import TransactionType
from celf.models.user import User
from celf.models.wallet import Wallet
from celf.schemas.wallet import TransferResult
from celf.services.accounts import EMAIL_RE, is_valid_wallet_address
from celf.services.ledger import DraftTransaction, append_transaction, snapshot, to_amount
from celf.services.wallet_guard import IdempotencyRequest, WalletGuard

logger = logging.getLogger(__name__)


async def resolve_recipient(db: AsyncSession, to: str) -> Wallet:
    """Find the recipient wallet by address, numeric user id or e-mail."""
    to = (to or "").strip()
    if is_valid_wallet_address(to.lower()):
        stmt = select(Wallet).where(Wallet.current_address == to.lower())
    elif to.isdigit():
        stmt = select(Wallet).where(Wallet.user_id == int(to))
    elif EMAIL_RE.match(to):
        stmt = select(Wallet).join(User, User.id == Wallet.user_id).where(User.email == to.lower())
    else:
        raise MalformedAddress()

    wallet = await db.scalar(stmt)
    if wallet is None:
        raise RecipientNotFound()
    return wallet


async def transfer(
    guard: WalletGuard,
    from_user_id: int,
    to: str,
    amount,
    memo: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> TransferResult:
    """Move sendable balance from one wallet to another.

    Writes a ``send`` row for the sender and a ``receive`` row for the
    recipient in one database transaction.
    """
    amount = to_amount(amount)
    fee = Decimal(settings.TRANSFER_FEE)

    async with guard.session_factory() as db:
        recipient = await resolve_recipient(db, to)
        recipient_id, recipient_address = recipient.user_id, recipient.current_address
    if recipient_id == from_user_id:
        raise SelfTransfer()

    transfer_ref = f"transfer:{uuid.uuid4()}"

    async def _transfer(db, wallets):
        send_tx = await append_transaction(db, DraftTransaction(
            type=TransactionType.send,
            amount=amount,
            fee=fee,
            from_user_id=from_user_id,
            to_user_id=recipient_id,
            to_address=recipient_address,
            source_ref=transfer_ref,
            description=memo,
        ), wallets)
        receive_tx = await append_transaction(db, DraftTransaction(
            type=TransactionType.receive,
            amount=amount,
            from_user_id=from_user_id,
            to_user_id=recipient_id,
            to_address=recipient_address,
            source_ref=transfer_ref,
            description=memo,
        ), wallets)
        logger.info("Transfer %s: %s CELF from user %s to user %s", transfer_ref, amount, from_user_id, recipient_id)
        return TransferResult(
            transaction_id=send_tx.id,
            receive_transaction_id=receive_tx.id,
            amount=amount,
            fee=fee,
            recipient_user_id=recipient_id,
            recipient_address=recipient_address,
            balance=snapshot(wallets[from_user_id]),
        )

    idempotency = None
    if idempotency_key:
        idempotency = IdempotencyRequest(
            idempotency_key, "transfer", {"to": recipient_id, "amount": str(amount), "memo": memo},
        )
    return await guard.run(
        [from_user_id, recipient_id], _transfer,
        idempotency=idempotency, response_model=TransferResult,
    )
