"""
Ledger error taxonomy.

Every error carries a stable ``code`` and the HTTP status the API maps it
to. Validation and state-conflict errors are raised before anything is
committed, so callers can rely on "nothing changed" when they see one.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all wallet ledger errors."""

    code = "ledger_error"
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Validation (400): rejected before any mutation
# ---------------------------------------------------------------------------

class ValidationError(LedgerError):
    code = "validation_error"
    status_code = 400


class InvalidAmount(ValidationError):
    """Amount must be a positive, finite number"""

    code = "invalid_amount"


class SelfTransfer(ValidationError):
    """Cannot send tokens to yourself"""

    code = "self_transfer"


class MalformedAddress(ValidationError):
    """Recipient must be a wallet address, user id or e-mail"""

    code = "malformed_address"


class IdempotencyKeyReused(ValidationError):
    """Idempotency key was already used for a different request"""

    code = "idempotency_key_reused"


class InvalidReferral(ValidationError):
    """Referral is not allowed"""

    code = "invalid_referral"


# ---------------------------------------------------------------------------
# Not found (404)
# ---------------------------------------------------------------------------

class NotFoundError(LedgerError):
    code = "not_found"
    status_code = 404


class WalletNotFound(NotFoundError):
    """Wallet not found"""

    code = "wallet_not_found"


class RecipientNotFound(NotFoundError):
    """Recipient wallet not found"""

    code = "recipient_not_found"


class ReferralNotFound(NotFoundError):
    """Referral not found"""

    code = "referral_not_found"


class TaskNotFound(NotFoundError):
    """Task not found"""

    code = "task_not_found"


class TransactionNotFound(NotFoundError):
    """Transaction not found"""

    code = "transaction_not_found"


class MiningSessionNotFound(NotFoundError):
    """Mining session not found"""

    code = "mining_session_not_found"


# ---------------------------------------------------------------------------
# State conflicts (409): business rule rejections, never retried
# ---------------------------------------------------------------------------

class StateConflictError(LedgerError):
    code = "state_conflict"
    status_code = 409


class InsufficientFunds(StateConflictError):
    """Insufficient balance"""

    code = "insufficient_funds"

    def __init__(self, bucket: str, available, requested):
        self.bucket = bucket
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient {bucket} balance (available: {available}, requested: {requested})")


class WalletLocked(StateConflictError):
    """Wallet is locked"""

    code = "wallet_locked"


class AlreadyMining(StateConflictError):
    """User already has an active mining session"""

    code = "already_mining"


class NotMining(StateConflictError):
    """No active mining session"""

    code = "not_mining"


class MiningUnavailable(StateConflictError):
    """Mining is currently in maintenance mode"""

    code = "mining_unavailable"


class RewardNotEligible(StateConflictError):
    """Reward is not eligible for claiming yet"""

    code = "reward_not_eligible"


class ExchangeLimitExceeded(StateConflictError):
    """Daily exchange limit exceeded"""

    code = "exchange_limit_exceeded"


# ---------------------------------------------------------------------------
# Concurrency (503): surfaced only after the guard's own retries
# ---------------------------------------------------------------------------

class ConcurrencyConflictError(LedgerError):
    code = "concurrency_conflict"
    status_code = 503


class TryAgain(ConcurrencyConflictError):
    """Wallet is busy, please try again"""

    code = "try_again"

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Wallet is busy after {attempts} attempts, please try again")


class ImmutableTransactionError(RuntimeError):
    """Raised when code tries to modify a finalized transaction."""
