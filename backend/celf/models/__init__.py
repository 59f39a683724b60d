from celf.models.user import User, UserRole
from celf.models.wallet import Wallet, CELF_QUANTUM, BALANCE_BUCKETS
from celf.models.transaction import Transaction, TransactionType, TransactionStatus
from celf.models.mining import MiningSession, MiningStatus, CompletionMethod
from celf.models.referral import Referral, ReferralStatus
from celf.models.task import Task, UserTask, TaskClaim
from celf.models.idempotency import IdempotencyRecord
