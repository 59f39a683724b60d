from decimal import Decimal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    DATABASE_URL: str
    REDIS_URL: str
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440
    LOG_LEVEL: str = "INFO"

    # Comma separated list of admin e-mails
    ADMIN_EMAILS: str = ""

    # Mining (tokens per hour)
    MINING_DEFAULT_RATE: Decimal = Decimal("1.0")
    MINING_MAX_RATE: Decimal = Decimal("10.0")
    MINING_MAX_SESSION_HOURS: int = 24
    MINING_MAINTENANCE_MODE: bool = False
    MINING_AUTO_COMPLETE_INTERVAL_MINUTES: int = 5
    MINING_CLIENT_TOLERANCE: Decimal = Decimal("0.1")

    # Transfers / exchange
    # Flat fee debited from the sender on top of the amount. It is burned:
    # no wallet is credited, so the system total shrinks by the fee.
    TRANSFER_FEE: Decimal = Decimal("0")
    EXCHANGE_DAILY_LIMIT: Decimal = Decimal("0")  # 0 = unlimited

    # Rewards
    REFERRER_REWARD: Decimal = Decimal("5")
    REFEREE_REWARD: Decimal = Decimal("5")
    WELCOME_BONUS: Decimal = Decimal("0")

    # Concurrency guard
    LOCK_RETRY_ATTEMPTS: int = 5
    LOCK_RETRY_BASE_DELAY: float = 0.05
    IDEMPOTENCY_TTL_SECONDS: int = 86400

    RECONCILE_AUDIT_HOUR: int = 3

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v):
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @property
    def admin_emails(self) -> set[str]:
        return {e.strip().lower() for e in self.ADMIN_EMAILS.split(",") if e.strip()}

settings = Settings()
