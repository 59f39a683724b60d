from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict
from celf.models.referral import ReferralStatus

class ClaimStatus(str, Enum):
    created = "created"
    already_claimed = "already_claimed"

class ClaimResult(BaseModel):
    status: ClaimStatus
    transaction_id: Optional[int] = None
    amount: Decimal

    @property
    def created(self) -> bool:
        return self.status == ClaimStatus.created

class ReferralView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    referrer_id: int
    referee_id: int
    status: ReferralStatus
    reward_amount: Decimal
    created_at: Optional[datetime] = None
    rewarded_at: Optional[datetime] = None
