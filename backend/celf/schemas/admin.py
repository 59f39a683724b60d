from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field

class ProvisionUserRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    referral_code: Optional[str] = Field(None, max_length=16)

class ProvisionUserResponse(BaseModel):
    user_id: int
    address: str
    referral_code: str
    referred_by: Optional[int] = None

class LockWalletRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=255)

class CreateTaskRequest(BaseModel):
    task_key: str = Field(min_length=1, max_length=64)
    title: str = Field(min_length=1, max_length=200)
    reward: Decimal = Field(gt=0)

class CompleteTaskRequest(BaseModel):
    user_id: int
