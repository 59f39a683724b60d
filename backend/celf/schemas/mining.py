from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from celf.models.mining import CompletionMethod, MiningStatus
from celf.schemas.wallet import BalanceSnapshot

class MiningSessionView(BaseModel):
    session_id: int
    status: MiningStatus
    started_at: datetime
    mining_rate: Decimal
    max_duration_seconds: int
    elapsed_seconds: int
    remaining_seconds: int
    projected_earnings: Decimal
    server_time: datetime

class StopMiningRequest(BaseModel):
    reported_earnings: Optional[Decimal] = Field(None, ge=0)

class MiningStopResult(BaseModel):
    session_id: int
    tokens_earned: Decimal
    elapsed_seconds: int
    capped: bool
    transaction_id: Optional[int] = None
    balance: BalanceSnapshot

class MiningStats(BaseModel):
    total_sessions: int
    total_mined: Decimal
    is_mining: bool

class MiningSessionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: MiningStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    mining_rate: Decimal
    max_duration_seconds: int
    tokens_earned: Decimal
    capped: bool
    completion_method: Optional[CompletionMethod] = None
    client_reported_earnings: Optional[Decimal] = None
    suspicious: bool
    transaction_id: Optional[int] = None

class MiningSessionPage(BaseModel):
    items: list[MiningSessionRecord]
    page: int
    page_size: int
    total: int

class MiningConfigView(BaseModel):
    mining_rate: Decimal
    max_rate: Decimal
    max_session_seconds: int
    maintenance_mode: bool
    server_time: datetime
