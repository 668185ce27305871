"""
Request and response models for the funding engine HTTP API.
Amounts are integers in the smallest currency unit; prices carry the feed's
decimals; timestamps are Unix seconds.
"""

from pydantic import BaseModel, field_validator, ConfigDict
from typing import Optional, List, Dict, Any

from ..core.schema import PriceStatus, RoundStatus, VaultStatus


class VaultCreateRequest(BaseModel):
    beneficiary: str
    target_amount: int
    metadata: str = ""
    study_duration: int = 0

    @field_validator('beneficiary')
    @classmethod
    def beneficiary_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('beneficiary cannot be empty')
        return v.strip()


class InvestRequest(BaseModel):
    investor: str
    amount: int

    @field_validator('investor')
    @classmethod
    def investor_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('investor cannot be empty')
        return v.strip()


class CloseVaultRequest(BaseModel):
    reason: str = "administrative"


class ClaimRequest(BaseModel):
    investor: str
    kind: str

    @field_validator('kind')
    @classmethod
    def kind_must_be_valid(cls, v):
        valid_kinds = ['reward', 'return']
        if v not in valid_kinds:
            raise ValueError(f'kind must be one of: {valid_kinds}')
        return v


class ScheduleCreateRequest(BaseModel):
    total_months: Optional[int] = None


class UpkeepRequest(BaseModel):
    data: str = ""


class PriceObserveRequest(BaseModel):
    price: int
    timestamp: Optional[int] = None


class LotteryEnterRequest(BaseModel):
    vault_id: int


class LotteryResolveRequest(BaseModel):
    random_value: int
    round_id: Optional[int] = None

    @field_validator('random_value')
    @classmethod
    def random_value_must_be_unsigned(cls, v):
        if v < 0:
            raise ValueError('random_value must be non-negative')
        return v


class VaultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    beneficiary: str
    target_amount: int
    total_deposited: int
    remaining_capacity: int
    metadata: str
    study_duration: int
    status: VaultStatus
    is_active: bool
    created_at: int
    closed_at: Optional[int] = None


class VaultListResponse(BaseModel):
    vaults: List[VaultResponse]


class PositionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    vault_id: int
    investor: str
    amount_deposited: int
    first_deposit_at: int
    last_deposit_at: int
    last_reward_claim: Optional[int] = None
    last_return_claim: Optional[int] = None


class PositionListResponse(BaseModel):
    positions: List[PositionResponse]
    total: int


class DepositResponse(BaseModel):
    vault: VaultResponse
    position: PositionResponse
    requested_amount: int
    credited_amount: int
    multiplier: int


class CapacityResponse(BaseModel):
    vault_id: int
    remaining_capacity: int


class ScheduleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    vault_id: int
    monthly_amount: int
    total_months: int
    paid_months: int
    next_payment_due: int
    total_owed: int
    total_paid: int
    is_active: bool
    created_at: int


class ScheduleStatusResponse(BaseModel):
    schedule: ScheduleResponse
    remaining_owed: int
    is_due: bool
    overdue_periods: int


class ActiveSchedulesResponse(BaseModel):
    vault_ids: List[int]


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    vault_id: int
    month: int
    amount: int
    due_at: int
    paid_at: int


class PaymentListResponse(BaseModel):
    payments: List[PaymentResponse]


class UpkeepCheckResponse(BaseModel):
    upkeep_needed: bool
    perform_data: str


class UpkeepPerformResponse(BaseModel):
    processed: List[PaymentResponse]


class VaultUpkeepResponse(BaseModel):
    vault_id: int
    upkeep_needed: bool


class PriceStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    last_observed_price: Optional[int] = None
    last_update_timestamp: Optional[int] = None
    current_multiplier: int
    status: PriceStatus


class SimulateResponse(BaseModel):
    adjusted_amount: int
    multiplier: int
    price_status: PriceStatus


class FeedInfoResponse(BaseModel):
    feed_address: str
    latest_price: Optional[int] = None
    last_update: Optional[int] = None
    decimals: int
    multiplier: int


class LotteryRoundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    round_id: int
    status: RoundStatus
    participants: List[int]
    participant_count: int
    prize_pool: int
    is_active: bool
    started_at: int
    winner: Optional[int] = None
    random_value: Optional[int] = None
    resolved_at: Optional[int] = None


class ParticipantsResponse(BaseModel):
    round_id: int
    participants: List[int]


class EligibilityResponse(BaseModel):
    vault_id: int
    eligible: bool
    reason: str
    entry_fee: int


class EventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    vault_id: Optional[int] = None
    round_id: Optional[int] = None
    payload: Dict[str, Any]
    ts: int


class EventListResponse(BaseModel):
    events: List[EventResponse]


class ErrorResponse(BaseModel):
    error_type: str
    message: str


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    network_id: int
