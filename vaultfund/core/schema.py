"""
Named record types for every persisted entity.
Rows are decoded into these once, at the storage boundary.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional


class VaultStatus(str, Enum):
    CREATED = "created"
    FUNDING = "funding"
    FUNDED = "funded"
    ACTIVE = "active"
    CLOSED = "closed"


class RoundStatus(str, Enum):
    OPEN = "open"
    RESOLVING = "resolving"
    RESOLVED = "resolved"


class PriceStatus(str, Enum):
    ABOVE_PEG = "ABOVE_PEG"
    BELOW_PEG = "BELOW_PEG"
    STABLE = "STABLE"
    NO_DATA = "NO_DATA"


@dataclass
class Vault:
    id: int
    beneficiary: str
    target_amount: int
    total_deposited: int
    metadata: str
    study_duration: int
    status: VaultStatus
    is_active: bool
    created_at: int
    closed_at: Optional[int] = None

    @property
    def remaining_capacity(self) -> int:
        return self.target_amount - self.total_deposited

    @classmethod
    def from_row(cls, row) -> 'Vault':
        return cls(
            id=row["id"],
            beneficiary=row["beneficiary"],
            target_amount=row["target_amount"],
            total_deposited=row["total_deposited"],
            metadata=row["metadata"],
            study_duration=row["study_duration"],
            status=VaultStatus(row["status"]),
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            closed_at=row["closed_at"]
        )

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["remaining_capacity"] = self.remaining_capacity
        return data


@dataclass
class InvestorPosition:
    vault_id: int
    investor: str
    amount_deposited: int
    first_deposit_at: int
    last_deposit_at: int
    last_reward_claim: Optional[int] = None
    last_return_claim: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> 'InvestorPosition':
        return cls(
            vault_id=row["vault_id"],
            investor=row["investor"],
            amount_deposited=row["amount_deposited"],
            first_deposit_at=row["first_deposit_at"],
            last_deposit_at=row["last_deposit_at"],
            last_reward_claim=row["last_reward_claim"],
            last_return_claim=row["last_return_claim"]
        )


@dataclass
class RepaymentSchedule:
    vault_id: int
    monthly_amount: int
    total_months: int
    paid_months: int
    next_payment_due: int
    total_owed: int
    total_paid: int
    is_active: bool
    created_at: int

    @property
    def remaining_owed(self) -> int:
        return self.total_owed - self.total_paid

    def next_installment(self) -> int:
        """Amount the next period transfers: the installment, clamped to what is left."""
        return min(self.monthly_amount, self.remaining_owed)

    def is_due(self, now: int) -> bool:
        return self.is_active and now >= self.next_payment_due

    def overdue_periods(self, now: int, period_length: int) -> int:
        """Whole periods elapsed past the current due time (0 when on time)."""
        if not self.is_due(now):
            return 0
        missed = (now - self.next_payment_due) // period_length
        return min(missed, self.total_months - self.paid_months - 1)

    @classmethod
    def from_row(cls, row) -> 'RepaymentSchedule':
        return cls(
            vault_id=row["vault_id"],
            monthly_amount=row["monthly_amount"],
            total_months=row["total_months"],
            paid_months=row["paid_months"],
            next_payment_due=row["next_payment_due"],
            total_owed=row["total_owed"],
            total_paid=row["total_paid"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"]
        )


@dataclass
class RepaymentPayment:
    vault_id: int
    month: int
    amount: int
    due_at: int
    paid_at: int

    @classmethod
    def from_row(cls, row) -> 'RepaymentPayment':
        return cls(
            vault_id=row["vault_id"],
            month=row["month"],
            amount=row["amount"],
            due_at=row["due_at"],
            paid_at=row["paid_at"]
        )


@dataclass
class PriceMultiplierState:
    last_observed_price: Optional[int]
    last_update_timestamp: Optional[int]
    current_multiplier: int
    status: PriceStatus

    @property
    def has_data(self) -> bool:
        return self.last_observed_price is not None


@dataclass
class LotteryRound:
    round_id: int
    status: RoundStatus
    participants: List[int]
    prize_pool: int
    is_active: bool
    started_at: int
    winner: Optional[int] = None
    random_value: Optional[int] = None
    resolved_at: Optional[int] = None

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    @classmethod
    def from_row(cls, row, participants: List[int]) -> 'LotteryRound':
        random_value = row["random_value"]
        return cls(
            round_id=row["id"],
            status=RoundStatus(row["status"]),
            participants=participants,
            prize_pool=row["prize_pool"],
            is_active=bool(row["is_active"]),
            started_at=row["started_at"],
            winner=row["winner_vault_id"],
            random_value=int(random_value) if random_value is not None else None,
            resolved_at=row["resolved_at"]
        )


@dataclass
class EngineEvent:
    id: int
    kind: str
    vault_id: Optional[int]
    round_id: Optional[int]
    payload: Dict = field(default_factory=dict)
    ts: int = 0
