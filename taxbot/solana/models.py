"""
Models for the reward cycle.
"""

from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from taxbot.solana.errors import InvalidTransition


class CycleStatus(str, Enum):
    """Status of a reward cycle. Declaration order is the only allowed direction of travel."""
    PENDING = "pending"
    HARVESTING = "harvesting"
    SWAPPING = "swapping"
    DISTRIBUTING = "distributing"
    COMMITTED = "committed"
    FAILED = "failed"


_STATUS_ORDER = {
    CycleStatus.PENDING: 0,
    CycleStatus.HARVESTING: 1,
    CycleStatus.SWAPPING: 2,
    CycleStatus.DISTRIBUTING: 3,
    CycleStatus.COMMITTED: 4,
}

TERMINAL_STATUSES = (CycleStatus.COMMITTED, CycleStatus.FAILED)


class PayoutStatus(str, Enum):
    """Delivery status of a single holder payout."""
    PENDING = "pending"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class HolderSnapshot(BaseModel):
    """Holder balances captured for one cycle. Immutable once taken."""
    model_config = ConfigDict(frozen=True)

    cycle_sequence: int
    taken_at: datetime = Field(default_factory=datetime.now)
    balances: Tuple[Tuple[str, int], ...]
    total: int

    @model_validator(mode="before")
    @classmethod
    def collect_holders(cls, data: Any) -> Any:
        # Accept holders={owner: balance} and store it as sorted pairs
        if isinstance(data, dict) and "holders" in data:
            data = dict(data)
            data["balances"] = tuple(sorted(data.pop("holders").items()))
        return data

    @model_validator(mode="after")
    def check_total(self):
        if any(balance <= 0 for _owner, balance in self.balances):
            raise ValueError("snapshot balances must be positive")
        if self.total != sum(balance for _owner, balance in self.balances):
            raise ValueError("snapshot total must equal the sum of holder balances")
        return self

    @property
    def holders(self) -> Mapping[str, int]:
        """Read-only owner to balance view."""
        return MappingProxyType(dict(self.balances))


class Payout(BaseModel):
    """A reward transfer to one holder."""
    address: str
    amount: int
    status: PayoutStatus = PayoutStatus.PENDING
    signature: Optional[str] = None
    last_valid_block_height: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def is_settled(self) -> bool:
        return self.status in (PayoutStatus.CONFIRMED, PayoutStatus.FAILED)


class PendingSwap(BaseModel):
    """An in-progress swap. Only present while the cycle is swapping."""
    amount_in: int
    min_out: int
    expected_out: int
    quote_reference: Optional[str] = None
    retry_count: int = 0
    signature: Optional[str] = None
    last_valid_block_height: Optional[int] = None


class RetryPolicy(BaseModel):
    """Bounded retry with exponential backoff for remote calls."""
    max_attempts: int = 3
    base_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    timeout: Optional[float] = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        delay = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay)


class Cycle(BaseModel):
    """One scheduled harvest, swap and distribute run."""
    sequence: int
    started_at: datetime = Field(default_factory=datetime.now)
    status: CycleStatus = CycleStatus.PENDING
    finished_at: Optional[datetime] = None
    retry_of: Optional[int] = None

    # Harvest stage
    snapshot: Optional[HolderSnapshot] = None
    treasury_balance_before: Optional[int] = None
    withdraw_signature: Optional[str] = None
    withdraw_last_valid_block_height: Optional[int] = None
    harvested_amount: Optional[int] = None
    harvest_failed_accounts: List[str] = Field(default_factory=list)

    # Swap stage
    reward_balance_before: Optional[int] = None
    swap_amount_in: Optional[int] = None
    pending_swap: Optional[PendingSwap] = None
    swap_signature: Optional[str] = None
    swapped_amount: Optional[int] = None

    # Distribution stage
    payouts: List[Payout] = Field(default_factory=list)
    distributable_amount: Optional[int] = None
    remainder_amount: int = 0
    failed_carry_amount: int = 0

    failure_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def carried_amount(self) -> int:
        """Reward units left in the treasury for the next cycle."""
        return self.remainder_amount + self.failed_carry_amount

    def advance(self, status: CycleStatus) -> None:
        """
        Move the cycle to a later status.

        Args:
            status: Target status

        Raises:
            InvalidTransition: If the cycle is terminal or the target is not ahead
        """
        if self.is_terminal:
            raise InvalidTransition(
                f"Cycle {self.sequence} is {self.status.value} and cannot move to {status.value}"
            )
        if status != CycleStatus.FAILED and _STATUS_ORDER[status] <= _STATUS_ORDER[self.status]:
            raise InvalidTransition(
                f"Cycle {self.sequence} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if self.is_terminal:
            self.finished_at = datetime.now()

    def fail(self, reason: str) -> None:
        """Mark the cycle Failed with a reason for the operator."""
        self.advance(CycleStatus.FAILED)
        self.failure_reason = reason
