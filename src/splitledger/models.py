"""Pydantic domain models for SplitLedger."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field

from .exceptions import SameUserError

ZERO = Decimal("0.00")
SETTLED_EPSILON = Decimal("0.01")  # abs(amount) below this means settled


def utcnow() -> datetime:
    """Timezone-aware current time, stamped explicitly at each mutation."""
    return datetime.now(UTC)


# ============================================================================
# Enums
# ============================================================================


class SplitType(StrEnum):
    """How an expense total is divided between participants."""

    EQUAL = "EQUAL"
    EXACT = "EXACT"
    PERCENTAGE = "PERCENTAGE"


class ObligationStatus(StrEnum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    SETTLED = "SETTLED"


class SettlementStatus(StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class SettlementMethod(StrEnum):
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    ONLINE = "ONLINE"
    OTHER = "OTHER"


# ============================================================================
# Canonical pair helpers
# ============================================================================


def canonical_pair(user_a: int, user_b: int) -> tuple[int, int]:
    """Order two user ids ascending. Same-user pairs are illegal."""
    if user_a == user_b:
        raise SameUserError(user_a, f"Cannot create balance between same user ({user_a})")
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


def make_balance_id(user_a: int, user_b: int) -> str:
    """Build the storage key for a pair, independent of argument order."""
    low, high = canonical_pair(user_a, user_b)
    return f"{low}_{high}"


# ============================================================================
# Ledger Models
# ============================================================================


class Balance(BaseModel):
    """Running balance for one unordered user pair.

    Sign convention is relative to the canonical order, never to call-site
    argument order: positive amount means user_low owes user_high, negative
    means user_high owes user_low.
    """

    balance_id: str
    user_low: int
    user_high: int
    amount: Decimal = ZERO
    transaction_count: int = 0
    last_obligation_id: int | None = None
    version: int = 0  # 0 = not yet persisted
    created_at: datetime
    last_updated: datetime

    @classmethod
    def for_pair(cls, user_a: int, user_b: int, now: datetime) -> "Balance":
        """Create an empty (implicit zero) balance for a pair."""
        low, high = canonical_pair(user_a, user_b)
        return cls(
            balance_id=f"{low}_{high}",
            user_low=low,
            user_high=high,
            created_at=now,
            last_updated=now,
        )

    def involves(self, user_id: int) -> bool:
        return user_id in (self.user_low, self.user_high)

    def amount_for_user(self, user_id: int) -> Decimal:
        """Signed amount from user_id's perspective (positive = user_id owes)."""
        if user_id == self.user_low:
            return self.amount
        if user_id == self.user_high:
            return -self.amount if self.amount else ZERO
        raise ValueError(f"User {user_id} is not part of balance {self.balance_id}")

    def other_user(self, user_id: int) -> int:
        if user_id == self.user_low:
            return self.user_high
        if user_id == self.user_high:
            return self.user_low
        raise ValueError(f"User {user_id} is not part of balance {self.balance_id}")

    def with_delta(self, delta: Decimal, now: datetime) -> "Balance":
        """Return a copy with delta applied, the count bumped and the time stamped."""
        return self.model_copy(
            update={
                "amount": self.amount + delta,
                "transaction_count": self.transaction_count + 1,
                "last_updated": now,
            }
        )

    def is_settled(self) -> bool:
        return abs(self.amount) < SETTLED_EPSILON

    def describe(self) -> str:
        """Neutral, id-based description of who owes whom."""
        if self.is_settled():
            return f"Users {self.user_low} and {self.user_high} are settled"
        if self.amount > 0:
            return f"User {self.user_low} owes User {self.user_high} ${self.amount}"
        return f"User {self.user_high} owes User {self.user_low} ${abs(self.amount)}"


class BalanceView(BaseModel):
    """A pair balance seen from one user's side, with names resolved."""

    balance_id: str | None
    user_id: int
    user_name: str
    other_user_id: int
    other_user_name: str
    amount: Decimal  # positive = user_id owes other_user_id
    description: str
    is_settled: bool
    transaction_count: int = 0
    created_at: datetime | None = None
    last_updated: datetime | None = None


# ============================================================================
# Expense / Obligation Models
# ============================================================================


class ParticipantInput(BaseModel):
    """One participant of an expense as submitted by the caller."""

    user_id: int
    amount: Decimal | None = None  # EXACT splits
    percentage: Decimal | None = None  # PERCENTAGE splits


class ParticipantShare(BaseModel):
    """A participant's computed share of an expense."""

    user_id: int
    amount: Decimal


class ExpenseRequest(BaseModel):
    """A request to record one expense split across participants."""

    paid_by: int
    participants: list[ParticipantInput]
    total_amount: Decimal
    description: str
    category: str | None = None
    split_type: SplitType = SplitType.EQUAL
    transaction_date: datetime | None = None
    notes: str | None = None


class Obligation(BaseModel):
    """One participant's share of an expense, owed to the payer.

    Obligations sharing a group_id were produced by the same expense.
    """

    id: int | None = None
    paid_by: int
    owed_by: int
    amount: Decimal
    total_amount: Decimal
    description: str
    category: str | None = None
    group_id: str
    split_type: SplitType
    status: ObligationStatus = ObligationStatus.ACTIVE
    notes: str | None = None
    transaction_date: datetime
    created_by: int
    created_at: datetime
    updated_at: datetime

    def involves(self, user_id: int) -> bool:
        return user_id in (self.paid_by, self.owed_by, self.created_by)


class ObligationView(Obligation):
    """Obligation with display names resolved."""

    paid_by_name: str
    owed_by_name: str
    created_by_name: str


# ============================================================================
# Settlement Models
# ============================================================================


class SettlementRequest(BaseModel):
    """A request to record a payment that reduces payer's debt to payee."""

    payer_id: int
    payee_id: int
    amount: Decimal
    method: SettlementMethod = SettlementMethod.CASH
    description: str | None = None
    notes: str | None = None
    reference_id: str | None = None  # External reference (e.g. bank transfer id)
    settlement_date: datetime | None = None


class Settlement(BaseModel):
    """A recorded settlement payment. Immutable once completed."""

    id: int | None = None
    payer_id: int
    payee_id: int
    amount: Decimal
    description: str | None = None
    method: SettlementMethod = SettlementMethod.CASH
    status: SettlementStatus = SettlementStatus.COMPLETED
    balance_id: str
    settlement_date: datetime
    created_by: int
    notes: str | None = None
    reference_id: str | None = None
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Optimization / Reporting Models
# ============================================================================


class SuggestedPayment(BaseModel):
    """A direct payment proposed by the debt netting optimizer."""

    from_user_id: int
    to_user_id: int
    amount: Decimal
    from_user_name: str | None = None
    to_user_name: str | None = None


class GroupOptimization(BaseModel):
    """Result of netting out a group's debts."""

    user_ids: list[int]
    net_positions: dict[int, Decimal] = Field(default_factory=dict)
    suggested_payments: list[SuggestedPayment]
    total_optimized_amount: Decimal
    original_transaction_count: int
    optimized_transaction_count: int
    optimization_summary: str


class UserBalanceSummary(BaseModel):
    """Totals across every pair and settlement touching one user."""

    user_id: int
    user_name: str
    total_owed: Decimal  # what the user owes others
    total_owed_to: Decimal  # what others owe the user
    net_balance: Decimal  # owed_to - owed
    active_balance_count: int
    total_paid: Decimal  # completed settlements paid
    total_received: Decimal  # completed settlements received


class LedgerStats(BaseModel):
    """Ledger-wide statistics."""

    active_balances: int
    total_outstanding_amount: Decimal
    total_settlements: int
    total_settled_amount: Decimal


class ObligationSummary(BaseModel):
    """Totals across one user's active obligation records."""

    user_id: int
    user_name: str
    total_paid: Decimal  # shares of expenses the user paid for, own share included
    total_owed: Decimal  # shares the user owes, own share included
    net_balance: Decimal  # paid - owed
    obligation_count: int  # every status
    last_transaction_date: datetime | None = None


class ObligationStats(BaseModel):
    """Count and volume of active obligations."""

    total_obligations: int
    total_volume: Decimal
    average_amount: Decimal
