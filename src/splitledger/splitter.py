"""Split calculator: turns an expense total into per-participant shares."""

import logging
from decimal import ROUND_HALF_UP, Decimal

from .exceptions import InvalidSplitError
from .models import ParticipantInput, ParticipantShare, SplitType

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def round_money(amount: Decimal) -> Decimal:
    """
    Quantize a Decimal amount to cents.
    Uses ROUND_HALF_UP for consistency.

    Args:
        amount: Amount as Decimal

    Returns:
        Amount rounded to 2 decimal places
    """
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_shares(
    total_amount: Decimal,
    paid_by: int,
    participants: list[ParticipantInput],
    split_type: SplitType,
) -> list[ParticipantShare]:
    """
    Compute each participant's share of an expense.

    Policies:
    - EQUAL: total / n per participant, each rounded half-up to cents. The
      rounding remainder is NOT redistributed, so shares may sum to the total
      plus or minus up to (n - 1) cents.
    - EXACT: the provided amounts, used verbatim. They must sum to the total.
    - PERCENTAGE: total * pct / 100, rounded half-up to cents. Percentages
      must sum to exactly 100.

    Args:
        total_amount: Expense total (must be positive)
        paid_by: User who paid (used for logging only, the payer's own share
                 is still emitted)
        participants: Ordered participant list
        split_type: Split policy

    Returns:
        One share per participant, in input order

    Raises:
        InvalidSplitError: If the split cannot be computed
    """
    if not participants:
        raise InvalidSplitError("At least one participant is required")
    if total_amount <= 0:
        raise InvalidSplitError(f"Total amount must be positive, got {total_amount}")

    if split_type == SplitType.EQUAL:
        shares = _equal_shares(total_amount, participants)
    elif split_type == SplitType.EXACT:
        shares = _exact_shares(total_amount, participants)
    elif split_type == SplitType.PERCENTAGE:
        shares = _percentage_shares(total_amount, participants)
    else:
        raise InvalidSplitError(f"Unknown split type: {split_type}")

    emitted = sum((s.amount for s in shares), Decimal("0"))
    if emitted != total_amount:
        logger.debug(
            f"Split of {total_amount} paid by {paid_by} emits {emitted} "
            f"({split_type}, {len(shares)} participants)"
        )

    return shares


def _equal_shares(
    total_amount: Decimal, participants: list[ParticipantInput]
) -> list[ParticipantShare]:
    share = round_money(total_amount / Decimal(len(participants)))
    return [ParticipantShare(user_id=p.user_id, amount=share) for p in participants]


def _exact_shares(
    total_amount: Decimal, participants: list[ParticipantInput]
) -> list[ParticipantShare]:
    shares = []
    for p in participants:
        if p.amount is None:
            raise InvalidSplitError(
                f"Participant {p.user_id} needs an amount for exact splits"
            )
        if p.amount < 0:
            raise InvalidSplitError(
                f"Participant {p.user_id} has a negative amount ({p.amount})"
            )
        shares.append(ParticipantShare(user_id=p.user_id, amount=p.amount))

    specified = sum((s.amount for s in shares), Decimal("0"))
    if specified != total_amount:
        raise InvalidSplitError(
            f"Sum of individual amounts ({specified}) must equal "
            f"total amount ({total_amount}) for exact splits"
        )
    return shares


def _percentage_shares(
    total_amount: Decimal, participants: list[ParticipantInput]
) -> list[ParticipantShare]:
    for p in participants:
        if p.percentage is None:
            raise InvalidSplitError(
                f"Participant {p.user_id} needs a percentage for percentage splits"
            )
        if p.percentage < 0:
            raise InvalidSplitError(
                f"Participant {p.user_id} has a negative percentage ({p.percentage})"
            )

    total_percentage = sum((p.percentage for p in participants), Decimal("0"))
    if total_percentage != HUNDRED:
        raise InvalidSplitError(
            f"Percentages must sum up to 100% for percentage splits "
            f"(got {total_percentage}%)"
        )

    return [
        ParticipantShare(
            user_id=p.user_id,
            amount=round_money(total_amount * p.percentage / HUNDRED),
        )
        for p in participants
    ]
