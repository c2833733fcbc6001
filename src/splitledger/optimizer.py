"""Debt netting optimizer.

Turns a group's net positions into a short list of direct payments using
greedy largest-magnitude matching.
"""

import logging
from decimal import Decimal

from .exceptions import TooFewUsersError
from .models import GroupOptimization, SuggestedPayment
from .splitter import round_money

logger = logging.getLogger(__name__)

MIN_GROUP_SIZE = 3


def generate_optimized_payments(
    net_positions: dict[int, Decimal], threshold: Decimal = Decimal("0.01")
) -> list[SuggestedPayment]:
    """
    Match debtors to creditors, largest magnitudes first.

    Debtors (position < -threshold) are sorted ascending, creditors
    (position > threshold) descending. Both sorts are stable, so ties keep
    the order of net_positions. Each step pays min(|debtor|, creditor) and
    moves past whichever side dropped to the threshold or below.

    Args:
        net_positions: Net position per user (positive = net creditor)
        threshold: Magnitudes at or below this count as settled

    Returns:
        Suggested payments in emission order
    """
    debtors = sorted(
        ([user_id, pos] for user_id, pos in net_positions.items() if pos < -threshold),
        key=lambda entry: entry[1],
    )
    creditors = sorted(
        ([user_id, pos] for user_id, pos in net_positions.items() if pos > threshold),
        key=lambda entry: -entry[1],
    )

    payments: list[SuggestedPayment] = []
    i = j = 0
    while i < len(debtors) and j < len(creditors):
        debtor, creditor = debtors[i], creditors[j]
        payment = min(abs(debtor[1]), creditor[1])

        if payment > threshold:
            payments.append(
                SuggestedPayment(
                    from_user_id=debtor[0],
                    to_user_id=creditor[0],
                    amount=round_money(payment),
                )
            )

        debtor[1] += payment
        creditor[1] -= payment

        if abs(debtor[1]) <= threshold:
            i += 1
        if abs(creditor[1]) <= threshold:
            j += 1

    return payments


def optimize(
    net_positions: dict[int, Decimal],
    threshold: Decimal = Decimal("0.01"),
    original_transaction_count: int = 0,
) -> GroupOptimization:
    """
    Net out a group's debts.

    Args:
        net_positions: Net position per user (positive = net creditor)
        threshold: Magnitudes at or below this count as settled
        original_transaction_count: Active pair balances before netting

    Returns:
        The optimization result with suggested payments and totals

    Raises:
        TooFewUsersError: Fewer than three distinct users
    """
    if len(net_positions) < MIN_GROUP_SIZE:
        raise TooFewUsersError(len(net_positions), MIN_GROUP_SIZE)

    payments = generate_optimized_payments(net_positions, threshold)
    total = sum((p.amount for p in payments), Decimal("0.00"))

    logger.info(
        f"Optimized {len(net_positions)} users: {original_transaction_count} "
        f"balances -> {len(payments)} payments (${total})"
    )

    return GroupOptimization(
        user_ids=list(net_positions),
        net_positions=dict(net_positions),
        suggested_payments=payments,
        total_optimized_amount=total,
        original_transaction_count=original_transaction_count,
        optimized_transaction_count=len(payments),
        optimization_summary=(
            f"Reduced from {original_transaction_count} potential transactions "
            f"to {len(payments)} optimized payments"
        ),
    )
