"""Settlement validation and application."""

import logging
from decimal import Decimal

from .db import Database, UnitOfWork
from .exceptions import (
    BelowMinimumError,
    ExceedsDebtError,
    NoDebtError,
    NotFoundError,
    PermissionDeniedError,
    SameUserError,
)
from .ledger import PairwiseLedger
from .models import (
    Settlement,
    SettlementRequest,
    SettlementStatus,
    make_balance_id,
    utcnow,
)

logger = logging.getLogger(__name__)


class SettlementApplier:
    """Validates settlement requests and applies them to the ledger."""

    def __init__(
        self,
        db: Database,
        ledger: PairwiseLedger,
        min_settlement_amount: Decimal = Decimal("0.01"),
    ):
        self.db = db
        self.ledger = ledger
        self.min_settlement_amount = min_settlement_amount

    def create_settlement(
        self, request: SettlementRequest, created_by: int
    ) -> Settlement:
        """
        Record a payment from payer to payee and reduce the pair balance.

        Input checks run before anything is read. The debt checks run inside
        the same unit of work as the write, under the pair lock, so two
        settlements racing for one debt cannot both pass against the same
        outstanding amount.

        Args:
            request: Settlement to record
            created_by: Verified id of the calling user

        Returns:
            The persisted settlement with its id

        Raises:
            SameUserError: Payer and payee are the same user
            BelowMinimumError: Amount is below the minimum settlement
            PermissionDeniedError: Caller is neither payer nor payee
            NoDebtError: Payer does not owe payee anything
            ExceedsDebtError: Amount is larger than what payer owes
            ConflictError: The pair kept conflicting after retries
        """
        payer_id, payee_id = request.payer_id, request.payee_id
        if payer_id == payee_id:
            raise SameUserError(payer_id)
        if request.amount < self.min_settlement_amount:
            raise BelowMinimumError(
                request.amount,
                self.min_settlement_amount,
                f"Settlement amount must be at least ${self.min_settlement_amount}",
            )
        if created_by not in (payer_id, payee_id):
            raise PermissionDeniedError(
                "You can only create settlements for transactions you're involved in"
            )

        def work(uow: UnitOfWork) -> Settlement:
            balance = uow.get_balance(make_balance_id(payer_id, payee_id))
            owed = balance.amount_for_user(payer_id) if balance else Decimal("0")
            if owed <= 0:
                raise NoDebtError(payer_id, payee_id)
            if request.amount > owed:
                raise ExceedsDebtError(request.amount, owed)

            now = utcnow()
            settlement = uow.insert_settlement(
                Settlement(
                    payer_id=payer_id,
                    payee_id=payee_id,
                    amount=request.amount,
                    description=request.description,
                    method=request.method,
                    status=SettlementStatus.COMPLETED,
                    balance_id=make_balance_id(payer_id, payee_id),
                    settlement_date=request.settlement_date or now,
                    created_by=created_by,
                    notes=request.notes,
                    reference_id=request.reference_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            self.ledger.apply_settlement_delta(
                payer_id, payee_id, request.amount, uow=uow
            )
            return settlement

        settlement = self.ledger.run_atomic([(payer_id, payee_id)], work)
        logger.info(
            f"Settlement {settlement.id}: User {payer_id} paid User {payee_id} "
            f"${settlement.amount} ({settlement.method})"
        )
        return settlement

    def get_settlement(self, settlement_id: int) -> Settlement:
        settlement = self.db.get_settlement(settlement_id)
        if settlement is None:
            raise NotFoundError(f"Settlement {settlement_id} not found")
        return settlement

    def get_user_settlements(self, user_id: int) -> list[Settlement]:
        """Settlements paid or received by a user, newest first."""
        return self.db.get_settlements_for_user(user_id)

    def get_settlements_between(self, user_a: int, user_b: int) -> list[Settlement]:
        """Settlements between two users in either direction, newest first."""
        if user_a == user_b:
            return []
        return self.db.get_settlements_for_balance(make_balance_id(user_a, user_b))
