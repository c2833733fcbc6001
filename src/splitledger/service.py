"""Service layer that composes the ledger, settlements and the optimizer.

This module provides the operations exposed to the CLI and the MCP server.
Every caller id passed in is assumed to be already authenticated.
"""

import logging
import random
import time
from decimal import Decimal

from .clients.directory import (
    DirectoryClient,
    HttpDirectoryClient,
    resolve_display_name,
)
from .config import Settings
from .db import Database, UnitOfWork
from .exceptions import (
    BelowMinimumError,
    InvalidSplitError,
    InvalidStateError,
    LedgerValidationError,
    NotFoundError,
    PermissionDeniedError,
)
from .ledger import PairwiseLedger, compute_net_positions
from .models import (
    SETTLED_EPSILON,
    ZERO,
    Balance,
    BalanceView,
    ExpenseRequest,
    GroupOptimization,
    LedgerStats,
    Obligation,
    ObligationStats,
    ObligationStatus,
    ObligationSummary,
    ObligationView,
    Settlement,
    SettlementRequest,
    SettlementStatus,
    UserBalanceSummary,
    utcnow,
)
from .optimizer import optimize
from .settlement import SettlementApplier
from .splitter import calculate_shares, round_money

logger = logging.getLogger(__name__)


def generate_group_id() -> str:
    """Group id shared by every obligation of one expense."""
    return f"TXN_{int(time.time() * 1000)}_{random.randint(0, 999)}"


def describe_for_viewer(amount: Decimal, other_name: str) -> str:
    """Describe a balance from the viewer's side (positive = viewer owes)."""
    if abs(amount) < SETTLED_EPSILON:
        return f"Settled with {other_name}"
    if amount > 0:
        return f"You owe {other_name} ${amount}"
    return f"{other_name} owes you ${abs(amount)}"


class LedgerService:
    """Shared-expense ledger operations."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        directory: DirectoryClient | None = None,
    ):
        """Initialize the ledger service."""
        self.settings = settings
        self.db = database
        if directory is None and settings.directory_base_url:
            directory = HttpDirectoryClient(
                settings.directory_base_url, timeout=settings.directory_timeout
            )
        self.directory = directory
        self.ledger = PairwiseLedger.from_settings(database, settings)
        self.settlements = SettlementApplier(
            database, self.ledger, settings.min_settlement_amount
        )

    def close(self):
        """Release the directory client and database connections."""
        if isinstance(self.directory, HttpDirectoryClient):
            self.directory.close()
        self.db.close()

    # ========================================================================
    # Name resolution
    # ========================================================================

    def _name(self, user_id: int) -> str:
        return resolve_display_name(self.directory, user_id)

    def _names(self, user_ids) -> dict[int, str]:
        return {user_id: self._name(user_id) for user_id in dict.fromkeys(user_ids)}

    def _balance_view(
        self,
        balance: Balance | None,
        user_id: int,
        other_user_id: int,
        names: dict[int, str] | None = None,
    ) -> BalanceView:
        names = names or self._names([user_id, other_user_id])
        amount = balance.amount_for_user(user_id) if balance else ZERO
        other_name = names[other_user_id]
        return BalanceView(
            balance_id=balance.balance_id if balance else None,
            user_id=user_id,
            user_name=names[user_id],
            other_user_id=other_user_id,
            other_user_name=other_name,
            amount=amount,
            description=describe_for_viewer(amount, other_name),
            is_settled=abs(amount) < SETTLED_EPSILON,
            transaction_count=balance.transaction_count if balance else 0,
            created_at=balance.created_at if balance else None,
            last_updated=balance.last_updated if balance else None,
        )

    def _obligation_views(self, obligations: list[Obligation]) -> list[ObligationView]:
        names = self._names(
            uid for o in obligations for uid in (o.paid_by, o.owed_by, o.created_by)
        )
        return [
            ObligationView(
                **o.model_dump(),
                paid_by_name=names[o.paid_by],
                owed_by_name=names[o.owed_by],
                created_by_name=names[o.created_by],
            )
            for o in obligations
        ]

    # ========================================================================
    # Expenses
    # ========================================================================

    def _validate_expense(self, request: ExpenseRequest, created_by: int):
        if request.total_amount < self.settings.min_transaction_amount:
            raise BelowMinimumError(
                request.total_amount,
                self.settings.min_transaction_amount,
                f"Amount must be at least ${self.settings.min_transaction_amount}",
            )
        if request.total_amount > self.settings.max_transaction_amount:
            raise InvalidSplitError(
                f"Amount cannot exceed ${self.settings.max_transaction_amount}"
            )

        participant_ids = [p.user_id for p in request.participants]
        if not participant_ids:
            raise InvalidSplitError("At least one participant is required")
        if len(participant_ids) > self.settings.max_participants:
            raise InvalidSplitError(
                f"Cannot have more than {self.settings.max_participants} participants"
            )
        if len(set(participant_ids)) != len(participant_ids):
            raise InvalidSplitError("Each participant can only appear once")
        if request.paid_by not in participant_ids:
            raise InvalidSplitError("Payer must be included in participants")
        if created_by != request.paid_by and created_by not in participant_ids:
            raise PermissionDeniedError(
                "You can only create transactions you're involved in"
            )

    def record_expense(
        self, request: ExpenseRequest, created_by: int
    ) -> list[ObligationView]:
        """
        Split an expense and record one obligation per participant.

        All obligations and their ledger updates commit together. The payer's
        own share is stored for the audit trail but does not touch the ledger.

        Args:
            request: Expense to record
            created_by: Verified id of the calling user

        Returns:
            The recorded obligations, in participant order
        """
        self._validate_expense(request, created_by)

        shares = calculate_shares(
            request.total_amount,
            request.paid_by,
            request.participants,
            request.split_type,
        )
        group_id = generate_group_id()
        pairs = [
            (request.paid_by, s.user_id) for s in shares if s.user_id != request.paid_by
        ]

        def work(uow: UnitOfWork) -> list[Obligation]:
            now = utcnow()
            recorded = []
            for share in shares:
                obligation = uow.insert_obligation(
                    Obligation(
                        paid_by=request.paid_by,
                        owed_by=share.user_id,
                        amount=share.amount,
                        total_amount=request.total_amount,
                        description=request.description,
                        category=request.category,
                        group_id=group_id,
                        split_type=request.split_type,
                        status=ObligationStatus.ACTIVE,
                        notes=request.notes,
                        transaction_date=request.transaction_date or now,
                        created_by=created_by,
                        created_at=now,
                        updated_at=now,
                    )
                )
                self.ledger.apply_obligation(
                    request.paid_by,
                    share.user_id,
                    share.amount,
                    obligation_id=obligation.id,
                    uow=uow,
                )
                recorded.append(obligation)
            return recorded

        obligations = self.ledger.run_atomic(pairs, work)
        logger.info(
            f"Recorded expense {group_id}: ${request.total_amount} paid by "
            f"User {request.paid_by}, {len(obligations)} obligations "
            f"({request.split_type})"
        )
        return self._obligation_views(obligations)

    def cancel_obligation(self, obligation_id: int, caller_id: int) -> ObligationView:
        """
        Cancel an active obligation and reverse its effect on the ledger.

        Raises:
            NotFoundError: No obligation with that id
            PermissionDeniedError: Caller is not the creator, payer or ower
            InvalidStateError: The obligation is no longer active
        """
        obligation = self.db.get_obligation(obligation_id)
        if obligation is None:
            raise NotFoundError(f"Obligation {obligation_id} not found")
        if not obligation.involves(caller_id):
            raise PermissionDeniedError(
                "You can only cancel transactions you're involved in"
            )

        def work(uow: UnitOfWork) -> Obligation:
            current = uow.get_obligation(obligation_id)
            if current is None:
                raise NotFoundError(f"Obligation {obligation_id} not found")
            if current.status != ObligationStatus.ACTIVE:
                raise InvalidStateError(
                    f"Obligation {obligation_id} is {current.status}, not ACTIVE"
                )
            now = utcnow()
            uow.update_obligation_status(obligation_id, ObligationStatus.CANCELLED, now)
            # Swapped roles undo the recorded delta
            self.ledger.apply_obligation(
                current.owed_by,
                current.paid_by,
                current.amount,
                obligation_id=obligation_id,
                uow=uow,
            )
            return current.model_copy(
                update={"status": ObligationStatus.CANCELLED, "updated_at": now}
            )

        cancelled = self.ledger.run_atomic(
            [(obligation.paid_by, obligation.owed_by)], work
        )
        logger.info(f"Cancelled obligation {obligation_id} (by User {caller_id})")
        return self._obligation_views([cancelled])[0]

    def update_obligation_status(
        self, obligation_id: int, status: ObligationStatus, caller_id: int
    ) -> ObligationView:
        """
        Move an active obligation to SETTLED or CANCELLED.

        CANCELLED reverses the obligation's ledger effect, exactly like
        cancel_obligation. SETTLED only marks the record as paid out of band
        and leaves the pair balance alone.

        Raises:
            NotFoundError: No obligation with that id
            PermissionDeniedError: Caller is not the creator, payer or ower
            InvalidStateError: Target is ACTIVE or the obligation is not active
        """
        if status == ObligationStatus.CANCELLED:
            return self.cancel_obligation(obligation_id, caller_id)
        if status != ObligationStatus.SETTLED:
            raise InvalidStateError(f"Cannot move an obligation to {status}")

        obligation = self.db.get_obligation(obligation_id)
        if obligation is None:
            raise NotFoundError(f"Obligation {obligation_id} not found")
        if not obligation.involves(caller_id):
            raise PermissionDeniedError(
                "You can only modify transactions you're involved in"
            )

        def work(uow: UnitOfWork) -> Obligation:
            current = uow.get_obligation(obligation_id)
            if current is None:
                raise NotFoundError(f"Obligation {obligation_id} not found")
            if current.status != ObligationStatus.ACTIVE:
                raise InvalidStateError(
                    f"Obligation {obligation_id} is {current.status}, not ACTIVE"
                )
            now = utcnow()
            uow.update_obligation_status(obligation_id, status, now)
            return current.model_copy(update={"status": status, "updated_at": now})

        updated = self.ledger.run_atomic(
            [(obligation.paid_by, obligation.owed_by)], work
        )
        logger.info(
            f"Obligation {obligation_id} marked {status} (by User {caller_id})"
        )
        return self._obligation_views([updated])[0]

    def get_obligation(self, obligation_id: int) -> ObligationView:
        obligation = self.db.get_obligation(obligation_id)
        if obligation is None:
            raise NotFoundError(f"Obligation {obligation_id} not found")
        return self._obligation_views([obligation])[0]

    def get_user_obligations(self, user_id: int) -> list[ObligationView]:
        return self._obligation_views(self.db.get_obligations_for_user(user_id))

    def get_recent_obligations(
        self, user_id: int, limit: int = 10
    ) -> list[ObligationView]:
        """A user's newest obligations, at most limit of them."""
        if limit < 1:
            raise LedgerValidationError("Limit must be at least 1")
        return self._obligation_views(
            self.db.get_obligations_for_user(user_id, limit=limit)
        )

    def get_obligations_between(
        self, user_a: int, user_b: int
    ) -> list[ObligationView]:
        """Obligations where one of the two users paid and the other owes."""
        if user_a == user_b:
            return []
        return self._obligation_views(self.db.get_obligations_between(user_a, user_b))

    def get_obligations_by_category(self, category: str) -> list[ObligationView]:
        return self._obligation_views(self.db.get_obligations_by_category(category))

    def search_obligations(self, term: str) -> list[ObligationView]:
        """Obligations whose description contains term, ignoring case."""
        term = term.strip()
        if not term:
            raise LedgerValidationError("Search term cannot be empty")
        return self._obligation_views(self.db.search_obligations(term))

    def get_expense_group(self, group_id: str) -> list[ObligationView]:
        """All obligations produced by one expense."""
        obligations = self.db.get_obligations_by_group(group_id)
        if not obligations:
            raise NotFoundError(f"Expense group {group_id} not found")
        return self._obligation_views(obligations)

    def get_user_obligation_summary(self, user_id: int) -> ObligationSummary:
        """
        Totals over a user's obligation records.

        Paid and owed sums count ACTIVE obligations only, including the
        payer's own share on both sides. The count covers every status.
        """
        obligations = self.db.get_obligations_for_user(user_id)
        active = [o for o in obligations if o.status == ObligationStatus.ACTIVE]
        total_paid = sum((o.amount for o in active if o.paid_by == user_id), ZERO)
        total_owed = sum((o.amount for o in active if o.owed_by == user_id), ZERO)
        return ObligationSummary(
            user_id=user_id,
            user_name=self._name(user_id),
            total_paid=total_paid,
            total_owed=total_owed,
            net_balance=total_paid - total_owed,
            obligation_count=len(obligations),
            last_transaction_date=(
                obligations[0].transaction_date if obligations else None
            ),
        )

    def get_obligation_stats(self) -> ObligationStats:
        """Count, volume and average amount of active obligations."""
        active = self.db.get_obligations_by_status(ObligationStatus.ACTIVE)
        volume = sum((o.amount for o in active), ZERO)
        average = round_money(volume / len(active)) if active else ZERO
        return ObligationStats(
            total_obligations=len(active),
            total_volume=volume,
            average_amount=average,
        )

    # ========================================================================
    # Balances
    # ========================================================================

    def get_pair_balance(self, user_a: int, user_b: int) -> BalanceView:
        """Balance between two users from user_a's side. Never fails."""
        balance = self.ledger.get_balance_record(user_a, user_b)
        return self._balance_view(balance, user_a, user_b)

    def get_user_balances(self, user_id: int) -> list[BalanceView]:
        """Every unsettled balance touching a user."""
        balances = self.ledger.get_active_balances_for_user(user_id)
        names = self._names(
            [user_id, *(b.other_user(user_id) for b in balances)]
        )
        return [
            self._balance_view(b, user_id, b.other_user(user_id), names)
            for b in balances
        ]

    def get_user_summary(self, user_id: int) -> UserBalanceSummary:
        """Totals across a user's balances and completed settlements."""
        total_owed = ZERO
        total_owed_to = ZERO
        active = self.ledger.get_active_balances_for_user(user_id)
        for balance in active:
            amount = balance.amount_for_user(user_id)
            if amount > 0:
                total_owed += amount
            else:
                total_owed_to += abs(amount)

        total_paid = ZERO
        total_received = ZERO
        for s in self.settlements.get_user_settlements(user_id):
            if s.status != SettlementStatus.COMPLETED:
                continue
            if s.payer_id == user_id:
                total_paid += s.amount
            else:
                total_received += s.amount

        return UserBalanceSummary(
            user_id=user_id,
            user_name=self._name(user_id),
            total_owed=total_owed,
            total_owed_to=total_owed_to,
            net_balance=total_owed_to - total_owed,
            active_balance_count=len(active),
            total_paid=total_paid,
            total_received=total_received,
        )

    def get_stats(self) -> LedgerStats:
        """Ledger-wide totals."""
        tolerance = self.settings.settled_tolerance
        active = [b for b in self.db.get_all_balances() if abs(b.amount) > tolerance]
        completed = self.db.get_settlements_by_status(SettlementStatus.COMPLETED)
        return LedgerStats(
            active_balances=len(active),
            total_outstanding_amount=sum((abs(b.amount) for b in active), ZERO),
            total_settlements=len(completed),
            total_settled_amount=sum((s.amount for s in completed), ZERO),
        )

    # ========================================================================
    # Settlements
    # ========================================================================

    def create_settlement(
        self, request: SettlementRequest, created_by: int
    ) -> Settlement:
        return self.settlements.create_settlement(request, created_by)

    def get_settlement(self, settlement_id: int) -> Settlement:
        return self.settlements.get_settlement(settlement_id)

    def get_user_settlements(self, user_id: int) -> list[Settlement]:
        return self.settlements.get_user_settlements(user_id)

    def get_settlements_between(self, user_a: int, user_b: int) -> list[Settlement]:
        return self.settlements.get_settlements_between(user_a, user_b)

    # ========================================================================
    # Optimization
    # ========================================================================

    def optimize_group(self, user_ids: list[int]) -> GroupOptimization:
        """
        Suggest the fewest direct payments that settle a group.

        Only balances between group members are considered. The pre-netting
        transaction count is the number of unsettled balances among them.

        Raises:
            TooFewUsersError: Fewer than three distinct users
        """
        user_ids = list(dict.fromkeys(user_ids))
        balances = self.ledger.balances_among(user_ids)
        positions = compute_net_positions(balances, user_ids)
        original = sum(
            1 for b in balances if abs(b.amount) > self.settings.settled_tolerance
        )

        result = optimize(positions, self.settings.auto_settle_threshold, original)

        names = self._names(user_ids)
        payments = [
            p.model_copy(
                update={
                    "from_user_name": names[p.from_user_id],
                    "to_user_name": names[p.to_user_id],
                }
            )
            for p in result.suggested_payments
        ]
        return result.model_copy(update={"suggested_payments": payments})
