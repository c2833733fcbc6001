"""Pairwise balance ledger.

Keeps one running balance per unordered user pair. Every mutation goes
through the canonical pair (user_low < user_high), so the direction of the
call never changes which row is touched or how its sign is read.
"""

import logging
import sqlite3
import threading
import time
import weakref
from collections.abc import Callable, Iterable, Iterator
from contextlib import ExitStack, contextmanager
from decimal import Decimal
from typing import TypeVar

from .config import Settings
from .db import Database, UnitOfWork
from .exceptions import ConflictError, StaleRecordError
from .models import ZERO, Balance, make_balance_id, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

Pair = tuple[int, int]


def compute_net_positions(
    balances: Iterable[Balance], user_ids: list[int]
) -> dict[int, Decimal]:
    """
    Fold pair balances into one net position per user.

    Positive means the user is a net creditor, negative a net debtor. Only
    balances with both endpoints in user_ids are counted, so the positions
    always sum to zero.

    Args:
        balances: Pair balances to fold
        user_ids: Users to report (every one present, input order kept)

    Returns:
        Mapping of user id to net position
    """
    positions: dict[int, Decimal] = {user_id: ZERO for user_id in user_ids}
    for balance in balances:
        if balance.user_low not in positions or balance.user_high not in positions:
            continue
        positions[balance.user_low] -= balance.amount
        positions[balance.user_high] += balance.amount
    return positions


def _is_transient(error: Exception) -> bool:
    """Whether a failed write is worth retrying from a fresh read."""
    if isinstance(error, StaleRecordError):
        return True
    if isinstance(error, sqlite3.IntegrityError):
        # Lost insert race on the primary key
        return "unique constraint failed" in str(error).lower()
    if isinstance(error, sqlite3.OperationalError):
        message = str(error).lower()
        return "locked" in message or "busy" in message
    return False


class PairwiseLedger:
    """Canonical pairwise balances with per-pair serialization."""

    def __init__(
        self,
        db: Database,
        auto_settle_threshold: Decimal = Decimal("0.01"),
        settled_tolerance: Decimal = Decimal("0.01"),
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.05,
    ):
        """Initialize the ledger over a database."""
        self.db = db
        self.auto_settle_threshold = auto_settle_threshold
        self.settled_tolerance = settled_tolerance
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._registry_lock = threading.Lock()

    @classmethod
    def from_settings(cls, db: Database, settings: Settings) -> "PairwiseLedger":
        return cls(
            db,
            auto_settle_threshold=settings.auto_settle_threshold,
            settled_tolerance=settings.settled_tolerance,
            max_retries=settings.max_retries,
            retry_backoff_seconds=settings.retry_backoff_seconds,
        )

    # ========================================================================
    # Locking and retries
    # ========================================================================

    def _lock_for(self, balance_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(balance_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[balance_id] = lock
            return lock

    @contextmanager
    def locked(self, *pairs: Pair) -> Iterator[list[str]]:
        """
        Hold the locks of every given pair for the duration of the block.

        Locks are taken in sorted key order so units of work spanning several
        pairs cannot deadlock each other. Same-user pairs are skipped.

        Yields:
            The sorted balance ids that are held
        """
        keys = sorted({make_balance_id(a, b) for a, b in pairs if a != b})
        with ExitStack() as stack:
            for key in keys:
                stack.enter_context(self._lock_for(key))
            logger.debug(f"Holding pair locks {keys}")
            yield keys

    def run_atomic(self, pairs: Iterable[Pair], work: Callable[[UnitOfWork], T]) -> T:
        """
        Run work in one transaction while holding the locks of pairs.

        The whole unit of work is re-run from a fresh read when the store
        reports a stale version, an insert race or a busy database. After
        max_retries retries the conflict surfaces as ConflictError.

        Args:
            pairs: User pairs the work touches
            work: Callable receiving the open unit of work

        Returns:
            Whatever work returns
        """
        pairs = list(pairs)
        attempts = self.max_retries + 1
        with self.locked(*pairs) as keys:
            label = ",".join(keys) or "ledger"
            for attempt in range(1, attempts + 1):
                try:
                    with self.db.transaction() as uow:
                        return work(uow)
                except (StaleRecordError, sqlite3.Error) as e:
                    if not _is_transient(e):
                        raise
                    if attempt == attempts:
                        raise ConflictError(label, attempts) from e
                    logger.warning(
                        f"Conflict on {label} (attempt {attempt}/{attempts}): {e}"
                    )
                    time.sleep(self.retry_backoff_seconds * attempt)
        raise ConflictError(label, attempts)

    # ========================================================================
    # Mutations
    # ========================================================================

    def _load(self, uow: UnitOfWork, user_a: int, user_b: int) -> Balance:
        balance_id = make_balance_id(user_a, user_b)
        balance = uow.get_balance(balance_id)
        if balance is None:
            balance = Balance.for_pair(user_a, user_b, utcnow())
        return balance

    def apply_obligation(
        self,
        paid_by: int,
        owed_by: int,
        amount: Decimal,
        obligation_id: int | None = None,
        uow: UnitOfWork | None = None,
    ) -> Balance | None:
        """
        Record that owed_by owes paid_by an extra amount.

        A payer's own share is not a debt, so paid_by == owed_by is a no-op.

        Args:
            paid_by: User who paid the expense
            owed_by: User who owes the share
            amount: Share amount
            obligation_id: Obligation that caused the change, if persisted
            uow: Open unit of work to join; a new one is opened if omitted

        Returns:
            The updated balance, or None for the payer's own share
        """
        if paid_by == owed_by:
            return None

        def work(uow: UnitOfWork) -> Balance:
            balance = self._load(uow, paid_by, owed_by)
            delta = -amount if paid_by == balance.user_low else amount
            updated = balance.with_delta(delta, utcnow())
            if obligation_id is not None:
                updated = updated.model_copy(
                    update={"last_obligation_id": obligation_id}
                )
            return uow.save_balance(updated)

        if uow is not None:
            return work(uow)
        return self.run_atomic([(paid_by, owed_by)], work)

    def apply_settlement_delta(
        self,
        payer_id: int,
        payee_id: int,
        amount: Decimal,
        uow: UnitOfWork | None = None,
    ) -> Balance:
        """
        Reduce payer's debt to payee by amount.

        A remainder at or below the auto-settle threshold is clamped to zero.

        Returns:
            The updated balance
        """

        def work(uow: UnitOfWork) -> Balance:
            balance = self._load(uow, payer_id, payee_id)
            delta = -amount if payer_id == balance.user_low else amount
            updated = balance.with_delta(delta, utcnow())
            if abs(updated.amount) <= self.auto_settle_threshold:
                updated = updated.model_copy(update={"amount": ZERO})
            return uow.save_balance(updated)

        if uow is not None:
            return work(uow)
        return self.run_atomic([(payer_id, payee_id)], work)

    # ========================================================================
    # Queries
    # ========================================================================

    def get_balance(self, user_a: int, user_b: int) -> Decimal:
        """
        Signed balance from user_a's perspective (positive = user_a owes).

        Never fails: an absent pair or a same-user pair reads as zero.
        """
        if user_a == user_b:
            return ZERO
        balance = self.db.get_balance(make_balance_id(user_a, user_b))
        if balance is None:
            return ZERO
        return balance.amount_for_user(user_a)

    def get_balance_record(self, user_a: int, user_b: int) -> Balance | None:
        if user_a == user_b:
            return None
        return self.db.get_balance(make_balance_id(user_a, user_b))

    def get_active_balances_for_user(self, user_id: int) -> list[Balance]:
        """Balances touching user_id whose magnitude exceeds the tolerance."""
        return [
            b
            for b in self.db.get_balances_for_user(user_id)
            if abs(b.amount) > self.settled_tolerance
        ]

    def balances_among(self, user_ids: list[int]) -> list[Balance]:
        return self.db.get_balances_among(user_ids)

    def net_positions(self, user_ids: list[int]) -> dict[int, Decimal]:
        """Net position of every user over the balances among the group."""
        return compute_net_positions(self.balances_among(user_ids), user_ids)
