"""SQLite database operations for SplitLedger."""

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path

from .exceptions import StaleRecordError
from .models import (
    Balance,
    Obligation,
    ObligationStatus,
    Settlement,
    SettlementMethod,
    SettlementStatus,
    SplitType,
)


class Database:
    """SQLite database manager.

    Every thread gets its own connection so concurrent request handlers never
    share a cursor. Writes go through transaction(), which opens a
    BEGIN IMMEDIATE unit of work.
    """

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        """Initialize database connection."""
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_schema()

    @property
    def conn(self) -> sqlite3.Connection:
        """Connection owned by the calling thread."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout,
                isolation_level=None,  # transactions are managed explicitly
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        # Pairwise balances, one row per canonical pair
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS balances (
                balance_id TEXT PRIMARY KEY,
                user_low INTEGER NOT NULL,
                user_high INTEGER NOT NULL,
                amount TEXT NOT NULL,
                transaction_count INTEGER NOT NULL DEFAULT 0,
                last_obligation_id INTEGER,
                version INTEGER NOT NULL,
                created_at TIMESTAMP NOT NULL,
                last_updated TIMESTAMP NOT NULL,
                CHECK (user_low < user_high)
            )
        """
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_balances_low ON balances (user_low)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_balances_high ON balances (user_high)"
        )

        # Obligations (audit records of expense shares)
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS obligations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                paid_by INTEGER NOT NULL,
                owed_by INTEGER NOT NULL,
                amount TEXT NOT NULL,
                total_amount TEXT NOT NULL,
                description TEXT NOT NULL,
                category TEXT,
                group_id TEXT NOT NULL,
                split_type TEXT NOT NULL,
                status TEXT NOT NULL,
                notes TEXT,
                transaction_date TIMESTAMP NOT NULL,
                created_by INTEGER NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_obligations_group ON obligations (group_id)"
        )

        # Settlements
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS settlements (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                payer_id INTEGER NOT NULL,
                payee_id INTEGER NOT NULL,
                amount TEXT NOT NULL,
                description TEXT,
                method TEXT NOT NULL,
                status TEXT NOT NULL,
                balance_id TEXT NOT NULL,
                settlement_date TIMESTAMP NOT NULL,
                created_by INTEGER NOT NULL,
                notes TEXT,
                reference_id TEXT,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_settlements_balance "
            "ON settlements (balance_id)"
        )

    def close(self):
        """Close every connection opened by this database."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Iterator["UnitOfWork"]:
        """
        Run a block as a single atomic unit of work.

        Commits when the block exits normally, rolls back on any exception.
        """
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield UnitOfWork(conn)
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    # ========================================================================
    # Balance queries
    # ========================================================================

    def get_balance(self, balance_id: str) -> Balance | None:
        """Get a balance by its canonical pair key."""
        return UnitOfWork(self.conn).get_balance(balance_id)

    def get_balances_for_user(self, user_id: int) -> list[Balance]:
        """Get every balance touching a user."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM balances
            WHERE user_low = ? OR user_high = ?
            ORDER BY balance_id
            """,
            (user_id, user_id),
        )
        return [_row_to_balance(row) for row in cursor.fetchall()]

    def get_balances_among(self, user_ids: list[int]) -> list[Balance]:
        """Get balances whose both endpoints are in user_ids."""
        if not user_ids:
            return []
        placeholders = ", ".join("?" for _ in user_ids)
        cursor = self.conn.cursor()
        cursor.execute(
            f"""
            SELECT * FROM balances
            WHERE user_low IN ({placeholders}) AND user_high IN ({placeholders})
            ORDER BY balance_id
            """,
            (*user_ids, *user_ids),
        )
        return [_row_to_balance(row) for row in cursor.fetchall()]

    def get_all_balances(self) -> list[Balance]:
        """Get all balances."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM balances ORDER BY balance_id")
        return [_row_to_balance(row) for row in cursor.fetchall()]

    # ========================================================================
    # Settlement queries
    # ========================================================================

    def get_settlement(self, settlement_id: int) -> Settlement | None:
        """Get a settlement by id."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM settlements WHERE id = ?", (settlement_id,))
        row = cursor.fetchone()
        return _row_to_settlement(row) if row else None

    def get_settlements_for_user(self, user_id: int) -> list[Settlement]:
        """Get settlements paid or received by a user, newest first."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM settlements
            WHERE payer_id = ? OR payee_id = ?
            ORDER BY settlement_date DESC, id DESC
            """,
            (user_id, user_id),
        )
        return [_row_to_settlement(row) for row in cursor.fetchall()]

    def get_settlements_for_balance(self, balance_id: str) -> list[Settlement]:
        """Get settlements between one pair, newest first."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM settlements
            WHERE balance_id = ?
            ORDER BY settlement_date DESC, id DESC
            """,
            (balance_id,),
        )
        return [_row_to_settlement(row) for row in cursor.fetchall()]

    def get_settlements_by_status(self, status: SettlementStatus) -> list[Settlement]:
        """Get all settlements with a given status."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM settlements WHERE status = ? ORDER BY id",
            (status.value,),
        )
        return [_row_to_settlement(row) for row in cursor.fetchall()]

    # ========================================================================
    # Obligation queries
    # ========================================================================

    def get_obligation(self, obligation_id: int) -> Obligation | None:
        """Get an obligation by id."""
        return UnitOfWork(self.conn).get_obligation(obligation_id)

    def get_obligations_for_user(
        self, user_id: int, limit: int | None = None
    ) -> list[Obligation]:
        """Get obligations a user paid for or owes, newest first."""
        query = """
            SELECT * FROM obligations
            WHERE paid_by = ? OR owed_by = ?
            ORDER BY transaction_date DESC, id DESC
        """
        params: tuple = (user_id, user_id)
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        return [_row_to_obligation(row) for row in cursor.fetchall()]

    def get_obligations_by_group(self, group_id: str) -> list[Obligation]:
        """Get all obligations produced by one expense."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM obligations WHERE group_id = ? ORDER BY id",
            (group_id,),
        )
        return [_row_to_obligation(row) for row in cursor.fetchall()]

    def get_obligations_between(self, user_a: int, user_b: int) -> list[Obligation]:
        """Get obligations where one user paid and the other owes, newest first."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM obligations
            WHERE (paid_by = ? AND owed_by = ?) OR (paid_by = ? AND owed_by = ?)
            ORDER BY transaction_date DESC, id DESC
            """,
            (user_a, user_b, user_b, user_a),
        )
        return [_row_to_obligation(row) for row in cursor.fetchall()]

    def get_obligations_by_category(self, category: str) -> list[Obligation]:
        """Get obligations in a category, newest first."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM obligations
            WHERE category = ?
            ORDER BY transaction_date DESC, id DESC
            """,
            (category,),
        )
        return [_row_to_obligation(row) for row in cursor.fetchall()]

    def search_obligations(self, term: str) -> list[Obligation]:
        """Get obligations whose description contains term (case-insensitive)."""
        escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM obligations
            WHERE LOWER(description) LIKE LOWER(?) ESCAPE '\\'
            ORDER BY transaction_date DESC, id DESC
            """,
            (f"%{escaped}%",),
        )
        return [_row_to_obligation(row) for row in cursor.fetchall()]

    def get_obligations_by_status(self, status: ObligationStatus) -> list[Obligation]:
        """Get all obligations with a given status."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM obligations WHERE status = ? ORDER BY id",
            (status.value,),
        )
        return [_row_to_obligation(row) for row in cursor.fetchall()]


class UnitOfWork:
    """Record-level reads and writes bound to one open transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ========================================================================
    # Balances
    # ========================================================================

    def get_balance(self, balance_id: str) -> Balance | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM balances WHERE balance_id = ?", (balance_id,))
        row = cursor.fetchone()
        return _row_to_balance(row) if row else None

    def save_balance(self, balance: Balance) -> Balance:
        """
        Insert or update a balance with an optimistic version check.

        A balance with version 0 has never been stored and is inserted.
        Otherwise the row is only updated if its stored version still matches.

        Returns:
            The balance with its new version

        Raises:
            StaleRecordError: If the stored version moved on
            sqlite3.IntegrityError: If a concurrent insert won the race
        """
        cursor = self.conn.cursor()
        new_version = balance.version + 1

        if balance.version == 0:
            cursor.execute(
                """
                INSERT INTO balances (
                    balance_id, user_low, user_high, amount, transaction_count,
                    last_obligation_id, version, created_at, last_updated
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    balance.balance_id,
                    balance.user_low,
                    balance.user_high,
                    str(balance.amount),
                    balance.transaction_count,
                    balance.last_obligation_id,
                    new_version,
                    balance.created_at.isoformat(),
                    balance.last_updated.isoformat(),
                ),
            )
        else:
            cursor.execute(
                """
                UPDATE balances SET
                    amount = ?,
                    transaction_count = ?,
                    last_obligation_id = ?,
                    version = ?,
                    last_updated = ?
                WHERE balance_id = ? AND version = ?
                """,
                (
                    str(balance.amount),
                    balance.transaction_count,
                    balance.last_obligation_id,
                    new_version,
                    balance.last_updated.isoformat(),
                    balance.balance_id,
                    balance.version,
                ),
            )
            if cursor.rowcount == 0:
                raise StaleRecordError(balance.balance_id)

        return balance.model_copy(update={"version": new_version})

    # ========================================================================
    # Settlements
    # ========================================================================

    def insert_settlement(self, settlement: Settlement) -> Settlement:
        """Insert a settlement record and return it with its id."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO settlements (
                payer_id, payee_id, amount, description, method, status,
                balance_id, settlement_date, created_by, notes, reference_id,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                settlement.payer_id,
                settlement.payee_id,
                str(settlement.amount),
                settlement.description,
                settlement.method.value,
                settlement.status.value,
                settlement.balance_id,
                settlement.settlement_date.isoformat(),
                settlement.created_by,
                settlement.notes,
                settlement.reference_id,
                settlement.created_at.isoformat(),
                settlement.updated_at.isoformat(),
            ),
        )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert settlement record")
        return settlement.model_copy(update={"id": row_id})

    # ========================================================================
    # Obligations
    # ========================================================================

    def get_obligation(self, obligation_id: int) -> Obligation | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM obligations WHERE id = ?", (obligation_id,))
        row = cursor.fetchone()
        return _row_to_obligation(row) if row else None

    def insert_obligation(self, obligation: Obligation) -> Obligation:
        """Insert an obligation record and return it with its id."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO obligations (
                paid_by, owed_by, amount, total_amount, description, category,
                group_id, split_type, status, notes, transaction_date,
                created_by, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                obligation.paid_by,
                obligation.owed_by,
                str(obligation.amount),
                str(obligation.total_amount),
                obligation.description,
                obligation.category,
                obligation.group_id,
                obligation.split_type.value,
                obligation.status.value,
                obligation.notes,
                obligation.transaction_date.isoformat(),
                obligation.created_by,
                obligation.created_at.isoformat(),
                obligation.updated_at.isoformat(),
            ),
        )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert obligation record")
        return obligation.model_copy(update={"id": row_id})

    def update_obligation_status(
        self, obligation_id: int, status: ObligationStatus, updated_at: datetime
    ):
        """Set an obligation's status."""
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE obligations SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, updated_at.isoformat(), obligation_id),
        )


# ============================================================================
# Row converters
# ============================================================================


def _row_to_balance(row: sqlite3.Row) -> Balance:
    return Balance(
        balance_id=row["balance_id"],
        user_low=row["user_low"],
        user_high=row["user_high"],
        amount=Decimal(row["amount"]),
        transaction_count=row["transaction_count"],
        last_obligation_id=row["last_obligation_id"],
        version=row["version"],
        created_at=datetime.fromisoformat(row["created_at"]),
        last_updated=datetime.fromisoformat(row["last_updated"]),
    )


def _row_to_settlement(row: sqlite3.Row) -> Settlement:
    return Settlement(
        id=row["id"],
        payer_id=row["payer_id"],
        payee_id=row["payee_id"],
        amount=Decimal(row["amount"]),
        description=row["description"],
        method=SettlementMethod(row["method"]),
        status=SettlementStatus(row["status"]),
        balance_id=row["balance_id"],
        settlement_date=datetime.fromisoformat(row["settlement_date"]),
        created_by=row["created_by"],
        notes=row["notes"],
        reference_id=row["reference_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_obligation(row: sqlite3.Row) -> Obligation:
    return Obligation(
        id=row["id"],
        paid_by=row["paid_by"],
        owed_by=row["owed_by"],
        amount=Decimal(row["amount"]),
        total_amount=Decimal(row["total_amount"]),
        description=row["description"],
        category=row["category"],
        group_id=row["group_id"],
        split_type=SplitType(row["split_type"]),
        status=ObligationStatus(row["status"]),
        notes=row["notes"],
        transaction_date=datetime.fromisoformat(row["transaction_date"]),
        created_by=row["created_by"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
