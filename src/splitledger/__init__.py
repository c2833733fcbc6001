"""SplitLedger - Shared-expense ledger with pairwise balances and debt netting."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .db import Database
from .ledger import PairwiseLedger
from .models import (
    Balance,
    ExpenseRequest,
    ParticipantInput,
    SettlementRequest,
    SplitType,
)
from .optimizer import generate_optimized_payments, optimize
from .service import LedgerService
from .settlement import SettlementApplier
from .splitter import calculate_shares, round_money

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "PairwiseLedger",
    "Balance",
    "ExpenseRequest",
    "ParticipantInput",
    "SettlementRequest",
    "SplitType",
    "generate_optimized_payments",
    "optimize",
    "LedgerService",
    "SettlementApplier",
    "calculate_shares",
    "round_money",
]
