"""MCP server for SplitLedger: exposes ledger operations as tools."""

import logging
from dataclasses import dataclass
from decimal import Decimal

from mcp.server.fastmcp import FastMCP

from .config import load_settings
from .db import Database
from .exceptions import SplitLedgerError
from .models import (
    ExpenseRequest,
    ObligationStatus,
    ObligationView,
    ParticipantInput,
    SettlementMethod,
    SettlementRequest,
    SplitType,
)
from .service import LedgerService

logger = logging.getLogger(__name__)

mcp_app = FastMCP("splitledger")

# ---------------------------------------------------------------------------
# Session state: one MCP server process serves one client
# ---------------------------------------------------------------------------


@dataclass
class SessionState:
    """Holds the lazily built service between MCP tool calls."""

    service: LedgerService | None = None


_state = SessionState()


def _ensure_service() -> LedgerService:
    """Lazily initialize the LedgerService (loads .env config)."""
    if _state.service is None:
        settings = load_settings()
        _state.service = LedgerService(settings, Database(settings.database_path))
    return _state.service


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _format_amount(amount: Decimal) -> str:
    """Format an amount as an accounting-style dollar string."""
    if amount < 0:
        return f"(${abs(amount):,.2f})"
    return f"${amount:,.2f}"


def _format_obligation(o: ObligationView) -> str:
    """One line per obligation: id, date, who owes whom, status."""
    return (
        f"#{o.id} {o.transaction_date.date().isoformat()} {o.description}: "
        f"{o.owed_by_name} owes {o.paid_by_name} {_format_amount(o.amount)} "
        f"[{o.status}]"
    )


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------


@mcp_app.tool()
def record_expense(
    caller_id: int,
    paid_by: int,
    participant_ids: list[int],
    total_amount: str,
    description: str,
    split_type: str = "EQUAL",
    values: list[str] | None = None,
    category: str | None = None,
) -> str:
    """Record an expense. For EXACT or PERCENTAGE splits pass one value per participant."""
    try:
        kind = SplitType(split_type.upper())
        if values is not None and len(values) != len(participant_ids):
            return "Error: values must have one entry per participant"

        participants = []
        for i, user_id in enumerate(participant_ids):
            value = Decimal(values[i]) if values is not None else None
            if kind == SplitType.PERCENTAGE:
                participants.append(ParticipantInput(user_id=user_id, percentage=value))
            else:
                participants.append(ParticipantInput(user_id=user_id, amount=value))

        obligations = _ensure_service().record_expense(
            ExpenseRequest(
                paid_by=paid_by,
                participants=participants,
                total_amount=Decimal(total_amount),
                description=description,
                category=category,
                split_type=kind,
            ),
            created_by=caller_id,
        )

        lines = [f"Recorded expense {obligations[0].group_id}:"]
        for o in obligations:
            if o.owed_by == o.paid_by:
                lines.append(f"  {o.owed_by_name}: {_format_amount(o.amount)} (payer)")
            else:
                lines.append(
                    f"  {o.owed_by_name} owes {o.paid_by_name} {_format_amount(o.amount)}"
                )
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to record expense: {e}"


@mcp_app.tool()
def get_pair_balance(user_id: int, other_user_id: int) -> str:
    """Show the balance between two users from the first user's side."""
    try:
        view = _ensure_service().get_pair_balance(user_id, other_user_id)
        return f"{view.description} ({view.transaction_count} transactions)"
    except SplitLedgerError as e:
        return f"Error: {e}"


@mcp_app.tool()
def get_user_balances(user_id: int) -> str:
    """List every unsettled balance of a user."""
    try:
        views = _ensure_service().get_user_balances(user_id)
        if not views:
            return "All settled up."
        return "\n".join(f"- {v.description}" for v in views)
    except SplitLedgerError as e:
        return f"Error: {e}"


@mcp_app.tool()
def create_settlement(
    caller_id: int,
    payer_id: int,
    payee_id: int,
    amount: str,
    method: str = "CASH",
    description: str | None = None,
    reference_id: str | None = None,
) -> str:
    """Record a payment from payer to payee that reduces payer's debt."""
    try:
        service = _ensure_service()
        settlement = service.create_settlement(
            SettlementRequest(
                payer_id=payer_id,
                payee_id=payee_id,
                amount=Decimal(amount),
                method=SettlementMethod(method.upper()),
                description=description,
                reference_id=reference_id,
            ),
            created_by=caller_id,
        )
        remaining = service.get_pair_balance(payer_id, payee_id)
        return (
            f"Settlement {settlement.id} recorded: {_format_amount(settlement.amount)} "
            f"via {settlement.method}. {remaining.description}"
        )
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to create settlement: {e}"


@mcp_app.tool()
def optimize_group(user_ids: list[int]) -> str:
    """Suggest the fewest payments that settle a group of at least three users."""
    try:
        result = _ensure_service().optimize_group(user_ids)
        lines = [result.optimization_summary]
        for p in result.suggested_payments:
            lines.append(
                f"  {p.from_user_name} pays {p.to_user_name} {_format_amount(p.amount)}"
            )
        lines.append(f"Total: {_format_amount(result.total_optimized_amount)}")
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"


@mcp_app.tool()
def get_user_summary(user_id: int) -> str:
    """Show what a user owes, is owed, and has settled."""
    try:
        s = _ensure_service().get_user_summary(user_id)
        return "\n".join(
            [
                f"{s.user_name}:",
                f"  Owes others: {_format_amount(s.total_owed)}",
                f"  Owed by others: {_format_amount(s.total_owed_to)}",
                f"  Net: {_format_amount(s.net_balance)}",
                f"  Open balances: {s.active_balance_count}",
                f"  Paid in settlements: {_format_amount(s.total_paid)}",
                f"  Received in settlements: {_format_amount(s.total_received)}",
            ]
        )
    except SplitLedgerError as e:
        return f"Error: {e}"


@mcp_app.tool()
def find_obligations(
    user_id: int | None = None,
    other_user_id: int | None = None,
    category: str | None = None,
    search: str | None = None,
    limit: int = 20,
) -> str:
    """
    List obligations, newest first.

    Pass user_id (optionally with other_user_id), a category, or a search
    term matched against descriptions.
    """
    try:
        service = _ensure_service()
        if category is not None:
            records = service.get_obligations_by_category(category)
        elif search is not None:
            records = service.search_obligations(search)
        elif user_id is not None and other_user_id is not None:
            records = service.get_obligations_between(user_id, other_user_id)
        elif user_id is not None:
            records = service.get_recent_obligations(user_id, limit)
        else:
            return "Error: pass user_id, category or search"

        if not records:
            return "No obligations found."
        return "\n".join(_format_obligation(o) for o in records[:limit])
    except SplitLedgerError as e:
        return f"Error: {e}"


@mcp_app.tool()
def update_obligation_status(caller_id: int, obligation_id: int, status: str) -> str:
    """Mark an active obligation SETTLED (paid outside the ledger) or CANCELLED."""
    try:
        target = ObligationStatus(status.upper())
    except ValueError:
        return f"Error: unknown status {status}"

    try:
        obligation = _ensure_service().update_obligation_status(
            obligation_id, target, caller_id=caller_id
        )
        return _format_obligation(obligation)
    except SplitLedgerError as e:
        return f"Error: {e}"


@mcp_app.tool()
def get_obligation_summary(user_id: int) -> str:
    """Show totals over a user's obligation records and ledger-wide averages."""
    try:
        service = _ensure_service()
        s = service.get_user_obligation_summary(user_id)
        stats = service.get_obligation_stats()
        last = "never"
        if s.last_transaction_date:
            last = s.last_transaction_date.date().isoformat()
        return "\n".join(
            [
                f"{s.user_name}:",
                f"  Paid for: {_format_amount(s.total_paid)}",
                f"  Own shares: {_format_amount(s.total_owed)}",
                f"  Net paid: {_format_amount(s.net_balance)}",
                f"  Records: {s.obligation_count} (last {last})",
                f"Ledger: {stats.total_obligations} active obligations, "
                f"{_format_amount(stats.total_volume)} total, "
                f"{_format_amount(stats.average_amount)} average",
            ]
        )
    except SplitLedgerError as e:
        return f"Error: {e}"


@mcp_app.tool()
def get_settlement(settlement_id: int) -> str:
    """Show one settlement record."""
    try:
        s = _ensure_service().get_settlement(settlement_id)
        return (
            f"Settlement {s.id}: User {s.payer_id} paid User {s.payee_id} "
            f"{_format_amount(s.amount)} via {s.method} on "
            f"{s.settlement_date.date().isoformat()} ({s.status})"
        )
    except SplitLedgerError as e:
        return f"Error: {e}"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run_server():
    """Start the MCP server (stdio transport)."""
    logger.info("Starting SplitLedger MCP server on stdio")
    mcp_app.run(transport="stdio")
