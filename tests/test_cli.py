"""Tests for the command line interface and MCP tools."""

from decimal import Decimal

import pytest
from typer.testing import CliRunner

from splitledger import mcp_server
from splitledger.cli import app, format_money, parse_participant

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point every command at a fresh database."""
    monkeypatch.setenv("SPLITLEDGER_DATABASE_PATH", str(tmp_path / "cli.db"))
    monkeypatch.delenv("SPLITLEDGER_DIRECTORY_BASE_URL", raising=False)


class TestHelpers:
    def test_format_money(self):
        assert format_money(Decimal("-85.02"), use_color=False) == "($85.02)"
        assert format_money(Decimal("1234.5"), use_color=False) == " $1,234.50 "

    def test_parse_participant(self):
        assert parse_participant("3") == (3, None)
        assert parse_participant("3:12.50") == (3, Decimal("12.50"))


class TestCommands:
    def test_expense_then_balance(self):
        result = runner.invoke(
            app,
            "expense 90.00 Dinner --paid-by 1 -p 1 -p 2 -p 3 --as 1".split(),
        )
        assert result.exit_code == 0, result.output

        result = runner.invoke(app, ["balance", "2", "1"])
        assert result.exit_code == 0
        assert "You owe User 1 $30.00" in result.output

    def test_settle_and_list(self):
        runner.invoke(
            app,
            "expense 50 Taxi --paid-by 1 -p 1 -p 2 --as 2".split(),
        )

        result = runner.invoke(
            app, ["settle", "25", "--payer", "2", "--payee", "1", "--as", "2"]
        )
        assert result.exit_code == 0, result.output
        assert "Settled with User 1" in result.output

        result = runner.invoke(app, ["settlements", "1", "--with", "2"])
        assert result.exit_code == 0
        assert "CASH" in result.output

    def test_exceeding_settlement_fails(self):
        runner.invoke(
            app,
            "expense 50 Taxi --paid-by 1 -p 1 -p 2 --as 1".split(),
        )

        result = runner.invoke(
            app, ["settle", "40", "--payer", "2", "--payee", "1", "--as", "2"]
        )

        assert result.exit_code == 1
        assert "exceed" in result.output

    def test_optimize_needs_three_users(self):
        result = runner.invoke(app, ["optimize", "1", "2"])

        assert result.exit_code == 1
        assert "at least 3 users" in result.output

    def test_summary(self):
        runner.invoke(app, "expense 40 Fuel --paid-by 1 -p 1 -p 2 --as 1".split())

        result = runner.invoke(app, ["summary", "1"])

        assert result.exit_code == 0, result.output
        assert "Open balances:  1" in result.output
        assert "Records:        2" in result.output

    def test_stats_on_empty_ledger(self):
        result = runner.invoke(app, ["stats"])

        assert result.exit_code == 0
        assert "Active balances" in result.output
        assert "Active obligations:  0" in result.output

    def test_cancel(self):
        runner.invoke(
            app,
            "expense 20 Lunch --paid-by 1 -p 1 -p 2 --as 1".split(),
        )

        result = runner.invoke(app, ["cancel", "2", "--as", "2"])
        assert result.exit_code == 0, result.output

        result = runner.invoke(app, ["balances", "1"])
        assert "All settled up" in result.output

    def test_status_settled_keeps_balance(self):
        runner.invoke(
            app,
            "expense 20 Lunch --paid-by 1 -p 1 -p 2 --as 1".split(),
        )

        result = runner.invoke(app, ["status", "2", "SETTLED", "--as", "2"])
        assert result.exit_code == 0, result.output
        assert "now SETTLED" in result.output

        result = runner.invoke(app, ["balance", "2", "1"])
        assert "You owe User 1 $10.00" in result.output

        result = runner.invoke(app, ["status", "2", "CANCELLED", "--as", "2"])
        assert result.exit_code == 1
        assert "not ACTIVE" in result.output

    def test_obligations_listing(self):
        runner.invoke(
            app,
            "expense 30 Dinner --category Food --paid-by 1 -p 1 -p 2 --as 1".split(),
        )
        runner.invoke(app, "expense 12 Taxi --paid-by 2 -p 1 -p 2 --as 2".split())

        result = runner.invoke(app, ["obligations", "1", "--limit", "1"])
        assert result.exit_code == 0, result.output
        assert "Taxi" in result.output
        assert "Dinner" not in result.output

        result = runner.invoke(app, ["obligations", "1", "--with", "2"])
        assert "Taxi" in result.output
        assert "Dinner" in result.output

    def test_search(self):
        runner.invoke(
            app,
            "expense 30 Dinner --category Food --paid-by 1 -p 1 -p 2 --as 1".split(),
        )
        runner.invoke(app, "expense 12 Taxi --paid-by 2 -p 1 -p 2 --as 2".split())

        result = runner.invoke(app, ["search", "taxi"])
        assert result.exit_code == 0, result.output
        assert "Taxi" in result.output

        result = runner.invoke(app, ["search", "--category", "Food"])
        assert "Dinner" in result.output
        assert "Taxi" not in result.output

        result = runner.invoke(app, ["search"])
        assert result.exit_code == 1


class TestMcpTools:
    @pytest.fixture(autouse=True)
    def fresh_state(self, monkeypatch):
        monkeypatch.setattr(mcp_server, "_state", mcp_server.SessionState())
        yield
        if mcp_server._state.service is not None:
            mcp_server._state.service.close()

    def test_record_and_optimize(self):
        out = mcp_server.record_expense(
            caller_id=1,
            paid_by=1,
            participant_ids=[1, 2, 3],
            total_amount="90.00",
            description="Dinner",
        )
        assert "User 2 owes User 1 $30.00" in out

        out = mcp_server.optimize_group([1, 2, 3])
        assert "Reduced from 2 potential transactions to 2 optimized payments" in out

    def test_errors_returned_as_text(self):
        out = mcp_server.create_settlement(
            caller_id=2, payer_id=2, payee_id=1, amount="5.00"
        )

        assert out.startswith("Error:")

    def test_exact_values_must_match_participants(self):
        out = mcp_server.record_expense(
            caller_id=1,
            paid_by=1,
            participant_ids=[1, 2],
            total_amount="10.00",
            description="Cab",
            split_type="EXACT",
            values=["10.00"],
        )

        assert out.startswith("Error:")

    def test_obligation_status_and_listing(self):
        mcp_server.record_expense(
            caller_id=1,
            paid_by=1,
            participant_ids=[1, 2, 3],
            total_amount="90.00",
            description="Dinner",
        )

        out = mcp_server.update_obligation_status(
            caller_id=2, obligation_id=2, status="settled"
        )
        assert out.endswith("User 2 owes User 1 $30.00 [SETTLED]")

        out = mcp_server.find_obligations(user_id=1, other_user_id=2)
        assert "[SETTLED]" in out

        out = mcp_server.update_obligation_status(
            caller_id=2, obligation_id=2, status="paid"
        )
        assert out == "Error: unknown status paid"

    def test_obligation_summary(self):
        mcp_server.record_expense(
            caller_id=1,
            paid_by=1,
            participant_ids=[1, 2],
            total_amount="40.00",
            description="Fuel",
        )

        out = mcp_server.get_obligation_summary(1)

        assert "Paid for: $40.00" in out
        assert "Own shares: $20.00" in out
        assert "2 active obligations, $40.00 total, $20.00 average" in out

    def test_settlement_lookup(self):
        assert mcp_server.get_settlement(77).startswith("Error:")
