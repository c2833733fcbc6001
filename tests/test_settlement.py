"""Tests for settlement validation and application."""

import threading
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from splitledger.exceptions import (
    BelowMinimumError,
    ExceedsDebtError,
    NoDebtError,
    NotFoundError,
    PermissionDeniedError,
    SameUserError,
    StateConflictError,
)
from splitledger.models import SettlementMethod, SettlementRequest, SettlementStatus
from splitledger.settlement import SettlementApplier


@pytest.fixture
def applier(db, ledger):
    return SettlementApplier(db, ledger)


def request(payer: int, payee: int, amount: str, **kwargs) -> SettlementRequest:
    return SettlementRequest(
        payer_id=payer, payee_id=payee, amount=Decimal(amount), **kwargs
    )


class TestValidation:
    def test_same_user(self, applier):
        with pytest.raises(SameUserError):
            applier.create_settlement(request(2, 2, "5.00"), created_by=2)

    def test_below_minimum(self, applier, ledger):
        ledger.apply_obligation(1, 2, Decimal("10.00"))

        with pytest.raises(BelowMinimumError):
            applier.create_settlement(request(2, 1, "0.001"), created_by=2)

    def test_caller_must_be_party(self, applier, ledger):
        ledger.apply_obligation(1, 2, Decimal("10.00"))

        with pytest.raises(PermissionDeniedError):
            applier.create_settlement(request(2, 1, "5.00"), created_by=3)

    def test_payee_may_record(self, applier, ledger):
        ledger.apply_obligation(1, 2, Decimal("10.00"))

        settlement = applier.create_settlement(request(2, 1, "5.00"), created_by=1)

        assert settlement.created_by == 1

    def test_no_debt_when_pair_absent(self, applier, db):
        with pytest.raises(NoDebtError):
            applier.create_settlement(request(2, 1, "5.00"), created_by=2)
        assert db.get_all_balances() == []

    def test_no_debt_when_payer_is_creditor(self, applier, ledger):
        ledger.apply_obligation(2, 1, Decimal("10.00"))  # 1 owes 2

        with pytest.raises(NoDebtError):
            applier.create_settlement(request(2, 1, "5.00"), created_by=2)

    def test_exceeds_debt_leaves_balance_unchanged(self, applier, ledger, db):
        ledger.apply_obligation(1, 2, Decimal("25.00"))
        before = ledger.get_balance_record(1, 2)

        with pytest.raises(ExceedsDebtError) as exc_info:
            applier.create_settlement(request(2, 1, "40.00"), created_by=2)

        assert exc_info.value.outstanding == Decimal("25.00")
        assert isinstance(exc_info.value, StateConflictError)
        assert ledger.get_balance_record(1, 2) == before
        assert db.get_settlements_for_user(2) == []


class TestApply:
    def test_full_settlement_zeroes_pair(self, applier, ledger):
        ledger.apply_obligation(1, 2, Decimal("30.00"))

        settlement = applier.create_settlement(request(2, 1, "30.00"), created_by=2)

        assert settlement.id is not None
        assert settlement.status == SettlementStatus.COMPLETED
        assert settlement.balance_id == "1_2"
        assert ledger.get_balance(1, 2) == Decimal("0")
        assert ledger.get_balance_record(1, 2).is_settled()

    def test_partial_settlement(self, applier, ledger):
        ledger.apply_obligation(2, 1, Decimal("50.00"))  # 1 owes 2

        applier.create_settlement(request(1, 2, "20.00"), created_by=1)

        assert ledger.get_balance(1, 2) == Decimal("30.00")

    def test_never_overshoots(self, applier, ledger):
        ledger.apply_obligation(1, 2, Decimal("12.34"))

        applier.create_settlement(request(2, 1, "12.34"), created_by=2)

        assert ledger.get_balance(2, 1) >= 0
        with pytest.raises(NoDebtError):
            applier.create_settlement(request(2, 1, "0.01"), created_by=2)

    def test_record_carries_request_details(self, applier, ledger):
        ledger.apply_obligation(1, 2, Decimal("30.00"))
        when = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

        settlement = applier.create_settlement(
            request(
                2,
                1,
                "30.00",
                method=SettlementMethod.BANK_TRANSFER,
                description="Rent share",
                reference_id="TRX-991",
                notes="March",
                settlement_date=when,
            ),
            created_by=2,
        )

        stored = applier.get_settlement(settlement.id)
        assert stored == settlement
        assert stored.method == SettlementMethod.BANK_TRANSFER
        assert stored.reference_id == "TRX-991"
        assert stored.settlement_date == when

    def test_racing_settlements_cannot_overdraw(self, applier, ledger):
        ledger.apply_obligation(1, 2, Decimal("30.00"))
        accepted, rejected = [], []

        def pay():
            try:
                accepted.append(
                    applier.create_settlement(request(2, 1, "10.00"), created_by=2)
                )
            except StateConflictError as e:
                rejected.append(e)

        threads = [threading.Thread(target=pay) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(accepted) == 3
        assert len(rejected) == 3
        assert ledger.get_balance(2, 1) == Decimal("0")


class TestQueries:
    def test_settlements_between_either_direction(self, applier, ledger):
        ledger.apply_obligation(1, 2, Decimal("30.00"))
        ledger.apply_obligation(3, 1, Decimal("30.00"))
        applier.create_settlement(request(2, 1, "10.00"), created_by=2)
        applier.create_settlement(request(1, 3, "10.00"), created_by=1)

        assert len(applier.get_settlements_between(1, 2)) == 1
        assert len(applier.get_settlements_between(2, 1)) == 1
        assert len(applier.get_user_settlements(1)) == 2
        assert applier.get_settlements_between(1, 1) == []

    def test_newest_first(self, applier, ledger):
        ledger.apply_obligation(1, 2, Decimal("30.00"))
        for day in (1, 3, 2):
            applier.create_settlement(
                request(
                    2,
                    1,
                    "5.00",
                    settlement_date=datetime(2025, 1, day, tzinfo=UTC),
                ),
                created_by=2,
            )

        days = [s.settlement_date.day for s in applier.get_user_settlements(2)]

        assert days == [3, 2, 1]

    def test_unknown_settlement(self, applier):
        with pytest.raises(NotFoundError):
            applier.get_settlement(404)
