"""
Tests for the pure balance delta table
"""

import pytest
from decimal import Decimal

from models import TransactionType
from services.balance_projector import BALANCE_DELTAS, BalanceState, project_balance, replay_balances
from utils.ledger_exceptions import InsufficientFunds, InvalidAmount


def state(balance, frozen="0"):
    return BalanceState(Decimal(balance), Decimal(frozen))


class TestBalanceDeltas:
    """Each transaction type moves balance and frozen balance as documented"""

    def test_every_transaction_type_has_a_delta(self):
        assert set(BALANCE_DELTAS) == set(TransactionType)

    @pytest.mark.parametrize("tx_type", ["deposit", "bonus", "refund"])
    def test_credits_increase_balance(self, tx_type):
        result = project_balance(state("100"), tx_type, Decimal("25.50"))
        assert result == state("125.50")

    @pytest.mark.parametrize("tx_type", [
        "withdraw", "fast_withdraw", "subscription_payment", "promotion", "commission",
    ])
    def test_debits_decrease_balance(self, tx_type):
        result = project_balance(state("100"), tx_type, Decimal("40"))
        assert result == state("60")

    def test_freeze_moves_available_into_frozen(self):
        result = project_balance(state("100"), TransactionType.FREEZE, Decimal("30"))
        assert result.balance == Decimal("100")
        assert result.frozen_balance == Decimal("30")
        assert result.available_balance == Decimal("70")

    def test_release_settles_frozen_funds(self):
        result = project_balance(state("100", "30"), TransactionType.RELEASE, Decimal("30"))
        assert result == state("70", "0")


class TestBalancePreconditions:
    """Funds preconditions are checked before any delta is applied"""

    def test_debit_cannot_touch_frozen_funds(self):
        with pytest.raises(InsufficientFunds) as exc_info:
            project_balance(state("100", "80"), "withdraw", Decimal("30"))
        assert exc_info.value.required == Decimal("30")
        assert exc_info.value.available == Decimal("20")

    def test_freeze_requires_available_balance(self):
        with pytest.raises(InsufficientFunds):
            project_balance(state("100", "90"), "freeze", Decimal("20"))

    def test_release_requires_frozen_balance(self):
        with pytest.raises(InsufficientFunds):
            project_balance(state("100", "10"), "release", Decimal("20"))

    def test_exact_available_amount_is_allowed(self):
        assert project_balance(state("50"), "withdraw", Decimal("50")) == state("0")

    def test_non_positive_amount_rejected(self):
        with pytest.raises(InvalidAmount):
            project_balance(state("50"), "deposit", Decimal("0"))


class TestReplay:
    """Folding confirmed history reproduces balances"""

    def test_freeze_then_refund_nets_zero(self):
        result = replay_balances([
            ("deposit", Decimal("1000")),
            ("freeze", Decimal("300")),
            ("release", Decimal("300")),
            ("refund", Decimal("300")),
        ])
        assert result == state("1000", "0")

    def test_replay_keeps_invariant(self):
        result = replay_balances([
            ("deposit", Decimal("500")),
            ("freeze", Decimal("200")),
            ("withdraw", Decimal("300")),
        ])
        assert result.is_consistent()
        assert result == state("200", "200")
