"""
Tests for ledger transaction creation, confirmation and queries
"""

import pytest
from decimal import Decimal
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from database import managed_session
from models import PlatformIncome, Transaction, TransactionStatus
from utils.financial_operation_locker import SimpleFinancialLocker
from utils.ledger_exceptions import (
    AlreadyConfirmed,
    InsufficientFunds,
    InvalidAmount,
    InvalidMetadata,
    InvalidState,
    NotFound,
    TransientStoreFailure,
)


class TestCreateTransaction:
    """Pending transactions and the idempotency contract"""

    def test_create_is_pending_and_has_no_balance_effect(self, ledger):
        tx = ledger.create_transaction("client-1", "deposit", "100.00")
        assert tx.status == TransactionStatus.PENDING.value
        assert tx.amount == Decimal("100.00")
        assert ledger.get_balance("client-1").balance == Decimal("0")

    def test_account_created_lazily(self, ledger):
        assert ledger.get_account("new-user") is None
        ledger.create_transaction("new-user", "deposit", "1")
        assert ledger.get_account("new-user") is not None

    @pytest.mark.parametrize("amount", ["0", "-5", "abc"])
    def test_invalid_amount_rejected(self, ledger, amount):
        with pytest.raises(InvalidAmount):
            ledger.create_transaction("client-1", "deposit", amount)

    def test_amount_rounded_half_up(self, ledger):
        tx = ledger.create_transaction("client-1", "deposit", "10.005")
        assert tx.amount == Decimal("10.01")

    def test_same_key_returns_same_transaction(self, ledger, session_factory):
        first = ledger.create_transaction("client-1", "deposit", "50", idempotency_key="dep-1")
        second = ledger.create_transaction("client-1", "deposit", "50", idempotency_key="dep-1")
        assert first.id == second.id
        with managed_session(session_factory) as session:
            assert session.query(Transaction).filter_by(idempotency_key="dep-1").count() == 1

    def test_reused_key_with_other_arguments_returns_stored_row(self, ledger):
        first = ledger.create_transaction("client-1", "deposit", "50", idempotency_key="dep-2")
        second = ledger.create_transaction("client-1", "deposit", "75", idempotency_key="dep-2")
        assert second.id == first.id
        assert second.amount == Decimal("50")

    def test_unknown_metadata_key_rejected(self, ledger):
        with pytest.raises(InvalidMetadata):
            ledger.create_transaction("client-1", "deposit", "10", metadata={"unexpected": "x"})

    def test_metadata_decimals_stored_as_strings(self, ledger):
        tx = ledger.create_transaction(
            "client-1", "commission", "10",
            metadata={"commission_percent": Decimal("5.00"), "commission_source": "global"},
        )
        assert tx.extra_data == {"commission_percent": "5.00", "commission_source": "global"}


class TestConfirmTransaction:
    """Locked confirmation applies each transaction exactly once"""

    def test_confirm_deposit_updates_balance(self, ledger):
        tx = ledger.create_transaction("client-1", "deposit", "250")
        confirmed = ledger.confirm_transaction(tx.id, "client-1")
        assert confirmed.status == TransactionStatus.CONFIRMED.value
        assert confirmed.confirmed_at is not None
        assert ledger.get_balance("client-1").balance == Decimal("250")

    def test_second_confirm_raises_already_confirmed(self, ledger):
        tx = ledger.create_transaction("client-1", "deposit", "250")
        ledger.confirm_transaction(tx.id, "client-1")
        with pytest.raises(AlreadyConfirmed) as exc_info:
            ledger.confirm_transaction(tx.id, "client-1")
        assert exc_info.value.transaction.id == tx.id
        assert ledger.get_balance("client-1").balance == Decimal("250")

    def test_insufficient_funds_marks_transaction_rejected(self, ledger, fund):
        fund("client-1", "100")
        tx = ledger.create_transaction("client-1", "withdraw", "150")
        with pytest.raises(InsufficientFunds):
            ledger.confirm_transaction(tx.id, "client-1")

        stored = ledger.get_transaction(tx.id)
        assert stored.status == TransactionStatus.REJECTED.value
        assert stored.failure_reason.startswith("insufficient_funds")
        assert ledger.get_balance("client-1").balance == Decimal("100")

    def test_rejected_transaction_cannot_be_confirmed(self, ledger, fund):
        fund("client-1", "10")
        tx = ledger.create_transaction("client-1", "withdraw", "20")
        with pytest.raises(InsufficientFunds):
            ledger.confirm_transaction(tx.id, "client-1")
        with pytest.raises(InvalidState):
            ledger.confirm_transaction(tx.id, "client-1")

    def test_confirm_for_other_user_is_not_found(self, ledger):
        tx = ledger.create_transaction("client-1", "deposit", "10")
        ledger.ensure_account("client-2")
        with pytest.raises(NotFound):
            ledger.confirm_transaction(tx.id, "client-2")
        assert ledger.get_balance("client-2").balance == Decimal("0")

    def test_unknown_transaction_is_not_found(self, ledger):
        ledger.ensure_account("client-1")
        with pytest.raises(NotFound):
            ledger.confirm_transaction("missing", "client-1")

    def test_commission_confirmation_records_platform_income(self, ledger, fund, session_factory):
        fund("carrier-1", "100")
        tx = ledger.post_transaction("carrier-1", "commission", "5", order_id="order-1")
        with managed_session(session_factory) as session:
            income = session.query(PlatformIncome).one()
            assert income.source == "commission"
            assert income.amount == Decimal("5")
            assert income.source_transaction_id == tx.id
            assert income.order_id == "order-1"

    def test_deposit_records_no_platform_income(self, fund, session_factory):
        fund("client-1", "100")
        with managed_session(session_factory) as session:
            assert session.query(PlatformIncome).count() == 0


class TestPostAndReject:
    """Create-and-confirm helper and explicit rejection"""

    def test_post_transaction_replay_is_idempotent(self, ledger):
        first = ledger.post_transaction("client-1", "deposit", "40", idempotency_key="post-1")
        second = ledger.post_transaction("client-1", "deposit", "40", idempotency_key="post-1")
        assert first.id == second.id
        assert ledger.get_balance("client-1").balance == Decimal("40")

    def test_post_transaction_replay_of_rejected_raises_insufficient_funds(self, ledger):
        ledger.ensure_account("client-1")
        with pytest.raises(InsufficientFunds):
            ledger.post_transaction("client-1", "withdraw", "40", idempotency_key="w-1")
        with pytest.raises(InsufficientFunds):
            ledger.post_transaction("client-1", "withdraw", "40", idempotency_key="w-1")

    def test_reject_pending_transaction(self, ledger):
        tx = ledger.create_transaction("client-1", "withdraw", "10")
        rejected = ledger.reject_transaction(tx.id, "client-1", "bank details invalid")
        assert rejected.status == TransactionStatus.REJECTED.value
        assert rejected.failure_reason == "bank details invalid"

    def test_reject_confirmed_transaction_fails(self, ledger):
        tx = ledger.post_transaction("client-1", "deposit", "10")
        with pytest.raises(InvalidState):
            ledger.reject_transaction(tx.id, "client-1", "too late")


class TestPostTransactions:
    """Several rows of one user confirmed under one lock"""

    def test_batch_applies_in_order(self, ledger, session_factory):
        credit, fee = ledger.post_transactions("carrier-1", [
            {"transaction_type": "deposit", "amount": "300", "idempotency_key": "b-1:credit"},
            {"transaction_type": "commission", "amount": "15", "idempotency_key": "b-1:fee"},
        ])

        assert credit.status == TransactionStatus.CONFIRMED.value
        assert fee.status == TransactionStatus.CONFIRMED.value
        assert ledger.get_balance("carrier-1").balance == Decimal("285")
        with managed_session(session_factory) as session:
            assert session.query(PlatformIncome).count() == 1

    def test_short_batch_stays_pending_and_completes_on_replay(self, ledger, fund):
        fund("client-1", "10")
        entries = [
            {"transaction_type": "withdraw", "amount": "8", "idempotency_key": "b-2:first"},
            {"transaction_type": "withdraw", "amount": "8", "idempotency_key": "b-2:second"},
        ]

        with pytest.raises(InsufficientFunds):
            ledger.post_transactions("client-1", entries)

        assert ledger.get_balance("client-1").balance == Decimal("10")
        for key in ("b-2:first", "b-2:second"):
            assert ledger.get_transaction_by_idempotency_key(key).status == TransactionStatus.PENDING.value

        fund("client-1", "6")
        first, second = ledger.post_transactions("client-1", entries)

        assert first.status == second.status == TransactionStatus.CONFIRMED.value
        assert ledger.get_balance("client-1").balance == Decimal("0")

    def test_batch_replay_is_idempotent(self, ledger):
        entries = [{"transaction_type": "deposit", "amount": "5", "idempotency_key": "b-3"}]
        ledger.post_transactions("client-1", entries)
        ledger.post_transactions("client-1", entries)
        assert ledger.get_balance("client-1").balance == Decimal("5")

    def test_batch_with_rejected_row_is_invalid_state(self, ledger):
        ledger.ensure_account("client-1")
        with pytest.raises(InsufficientFunds):
            ledger.post_transaction("client-1", "withdraw", "5", idempotency_key="b-4")
        with pytest.raises(InvalidState):
            ledger.post_transactions(
                "client-1", [{"transaction_type": "withdraw", "amount": "5", "idempotency_key": "b-4"}]
            )


class TestInterleavedFreezes:
    """Two freezes created before either is confirmed cannot over-freeze"""

    def test_second_confirmation_rejected(self, ledger, fund):
        fund("client-1", "500")
        first = ledger.create_transaction("client-1", "freeze", "300", order_id="order-1")
        second = ledger.create_transaction("client-1", "freeze", "300", order_id="order-2")

        ledger.confirm_transaction(first.id, "client-1")
        with pytest.raises(InsufficientFunds):
            ledger.confirm_transaction(second.id, "client-1")

        balance = ledger.get_balance("client-1")
        assert balance.frozen_balance == Decimal("300")
        assert balance.available_balance == Decimal("200")
        assert ledger.get_transaction(second.id).status == TransactionStatus.REJECTED.value

    def test_interleaved_escrow_freezes(self, escrow, ledger, fund, monkeypatch):
        """Both requests pass the affordability check before either hold is confirmed"""
        fund("client-1", "500")
        monkeypatch.setattr(escrow, "check_user_can_afford", lambda user_id, amount: True)

        escrow.freeze("order-1", "client-1", "300")
        with pytest.raises(InsufficientFunds):
            escrow.freeze("order-2", "client-1", "300")

        assert escrow.get_escrow_operation("order-2") is None
        assert ledger.get_balance("client-1").frozen_balance == Decimal("300")


class TestQueries:
    """Read paths"""

    def test_user_transactions_filtered_by_type_and_status(self, ledger, fund):
        fund("client-1", "100")
        ledger.post_transaction("client-1", "withdraw", "10")
        ledger.create_transaction("client-1", "withdraw", "20")
        fund("client-2", "100")

        withdrawals = ledger.get_user_transactions("client-1", transaction_type="withdraw")
        assert len(withdrawals) == 2
        pending = ledger.get_user_transactions("client-1", status="pending")
        assert [tx.amount for tx in pending] == [Decimal("20")]
        assert len(ledger.get_user_transactions("client-1", limit=1)) == 1

    def test_transaction_by_idempotency_key(self, ledger):
        tx = ledger.create_transaction("client-1", "deposit", "5", idempotency_key="lookup-1")
        assert ledger.get_transaction_by_idempotency_key("lookup-1").id == tx.id
        assert ledger.get_transaction_by_idempotency_key("missing") is None

    def test_unknown_user_has_zero_balance(self, ledger):
        balance = ledger.get_balance("nobody")
        assert balance.balance == Decimal("0")
        assert balance.available_balance == Decimal("0")

    def test_can_afford_ignores_frozen_funds(self, ledger, fund):
        fund("client-1", "100")
        ledger.post_transaction("client-1", "freeze", "70")
        assert ledger.can_afford("client-1", "30")
        assert not ledger.can_afford("client-1", "31")

    def test_transaction_stats(self, ledger, fund):
        fund("client-1", "500")
        ledger.post_transaction("client-1", "bonus", "50")
        ledger.post_transaction("client-1", "withdraw", "100")
        ledger.post_transaction("client-1", "commission", "10")
        ledger.create_transaction("client-1", "withdraw", "1")  # pending, ignored

        stats = ledger.get_transaction_stats("client-1", "week")
        assert stats["total_deposits"] == Decimal("550")
        assert stats["total_withdrawals"] == Decimal("100")
        assert stats["total_commissions"] == Decimal("10")
        assert stats["net_amount"] == Decimal("440")
        assert stats["transaction_count"] == 4


class TestLocker:
    """Store failures under the row lock surface as retryable errors"""

    def test_operational_error_becomes_transient_failure(self):
        session = MagicMock()
        session.query.side_effect = OperationalError("SELECT", {}, Exception("lock timeout"))
        locker = SimpleFinancialLocker(session_factory=lambda: session)

        with pytest.raises(TransientStoreFailure) as exc_info:
            with locker.lock_account_operation("client-1"):
                pass

        assert exc_info.value.retryable
        session.rollback.assert_called_once()
        session.close.assert_called_once()
