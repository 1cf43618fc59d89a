"""
Wallet deposits, gateway credits, withdrawals and fast withdrawals
"""

import pytest
from decimal import Decimal

from database import managed_session
from models import PlatformIncome, TransactionStatus
from utils.ledger_exceptions import InsufficientFunds, InvalidAmount, InvalidState, NotFound


class TestCredits:
    """Money coming into a wallet"""

    def test_deposit(self, wallet):
        tx = wallet.deposit("user-1", "150.00")
        assert tx.status == TransactionStatus.CONFIRMED.value
        assert wallet.get_balance("user-1").balance == Decimal("150.00")

    def test_gateway_callback_credited_once(self, wallet):
        first = wallet.credit_gateway_payment("user-1", "500", "Click", "ext-42")
        second = wallet.credit_gateway_payment("user-1", "500", "click", "ext-42")

        assert first.id == second.id
        assert first.idempotency_key == "gateway:click:ext-42"
        assert first.extra_data["provider"] == "click"
        assert wallet.get_balance("user-1").balance == Decimal("500")

    def test_gateway_payment_requires_reference(self, wallet):
        with pytest.raises(InvalidState):
            wallet.credit_gateway_payment("user-1", "500", "payme", "")

    def test_bonus_and_admin_top_up(self, wallet):
        wallet.add_bonus("user-1", "25", reason="referral")
        tx = wallet.admin_add_balance("user-1", "75", admin_id="admin-7")

        assert tx.extra_data == {"admin_id": "admin-7", "source": "admin"}
        assert wallet.get_balance("user-1").balance == Decimal("100")


class TestWithdrawals:
    """Money leaving a wallet"""

    def test_withdraw(self, wallet, fund):
        fund("user-1", "1000")
        wallet.withdraw("user-1", "400", destination="card-1234")
        assert wallet.get_balance("user-1").balance == Decimal("600")

    def test_withdraw_more_than_available_fails_without_ledger_row(self, wallet, ledger, fund):
        fund("user-1", "100")
        with pytest.raises(InsufficientFunds):
            wallet.withdraw("user-1", "200")
        assert ledger.get_user_transactions("user-1", transaction_type="withdraw") == []

    def test_withdraw_cannot_spend_frozen_funds(self, wallet, escrow, fund):
        fund("user-1", "1000")
        escrow.freeze("order-1", "user-1", "950")
        with pytest.raises(InsufficientFunds):
            wallet.withdraw("user-1", "100")

    @pytest.mark.parametrize("amount", ["5", "10000.01"])
    def test_withdraw_limits(self, wallet, fund, amount):
        fund("user-1", "20000")
        with pytest.raises(InvalidAmount):
            wallet.withdraw("user-1", amount)

    def test_withdraw_replay_does_not_debit_twice(self, wallet, fund):
        fund("user-1", "100")
        first = wallet.withdraw("user-1", "100", idempotency_key="wd-1")
        second = wallet.withdraw("user-1", "100", idempotency_key="wd-1")
        assert first.id == second.id
        assert wallet.get_balance("user-1").balance == Decimal("0")


class TestWithdrawalRequests:
    """Manual approval flow"""

    def test_request_then_approve(self, wallet, fund):
        fund("user-1", "300")
        request = wallet.request_withdrawal("user-1", "200", destination="card-1")
        assert request.status == TransactionStatus.PENDING.value
        assert wallet.get_balance("user-1").balance == Decimal("300")

        approved = wallet.approve_withdrawal(request.id, admin_id="admin-1")

        assert approved.status == TransactionStatus.CONFIRMED.value
        assert wallet.get_balance("user-1").balance == Decimal("100")

    def test_request_then_reject(self, wallet, fund):
        fund("user-1", "300")
        request = wallet.request_withdrawal("user-1", "200")

        rejected = wallet.reject_withdrawal(request.id, "suspicious destination")

        assert rejected.status == TransactionStatus.REJECTED.value
        assert wallet.get_balance("user-1").balance == Decimal("300")
        with pytest.raises(InvalidState):
            wallet.approve_withdrawal(request.id)

    def test_approval_fails_when_funds_spent_meanwhile(self, wallet, fund):
        fund("user-1", "300")
        request = wallet.request_withdrawal("user-1", "200")
        wallet.withdraw("user-1", "250")

        with pytest.raises(InsufficientFunds):
            wallet.approve_withdrawal(request.id)

    def test_approve_unknown_withdrawal(self, wallet, fund):
        fund("user-1", "300")
        deposit_tx = wallet.deposit("user-1", "10")
        with pytest.raises(NotFound):
            wallet.approve_withdrawal(deposit_tx.id)
        with pytest.raises(NotFound):
            wallet.approve_withdrawal("missing")


class TestFastWithdraw:
    """Immediate payout with a platform fee"""

    def test_fee_charged_as_commission(self, wallet, fund, session_factory):
        fund("user-1", "1000")

        withdraw_tx, fee_tx = wallet.fast_withdraw("user-1", "500", idempotency_key="fw-1")

        assert withdraw_tx.transaction_type == "fast_withdraw"
        assert fee_tx.transaction_type == "commission"
        assert fee_tx.amount == Decimal("10.00")
        assert fee_tx.extra_data["commission_source"] == "fast_withdraw"
        assert wallet.get_balance("user-1").balance == Decimal("490")
        with managed_session(session_factory) as session:
            assert session.query(PlatformIncome).one().amount == Decimal("10.00")

    def test_fee_must_be_affordable(self, wallet, ledger, fund):
        fund("user-1", "500")
        with pytest.raises(InsufficientFunds):
            wallet.fast_withdraw("user-1", "500")
        assert ledger.get_balance("user-1").balance == Decimal("500")

    def test_replay_charges_once(self, wallet, fund):
        fund("user-1", "1000")
        first = wallet.fast_withdraw("user-1", "500", idempotency_key="fw-2")
        second = wallet.fast_withdraw("user-1", "500", idempotency_key="fw-2")

        assert [tx.id for tx in first] == [tx.id for tx in second]
        assert wallet.get_balance("user-1").balance == Decimal("490")

    def test_fee_uses_setting(self, wallet, settings_service):
        settings_service.update_platform_setting("fast_withdraw_commission", "3")
        assert wallet.calculate_fast_withdraw_fee("1000") == Decimal("30.00")

    def test_zero_fee_writes_no_commission(self, wallet, settings_service, fund):
        settings_service.update_platform_setting("fast_withdraw_commission", "0")
        fund("user-1", "100")
        _, fee_tx = wallet.fast_withdraw("user-1", "100")
        assert fee_tx is None
