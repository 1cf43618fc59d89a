"""
Wallet Service
Deposits, gateway credits, withdrawals and bonuses on top of the ledger
"""

import logging
from decimal import Decimal
from typing import Optional, Tuple

from models import Transaction, TransactionStatus, TransactionType
from services.balance_projector import BalanceState
from services.idempotency_service import IdempotencyKeyGenerator
from services.ledger_service import LedgerService
from services.platform_settings_service import PlatformSettingsService
from utils.decimal_precision import MonetaryDecimal
from utils.ledger_exceptions import InsufficientFunds, InvalidAmount, InvalidState, NotFound

logger = logging.getLogger(__name__)


class WalletService:
    """User-facing money movements that touch a single account"""

    def __init__(self, ledger: LedgerService = None, settings_service: PlatformSettingsService = None):
        self.ledger = ledger or LedgerService()
        self.settings = settings_service or PlatformSettingsService(self.ledger.session_factory)

    def get_balance(self, user_id: str) -> BalanceState:
        return self.ledger.get_balance(user_id)

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def deposit(self, user_id: str, amount, description: str = None,
                idempotency_key: str = None, metadata: dict = None) -> Transaction:
        amount = MonetaryDecimal.positive_amount(amount, "deposit amount")
        transaction = self.ledger.post_transaction(
            user_id,
            TransactionType.DEPOSIT,
            amount,
            description=description or f"Deposit of {amount}",
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        logger.info(f"💵 DEPOSIT_COMPLETED: user {user_id} {amount} (tx {transaction.id})")
        return transaction

    def credit_gateway_payment(self, user_id: str, amount, provider: str, external_id: str) -> Transaction:
        """
        Credit a payment confirmed by a gateway callback (Click, Payme).

        Gateways resend callbacks; the provider payment id makes the credit
        happen once.
        """
        if not provider or not external_id:
            raise InvalidState("Gateway payment requires provider and external_id")
        return self.deposit(
            user_id,
            amount,
            description=f"Top-up via {provider}",
            idempotency_key=IdempotencyKeyGenerator.gateway_key(provider, external_id),
            metadata={"provider": provider.lower(), "external_id": str(external_id), "source": "gateway"},
        )

    def add_bonus(self, user_id: str, amount, reason: str, idempotency_key: str = None) -> Transaction:
        amount = MonetaryDecimal.positive_amount(amount, "bonus amount")
        transaction = self.ledger.post_transaction(
            user_id,
            TransactionType.BONUS,
            amount,
            description=f"Bonus: {reason}",
            metadata={"reason": reason},
            idempotency_key=idempotency_key,
        )
        logger.info(f"🎁 BONUS_CREDITED: user {user_id} {amount} ({reason})")
        return transaction

    def admin_add_balance(self, user_id: str, amount, admin_id: str, description: str = None,
                          idempotency_key: str = None) -> Transaction:
        """Manual top-up by an administrator, recorded as a deposit"""
        return self.deposit(
            user_id,
            amount,
            description=description or "Balance added by administrator",
            idempotency_key=idempotency_key,
            metadata={"admin_id": admin_id, "source": "admin"},
        )

    # ------------------------------------------------------------------
    # Debits
    # ------------------------------------------------------------------

    def _validate_withdraw_amount(self, amount) -> Decimal:
        amount = MonetaryDecimal.positive_amount(amount, "withdraw amount")
        settings = self.settings.get_platform_settings()
        if amount < settings.min_withdraw_amount:
            raise InvalidAmount(f"Minimum withdrawal is {settings.min_withdraw_amount}")
        if amount > settings.max_withdraw_amount:
            raise InvalidAmount(f"Maximum withdrawal is {settings.max_withdraw_amount}")
        return amount

    def withdraw(self, user_id: str, amount, description: str = None,
                 idempotency_key: str = None, destination: str = None) -> Transaction:
        """Debit immediately; fails with InsufficientFunds when available balance is short"""
        amount = self._validate_withdraw_amount(amount)
        replay = self.ledger.get_transaction_by_idempotency_key(idempotency_key) is not None
        if not replay and not self.ledger.can_afford(user_id, amount):
            raise InsufficientFunds(
                f"User {user_id} cannot withdraw {amount}",
                required=amount,
                available=self.ledger.get_balance(user_id).available_balance,
            )
        transaction = self.ledger.post_transaction(
            user_id,
            TransactionType.WITHDRAW,
            amount,
            description=description or f"Withdrawal of {amount}",
            metadata={"destination": destination},
            idempotency_key=idempotency_key,
        )
        logger.info(f"🏧 WITHDRAW_COMPLETED: user {user_id} {amount} (tx {transaction.id})")
        return transaction

    def request_withdrawal(self, user_id: str, amount, destination: str = None,
                           idempotency_key: str = None) -> Transaction:
        """Create a pending withdrawal for manual approval; nothing is debited yet"""
        amount = self._validate_withdraw_amount(amount)
        transaction = self.ledger.create_transaction(
            user_id,
            TransactionType.WITHDRAW,
            amount,
            description=f"Withdrawal request of {amount}",
            metadata={"destination": destination},
            idempotency_key=idempotency_key,
        )
        logger.info(f"📝 WITHDRAW_REQUESTED: user {user_id} {amount} (tx {transaction.id})")
        return transaction

    def approve_withdrawal(self, transaction_id: str, admin_id: str = None) -> Transaction:
        transaction = self._pending_withdrawal(transaction_id)
        confirmed = self.ledger.confirm_transaction(transaction.id, transaction.user_id)
        logger.info(f"✅ WITHDRAW_APPROVED: tx {transaction_id} by {admin_id or 'system'}")
        return confirmed

    def reject_withdrawal(self, transaction_id: str, reason: str, admin_id: str = None) -> Transaction:
        transaction = self._pending_withdrawal(transaction_id)
        rejected = self.ledger.reject_transaction(transaction.id, transaction.user_id, reason)
        logger.info(f"🚫 WITHDRAW_REJECTED_BY_ADMIN: tx {transaction_id} by {admin_id or 'system'}")
        return rejected

    def _pending_withdrawal(self, transaction_id: str) -> Transaction:
        transaction = self.ledger.get_transaction(transaction_id)
        if transaction is None or transaction.transaction_type != TransactionType.WITHDRAW.value:
            raise NotFound(f"Withdrawal {transaction_id} not found")
        if transaction.status != TransactionStatus.PENDING.value:
            raise InvalidState(f"Withdrawal {transaction_id} is already {transaction.status}")
        return transaction

    def calculate_fast_withdraw_fee(self, amount) -> Decimal:
        settings = self.settings.get_platform_settings()
        return MonetaryDecimal.percent_of(amount, settings.fast_withdraw_commission)

    def fast_withdraw(self, user_id: str, amount, idempotency_key: str = None,
                      destination: str = None) -> Tuple[Transaction, Optional[Transaction]]:
        """
        Immediate payout with a platform fee of ``fast_withdraw_commission`` percent.

        Amount and fee must both be covered by the available balance. The fee is
        a separate commission transaction so it shows up as platform income.
        """
        amount = self._validate_withdraw_amount(amount)
        fee = self.calculate_fast_withdraw_fee(amount)
        settings = self.settings.get_platform_settings()

        withdraw_key = IdempotencyKeyGenerator.derived_key(idempotency_key, "withdraw")
        fee_key = IdempotencyKeyGenerator.derived_key(idempotency_key, "fee")

        already_started = self.ledger.get_transaction_by_idempotency_key(withdraw_key) is not None
        if not already_started and not self.ledger.can_afford(user_id, amount + fee):
            raise InsufficientFunds(
                f"User {user_id} cannot fast-withdraw {amount} plus fee {fee}",
                required=amount + fee,
                available=self.ledger.get_balance(user_id).available_balance,
            )

        withdraw_tx = self.ledger.post_transaction(
            user_id,
            TransactionType.FAST_WITHDRAW,
            amount,
            description=f"Fast withdrawal of {amount}",
            metadata={"destination": destination, "fee_transaction_key": fee_key},
            idempotency_key=withdraw_key,
        )

        fee_tx = None
        if fee > 0:
            fee_tx = self.ledger.post_transaction(
                user_id,
                TransactionType.COMMISSION,
                fee,
                description=f"Fast withdrawal fee ({settings.fast_withdraw_commission}%)",
                metadata={
                    "commission_percent": settings.fast_withdraw_commission,
                    "commission_source": "fast_withdraw",
                    "withdraw_transaction_key": withdraw_key,
                },
                idempotency_key=fee_key,
            )

        logger.info(f"⚡ FAST_WITHDRAW_COMPLETED: user {user_id} {amount} fee {fee}")
        return withdraw_tx, fee_tx
