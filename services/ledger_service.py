"""
Ledger Service
==============

Append-only store of ledger transactions and per-user account balances.

Transactions are created ``pending`` and applied to the account exactly once
when confirmed. Confirmation locks the account row (SELECT ... FOR UPDATE),
validates the funds precondition through the balance projector, applies the
delta, flips the status and records platform income, all in one database
transaction.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from database import SessionLocal, managed_session
from models import Account, Transaction, TransactionStatus, TransactionType
from services.balance_projector import BalanceState, project_balance
from services.idempotency_service import IdempotencyGuard
from services.platform_revenue_service import PlatformRevenueService
from utils.datetime_helpers import get_naive_utc_now, period_start
from utils.decimal_precision import MonetaryDecimal
from utils.financial_operation_locker import SimpleFinancialLocker
from utils.ledger_exceptions import (
    AlreadyConfirmed,
    InsufficientFunds,
    InvalidState,
    LedgerError,
    NotFound,
)
from utils.transaction_metadata import normalize_metadata

logger = logging.getLogger(__name__)


def _coerce_transaction_type(transaction_type: Union[str, TransactionType]) -> TransactionType:
    if isinstance(transaction_type, TransactionType):
        return transaction_type
    try:
        return TransactionType(transaction_type)
    except ValueError as e:
        raise LedgerError(f"Unknown transaction type '{transaction_type}'") from e


class LedgerService:
    """Create, confirm and query ledger transactions"""

    def __init__(self, session_factory=None, idempotency_guard: IdempotencyGuard = None,
                 revenue_service: PlatformRevenueService = None):
        self.session_factory = session_factory or SessionLocal
        self.idempotency = idempotency_guard or IdempotencyGuard(self.session_factory)
        self.revenue = revenue_service or PlatformRevenueService(self.session_factory)
        self.locker = SimpleFinancialLocker(self.session_factory)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def ensure_account(self, user_id: str) -> None:
        """Create the user's account with zero balances if it does not exist yet"""
        if not user_id:
            raise NotFound("user_id is required")
        with managed_session(self.session_factory) as session:
            if session.get(Account, user_id) is not None:
                return
        try:
            with managed_session(self.session_factory) as session:
                session.add(Account(user_id=user_id, balance=Decimal("0"), frozen_balance=Decimal("0")))
            logger.info(f"🆕 ACCOUNT_CREATED: User {user_id}")
        except IntegrityError:
            # Created concurrently by another request
            logger.debug(f"ACCOUNT_CREATE_RACE: User {user_id}")

    def get_account(self, user_id: str) -> Optional[Account]:
        with managed_session(self.session_factory) as session:
            return session.get(Account, user_id)

    def get_balance(self, user_id: str) -> BalanceState:
        """Current balances; an unknown user has zero balances"""
        account = self.get_account(user_id)
        if account is None:
            return BalanceState(Decimal("0.00"), Decimal("0.00"))
        return BalanceState(Decimal(account.balance), Decimal(account.frozen_balance))

    def can_afford(self, user_id: str, amount) -> bool:
        amount = MonetaryDecimal.positive_amount(amount)
        return self.get_balance(user_id).available_balance >= amount

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_transaction(self, user_id: str, transaction_type, amount,
                           order_id: str = None, deal_id: str = None,
                           description: str = None, metadata: Dict[str, Any] = None,
                           idempotency_key: str = None) -> Transaction:
        """
        Record a pending transaction.

        A known ``idempotency_key`` returns the stored transaction unchanged
        without creating a row.
        """
        tx_type = _coerce_transaction_type(transaction_type)
        amount = MonetaryDecimal.positive_amount(amount, f"{tx_type.value} amount")
        extra_data = normalize_metadata(tx_type, metadata)

        existing = self.idempotency.find(idempotency_key)
        if existing is not None:
            self.idempotency.check_replay(existing, user_id, tx_type.value, amount)
            return existing

        self.ensure_account(user_id)

        def build() -> Transaction:
            return Transaction(
                user_id=user_id,
                transaction_type=tx_type.value,
                amount=amount,
                status=TransactionStatus.PENDING.value,
                order_id=order_id,
                deal_id=deal_id,
                description=description,
                extra_data=extra_data,
                idempotency_key=idempotency_key,
            )

        transaction = self.idempotency.insert_once(build)
        logger.info(
            f"📝 LEDGER_TX_CREATED: {transaction.id} {tx_type.value} {amount} "
            f"for user {user_id} order {order_id}"
        )
        return transaction

    def confirm_transaction(self, transaction_id: str, user_id: str) -> Transaction:
        """
        Apply a pending transaction to the user's balances.

        Raises InsufficientFunds (transaction marked rejected), AlreadyConfirmed,
        InvalidState (already rejected/failed), NotFound or TransientStoreFailure.
        """
        rejection: Optional[InsufficientFunds] = None

        with self.locker.lock_account_operation(user_id) as (session, account):
            transaction = (
                session.query(Transaction)
                .filter(Transaction.id == transaction_id)
                .with_for_update()
                .first()
            )
            if transaction is None or transaction.user_id != user_id:
                raise NotFound(f"Transaction {transaction_id} not found for user {user_id}")

            if transaction.status == TransactionStatus.CONFIRMED.value:
                # Keep the loaded row readable after the rollback
                session.expunge(transaction)
                logger.info(f"🔁 LEDGER_TX_ALREADY_CONFIRMED: {transaction_id}")
                raise AlreadyConfirmed(
                    f"Transaction {transaction_id} is already confirmed", transaction=transaction
                )
            if transaction.status != TransactionStatus.PENDING.value:
                raise InvalidState(
                    f"Transaction {transaction_id} is {transaction.status} and cannot be confirmed"
                )

            state = BalanceState(Decimal(account.balance), Decimal(account.frozen_balance))
            try:
                projected = project_balance(state, transaction.transaction_type, Decimal(transaction.amount))
            except InsufficientFunds as e:
                transaction.status = TransactionStatus.REJECTED.value
                transaction.failure_reason = f"{e.code}: {e.message}"
                rejection = e
            else:
                account.balance = projected.balance
                account.frozen_balance = projected.frozen_balance
                transaction.status = TransactionStatus.CONFIRMED.value
                transaction.confirmed_at = get_naive_utc_now()
                self.revenue.record_income(session, transaction)

        if rejection is not None:
            logger.warning(
                f"🚫 LEDGER_TX_REJECTED: {transaction_id} for user {user_id}: {rejection.message}"
            )
            raise rejection

        logger.info(
            f"✅ LEDGER_TX_CONFIRMED: {transaction_id} {transaction.transaction_type} "
            f"{transaction.amount} user {user_id} -> balance {account.balance} frozen {account.frozen_balance}"
        )
        return transaction

    def reject_transaction(self, transaction_id: str, user_id: str, reason: str,
                           status: str = TransactionStatus.REJECTED.value) -> Transaction:
        """Close a pending transaction without balance effect"""
        if status not in (TransactionStatus.REJECTED.value, TransactionStatus.FAILED.value):
            raise InvalidState(f"Cannot close a transaction as '{status}'")

        with self.locker.lock_account_operation(user_id) as (session, _account):
            transaction = (
                session.query(Transaction)
                .filter(Transaction.id == transaction_id)
                .with_for_update()
                .first()
            )
            if transaction is None or transaction.user_id != user_id:
                raise NotFound(f"Transaction {transaction_id} not found for user {user_id}")
            if transaction.status != TransactionStatus.PENDING.value:
                raise InvalidState(
                    f"Transaction {transaction_id} is {transaction.status} and cannot be {status}"
                )
            transaction.status = status
            transaction.failure_reason = reason

        logger.warning(f"🚫 LEDGER_TX_{status.upper()}: {transaction_id} user {user_id}: {reason}")
        return transaction

    def post_transaction(self, user_id: str, transaction_type, amount, **kwargs) -> Transaction:
        """
        Create and confirm in one call, safe to replay with the same key.

        A replayed key whose transaction was rejected for lack of funds raises
        InsufficientFunds again; any other closed transaction raises InvalidState.
        """
        transaction = self.create_transaction(user_id, transaction_type, amount, **kwargs)

        if transaction.status == TransactionStatus.CONFIRMED.value:
            return transaction
        if transaction.status != TransactionStatus.PENDING.value:
            reason = transaction.failure_reason or transaction.status
            if reason.startswith(InsufficientFunds.code):
                raise InsufficientFunds(
                    f"Transaction {transaction.id} was rejected earlier: {reason}"
                )
            raise InvalidState(f"Transaction {transaction.id} is {transaction.status}: {reason}")

        try:
            return self.confirm_transaction(transaction.id, transaction.user_id)
        except AlreadyConfirmed as e:
            return e.transaction

    def post_transactions(self, user_id: str, entries: List[Dict[str, Any]]) -> List[Transaction]:
        """
        Create several transactions of one user and confirm them together.

        Each entry holds the keyword arguments of ``create_transaction``. The
        pending rows are applied in order under a single account lock and
        commit. When one of them would break the balance invariants nothing is
        applied, the rows stay pending and InsufficientFunds is raised, so
        replaying the same entries can still complete the batch.
        """
        transactions = [self.create_transaction(user_id, **entry) for entry in entries]
        for transaction in transactions:
            if transaction.user_id != user_id:
                raise InvalidState(
                    f"Transaction {transaction.id} belongs to user {transaction.user_id}, not {user_id}"
                )
            if transaction.status not in (TransactionStatus.PENDING.value, TransactionStatus.CONFIRMED.value):
                raise InvalidState(
                    f"Transaction {transaction.id} is {transaction.status}: "
                    f"{transaction.failure_reason or transaction.status}"
                )

        pending_ids = [t.id for t in transactions if t.status == TransactionStatus.PENDING.value]
        if not pending_ids:
            return transactions

        applied: Dict[str, Transaction] = {}
        try:
            with self.locker.lock_account_operation(user_id) as (session, account):
                rows = {
                    row.id: row for row in
                    session.query(Transaction)
                    .filter(Transaction.id.in_(pending_ids))
                    .with_for_update()
                    .all()
                }
                state = BalanceState(Decimal(account.balance), Decimal(account.frozen_balance))
                now = get_naive_utc_now()
                for transaction_id in pending_ids:
                    row = rows[transaction_id]
                    if row.status == TransactionStatus.CONFIRMED.value:
                        # Confirmed by a concurrent replay
                        applied[row.id] = row
                        continue
                    if row.status != TransactionStatus.PENDING.value:
                        raise InvalidState(f"Transaction {row.id} is {row.status} and cannot be confirmed")
                    state = project_balance(state, row.transaction_type, Decimal(row.amount))
                    row.status = TransactionStatus.CONFIRMED.value
                    row.confirmed_at = now
                    self.revenue.record_income(session, row)
                    applied[row.id] = row
                account.balance = state.balance
                account.frozen_balance = state.frozen_balance
        except InsufficientFunds as e:
            logger.warning(
                f"🚫 LEDGER_BATCH_DEFERRED: {len(pending_ids)} transactions for user {user_id} "
                f"left pending: {e.message}"
            )
            raise

        logger.info(
            f"✅ LEDGER_BATCH_CONFIRMED: {', '.join(pending_ids)} user {user_id} "
            f"-> balance {state.balance} frozen {state.frozen_balance}"
        )
        return [applied.get(t.id, t) for t in transactions]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with managed_session(self.session_factory) as session:
            return session.get(Transaction, transaction_id)

    def get_transaction_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        return self.idempotency.find(idempotency_key)

    def get_user_transactions(self, user_id: str, limit: int = 50, offset: int = 0,
                              transaction_type: str = None, status: str = None) -> List[Transaction]:
        """Newest first"""
        with managed_session(self.session_factory) as session:
            query = session.query(Transaction).filter(Transaction.user_id == user_id)
            if transaction_type:
                query = query.filter(Transaction.transaction_type == _coerce_transaction_type(transaction_type).value)
            if status:
                query = query.filter(Transaction.status == TransactionStatus(status).value)
            return (
                query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .offset(max(offset, 0))
                .limit(max(limit, 0))
                .all()
            )

    def get_transaction_stats(self, user_id: str, period: str = "month", now=None) -> Dict[str, Any]:
        """Totals of the user's confirmed transactions over a week, month or year"""
        start = period_start(period, now)
        with managed_session(self.session_factory) as session:
            rows = (
                session.query(
                    Transaction.transaction_type,
                    func.coalesce(func.sum(Transaction.amount), 0),
                    func.count(Transaction.id),
                )
                .filter(
                    Transaction.user_id == user_id,
                    Transaction.status == TransactionStatus.CONFIRMED.value,
                    Transaction.created_at >= start,
                )
                .group_by(Transaction.transaction_type)
                .all()
            )

        totals = {tx_type: MonetaryDecimal.quantize_money(str(total)) for tx_type, total, _ in rows}
        incoming = sum(
            (totals.get(t.value, Decimal("0")) for t in
             (TransactionType.DEPOSIT, TransactionType.BONUS, TransactionType.REFUND)),
            Decimal("0"),
        )
        withdrawals = sum(
            (totals.get(t.value, Decimal("0")) for t in
             (TransactionType.WITHDRAW, TransactionType.FAST_WITHDRAW)),
            Decimal("0"),
        )
        commissions = totals.get(TransactionType.COMMISSION.value, Decimal("0"))
        spent = sum(
            (totals.get(t.value, Decimal("0")) for t in
             (TransactionType.SUBSCRIPTION_PAYMENT, TransactionType.PROMOTION, TransactionType.RELEASE)),
            Decimal("0"),
        )
        return {
            "period": period,
            "total_deposits": incoming,
            "total_withdrawals": withdrawals,
            "total_commissions": commissions,
            "total_spent": spent,
            "net_amount": incoming - withdrawals - commissions - spent,
            "transaction_count": sum(count for _, _, count in rows),
        }
