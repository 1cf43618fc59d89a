"""
Escrow Service
==============

Holds a client's funds for an order and settles them exactly once.

    freeze   client available -> client frozen             (status: frozen)
    release  client frozen -> carrier, commission -> platform (status: released)
    refund   client frozen -> client available              (status: refunded)

Every ledger step carries an idempotency key derived from the order id and
the step name, and is confirmed before the next one starts. The carrier's
payout and the commission it owes are confirmed together under one account
lock, so the gross payout is never spendable on its own. A failure between
steps leaves the operation ``frozen`` with some steps confirmed; replaying the
same call finishes the remaining steps. Nothing is rolled back.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database import SessionLocal, managed_session
from models import EscrowOperation, EscrowStatus, TransactionStatus, TransactionType
from services.commission_service import CommissionCalculation, CommissionResolver
from services.idempotency_service import EscrowStep, IdempotencyKeyGenerator
from services.ledger_service import LedgerService
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_state_validator import EscrowStateValidator
from utils.financial_operation_locker import SimpleFinancialLocker
from utils.ledger_exceptions import (
    AlreadyFrozen,
    InsufficientFunds,
    InvalidAmount,
    InvalidState,
    LedgerError,
    NotFound,
)

logger = logging.getLogger(__name__)

SETTLEMENT_RELEASE = "release"
SETTLEMENT_REFUND = "refund"

_CLOSED_TRANSACTION_STATUSES = (TransactionStatus.REJECTED.value, TransactionStatus.FAILED.value)


class EscrowCoordinator:
    """Freeze, release and refund order funds through the ledger"""

    def __init__(self, ledger: LedgerService = None, commission_resolver: CommissionResolver = None,
                 session_factory=None):
        if session_factory is None:
            session_factory = ledger.session_factory if ledger is not None else SessionLocal
        self.session_factory = session_factory
        self.ledger = ledger or LedgerService(self.session_factory)
        self.commission = commission_resolver or CommissionResolver(self.session_factory)
        self.locker = SimpleFinancialLocker(self.session_factory)

    # ------------------------------------------------------------------
    # Freeze
    # ------------------------------------------------------------------

    def freeze(self, order_id: str, client_id: str, amount, idempotency_key: str = None,
               carrier_id: str = None, deal_id: str = None, description: str = None) -> EscrowOperation:
        """Move ``amount`` of the client's available balance into escrow for the order"""
        amount = MonetaryDecimal.positive_amount(amount, "escrow amount")

        existing = self.get_escrow_operation(order_id)
        if existing is not None:
            return self._existing_freeze(existing, idempotency_key)

        freeze_key, freeze_tx = self._freeze_step_key(order_id)
        recovering = freeze_tx is not None and freeze_tx.status == TransactionStatus.CONFIRMED.value

        # Fail fast before any ledger row is written
        if not recovering and not self.check_user_can_afford(client_id, amount):
            available = self.ledger.get_balance(client_id).available_balance
            logger.warning(
                f"🚫 ESCROW_FREEZE_INSUFFICIENT_FUNDS: order {order_id} client {client_id} "
                f"needs {amount}, available {available}"
            )
            raise InsufficientFunds(
                f"Client {client_id} cannot afford {amount} for order {order_id}",
                required=amount,
                available=available,
            )

        transaction = self.ledger.post_transaction(
            client_id,
            TransactionType.FREEZE,
            amount,
            order_id=order_id,
            deal_id=deal_id,
            description=description or f"Escrow hold for order {order_id}",
            metadata={
                "escrow_step": EscrowStep.FREEZE.value,
                "escrow_request_key": idempotency_key,
                "carrier_id": carrier_id,
            },
            idempotency_key=freeze_key,
        )

        try:
            with managed_session(self.session_factory) as session:
                operation = EscrowOperation(
                    order_id=order_id,
                    deal_id=deal_id,
                    client_id=transaction.user_id,
                    carrier_id=carrier_id,
                    amount=Decimal(transaction.amount),
                    status=EscrowStatus.FROZEN.value,
                    extra_data={
                        "freeze_transaction_id": transaction.id,
                        "freeze_request_key": idempotency_key,
                    },
                )
                session.add(operation)
        except IntegrityError:
            # Another request froze the same order; both shared the freeze step key
            operation = self.get_escrow_operation(order_id)
            if operation is None:
                raise
            return self._existing_freeze(operation, idempotency_key, transaction.id)

        logger.info(
            f"🔒 ESCROW_FROZEN: order {order_id} client {client_id} amount {amount} "
            f"(tx {transaction.id})"
        )
        return operation

    def _existing_freeze(self, operation: EscrowOperation, idempotency_key: Optional[str],
                         transaction_id: str = None) -> EscrowOperation:
        extra = operation.extra_data or {}
        same_request = idempotency_key is not None and extra.get("freeze_request_key") == idempotency_key
        same_transaction = transaction_id is not None and extra.get("freeze_transaction_id") == transaction_id
        if same_request or same_transaction:
            logger.info(f"🔁 ESCROW_FREEZE_REPLAY: order {operation.order_id}")
            return operation
        if operation.status == EscrowStatus.FROZEN.value:
            raise AlreadyFrozen(f"Order {operation.order_id} already has an active escrow hold")
        raise InvalidState(f"Escrow for order {operation.order_id} is already {operation.status}")

    def _freeze_step_key(self, order_id: str):
        """
        Freeze key for the order's next attempt.

        A freeze rejected for lack of funds burns its key, so the next attempt
        chains a new key off the rejected transaction. Concurrent callers walk
        the same chain and land on the same key.
        """
        key = IdempotencyKeyGenerator.escrow_step_key(order_id, EscrowStep.FREEZE)
        transaction = self.ledger.get_transaction_by_idempotency_key(key)
        while transaction is not None and transaction.status in _CLOSED_TRANSACTION_STATUSES:
            key = f"{IdempotencyKeyGenerator.escrow_step_key(order_id, EscrowStep.FREEZE)}:after:{transaction.id}"
            transaction = self.ledger.get_transaction_by_idempotency_key(key)
        return key, transaction

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(self, order_id: str, carrier_id: str, amount, commission_amount,
                idempotency_key: str = None, description: str = None,
                commission_calculation: CommissionCalculation = None) -> EscrowOperation:
        """
        Pay the held funds to the carrier and charge the commission.

        The carrier is credited the gross amount and debited
        ``commission_amount`` in the same confirmation, netting
        ``amount - commission_amount``. If the carrier cannot cover the
        commission both rows stay pending and a replay completes them.
        ``commission_calculation`` only annotates the ledger rows with how the
        commission was priced.
        """
        amount = MonetaryDecimal.positive_amount(amount, "release amount")
        commission_amount = MonetaryDecimal.non_negative_amount(commission_amount, "commission amount")
        if commission_amount > amount:
            raise InvalidAmount(f"Commission {commission_amount} exceeds release amount {amount}")

        operation = self._require_frozen(order_id, EscrowStatus.RELEASED)
        if Decimal(operation.amount) != amount:
            raise InvalidAmount(
                f"Release amount {amount} does not match escrowed amount {operation.amount} for order {order_id}"
            )
        if operation.carrier_id and operation.carrier_id != carrier_id:
            raise InvalidState(
                f"Order {order_id} is assigned to carrier {operation.carrier_id}, not {carrier_id}"
            )

        self._claim_settlement(order_id, SETTLEMENT_RELEASE)
        client_id = operation.client_id
        payout_description = description or f"Payout for order {order_id}"

        # (1) settle the client's frozen funds
        release_tx = self.ledger.post_transaction(
            client_id,
            TransactionType.RELEASE,
            amount,
            order_id=order_id,
            deal_id=operation.deal_id,
            description=f"Escrow release for order {order_id}",
            metadata={"escrow_step": EscrowStep.RELEASE.value, "carrier_id": carrier_id,
                      "escrow_request_key": idempotency_key},
            idempotency_key=IdempotencyKeyGenerator.escrow_step_key(order_id, EscrowStep.RELEASE),
        )

        # (2) credit the carrier and (3) charge the platform commission, applied together
        pricing = {}
        if commission_calculation is not None:
            pricing = {
                "commission_percent": commission_calculation.percent,
                "commission_source": commission_calculation.source.value,
                "applied_rule": commission_calculation.applied_rule,
            }
        carrier_entries = [{
            "transaction_type": TransactionType.DEPOSIT,
            "amount": amount,
            "order_id": order_id,
            "deal_id": operation.deal_id,
            "description": payout_description,
            "metadata": {"escrow_step": EscrowStep.PAYOUT.value, "client_id": client_id,
                         "gross_amount": amount, "escrow_request_key": idempotency_key},
            "idempotency_key": IdempotencyKeyGenerator.escrow_step_key(order_id, EscrowStep.PAYOUT),
        }]
        if commission_amount > 0:
            carrier_entries.append({
                "transaction_type": TransactionType.COMMISSION,
                "amount": commission_amount,
                "order_id": order_id,
                "deal_id": operation.deal_id,
                "description": f"Platform commission for order {order_id}",
                "metadata": {"escrow_step": EscrowStep.COMMISSION.value, "order_amount": amount,
                             "escrow_request_key": idempotency_key, **pricing},
                "idempotency_key": IdempotencyKeyGenerator.escrow_step_key(order_id, EscrowStep.COMMISSION),
            })
        carrier_transactions = self.ledger.post_transactions(carrier_id, carrier_entries)
        payout_tx = carrier_transactions[0]
        commission_tx = carrier_transactions[1] if len(carrier_transactions) > 1 else None

        operation = self._finalize(order_id, EscrowStatus.RELEASED, {
            "release_transaction_id": release_tx.id,
            "payout_transaction_id": payout_tx.id,
            "commission_transaction_id": commission_tx.id if commission_tx else None,
            "commission_amount": str(commission_amount),
            "net_amount": str(amount - commission_amount),
            "release_request_key": idempotency_key,
            **{key: str(value) for key, value in pricing.items()},
        }, carrier_id=carrier_id)

        logger.info(
            f"✅ ESCROW_RELEASED: order {order_id} {amount} to carrier {carrier_id} "
            f"(commission {commission_amount}, net {amount - commission_amount})"
        )
        return operation

    def release_with_commission(self, order_id: str, carrier_id: str, idempotency_key: str = None,
                                description: str = None) -> Tuple[EscrowOperation, CommissionCalculation]:
        """Price the commission for the carrier at release time, then release"""
        operation = self._require_frozen(order_id, EscrowStatus.RELEASED)
        calculation = self.commission.calculate_commission(carrier_id, Decimal(operation.amount))
        logger.info(
            f"💹 ESCROW_COMMISSION_RESOLVED: order {order_id} carrier {carrier_id} "
            f"{calculation.percent}% ({calculation.source.value}) = {calculation.commission_amount}"
        )

        operation = self.release(
            order_id,
            carrier_id,
            operation.amount,
            calculation.commission_amount,
            idempotency_key=idempotency_key,
            description=description,
            commission_calculation=calculation,
        )
        self._refresh_carrier_turnover(carrier_id)
        return operation, calculation

    def _refresh_carrier_turnover(self, carrier_id: str) -> None:
        # The payout is final; a stale level is corrected by the periodic refresh job
        try:
            self.commission.update_user_turnover(carrier_id)
            self.commission.update_user_commission_level(carrier_id)
        except (LedgerError, SQLAlchemyError) as e:
            logger.warning(f"⚠️ TURNOVER_REFRESH_DEFERRED: carrier {carrier_id}: {e}")

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    def refund(self, order_id: str, reason: str = None, idempotency_key: str = None) -> EscrowOperation:
        """Return the held funds to the client's available balance"""
        operation = self._require_frozen(order_id, EscrowStatus.REFUNDED)
        self._claim_settlement(order_id, SETTLEMENT_REFUND)

        client_id = operation.client_id
        amount = Decimal(operation.amount)

        release_tx = self.ledger.post_transaction(
            client_id,
            TransactionType.RELEASE,
            amount,
            order_id=order_id,
            deal_id=operation.deal_id,
            description=f"Escrow release for cancelled order {order_id}",
            metadata={"escrow_step": EscrowStep.REFUND_RELEASE.value, "reason": reason,
                      "escrow_request_key": idempotency_key},
            idempotency_key=IdempotencyKeyGenerator.escrow_step_key(order_id, EscrowStep.REFUND_RELEASE),
        )
        refund_tx = self.ledger.post_transaction(
            client_id,
            TransactionType.REFUND,
            amount,
            order_id=order_id,
            deal_id=operation.deal_id,
            description=f"Refund for order {order_id}",
            metadata={"escrow_step": EscrowStep.REFUND.value, "reason": reason,
                      "escrow_request_key": idempotency_key},
            idempotency_key=IdempotencyKeyGenerator.escrow_step_key(order_id, EscrowStep.REFUND),
        )

        operation = self._finalize(order_id, EscrowStatus.REFUNDED, {
            "release_transaction_id": release_tx.id,
            "refund_transaction_id": refund_tx.id,
            "refund_reason": reason,
            "refund_request_key": idempotency_key,
        })

        logger.info(f"↩️ ESCROW_REFUNDED: order {order_id} {amount} to client {client_id} ({reason})")
        return operation

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------

    def _require_frozen(self, order_id: str, target: EscrowStatus) -> EscrowOperation:
        operation = self.get_escrow_operation(order_id)
        if operation is None:
            raise NotFound(f"No escrow operation for order {order_id}")
        EscrowStateValidator.validate_transition(operation.status, target, order_id)
        return operation

    def _claim_settlement(self, order_id: str, kind: str) -> None:
        """
        Reserve the order for one kind of settlement.

        Release and refund both draw on the client's frozen balance; once one
        has started the other is refused, so a replay can only finish the
        settlement already under way.
        """
        with self.locker.lock_escrow_operation(order_id) as (session, operation):
            if operation.status != EscrowStatus.FROZEN.value:
                raise InvalidState(f"Escrow for order {order_id} is already {operation.status}")
            extra = operation.extra_data or {}
            claimed = extra.get("settlement")
            if claimed is None:
                operation.extra_data = {**extra, "settlement": kind, "settlement_started_at": get_naive_utc_now().isoformat()}
            elif claimed != kind:
                logger.warning(f"🚫 ESCROW_SETTLEMENT_CONFLICT: order {order_id} {claimed} in progress, {kind} refused")
                raise InvalidState(f"Order {order_id} already has a {claimed} in progress")

    def _finalize(self, order_id: str, status: EscrowStatus, details: Dict[str, Any],
                  carrier_id: str = None) -> EscrowOperation:
        with self.locker.lock_escrow_operation(order_id) as (session, operation):
            EscrowStateValidator.validate_transition(operation.status, status, order_id)
            now = get_naive_utc_now()
            operation.status = status.value
            if status == EscrowStatus.RELEASED:
                operation.released_at = now
                operation.carrier_id = carrier_id
            else:
                operation.refunded_at = now
            operation.extra_data = {**(operation.extra_data or {}), **details}
        return operation

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def check_user_can_afford(self, user_id: str, amount) -> bool:
        return self.ledger.can_afford(user_id, amount)

    def get_escrow_operation(self, order_id: str) -> Optional[EscrowOperation]:
        with managed_session(self.session_factory) as session:
            return session.query(EscrowOperation).filter(EscrowOperation.order_id == order_id).first()

    def is_already_released(self, order_id: str) -> bool:
        operation = self.get_escrow_operation(order_id)
        return operation is not None and operation.status == EscrowStatus.RELEASED.value

    def get_frozen_amount(self, order_id: str) -> Decimal:
        operation = self.get_escrow_operation(order_id)
        if operation is None or operation.status != EscrowStatus.FROZEN.value:
            return Decimal("0")
        return Decimal(operation.amount)

    def get_user_escrow_operations(self, user_id: str, status: str = None) -> List[EscrowOperation]:
        """Operations where the user is the client or the carrier, newest first"""
        with managed_session(self.session_factory) as session:
            query = session.query(EscrowOperation).filter(
                or_(EscrowOperation.client_id == user_id, EscrowOperation.carrier_id == user_id)
            )
            if status:
                query = query.filter(EscrowOperation.status == EscrowStatus(status).value)
            return query.order_by(EscrowOperation.frozen_at.desc()).all()

    def get_escrow_stats(self, user_id: str = None) -> Dict[str, Any]:
        """Count and amount per escrow status, optionally for one user"""
        with managed_session(self.session_factory) as session:
            query = session.query(
                EscrowOperation.status,
                func.count(EscrowOperation.id),
                func.coalesce(func.sum(EscrowOperation.amount), 0),
            )
            if user_id:
                query = query.filter(
                    or_(EscrowOperation.client_id == user_id, EscrowOperation.carrier_id == user_id)
                )
            rows = query.group_by(EscrowOperation.status).all()

        stats: Dict[str, Any] = {}
        for status in EscrowStatus:
            stats[f"{status.value}_count"] = 0
            stats[f"{status.value}_amount"] = Decimal("0")
        for status, count, total in rows:
            stats[f"{status}_count"] = count
            stats[f"{status}_amount"] = MonetaryDecimal.quantize_money(str(total))
        stats["total_count"] = sum(count for _, count, _ in rows)
        return stats
