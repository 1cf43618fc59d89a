"""
Idempotency Key Service
Prevents duplicate financial operations through unique key tracking
Ensures exactly-once semantics for ledger transactions under retries
"""

import json
import hashlib
import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError

from database import SessionLocal, managed_session
from models import Transaction

logger = logging.getLogger(__name__)


class EscrowStep(Enum):
    """Ledger steps of the escrow workflow, each with its own derived key"""
    FREEZE = "freeze"
    RELEASE = "release"
    PAYOUT = "payout"
    COMMISSION = "commission"
    REFUND_RELEASE = "refund_release"
    REFUND = "refund"


class IdempotencyKeyGenerator:
    """Generate idempotency keys for different operation types"""

    @staticmethod
    def escrow_step_key(order_id: str, step: EscrowStep) -> str:
        """Deterministic key for one step of an order's escrow workflow"""
        return f"escrow:{order_id}:{step.value}"

    @staticmethod
    def gateway_key(provider: str, external_id: str) -> str:
        """Key for a payment-gateway callback, unique per provider payment id"""
        return f"gateway:{provider.lower()}:{external_id}"

    @staticmethod
    def derived_key(parent_key: Optional[str], suffix: str) -> Optional[str]:
        """Sub-operation key derived from a caller key; None when the caller gave none"""
        if not parent_key:
            return None
        return f"{parent_key}:{suffix}"

    @staticmethod
    def generate_key(operation: str, user_id: str, operation_data: Dict[str, Any]) -> str:
        """
        Generate deterministic idempotency key from operation data

        Args:
            operation: Operation name
            user_id: User performing the operation
            operation_data: Core operation data for hashing

        Returns:
            str: Unique idempotency key
        """
        operation_str = json.dumps(operation_data, sort_keys=True, default=str)
        operation_hash = hashlib.sha256(operation_str.encode()).hexdigest()[:16]
        return f"idempotency:{operation}:{user_id}:{operation_hash}"


class IdempotencyGuard:
    """
    Dedupe ledger writes by idempotency key.

    A known key returns the stored transaction unchanged. Two concurrent
    inserts with the same key are resolved by the unique constraint on
    transactions.idempotency_key; the loser re-reads the winner's row.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def find(self, idempotency_key: Optional[str]) -> Optional[Transaction]:
        if not idempotency_key:
            return None
        with managed_session(self.session_factory) as session:
            return (
                session.query(Transaction)
                .filter(Transaction.idempotency_key == idempotency_key)
                .first()
            )

    def check_replay(self, existing: Transaction, user_id: str, transaction_type: str,
                     amount: Decimal) -> None:
        """Warn when a key is reused with different arguments; the stored row wins"""
        mismatches = []
        if existing.user_id != user_id:
            mismatches.append(f"user {existing.user_id}!={user_id}")
        if existing.transaction_type != transaction_type:
            mismatches.append(f"type {existing.transaction_type}!={transaction_type}")
        if Decimal(existing.amount) != Decimal(amount):
            mismatches.append(f"amount {existing.amount}!={amount}")
        if mismatches:
            logger.warning(
                f"⚠️ IDEMPOTENCY_KEY_REUSED: key {existing.idempotency_key} "
                f"replayed with different arguments ({', '.join(mismatches)}); "
                f"returning stored transaction {existing.id}"
            )
        else:
            logger.info(
                f"🔁 IDEMPOTENT_REPLAY: key {existing.idempotency_key} -> transaction {existing.id}"
            )

    def insert_once(self, build: Callable[[], Transaction]) -> Transaction:
        """Insert the transaction built by ``build``; on a key race return the stored row"""
        transaction = build()
        try:
            with managed_session(self.session_factory) as session:
                session.add(transaction)
            return transaction
        except IntegrityError:
            existing = self.find(transaction.idempotency_key)
            if existing is None:
                raise
            logger.info(
                f"🔁 IDEMPOTENCY_RACE_RESOLVED: key {transaction.idempotency_key} "
                f"already stored as {existing.id}"
            )
            return existing
