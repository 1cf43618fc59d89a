"""
Ledger Consistency Monitor
Replays each account's confirmed transactions and compares the result with the
stored balances. Reports mismatches for manual review; never repairs.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from database import SessionLocal, managed_session
from models import Account, EscrowOperation, EscrowStatus, Transaction, TransactionStatus
from services.balance_projector import BalanceState, project_balance
from utils.datetime_helpers import get_naive_utc_now
from utils.ledger_exceptions import InsufficientFunds

logger = logging.getLogger(__name__)


class LedgerConsistencyResult:
    """Result object for consistency monitoring operations"""

    def __init__(self):
        self.total_accounts_checked = 0
        self.inconsistencies_found = 0
        self.critical_issues = 0
        self.execution_time_ms = 0
        self.accounts_with_issues: List[Dict[str, Any]] = []
        self.errors: List[str] = []

    def add_inconsistency(self, user_id: str, issue_type: str, details: Dict[str, Any]):
        """Record an inconsistency found"""
        self.inconsistencies_found += 1
        self.accounts_with_issues.append({
            "user_id": user_id,
            "issue_type": issue_type,
            "details": details,
            "detected_at": get_naive_utc_now().isoformat(),
        })
        if issue_type in ("balance_mismatch", "invariant_violation"):
            self.critical_issues += 1
        logger.warning(f"⚠️ LEDGER_INCONSISTENCY: user {user_id} {issue_type} {details}")

    def add_error(self, error: str):
        """Add error to results"""
        self.errors.append(error)
        logger.error(f"LEDGER_CONSISTENCY_ERROR: {error}")

    def get_summary(self) -> Dict[str, Any]:
        return {
            "total_accounts_checked": self.total_accounts_checked,
            "inconsistencies_found": self.inconsistencies_found,
            "critical_issues": self.critical_issues,
            "execution_time_ms": self.execution_time_ms,
            "error_count": len(self.errors),
        }


class LedgerConsistencyMonitor:
    """Balance replay check across all accounts"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def run_consistency_check(self, max_accounts: int = 10000) -> LedgerConsistencyResult:
        start_time = datetime.now()
        result = LedgerConsistencyResult()
        logger.info(f"🔍 LEDGER_CONSISTENCY_START: checking up to {max_accounts} accounts")

        with managed_session(self.session_factory) as session:
            accounts = session.query(Account).order_by(Account.user_id).limit(max_accounts).all()
            for account in accounts:
                result.total_accounts_checked += 1
                self._check_account(session, account, result)
            self._check_escrow_holds(session, result)

        result.execution_time_ms = int((datetime.now() - start_time).total_seconds() * 1000)
        if result.inconsistencies_found:
            logger.warning(
                f"⚠️ LEDGER_CONSISTENCY_ISSUES: {result.inconsistencies_found} issues in "
                f"{result.total_accounts_checked} accounts ({result.execution_time_ms}ms)"
            )
        else:
            logger.info(
                f"✅ LEDGER_CONSISTENCY_SUCCESS: {result.total_accounts_checked} accounts consistent "
                f"({result.execution_time_ms}ms)"
            )
        return result

    @staticmethod
    def _check_account(session, account: Account, result: LedgerConsistencyResult) -> None:
        stored = BalanceState(Decimal(account.balance), Decimal(account.frozen_balance))
        if not stored.is_consistent():
            result.add_inconsistency(account.user_id, "invariant_violation", {
                "balance": str(stored.balance),
                "frozen_balance": str(stored.frozen_balance),
            })

        confirmed = (
            session.query(Transaction.transaction_type, Transaction.amount)
            .filter(
                Transaction.user_id == account.user_id,
                Transaction.status == TransactionStatus.CONFIRMED.value,
            )
            .order_by(Transaction.confirmed_at.asc(), Transaction.created_at.asc())
            .all()
        )

        replayed = BalanceState(Decimal("0"), Decimal("0"))
        for transaction_type, amount in confirmed:
            try:
                replayed = project_balance(replayed, transaction_type, Decimal(amount))
            except InsufficientFunds as e:
                result.add_inconsistency(account.user_id, "replay_precondition_failed", {
                    "transaction_type": transaction_type,
                    "amount": str(amount),
                    "reason": e.message,
                })
                return

        if replayed != stored:
            result.add_inconsistency(account.user_id, "balance_mismatch", {
                "stored_balance": str(stored.balance),
                "stored_frozen": str(stored.frozen_balance),
                "replayed_balance": str(replayed.balance),
                "replayed_frozen": str(replayed.frozen_balance),
            })

    @staticmethod
    def _check_escrow_holds(session, result: LedgerConsistencyResult) -> None:
        """Each client's frozen balance must cover the sum of their active holds"""
        holds: Dict[str, Decimal] = {}
        rows = (
            session.query(EscrowOperation.client_id, EscrowOperation.amount)
            .filter(EscrowOperation.status == EscrowStatus.FROZEN.value)
            .all()
        )
        for client_id, amount in rows:
            holds[client_id] = holds.get(client_id, Decimal("0")) + Decimal(amount)

        for client_id, held in holds.items():
            account = session.get(Account, client_id)
            frozen = Decimal(account.frozen_balance) if account is not None else Decimal("0")
            if frozen < held:
                result.add_inconsistency(client_id, "frozen_below_active_holds", {
                    "frozen_balance": str(frozen),
                    "active_holds": str(held),
                })
