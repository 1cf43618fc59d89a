"""
Simplified Financial Operation Locker
Clean, simple locking using only standard database SELECT FOR UPDATE
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from database import SessionLocal, is_transient_database_error
from models import Account, EscrowOperation
from utils.ledger_exceptions import NotFound, TransientStoreFailure

logger = logging.getLogger(__name__)


class SimpleFinancialLocker:
    """
    Simplified financial locker using only database SELECT FOR UPDATE
    No distributed locking or optimistic locking - just standard database row locks.
    A lock lives for one database transaction and is never held across calls
    into other services.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    @contextmanager
    def _locked_session(self, label: str):
        session = self.session_factory()
        try:
            session.begin()
            yield session
            session.commit()
            logger.debug(f"{label}_COMMITTED")
        except SQLAlchemyError as e:
            session.rollback()
            if is_transient_database_error(e):
                logger.error(f"❌ {label}_TRANSIENT_FAILURE: {e}")
                raise TransientStoreFailure(f"{label.lower()} failed: {e}") from e
            logger.error(f"❌ {label}_FAILED: {e}")
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def lock_account_operation(self, user_id: str):
        """
        Lock an account row for a balance mutation.
        Yields (session, account); commits when the block exits cleanly.
        """
        with self._locked_session("ACCOUNT_OPERATION") as session:
            account = (
                session.query(Account)
                .filter(Account.user_id == user_id)
                .with_for_update()  # This requires an active transaction
                .first()
            )
            if not account:
                raise NotFound(f"No account found for user {user_id}")

            logger.debug(f"ACCOUNT_LOCKED: User {user_id}")
            yield session, account

    @contextmanager
    def lock_escrow_operation(self, order_id: str):
        """
        Lock the escrow row of an order for a status transition.
        Yields (session, escrow_operation); raises NotFound when the order has no hold.
        """
        with self._locked_session("ESCROW_OPERATION") as session:
            operation = (
                session.query(EscrowOperation)
                .filter(EscrowOperation.order_id == order_id)
                .with_for_update()
                .first()
            )
            if not operation:
                raise NotFound(f"No escrow operation for order {order_id}")

            logger.debug(f"ESCROW_LOCKED: Order {order_id}")
            yield session, operation
