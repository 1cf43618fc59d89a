"""
Commission Level Refresh
Recomputes 30-day turnover and the matching commission level for every account
"""

import logging
from datetime import datetime
from typing import Any, Dict

from database import SessionLocal, managed_session
from models import Account
from services.commission_service import CommissionResolver
from utils.ledger_exceptions import LedgerError

logger = logging.getLogger(__name__)


def refresh_commission_levels(session_factory=None, now: datetime = None) -> Dict[str, Any]:
    """Refresh every account; one failing account does not stop the run"""
    session_factory = session_factory or SessionLocal
    resolver = CommissionResolver(session_factory)

    with managed_session(session_factory) as session:
        user_ids = [row[0] for row in session.query(Account.user_id).all()]

    stats = {"accounts": len(user_ids), "updated": 0, "level_changes": 0, "failed": 0}
    logger.info(f"🔄 COMMISSION_LEVEL_REFRESH_START: {len(user_ids)} accounts")

    for user_id in user_ids:
        try:
            before = resolver.get_account_level_id(user_id)
            resolver.update_user_turnover(user_id, now=now)
            level = resolver.update_user_commission_level(user_id)
            stats["updated"] += 1
            if before != (level.id if level is not None else None):
                stats["level_changes"] += 1
        except LedgerError as e:
            stats["failed"] += 1
            logger.error(f"❌ COMMISSION_LEVEL_REFRESH_FAILED: user {user_id}: {e}")

    logger.info(
        f"✅ COMMISSION_LEVEL_REFRESH_COMPLETE: {stats['updated']} updated, "
        f"{stats['level_changes']} level changes, {stats['failed']} failed"
    )
    return stats
