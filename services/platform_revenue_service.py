"""
Platform Revenue Service
Records platform income from commission, subscription and promotion charges
and produces income reports.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from database import SessionLocal, managed_session
from models import Account, IncomeSource, PlatformIncome, Transaction, TransactionStatus, TransactionType
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now, month_start, period_start

logger = logging.getLogger(__name__)

# Confirmed transactions of these types are platform income
INCOME_SOURCE_BY_TRANSACTION_TYPE = {
    TransactionType.COMMISSION.value: IncomeSource.COMMISSION,
    TransactionType.SUBSCRIPTION_PAYMENT.value: IncomeSource.SUBSCRIPTION,
    TransactionType.PROMOTION.value: IncomeSource.PROMOTION,
}


class PlatformRevenueService:
    """Platform income bookkeeping"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    @staticmethod
    def record_income(session: Session, transaction: Transaction) -> Optional[PlatformIncome]:
        """
        Add the income row for a transaction being confirmed.

        Must run inside the confirming database transaction so the income and
        the balance change commit together. Non-income types are ignored and a
        second call for the same transaction is a no-op.
        """
        source = INCOME_SOURCE_BY_TRANSACTION_TYPE.get(transaction.transaction_type)
        if source is None:
            return None

        existing = (
            session.query(PlatformIncome)
            .filter(PlatformIncome.source_transaction_id == transaction.id)
            .first()
        )
        if existing:
            return existing

        income = PlatformIncome(
            source=source.value,
            amount=transaction.amount,
            related_user_id=transaction.user_id,
            order_id=transaction.order_id,
            source_transaction_id=transaction.id,
            description=transaction.description,
        )
        session.add(income)
        logger.info(
            f"💰 PLATFORM_INCOME_RECORDED: {source.value} {transaction.amount} "
            f"from user {transaction.user_id} (tx {transaction.id})"
        )
        return income

    def get_total_income(self, source: Optional[str] = None, since: Optional[datetime] = None) -> Decimal:
        with managed_session(self.session_factory) as session:
            query = session.query(func.coalesce(func.sum(PlatformIncome.amount), 0))
            if source:
                query = query.filter(PlatformIncome.source == IncomeSource(source).value)
            if since is not None:
                query = query.filter(PlatformIncome.created_at >= since)
            return Decimal(str(query.scalar()))

    def get_platform_income_report(self, period: str = "month", now=None) -> Dict[str, Any]:
        """Totals per income source for the period, with each source's share in percent"""
        start = period_start(period, now)
        with managed_session(self.session_factory) as session:
            rows = (
                session.query(
                    PlatformIncome.source,
                    func.coalesce(func.sum(PlatformIncome.amount), 0),
                    func.count(PlatformIncome.id),
                )
                .filter(PlatformIncome.created_at >= start)
                .group_by(PlatformIncome.source)
                .all()
            )

        by_source = {
            source.value: {"amount": Decimal("0"), "count": 0, "share_percent": Decimal("0")}
            for source in IncomeSource
        }
        total = Decimal("0")
        for source, amount, count in rows:
            amount = Decimal(str(amount))
            by_source[source]["amount"] = amount
            by_source[source]["count"] = count
            total += amount

        if total > 0:
            for entry in by_source.values():
                entry["share_percent"] = (entry["amount"] * 100 / total).quantize(Decimal("0.01"))

        return {
            "period": period,
            "since": start,
            "total_income": total,
            "by_source": by_source,
        }

    def get_revenue_chart_data(self, period: str = "month", now=None) -> List[Dict[str, Any]]:
        """
        Income over the period bucketed for charting, oldest first.

        Week and month periods are bucketed per day (``YYYY-MM-DD``), the year
        per calendar month (``YYYY-MM``). Buckets without income are omitted.
        """
        start = period_start(period, now)
        bucket_format = "%Y-%m" if period == "year" else "%Y-%m-%d"
        with managed_session(self.session_factory) as session:
            rows = (
                session.query(PlatformIncome.created_at, PlatformIncome.source, PlatformIncome.amount)
                .filter(PlatformIncome.created_at >= start)
                .all()
            )

        buckets: Dict[str, Dict[str, Any]] = {}
        for created_at, source, amount in rows:
            label = created_at.strftime(bucket_format)
            bucket = buckets.setdefault(label, {
                "date": label,
                "revenue": Decimal("0"),
                "commission": Decimal("0"),
                "subscriptions": Decimal("0"),
                "promotion": Decimal("0"),
            })
            amount = Decimal(amount)
            bucket["revenue"] += amount
            if source == IncomeSource.COMMISSION.value:
                bucket["commission"] += amount
            elif source == IncomeSource.SUBSCRIPTION.value:
                bucket["subscriptions"] += amount
            elif source == IncomeSource.PROMOTION.value:
                bucket["promotion"] += amount

        return [buckets[label] for label in sorted(buckets)]

    def get_monetization_stats(self, now=None) -> Dict[str, Any]:
        """Platform-wide totals for the admin dashboard"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        this_month = month_start(now)
        with managed_session(self.session_factory) as session:
            total_users = session.query(func.count(Account.user_id)).scalar()
            active_subscriptions = (
                session.query(func.count(Account.user_id))
                .filter(Account.subscription_expires_at > now)
                .scalar()
            )
            trial_users = (
                session.query(func.count(Account.user_id))
                .filter(Account.subscription_expires_at > now, Account.subscription_is_trial.is_(True))
                .scalar()
            )
            frozen_funds = session.query(func.coalesce(func.sum(Account.frozen_balance), 0)).scalar()
            total_transactions = (
                session.query(func.count(Transaction.id))
                .filter(Transaction.status == TransactionStatus.CONFIRMED.value)
                .scalar()
            )

        return {
            "total_users": total_users,
            "active_subscriptions": active_subscriptions,
            "trial_users": trial_users,
            "total_revenue": self.get_total_income(),
            "monthly_revenue": self.get_total_income(since=this_month),
            "commission_this_month": self.get_total_income(IncomeSource.COMMISSION.value, since=this_month),
            "total_transactions": total_transactions,
            "frozen_funds": Decimal(str(frozen_funds)),
        }
