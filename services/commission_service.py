"""
Commission Service
==================

Resolves the commission percentage charged on an order payout.

Priority, first match wins:
1. custom       - per-user override set by an admin (0 is a valid override)
2. subscription - commission of the user's active, unexpired plan
3. level        - turnover-based commission level
4. global       - platform-wide default

When the commission system is switched off every order is charged 0.
Lookup failures never block a payout: they fall back to the global rate.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from config import Config
from database import SessionLocal, managed_session
from models import (
    Account, CommissionLevel, EscrowOperation, EscrowStatus, SubscriptionPlan,
    Transaction, TransactionStatus, TransactionType,
)
from services.platform_settings_service import PlatformSettingsService
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now, period_start
from utils.decimal_precision import MonetaryDecimal
from utils.ledger_exceptions import InvalidAmount, NotFound

logger = logging.getLogger(__name__)


class CommissionSource(Enum):
    CUSTOM = "custom"
    SUBSCRIPTION = "subscription"
    LEVEL = "level"
    GLOBAL = "global"


@dataclass(frozen=True)
class CommissionCalculation:
    order_amount: Decimal
    percent: Decimal
    commission_amount: Decimal
    net_amount: Decimal
    source: CommissionSource
    applied_rule: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_amount": str(self.order_amount),
            "commission_percent": str(self.percent),
            "commission_amount": str(self.commission_amount),
            "net_amount": str(self.net_amount),
            "commission_source": self.source.value,
            "applied_rule": self.applied_rule,
        }


def build_calculation(order_amount: Decimal, percent, source: CommissionSource,
                      applied_rule: str) -> CommissionCalculation:
    percent = MonetaryDecimal.to_percent(percent)
    commission_amount = MonetaryDecimal.percent_of(order_amount, percent)
    return CommissionCalculation(
        order_amount=order_amount,
        percent=percent,
        commission_amount=commission_amount,
        net_amount=order_amount - commission_amount,
        source=source,
        applied_rule=applied_rule,
    )


class CommissionResolver:
    """Commission calculation plus the admin surface for levels and overrides"""

    def __init__(self, session_factory=None, settings_service: PlatformSettingsService = None):
        self.session_factory = session_factory or SessionLocal
        self.settings = settings_service or PlatformSettingsService(self.session_factory)

    # ------------------------------------------------------------------
    # Calculation
    # ------------------------------------------------------------------

    def calculate_commission(self, user_id: str, order_amount, now: datetime = None) -> CommissionCalculation:
        """Resolve the payee's commission for an order amount"""
        order_amount = MonetaryDecimal.quantize_money(order_amount, "order_amount")
        if order_amount < 0:
            raise InvalidAmount(f"Order amount must not be negative, got {order_amount}")
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        try:
            settings = self.settings.get_platform_settings()
        except Exception as e:
            logger.error(f"❌ COMMISSION_SETTINGS_UNAVAILABLE: user {user_id}: {e}")
            return build_calculation(
                order_amount, Config.DEFAULT_GLOBAL_COMMISSION_PERCENT, CommissionSource.GLOBAL,
                "Default global commission (error fallback)",
            )

        if not settings.commission_enabled:
            return build_calculation(order_amount, Decimal("0"), CommissionSource.GLOBAL, "Commission disabled")

        try:
            calculation = self._resolve_user_rate(user_id, order_amount, now)
        except Exception as e:
            logger.error(f"❌ COMMISSION_LOOKUP_FAILED: user {user_id}: {e}; using global rate")
            return build_calculation(
                order_amount, settings.global_commission_percent, CommissionSource.GLOBAL,
                "Default global commission (error fallback)",
            )

        if calculation is not None:
            return calculation

        return build_calculation(
            order_amount, settings.global_commission_percent, CommissionSource.GLOBAL,
            f"Global commission: {settings.global_commission_percent}%",
        )

    def _resolve_user_rate(self, user_id: str, order_amount: Decimal,
                           now: datetime) -> Optional[CommissionCalculation]:
        with managed_session(self.session_factory) as session:
            account = session.get(Account, user_id)
            if account is None:
                return None

            # Priority 1: custom override
            if account.custom_commission_percent is not None:
                percent = Decimal(account.custom_commission_percent)
                return build_calculation(
                    order_amount, percent, CommissionSource.CUSTOM, f"Custom commission: {percent}%"
                )

            # Priority 2: active subscription
            if account.subscription_plan_id and account.subscription_expires_at \
                    and account.subscription_expires_at > now:
                plan = session.get(SubscriptionPlan, account.subscription_plan_id)
                if plan is not None and plan.is_active:
                    percent = Decimal(plan.commission_percent)
                    return build_calculation(
                        order_amount, percent, CommissionSource.SUBSCRIPTION,
                        f"Subscription commission ({plan.name}): {percent}%",
                    )

            # Priority 3: turnover level
            level = None
            if account.commission_level_id is not None:
                level = session.get(CommissionLevel, account.commission_level_id)
                if level is not None and not level.is_active:
                    level = None
            if level is None:
                level = self._find_level(session, Decimal(account.turnover_30_days))
            if level is not None:
                percent = Decimal(level.percent)
                return build_calculation(
                    order_amount, percent, CommissionSource.LEVEL,
                    f"Level commission ({level.name}): {percent}%",
                )

        return None

    @staticmethod
    def validate_percent(percent) -> Decimal:
        """Raise InvalidPercent outside [0, 100]"""
        return MonetaryDecimal.to_percent(percent)

    # ------------------------------------------------------------------
    # Custom overrides
    # ------------------------------------------------------------------

    def set_user_custom_commission(self, user_id: str, percent, admin_id: str = None) -> Optional[Decimal]:
        """Set or clear (None) the user's override; the account must exist"""
        value = None if percent is None else self.validate_percent(percent)
        with managed_session(self.session_factory) as session:
            account = session.get(Account, user_id)
            if account is None:
                raise NotFound(f"No account for user {user_id}")
            account.custom_commission_percent = value
        logger.info(f"⚙️ CUSTOM_COMMISSION_SET: user {user_id} -> {value} by {admin_id or 'system'}")
        return value

    # ------------------------------------------------------------------
    # Levels
    # ------------------------------------------------------------------

    def upsert_commission_level(self, name: str, min_turnover, percent, max_turnover=None,
                                is_active: bool = True, level_id: int = None) -> CommissionLevel:
        percent = self.validate_percent(percent)
        min_turnover = MonetaryDecimal.non_negative_amount(min_turnover, "min_turnover")
        if max_turnover is not None:
            max_turnover = MonetaryDecimal.quantize_money(max_turnover, "max_turnover")
            if max_turnover <= min_turnover:
                raise InvalidAmount("max_turnover must be greater than min_turnover")

        with managed_session(self.session_factory) as session:
            if level_id is not None:
                level = session.get(CommissionLevel, level_id)
                if level is None:
                    raise NotFound(f"Commission level {level_id} not found")
            else:
                level = CommissionLevel()
                session.add(level)
            level.name = name
            level.min_turnover = min_turnover
            level.max_turnover = max_turnover
            level.percent = percent
            level.is_active = is_active

        logger.info(
            f"⚙️ COMMISSION_LEVEL_SAVED: {level.id} '{name}' "
            f"[{min_turnover}, {max_turnover if max_turnover is not None else '∞'}) -> {percent}%"
        )
        return level

    def deactivate_commission_level(self, level_id: int) -> None:
        with managed_session(self.session_factory) as session:
            level = session.get(CommissionLevel, level_id)
            if level is None:
                raise NotFound(f"Commission level {level_id} not found")
            level.is_active = False
        logger.info(f"⚙️ COMMISSION_LEVEL_DEACTIVATED: {level_id}")

    def get_commission_levels(self, include_inactive: bool = False) -> List[CommissionLevel]:
        with managed_session(self.session_factory) as session:
            query = session.query(CommissionLevel)
            if not include_inactive:
                query = query.filter(CommissionLevel.is_active.is_(True))
            return query.order_by(CommissionLevel.min_turnover.asc()).all()

    @staticmethod
    def _find_level(session, turnover: Decimal) -> Optional[CommissionLevel]:
        # Highest matching tier wins if ranges overlap
        return (
            session.query(CommissionLevel)
            .filter(
                CommissionLevel.is_active.is_(True),
                CommissionLevel.min_turnover <= turnover,
                (CommissionLevel.max_turnover.is_(None)) | (CommissionLevel.max_turnover > turnover),
            )
            .order_by(CommissionLevel.min_turnover.desc())
            .first()
        )

    def find_level_for_turnover(self, turnover) -> Optional[CommissionLevel]:
        turnover = MonetaryDecimal.non_negative_amount(turnover, "turnover")
        with managed_session(self.session_factory) as session:
            return self._find_level(session, turnover)

    # ------------------------------------------------------------------
    # Turnover
    # ------------------------------------------------------------------

    def update_user_turnover(self, user_id: str, now: datetime = None) -> Decimal:
        """Recompute turnover as escrow amounts released to the user as carrier within the window"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        since = now - timedelta(days=Config.TURNOVER_WINDOW_DAYS)
        with managed_session(self.session_factory) as session:
            account = session.get(Account, user_id)
            if account is None:
                raise NotFound(f"No account for user {user_id}")
            total = (
                session.query(func.coalesce(func.sum(EscrowOperation.amount), 0))
                .filter(
                    EscrowOperation.carrier_id == user_id,
                    EscrowOperation.status == EscrowStatus.RELEASED.value,
                    EscrowOperation.released_at >= since,
                )
                .scalar()
            )
            turnover = MonetaryDecimal.quantize_money(str(total))
            account.turnover_30_days = turnover
        logger.info(f"📈 TURNOVER_UPDATED: user {user_id} -> {turnover}")
        return turnover

    def get_account_level_id(self, user_id: str) -> Optional[int]:
        with managed_session(self.session_factory) as session:
            account = session.get(Account, user_id)
            if account is None:
                raise NotFound(f"No account for user {user_id}")
            return account.commission_level_id

    def update_user_commission_level(self, user_id: str) -> Optional[CommissionLevel]:
        """Assign the active level matching the stored turnover (None clears it)"""
        with managed_session(self.session_factory) as session:
            account = session.get(Account, user_id)
            if account is None:
                raise NotFound(f"No account for user {user_id}")
            level = self._find_level(session, Decimal(account.turnover_30_days))
            previous = account.commission_level_id
            account.commission_level_id = level.id if level is not None else None
        if previous != (level.id if level is not None else None):
            logger.info(
                f"📈 COMMISSION_LEVEL_CHANGED: user {user_id} {previous} -> "
                f"{level.id if level is not None else None}"
            )
        return level

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def get_commission_stats(self, period: str = "month", now: datetime = None) -> Dict[str, Any]:
        """
        Confirmed commission charged in the period, split by commission source.

        ``total_orders`` and ``average_commission`` cover order commission
        only; fee rows such as fast-withdraw fees carry no order id.
        """
        start = period_start(period, now)
        with managed_session(self.session_factory) as session:
            rows = (
                session.query(Transaction.amount, Transaction.order_id, Transaction.extra_data)
                .filter(
                    Transaction.transaction_type == TransactionType.COMMISSION.value,
                    Transaction.status == TransactionStatus.CONFIRMED.value,
                    Transaction.created_at >= start,
                )
                .all()
            )

        total = Decimal("0")
        order_total = Decimal("0")
        order_ids = set()
        by_source: Dict[str, Decimal] = {}
        for amount, order_id, extra_data in rows:
            amount = Decimal(amount)
            total += amount
            if order_id is not None:
                order_total += amount
                order_ids.add(order_id)
            source = (extra_data or {}).get("commission_source", "other")
            by_source[source] = by_source.get(source, Decimal("0")) + amount

        orders = len(order_ids)
        return {
            "period": period,
            "total_commission": total,
            "total_orders": orders,
            "average_commission": MonetaryDecimal.quantize_money(order_total / orders) if orders else Decimal("0"),
            "commission_by_source": by_source,
        }

    def get_user_commission_history(self, user_id: str, limit: int = 20) -> List[Transaction]:
        with managed_session(self.session_factory) as session:
            return (
                session.query(Transaction)
                .filter(
                    Transaction.user_id == user_id,
                    Transaction.transaction_type == TransactionType.COMMISSION.value,
                )
                .order_by(Transaction.created_at.desc())
                .limit(limit)
                .all()
            )
