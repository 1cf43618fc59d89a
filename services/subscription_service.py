"""
Subscription Service
Plans, trials and paid subscriptions that lower a user's commission
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from database import managed_session
from models import Account, IncomeSource, SubscriptionPeriod, SubscriptionPlan, TransactionType
from services.ledger_service import LedgerService
from services.platform_settings_service import PlatformSettingsService
from utils.datetime_helpers import add_months, ensure_naive_datetime, get_naive_utc_now, month_start
from utils.decimal_precision import MonetaryDecimal
from utils.financial_operation_locker import SimpleFinancialLocker
from utils.ledger_exceptions import InsufficientFunds, InvalidAmount, InvalidState, NotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserSubscription:
    user_id: str
    plan_id: str
    plan_name: str
    commission_percent: Decimal
    expires_at: datetime
    status: str  # "trial" or "active"


class SubscriptionService:
    """Subscription plan catalogue and per-user subscriptions"""

    def __init__(self, ledger: LedgerService = None, settings_service: PlatformSettingsService = None):
        self.ledger = ledger or LedgerService()
        self.session_factory = self.ledger.session_factory
        self.settings = settings_service or PlatformSettingsService(self.session_factory)
        self.locker = SimpleFinancialLocker(self.session_factory)

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def get_active_plans(self) -> List[SubscriptionPlan]:
        with managed_session(self.session_factory) as session:
            return (
                session.query(SubscriptionPlan)
                .filter(SubscriptionPlan.is_active.is_(True))
                .order_by(SubscriptionPlan.sort_order.asc(), SubscriptionPlan.monthly_price.asc())
                .all()
            )

    def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        with managed_session(self.session_factory) as session:
            return session.get(SubscriptionPlan, plan_id)

    def upsert_plan(self, name: str, monthly_price, commission_percent, plan_id: str = None,
                    features: List[str] = None, trial_days: int = 0, trial_enabled: bool = False,
                    is_active: bool = True, sort_order: int = 0) -> SubscriptionPlan:
        monthly_price = MonetaryDecimal.non_negative_amount(monthly_price, "monthly_price")
        commission_percent = MonetaryDecimal.to_percent(commission_percent, "commission_percent")
        if trial_days < 0:
            raise InvalidAmount("trial_days must not be negative")

        with managed_session(self.session_factory) as session:
            plan = session.get(SubscriptionPlan, plan_id) if plan_id else None
            if plan is None:
                plan = SubscriptionPlan(id=plan_id) if plan_id else SubscriptionPlan()
                session.add(plan)
            plan.name = name
            plan.monthly_price = monthly_price
            plan.commission_percent = commission_percent
            plan.features = list(features or [])
            plan.trial_days = trial_days
            plan.trial_enabled = trial_enabled
            plan.is_active = is_active
            plan.sort_order = sort_order

        logger.info(f"⚙️ SUBSCRIPTION_PLAN_SAVED: {plan.id} '{name}' {monthly_price}/month {commission_percent}%")
        return plan

    def deactivate_plan(self, plan_id: str) -> None:
        with managed_session(self.session_factory) as session:
            plan = session.get(SubscriptionPlan, plan_id)
            if plan is None:
                raise NotFound(f"Subscription plan {plan_id} not found")
            plan.is_active = False
        logger.info(f"⚙️ SUBSCRIPTION_PLAN_DEACTIVATED: {plan_id}")

    # ------------------------------------------------------------------
    # User subscriptions
    # ------------------------------------------------------------------

    def get_user_subscription(self, user_id: str, now: datetime = None) -> Optional[UserSubscription]:
        """The user's unexpired subscription, or None"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        with managed_session(self.session_factory) as session:
            account = session.get(Account, user_id)
            if account is None or not account.subscription_plan_id or not account.subscription_expires_at:
                return None
            if account.subscription_expires_at <= now:
                return None
            plan = session.get(SubscriptionPlan, account.subscription_plan_id)
            if plan is None:
                return None
            return UserSubscription(
                user_id=user_id,
                plan_id=plan.id,
                plan_name=plan.name,
                commission_percent=Decimal(plan.commission_percent),
                expires_at=account.subscription_expires_at,
                status="trial" if account.subscription_is_trial else "active",
            )

    def has_active_subscription(self, user_id: str, now: datetime = None) -> bool:
        subscription = self.get_user_subscription(user_id, now)
        return subscription is not None and subscription.status == "active"

    def get_user_benefits(self, user_id: str, now: datetime = None) -> Dict[str, Any]:
        subscription = self.get_user_subscription(user_id, now)
        if subscription is None:
            return {}
        plan = self.get_plan(subscription.plan_id)
        return {
            "commission_percent": subscription.commission_percent,
            "features": list(plan.features or []),
            "status": subscription.status,
            "expires_at": subscription.expires_at,
        }

    def start_trial(self, user_id: str, plan_id: str = None, days: int = None,
                    now: datetime = None) -> UserSubscription:
        """One free trial per user; records no ledger transaction"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        settings = self.settings.get_platform_settings()
        if not settings.auto_trial_enabled:
            raise InvalidState("Trials are disabled")

        plan_id = plan_id or settings.default_trial_subscription_id
        if not plan_id:
            raise NotFound("No trial subscription available")

        self.ledger.ensure_account(user_id)
        with managed_session(self.session_factory) as session:
            plan = session.get(SubscriptionPlan, plan_id)
            if plan is None or not plan.is_active or not plan.trial_enabled:
                raise InvalidState(f"Trial not available for plan {plan_id}")

            account = session.get(Account, user_id)
            if account.trial_used:
                raise InvalidState(f"User {user_id} already used the trial")

            trial_days = days or plan.trial_days or settings.default_trial_days
            account.subscription_plan_id = plan.id
            account.subscription_expires_at = now + timedelta(days=trial_days)
            account.subscription_is_trial = True
            account.trial_used = True

        logger.info(f"🎟️ TRIAL_STARTED: user {user_id} plan {plan_id} for {trial_days} days")
        return self.get_user_subscription(user_id, now)

    def purchase_subscription(self, user_id: str, plan_id: str, months: int = 1,
                              idempotency_key: str = None, now: datetime = None) -> UserSubscription:
        """
        Charge ``monthly_price * months`` and extend the subscription.

        The extension starts from the current expiry when it is still in the
        future, otherwise from now. A replayed key neither charges nor extends again.
        """
        if months < 1:
            raise InvalidAmount("months must be at least 1")
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        plan = self.get_plan(plan_id)
        if plan is None or not plan.is_active:
            raise NotFound(f"Subscription plan {plan_id} not found")

        total_price = MonetaryDecimal.quantize_money(Decimal(plan.monthly_price) * months)
        if total_price <= 0:
            raise InvalidAmount(f"Plan {plan_id} is free; grant it instead of purchasing")

        replay = self.ledger.get_transaction_by_idempotency_key(idempotency_key) is not None
        if not replay and not self.ledger.can_afford(user_id, total_price):
            raise InsufficientFunds(
                f"User {user_id} cannot afford {total_price} for plan {plan.name}",
                required=total_price,
                available=self.ledger.get_balance(user_id).available_balance,
            )

        payment = self.ledger.post_transaction(
            user_id,
            TransactionType.SUBSCRIPTION_PAYMENT,
            total_price,
            description=f"Subscription: {plan.name} ({months} months)",
            metadata={"plan_id": plan.id, "plan_name": plan.name, "months": months},
            idempotency_key=idempotency_key,
        )

        try:
            with self.locker.lock_account_operation(user_id) as (session, account):
                applied = (
                    session.query(SubscriptionPeriod)
                    .filter(SubscriptionPeriod.payment_transaction_id == payment.id)
                    .first()
                )
                if applied is None:
                    current = account.subscription_expires_at
                    start = current if current and current > now and not account.subscription_is_trial else now
                    expires_at = add_months(start, months)
                    session.add(SubscriptionPeriod(
                        user_id=user_id,
                        plan_id=plan.id,
                        payment_transaction_id=payment.id,
                        months=months,
                        starts_at=start,
                        expires_at=expires_at,
                    ))
                    account.subscription_plan_id = plan.id
                    account.subscription_expires_at = expires_at
                    account.subscription_is_trial = False
                else:
                    logger.info(f"🔁 SUBSCRIPTION_PAYMENT_ALREADY_APPLIED: user {user_id} payment {payment.id}")
        except IntegrityError:
            # A concurrent replay applied the same payment first
            logger.info(f"🔁 SUBSCRIPTION_PAYMENT_ALREADY_APPLIED: user {user_id} payment {payment.id}")

        logger.info(f"💳 SUBSCRIPTION_PURCHASED: user {user_id} plan {plan.name} x{months} for {total_price}")
        return self.get_user_subscription(user_id, now)

    def cancel_subscription(self, user_id: str, now: datetime = None) -> None:
        """Expire the current subscription immediately; no refund"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        if self.get_user_subscription(user_id, now) is None:
            raise NotFound(f"No active subscription for user {user_id}")
        with managed_session(self.session_factory) as session:
            account = session.get(Account, user_id)
            account.subscription_expires_at = now
        logger.info(f"🛑 SUBSCRIPTION_CANCELLED: user {user_id}")

    def grant_free_subscription(self, user_id: str, plan_id: str, months: int = 1,
                                admin_id: str = None, now: datetime = None) -> UserSubscription:
        if months < 1:
            raise InvalidAmount("months must be at least 1")
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        plan = self.get_plan(plan_id)
        if plan is None:
            raise NotFound(f"Subscription plan {plan_id} not found")

        self.ledger.ensure_account(user_id)
        with managed_session(self.session_factory) as session:
            account = session.get(Account, user_id)
            account.subscription_plan_id = plan.id
            account.subscription_expires_at = add_months(now, months)
            account.subscription_is_trial = False

        logger.info(f"🎁 SUBSCRIPTION_GRANTED: user {user_id} plan {plan.name} x{months} by {admin_id or 'system'}")
        return self.get_user_subscription(user_id, now)

    def mass_grant_trial(self, user_ids: List[str], plan_id: str = None, days: int = None) -> Dict[str, str]:
        """Start trials for many users; returns per-user outcome instead of stopping at the first refusal"""
        results = {}
        for user_id in user_ids:
            try:
                self.start_trial(user_id, plan_id=plan_id, days=days)
                results[user_id] = "granted"
            except (InvalidState, NotFound) as e:
                results[user_id] = f"skipped: {e.message}"
        logger.info(
            f"🎟️ MASS_TRIAL_GRANT: {sum(1 for r in results.values() if r == 'granted')}/{len(user_ids)} granted"
        )
        return results

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def get_subscription_stats(self, now: datetime = None) -> Dict[str, Any]:
        """
        Counts of users holding a plan and this month's subscription revenue.

        ``total_active`` includes trials, which are also counted in
        ``total_trial``. ``subscriptions_by_type`` counts users per plan name
        whether or not their subscription has expired.
        """
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        with managed_session(self.session_factory) as session:
            rows = (
                session.query(Account.subscription_expires_at, Account.subscription_is_trial, SubscriptionPlan.name)
                .join(SubscriptionPlan, SubscriptionPlan.id == Account.subscription_plan_id)
                .filter(Account.subscription_expires_at.isnot(None))
                .all()
            )

        stats = {
            "total_active": 0,
            "total_trial": 0,
            "total_expired": 0,
            "revenue_this_month": self.ledger.revenue.get_total_income(
                IncomeSource.SUBSCRIPTION.value, since=month_start(now)
            ),
            "subscriptions_by_type": {},
        }
        for expires_at, is_trial, plan_name in rows:
            if expires_at > now:
                stats["total_active"] += 1
                if is_trial:
                    stats["total_trial"] += 1
            else:
                stats["total_expired"] += 1
            stats["subscriptions_by_type"][plan_name] = stats["subscriptions_by_type"].get(plan_name, 0) + 1
        return stats
