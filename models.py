"""
Freight Ledger - Database Schema
================================

Schema for the financial core of the freight marketplace:
- Per-user accounts with balance / frozen balance split
- Append-only ledger transactions with idempotency keys
- Escrow operations per order (freeze -> release | refund)
- Commission levels, subscription plans, applied subscription periods and platform settings
- Platform income recorded from commission, subscription and promotion charges

Money columns are Numeric(20, 2); timestamps are naive UTC.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Boolean, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _new_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TransactionType(Enum):
    """Ledger transaction kinds"""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    FREEZE = "freeze"
    RELEASE = "release"
    COMMISSION = "commission"
    SUBSCRIPTION_PAYMENT = "subscription_payment"
    PROMOTION = "promotion"
    FAST_WITHDRAW = "fast_withdraw"
    REFUND = "refund"
    BONUS = "bonus"


class TransactionStatus(Enum):
    """Ledger transaction lifecycle: pending -> confirmed | rejected | failed"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    FAILED = "failed"


class EscrowStatus(Enum):
    """Escrow operation lifecycle: frozen -> released | refunded"""
    FROZEN = "frozen"
    RELEASED = "released"
    REFUNDED = "refunded"


class IncomeSource(Enum):
    """Where platform income comes from"""
    COMMISSION = "commission"
    SUBSCRIPTION = "subscription"
    PROMOTION = "promotion"


_TRANSACTION_TYPES_SQL = ", ".join(f"'{t.value}'" for t in TransactionType)
_TRANSACTION_STATUSES_SQL = ", ".join(f"'{s.value}'" for s in TransactionStatus)
_ESCROW_STATUSES_SQL = ", ".join(f"'{s.value}'" for s in EscrowStatus)
_INCOME_SOURCES_SQL = ", ".join(f"'{s.value}'" for s in IncomeSource)


# ============================================================================
# CATALOGUE TABLES
# ============================================================================

class CommissionLevel(Base):
    """Turnover-based commission tier"""
    __tablename__ = 'commission_levels'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    min_turnover: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)
    max_turnover: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)  # NULL = open ended
    percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('percent >= 0 AND percent <= 100', name='ck_commission_level_percent_range'),
        CheckConstraint('min_turnover >= 0', name='ck_commission_level_min_turnover'),
        CheckConstraint('max_turnover IS NULL OR max_turnover > min_turnover', name='ck_commission_level_range'),
    )


class SubscriptionPlan(Base):
    """Paid plan granting a reduced commission"""
    __tablename__ = 'subscription_plans'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    commission_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    features: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    trial_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    trial_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('monthly_price >= 0', name='ck_subscription_plan_price'),
        CheckConstraint('commission_percent >= 0 AND commission_percent <= 100', name='ck_subscription_plan_percent'),
    )


class PlatformSetting(Base):
    """Key/value platform settings; unset keys fall back to Config defaults"""
    __tablename__ = 'platform_settings'

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    value_type: Mapped[str] = mapped_column(String(20), default="string", nullable=False)  # string, decimal, int, bool
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)


# ============================================================================
# LEDGER TABLES
# ============================================================================

class Account(Base):
    """Per-user balance record; invariant 0 <= frozen_balance <= balance"""
    __tablename__ = 'accounts'

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    balance: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)
    frozen_balance: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)  # Funds held by escrow

    # Commission inputs
    custom_commission_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    subscription_plan_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey('subscription_plans.id'), nullable=True)
    subscription_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    subscription_is_trial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trial_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    turnover_30_days: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)
    commission_level_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('commission_levels.id'), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_account_balance_positive'),
        CheckConstraint('frozen_balance >= 0', name='ck_account_frozen_positive'),
        CheckConstraint('frozen_balance <= balance', name='ck_account_frozen_within_balance'),
        CheckConstraint(
            'custom_commission_percent IS NULL OR (custom_commission_percent >= 0 AND custom_commission_percent <= 100)',
            name='ck_account_custom_commission_range'
        ),
    )

    @property
    def available_balance(self) -> Decimal:
        return Decimal(self.balance) - Decimal(self.frozen_balance)


class Transaction(Base):
    """Append-only ledger entry; balance effect applied once on confirmation"""
    __tablename__ = 'transactions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey('accounts.user_id'), nullable=False, index=True)

    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=TransactionStatus.PENDING.value, nullable=False)

    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    deal_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra_data: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_transaction_amount_positive'),
        CheckConstraint(f'transaction_type IN ({_TRANSACTION_TYPES_SQL})', name='ck_transaction_type_valid'),
        CheckConstraint(f'status IN ({_TRANSACTION_STATUSES_SQL})', name='ck_transaction_status_valid'),
        Index('ix_transactions_user_created', 'user_id', 'created_at'),
        Index('ix_transactions_type_status', 'transaction_type', 'status'),
    )


class EscrowOperation(Base):
    """Funds held for one order between freeze and release/refund"""
    __tablename__ = 'escrow_operations'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    deal_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    client_id: Mapped[str] = mapped_column(String(64), ForeignKey('accounts.user_id'), nullable=False, index=True)
    carrier_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=EscrowStatus.FROZEN.value, nullable=False)

    frozen_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Ids of the underlying ledger transactions, commission, refund reason, request keys
    extra_data: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_escrow_amount_positive'),
        CheckConstraint(f'status IN ({_ESCROW_STATUSES_SQL})', name='ck_escrow_status_valid'),
        Index('ix_escrow_carrier_status', 'carrier_id', 'status'),
    )


class PlatformIncome(Base):
    """Revenue credited to the platform, one row per income-bearing transaction"""
    __tablename__ = 'platform_income'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    related_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    source_transaction_id: Mapped[str] = mapped_column(String(36), ForeignKey('transactions.id'), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint('source_transaction_id', name='uq_platform_income_source_transaction'),
        CheckConstraint('amount > 0', name='ck_platform_income_amount_positive'),
        CheckConstraint(f'source IN ({_INCOME_SOURCES_SQL})', name='ck_platform_income_source_valid'),
    )


class SubscriptionPeriod(Base):
    """One applied subscription payment and the expiry it produced"""
    __tablename__ = 'subscription_periods'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey('accounts.user_id'), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(36), ForeignKey('subscription_plans.id'), nullable=False)
    payment_transaction_id: Mapped[str] = mapped_column(String(36), ForeignKey('transactions.id'), nullable=False)
    months: Mapped[int] = mapped_column(Integer, nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        # A payment extends a subscription at most once, even when replayed
        UniqueConstraint('payment_transaction_id', name='uq_subscription_period_payment'),
        CheckConstraint('months >= 1', name='ck_subscription_period_months'),
    )
