"""
Shared fixtures for the ledger test suite.

Every test gets a fresh in-memory SQLite database. StaticPool keeps the single
connection alive across the short-lived sessions the services open.
"""

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base
from services.commission_service import CommissionResolver
from services.escrow_service import EscrowCoordinator
from services.ledger_service import LedgerService
from services.platform_revenue_service import PlatformRevenueService
from services.platform_settings_service import PlatformSettingsService
from services.subscription_service import SubscriptionService
from services.wallet_service import WalletService


@pytest.fixture
def engine():
    """Create in-memory database for testing"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def ledger(session_factory):
    return LedgerService(session_factory)


@pytest.fixture
def settings_service(session_factory):
    return PlatformSettingsService(session_factory)


@pytest.fixture
def commission_resolver(session_factory, settings_service):
    return CommissionResolver(session_factory, settings_service)


@pytest.fixture
def escrow(ledger, commission_resolver):
    return EscrowCoordinator(ledger=ledger, commission_resolver=commission_resolver)


@pytest.fixture
def wallet(ledger, settings_service):
    return WalletService(ledger, settings_service)


@pytest.fixture
def subscriptions(ledger, settings_service):
    return SubscriptionService(ledger, settings_service)


@pytest.fixture
def revenue(session_factory):
    return PlatformRevenueService(session_factory)


@pytest.fixture
def fund(ledger):
    """Credit a user through a confirmed deposit"""
    def _fund(user_id: str, amount) -> None:
        ledger.post_transaction(user_id, "deposit", Decimal(str(amount)), description="test funding")
    return _fund
