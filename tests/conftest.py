"""
Shared fixtures for the investment engine test suite.

Every test gets its own file-backed SQLite database under tmp_path. The
engine uses NullPool, so two sessions opened in one test really are two
connections and contend on the database lock the way two requests would.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import build_engine, build_sessionmaker, create_db_and_tables
from distribution_service import DistributionService
from fee_service import StaticFeePolicyProvider
from investment_transaction_service import InvestmentTransactionService
from models import (
    InvestmentEligibility,
    InvestmentTransaction,
    LegacyInvestment,
    Property,
)

START = datetime(2026, 1, 15, 12, 0, 0)


class FakeClock:
    """Deterministic, manually advanced clock"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingNotificationSink:
    def __init__(self):
        self.sent: List[Tuple[int, str, Dict[str, Any]]] = []

    async def notify(self, user_id: int, event: str, payload: Dict[str, Any]) -> None:
        self.sent.append((user_id, event, payload))


class FailingNotificationSink:
    async def notify(self, user_id: int, event: str, payload: Dict[str, Any]) -> None:
        raise RuntimeError("mail relay down")


class FakeCertificateStore:
    def __init__(self):
        self.issued: List[int] = []

    async def issue_certificate(self, investment_id: int) -> str:
        self.issued.append(investment_id)
        return f"cert://{investment_id}"


class FailingCertificateStore:
    async def issue_certificate(self, investment_id: int) -> str:
        raise RuntimeError("document store unavailable")


class UnavailableSession(AsyncSession):
    """Every statement fails as if the database went away"""

    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("could not connect to server"))


# ==================== Database ====================

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'investments.db'}")
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def unavailable_session_factory(engine):
    return async_sessionmaker(bind=engine, class_=UnavailableSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def unavailable_db(unavailable_session_factory):
    async with unavailable_session_factory() as session:
        yield session


# ==================== Services ====================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifications():
    return RecordingNotificationSink()


@pytest.fixture
def certificates():
    return FakeCertificateStore()


@pytest.fixture
def fee_policy():
    return StaticFeePolicyProvider(Decimal("2.5"), 500)


@pytest.fixture
def service(fee_policy, certificates, notifications, clock):
    return InvestmentTransactionService(
        fee_policy_provider=fee_policy,
        certificate_store=certificates,
        notification_sink=notifications,
        clock=clock,
    )


@pytest.fixture
def distributions(notifications, clock):
    return DistributionService(notification_sink=notifications, clock=clock)


# ==================== Seed helpers ====================

async def add_property(db, total_shares: int = 1000, share_price: int = 10000, name: str = "Harbor Lofts") -> Property:
    property_ = Property(name=name, total_shares=total_shares, share_price=share_price, funding_started_at=START)
    db.add(property_)
    await db.commit()
    await db.refresh(property_)
    return property_


async def approve_investor(
    db,
    user_id: int,
    annual_investment_limit: Optional[int] = None,
    current_year_invested: int = 0,
    aml_status: str = "clear"
) -> InvestmentEligibility:
    record = InvestmentEligibility(
        user_id=user_id,
        is_accredited=True,
        accreditation_type="income",
        annual_investment_limit=annual_investment_limit,
        current_year_invested=current_year_invested,
        lifetime_invested=current_year_invested,
        kyc_status="approved",
        aml_status=aml_status,
    )
    db.add(record)
    await db.commit()
    await db.refresh(record)
    return record


async def add_completed_transaction(
    db,
    property_id: int,
    user_id: int,
    ownership_percentage: int,
    shares: int = 1,
    created_at: datetime = START
) -> InvestmentTransaction:
    transaction = InvestmentTransaction(
        user_id=user_id,
        property_id=property_id,
        number_of_shares=shares,
        price_per_share=10000,
        investment_amount=shares * 10000,
        platform_fee=0,
        processing_fee=0,
        total_amount=shares * 10000,
        ownership_percentage=ownership_percentage,
        status="completed",
        payment_status="completed",
        completed_at=created_at,
        certificate_issued=True,
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(transaction)
    await db.commit()
    await db.refresh(transaction)
    return transaction


async def add_legacy_investment(
    db,
    property_id: int,
    user_id: int,
    ownership_percentage: int,
    shares: int = 1,
    status: str = "active",
    created_at: datetime = START
) -> LegacyInvestment:
    investment = LegacyInvestment(
        user_id=user_id,
        property_id=property_id,
        amount=shares * 10000,
        shares=shares,
        share_price=10000,
        ownership_percentage=ownership_percentage,
        status=status,
        payment_status="completed",
        distribution_frequency="quarterly",
        investment_date=created_at,
        confirmed_at=created_at if status in ("confirmed", "active", "exited") else None,
        created_at=created_at,
    )
    db.add(investment)
    await db.commit()
    await db.refresh(investment)
    return investment
