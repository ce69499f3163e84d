# deps.py
# Dependency injections for routes: database session and service wiring.

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from certificate_service import UrlCertificateStore
from database import SessionLocal
from distribution_service import DistributionService
from fee_service import PlatformSettingsFeePolicyProvider
from investment_transaction_service import InvestmentTransactionService
from notification_service import build_notification_sink


# -----------------------
#  DATABASE DEPENDENCY
# -----------------------
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

SessionDep = Annotated[AsyncSession, Depends(get_db)]


# -----------------------
#  SERVICES
# -----------------------
def get_transaction_service() -> InvestmentTransactionService:
    """Fee policy is read from platform_settings on every call, never cached here"""
    return InvestmentTransactionService(
        fee_policy_provider=PlatformSettingsFeePolicyProvider(),
        certificate_store=UrlCertificateStore(),
        notification_sink=build_notification_sink(),
    )

TransactionServiceDep = Annotated[InvestmentTransactionService, Depends(get_transaction_service)]


def get_distribution_service() -> DistributionService:
    return DistributionService(notification_sink=build_notification_sink())

DistributionServiceDep = Annotated[DistributionService, Depends(get_distribution_service)]
