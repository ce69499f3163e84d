"""
Unified Ledger View - one read-only list over both investment ledgers
"""

import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    InvestmentTransaction as DBInvestmentTransaction,
    LegacyInvestment as DBLegacyInvestment,
)
from schemas import PortfolioSummary, UnifiedInvestment

log = logging.getLogger(__name__)

# Legacy status -> unified status
LEGACY_STATUS_MAP = {
    "pending": "pending",
    "confirmed": "completed",
    "active": "completed",
    "exited": "completed",
    "cancelled": "cancelled",
}


def unify_legacy(record: DBLegacyInvestment) -> UnifiedInvestment:
    """Legacy investments charged no fees; the amount is the total"""
    return UnifiedInvestment(
        id=record.id,
        user_id=record.user_id,
        property_id=record.property_id,
        investment_amount=int(record.amount),
        number_of_shares=record.shares,
        price_per_share=int(record.share_price),
        platform_fee=0,
        processing_fee=0,
        total_amount=int(record.amount),
        status=LEGACY_STATUS_MAP.get(record.status, "pending"),
        payment_status=record.payment_status or "pending",
        created_at=record.investment_date or record.created_at,
        completed_at=record.confirmed_at,
        source="legacy",
        distribution_frequency=record.distribution_frequency,
        exited_at=record.exited_at,
        ownership_percentage=record.ownership_percentage,
    )


def unify_transaction(record: DBInvestmentTransaction) -> UnifiedInvestment:
    return UnifiedInvestment(
        id=record.id,
        user_id=record.user_id,
        property_id=record.property_id,
        investment_amount=int(record.investment_amount),
        number_of_shares=record.number_of_shares,
        price_per_share=int(record.price_per_share),
        platform_fee=int(record.platform_fee),
        processing_fee=int(record.processing_fee),
        total_amount=int(record.total_amount),
        status=record.status,
        payment_status=record.payment_status,
        created_at=record.created_at,
        completed_at=record.completed_at,
        source="new",
        distribution_frequency=record.distribution_frequency,
        exited_at=record.exited_at,
        ownership_percentage=record.ownership_percentage,
    )


class LedgerViewService:
    """Read-only projection; performs no writes"""

    @staticmethod
    async def get_unified_investments(db: AsyncSession, user_id: int) -> List[UnifiedInvestment]:
        """
        All investments of a user from both ledgers, newest first.

        Advisory display: a store failure is logged and yields an empty list.
        """
        try:
            legacy = await db.execute(
                select(DBLegacyInvestment).where(DBLegacyInvestment.user_id == user_id)
            )
            current = await db.execute(
                select(DBInvestmentTransaction).where(DBInvestmentTransaction.user_id == user_id)
            )
            unified = [unify_legacy(r) for r in legacy.scalars().all()]
            unified.extend(unify_transaction(r) for r in current.scalars().all())
        except SQLAlchemyError as e:
            log.error(f"Unified ledger unavailable for user {user_id}: {e}")
            return []

        unified.sort(key=lambda inv: inv.created_at, reverse=True)
        return unified

    @staticmethod
    async def get_portfolio_summary(db: AsyncSession, user_id: int) -> PortfolioSummary:
        """Totals over the user's completed investments, plus the full unified list"""
        investments = await LedgerViewService.get_unified_investments(db, user_id)
        completed = [inv for inv in investments if inv.status == "completed" and inv.exited_at is None]
        return PortfolioSummary(
            user_id=user_id,
            total_invested=sum(inv.total_amount for inv in completed),
            active_investments=len(completed),
            investments=investments,
        )
