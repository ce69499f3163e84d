"""
Income Distribution Service
===========================

Splits a cash payout for a property among its active owners.

RULE 1: Owners come from both ledgers
- legacy investments in status confirmed/active
- investment transactions in status completed

RULE 2: share = floor(total_amount * ownership / total_ownership)
- total_ownership is the actual sum over active owners, not 1,000,000.
- Owners whose share floors to 0 get no row.
- The floor remainder (fewer minor units than there are owners) stays
  undistributed. Do not change the rounding mode to absorb it.

RULE 3: One distribution event is one transaction
- Both ledgers are read in the same transaction as the inserts, so an
  investment completing mid-computation is either fully in or fully out.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from investment_errors import InvestmentEngineError, NoActiveInvestments, NotFound, StoreUnavailable
from models import (
    DISTRIBUTION_TYPES,
    LEGACY_ACTIVE_STATES,
    IncomeDistribution as DBIncomeDistribution,
    InvestmentTransaction as DBInvestmentTransaction,
    LegacyInvestment as DBLegacyInvestment,
    Property as DBProperty,
    to_naive_utc,
    utcnow,
)
from notification_service import LoggingNotificationSink, NotificationSink
from schemas import DistributionResult, IncomeDistribution, InvestorPreview, Owner

log = logging.getLogger(__name__)


# ==================== Ownership sources ====================

class OwnershipSource(Protocol):
    async def active_owners(self, db: AsyncSession, property_id: int) -> List[Owner]:
        ...


class LegacyOwnershipSource:
    """Owners recorded in the first-generation `investments` table"""

    async def active_owners(self, db: AsyncSession, property_id: int) -> List[Owner]:
        result = await db.execute(
            select(DBLegacyInvestment)
            .where(
                DBLegacyInvestment.property_id == property_id,
                DBLegacyInvestment.status.in_(LEGACY_ACTIVE_STATES),
            )
            .order_by(DBLegacyInvestment.id)
        )
        return [
            Owner(
                source="legacy",
                record_id=r.id,
                user_id=r.user_id,
                shares=r.shares,
                ownership_percentage=int(r.ownership_percentage or 0),
            )
            for r in result.scalars().all()
        ]


class TransactionOwnershipSource:
    """Owners with a completed investment transaction"""

    async def active_owners(self, db: AsyncSession, property_id: int) -> List[Owner]:
        result = await db.execute(
            select(DBInvestmentTransaction)
            .where(
                DBInvestmentTransaction.property_id == property_id,
                DBInvestmentTransaction.status == "completed",
            )
            .order_by(DBInvestmentTransaction.id)
        )
        return [
            Owner(
                source="new",
                record_id=r.id,
                user_id=r.user_id,
                shares=r.number_of_shares,
                ownership_percentage=int(r.ownership_percentage or 0),
            )
            for r in result.scalars().all()
        ]


DEFAULT_OWNERSHIP_SOURCES = (LegacyOwnershipSource(), TransactionOwnershipSource())


# ==================== Arithmetic ====================

def compute_shares(total_amount: int, owners: Sequence[Owner]) -> List[Tuple[Owner, int]]:
    """
    Pure proportional split. Returns (owner, amount) for every owner with a
    non-zero amount.

    Raises:
        NoActiveInvestments: the owners' ownership sums to zero
    """
    total_ownership = sum(o.ownership_percentage for o in owners)
    if total_ownership <= 0:
        raise NoActiveInvestments("No active investments found for this property")

    payouts = []
    for owner in owners:
        amount = total_amount * owner.ownership_percentage // total_ownership
        if amount > 0:
            payouts.append((owner, amount))
    return payouts


# ==================== Service ====================

class DistributionService:
    """Distribution events, payout processing and history"""

    def __init__(
        self,
        notification_sink: Optional[NotificationSink] = None,
        ownership_sources: Sequence[OwnershipSource] = DEFAULT_OWNERSHIP_SOURCES,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.notification_sink = notification_sink or LoggingNotificationSink()
        self.ownership_sources = tuple(ownership_sources)
        self.clock = clock or utcnow

    async def _begin_snapshot(self, db: AsyncSession) -> None:
        """Pin a consistent read across both ledgers for the rest of the transaction"""
        if db.in_transaction() or db.bind is None:
            return
        if db.bind.dialect.name == "postgresql":
            await db.connection(execution_options={"isolation_level": "REPEATABLE READ"})

    async def collect_owners(self, db: AsyncSession, property_id: int) -> List[Owner]:
        owners: List[Owner] = []
        for source in self.ownership_sources:
            owners.extend(await source.active_owners(db, property_id))
        return owners

    async def preview_investors(self, db: AsyncSession, property_id: int) -> InvestorPreview:
        """Owners the next distribution of this property would pay"""
        try:
            await self._get_property(db, property_id)
            owners = await self.collect_owners(db, property_id)
        except SQLAlchemyError as e:
            log.error(f"Investor preview failed for property {property_id}: {e}")
            raise StoreUnavailable(f"Could not read owners of property {property_id}") from e
        return InvestorPreview(
            property_id=property_id,
            investors=owners,
            total_ownership=sum(o.ownership_percentage for o in owners),
            total_investors=len({o.user_id for o in owners}),
        )

    async def distribute(
        self,
        db: AsyncSession,
        property_id: int,
        total_amount: int,
        distribution_type: str,
        distribution_date: datetime,
        performed_by: Optional[int] = None
    ) -> DistributionResult:
        """
        Create one pending IncomeDistribution per paid owner.

        Raises:
            NotFound: property does not exist
            NoActiveInvestments: no owner holds any ownership
            StoreUnavailable: nothing was written
        """
        if total_amount <= 0:
            raise ValueError(f"total_amount must be positive, got {total_amount}")
        if distribution_type not in DISTRIBUTION_TYPES:
            raise ValueError(f"Unknown distribution type {distribution_type!r}")
        distribution_date = to_naive_utc(distribution_date)

        try:
            await self._begin_snapshot(db)
            await self._get_property(db, property_id)
            owners = await self.collect_owners(db, property_id)
            payouts = compute_shares(total_amount, owners)

            now = self.clock()
            rows = []
            for owner, amount in payouts:
                row = DBIncomeDistribution(
                    investment_id=owner.record_id if owner.source == "legacy" else None,
                    investment_transaction_id=owner.record_id if owner.source == "new" else None,
                    property_id=property_id,
                    user_id=owner.user_id,
                    amount=amount,
                    distribution_type=distribution_type,
                    distribution_date=distribution_date,
                    status="pending",
                    created_at=now,
                )
                db.add(row)
                rows.append(row)
            await db.commit()
            for row in rows:
                await db.refresh(row)
        except InvestmentEngineError:
            await db.rollback()
            raise
        except SQLAlchemyError as e:
            await db.rollback()
            log.error(f"Distribution for property {property_id} failed: {e}")
            raise StoreUnavailable(f"Distribution for property {property_id} failed") from e

        distributed = sum(int(r.amount) for r in rows)
        log.info(
            f"Distributed {distributed} of {total_amount} ({distribution_type}) for property {property_id} "
            f"to {len(rows)} owners, residual {total_amount - distributed}, by {performed_by}"
        )
        return DistributionResult(
            property_id=property_id,
            requested_amount=total_amount,
            total_distributions=len(rows),
            total_amount=distributed,
            residual=total_amount - distributed,
            total_ownership=sum(o.ownership_percentage for o in owners),
            distributions=[IncomeDistribution.model_validate(r) for r in rows],
        )

    async def mark_processed(self, db: AsyncSession, distribution_id: int) -> DBIncomeDistribution:
        """
        pending -> processed, then notify the owner.

        Already processed: returned unchanged, no second notification.
        """
        now = self.clock()
        try:
            result = await db.execute(
                update(DBIncomeDistribution)
                .where(
                    DBIncomeDistribution.id == distribution_id,
                    DBIncomeDistribution.status == "pending",
                )
                .values(status="processed", processed_at=now)
                .execution_options(synchronize_session=False)
            )
            transitioned = result.rowcount == 1
            await db.commit()

            distribution = await self.get_distribution(db, distribution_id)
        except SQLAlchemyError as e:
            await db.rollback()
            log.error(f"Could not process distribution {distribution_id}: {e}")
            raise StoreUnavailable(f"Could not process distribution {distribution_id}") from e

        if not transitioned:
            log.info(f"Distribution {distribution_id} already processed")
            return distribution

        log.info(f"Distribution {distribution_id} processed: {distribution.amount} to user {distribution.user_id}")
        await self._notify_processed(db, distribution)
        return distribution

    async def get_distribution(self, db: AsyncSession, distribution_id: int) -> DBIncomeDistribution:
        result = await db.execute(
            select(DBIncomeDistribution)
            .where(DBIncomeDistribution.id == distribution_id)
            .execution_options(populate_existing=True)
        )
        distribution = result.scalar_one_or_none()
        if distribution is None:
            raise NotFound(f"Distribution {distribution_id} not found")
        return distribution

    async def list_property_distributions(self, db: AsyncSession, property_id: int) -> List[DBIncomeDistribution]:
        return await self.list_distributions(db, property_id=property_id, limit=None)

    async def list_user_distributions(self, db: AsyncSession, user_id: int) -> List[DBIncomeDistribution]:
        result = await db.execute(
            select(DBIncomeDistribution)
            .where(DBIncomeDistribution.user_id == user_id)
            .order_by(DBIncomeDistribution.distribution_date.desc(), DBIncomeDistribution.id.desc())
        )
        return list(result.scalars().all())

    async def list_distributions(
        self,
        db: AsyncSession,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        property_id: Optional[int] = None,
        limit: Optional[int] = 100
    ) -> List[DBIncomeDistribution]:
        """Distribution history, newest distribution date first"""
        start, end = to_naive_utc(start), to_naive_utc(end)
        query = select(DBIncomeDistribution)
        if start is not None:
            query = query.where(DBIncomeDistribution.distribution_date >= start)
        if end is not None:
            query = query.where(DBIncomeDistribution.distribution_date <= end)
        if property_id is not None:
            query = query.where(DBIncomeDistribution.property_id == property_id)
        query = query.order_by(DBIncomeDistribution.distribution_date.desc(), DBIncomeDistribution.id.desc())
        if limit is not None:
            query = query.limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def _get_property(self, db: AsyncSession, property_id: int) -> DBProperty:
        result = await db.execute(select(DBProperty).where(DBProperty.id == property_id))
        property_ = result.scalar_one_or_none()
        if property_ is None:
            raise NotFound(f"Property {property_id} not found")
        return property_

    async def _notify_processed(self, db: AsyncSession, distribution: DBIncomeDistribution) -> None:
        try:
            property_ = await self._get_property(db, distribution.property_id)
            await self.notification_sink.notify(
                distribution.user_id,
                "income_distribution_processed",
                {
                    "distribution_id": distribution.id,
                    "property_id": distribution.property_id,
                    "property_name": property_.name,
                    "amount": int(distribution.amount),
                    "distribution_type": distribution.distribution_type,
                    "distribution_date": distribution.distribution_date.date().isoformat(),
                },
            )
        except Exception as e:
            log.error(f"Notification for distribution {distribution.id} failed: {e}")
