"""
Share Inventory Service
=======================

Derives the free share inventory of a property.

RULE: available = total_shares - sum(shares of transactions in
reserved / processing / completed). Pending drafts never consume inventory.

An expired reservation keeps consuming inventory until the expiry sweep
cancels it. Counting it earlier would let two investors be allocated the
same shares during the race window.

Availability is never cached: every mutation that depends on it re-reads it
inside its own atomic statement (see InvestmentTransactionService.reserve).
"""

import logging
from typing import Optional

from sqlalchemy import select, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from investment_errors import NotFound, StoreUnavailable
from models import (
    Property as DBProperty,
    InvestmentTransaction as DBInvestmentTransaction,
    INVENTORY_CONSUMING_STATES,
    OWNERSHIP_SCALE,
)
from schemas import Availability

log = logging.getLogger(__name__)


def sold_shares_subquery(property_id: int):
    """
    Scalar sub-select summing the inventory-consuming shares of a property.

    Selects from an alias of investment_transactions so it can sit inside an
    UPDATE of that same table without being correlated to the updated row.
    """
    sold = aliased(DBInvestmentTransaction)
    return (
        select(func.coalesce(func.sum(sold.number_of_shares), 0))
        .where(
            and_(
                sold.property_id == property_id,
                sold.status.in_(INVENTORY_CONSUMING_STATES),
            )
        )
        .scalar_subquery()
    )


def ownership_for(number_of_shares: int, total_shares: int) -> int:
    """
    Scaled ownership of `number_of_shares` out of `total_shares`.

    round(shares / total * 1,000,000), half-up, in integer arithmetic.
    """
    if total_shares <= 0:
        return 0
    return (2 * number_of_shares * OWNERSHIP_SCALE + total_shares) // (2 * total_shares)


class ShareInventoryService:
    """Read-only inventory calculator"""

    @staticmethod
    async def get_property(db: AsyncSession, property_id: int, lock: bool = False) -> DBProperty:
        """
        Load a property or raise NotFound.

        With lock=True the row is selected FOR UPDATE, serialising every
        inventory-sensitive writer of that property until commit.
        """
        query = select(DBProperty).where(DBProperty.id == property_id)
        if lock:
            query = query.with_for_update()
        result = await db.execute(query)
        property_ = result.scalar_one_or_none()
        if property_ is None:
            raise NotFound(f"Property {property_id} not found")
        return property_

    @staticmethod
    async def get_sold_shares(db: AsyncSession, property_id: int) -> int:
        result = await db.execute(select(sold_shares_subquery(property_id)))
        return int(result.scalar() or 0)

    @staticmethod
    async def get_availability(
        db: AsyncSession,
        property_id: int,
        property_: Optional[DBProperty] = None
    ) -> Availability:
        """
        Compute {total, sold, available, percentage_sold} for a property.

        Raises:
            NotFound: property does not exist
            StoreUnavailable: the store could not be read
        """
        try:
            if property_ is None:
                property_ = await ShareInventoryService.get_property(db, property_id)
            sold = await ShareInventoryService.get_sold_shares(db, property_id)
        except SQLAlchemyError as e:
            log.error(f"Availability lookup failed for property {property_id}: {e}")
            raise StoreUnavailable(f"Could not read inventory for property {property_id}") from e

        total = int(property_.total_shares or 0)
        return Availability(
            property_id=property_id,
            total_shares=total,
            sold_shares=sold,
            available_shares=total - sold,
            percentage_sold=(sold / total * 100) if total > 0 else 0.0,
        )
