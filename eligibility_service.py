"""
Eligibility Service - KYC/AML/annual-limit gate for investors
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from investment_errors import StoreUnavailable
from models import InvestmentEligibility as DBEligibility
from schemas import EligibilityResult, EligibilityUpdate

log = logging.getLogger(__name__)

BLOCKING_AML_STATES = ("flagged", "rejected")


class EligibilityService:
    """Decides whether an investor may commit an amount, and tracks running totals"""

    @staticmethod
    async def get_or_create(db: AsyncSession, user_id: int) -> DBEligibility:
        """
        Get the user's eligibility record, creating a default one on first use.

        Defaults: not accredited, KYC pending, AML pending, no annual limit.
        """
        result = await db.execute(select(DBEligibility).where(DBEligibility.user_id == user_id))
        record = result.scalar_one_or_none()
        if record is not None:
            return record

        record = DBEligibility(
            user_id=user_id,
            is_accredited=False,
            accreditation_type="none",
            current_year_invested=0,
            lifetime_invested=0,
            kyc_status="pending",
            aml_status="pending",
        )
        # A concurrent first check for the same user fails the unique index
        # here; it surfaces as StoreUnavailable and the retry finds the row.
        db.add(record)
        await db.flush()
        log.info(f"Created default eligibility record for user {user_id}")
        return record

    @staticmethod
    def evaluate(record: DBEligibility, amount: int) -> EligibilityResult:
        """Pure decision over an eligibility record. First failing rule wins."""
        if record.kyc_status != "approved":
            return EligibilityResult(eligible=False, reason="KYC verification required")

        if record.aml_status in BLOCKING_AML_STATES:
            return EligibilityResult(eligible=False, reason="AML check failed")

        # A limit of 0 blocks every investment; only None means unlimited
        if record.annual_investment_limit is not None:
            remaining = record.annual_investment_limit - (record.current_year_invested or 0)
            if amount > remaining:
                return EligibilityResult(
                    eligible=False,
                    reason=f"Investment exceeds annual limit. Remaining: ${max(remaining, 0) / 100:.2f}",
                )

        return EligibilityResult(eligible=True, reason=None)

    @staticmethod
    async def check_eligibility(db: AsyncSession, user_id: int, amount: int) -> EligibilityResult:
        """
        Check if a user can invest `amount` (minor units).

        Never raises for business-rule failures; those come back as
        eligible=False with a display reason.

        Raises:
            StoreUnavailable: eligibility record could not be read or created
        """
        try:
            record = await EligibilityService.get_or_create(db, user_id)
        except SQLAlchemyError as e:
            log.error(f"Eligibility lookup failed for user {user_id}: {e}")
            raise StoreUnavailable(f"Could not read eligibility for user {user_id}") from e

        decision = EligibilityService.evaluate(record, amount)
        if not decision.eligible:
            log.warning(f"User {user_id} not eligible to invest {amount}: {decision.reason}")
        return decision

    @staticmethod
    async def get_eligibility(db: AsyncSession, user_id: int) -> DBEligibility:
        """Get the user's eligibility record, persisting the default on first read"""
        try:
            record = await EligibilityService.get_or_create(db, user_id)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            log.error(f"Eligibility read failed for user {user_id}: {e}")
            raise StoreUnavailable(f"Could not read eligibility for user {user_id}") from e
        return record

    @staticmethod
    async def record_investment(db: AsyncSession, user_id: int, amount: int) -> None:
        """
        Increment the user's running totals by a completed investment.

        Done as a single UPDATE with column arithmetic so concurrent
        completions for the same user never lose an increment. Does not commit.
        """
        await EligibilityService.get_or_create(db, user_id)
        await db.execute(
            update(DBEligibility)
            .where(DBEligibility.user_id == user_id)
            .values(
                current_year_invested=DBEligibility.current_year_invested + amount,
                lifetime_invested=DBEligibility.lifetime_invested + amount,
            )
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def update_eligibility(
        db: AsyncSession,
        user_id: int,
        changes: EligibilityUpdate,
        performed_by: Optional[int] = None
    ) -> DBEligibility:
        """Apply an admin change to a user's eligibility record and commit"""
        try:
            record = await EligibilityService.get_or_create(db, user_id)
            fields = changes.model_dump(exclude_unset=True)
            for key, value in fields.items():
                setattr(record, key, value)
            await db.commit()
            await db.refresh(record)
        except SQLAlchemyError as e:
            await db.rollback()
            log.error(f"Eligibility update failed for user {user_id}: {e}")
            raise StoreUnavailable(f"Could not update eligibility for user {user_id}") from e

        log.info(f"Eligibility for user {user_id} updated by {performed_by}: {sorted(fields)}")
        return record
