# fee_service.py
# Fee policy lookup and investment quote calculation

import logging
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from investment_errors import InsufficientInventory, InvalidSettingValue, StoreUnavailable
from models import PlatformSetting as DBPlatformSetting, Property as DBProperty
from schemas import Availability, FeePolicy, Quote

log = logging.getLogger(__name__)

PLATFORM_FEE_KEY = "platform_fee_percentage"
PROCESSING_FEE_KEY = "processing_fee_cents"

MAX_FEE_PERCENT = Decimal(100)


def parse_fee_percent(value: str) -> Decimal:
    """Finite percentage in [0, 100]; ValueError otherwise"""
    try:
        percent = Decimal(value)
    except InvalidOperation:
        raise ValueError(f"{value!r} is not a number") from None
    if not percent.is_finite() or percent < 0 or percent > MAX_FEE_PERCENT:
        raise ValueError(f"{value!r} is not a percentage between 0 and 100")
    return percent


def parse_processing_fee(value: str) -> int:
    """Whole non-negative amount in minor units; ValueError otherwise"""
    try:
        fee = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{value!r} is not a whole number of minor units") from None
    if fee < 0:
        raise ValueError(f"{value!r} is negative")
    return fee


SETTING_PARSERS = {
    PLATFORM_FEE_KEY: parse_fee_percent,
    PROCESSING_FEE_KEY: parse_processing_fee,
}


class FeePolicyProvider(Protocol):
    async def get_policy(self, db: AsyncSession) -> FeePolicy:
        ...


class StaticFeePolicyProvider:
    """Fixed fee policy (tests, fee-free promotions)"""

    def __init__(self, platform_fee_percent: Decimal = Decimal("2.5"), processing_fee_minor_units: int = 500):
        self.policy = FeePolicy(
            platform_fee_percent=Decimal(str(platform_fee_percent)),
            processing_fee_minor_units=processing_fee_minor_units,
        )

    async def get_policy(self, db: AsyncSession) -> FeePolicy:
        return self.policy


class PlatformSettingsFeePolicyProvider:
    """
    Reads fee configuration from the platform_settings table on every call.

    Missing or malformed settings fall back to the configured defaults.
    """

    def __init__(
        self,
        default_fee_percent: Optional[Decimal] = None,
        default_processing_fee: Optional[int] = None
    ):
        self.default_fee_percent = default_fee_percent if default_fee_percent is not None else settings.PLATFORM_FEE_PERCENT
        self.default_processing_fee = default_processing_fee if default_processing_fee is not None else settings.PROCESSING_FEE_MINOR_UNITS

    async def get_policy(self, db: AsyncSession) -> FeePolicy:
        try:
            result = await db.execute(
                select(DBPlatformSetting).where(
                    DBPlatformSetting.setting_key.in_((PLATFORM_FEE_KEY, PROCESSING_FEE_KEY))
                )
            )
            rows = {row.setting_key: row.setting_value for row in result.scalars().all()}
        except SQLAlchemyError as e:
            log.error(f"Could not read fee settings: {e}")
            raise StoreUnavailable("Could not read fee settings") from e

        fee_percent = self.default_fee_percent
        processing_fee = self.default_processing_fee

        if PLATFORM_FEE_KEY in rows:
            try:
                fee_percent = parse_fee_percent(rows[PLATFORM_FEE_KEY])
            except ValueError as e:
                log.error(f"Ignoring malformed {PLATFORM_FEE_KEY}: {e}")
        if PROCESSING_FEE_KEY in rows:
            try:
                processing_fee = parse_processing_fee(rows[PROCESSING_FEE_KEY])
            except ValueError as e:
                log.error(f"Ignoring malformed {PROCESSING_FEE_KEY}: {e}")

        return FeePolicy(platform_fee_percent=fee_percent, processing_fee_minor_units=processing_fee)


async def upsert_platform_setting(
    db: AsyncSession,
    setting_key: str,
    setting_value: str,
    description: Optional[str] = None,
    updated_by: Optional[int] = None
) -> DBPlatformSetting:
    """
    Create or update a platform setting and commit.

    Fee settings are checked before anything is written.

    Raises:
        InvalidSettingValue: value is not valid for a fee setting
        StoreUnavailable: nothing was written
    """
    parser = SETTING_PARSERS.get(setting_key)
    if parser is not None:
        try:
            parser(setting_value)
        except ValueError as e:
            log.warning(f"Rejected platform setting {setting_key}: {e}")
            raise InvalidSettingValue(f"Invalid value for {setting_key}: {e}") from e

    try:
        result = await db.execute(select(DBPlatformSetting).where(DBPlatformSetting.setting_key == setting_key))
        setting = result.scalar_one_or_none()
        if setting is None:
            setting = DBPlatformSetting(setting_key=setting_key)
            db.add(setting)
        setting.setting_value = setting_value
        setting.description = description
        setting.updated_by = updated_by
        await db.commit()
        await db.refresh(setting)
    except SQLAlchemyError as e:
        await db.rollback()
        log.error(f"Could not save platform setting {setting_key}: {e}")
        raise StoreUnavailable(f"Could not save platform setting {setting_key}") from e

    log.info(f"Platform setting {setting_key} set to {setting_value!r} by {updated_by}")
    return setting


class FeeCalculator:
    """Pure fee arithmetic. All amounts are integer minor units."""

    @staticmethod
    def platform_fee(investment_amount: int, platform_fee_percent: Decimal) -> int:
        """floor(investment_amount * percent / 100)"""
        fee = Decimal(investment_amount) * Decimal(platform_fee_percent) / Decimal(100)
        return int(fee.to_integral_value(rounding=ROUND_FLOOR))

    @staticmethod
    def quote(
        property_: DBProperty,
        number_of_shares: int,
        policy: FeePolicy,
        availability: Availability
    ) -> Quote:
        """
        Price `number_of_shares` of a property under a fee policy.

        Raises:
            InsufficientInventory: more shares requested than available
        """
        if number_of_shares < 1:
            raise ValueError(f"number_of_shares must be positive, got {number_of_shares}")

        if number_of_shares > availability.available_shares:
            raise InsufficientInventory(
                f"Only {availability.available_shares} shares available",
                requested=number_of_shares,
                available=availability.available_shares,
            )

        price_per_share = int(property_.share_price)
        investment_amount = number_of_shares * price_per_share
        platform_fee = FeeCalculator.platform_fee(investment_amount, policy.platform_fee_percent)
        processing_fee = policy.processing_fee_minor_units

        return Quote(
            property_id=property_.id,
            number_of_shares=number_of_shares,
            price_per_share=price_per_share,
            investment_amount=investment_amount,
            platform_fee=platform_fee,
            platform_fee_percent=policy.platform_fee_percent,
            processing_fee=processing_fee,
            total_amount=investment_amount + platform_fee + processing_fee,
            available_shares=availability.available_shares,
            percentage_of_property=(
                number_of_shares / availability.total_shares * 100 if availability.total_shares > 0 else 0.0
            ),
        )
