"""
Reservation races and the expiry sweep.

Each racing request runs in its own session (own connection), the way two
HTTP requests would.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from activity_service import ActivityService
from conftest import START, FakeClock, add_property, approve_investor
from investment_errors import InsufficientInventory, InvalidStateTransition
from investment_transaction_service import InvestmentTransactionService
from models import InvestmentTransaction
from reservation_sweeper import ReservationSweeper
from share_inventory_service import ShareInventoryService


async def two_pending_investments(db, service, total_shares, shares_each):
    property_ = await add_property(db, total_shares=total_shares)
    await approve_investor(db, user_id=1)
    await approve_investor(db, user_id=2)
    first = await service.create_transaction(db, user_id=1, property_id=property_.id, number_of_shares=shares_each)
    second = await service.create_transaction(db, user_id=2, property_id=property_.id, number_of_shares=shares_each)
    return property_.id, first.id, second.id


async def reserve_in_own_session(session_factory, service, transaction_id):
    async with session_factory() as session:
        try:
            await service.reserve(session, transaction_id)
            return "reserved"
        except InsufficientInventory:
            return "insufficient"


class TestConcurrentReservations:

    @pytest.mark.asyncio
    async def test_race_for_last_shares_has_one_winner(self, db, session_factory, service):
        property_id, first_id, second_id = await two_pending_investments(db, service, total_shares=100, shares_each=60)

        outcomes = await asyncio.gather(
            reserve_in_own_session(session_factory, service, first_id),
            reserve_in_own_session(session_factory, service, second_id),
        )

        assert sorted(outcomes) == ["insufficient", "reserved"]
        availability = await ShareInventoryService.get_availability(db, property_id)
        assert availability.sold_shares == 60
        assert availability.available_shares == 40

    @pytest.mark.asyncio
    async def test_both_fit(self, db, session_factory, service):
        property_id, first_id, second_id = await two_pending_investments(db, service, total_shares=100, shares_each=50)

        outcomes = await asyncio.gather(
            reserve_in_own_session(session_factory, service, first_id),
            reserve_in_own_session(session_factory, service, second_id),
        )

        assert outcomes == ["reserved", "reserved"]
        availability = await ShareInventoryService.get_availability(db, property_id)
        assert availability.available_shares == 0

    @pytest.mark.asyncio
    async def test_loser_stays_pending(self, db, session_factory, service):
        property_id, first_id, second_id = await two_pending_investments(db, service, total_shares=10, shares_each=10)

        await reserve_in_own_session(session_factory, service, first_id)
        outcome = await reserve_in_own_session(session_factory, service, second_id)

        assert outcome == "insufficient"
        status = await db.execute(select(InvestmentTransaction.status).where(InvestmentTransaction.id == second_id))
        assert status.scalar_one() == "pending"
        assert [a.activity_type for a in await ActivityService.get_activity(db, second_id)] == ["created"]


class TestExpirySweep:

    @pytest.mark.asyncio
    async def test_unpaid_reservation_released_after_deadline(self, db, service, clock):
        property_ = await add_property(db, total_shares=1000)
        await approve_investor(db, user_id=1)
        transaction = await service.create_transaction(db, user_id=1, property_id=property_.id, number_of_shares=50)
        transaction_id = transaction.id
        await service.reserve(db, transaction_id, expiration_minutes=15)
        assert (await ShareInventoryService.get_availability(db, property_.id)).available_shares == 950

        clock.advance(minutes=16)
        # Past the deadline but not swept: still consuming inventory
        assert (await ShareInventoryService.get_availability(db, property_.id)).available_shares == 950

        assert await service.sweep_expired(db) == 1

        swept = await service.get_transaction(db, transaction_id)
        assert swept.status == "cancelled"
        assert swept.cancelled_at == START + timedelta(minutes=16)
        assert (await ShareInventoryService.get_availability(db, property_.id)).available_shares == 1000

        latest = (await ActivityService.get_activity(db, transaction_id))[0]
        assert latest.activity_type == "cancelled"
        assert latest.old_status == "reserved"
        assert latest.performed_by is None

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, db, service, clock):
        property_ = await add_property(db, total_shares=1000)
        await approve_investor(db, user_id=1)
        expired = await service.create_transaction(db, user_id=1, property_id=property_.id, number_of_shares=10)
        await service.reserve(db, expired.id, expiration_minutes=5)
        clock.advance(minutes=10)
        live = await service.create_transaction(db, user_id=1, property_id=property_.id, number_of_shares=10)
        await service.reserve(db, live.id, expiration_minutes=15)

        assert await service.sweep_expired(db) == 1
        statuses_once = (await db.execute(
            select(InvestmentTransaction.id, InvestmentTransaction.status).order_by(InvestmentTransaction.id)
        )).all()
        activity_once = len(await ActivityService.get_activity(db, expired.id))

        assert await service.sweep_expired(db) == 0
        statuses_twice = (await db.execute(
            select(InvestmentTransaction.id, InvestmentTransaction.status).order_by(InvestmentTransaction.id)
        )).all()

        assert statuses_once == statuses_twice
        assert [status for _, status in statuses_twice] == ["cancelled", "reserved"]
        assert len(await ActivityService.get_activity(db, expired.id)) == activity_once

    @pytest.mark.asyncio
    async def test_deadline_is_inclusive(self, db, service, clock):
        property_ = await add_property(db)
        await approve_investor(db, user_id=1)
        transaction = await service.create_transaction(db, user_id=1, property_id=property_.id, number_of_shares=1)
        await service.reserve(db, transaction.id, expiration_minutes=15)

        clock.advance(minutes=14, seconds=59)
        assert await service.sweep_expired(db) == 0
        clock.advance(seconds=1)
        assert await service.sweep_expired(db) == 1

    @pytest.mark.asyncio
    async def test_paid_reservations_are_not_swept(self, db, service, clock):
        property_ = await add_property(db)
        await approve_investor(db, user_id=1)
        transaction = await service.create_transaction(db, user_id=1, property_id=property_.id, number_of_shares=1)
        transaction_id = transaction.id
        await service.reserve(db, transaction_id, expiration_minutes=15)
        await service.mark_paid(db, transaction_id, "ref", "card")

        clock.advance(hours=1)

        assert await service.sweep_expired(db) == 0
        assert (await service.get_transaction(db, transaction_id)).status == "processing"

    @pytest.mark.asyncio
    async def test_swept_reservation_cannot_be_paid(self, db, service, clock):
        property_ = await add_property(db)
        await approve_investor(db, user_id=1)
        transaction = await service.create_transaction(db, user_id=1, property_id=property_.id, number_of_shares=1)
        transaction_id = transaction.id
        await service.reserve(db, transaction_id)
        clock.advance(minutes=20)
        await service.sweep_expired(db)

        with pytest.raises(InvalidStateTransition):
            await service.mark_paid(db, transaction_id, "ref", "card")


class TestReservationSweeper:

    @pytest.mark.asyncio
    async def test_run_once_uses_its_own_session(self, db, session_factory, fee_policy):
        clock = FakeClock()
        service = InvestmentTransactionService(fee_policy_provider=fee_policy, clock=clock)
        property_ = await add_property(db)
        await approve_investor(db, user_id=1)
        transaction = await service.create_transaction(db, user_id=1, property_id=property_.id, number_of_shares=1)
        await service.reserve(db, transaction.id)
        clock.advance(minutes=30)

        sweeper = ReservationSweeper(service=service, session_factory=session_factory, interval_seconds=0.01)

        assert await sweeper.run_once() == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, service):
        sweeper = ReservationSweeper(service=service, session_factory=session_factory, interval_seconds=0.01)

        sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert not sweeper.running
