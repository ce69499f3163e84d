"""
Investment transaction state machine

pending -> reserved -> processing -> completed, and the ways to cancelled.
"""

import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from activity_service import ActivityService
from conftest import (
    START,
    FailingCertificateStore,
    FailingNotificationSink,
    add_property,
    approve_investor,
)
from eligibility_service import EligibilityService
from investment_errors import (
    IneligibleInvestor,
    InsufficientInventory,
    InvalidStateTransition,
    NotFound,
)
from investment_transaction_service import InvestmentTransactionService, clamp_reservation_minutes
from models import InvestmentActivity
from schemas import DocumentCreate


async def pending_investment(db, service, shares=50, user_id=1, total_shares=1000):
    property_ = await add_property(db, total_shares=total_shares, share_price=10000)
    await approve_investor(db, user_id=user_id)
    return await service.create_transaction(db, user_id=user_id, property_id=property_.id, number_of_shares=shares)


async def activity_types(db, investment_id):
    rows = await ActivityService.get_activity(db, investment_id)
    return [row.activity_type for row in reversed(rows)]


class TestCreateTransaction:

    @pytest.mark.asyncio
    async def test_created_pending_with_quote_and_ownership(self, db, service):
        transaction = await pending_investment(db, service, shares=50)

        assert transaction.status == "pending"
        assert transaction.payment_status == "pending"
        assert transaction.investment_amount == 500_000
        assert transaction.platform_fee == 12_500
        assert transaction.processing_fee == 500
        assert transaction.total_amount == 513_000
        assert transaction.ownership_percentage == 50_000
        assert transaction.distribution_frequency == "quarterly"
        assert transaction.created_at == START
        assert transaction.reserved_at is None
        assert await activity_types(db, transaction.id) == ["created"]

    @pytest.mark.asyncio
    async def test_ineligible_investor_creates_nothing(self, db, service):
        property_ = await add_property(db)

        with pytest.raises(IneligibleInvestor) as exc_info:
            await service.create_transaction(db, user_id=77, property_id=property_.id, number_of_shares=1)

        assert exc_info.value.reason == "KYC verification required"
        assert await service.list_user_transactions(db, 77) == []

    @pytest.mark.asyncio
    async def test_annual_limit_is_checked_against_total_amount(self, db, service):
        property_ = await add_property(db, total_shares=1000, share_price=10000)
        # investment_amount 500,000 fits, total_amount 513,000 does not
        await approve_investor(db, user_id=2, annual_investment_limit=510_000)

        with pytest.raises(IneligibleInvestor):
            await service.create_transaction(db, user_id=2, property_id=property_.id, number_of_shares=50)

    @pytest.mark.asyncio
    async def test_over_inventory(self, db, service):
        property_ = await add_property(db, total_shares=10)
        await approve_investor(db, user_id=1)

        with pytest.raises(InsufficientInventory):
            await service.create_transaction(db, user_id=1, property_id=property_.id, number_of_shares=11)

    @pytest.mark.asyncio
    async def test_unknown_property(self, db, service):
        await approve_investor(db, user_id=1)
        with pytest.raises(NotFound):
            await service.create_transaction(db, user_id=1, property_id=404, number_of_shares=1)


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, db, service, clock, certificates, notifications):
        transaction = await pending_investment(db, service, shares=50)

        clock.advance(minutes=1)
        reserved = await service.reserve(db, transaction.id, expiration_minutes=15)
        assert reserved.status == "reserved"
        assert reserved.reserved_at == clock.now
        assert reserved.reservation_expires_at == clock.now + timedelta(minutes=15)

        clock.advance(minutes=5)
        paid = await service.mark_paid(db, transaction.id, "pi_3Nx", "card")
        assert paid.status == "processing"
        assert paid.payment_status == "completed"
        assert paid.payment_reference == "pi_3Nx"
        assert paid.paid_at == clock.now

        clock.advance(minutes=1)
        completed = await service.complete(db, transaction.id, performed_by=99)
        assert completed.status == "completed"
        assert completed.completed_at == clock.now
        assert completed.certificate_issued is True
        assert completed.certificate_issued_at == clock.now
        assert completed.certificate_reference == f"cert://{transaction.id}"

        assert certificates.issued == [transaction.id]
        assert [(user, event) for user, event, _ in notifications.sent] == [(1, "investment_completed")]
        assert await activity_types(db, transaction.id) == ["created", "reserved", "payment_completed", "completed"]

        eligibility = await EligibilityService.get_or_create(db, 1)
        await db.refresh(eligibility)
        assert eligibility.current_year_invested == 513_000
        assert eligibility.lifetime_invested == 513_000

    @pytest.mark.asyncio
    async def test_activity_rows_describe_each_transition(self, db, service):
        transaction = await pending_investment(db, service)
        await service.reserve(db, transaction.id, performed_by=1)

        rows = (await db.execute(
            select(InvestmentActivity)
            .where(InvestmentActivity.investment_id == transaction.id, InvestmentActivity.activity_type == "reserved")
        )).scalars().all()

        assert len(rows) == 1
        assert rows[0].old_status == "pending"
        assert rows[0].new_status == "reserved"
        assert rows[0].performed_by == 1
        assert json.loads(rows[0].details) == {"expiration_minutes": 15}


class TestReservationWindow:

    @pytest.mark.parametrize("requested, expected", [(None, 15), (1, 5), (5, 5), (20, 20), (30, 30), (120, 30)])
    def test_clamped(self, requested, expected):
        assert clamp_reservation_minutes(requested) == expected

    @pytest.mark.asyncio
    async def test_reserve_applies_clamp(self, db, service, clock):
        transaction = await pending_investment(db, service)

        reserved = await service.reserve(db, transaction.id, expiration_minutes=90)

        assert reserved.reservation_expires_at == clock.now + timedelta(minutes=30)


class TestInvalidTransitions:

    @pytest.mark.asyncio
    async def test_mark_paid_requires_reserved(self, db, service):
        transaction_id = (await pending_investment(db, service)).id

        with pytest.raises(InvalidStateTransition) as exc_info:
            await service.mark_paid(db, transaction_id, "ref", "card")

        assert exc_info.value.current_status == "pending"
        assert exc_info.value.target_status == "processing"
        unchanged = await service.get_transaction(db, transaction_id)
        assert unchanged.status == "pending"
        assert unchanged.payment_status == "pending"
        assert await activity_types(db, transaction_id) == ["created"]

    @pytest.mark.asyncio
    async def test_complete_requires_processing(self, db, service):
        transaction = await pending_investment(db, service)
        await service.reserve(db, transaction.id)

        with pytest.raises(InvalidStateTransition):
            await service.complete(db, transaction.id)

    @pytest.mark.asyncio
    async def test_reserve_twice(self, db, service):
        transaction = await pending_investment(db, service)
        await service.reserve(db, transaction.id)

        with pytest.raises(InvalidStateTransition):
            await service.reserve(db, transaction.id)

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self, db, service):
        transaction_id = (await pending_investment(db, service)).id
        await service.cancel(db, transaction_id)

        with pytest.raises(InvalidStateTransition):
            await service.reserve(db, transaction_id)
        with pytest.raises(InvalidStateTransition):
            await service.cancel(db, transaction_id, admin_override=True)

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, db, service):
        with pytest.raises(NotFound):
            await service.reserve(db, 12345)

    @pytest.mark.asyncio
    async def test_mark_paid_after_deadline_before_sweep(self, db, service, clock):
        transaction_id = (await pending_investment(db, service)).id
        await service.reserve(db, transaction_id, expiration_minutes=15)

        clock.advance(minutes=15)

        with pytest.raises(InvalidStateTransition) as exc_info:
            await service.mark_paid(db, transaction_id, "late", "card")
        assert "reservation expired" in exc_info.value.message
        assert (await service.get_transaction(db, transaction_id)).status == "reserved"


class TestCancellation:

    @pytest.mark.asyncio
    async def test_investor_cancels_reserved_and_releases_shares(self, db, service):
        transaction = await pending_investment(db, service, shares=1000, total_shares=1000)
        await service.reserve(db, transaction.id)

        cancelled = await service.cancel(db, transaction.id, performed_by=1, reason="changed my mind")

        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_at is not None
        assert (await service.quote(db, transaction.property_id, 1000)).available_shares == 1000

    @pytest.mark.asyncio
    async def test_processing_needs_admin_override(self, db, service):
        transaction_id = (await pending_investment(db, service)).id
        await service.reserve(db, transaction_id)
        await service.mark_paid(db, transaction_id, "ref", "ach")

        with pytest.raises(InvalidStateTransition):
            await service.cancel(db, transaction_id, performed_by=1)

        cancelled = await service.cancel(db, transaction_id, performed_by=99, admin_override=True)
        assert cancelled.status == "cancelled"

        rows = await ActivityService.get_activity(db, transaction_id)
        assert rows[0].activity_type == "cancelled"
        assert rows[0].old_status == "processing"
        assert json.loads(rows[0].details) == {"admin_override": True}

    @pytest.mark.asyncio
    async def test_completed_cannot_be_cancelled_even_by_admin(self, db, service):
        transaction = await pending_investment(db, service)
        await service.reserve(db, transaction.id)
        await service.mark_paid(db, transaction.id, "ref", "ach")
        await service.complete(db, transaction.id)

        with pytest.raises(InvalidStateTransition):
            await service.cancel(db, transaction.id, admin_override=True)

    @pytest.mark.asyncio
    async def test_payment_failure(self, db, service):
        transaction = await pending_investment(db, service)
        await service.reserve(db, transaction.id)

        failed = await service.mark_payment_failed(db, transaction.id, reason="card declined")

        assert failed.status == "cancelled"
        assert failed.payment_status == "failed"
        assert (await activity_types(db, transaction.id))[-1] == "payment_failed"


class TestBestEffortSideEffects:

    @pytest.mark.asyncio
    async def test_certificate_failure_keeps_completion(self, db, fee_policy, notifications, clock):
        service = InvestmentTransactionService(
            fee_policy_provider=fee_policy,
            certificate_store=FailingCertificateStore(),
            notification_sink=notifications,
            clock=clock,
        )
        transaction = await pending_investment(db, service)
        await service.reserve(db, transaction.id)
        await service.mark_paid(db, transaction.id, "ref", "card")

        completed = await service.complete(db, transaction.id)

        assert completed.status == "completed"
        assert completed.certificate_issued is True
        assert completed.certificate_reference is None
        assert (await service.get_transaction(db, transaction.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_notification_failure_keeps_completion(self, db, fee_policy, certificates, clock):
        service = InvestmentTransactionService(
            fee_policy_provider=fee_policy,
            certificate_store=certificates,
            notification_sink=FailingNotificationSink(),
            clock=clock,
        )
        transaction = await pending_investment(db, service)
        await service.reserve(db, transaction.id)
        await service.mark_paid(db, transaction.id, "ref", "card")

        completed = await service.complete(db, transaction.id)

        assert completed.status == "completed"


class TestDocuments:

    @pytest.mark.asyncio
    async def test_sign_is_idempotent(self, db, service, clock):
        transaction = await pending_investment(db, service)
        document = await service.add_document(
            db,
            transaction.id,
            DocumentCreate(
                document_type="subscription_agreement",
                document_name="Subscription Agreement",
                document_url="https://docs.example.com/sa.pdf",
            ),
        )
        assert document.signed is False

        signed = await service.sign_document(db, document.id, "sig-data", performed_by=1)
        signed_at = signed.signed_at
        clock.advance(minutes=3)
        again = await service.sign_document(db, document.id, "other", performed_by=1)

        assert again.signed is True
        assert again.signed_at == signed_at
        assert again.signature_data == "sig-data"
        assert (await activity_types(db, transaction.id)).count("documents_signed") == 1
        assert [d.id for d in await service.list_documents(db, transaction.id)] == [document.id]

    @pytest.mark.asyncio
    async def test_signatures_do_not_gate_completion(self, db, service):
        transaction = await pending_investment(db, service)
        await service.add_document(
            db,
            transaction.id,
            DocumentCreate(document_type="ppm", document_name="PPM", document_url="https://docs.example.com/ppm.pdf"),
        )
        await service.reserve(db, transaction.id)
        await service.mark_paid(db, transaction.id, "ref", "card")

        assert (await service.complete(db, transaction.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_document_for_unknown_investment(self, db, service):
        with pytest.raises(NotFound):
            await service.add_document(
                db, 5, DocumentCreate(document_type="other", document_name="x", document_url="https://x")
            )


class TestReads:

    @pytest.mark.asyncio
    async def test_detail_and_stats(self, db, service):
        transaction = await pending_investment(db, service)
        await service.reserve(db, transaction.id)
        second = await service.create_transaction(db, user_id=1, property_id=transaction.property_id, number_of_shares=5)
        await service.cancel(db, second.id)

        detail = await service.get_investment_detail(db, transaction.id)
        assert detail.investment.id == transaction.id
        assert [a.activity_type for a in detail.activity] == ["reserved", "created"]

        stats = await service.get_investment_stats(db)
        assert stats.total_investments == 2
        assert stats.in_flight_investments == 1
        assert stats.completed_investments == 0

        listed = await service.list_property_transactions(db, transaction.property_id)
        assert {t.id for t in listed} == {transaction.id, second.id}
        count = await db.execute(select(func.count(InvestmentActivity.id)))
        assert count.scalar() == 4
