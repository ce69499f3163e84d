"""
Investment Transaction Service
==============================

Owns the lifecycle of one investment:

    pending ──reserve──▶ reserved ──mark_paid──▶ processing ──complete──▶ completed
       │                    │                        │
       └──────cancel────────┴──cancel / expiry / ────┴──(admin override)──▶ cancelled
                               payment failure

RULE 1: Transitions are compare-and-swap
- Every transition is one UPDATE guarded by `status = <expected>`.
- rowcount 0 means another request moved the row first: nothing is written.

RULE 2: Reservation is atomic
- The property row is locked (SELECT ... FOR UPDATE) and the UPDATE re-derives
  the free inventory in its own WHERE clause. Two investors racing for the
  last shares: exactly one UPDATE matches, the other gets InsufficientInventory.

RULE 3: The state machine is the source of truth
- Certificate issuance and notifications run after commit and are best-effort.

Every transition stages one InvestmentActivity row in the same transaction.
"""

import functools
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from activity_service import ActivityService
from certificate_service import CertificateStore, UrlCertificateStore
from config import settings
from eligibility_service import EligibilityService
from fee_service import FeeCalculator, FeePolicyProvider, PlatformSettingsFeePolicyProvider
from investment_errors import (
    InvestmentEngineError,
    IneligibleInvestor,
    InsufficientInventory,
    InvalidStateTransition,
    NotFound,
    StoreUnavailable,
)
from models import (
    InvestmentTransaction as DBInvestmentTransaction,
    InvestmentDocument as DBInvestmentDocument,
    Property as DBProperty,
    utcnow,
)
from notification_service import LoggingNotificationSink, NotificationSink
from schemas import (
    DocumentCreate,
    InvestmentActivity as InvestmentActivitySchema,
    InvestmentDetail,
    InvestmentDocument as InvestmentDocumentSchema,
    InvestmentStats,
    InvestmentTransaction as InvestmentTransactionSchema,
    Quote,
)
from share_inventory_service import ShareInventoryService, ownership_for, sold_shares_subquery

log = logging.getLogger(__name__)

# Source states from which a cancellation is accepted
INVESTOR_CANCELLABLE_STATES = ("pending", "reserved")
ADMIN_CANCELLABLE_STATES = ("pending", "reserved", "processing")
IN_FLIGHT_STATES = ("pending", "reserved", "processing")


def clamp_reservation_minutes(minutes: Optional[int]) -> int:
    """Caller-supplied reservation window, defaulted and clamped to the configured bounds"""
    if minutes is None:
        return settings.RESERVATION_DEFAULT_MINUTES
    return max(settings.RESERVATION_MIN_MINUTES, min(settings.RESERVATION_MAX_MINUTES, int(minutes)))


def write_operation(name: str):
    """
    Run a service write with uniform failure handling.

    Domain errors roll back and propagate unchanged; store failures roll back
    and surface as StoreUnavailable so callers can retry.
    """
    def decorator(method):
        @functools.wraps(method)
        async def wrapper(self, db: AsyncSession, *args, **kwargs):
            try:
                return await method(self, db, *args, **kwargs)
            except InvestmentEngineError:
                await db.rollback()
                raise
            except SQLAlchemyError as e:
                await db.rollback()
                log.error(f"{name} failed: store error: {e}")
                raise StoreUnavailable(f"{name} failed: store unavailable") from e
        return wrapper
    return decorator


class InvestmentTransactionService:
    """Investment lifecycle operations"""

    def __init__(
        self,
        fee_policy_provider: Optional[FeePolicyProvider] = None,
        certificate_store: Optional[CertificateStore] = None,
        notification_sink: Optional[NotificationSink] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.fee_policy_provider = fee_policy_provider or PlatformSettingsFeePolicyProvider()
        self.certificate_store = certificate_store or UrlCertificateStore()
        self.notification_sink = notification_sink or LoggingNotificationSink()
        self.clock = clock or utcnow

    # ==================== Reads ====================

    async def quote(self, db: AsyncSession, property_id: int, number_of_shares: int) -> Quote:
        """
        Price a prospective investment. Pure: reads only, writes nothing.

        Raises:
            NotFound: property does not exist
            InsufficientInventory: more shares than currently available
        """
        try:
            property_ = await ShareInventoryService.get_property(db, property_id)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Could not read property {property_id}") from e
        availability = await ShareInventoryService.get_availability(db, property_id, property_=property_)
        policy = await self.fee_policy_provider.get_policy(db)
        return FeeCalculator.quote(property_, number_of_shares, policy, availability)

    async def get_transaction(self, db: AsyncSession, transaction_id: int) -> DBInvestmentTransaction:
        result = await db.execute(
            select(DBInvestmentTransaction)
            .where(DBInvestmentTransaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFound(f"Investment {transaction_id} not found")
        return transaction

    async def list_user_transactions(self, db: AsyncSession, user_id: int) -> List[DBInvestmentTransaction]:
        result = await db.execute(
            select(DBInvestmentTransaction)
            .where(DBInvestmentTransaction.user_id == user_id)
            .order_by(DBInvestmentTransaction.created_at.desc(), DBInvestmentTransaction.id.desc())
        )
        return list(result.scalars().all())

    async def list_property_transactions(self, db: AsyncSession, property_id: int) -> List[DBInvestmentTransaction]:
        result = await db.execute(
            select(DBInvestmentTransaction)
            .where(DBInvestmentTransaction.property_id == property_id)
            .order_by(DBInvestmentTransaction.created_at.desc(), DBInvestmentTransaction.id.desc())
        )
        return list(result.scalars().all())

    async def get_investment_detail(self, db: AsyncSession, transaction_id: int) -> InvestmentDetail:
        """Investment with its documents and activity trail"""
        transaction = await self.get_transaction(db, transaction_id)
        documents = await self.list_documents(db, transaction_id)
        activity = await ActivityService.get_activity(db, transaction_id)
        return InvestmentDetail(
            investment=InvestmentTransactionSchema.model_validate(transaction),
            documents=[InvestmentDocumentSchema.model_validate(d) for d in documents],
            activity=[InvestmentActivitySchema.model_validate(a) for a in activity],
        )

    async def get_investment_stats(self, db: AsyncSession) -> InvestmentStats:
        """Platform-wide counts: all, completed, and in-flight investments"""
        result = await db.execute(
            select(
                func.count(DBInvestmentTransaction.id),
                func.coalesce(func.sum(DBInvestmentTransaction.total_amount), 0),
                func.coalesce(func.sum(case((DBInvestmentTransaction.status == "completed", 1), else_=0)), 0),
                func.coalesce(func.sum(case((DBInvestmentTransaction.status.in_(IN_FLIGHT_STATES), 1), else_=0)), 0),
            )
        )
        total, amount, completed, in_flight = result.one()
        return InvestmentStats(
            total_investments=int(total),
            total_amount=int(amount),
            completed_investments=int(completed),
            in_flight_investments=int(in_flight),
        )

    # ==================== Creation ====================

    @write_operation("create_transaction")
    async def create_transaction(
        self,
        db: AsyncSession,
        user_id: int,
        property_id: int,
        number_of_shares: int,
        distribution_frequency: Optional[str] = None,
        notes: Optional[str] = None
    ) -> DBInvestmentTransaction:
        """
        Create a pending investment priced at the current fee policy.

        Raises:
            NotFound: property does not exist
            InsufficientInventory: shares not available right now
            IneligibleInvestor: KYC/AML/annual-limit rule failed
        """
        property_ = await ShareInventoryService.get_property(db, property_id, lock=True)
        availability = await ShareInventoryService.get_availability(db, property_id, property_=property_)
        policy = await self.fee_policy_provider.get_policy(db)
        quote = FeeCalculator.quote(property_, number_of_shares, policy, availability)

        decision = await EligibilityService.check_eligibility(db, user_id, quote.total_amount)
        if not decision.eligible:
            raise IneligibleInvestor(decision.reason or "Not eligible to invest")

        now = self.clock()
        transaction = DBInvestmentTransaction(
            user_id=user_id,
            property_id=property_id,
            number_of_shares=number_of_shares,
            price_per_share=quote.price_per_share,
            investment_amount=quote.investment_amount,
            platform_fee=quote.platform_fee,
            processing_fee=quote.processing_fee,
            total_amount=quote.total_amount,
            ownership_percentage=ownership_for(number_of_shares, availability.total_shares),
            status="pending",
            payment_status="pending",
            distribution_frequency=distribution_frequency or settings.DEFAULT_DISTRIBUTION_FREQUENCY,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        db.add(transaction)
        await db.flush()

        ActivityService.record(
            db,
            investment_id=transaction.id,
            activity_type="created",
            description="Investment created",
            performed_by=user_id,
            created_at=now,
            new_status="pending",
            details={"number_of_shares": number_of_shares, "total_amount": quote.total_amount},
        )
        await db.commit()
        await db.refresh(transaction)

        log.info(
            f"Investment {transaction.id} created: user {user_id}, property {property_id}, "
            f"{number_of_shares} shares, total {quote.total_amount}"
        )
        return transaction

    # ==================== Transitions ====================

    async def _swap_status(
        self,
        db: AsyncSession,
        transaction: DBInvestmentTransaction,
        expected: str,
        values: dict,
        extra_conditions: Sequence = ()
    ) -> bool:
        """UPDATE ... WHERE id = :id AND status = :expected; True when the row was taken"""
        result = await db.execute(
            update(DBInvestmentTransaction)
            .where(
                DBInvestmentTransaction.id == transaction.id,
                DBInvestmentTransaction.status == expected,
                *extra_conditions
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _current_status(self, db: AsyncSession, transaction_id: int) -> Optional[str]:
        result = await db.execute(
            select(DBInvestmentTransaction.status).where(DBInvestmentTransaction.id == transaction_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _invalid(transaction_id: int, current: Optional[str], target: str, detail: str = "") -> InvalidStateTransition:
        message = f"Investment {transaction_id} cannot move from {current} to {target}"
        if detail:
            message = f"{message}: {detail}"
        log.warning(message)
        return InvalidStateTransition(message, current_status=current, target_status=target)

    @write_operation("reserve")
    async def reserve(
        self,
        db: AsyncSession,
        transaction_id: int,
        expiration_minutes: Optional[int] = None,
        performed_by: Optional[int] = None
    ) -> DBInvestmentTransaction:
        """
        pending -> reserved, holding the shares for N minutes (clamped 5-30, default 15).

        Raises:
            NotFound, InvalidStateTransition, InsufficientInventory
        """
        transaction = await self.get_transaction(db, transaction_id)
        if transaction.status != "pending":
            raise self._invalid(transaction_id, transaction.status, "reserved")

        property_ = await ShareInventoryService.get_property(db, transaction.property_id, lock=True)

        minutes = clamp_reservation_minutes(expiration_minutes)
        now = self.clock()
        expires_at = now + timedelta(minutes=minutes)

        free_shares = (
            select(DBProperty.total_shares)
            .where(DBProperty.id == transaction.property_id)
            .scalar_subquery()
            - sold_shares_subquery(transaction.property_id)
        )
        taken = await self._swap_status(
            db,
            transaction,
            expected="pending",
            values={
                "status": "reserved",
                "reserved_at": now,
                "reservation_expires_at": expires_at,
                "updated_at": now,
            },
            extra_conditions=(DBInvestmentTransaction.number_of_shares <= free_shares,),
        )

        if not taken:
            current = await self._current_status(db, transaction_id)
            if current != "pending":
                raise self._invalid(transaction_id, current, "reserved")
            availability = await ShareInventoryService.get_availability(
                db, transaction.property_id, property_=property_
            )
            log.warning(
                f"Reservation of investment {transaction_id} rejected: "
                f"{transaction.number_of_shares} requested, {availability.available_shares} available"
            )
            raise InsufficientInventory(
                "Shares no longer available",
                requested=transaction.number_of_shares,
                available=availability.available_shares,
            )

        ActivityService.record(
            db,
            investment_id=transaction_id,
            activity_type="reserved",
            description=f"Shares reserved until {expires_at.isoformat()}",
            performed_by=performed_by if performed_by is not None else transaction.user_id,
            created_at=now,
            old_status="pending",
            new_status="reserved",
            details={"expiration_minutes": minutes},
        )
        await db.commit()
        await db.refresh(transaction)

        log.info(f"Investment {transaction_id} reserved {transaction.number_of_shares} shares until {expires_at}")
        return transaction

    @write_operation("mark_paid")
    async def mark_paid(
        self,
        db: AsyncSession,
        transaction_id: int,
        payment_reference: str,
        payment_method: str,
        performed_by: Optional[int] = None
    ) -> DBInvestmentTransaction:
        """
        reserved -> processing once payment is confirmed.

        A reservation past its deadline is refused even before the sweep
        has cancelled it.
        """
        transaction = await self.get_transaction(db, transaction_id)
        if transaction.status != "reserved":
            raise self._invalid(transaction_id, transaction.status, "processing")

        now = self.clock()
        if transaction.reservation_expires_at is not None and transaction.reservation_expires_at <= now:
            raise self._invalid(transaction_id, "reserved", "processing", "reservation expired")

        taken = await self._swap_status(
            db,
            transaction,
            expected="reserved",
            values={
                "status": "processing",
                "payment_status": "completed",
                "payment_reference": payment_reference,
                "payment_method": payment_method,
                "paid_at": now,
                "updated_at": now,
            },
            extra_conditions=(DBInvestmentTransaction.reservation_expires_at > now,),
        )
        if not taken:
            current = await self._current_status(db, transaction_id)
            raise self._invalid(transaction_id, current, "processing")

        ActivityService.record(
            db,
            investment_id=transaction_id,
            activity_type="payment_completed",
            description=f"Payment {payment_reference} received via {payment_method}",
            performed_by=performed_by,
            created_at=now,
            old_status="reserved",
            new_status="processing",
            details={"payment_reference": payment_reference, "payment_method": payment_method},
        )
        await db.commit()
        await db.refresh(transaction)

        log.info(f"Investment {transaction_id} paid ({payment_method} {payment_reference})")
        return transaction

    @write_operation("mark_payment_failed")
    async def mark_payment_failed(
        self,
        db: AsyncSession,
        transaction_id: int,
        reason: Optional[str] = None,
        performed_by: Optional[int] = None
    ) -> DBInvestmentTransaction:
        """reserved -> cancelled after a failed payment, releasing the shares"""
        transaction = await self.get_transaction(db, transaction_id)
        if transaction.status != "reserved":
            raise self._invalid(transaction_id, transaction.status, "cancelled")

        now = self.clock()
        taken = await self._swap_status(
            db,
            transaction,
            expected="reserved",
            values={
                "status": "cancelled",
                "payment_status": "failed",
                "cancelled_at": now,
                "updated_at": now,
            },
        )
        if not taken:
            current = await self._current_status(db, transaction_id)
            raise self._invalid(transaction_id, current, "cancelled")

        ActivityService.record(
            db,
            investment_id=transaction_id,
            activity_type="payment_failed",
            description=f"Payment failed: {reason}" if reason else "Payment failed",
            performed_by=performed_by,
            created_at=now,
            old_status="reserved",
            new_status="cancelled",
        )
        await db.commit()
        await db.refresh(transaction)

        log.warning(f"Investment {transaction_id} cancelled after payment failure: {reason}")
        return transaction

    @write_operation("complete")
    async def complete(
        self,
        db: AsyncSession,
        transaction_id: int,
        performed_by: Optional[int] = None
    ) -> DBInvestmentTransaction:
        """
        processing -> completed, issuing the ownership certificate.

        The investor's running totals are incremented in the same transaction.
        Certificate reference and notification follow the commit; their
        failure is logged and leaves the completed state in place.
        """
        transaction = await self.get_transaction(db, transaction_id)
        if transaction.status != "processing":
            raise self._invalid(transaction_id, transaction.status, "completed")

        now = self.clock()
        taken = await self._swap_status(
            db,
            transaction,
            expected="processing",
            values={
                "status": "completed",
                "completed_at": now,
                "certificate_issued": True,
                "certificate_issued_at": now,
                "updated_at": now,
            },
        )
        if not taken:
            current = await self._current_status(db, transaction_id)
            raise self._invalid(transaction_id, current, "completed")

        await EligibilityService.record_investment(db, transaction.user_id, int(transaction.total_amount))

        ActivityService.record(
            db,
            investment_id=transaction_id,
            activity_type="completed",
            description="Investment completed and certificate issued",
            performed_by=performed_by,
            created_at=now,
            old_status="processing",
            new_status="completed",
        )
        await db.commit()
        await db.refresh(transaction)
        log.info(f"Investment {transaction_id} completed for user {transaction.user_id}")

        await self._attach_certificate(db, transaction)
        await self._notify(
            transaction.user_id,
            "investment_completed",
            {
                "investment_id": transaction.id,
                "property_id": transaction.property_id,
                "number_of_shares": transaction.number_of_shares,
                "total_amount": transaction.total_amount,
            },
        )
        return transaction

    @write_operation("cancel")
    async def cancel(
        self,
        db: AsyncSession,
        transaction_id: int,
        performed_by: Optional[int] = None,
        reason: Optional[str] = None,
        admin_override: bool = False
    ) -> DBInvestmentTransaction:
        """
        Cancel an investment.

        Investors may cancel pending or reserved investments; an admin
        override also cancels processing ones. Terminal states never change.
        """
        transaction = await self.get_transaction(db, transaction_id)
        allowed = ADMIN_CANCELLABLE_STATES if admin_override else INVESTOR_CANCELLABLE_STATES
        if transaction.status not in allowed:
            raise self._invalid(transaction_id, transaction.status, "cancelled")

        old_status = transaction.status
        now = self.clock()
        taken = await self._swap_status(
            db,
            transaction,
            expected=old_status,
            values={"status": "cancelled", "cancelled_at": now, "updated_at": now},
        )
        if not taken:
            current = await self._current_status(db, transaction_id)
            raise self._invalid(transaction_id, current, "cancelled")

        description = "Investment cancelled by admin" if admin_override else "Investment cancelled"
        if reason:
            description = f"{description}: {reason}"
        ActivityService.record(
            db,
            investment_id=transaction_id,
            activity_type="cancelled",
            description=description,
            performed_by=performed_by,
            created_at=now,
            old_status=old_status,
            new_status="cancelled",
            details={"admin_override": admin_override} if admin_override else None,
        )
        await db.commit()
        await db.refresh(transaction)

        log.info(f"Investment {transaction_id} cancelled ({old_status} -> cancelled) by {performed_by}")
        return transaction

    @write_operation("sweep_expired")
    async def sweep_expired(self, db: AsyncSession) -> int:
        """
        Cancel every reservation whose deadline has passed. Returns the count.

        One batched UPDATE bounded by `reservation_expires_at <= now`; it only
        touches rows already past their deadline, so it can run alongside new
        reservations. Running it twice is the same as running it once.
        """
        now = self.clock()
        result = await db.execute(
            update(DBInvestmentTransaction)
            .where(
                DBInvestmentTransaction.status == "reserved",
                DBInvestmentTransaction.reservation_expires_at <= now,
            )
            .values(status="cancelled", cancelled_at=now, updated_at=now)
            .returning(DBInvestmentTransaction.id)
            .execution_options(synchronize_session=False)
        )
        expired_ids = [row[0] for row in result.all()]

        for transaction_id in expired_ids:
            ActivityService.record(
                db,
                investment_id=transaction_id,
                activity_type="cancelled",
                description="Reservation expired",
                performed_by=None,
                created_at=now,
                old_status="reserved",
                new_status="cancelled",
                details={"reason": "reservation_expired"},
            )
        await db.commit()

        if expired_ids:
            log.info(f"Expiry sweep cancelled {len(expired_ids)} reservations: {expired_ids}")
        return len(expired_ids)

    # ==================== Documents ====================

    @write_operation("add_document")
    async def add_document(
        self,
        db: AsyncSession,
        transaction_id: int,
        document: DocumentCreate
    ) -> DBInvestmentDocument:
        await self.get_transaction(db, transaction_id)
        now = self.clock()
        record = DBInvestmentDocument(
            investment_id=transaction_id,
            document_type=document.document_type,
            document_name=document.document_name,
            document_url=document.document_url,
            file_size=document.file_size,
            mime_type=document.mime_type,
            signed=False,
            created_at=now,
            updated_at=now,
        )
        db.add(record)
        await db.commit()
        await db.refresh(record)
        log.info(f"Document {record.id} ({document.document_type}) added to investment {transaction_id}")
        return record

    async def list_documents(self, db: AsyncSession, transaction_id: int) -> List[DBInvestmentDocument]:
        result = await db.execute(
            select(DBInvestmentDocument)
            .where(DBInvestmentDocument.investment_id == transaction_id)
            .order_by(DBInvestmentDocument.created_at.desc(), DBInvestmentDocument.id.desc())
        )
        return list(result.scalars().all())

    @write_operation("sign_document")
    async def sign_document(
        self,
        db: AsyncSession,
        document_id: int,
        signature_data: str,
        performed_by: Optional[int] = None
    ) -> DBInvestmentDocument:
        """
        Record a signature. Signing an already-signed document is a no-op.

        Signatures do not gate any lifecycle transition.
        """
        result = await db.execute(select(DBInvestmentDocument).where(DBInvestmentDocument.id == document_id))
        document = result.scalar_one_or_none()
        if document is None:
            raise NotFound(f"Document {document_id} not found")
        if document.signed:
            return document

        now = self.clock()
        document.signed = True
        document.signed_at = now
        document.signature_data = signature_data
        document.updated_at = now

        ActivityService.record(
            db,
            investment_id=document.investment_id,
            activity_type="documents_signed",
            description=f"Document {document.document_name} signed",
            performed_by=performed_by,
            created_at=now,
            details={"document_id": document_id, "document_type": document.document_type},
        )
        await db.commit()
        await db.refresh(document)
        return document

    # ==================== Best-effort side effects ====================

    async def _attach_certificate(self, db: AsyncSession, transaction: DBInvestmentTransaction) -> None:
        try:
            reference = await self.certificate_store.issue_certificate(transaction.id)
        except Exception as e:
            log.error(f"Certificate issuance failed for investment {transaction.id}: {e}")
            return

        try:
            await db.execute(
                update(DBInvestmentTransaction)
                .where(DBInvestmentTransaction.id == transaction.id)
                .values(certificate_reference=reference)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            await db.refresh(transaction)
        except SQLAlchemyError as e:
            await db.rollback()
            log.error(f"Could not store certificate {reference} for investment {transaction.id}: {e}")

    async def _notify(self, user_id: int, event: str, payload: dict) -> None:
        try:
            await self.notification_sink.notify(user_id, event, payload)
        except Exception as e:
            log.error(f"Notification {event} for user {user_id} failed: {e}")
