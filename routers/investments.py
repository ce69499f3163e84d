"""Investment transaction API endpoints."""

import logging
from typing import List

from fastapi import APIRouter, HTTPException, Query, status

from activity_service import ActivityService
from deps import SessionDep, TransactionServiceDep
from eligibility_service import EligibilityService
from fee_service import upsert_platform_setting
from investment_errors import InvestmentEngineError, StoreUnavailable
from ledger_view_service import LedgerViewService
from schemas import (
    Availability,
    CancelRequest,
    CompleteRequest,
    DocumentCreate,
    Eligibility,
    EligibilityResult,
    EligibilityUpdate,
    InvestmentActivity,
    InvestmentDetail,
    InvestmentDocument,
    InvestmentStats,
    InvestmentTransaction,
    MarkPaidRequest,
    PaymentFailedRequest,
    PlatformSettingUpdate,
    PortfolioSummary,
    Quote,
    QuoteRequest,
    ReserveRequest,
    SignDocumentRequest,
    SweepResult,
    TransactionCreateRequest,
    UnifiedInvestment,
)
from share_inventory_service import ShareInventoryService

log = logging.getLogger(__name__)

investments_router = APIRouter(
    prefix="/api/v1/investments",
    tags=["investments"],
)


def to_http(e: InvestmentEngineError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


# ==================== PROPERTIES ====================

@investments_router.get("/properties/{property_id}/availability", response_model=Availability)
async def get_availability(property_id: int, db_session: SessionDep):
    """Share inventory of a property. Degrades to an empty figure if the store is down."""
    try:
        return await ShareInventoryService.get_availability(db_session, property_id)
    except StoreUnavailable as e:
        log.error(f"Availability for property {property_id} degraded: {e}")
        return Availability(
            property_id=property_id, total_shares=0, sold_shares=0, available_shares=0, percentage_sold=0.0
        )
    except InvestmentEngineError as e:
        raise to_http(e)


@investments_router.get("/properties/{property_id}/transactions", response_model=List[InvestmentTransaction])
async def list_property_transactions(property_id: int, db_session: SessionDep, service: TransactionServiceDep):
    return await service.list_property_transactions(db_session, property_id)


@investments_router.post("/quote", response_model=Quote)
async def quote_investment(request: QuoteRequest, db_session: SessionDep, service: TransactionServiceDep):
    """Price an investment without writing anything."""
    try:
        return await service.quote(db_session, request.property_id, request.number_of_shares)
    except InvestmentEngineError as e:
        raise to_http(e)


# ==================== USERS ====================

@investments_router.get("/users/{user_id}/transactions", response_model=List[InvestmentTransaction])
async def list_user_transactions(user_id: int, db_session: SessionDep, service: TransactionServiceDep):
    return await service.list_user_transactions(db_session, user_id)


@investments_router.get("/users/{user_id}/ledger", response_model=List[UnifiedInvestment])
async def get_user_ledger(user_id: int, db_session: SessionDep):
    """Investments from both ledgers, newest first."""
    return await LedgerViewService.get_unified_investments(db_session, user_id)


@investments_router.get("/users/{user_id}/portfolio", response_model=PortfolioSummary)
async def get_portfolio(user_id: int, db_session: SessionDep):
    return await LedgerViewService.get_portfolio_summary(db_session, user_id)


# ==================== ELIGIBILITY ====================

@investments_router.get("/eligibility/{user_id}", response_model=Eligibility)
async def get_eligibility(user_id: int, db_session: SessionDep):
    try:
        return await EligibilityService.get_eligibility(db_session, user_id)
    except InvestmentEngineError as e:
        raise to_http(e)


@investments_router.get("/eligibility/{user_id}/check", response_model=EligibilityResult)
async def check_eligibility(user_id: int, db_session: SessionDep, amount: int = Query(..., ge=0)):
    try:
        result = await EligibilityService.check_eligibility(db_session, user_id, amount)
        await db_session.commit()
        return result
    except InvestmentEngineError as e:
        raise to_http(e)


@investments_router.put("/eligibility/{user_id}", response_model=Eligibility)
async def update_eligibility(user_id: int, changes: EligibilityUpdate, db_session: SessionDep):
    try:
        return await EligibilityService.update_eligibility(db_session, user_id, changes)
    except InvestmentEngineError as e:
        raise to_http(e)


# ==================== ADMIN ====================

@investments_router.get("/stats", response_model=InvestmentStats)
async def get_stats(db_session: SessionDep, service: TransactionServiceDep):
    return await service.get_investment_stats(db_session)


@investments_router.post("/sweep", response_model=SweepResult)
async def sweep_expired(db_session: SessionDep, service: TransactionServiceDep):
    """Cancel every reservation past its deadline."""
    try:
        count = await service.sweep_expired(db_session)
    except InvestmentEngineError as e:
        raise to_http(e)
    return SweepResult(cancelled_count=count)


@investments_router.put("/settings/{setting_key}", status_code=status.HTTP_204_NO_CONTENT)
async def update_platform_setting(setting_key: str, update: PlatformSettingUpdate, db_session: SessionDep):
    """Create or update a platform setting. Fee settings are validated first."""
    try:
        await upsert_platform_setting(
            db_session, setting_key, update.setting_value, update.description, update.updated_by
        )
    except InvestmentEngineError as e:
        raise to_http(e)


# ==================== DOCUMENTS ====================

@investments_router.post("/documents/{document_id}/sign", response_model=InvestmentDocument)
async def sign_document(
    document_id: int,
    request: SignDocumentRequest,
    db_session: SessionDep,
    service: TransactionServiceDep,
):
    try:
        return await service.sign_document(db_session, document_id, request.signature_data, request.performed_by)
    except InvestmentEngineError as e:
        raise to_http(e)


# ==================== TRANSACTIONS ====================

@investments_router.post("", response_model=InvestmentTransaction, status_code=status.HTTP_201_CREATED)
async def create_transaction(
    request: TransactionCreateRequest,
    db_session: SessionDep,
    service: TransactionServiceDep,
):
    """Create a pending investment."""
    try:
        return await service.create_transaction(
            db_session,
            user_id=request.user_id,
            property_id=request.property_id,
            number_of_shares=request.number_of_shares,
            distribution_frequency=request.distribution_frequency,
            notes=request.notes,
        )
    except InvestmentEngineError as e:
        raise to_http(e)


@investments_router.get("/{investment_id}", response_model=InvestmentDetail)
async def get_investment(investment_id: int, db_session: SessionDep, service: TransactionServiceDep):
    try:
        return await service.get_investment_detail(db_session, investment_id)
    except InvestmentEngineError as e:
        raise to_http(e)


@investments_router.get("/{investment_id}/activity", response_model=List[InvestmentActivity])
async def get_activity(investment_id: int, db_session: SessionDep):
    return await ActivityService.get_activity(db_session, investment_id)


@investments_router.post("/{investment_id}/reserve", response_model=InvestmentTransaction)
async def reserve(
    investment_id: int,
    request: ReserveRequest,
    db_session: SessionDep,
    service: TransactionServiceDep,
):
    """Hold the shares for the reservation window."""
    try:
        return await service.reserve(db_session, investment_id, request.expiration_minutes, request.performed_by)
    except InvestmentEngineError as e:
        raise to_http(e)


@investments_router.post("/{investment_id}/mark-paid", response_model=InvestmentTransaction)
async def mark_paid(
    investment_id: int,
    request: MarkPaidRequest,
    db_session: SessionDep,
    service: TransactionServiceDep,
):
    try:
        return await service.mark_paid(
            db_session, investment_id, request.payment_reference, request.payment_method, request.performed_by
        )
    except InvestmentEngineError as e:
        raise to_http(e)


@investments_router.post("/{investment_id}/payment-failed", response_model=InvestmentTransaction)
async def payment_failed(
    investment_id: int,
    request: PaymentFailedRequest,
    db_session: SessionDep,
    service: TransactionServiceDep,
):
    try:
        return await service.mark_payment_failed(db_session, investment_id, request.reason, request.performed_by)
    except InvestmentEngineError as e:
        raise to_http(e)


@investments_router.post("/{investment_id}/complete", response_model=InvestmentTransaction)
async def complete(
    investment_id: int,
    request: CompleteRequest,
    db_session: SessionDep,
    service: TransactionServiceDep,
):
    try:
        return await service.complete(db_session, investment_id, request.performed_by)
    except InvestmentEngineError as e:
        raise to_http(e)


@investments_router.post("/{investment_id}/cancel", response_model=InvestmentTransaction)
async def cancel(
    investment_id: int,
    request: CancelRequest,
    db_session: SessionDep,
    service: TransactionServiceDep,
):
    try:
        return await service.cancel(
            db_session,
            investment_id,
            performed_by=request.performed_by,
            reason=request.reason,
            admin_override=request.admin_override,
        )
    except InvestmentEngineError as e:
        raise to_http(e)


@investments_router.post(
    "/{investment_id}/documents",
    response_model=InvestmentDocument,
    status_code=status.HTTP_201_CREATED,
)
async def add_document(
    investment_id: int,
    document: DocumentCreate,
    db_session: SessionDep,
    service: TransactionServiceDep,
):
    try:
        return await service.add_document(db_session, investment_id, document)
    except InvestmentEngineError as e:
        raise to_http(e)


@investments_router.get("/{investment_id}/documents", response_model=List[InvestmentDocument])
async def list_documents(investment_id: int, db_session: SessionDep, service: TransactionServiceDep):
    return await service.list_documents(db_session, investment_id)
