"""Income distribution API endpoints."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from deps import DistributionServiceDep, SessionDep
from investment_errors import InvestmentEngineError
from schemas import DistributeRequest, DistributionResult, IncomeDistribution, InvestorPreview

distributions_router = APIRouter(
    prefix="/api/v1/distributions",
    tags=["distributions"],
)


def to_http(e: InvestmentEngineError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


@distributions_router.post("", response_model=DistributionResult, status_code=status.HTTP_201_CREATED)
async def distribute(request: DistributeRequest, db_session: SessionDep, service: DistributionServiceDep):
    """Split a payout among the property's active owners."""
    try:
        return await service.distribute(
            db_session,
            property_id=request.property_id,
            total_amount=request.total_amount,
            distribution_type=request.distribution_type,
            distribution_date=request.distribution_date,
            performed_by=request.performed_by,
        )
    except InvestmentEngineError as e:
        raise to_http(e)


@distributions_router.get("", response_model=List[IncomeDistribution])
async def list_distributions(
    db_session: SessionDep,
    service: DistributionServiceDep,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    property_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    return await service.list_distributions(db_session, start=start, end=end, property_id=property_id, limit=limit)


@distributions_router.get("/properties/{property_id}/investors", response_model=InvestorPreview)
async def preview_investors(property_id: int, db_session: SessionDep, service: DistributionServiceDep):
    """Owners the next distribution would pay."""
    try:
        return await service.preview_investors(db_session, property_id)
    except InvestmentEngineError as e:
        raise to_http(e)


@distributions_router.get("/properties/{property_id}", response_model=List[IncomeDistribution])
async def list_property_distributions(property_id: int, db_session: SessionDep, service: DistributionServiceDep):
    return await service.list_property_distributions(db_session, property_id)


@distributions_router.get("/users/{user_id}", response_model=List[IncomeDistribution])
async def list_user_distributions(user_id: int, db_session: SessionDep, service: DistributionServiceDep):
    return await service.list_user_distributions(db_session, user_id)


@distributions_router.post("/{distribution_id}/process", response_model=IncomeDistribution)
async def mark_processed(distribution_id: int, db_session: SessionDep, service: DistributionServiceDep):
    """Mark a payout processed. Repeating the call is a no-op."""
    try:
        return await service.mark_processed(db_session, distribution_id)
    except InvestmentEngineError as e:
        raise to_http(e)
