# schemas.py
# Pydantic models for request/response validation and serialization.

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from models import to_naive_utc

DistributionType = Literal["rental_income", "capital_gain", "exit_proceeds"]
LedgerSource = Literal["legacy", "new"]


# -----------------------
#  INVENTORY / QUOTES
# -----------------------
class Availability(BaseModel):
    property_id: int
    total_shares: int
    sold_shares: int
    available_shares: int
    percentage_sold: float


class FeePolicy(BaseModel):
    platform_fee_percent: Decimal = Decimal("2.5")
    processing_fee_minor_units: int = 500


class PlatformSettingUpdate(BaseModel):
    setting_value: str
    description: Optional[str] = None
    updated_by: Optional[int] = None


class Quote(BaseModel):
    property_id: int
    number_of_shares: int
    price_per_share: int
    investment_amount: int
    platform_fee: int
    platform_fee_percent: Decimal
    processing_fee: int
    total_amount: int
    available_shares: int
    percentage_of_property: float


# -----------------------
#  ELIGIBILITY
# -----------------------
class EligibilityResult(BaseModel):
    eligible: bool
    reason: Optional[str] = None


class Eligibility(BaseModel):
    user_id: int
    is_accredited: bool
    accreditation_type: str
    annual_investment_limit: Optional[int] = None
    current_year_invested: int
    lifetime_invested: int
    kyc_status: str
    aml_status: str

    class Config:
        from_attributes = True


class EligibilityUpdate(BaseModel):
    is_accredited: Optional[bool] = None
    accreditation_type: Optional[str] = None
    annual_investment_limit: Optional[int] = Field(default=None, ge=0)
    kyc_status: Optional[Literal["pending", "in_progress", "approved", "rejected", "expired"]] = None
    aml_status: Optional[Literal["pending", "clear", "flagged", "rejected"]] = None


# -----------------------
#  TRANSACTIONS
# -----------------------
class QuoteRequest(BaseModel):
    property_id: int
    number_of_shares: int = Field(ge=1)


class TransactionCreateRequest(BaseModel):
    user_id: int
    property_id: int
    number_of_shares: int = Field(ge=1)
    distribution_frequency: Optional[Literal["monthly", "quarterly", "annual"]] = None
    notes: Optional[str] = None


class ReserveRequest(BaseModel):
    expiration_minutes: Optional[int] = None
    performed_by: Optional[int] = None


class MarkPaidRequest(BaseModel):
    payment_reference: str
    payment_method: str
    performed_by: Optional[int] = None


class PaymentFailedRequest(BaseModel):
    reason: Optional[str] = None
    performed_by: Optional[int] = None


class CompleteRequest(BaseModel):
    performed_by: Optional[int] = None


class CancelRequest(BaseModel):
    performed_by: Optional[int] = None
    reason: Optional[str] = None
    admin_override: bool = False


class InvestmentTransaction(BaseModel):
    id: int
    user_id: int
    property_id: int
    number_of_shares: int
    price_per_share: int
    investment_amount: int
    platform_fee: int
    processing_fee: int
    total_amount: int
    ownership_percentage: int
    status: str
    payment_status: str
    payment_reference: Optional[str] = None
    payment_method: Optional[str] = None
    reserved_at: Optional[datetime] = None
    reservation_expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    certificate_issued: bool = False
    certificate_issued_at: Optional[datetime] = None
    certificate_reference: Optional[str] = None
    distribution_frequency: Optional[str] = None
    exited_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class InvestmentActivity(BaseModel):
    id: int
    investment_id: int
    activity_type: str
    description: str
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    performed_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class InvestmentDetail(BaseModel):
    investment: InvestmentTransaction
    documents: List["InvestmentDocument"]
    activity: List[InvestmentActivity]


class DocumentCreate(BaseModel):
    document_type: Literal[
        "subscription_agreement", "ppm", "risk_disclosure", "accreditation_proof",
        "identity_verification", "bank_statement", "tax_form", "other"
    ]
    document_name: str
    document_url: str
    file_size: Optional[int] = None
    mime_type: Optional[str] = None


class SignDocumentRequest(BaseModel):
    signature_data: str
    performed_by: Optional[int] = None


class InvestmentDocument(BaseModel):
    id: int
    investment_id: int
    document_type: str
    document_name: str
    document_url: str
    signed: bool
    signed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


InvestmentDetail.model_rebuild()


class SweepResult(BaseModel):
    cancelled_count: int


class InvestmentStats(BaseModel):
    total_investments: int
    total_amount: int
    completed_investments: int
    in_flight_investments: int


# -----------------------
#  UNIFIED LEDGER
# -----------------------
class UnifiedInvestment(BaseModel):
    id: int
    user_id: int
    property_id: int
    investment_amount: int
    number_of_shares: int
    price_per_share: int
    platform_fee: int
    processing_fee: int
    total_amount: int
    status: str
    payment_status: str
    created_at: datetime
    completed_at: Optional[datetime] = None
    source: LedgerSource
    distribution_frequency: Optional[str] = None
    exited_at: Optional[datetime] = None
    ownership_percentage: Optional[int] = None


class PortfolioSummary(BaseModel):
    user_id: int
    total_invested: int
    active_investments: int
    investments: List[UnifiedInvestment]


# -----------------------
#  DISTRIBUTIONS
# -----------------------
class DistributeRequest(BaseModel):
    property_id: int
    total_amount: int = Field(gt=0)
    distribution_type: DistributionType
    distribution_date: datetime
    performed_by: Optional[int] = None

    @field_validator("distribution_date")
    @classmethod
    def distribution_date_to_utc(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class Owner(BaseModel):
    """One active owner of a property, from either ledger"""
    source: LedgerSource
    record_id: int
    user_id: int
    shares: int
    ownership_percentage: int


class InvestorPreview(BaseModel):
    property_id: int
    investors: List[Owner]
    total_ownership: int
    total_investors: int


class IncomeDistribution(BaseModel):
    id: int
    investment_id: Optional[int] = None
    investment_transaction_id: Optional[int] = None
    property_id: int
    user_id: int
    amount: int
    distribution_type: str
    distribution_date: datetime
    status: str
    processed_at: Optional[datetime] = None
    created_at: datetime
    source: LedgerSource

    class Config:
        from_attributes = True


class DistributionResult(BaseModel):
    property_id: int
    requested_amount: int
    total_distributions: int
    total_amount: int
    # Floor-rounding remainder; intentionally left undistributed
    residual: int
    total_ownership: int
    distributions: List[IncomeDistribution]
