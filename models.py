# models.py
# SQLAlchemy models defining database tables (properties, both investment ledgers, eligibility, documents, activity, distributions).

from sqlalchemy import (
    Boolean, Column, Integer, BigInteger, String, DateTime, ForeignKey, Text, Index, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from datetime import datetime, timezone
from typing import Optional

from database import Base

# Ownership is stored as a fixed-point integer: 100% == OWNERSHIP_SCALE
OWNERSHIP_SCALE = 1_000_000

# ⚠️ Transaction states that consume share inventory.
# 'pending' is a draft and never blocks other investors.
INVENTORY_CONSUMING_STATES = ("reserved", "processing", "completed")

TRANSACTION_STATES = ("pending", "reserved", "processing", "completed", "cancelled")
TERMINAL_STATES = ("completed", "cancelled")

# Legacy ledger states that count as ownership
LEGACY_ACTIVE_STATES = ("confirmed", "active")

DISTRIBUTION_TYPES = ("rental_income", "capital_gain", "exit_proceeds")


class Property(Base):
    __tablename__ = "properties"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    # Immutable once funding starts
    total_shares = Column(Integer, nullable=False)
    # Minor currency units (cents)
    share_price = Column(BigInteger, nullable=False)
    funding_started_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    transactions = relationship("InvestmentTransaction", back_populates="property")
    legacy_investments = relationship("LegacyInvestment", back_populates="property")

    def __repr__(self):
        return f"<Property {self.id} {self.name!r} shares={self.total_shares} price={self.share_price}>"


class LegacyInvestment(Base):
    """
    Investment record from the first-generation investment system.

    Still a source of ownership: rows in LEGACY_ACTIVE_STATES receive
    distributions and appear in the unified ledger. No fees were charged.
    """
    __tablename__ = "investments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)  # in cents
    shares = Column(Integer, nullable=False)
    share_price = Column(BigInteger, nullable=False)
    ownership_percentage = Column(Integer, nullable=False)  # scaled by OWNERSHIP_SCALE
    # STATES: pending, confirmed, active, exited, cancelled
    status = Column(String, default="pending", nullable=False, index=True)
    payment_status = Column(String, default="pending", nullable=True)
    distribution_frequency = Column(String, nullable=True)
    investment_date = Column(DateTime, server_default=func.now(), nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    exited_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    property = relationship("Property", back_populates="legacy_investments")

    __table_args__ = (
        Index("ix_investments_user_status_created", "user_id", "status", "created_at"),
    )


class InvestmentTransaction(Base):
    """
    Current-generation investment record.

    Lifecycle: pending -> reserved -> processing -> completed, with cancelled
    reachable from every non-terminal state. Rows are only mutated through
    InvestmentTransactionService.
    """
    __tablename__ = "investment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)

    number_of_shares = Column(Integer, nullable=False)
    price_per_share = Column(BigInteger, nullable=False)
    investment_amount = Column(BigInteger, nullable=False)
    platform_fee = Column(BigInteger, nullable=False, default=0)
    processing_fee = Column(BigInteger, nullable=False, default=0)
    total_amount = Column(BigInteger, nullable=False)
    # Computed once at creation, never recomputed
    ownership_percentage = Column(Integer, nullable=False)

    status = Column(String, default="pending", nullable=False, index=True)
    # STATES: pending, completed, failed
    payment_status = Column(String, default="pending", nullable=False)
    payment_reference = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)

    reserved_at = Column(DateTime, nullable=True)
    reservation_expires_at = Column(DateTime, nullable=True, index=True)
    paid_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    certificate_issued = Column(Boolean, default=False, nullable=False)
    certificate_issued_at = Column(DateTime, nullable=True)
    certificate_reference = Column(String, nullable=True)

    distribution_frequency = Column(String, nullable=True)
    exited_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    property = relationship("Property", back_populates="transactions")
    documents = relationship("InvestmentDocument", back_populates="investment")

    __table_args__ = (
        CheckConstraint("number_of_shares > 0", name="ck_investment_transactions_positive_shares"),
        Index("ix_investment_transactions_property_status", "property_id", "status"),
    )

    def __repr__(self):
        return f"<InvestmentTransaction {self.id} {self.status} {self.number_of_shares} shares of property {self.property_id}>"


class InvestmentEligibility(Base):
    __tablename__ = "investment_eligibility"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, unique=True, nullable=False)

    is_accredited = Column(Boolean, default=False, nullable=False)
    # income, net_worth, professional, entity, none
    accreditation_type = Column(String, default="none", nullable=False)

    # In cents; NULL means no annual limit
    annual_investment_limit = Column(BigInteger, nullable=True)
    current_year_invested = Column(BigInteger, default=0, nullable=False)
    lifetime_invested = Column(BigInteger, default=0, nullable=False)

    # ⚠️ Only 'approved' KYC may invest
    # STATES: pending, in_progress, approved, rejected, expired
    kyc_status = Column(String, default="pending", nullable=False)
    # STATES: pending, clear, flagged, rejected
    aml_status = Column(String, default="pending", nullable=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class InvestmentDocument(Base):
    __tablename__ = "investment_documents"

    id = Column(Integer, primary_key=True, index=True)
    investment_id = Column(Integer, ForeignKey("investment_transactions.id"), nullable=False, index=True)
    # subscription_agreement, ppm, risk_disclosure, accreditation_proof, identity_verification, tax_form, other
    document_type = Column(String, nullable=False)
    document_name = Column(String, nullable=False)
    document_url = Column(Text, nullable=False)
    file_size = Column(Integer, nullable=True)
    mime_type = Column(String, nullable=True)

    signed = Column(Boolean, default=False, nullable=False)
    signed_at = Column(DateTime, nullable=True)
    signature_data = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    investment = relationship("InvestmentTransaction", back_populates="documents")


class InvestmentActivity(Base):
    """
    Append-only audit trail of investment state transitions.

    RULE: rows are inserted, never updated or deleted.
    """
    __tablename__ = "investment_activity"

    id = Column(Integer, primary_key=True, index=True)
    investment_id = Column(Integer, ForeignKey("investment_transactions.id"), nullable=False, index=True)
    # created, reserved, payment_completed, payment_failed, documents_signed, completed, cancelled, expired
    activity_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_status = Column(String, nullable=True)
    new_status = Column(String, nullable=True)
    performed_by = Column(Integer, nullable=True)  # User ID, NULL for system
    details = Column(Text, nullable=True)  # Stringified JSON
    created_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<InvestmentActivity {self.activity_type} on {self.investment_id} by {self.performed_by}>"


class IncomeDistribution(Base):
    """
    One payout to one owner for one distribution event.

    Exactly one of investment_id (legacy ledger) or investment_transaction_id
    (current ledger) is set.
    """
    __tablename__ = "income_distributions"

    id = Column(Integer, primary_key=True, index=True)
    investment_id = Column(Integer, ForeignKey("investments.id"), nullable=True, index=True)
    investment_transaction_id = Column(Integer, ForeignKey("investment_transactions.id"), nullable=True, index=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    amount = Column(BigInteger, nullable=False)  # in cents
    distribution_type = Column(String, nullable=False)
    distribution_date = Column(DateTime, nullable=False)
    # STATES: pending, processed
    status = Column(String, default="pending", nullable=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "(investment_id IS NULL) <> (investment_transaction_id IS NULL)",
            name="ck_income_distributions_single_ledger",
        ),
        CheckConstraint("amount > 0", name="ck_income_distributions_positive_amount"),
    )

    @property
    def source(self) -> str:
        return "legacy" if self.investment_id is not None else "new"


class PlatformSetting(Base):
    __tablename__ = "platform_settings"

    id = Column(Integer, primary_key=True, index=True)
    setting_key = Column(String, unique=True, nullable=False)
    setting_value = Column(String, nullable=False)
    description = Column(String, nullable=True)
    updated_by = Column(Integer, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column in this schema is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC. Naive values are taken as UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
