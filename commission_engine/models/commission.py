"""Commission ledger and payout request models.

``partner_commissions`` is a financial ledger: rows are inserted exactly once
per (tenant, transaction, beneficiary, levels_from_source), never updated by
settlement and never deleted by normal operation. All money columns are
integer minor units.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, DateTime, ForeignKey, Integer, Text,
    UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from commission_engine.core.enum_utils import enum_comment
from commission_engine.database import Base
from commission_engine.db_types import UUIDType, JSONType, MinorUnits, RateType


# ==================== ENUMS (stored as VARCHAR) ====================

class TransactionType(str, Enum):
    PAYMENT = "PAYMENT"
    SIGNUP = "SIGNUP"
    RECURRING = "RECURRING"
    BONUS = "BONUS"


class CalculationStatus(str, Enum):
    CALCULATED = "CALCULATED"
    APPROVED = "APPROVED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PayoutRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class PartnerCommission(Base):
    """
    One commission entitlement for one upline beneficiary of one transaction.

    Tier name and partner codes are denormalized snapshots taken at
    calculation time so later renames never rewrite history.
    """
    __tablename__ = "partner_commissions"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "transaction_id", "beneficiary_partner_id", "levels_from_source",
            name="uq_commission_per_transaction_beneficiary_level"
        ),
        CheckConstraint(
            "commission_percentage >= 0 AND commission_percentage <= 1",
            name="ck_commission_percentage_range"
        ),
        CheckConstraint(
            "transaction_amount > 0 AND commission_amount >= 0",
            name="ck_commission_amounts"
        ),
        CheckConstraint(
            "levels_from_source > 0 AND commission_level > 0",
            name="ck_commission_levels_positive"
        ),
        Index("ix_partner_commissions_tenant_transaction", "tenant_id", "transaction_id"),
        Index("ix_partner_commissions_tenant_beneficiary", "tenant_id", "beneficiary_partner_id"),
        Index("ix_partner_commissions_tenant_payout_status", "tenant_id", "payout_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False
    )

    # Transaction (caller-supplied id, stable across retries)
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    transaction_amount: Mapped[int] = mapped_column(
        MinorUnits,
        nullable=False,
        comment="Transaction amount in minor units"
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    transaction_type: Mapped[str] = mapped_column(
        String(20),
        default=TransactionType.PAYMENT.value,
        nullable=False,
        comment=enum_comment(TransactionType)
    )
    transaction_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Who receives the commission
    beneficiary_partner_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("partners.id", ondelete="RESTRICT"),
        nullable=False
    )
    beneficiary_partner_code: Mapped[str] = mapped_column(String(50), nullable=False)
    beneficiary_tier_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("partner_tiers.id", ondelete="RESTRICT"),
        nullable=False
    )
    beneficiary_tier_name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Who made the original sale
    source_partner_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("partners.id", ondelete="RESTRICT"),
        nullable=False
    )
    source_partner_code: Mapped[str] = mapped_column(String(50), nullable=False)

    # Calculation
    commission_level: Mapped[int] = mapped_column(Integer, nullable=False)
    levels_from_source: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="1 = immediate upline"
    )
    commission_percentage: Mapped[Decimal] = mapped_column(RateType, nullable=False)
    commission_amount: Mapped[int] = mapped_column(
        MinorUnits,
        nullable=False,
        comment="Commission in minor units"
    )

    calculation_status: Mapped[str] = mapped_column(
        String(20),
        default=CalculationStatus.CALCULATED.value,
        nullable=False,
        comment=enum_comment(CalculationStatus)
    )
    payout_status: Mapped[str] = mapped_column(
        String(20),
        default=PayoutStatus.PENDING.value,
        nullable=False,
        comment=enum_comment(PayoutStatus)
    )

    calculation_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    engine_version: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra_data: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        default=dict,
        nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<PartnerCommission(txn={self.transaction_id}, beneficiary={self.beneficiary_partner_code}, "
            f"level={self.levels_from_source}, amount={self.commission_amount})>"
        )


class PayoutRequest(Base):
    """A partner's request to withdraw pending commission earnings."""
    __tablename__ = "payout_requests"
    __table_args__ = (
        UniqueConstraint("tenant_id", "request_number", name="uq_payout_request_number_per_tenant"),
        CheckConstraint("requested_amount > 0", name="ck_payout_request_amount_positive"),
        Index("ix_payout_requests_tenant_partner_status", "tenant_id", "partner_id", "request_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False
    )
    partner_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("partners.id", ondelete="CASCADE"),
        nullable=False
    )
    partner_code: Mapped[str] = mapped_column(String(50), nullable=False)
    request_number: Mapped[str] = mapped_column(String(50), nullable=False)

    requested_amount: Mapped[int] = mapped_column(MinorUnits, nullable=False)
    payable_balance_at_request: Mapped[int] = mapped_column(MinorUnits, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    request_status: Mapped[str] = mapped_column(
        String(20),
        default=PayoutRequestStatus.PENDING.value,
        nullable=False,
        comment=enum_comment(PayoutRequestStatus)
    )
    payment_method: Mapped[str] = mapped_column(String(30), default="BANK_TRANSFER", nullable=False)
    payment_details: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    request_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    reviewed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    approval_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<PayoutRequest(number={self.request_number}, amount={self.requested_amount})>"
