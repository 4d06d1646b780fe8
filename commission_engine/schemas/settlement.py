"""
Pydantic schemas for commission settlement.

SettlementTransaction is what the order-completion workflow hands to the
engine; SettlementResult is what it gets back (and what the idempotency
cache stores verbatim).
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, field_validator

from commission_engine.core.enum_utils import normalize_to_uppercase, enum_values
from commission_engine.models.commission import TransactionType
from commission_engine.schemas.base import BaseResponseSchema


class SettlementTransaction(BaseModel):
    """A completed transaction to settle commissions for."""

    tenant_id: UUID
    transaction_id: str = Field(..., min_length=1, max_length=255)
    # Optional here so a missing partner is reported as a VALIDATION result
    source_partner_id: Optional[UUID] = None
    amount: Decimal = Field(..., description="Major units, e.g. 1000.00")
    currency: str = Field("USD", min_length=3, max_length=3)
    transaction_type: str = TransactionType.PAYMENT.value
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # Total as reported by the upstream system (e.g. POS), checked against amount
    reported_total: Optional[Decimal] = None

    @field_validator("transaction_id")
    @classmethod
    def strip_transaction_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("transaction_id must not be blank")
        return v

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("transaction_type", mode="before")
    @classmethod
    def normalize_transaction_type(cls, v):
        return normalize_to_uppercase(v, enum_values(TransactionType))

    @field_validator("occurred_at")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class CommissionRecordSchema(BaseResponseSchema):
    """A persisted commission ledger row. ``amount`` is in minor units."""

    id: Optional[UUID] = None
    tenant_id: UUID
    transaction_id: str
    transaction_type: str
    transaction_amount: int
    currency: str
    beneficiary_partner_id: UUID
    beneficiary_partner_code: str
    beneficiary_tier_id: UUID
    beneficiary_tier_name: str
    source_partner_id: UUID
    source_partner_code: str
    levels_from_source: int
    percentage: Decimal = Field(
        validation_alias=AliasChoices("percentage", "commission_percentage")
    )
    amount: int = Field(
        validation_alias=AliasChoices("amount", "commission_amount")
    )
    engine_version: str
    payout_status: str = "PENDING"
    calculation_date: Optional[datetime] = None


class SettlementErrorDetail(BaseModel):
    kind: str
    message: str
    retryable: bool = False


class SettlementResult(BaseModel):
    """
    Outcome of one settlement invocation.

    ``total_commissions_calculated`` is the number of ledger rows that exist
    for the transaction after this invocation, so concurrent or repeated
    calls all report the same total. ``inserted_count`` is how many of those
    rows this particular invocation wrote.
    """

    success: bool
    tenant_id: Optional[UUID] = None
    transaction_id: Optional[str] = None
    total_commissions_calculated: int = 0
    total_commission_amount: int = 0
    currency: Optional[str] = None
    inserted_count: int = 0
    commission_records: List[CommissionRecordSchema] = Field(default_factory=list)
    truncated_upline: bool = False
    error: Optional[SettlementErrorDetail] = None
