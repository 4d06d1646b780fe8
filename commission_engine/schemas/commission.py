"""Pydantic schemas for commission queries and payout requests."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from commission_engine.schemas.base import BaseResponseSchema
from commission_engine.schemas.settlement import CommissionRecordSchema


# ==================== Commission Stats ====================

class CommissionStats(BaseModel):
    """Earnings summary for one partner. Amounts are minor units."""
    partner_id: UUID
    total_earnings: int = 0
    pending_earnings: int = 0
    paid_earnings: int = 0
    total_commissions: int = 0
    pending_commissions: int = 0
    paid_commissions: int = 0


class CommissionReportSummary(BaseModel):
    """Totals over every commission matching a report's filters."""
    total_amount: int = 0
    pending_amount: int = 0
    paid_amount: int = 0
    total_transactions: int = 0


class CommissionReport(BaseModel):
    commissions: List[CommissionRecordSchema] = Field(default_factory=list)
    total_count: int = 0
    summary: CommissionReportSummary = Field(default_factory=CommissionReportSummary)


# ==================== Referral Stats ====================

class ReferralStats(BaseModel):
    """Counts over a partner's direct referrals."""
    partner_id: UUID
    total_direct_referrals: int = 0
    active_referrals: int = 0
    converted_referrals: int = 0
    this_month_referrals: int = 0


# ==================== Payout Requests ====================

class PayoutRequestCreate(BaseModel):
    """Payout request input. ``requested_amount`` is in major units."""
    partner_id: UUID
    requested_amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    payment_method: str = "BANK_TRANSFER"
    payment_details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v):
        return v.upper() if v else v

    @field_validator("payment_method")
    @classmethod
    def uppercase_payment_method(cls, v: str) -> str:
        return v.strip().upper()


class PayoutRequestResponse(BaseResponseSchema):
    id: UUID
    tenant_id: UUID
    partner_id: UUID
    partner_code: str
    request_number: str
    requested_amount: int
    payable_balance_at_request: int
    currency: str
    request_status: str
    payment_method: str
    payment_details: Dict[str, Any] = Field(default_factory=dict)
    request_date: datetime
    reviewed_date: Optional[datetime] = None
    approval_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
