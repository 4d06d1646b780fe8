"""
Partner payout requests.

A partner may withdraw what the ledger owes them: pending commission
earnings minus whatever is already tied up in pending payout requests.
Only one pending request per partner at a time.
"""
import uuid
import logging
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.config import settings
from commission_engine.core.currency import to_minor_units
from commission_engine.core.enum_utils import normalize_to_uppercase, enum_values
from commission_engine.core.exceptions import PayoutRequestError, SettlementValidationError
from commission_engine.models.commission import (
    PartnerCommission,
    PayoutRequest,
    PayoutStatus,
    PayoutRequestStatus,
)
from commission_engine.models.partner import Partner, PartnerStatus
from commission_engine.schemas.commission import PayoutRequestCreate
from commission_engine.services.document_sequence_service import DocumentSequenceService

logger = logging.getLogger(__name__)


class PayoutService:
    """Payable balance and payout request management."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_payable_balance(
        self,
        tenant_id: uuid.UUID,
        partner_id: uuid.UUID,
        currency: Optional[str] = None,
    ) -> int:
        """max(0, pending commissions - pending payout requests) in one currency, in minor units."""
        currency = (currency or settings.DEFAULT_CURRENCY).strip().upper()
        earnings = await self.db.execute(
            select(func.coalesce(func.sum(PartnerCommission.commission_amount), 0)).where(
                PartnerCommission.tenant_id == tenant_id,
                PartnerCommission.beneficiary_partner_id == partner_id,
                PartnerCommission.payout_status == PayoutStatus.PENDING.value,
                PartnerCommission.currency == currency,
            )
        )
        requested = await self.db.execute(
            select(func.coalesce(func.sum(PayoutRequest.requested_amount), 0)).where(
                PayoutRequest.tenant_id == tenant_id,
                PayoutRequest.partner_id == partner_id,
                PayoutRequest.request_status == PayoutRequestStatus.PENDING.value,
                PayoutRequest.currency == currency,
            )
        )
        pending_earnings = int(earnings.scalar() or 0)
        pending_requests = int(requested.scalar() or 0)
        return max(0, pending_earnings - pending_requests)

    async def create_payout_request(
        self,
        tenant_id: uuid.UUID,
        data: PayoutRequestCreate
    ) -> PayoutRequest:
        """
        Create a PENDING payout request.

        Flushes but does not commit.

        Raises:
            PayoutRequestError: partner missing/inactive, amount not within
                the payable balance, or a pending request already exists
        """
        partner_result = await self.db.execute(
            select(Partner)
            .where(
                Partner.tenant_id == tenant_id,
                Partner.id == data.partner_id,
            )
            .with_for_update()
        )
        partner = partner_result.scalar_one_or_none()
        if partner is None or partner.status != PartnerStatus.ACTIVE.value:
            raise PayoutRequestError("Partner not found or inactive")

        currency = data.currency or settings.DEFAULT_CURRENCY
        try:
            requested_minor = to_minor_units(data.requested_amount, currency)
        except SettlementValidationError as e:
            raise PayoutRequestError(str(e))
        if requested_minor <= 0:
            raise PayoutRequestError("Request amount must be greater than zero")

        payable_balance = await self.get_payable_balance(tenant_id, partner.id, currency)
        if requested_minor > payable_balance:
            raise PayoutRequestError("Requested amount exceeds payable balance")

        existing = await self.db.execute(
            select(PayoutRequest.id).where(
                PayoutRequest.tenant_id == tenant_id,
                PayoutRequest.partner_id == partner.id,
                PayoutRequest.request_status == PayoutRequestStatus.PENDING.value,
            )
        )
        if existing.first() is not None:
            raise PayoutRequestError("Partner already has a pending payout request")

        request_number = await DocumentSequenceService(self.db).get_next_number(
            tenant_id, settings.PAYOUT_REQUEST_PREFIX
        )

        payout = PayoutRequest(
            tenant_id=tenant_id,
            partner_id=partner.id,
            partner_code=partner.partner_code,
            request_number=request_number,
            requested_amount=requested_minor,
            payable_balance_at_request=payable_balance,
            currency=currency,
            request_status=PayoutRequestStatus.PENDING.value,
            payment_method=data.payment_method,
            payment_details=data.payment_details,
        )
        self.db.add(payout)
        await self.db.flush()

        logger.info(
            f"Payout request {request_number} created for partner {partner.partner_code}: "
            f"{requested_minor} {currency} minor units"
        )
        return payout

    async def list_payout_requests(
        self,
        tenant_id: uuid.UUID,
        partner_id: uuid.UUID,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[PayoutRequest]:
        query = select(PayoutRequest).where(
            PayoutRequest.tenant_id == tenant_id,
            PayoutRequest.partner_id == partner_id,
        )
        if status:
            query = query.where(
                PayoutRequest.request_status == normalize_to_uppercase(status, enum_values(PayoutRequestStatus))
            )
        query = query.order_by(PayoutRequest.request_date.desc()).offset(offset).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())
