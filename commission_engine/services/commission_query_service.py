"""
Read-side queries over the commission ledger.

All queries are tenant-scoped. Amounts are returned in minor units.
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, func, case, and_
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.core.enum_utils import normalize_to_uppercase, enum_values
from commission_engine.models.commission import (
    PartnerCommission,
    PayoutStatus,
    TransactionType,
)
from commission_engine.models.partner import Partner, PartnerStatus
from commission_engine.schemas.commission import (
    CommissionStats,
    CommissionReport,
    CommissionReportSummary,
    ReferralStats,
)
from commission_engine.schemas.settlement import CommissionRecordSchema


class CommissionQueryService:
    """Commission listings, reports and per-partner earnings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _partner_filters(
        self,
        tenant_id: uuid.UUID,
        partner_id: uuid.UUID,
        payout_status: Optional[str] = None,
        transaction_type: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        commission_level: Optional[int] = None,
    ) -> list:
        filters = [
            PartnerCommission.tenant_id == tenant_id,
            PartnerCommission.beneficiary_partner_id == partner_id,
        ]
        if payout_status:
            status = normalize_to_uppercase(payout_status, enum_values(PayoutStatus))
            filters.append(PartnerCommission.payout_status == status)
        if transaction_type:
            txn_type = normalize_to_uppercase(transaction_type, enum_values(TransactionType))
            filters.append(PartnerCommission.transaction_type == txn_type)
        if date_from is not None:
            filters.append(PartnerCommission.transaction_date >= date_from)
        if date_to is not None:
            filters.append(PartnerCommission.transaction_date <= date_to)
        if commission_level is not None:
            filters.append(PartnerCommission.levels_from_source == commission_level)
        return filters

    async def list_partner_commissions(
        self,
        tenant_id: uuid.UUID,
        partner_id: uuid.UUID,
        payout_status: Optional[str] = None,
        transaction_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[PartnerCommission]:
        """Commissions earned by a partner, newest transaction first."""
        query = select(PartnerCommission).where(
            *self._partner_filters(tenant_id, partner_id, payout_status, transaction_type)
        )

        query = query.order_by(
            PartnerCommission.transaction_date.desc(),
            PartnerCommission.calculation_date.desc(),
            PartnerCommission.levels_from_source,
        ).offset(offset).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_transaction_commissions(
        self,
        tenant_id: uuid.UUID,
        transaction_id: str
    ) -> List[PartnerCommission]:
        result = await self.db.execute(
            select(PartnerCommission)
            .where(
                PartnerCommission.tenant_id == tenant_id,
                PartnerCommission.transaction_id == transaction_id,
            )
            .order_by(PartnerCommission.levels_from_source)
        )
        return list(result.scalars().all())

    async def get_partner_commission_stats(
        self,
        tenant_id: uuid.UUID,
        partner_id: uuid.UUID
    ) -> CommissionStats:
        pending = PartnerCommission.payout_status == PayoutStatus.PENDING.value
        paid = PartnerCommission.payout_status == PayoutStatus.PAID.value

        result = await self.db.execute(
            select(
                func.coalesce(func.sum(PartnerCommission.commission_amount), 0).label("total_earnings"),
                func.coalesce(
                    func.sum(case((pending, PartnerCommission.commission_amount), else_=0)), 0
                ).label("pending_earnings"),
                func.coalesce(
                    func.sum(case((paid, PartnerCommission.commission_amount), else_=0)), 0
                ).label("paid_earnings"),
                func.count(PartnerCommission.id).label("total_commissions"),
                func.count(case((pending, 1))).label("pending_commissions"),
                func.count(case((paid, 1))).label("paid_commissions"),
            ).where(
                PartnerCommission.tenant_id == tenant_id,
                PartnerCommission.beneficiary_partner_id == partner_id,
            )
        )
        row = result.one()

        return CommissionStats(
            partner_id=partner_id,
            total_earnings=int(row.total_earnings or 0),
            pending_earnings=int(row.pending_earnings or 0),
            paid_earnings=int(row.paid_earnings or 0),
            total_commissions=row.total_commissions or 0,
            pending_commissions=row.pending_commissions or 0,
            paid_commissions=row.paid_commissions or 0,
        )

    async def get_partner_commission_report(
        self,
        tenant_id: uuid.UUID,
        partner_id: uuid.UUID,
        payout_status: Optional[str] = None,
        transaction_type: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        commission_level: Optional[int] = None,
        limit: int = 100,
        offset: int = 0
    ) -> CommissionReport:
        """
        One page of a partner's commissions plus a summary of every match.

        The summary covers all rows matching the filters, not only the page.
        """
        filters = self._partner_filters(
            tenant_id, partner_id, payout_status, transaction_type,
            date_from, date_to, commission_level,
        )

        page = await self.db.execute(
            select(PartnerCommission)
            .where(*filters)
            .order_by(
                PartnerCommission.transaction_date.desc(),
                PartnerCommission.calculation_date.desc(),
                PartnerCommission.levels_from_source,
            )
            .offset(offset)
            .limit(limit)
        )
        commissions = list(page.scalars().all())

        pending = PartnerCommission.payout_status == PayoutStatus.PENDING.value
        paid = PartnerCommission.payout_status == PayoutStatus.PAID.value
        totals = await self.db.execute(
            select(
                func.count(PartnerCommission.id).label("total_count"),
                func.coalesce(func.sum(PartnerCommission.commission_amount), 0).label("total_amount"),
                func.coalesce(
                    func.sum(case((pending, PartnerCommission.commission_amount), else_=0)), 0
                ).label("pending_amount"),
                func.coalesce(
                    func.sum(case((paid, PartnerCommission.commission_amount), else_=0)), 0
                ).label("paid_amount"),
                func.count(func.distinct(PartnerCommission.transaction_id)).label("total_transactions"),
            ).where(*filters)
        )
        row = totals.one()

        return CommissionReport(
            commissions=[CommissionRecordSchema.model_validate(c) for c in commissions],
            total_count=row.total_count or 0,
            summary=CommissionReportSummary(
                total_amount=int(row.total_amount or 0),
                pending_amount=int(row.pending_amount or 0),
                paid_amount=int(row.paid_amount or 0),
                total_transactions=row.total_transactions or 0,
            ),
        )

    async def get_partner_referral_stats(
        self,
        tenant_id: uuid.UUID,
        partner_id: uuid.UUID,
        now: Optional[datetime] = None
    ) -> ReferralStats:
        """
        Counts over the partner's direct referrals (partners it sponsors).

        A referral is converted once it is active and has been given a tier.
        """
        now = now or datetime.now(timezone.utc)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        active = Partner.status == PartnerStatus.ACTIVE.value
        converted = and_(active, Partner.tier_id.isnot(None))
        this_month = Partner.created_at >= month_start

        result = await self.db.execute(
            select(
                func.count(Partner.id).label("total_direct_referrals"),
                func.count(case((active, 1))).label("active_referrals"),
                func.count(case((converted, 1))).label("converted_referrals"),
                func.count(case((this_month, 1))).label("this_month_referrals"),
            ).where(
                Partner.tenant_id == tenant_id,
                Partner.sponsor_id == partner_id,
            )
        )
        row = result.one()

        return ReferralStats(
            partner_id=partner_id,
            total_direct_referrals=row.total_direct_referrals or 0,
            active_referrals=row.active_referrals or 0,
            converted_referrals=row.converted_referrals or 0,
            this_month_referrals=row.this_month_referrals or 0,
        )
