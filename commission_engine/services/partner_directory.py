"""
Partner Directory: tenant-scoped partner, tier and upline lookups.

The upline is read from the ``partner_relations`` closure table in one
flat query ordered by depth. No recursive traversal happens here or in
the calculator.

Broken ancestry (a missing depth, a missing partner row, a repeated
partner) is not an error: the directory returns the resolvable prefix and
flags the resolution as truncated.
"""
import uuid
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.models.partner import (
    Partner,
    PartnerTier,
    PartnerRelation,
    RelationStatus,
    RelationType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierSnapshot:
    """Tier attributes as they were when the upline was read."""
    id: uuid.UUID
    tenant_id: uuid.UUID
    level_code: str
    level_name: str
    default_commission_rate: Decimal
    max_referral_depth: int

    @classmethod
    def from_model(cls, tier: PartnerTier) -> "TierSnapshot":
        return cls(
            id=tier.id,
            tenant_id=tier.tenant_id,
            level_code=tier.level_code,
            level_name=tier.level_name,
            default_commission_rate=Decimal(tier.default_commission_rate),
            max_referral_depth=tier.max_referral_depth,
        )


@dataclass(frozen=True)
class UplineEntry:
    """One ancestor of the source partner. ``depth`` 1 is the direct sponsor."""
    partner_id: uuid.UUID
    partner_tenant_id: uuid.UUID
    partner_code: str
    depth: int
    sponsor_id: Optional[uuid.UUID] = None
    tier: Optional[TierSnapshot] = None

    @property
    def tier_id(self) -> Optional[uuid.UUID]:
        return self.tier.id if self.tier else None


@dataclass
class UplineResolution:
    """Nearest-first upline plus whether the chain was cut short."""
    entries: List[UplineEntry] = field(default_factory=list)
    truncated: bool = False

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class ReferenceOwners:
    """Owning tenant of each referenced partner/tier id (absent = not found)."""
    partners: Dict[uuid.UUID, uuid.UUID] = field(default_factory=dict)
    tiers: Dict[uuid.UUID, uuid.UUID] = field(default_factory=dict)


class PartnerDirectory:
    """Read-only partner hierarchy access."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_partner(
        self,
        tenant_id: uuid.UUID,
        partner_id: uuid.UUID
    ) -> Optional[Partner]:
        """Get a partner of this tenant, or None."""
        result = await self.db.execute(
            select(Partner).where(
                Partner.tenant_id == tenant_id,
                Partner.id == partner_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_tier(
        self,
        tenant_id: uuid.UUID,
        tier_id: uuid.UUID
    ) -> Optional[PartnerTier]:
        """Get a tier of this tenant, or None."""
        result = await self.db.execute(
            select(PartnerTier).where(
                PartnerTier.tenant_id == tenant_id,
                PartnerTier.id == tier_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_upline(
        self,
        tenant_id: uuid.UUID,
        partner_id: uuid.UUID,
        max_depth: int
    ) -> UplineResolution:
        """
        Ancestors of ``partner_id`` at depths 1..max_depth, nearest first.

        Only ACTIVE sponsorship relations of this tenant are followed. The
        ancestor partner and tier rows are joined by id alone, so a relation
        that points into another tenant surfaces here with that tenant's id
        and is rejected later by the isolation guard instead of being
        silently dropped.
        """
        if max_depth < 1:
            return UplineResolution()

        stmt = (
            select(PartnerRelation.depth, Partner, PartnerTier)
            .join(Partner, Partner.id == PartnerRelation.parent_partner_id, isouter=True)
            .join(PartnerTier, PartnerTier.id == Partner.tier_id, isouter=True)
            .where(
                PartnerRelation.tenant_id == tenant_id,
                PartnerRelation.child_partner_id == partner_id,
                PartnerRelation.relationship_type == RelationType.SPONSORSHIP.value,
                PartnerRelation.status == RelationStatus.ACTIVE.value,
                PartnerRelation.depth <= max_depth,
            )
            .order_by(PartnerRelation.depth)
        )
        rows = (await self.db.execute(stmt)).all()

        entries: List[UplineEntry] = []
        seen = {partner_id}
        broken = False
        expected_depth = 1

        for depth, ancestor, tier in rows:
            if depth < expected_depth:
                # Duplicate row for a depth already resolved; keep the first
                continue
            if depth != expected_depth:
                logger.warning(
                    f"Upline gap for partner {partner_id}: expected depth {expected_depth}, found {depth}"
                )
                broken = True
                break
            if ancestor is None:
                logger.warning(f"Upline of partner {partner_id} references a missing partner at depth {depth}")
                broken = True
                break
            if ancestor.id in seen:
                logger.warning(f"Upline cycle detected for partner {partner_id} at depth {depth}")
                broken = True
                break

            seen.add(ancestor.id)
            entries.append(UplineEntry(
                partner_id=ancestor.id,
                partner_tenant_id=ancestor.tenant_id,
                partner_code=ancestor.partner_code,
                depth=depth,
                sponsor_id=ancestor.sponsor_id,
                tier=TierSnapshot.from_model(tier) if tier is not None else None,
            ))
            expected_depth += 1

        truncated = broken
        if not broken and len(entries) < max_depth:
            # Chain ended early: fine if it reached a root partner
            if entries:
                truncated = entries[-1].sponsor_id is not None
            else:
                truncated = await self._has_sponsor(tenant_id, partner_id)

        return UplineResolution(entries=entries, truncated=truncated)

    async def _has_sponsor(self, tenant_id: uuid.UUID, partner_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(Partner.sponsor_id).where(
                Partner.tenant_id == tenant_id,
                Partner.id == partner_id,
            )
        )
        return result.scalar_one_or_none() is not None

    async def get_reference_owners(
        self,
        partner_ids: Iterable[uuid.UUID],
        tier_ids: Iterable[uuid.UUID]
    ) -> ReferenceOwners:
        """
        Owning tenant of every referenced id, looked up WITHOUT tenant scoping.

        Only the isolation guard should call this.
        """
        owners = ReferenceOwners()
        partner_ids = set(partner_ids)
        tier_ids = set(tier_ids)

        if partner_ids:
            result = await self.db.execute(
                select(Partner.id, Partner.tenant_id).where(Partner.id.in_(partner_ids))
            )
            owners.partners = {row.id: row.tenant_id for row in result}

        if tier_ids:
            result = await self.db.execute(
                select(PartnerTier.id, PartnerTier.tenant_id).where(PartnerTier.id.in_(tier_ids))
            )
            owners.tiers = {row.id: row.tenant_id for row in result}

        return owners
