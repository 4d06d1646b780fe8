"""Partner program models: tiers, partners and the materialized upline.

The partner hierarchy is stored as a closure table (``partner_relations``):
one row per (ancestor, descendant) pair with its distance in ``depth``
(1 = direct sponsor) and the materialized ancestry ``path``. The whole
upline of a partner is therefore a single flat query ordered by depth,
with no recursive traversal.

Key rules:
- Every row carries tenant_id; references must stay within one tenant
- A partner is never its own ancestor (acyclic)
- Tier rates are fractions in [0, 1]
"""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    String, DateTime, Date, ForeignKey, Integer, Text,
    UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from commission_engine.core.enum_utils import enum_comment
from commission_engine.database import Base
from commission_engine.db_types import UUIDType, RateType


# ==================== ENUMS (stored as VARCHAR) ====================

class TierStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class PartnerStatus(str, Enum):
    """Partner account status."""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    INACTIVE = "INACTIVE"


class RelationType(str, Enum):
    SPONSORSHIP = "SPONSORSHIP"
    MENTORSHIP = "MENTORSHIP"
    TEAM = "TEAM"


class RelationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SEVERED = "SEVERED"


class PartnerTier(Base):
    """
    Partner level/tier configuration.

    ``default_commission_rate`` is what a partner of this tier earns when it
    is the beneficiary; ``max_referral_depth`` is how many levels below it a
    sale may originate and still pay it commission.
    """
    __tablename__ = "partner_tiers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "level_code", name="uq_partner_tier_code_per_tenant"),
        UniqueConstraint("tenant_id", "level_order", name="uq_partner_tier_order_per_tenant"),
        CheckConstraint(
            "default_commission_rate >= 0 AND default_commission_rate <= 1",
            name="ck_partner_tier_rate_range"
        ),
        CheckConstraint("max_referral_depth >= 0", name="ck_partner_tier_depth_non_negative"),
        Index("ix_partner_tiers_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Tier Identification
    level_code: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Tier code: BRONZE, SILVER, GOLD, PLATINUM"
    )
    level_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    level_order: Mapped[int] = mapped_column(
        Integer,
        default=1,
        comment="1=lowest, higher=better"
    )

    # Commission
    default_commission_rate: Mapped[Decimal] = mapped_column(
        RateType,
        nullable=False,
        comment="Fraction of the transaction amount, 0.1000 = 10%"
    )
    max_referral_depth: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
        comment="Deepest levels_from_source that still earns commission"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=TierStatus.ACTIVE.value,
        nullable=False,
        comment=enum_comment(TierStatus)
    )

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

    partners: Mapped[List["Partner"]] = relationship(
        "Partner",
        back_populates="tier"
    )

    def __repr__(self) -> str:
        return f"<PartnerTier(code={self.level_code}, rate={self.default_commission_rate})>"


class Partner(Base):
    """A participant in the referral program."""
    __tablename__ = "partners"
    __table_args__ = (
        UniqueConstraint("tenant_id", "partner_code", name="uq_partner_code_per_tenant"),
        CheckConstraint("sponsor_id IS NULL OR sponsor_id != id", name="ck_partner_no_self_sponsorship"),
        Index("ix_partners_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    partner_code: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    tier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("partner_tiers.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )
    # Direct sponsor; NULL for a root partner
    sponsor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("partners.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=PartnerStatus.ACTIVE.value,
        nullable=False,
        comment=enum_comment(PartnerStatus)
    )
    enrollment_date: Mapped[date] = mapped_column(
        Date,
        default=lambda: datetime.now(timezone.utc).date(),
        nullable=False
    )

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

    tier: Mapped[Optional["PartnerTier"]] = relationship(
        "PartnerTier",
        back_populates="partners"
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def __repr__(self) -> str:
        return f"<Partner(code={self.partner_code}, tenant={self.tenant_id})>"


class PartnerRelation(Base):
    """
    Closure-table edge: ``parent_partner_id`` is an ancestor of
    ``child_partner_id`` at distance ``depth``.
    """
    __tablename__ = "partner_relations"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "parent_partner_id", "child_partner_id", "relationship_type",
            name="uq_partner_relationship_per_tenant"
        ),
        CheckConstraint("parent_partner_id != child_partner_id", name="ck_partner_relation_no_self"),
        CheckConstraint("depth > 0", name="ck_partner_relation_depth_positive"),
        Index("ix_partner_relations_upline", "tenant_id", "child_partner_id", "depth"),
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
    parent_partner_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("partners.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    child_partner_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("partners.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    depth: Mapped[int] = mapped_column(Integer, nullable=False)
    path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Materialized ancestry from root to child, '/'-separated partner ids"
    )
    relationship_type: Mapped[str] = mapped_column(
        String(20),
        default=RelationType.SPONSORSHIP.value,
        nullable=False,
        comment=enum_comment(RelationType)
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=RelationStatus.ACTIVE.value,
        nullable=False,
        comment=enum_comment(RelationStatus)
    )

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
        return f"<PartnerRelation(parent={self.parent_partner_id}, child={self.child_partner_id}, depth={self.depth})>"
