from __future__ import annotations

import os
import uuid
from decimal import Decimal
from types import SimpleNamespace
from typing import Dict, List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from sqlalchemy import update

from commission_engine.database import build_engine, build_session_factory, init_db
from commission_engine.models import (
    Partner,
    PartnerRelation,
    PartnerTier,
    RelationStatus,
    Tenant,
)
from commission_engine.services.cache_service import CacheService, InMemoryCache
from commission_engine.services.lock_service import InMemoryLockBackend, LockService
from commission_engine.services.settlement_service import CommissionSettlementService


class ProgramBuilder:
    """Creates tenants, tiers and partners, maintaining closure-table rows."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._ancestors: Dict[uuid.UUID, List[uuid.UUID]] = {}
        self._tier_order: Dict[uuid.UUID, int] = {}

    async def _add(self, *objects) -> None:
        async with self.session_factory() as session:
            session.add_all(objects)
            await session.commit()

    async def tenant(self, code: str = "ACME") -> Tenant:
        tenant = Tenant(
            id=uuid.uuid4(),
            name=f"{code} Ltd",
            code=code,
            subdomain=code.lower(),
            settings={},
        )
        await self._add(tenant)
        return tenant

    async def tier(
        self,
        tenant: Tenant,
        code: str,
        rate: str,
        max_depth: int = 1,
        name: Optional[str] = None,
    ) -> PartnerTier:
        order = self._tier_order.get(tenant.id, 0) + 1
        self._tier_order[tenant.id] = order
        tier = PartnerTier(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            level_code=code,
            level_name=name or code.title(),
            level_order=order,
            default_commission_rate=Decimal(rate),
            max_referral_depth=max_depth,
        )
        await self._add(tier)
        return tier

    async def partner(
        self,
        tenant: Tenant,
        code: str,
        tier: Optional[PartnerTier] = None,
        sponsor: Optional[Partner] = None,
        status: str = "ACTIVE",
    ) -> Partner:
        """Add a partner; relation rows are written in the partner's tenant."""
        partner = Partner(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            partner_code=code,
            tier_id=tier.id if tier else None,
            sponsor_id=sponsor.id if sponsor else None,
            status=status,
        )
        ancestors: List[uuid.UUID] = []
        if sponsor is not None:
            ancestors = [sponsor.id] + self._ancestors.get(sponsor.id, [])
        self._ancestors[partner.id] = ancestors

        path = "/".join(str(pid) for pid in list(reversed(ancestors)) + [partner.id])
        relations = [
            PartnerRelation(
                id=uuid.uuid4(),
                tenant_id=tenant.id,
                parent_partner_id=ancestor_id,
                child_partner_id=partner.id,
                depth=depth,
                path=path,
            )
            for depth, ancestor_id in enumerate(ancestors, start=1)
        ]
        await self._add(partner, *relations)
        return partner

    async def relation(
        self,
        tenant: Tenant,
        parent_id: uuid.UUID,
        child: Partner,
        depth: int,
    ) -> PartnerRelation:
        relation = PartnerRelation(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            parent_partner_id=parent_id,
            child_partner_id=child.id,
            depth=depth,
            path=f"{parent_id}/{child.id}",
        )
        await self._add(relation)
        return relation

    async def sever(self, child: Partner, depth: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(PartnerRelation)
                .where(
                    PartnerRelation.child_partner_id == child.id,
                    PartnerRelation.depth == depth,
                )
                .values(status=RelationStatus.SEVERED.value)
            )
            await session.commit()

    async def set_rate(self, tier: PartnerTier, rate: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(PartnerTier)
                .where(PartnerTier.id == tier.id)
                .values(default_commission_rate=Decimal(rate))
            )
            await session.commit()


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/commissions.db")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def builder(session_factory) -> ProgramBuilder:
    return ProgramBuilder(session_factory)


@pytest.fixture
def cache() -> CacheService:
    return CacheService(InMemoryCache(), namespace="test")


@pytest.fixture
def locks() -> LockService:
    return LockService(InMemoryLockBackend(), namespace="test:lock")


@pytest.fixture
def service(session_factory, cache, locks) -> CommissionSettlementService:
    return CommissionSettlementService(
        session_factory=session_factory,
        cache=cache,
        locks=locks,
        lock_wait=5,
    )


@pytest.fixture
async def scenario_a(builder) -> SimpleNamespace:
    """
    Tenant ACME: P2 (GOLD, 5%, depth 2) <- P1 (SILVER, 10%, depth 1) <- P0.
    """
    tenant = await builder.tenant("ACME")
    gold = await builder.tier(tenant, "GOLD", "0.05", max_depth=2, name="Gold")
    silver = await builder.tier(tenant, "SILVER", "0.10", max_depth=1, name="Silver")
    bronze = await builder.tier(tenant, "BRONZE", "0.02", max_depth=1, name="Bronze")
    p2 = await builder.partner(tenant, "P2", tier=gold)
    p1 = await builder.partner(tenant, "P1", tier=silver, sponsor=p2)
    p0 = await builder.partner(tenant, "P0", tier=bronze, sponsor=p1)
    return SimpleNamespace(
        tenant=tenant, gold=gold, silver=silver, bronze=bronze, p0=p0, p1=p1, p2=p2,
    )


def settlement_payload(program: SimpleNamespace, transaction_id: str = "ORD-1001", amount: str = "1000.00", **overrides) -> dict:
    payload = {
        "tenant_id": program.tenant.id,
        "transaction_id": transaction_id,
        "source_partner_id": program.p0.id,
        "amount": amount,
        "currency": "USD",
        "transaction_type": "payment",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_payload():
    return settlement_payload
