from __future__ import annotations

import asyncio
import logging
import random
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import InternalError, InvalidRequestError, OperationalError

from commission_engine.core.currency import apply_rate, to_minor_units
from commission_engine.core.tenant_guard import TENANT_VIOLATION_SQLSTATE
from commission_engine.models import PartnerTier
from commission_engine.schemas.settlement import SettlementTransaction
from commission_engine.services.cache_service import CacheService, InMemoryCache
from commission_engine.services.ledger_store import CommissionLedger
from commission_engine.services.lock_service import (
    InMemoryLockBackend,
    LockBackend,
    LockBackendError,
    LockService,
)
from commission_engine.services.settlement_service import CommissionSettlementService


async def ledger_rows(session_factory, tenant_id, transaction_id):
    async with session_factory() as session:
        return await CommissionLedger(session).list_for_transaction(tenant_id, transaction_id)


def fresh_service(session_factory, **kwargs) -> CommissionSettlementService:
    """A second worker: own cache, own lock backend, same ledger."""
    kwargs.setdefault("cache", CacheService(InMemoryCache(), namespace="test"))
    kwargs.setdefault("locks", LockService(InMemoryLockBackend(), namespace="test:lock"))
    return CommissionSettlementService(session_factory=session_factory, **kwargs)


# ==================== Core scenarios ====================


async def test_basic_two_level_settlement(service, scenario_a, make_payload) -> None:
    result = await service.process_commission_settlement(make_payload(scenario_a))

    assert result.success is True
    assert result.error is None
    assert result.tenant_id == scenario_a.tenant.id
    assert result.transaction_id == "ORD-1001"
    assert result.total_commissions_calculated == 2
    assert result.inserted_count == 2
    assert result.total_commission_amount == 15000
    assert result.currency == "USD"
    assert result.truncated_upline is False

    p1_record, p2_record = result.commission_records
    assert (p1_record.beneficiary_partner_id, p1_record.levels_from_source) == (scenario_a.p1.id, 1)
    assert p1_record.percentage == Decimal("0.10")
    assert p1_record.amount == 10000
    assert p1_record.beneficiary_tier_name == "Silver"
    assert (p2_record.beneficiary_partner_id, p2_record.levels_from_source) == (scenario_a.p2.id, 2)
    assert p2_record.percentage == Decimal("0.05")
    assert p2_record.amount == 5000
    assert p2_record.transaction_type == "PAYMENT"


async def test_concurrent_duplicates_write_once(service, session_factory, scenario_a, make_payload) -> None:
    payload = make_payload(scenario_a)

    results = await asyncio.gather(*(
        service.process_commission_settlement(payload) for _ in range(3)
    ))

    assert all(r.success for r in results)
    assert [r.total_commissions_calculated for r in results] == [2, 2, 2]
    assert sum(r.inserted_count for r in results) == 2
    assert len(await ledger_rows(session_factory, scenario_a.tenant.id, "ORD-1001")) == 2


async def test_cross_tenant_upline_is_rejected(service, session_factory, builder, cache, caplog) -> None:
    t1 = await builder.tenant("T1")
    t2 = await builder.tenant("T2")
    foreign_tier = await builder.tier(t2, "SILVER", "0.10", max_depth=1)
    p1 = await builder.partner(t2, "P1", tier=foreign_tier)
    # Corrupted data: a T1 partner whose sponsor lives in T2
    p0 = await builder.partner(t1, "P0", sponsor=p1)

    with caplog.at_level(logging.INFO):
        result = await service.process_commission_settlement({
            "tenant_id": t1.id,
            "transaction_id": "ORD-7",
            "source_partner_id": p0.id,
            "amount": "1000.00",
        })

    assert result.success is False
    assert result.error.kind == "CROSS_TENANT_VIOLATION"
    assert result.error.retryable is False
    assert await ledger_rows(session_factory, t1.id, "ORD-7") == []
    assert await cache.get_idempotent(t1.id, "ORD-7") is None

    security = [r for r in caplog.records if r.name == "commission_engine.security"]
    assert security and all(r.levelno == logging.CRITICAL for r in security)


async def test_zero_referral_depth_tier_earns_nothing(service, builder) -> None:
    tenant = await builder.tenant("ACME")
    gold = await builder.tier(tenant, "GOLD", "0.05", max_depth=2)
    blocked = await builder.tier(tenant, "BLOCKED", "0.10", max_depth=0)
    p2 = await builder.partner(tenant, "P2", tier=gold)
    p1 = await builder.partner(tenant, "P1", tier=blocked, sponsor=p2)
    p0 = await builder.partner(tenant, "P0", sponsor=p1)

    result = await service.process_commission_settlement({
        "tenant_id": tenant.id,
        "transaction_id": "ORD-2",
        "source_partner_id": p0.id,
        "amount": "1000.00",
    })

    assert result.success
    assert [(r.beneficiary_partner_code, r.levels_from_source) for r in result.commission_records] == [("P2", 2)]


async def test_root_partner_settles_with_no_commissions(service, scenario_a, make_payload) -> None:
    result = await service.process_commission_settlement(
        make_payload(scenario_a, source_partner_id=scenario_a.p2.id)
    )

    assert result.success
    assert result.total_commissions_calculated == 0
    assert result.commission_records == []


async def test_broken_upline_settles_prefix_and_flags_truncation(service, builder) -> None:
    tenant = await builder.tenant("GAP")
    tier = await builder.tier(tenant, "STD", "0.10", max_depth=5)
    root = await builder.partner(tenant, "ROOT", tier=tier)
    mid = await builder.partner(tenant, "MID", tier=tier, sponsor=root)
    leaf = await builder.partner(tenant, "LEAF", tier=tier, sponsor=mid)
    await builder.sever(leaf, depth=2)

    result = await service.process_commission_settlement({
        "tenant_id": tenant.id,
        "transaction_id": "ORD-3",
        "source_partner_id": leaf.id,
        "amount": "10.00",
    })

    assert result.success
    assert result.truncated_upline is True
    assert [r.beneficiary_partner_code for r in result.commission_records] == ["MID"]


# ==================== Idempotency layers ====================


async def test_repeat_call_returns_cached_result(service, builder, scenario_a, make_payload) -> None:
    first = await service.process_commission_settlement(make_payload(scenario_a))
    await builder.set_rate(scenario_a.silver, "0.50")

    second = await service.process_commission_settlement(make_payload(scenario_a))

    assert second.model_dump(mode="json", exclude={"inserted_count"}) == first.model_dump(
        mode="json", exclude={"inserted_count"}
    )
    assert first.inserted_count == 2
    assert second.inserted_count == 0
    assert second.commission_records[0].amount == 10000


async def test_replays_never_claim_the_winners_inserts(service, session_factory, scenario_a, make_payload) -> None:
    await service.process_commission_settlement(make_payload(scenario_a))

    replays = await asyncio.gather(*(
        service.process_commission_settlement(make_payload(scenario_a)) for _ in range(3)
    ))

    assert [r.inserted_count for r in replays] == [0, 0, 0]
    assert all(r.total_commissions_calculated == 2 for r in replays)
    assert len(await ledger_rows(session_factory, scenario_a.tenant.id, "ORD-1001")) == 2


async def test_zero_cache_ttl_disables_the_cache(session_factory, cache, scenario_a, make_payload) -> None:
    service = fresh_service(session_factory, cache=cache, cache_ttl=0)

    first = await service.process_commission_settlement(make_payload(scenario_a))
    second = await service.process_commission_settlement(make_payload(scenario_a))

    assert await cache.get_idempotent(scenario_a.tenant.id, "ORD-1001") is None
    assert first.inserted_count == 2
    assert second.success
    assert second.inserted_count == 0
    assert second.total_commissions_calculated == 2


async def test_cold_cache_is_backstopped_by_ledger(service, session_factory, builder, scenario_a, make_payload) -> None:
    await service.process_commission_settlement(make_payload(scenario_a))
    await builder.set_rate(scenario_a.silver, "0.50")

    result = await fresh_service(session_factory).process_commission_settlement(make_payload(scenario_a))

    assert result.success
    assert result.inserted_count == 0
    assert result.total_commissions_calculated == 2
    # Totals come from the ledger, not from the recalculation
    assert [r.amount for r in result.commission_records] == [10000, 5000]


async def test_same_transaction_id_in_two_tenants(service, builder, scenario_a, make_payload) -> None:
    other = await builder.tenant("OTHER")
    tier = await builder.tier(other, "STD", "0.20")
    sponsor = await builder.partner(other, "S", tier=tier)
    seller = await builder.partner(other, "X", sponsor=sponsor)

    first = await service.process_commission_settlement(make_payload(scenario_a))
    second = await service.process_commission_settlement({
        "tenant_id": other.id,
        "transaction_id": "ORD-1001",
        "source_partner_id": seller.id,
        "amount": "1000.00",
    })

    assert first.total_commissions_calculated == 2
    assert second.success
    assert second.inserted_count == 1
    assert second.commission_records[0].amount == 20000


async def test_unreadable_cache_entry_is_discarded(service, cache, scenario_a, make_payload) -> None:
    await cache.set_idempotent(scenario_a.tenant.id, "ORD-1001", {"garbage": True})

    result = await service.process_commission_settlement(make_payload(scenario_a))

    assert result.success
    assert result.inserted_count == 2


async def test_tier_name_is_snapshotted_in_ledger(service, session_factory, scenario_a, make_payload) -> None:
    await service.process_commission_settlement(make_payload(scenario_a))
    async with session_factory() as session:
        await session.execute(
            update(PartnerTier).where(PartnerTier.id == scenario_a.silver.id).values(level_name="Platinum")
        )
        await session.commit()

    rows = await ledger_rows(session_factory, scenario_a.tenant.id, "ORD-1001")

    assert rows[0].beneficiary_tier_name == "Silver"


# ==================== Failures ====================


async def test_lock_contention_is_retryable(session_factory, locks, scenario_a, make_payload) -> None:
    service = fresh_service(session_factory, locks=locks, lock_wait=0.1)
    txn = SettlementTransaction(**make_payload(scenario_a))

    async with locks.hold(service.lock_key(txn), ttl=5, wait=0):
        result = await service.process_commission_settlement(txn)

    assert result.success is False
    assert result.error.kind == "CONTENTION"
    assert result.error.retryable is True
    assert await ledger_rows(session_factory, scenario_a.tenant.id, "ORD-1001") == []


async def test_lock_backend_outage_is_transient(session_factory, scenario_a, make_payload) -> None:
    class DownBackend(LockBackend):
        async def acquire(self, key, token, ttl):
            raise LockBackendError("connection refused")

        async def release(self, key, token):
            raise LockBackendError("connection refused")

    service = fresh_service(session_factory, locks=LockService(DownBackend()))

    result = await service.process_commission_settlement(make_payload(scenario_a))

    assert result.error.kind == "TRANSIENT"
    assert result.error.retryable is True


async def test_store_outage_is_transient(service, monkeypatch, scenario_a, make_payload) -> None:
    async def unreachable(self, candidates):
        raise OperationalError("INSERT INTO partner_commissions", {}, Exception("server closed the connection"))

    monkeypatch.setattr(CommissionLedger, "insert_if_absent", unreachable)

    result = await service.process_commission_settlement(make_payload(scenario_a))

    assert result.error.kind == "TRANSIENT"
    assert result.error.retryable is True


async def test_database_tenant_rejection_is_a_violation(service, session_factory, monkeypatch, caplog, scenario_a, make_payload) -> None:
    class TenantCheckFailed(Exception):
        sqlstate = TENANT_VIOLATION_SQLSTATE

    async def rejected_by_trigger(self, candidates):
        raise InternalError(
            "INSERT INTO partner_commissions", {},
            TenantCheckFailed("beneficiary partner belongs to another tenant"),
        )

    monkeypatch.setattr(CommissionLedger, "insert_if_absent", rejected_by_trigger)

    with caplog.at_level(logging.INFO):
        result = await service.process_commission_settlement(make_payload(scenario_a))

    assert result.success is False
    assert result.error.kind == "CROSS_TENANT_VIOLATION"
    assert result.error.retryable is False
    assert await ledger_rows(session_factory, scenario_a.tenant.id, "ORD-1001") == []
    security = [r for r in caplog.records if r.name == "commission_engine.security"]
    assert security and security[0].levelno == logging.CRITICAL


async def test_other_database_errors_stay_persistence_failures(service, monkeypatch, scenario_a, make_payload) -> None:
    class CheckViolation(Exception):
        sqlstate = "23514"

    async def rejected(self, candidates):
        raise InternalError("INSERT INTO partner_commissions", {}, CheckViolation("check constraint"))

    monkeypatch.setattr(CommissionLedger, "insert_if_absent", rejected)

    result = await service.process_commission_settlement(make_payload(scenario_a))

    assert result.error.kind == "PERSISTENCE_FAILURE"
    assert result.error.retryable is True


async def test_failed_batch_is_rolled_back_in_full(service, session_factory, cache, monkeypatch, scenario_a, make_payload) -> None:
    original = CommissionLedger.insert_if_absent

    async def fail_after_first_row(self, candidates):
        await original(self, candidates[:1])
        raise InvalidRequestError("simulated failure after first row")

    monkeypatch.setattr(CommissionLedger, "insert_if_absent", fail_after_first_row)
    result = await service.process_commission_settlement(make_payload(scenario_a))

    assert result.success is False
    assert result.error.kind == "PERSISTENCE_FAILURE"
    assert result.error.retryable is True
    assert await ledger_rows(session_factory, scenario_a.tenant.id, "ORD-1001") == []
    assert await cache.get_idempotent(scenario_a.tenant.id, "ORD-1001") is None

    monkeypatch.undo()
    retried = await service.process_commission_settlement(make_payload(scenario_a))

    assert retried.success
    assert retried.inserted_count == 2


@pytest.mark.parametrize(
    "overrides",
    [
        {"tenant_id": None},
        {"transaction_id": "   "},
        {"amount": "-5.00"},
        {"amount": "0"},
        {"amount": "abc"},
        {"currency": "US"},
        {"transaction_type": "GIFT"},
        {"source_partner_id": None},
        {"reported_total": "999.00"},
    ],
)
async def test_invalid_input_is_rejected(service, scenario_a, make_payload, overrides) -> None:
    result = await service.process_commission_settlement(make_payload(scenario_a, **overrides))

    assert result.success is False
    assert result.error.kind == "VALIDATION"
    assert result.error.retryable is False
    assert result.commission_records == []


@pytest.mark.parametrize("amount", ["1e18", "92233720368547758.08", "1e40"])
async def test_amount_beyond_ledger_range_is_rejected(service, session_factory, scenario_a, make_payload, amount) -> None:
    result = await service.process_commission_settlement(make_payload(scenario_a, amount=amount))

    assert result.success is False
    assert result.error.kind == "VALIDATION"
    assert result.error.retryable is False
    assert await ledger_rows(session_factory, scenario_a.tenant.id, "ORD-1001") == []


async def test_beneficiary_tier_of_another_tenant_is_rejected(service, session_factory, builder, cache) -> None:
    acme = await builder.tenant("ACME")
    other = await builder.tenant("OTHER")
    gold = await builder.tier(acme, "GOLD", "0.05", max_depth=2)
    foreign_tier = await builder.tier(other, "SILVER", "0.10", max_depth=1)
    p2 = await builder.partner(acme, "P2", tier=gold)
    # Corrupted data: an ACME partner holding OTHER's tier
    p1 = await builder.partner(acme, "P1", tier=foreign_tier, sponsor=p2)
    p0 = await builder.partner(acme, "P0", sponsor=p1)

    result = await service.process_commission_settlement({
        "tenant_id": acme.id,
        "transaction_id": "ORD-8",
        "source_partner_id": p0.id,
        "amount": "1000.00",
    })

    assert result.success is False
    assert result.error.kind == "CROSS_TENANT_VIOLATION"
    assert result.error.retryable is False
    assert await ledger_rows(session_factory, acme.id, "ORD-8") == []
    assert await cache.get_idempotent(acme.id, "ORD-8") is None


async def test_unknown_source_partner_is_rejected(service, scenario_a, make_payload) -> None:
    result = await service.process_commission_settlement(
        make_payload(scenario_a, source_partner_id=scenario_a.gold.id)
    )

    assert result.error.kind == "VALIDATION"
    assert "not found" in result.error.message


async def test_reported_total_within_tolerance_is_accepted(service, scenario_a, make_payload) -> None:
    result = await service.process_commission_settlement(
        make_payload(scenario_a, reported_total="1000.01")
    )

    assert result.success


async def test_every_invocation_is_audited(service, scenario_a, make_payload, caplog) -> None:
    logger_name = "commission_engine.services.settlement_service"
    with caplog.at_level(logging.INFO, logger=logger_name):
        await service.process_commission_settlement(make_payload(scenario_a))
        await service.process_commission_settlement(make_payload(scenario_a, amount="-1"))

    audits = [r for r in caplog.records if r.getMessage().startswith("Commission settlement audit")]
    assert len(audits) == 2
    assert "'state': 'DONE'" in audits[0].getMessage()
    assert "'state': 'FAILED'" in audits[1].getMessage()


# ==================== Properties over random hierarchies ====================


async def build_random_chain(builder, rng, label):
    """Random single-line hierarchy; rates sum to at most 0.95."""
    tenant = await builder.tenant(label)
    length = rng.randint(1, 6)
    chain = []
    tiers = []
    sponsor = None
    for i in range(length + 1):
        tier = await builder.tier(
            tenant,
            f"L{i}",
            str(Decimal(rng.randint(0, 95 // length)) / 100),
            max_depth=rng.randint(0, 6),
        )
        sponsor = await builder.partner(tenant, f"P{i}", tier=tier, sponsor=sponsor)
        chain.append(sponsor)
        tiers.append(tier)
    return tenant, chain, tiers


@pytest.mark.parametrize("seed", range(4))
async def test_random_hierarchies_respect_depth_and_conservation(session_factory, builder, seed) -> None:
    rng = random.Random(seed)
    for n in range(3):
        tenant, chain, tiers = await build_random_chain(builder, rng, f"R{seed}X{n}")
        max_depth = rng.randint(1, 5)
        service = fresh_service(session_factory, max_depth=max_depth)
        amount = Decimal(rng.randint(10000, 10_000_000)) / 100
        amount_minor = to_minor_units(amount, "USD")
        source = chain[-1]

        result = await service.process_commission_settlement({
            "tenant_id": tenant.id,
            "transaction_id": f"RND-{seed}-{n}",
            "source_partner_id": source.id,
            "amount": str(amount),
        })

        expected = []
        for depth in range(1, min(max_depth, len(chain) - 1) + 1):
            tier = tiers[-1 - depth]
            if depth > tier.max_referral_depth:
                continue
            commission = apply_rate(amount_minor, tier.default_commission_rate)
            if commission:
                expected.append((chain[-1 - depth].id, depth, commission))

        assert result.success
        assert [
            (r.beneficiary_partner_id, r.levels_from_source, r.amount) for r in result.commission_records
        ] == expected
        assert result.total_commission_amount <= amount_minor
        assert all(r.tenant_id == tenant.id for r in result.commission_records)


@pytest.mark.parametrize("seed", range(3))
async def test_random_replays_are_idempotent(session_factory, builder, seed) -> None:
    rng = random.Random(100 + seed)
    tenant, chain, _ = await build_random_chain(builder, rng, f"IDEM{seed}")
    payload = {
        "tenant_id": tenant.id,
        "transaction_id": f"IDEM-{seed}",
        "source_partner_id": chain[-1].id,
        "amount": str(Decimal(rng.randint(10000, 1_000_000)) / 100),
    }
    workers = [fresh_service(session_factory) for _ in range(rng.randint(2, 4))]

    # Each worker has a cold cache and its own lock backend
    results = [await w.process_commission_settlement(payload) for w in workers]
    replay = await workers[0].process_commission_settlement(payload)

    ids = {tuple(r.id for r in res.commission_records) for res in results + [replay]}
    assert len(ids) == 1
    assert sum(r.inserted_count for r in results) == results[0].total_commissions_calculated
    assert len(await ledger_rows(session_factory, tenant.id, payload["transaction_id"])) == replay.total_commissions_calculated
