"""
Commission Settlement Service.

Entry point for the order-completion workflow. Settles commissions for
one transaction exactly once, however many times and however concurrently
it is called with the same (tenant_id, transaction_id).

Flow:
    START -> CACHE_CHECK -> LOCK_WAIT -> RECOMPUTE_OR_SKIP -> GUARD
          -> PERSIST -> CACHE_WRITE -> DONE
    (FAILED reachable from every state)

Three duplicate-prevention layers are always active together:
1. Idempotency cache: a settled transaction returns its cached summary
2. Lease lock per (tenant_id, transaction_id): one settler at a time
3. Ledger unique constraint: insert-or-skip, holds even with a cold cache

The reported ``total_commissions_calculated`` is read back from the ledger
after commit, so racing callers all report the same total.

USAGE:
    from commission_engine.services.settlement_service import process_commission_settlement

    result = await process_commission_settlement({
        "tenant_id": tenant_id,
        "transaction_id": "ORD-1001",
        "source_partner_id": partner_id,
        "amount": "1000.00",
        "currency": "USD",
    })
    if not result.success and result.error.retryable:
        ...retry later with the same transaction_id...
"""
import time
import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commission_engine.config import settings
from commission_engine.core.currency import approx_equal
from commission_engine.core.exceptions import (
    SettlementError,
    SettlementValidationError,
    SettlementBusyError,
    StoreUnavailableError,
    PersistenceFailureError,
)
from commission_engine.core.tenant_guard import TenantIsolationGuard, violation_from_db_error
from commission_engine.database import get_db_session
from commission_engine.schemas.settlement import (
    SettlementTransaction,
    SettlementResult,
    SettlementErrorDetail,
    CommissionRecordSchema,
)
from commission_engine.services.cache_service import CacheService, get_cache
from commission_engine.services.commission_calculator import (
    CalculationResult,
    CommissionCalculator,
    validate_transaction,
)
from commission_engine.services.ledger_store import CommissionLedger
from commission_engine.services.lock_service import (
    LockService,
    LockAcquisitionTimeout,
    LockBackendError,
    get_lock_service,
)
from commission_engine.services.partner_directory import PartnerDirectory

logger = logging.getLogger(__name__)


class SettlementState(str, Enum):
    START = "START"
    CACHE_CHECK = "CACHE_CHECK"
    LOCK_WAIT = "LOCK_WAIT"
    RECOMPUTE_OR_SKIP = "RECOMPUTE_OR_SKIP"
    GUARD = "GUARD"
    PERSIST = "PERSIST"
    CACHE_WRITE = "CACHE_WRITE"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class SettlementAudit:
    """One audit line per invocation."""
    tenant_id: Optional[str] = None
    transaction_id: Optional[str] = None
    state: str = SettlementState.START.value
    failed_in: Optional[str] = None
    cache_hit: bool = False
    upline_size: int = 0
    candidates: int = 0
    inserted: int = 0
    existing: int = 0
    total_minor: int = 0
    truncated: bool = False
    elapsed_ms: float = 0.0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def advance(self, state: SettlementState) -> None:
        self.state = state.value


class CommissionSettlementService:
    """Idempotent, tenant-isolated commission settlement."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        cache: Optional[CacheService] = None,
        locks: Optional[LockService] = None,
        max_depth: Optional[int] = None,
        engine_version: Optional[str] = None,
        cache_ttl: Optional[int] = None,
        lock_ttl: Optional[float] = None,
        lock_wait: Optional[float] = None,
    ):
        if session_factory is None:
            from commission_engine.database import async_session_factory
            session_factory = async_session_factory
        self.session_factory = session_factory
        self.cache = cache or get_cache()
        self.locks = locks or get_lock_service()
        self.max_depth = max_depth if max_depth is not None else settings.COMMISSION_MAX_UPLINE_DEPTH
        self.engine_version = engine_version if engine_version is not None else settings.COMMISSION_ENGINE_VERSION
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.SETTLEMENT_CACHE_TTL
        self.lock_ttl = lock_ttl if lock_ttl is not None else settings.SETTLEMENT_LOCK_TTL
        self.lock_wait = lock_wait if lock_wait is not None else settings.SETTLEMENT_LOCK_WAIT

    @staticmethod
    def lock_key(transaction: SettlementTransaction) -> str:
        return f"settlement:{transaction.tenant_id}:{transaction.transaction_id}"

    # ==================== Entry point ====================

    async def process_commission_settlement(
        self,
        transaction: Union[SettlementTransaction, Dict[str, Any]]
    ) -> SettlementResult:
        """
        Settle commissions for one transaction.

        Returns a failed SettlementResult (never raises) for every
        SettlementError; anything else is a bug and propagates.
        """
        started = time.perf_counter()
        audit = SettlementAudit()
        txn: Optional[SettlementTransaction] = None

        try:
            txn = self._coerce(transaction)
            audit.tenant_id = str(txn.tenant_id)
            audit.transaction_id = txn.transaction_id
            self._check_boundary(txn)
            validate_transaction(txn)

            audit.advance(SettlementState.CACHE_CHECK)
            cached = await self._get_cached(txn)
            if cached is not None:
                audit.cache_hit = True
                self._summarize(audit, cached)
                audit.advance(SettlementState.DONE)
                return self._replayed(cached)

            audit.advance(SettlementState.LOCK_WAIT)
            async with self.locks.hold(self.lock_key(txn), ttl=self.lock_ttl, wait=self.lock_wait):
                audit.advance(SettlementState.RECOMPUTE_OR_SKIP)
                # Another caller may have finished while we waited
                cached = await self._get_cached(txn)
                if cached is not None:
                    audit.cache_hit = True
                    self._summarize(audit, cached)
                    audit.advance(SettlementState.DONE)
                    return self._replayed(cached)

                result = await self._settle(txn, audit)

                # cache_ttl 0 turns the cache off; the ledger still deduplicates
                if self.cache_ttl > 0:
                    audit.advance(SettlementState.CACHE_WRITE)
                    stored = await self.cache.set_idempotent(
                        txn.tenant_id,
                        txn.transaction_id,
                        result.model_dump(mode="json"),
                        ttl=self.cache_ttl,
                    )
                    if not stored:
                        logger.warning(
                            f"Settlement of {txn.transaction_id} not cached; ledger constraint still applies"
                        )

            audit.advance(SettlementState.DONE)
            return result

        except LockAcquisitionTimeout as e:
            return self._fail(audit, txn, SettlementBusyError(
                f"Settlement of transaction {txn.transaction_id} is in progress elsewhere "
                f"(waited {e.waited:.2f}s)"
            ))
        except LockBackendError as e:
            return self._fail(audit, txn, StoreUnavailableError(f"Lock backend unavailable: {e}"))
        except OperationalError as e:
            return self._fail(audit, txn, StoreUnavailableError(
                f"Ledger store unavailable: {e.orig if e.orig is not None else e}"
            ))
        except SQLAlchemyError as e:
            violation = violation_from_db_error(e)
            if violation is not None:
                return self._fail(audit, txn, violation)
            return self._fail(audit, txn, PersistenceFailureError(
                f"Commission batch rolled back: {e.__class__.__name__}: {e}"
            ))
        except SettlementError as e:
            return self._fail(audit, txn, e)
        finally:
            audit.elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.info("Commission settlement audit: %s", asdict(audit))

    # ==================== Steps ====================

    def _coerce(self, transaction) -> SettlementTransaction:
        if isinstance(transaction, SettlementTransaction):
            return transaction
        try:
            return SettlementTransaction.model_validate(transaction)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise SettlementValidationError(f"Invalid settlement transaction: {problems}")

    def _check_boundary(self, txn: SettlementTransaction) -> None:
        """Sanity-check an upstream-reported total against the amount."""
        if txn.reported_total is None:
            return
        if not approx_equal(txn.amount, txn.reported_total, settings.BOUNDARY_TOTAL_TOLERANCE):
            raise SettlementValidationError(
                f"Transaction amount {txn.amount} does not match reported total {txn.reported_total}"
            )

    async def _get_cached(self, txn: SettlementTransaction) -> Optional[SettlementResult]:
        payload = await self.cache.get_idempotent(txn.tenant_id, txn.transaction_id)
        if payload is None:
            return None
        try:
            return SettlementResult.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cached settlement for {txn.transaction_id}: {e}")
            await self.cache.invalidate_settlement(txn.tenant_id, txn.transaction_id)
            return None

    async def _calculate(self, txn: SettlementTransaction, audit: SettlementAudit) -> CalculationResult:
        async with self.session_factory() as session:
            directory = PartnerDirectory(session)
            calculator = CommissionCalculator(
                directory,
                max_depth=self.max_depth,
                engine_version=self.engine_version,
            )
            calculation = await calculator.calculate(txn)
            audit.upline_size = calculation.upline_size
            audit.candidates = len(calculation.candidates)
            audit.truncated = calculation.truncated

            audit.advance(SettlementState.GUARD)
            await TenantIsolationGuard(directory).verify(txn.tenant_id, calculation.candidates)
        return calculation

    async def _settle(self, txn: SettlementTransaction, audit: SettlementAudit) -> SettlementResult:
        calculation = await self._calculate(txn, audit)

        audit.advance(SettlementState.PERSIST)
        async with get_db_session(self.session_factory) as session:
            inserted = await CommissionLedger(session).insert_if_absent(calculation.candidates)

        async with self.session_factory() as session:
            rows = await CommissionLedger(session).list_for_transaction(txn.tenant_id, txn.transaction_id)

        records = [CommissionRecordSchema.model_validate(row) for row in rows]
        audit.inserted = len(inserted)
        audit.existing = len(records) - len(inserted)
        audit.total_minor = sum(r.amount for r in records)

        if inserted:
            logger.info(
                f"Recorded {len(inserted)} commission(s) for transaction {txn.transaction_id} "
                f"(tenant {txn.tenant_id})"
            )

        return SettlementResult(
            success=True,
            tenant_id=txn.tenant_id,
            transaction_id=txn.transaction_id,
            total_commissions_calculated=len(records),
            total_commission_amount=audit.total_minor,
            currency=txn.currency,
            inserted_count=len(inserted),
            commission_records=records,
            truncated_upline=calculation.truncated,
        )

    # ==================== Helpers ====================

    @staticmethod
    def _replayed(cached: SettlementResult) -> SettlementResult:
        # Ledger-facing fields are returned as stored; this call wrote nothing
        return cached.model_copy(update={"inserted_count": 0})

    @staticmethod
    def _summarize(audit: SettlementAudit, result: SettlementResult) -> None:
        audit.existing = result.total_commissions_calculated
        audit.total_minor = result.total_commission_amount
        audit.truncated = result.truncated_upline

    def _fail(
        self,
        audit: SettlementAudit,
        txn: Optional[SettlementTransaction],
        error: SettlementError
    ) -> SettlementResult:
        audit.failed_in = audit.state
        audit.advance(SettlementState.FAILED)
        audit.errors.append(error.to_error_detail())

        if isinstance(error, SettlementValidationError):
            logger.warning(f"Settlement rejected: {error.message}")
        elif error.retryable:
            logger.warning(f"Settlement failed ({error.kind}, retryable): {error.message}")
        else:
            logger.error(f"Settlement failed ({error.kind}): {error.message}")

        return SettlementResult(
            success=False,
            tenant_id=txn.tenant_id if txn else None,
            transaction_id=txn.transaction_id if txn else None,
            currency=txn.currency if txn else None,
            error=SettlementErrorDetail(**error.to_error_detail()),
        )


# Default service wired to the module-level engine, cache and locks
_settlement_service: Optional[CommissionSettlementService] = None


def get_settlement_service() -> CommissionSettlementService:
    global _settlement_service
    if _settlement_service is None:
        _settlement_service = CommissionSettlementService()
    return _settlement_service


async def process_commission_settlement(
    transaction: Union[SettlementTransaction, Dict[str, Any]]
) -> SettlementResult:
    """Settle one transaction with the default service."""
    return await get_settlement_service().process_commission_settlement(transaction)
