"""
Commission Calculator.

Turns one settled transaction into the ordered list of candidate
commission records for its upline:

1. amount -> integer minor units, once
2. upline of the source partner, capped at COMMISSION_MAX_UPLINE_DEPTH
3. per ancestor: rate resolution (ineligible -> skip)
4. commission = round_half_up(amount_minor * rate); zero -> skip
5. candidate record with a snapshot of the beneficiary tier name

Nothing here writes to the database.
"""
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from commission_engine.config import settings
from commission_engine.core.currency import MAX_MINOR_UNITS, to_minor_units, apply_rate
from commission_engine.core.exceptions import (
    SettlementValidationError,
    SourcePartnerNotFoundError,
)
from commission_engine.models.commission import CalculationStatus, PayoutStatus
from commission_engine.schemas.settlement import SettlementTransaction
from commission_engine.services.partner_directory import PartnerDirectory
from commission_engine.services.rate_resolver import CommissionRateResolver

logger = logging.getLogger(__name__)


@dataclass
class CommissionCandidate:
    """A commission record that has been calculated but not yet persisted."""
    tenant_id: uuid.UUID
    transaction_id: str
    transaction_amount: int
    currency: str
    transaction_type: str
    transaction_date: datetime
    beneficiary_partner_id: uuid.UUID
    beneficiary_partner_code: str
    beneficiary_tier_id: uuid.UUID
    beneficiary_tier_name: str
    source_partner_id: uuid.UUID
    source_partner_code: str
    levels_from_source: int
    percentage: Decimal
    amount: int
    engine_version: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_row(self) -> Dict[str, Any]:
        """Column values for ``partner_commissions``."""
        return {
            "id": uuid.uuid4(),
            "tenant_id": self.tenant_id,
            "transaction_id": self.transaction_id,
            "transaction_amount": self.transaction_amount,
            "currency": self.currency,
            "transaction_type": self.transaction_type,
            "transaction_date": self.transaction_date,
            "beneficiary_partner_id": self.beneficiary_partner_id,
            "beneficiary_partner_code": self.beneficiary_partner_code,
            "beneficiary_tier_id": self.beneficiary_tier_id,
            "beneficiary_tier_name": self.beneficiary_tier_name,
            "source_partner_id": self.source_partner_id,
            "source_partner_code": self.source_partner_code,
            "commission_level": self.levels_from_source,
            "levels_from_source": self.levels_from_source,
            "commission_percentage": self.percentage,
            "commission_amount": self.amount,
            "calculation_status": CalculationStatus.CALCULATED.value,
            "payout_status": PayoutStatus.PENDING.value,
            "engine_version": self.engine_version,
            "extra_data": dict(self.metadata),
        }


@dataclass
class CalculationResult:
    amount_minor: int
    candidates: List[CommissionCandidate] = field(default_factory=list)
    truncated: bool = False
    upline_size: int = 0
    skipped: int = 0

    @property
    def total_amount(self) -> int:
        return sum(c.amount for c in self.candidates)


def validate_transaction(transaction: SettlementTransaction) -> int:
    """
    Reject malformed input before any lookup. Returns the amount in minor units.

    Raises:
        SettlementValidationError: non-positive or out-of-range amount, missing source
            partner, unknown currency
    """
    if transaction.source_partner_id is None:
        raise SettlementValidationError("source_partner_id is required")
    if transaction.amount <= 0:
        raise SettlementValidationError(
            f"Transaction amount must be positive, got {transaction.amount}"
        )
    amount_minor = to_minor_units(transaction.amount, transaction.currency)
    if amount_minor <= 0:
        raise SettlementValidationError(
            f"Transaction amount {transaction.amount} {transaction.currency} rounds to zero minor units"
        )
    if amount_minor > MAX_MINOR_UNITS:
        raise SettlementValidationError(
            f"Transaction amount {transaction.amount} {transaction.currency} exceeds the ledger range"
        )
    return amount_minor


class CommissionCalculator:
    """Builds candidate commission records for one transaction."""

    def __init__(
        self,
        directory: PartnerDirectory,
        resolver: Optional[CommissionRateResolver] = None,
        max_depth: Optional[int] = None,
        engine_version: Optional[str] = None,
    ):
        self.directory = directory
        self.resolver = resolver or CommissionRateResolver()
        self.max_depth = max_depth if max_depth is not None else settings.COMMISSION_MAX_UPLINE_DEPTH
        self.engine_version = engine_version if engine_version is not None else settings.COMMISSION_ENGINE_VERSION

    async def calculate(self, transaction: SettlementTransaction) -> CalculationResult:
        amount_minor = validate_transaction(transaction)
        tenant_id = transaction.tenant_id

        source = await self.directory.get_partner(tenant_id, transaction.source_partner_id)
        if source is None:
            raise SourcePartnerNotFoundError(
                f"Source partner {transaction.source_partner_id} not found in tenant {tenant_id}"
            )

        upline = await self.directory.get_upline(tenant_id, source.id, self.max_depth)
        result = CalculationResult(
            amount_minor=amount_minor,
            truncated=upline.truncated,
            upline_size=len(upline),
        )

        for entry in upline.entries:
            decision = self.resolver.resolve(entry.tier, entry.depth)
            if not decision.eligible:
                logger.debug(
                    f"Skipping {entry.partner_code} at depth {entry.depth}: {decision.reason}"
                )
                result.skipped += 1
                continue

            commission_minor = apply_rate(amount_minor, decision.percentage)
            if commission_minor == 0:
                result.skipped += 1
                continue

            result.candidates.append(CommissionCandidate(
                tenant_id=tenant_id,
                transaction_id=transaction.transaction_id,
                transaction_amount=amount_minor,
                currency=transaction.currency,
                transaction_type=transaction.transaction_type,
                transaction_date=transaction.occurred_at,
                beneficiary_partner_id=entry.partner_id,
                beneficiary_partner_code=entry.partner_code,
                beneficiary_tier_id=entry.tier.id,
                beneficiary_tier_name=entry.tier.level_name,
                source_partner_id=source.id,
                source_partner_code=source.partner_code,
                levels_from_source=entry.depth,
                percentage=decision.percentage,
                amount=commission_minor,
                engine_version=self.engine_version,
                metadata=transaction.metadata,
            ))

        if result.truncated:
            logger.info(
                f"Upline of partner {source.partner_code} truncated at {result.upline_size} level(s) "
                f"for transaction {transaction.transaction_id}"
            )

        return result
