"""
Commission Rate Resolver.

Decides, for one beneficiary tier at one upline depth, whether the
beneficiary earns anything and at what rate. Pure logic, no I/O.

Rules:
1. levels_from_source > tier.max_referral_depth  ->  not eligible (skip)
2. otherwise the tier's default_commission_rate applies
3. a rate outside [0, 1] rejects the whole transaction
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from commission_engine.core.exceptions import InvalidCommissionRateError
from commission_engine.services.partner_directory import TierSnapshot

_ZERO = Decimal("0")
_ONE = Decimal("1")


@dataclass(frozen=True)
class RateDecision:
    eligible: bool
    percentage: Decimal = _ZERO
    reason: Optional[str] = None


class CommissionRateResolver:
    """Tier-rate resolution. Per-transaction overrides are the caller's job."""

    def resolve(self, tier: Optional[TierSnapshot], levels_from_source: int) -> RateDecision:
        if tier is None:
            return RateDecision(eligible=False, reason="NO_TIER")

        if levels_from_source > tier.max_referral_depth:
            return RateDecision(eligible=False, reason="BEYOND_MAX_REFERRAL_DEPTH")

        try:
            rate = Decimal(tier.default_commission_rate)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidCommissionRateError(
                f"Tier {tier.level_code} has a non-numeric commission rate"
            )
        if not rate.is_finite() or rate < _ZERO or rate > _ONE:
            raise InvalidCommissionRateError(
                f"Tier {tier.level_code} commission rate {rate} is outside [0, 1]",
                details={"tier_id": str(tier.id), "rate": str(rate)},
            )

        return RateDecision(eligible=True, percentage=rate)
