"""
Tenant Isolation Guard.

Last check before any commission row is written: every beneficiary,
source partner and beneficiary tier referenced by a candidate must belong
to the transaction's tenant. Upstream lookups are already tenant-scoped;
this guard re-reads ownership without scoping so a bug there cannot
leak value across tenants.

One violation aborts the whole batch. Violations are logged at CRITICAL
on the ``commission_engine.security`` logger and are never retried.

On PostgreSQL the ``partner_commissions_tenant_check`` trigger enforces
the same rule a second time at the database level. Its rejections carry
SQLSTATE P0T01 and are reported as the same non-retryable violation.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from commission_engine.core.exceptions import CrossTenantViolationError

security_logger = logging.getLogger("commission_engine.security")

# SQLSTATE raised by the partner_commissions_tenant_check trigger
TENANT_VIOLATION_SQLSTATE = "P0T01"


class TenantIsolationGuard:
    """Verifies candidate records against authoritative tenant ownership."""

    def __init__(self, directory):
        # PartnerDirectory; untyped to keep core free of service imports
        self.directory = directory

    async def verify(self, tenant_id, candidates: Sequence) -> None:
        """
        Raises:
            CrossTenantViolationError: any reference is owned by another
                tenant or cannot be resolved at all
        """
        if not candidates:
            return

        partner_ids = set()
        tier_ids = set()
        for c in candidates:
            partner_ids.add(c.beneficiary_partner_id)
            partner_ids.add(c.source_partner_id)
            tier_ids.add(c.beneficiary_tier_id)

        owners = await self.directory.get_reference_owners(partner_ids, tier_ids)

        violations: List[Dict[str, Any]] = []
        for c in candidates:
            if c.tenant_id != tenant_id:
                violations.append(self._violation(c, "record", c.tenant_id, tenant_id))
            checks = (
                ("beneficiary_partner", c.beneficiary_partner_id, owners.partners),
                ("source_partner", c.source_partner_id, owners.partners),
                ("beneficiary_tier", c.beneficiary_tier_id, owners.tiers),
            )
            for reference, ref_id, owner_map in checks:
                owner = owner_map.get(ref_id)
                if owner != tenant_id:
                    violations.append(self._violation(c, reference, owner, tenant_id, ref_id))

        if violations:
            for v in violations:
                security_logger.critical(f"SECURITY VIOLATION: cross-tenant commission reference {v}")
            raise CrossTenantViolationError(
                f"{len(violations)} cross-tenant reference(s) in settlement of "
                f"transaction {candidates[0].transaction_id} for tenant {tenant_id}",
                violations,
            )

    @staticmethod
    def _violation(candidate, reference: str, found_tenant, expected_tenant, ref_id=None) -> Dict[str, Any]:
        return {
            "transaction_id": candidate.transaction_id,
            "levels_from_source": candidate.levels_from_source,
            "reference": reference,
            "reference_id": str(ref_id) if ref_id is not None else None,
            "expected_tenant_id": str(expected_tenant),
            "found_tenant_id": str(found_tenant) if found_tenant is not None else None,
        }


def violation_from_db_error(error: Exception) -> Optional[CrossTenantViolationError]:
    """
    Translate a rejection by the database tenant trigger into a violation.

    Returns None for any other database error.
    """
    orig = getattr(error, "orig", None)
    if getattr(orig, "sqlstate", None) != TENANT_VIOLATION_SQLSTATE:
        return None

    lines = str(orig).strip().splitlines()
    detail = lines[0] if lines else TENANT_VIOLATION_SQLSTATE
    security_logger.critical(f"SECURITY VIOLATION: rejected by database tenant check: {detail}")
    return CrossTenantViolationError(
        f"Database tenant check rejected the commission batch: {detail}",
        [{"reference": "database_trigger", "sqlstate": TENANT_VIOLATION_SQLSTATE, "detail": detail}],
    )
