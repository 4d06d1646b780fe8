"""
Settlement error taxonomy.

Every failure the engine reports carries a stable ``kind`` and a
``retryable`` flag so the order-completion workflow knows whether to
resubmit the same transaction_id.

    VALIDATION              bad input, never retried
    CONTENTION              another worker holds the settlement lock, retry
    TRANSIENT               ledger/lock backend unreachable, retry
    CROSS_TENANT_VIOLATION  security failure, never retried, never auto-corrected
    PERSISTENCE_FAILURE     batch rolled back, retry
"""

from typing import Any, Dict, List, Optional


class SettlementError(Exception):
    """Base class for all settlement failures."""

    kind: str = "SETTLEMENT_ERROR"
    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_error_detail(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }


class SettlementValidationError(SettlementError):
    """Malformed transaction input; rejected before any lock or write."""

    kind = "VALIDATION"
    retryable = False


class SourcePartnerNotFoundError(SettlementValidationError):
    """The transacting partner does not exist in the transaction's tenant."""


class InvalidCommissionRateError(SettlementValidationError):
    """A tier resolved to a commission rate outside [0, 1]."""


class SettlementBusyError(SettlementError):
    """Could not acquire the settlement lock within the configured wait."""

    kind = "CONTENTION"
    retryable = True


class StoreUnavailableError(SettlementError):
    """The ledger, cache or lock backend could not be reached."""

    kind = "TRANSIENT"
    retryable = True


class PersistenceFailureError(SettlementError):
    """The ledger batch failed and was rolled back in full."""

    kind = "PERSISTENCE_FAILURE"
    retryable = True


class CrossTenantViolationError(SettlementError):
    """
    A candidate commission record references an entity of another tenant.

    Security-relevant: the whole batch is aborted and nothing is written.
    """

    kind = "CROSS_TENANT_VIOLATION"
    retryable = False

    def __init__(self, message: str, violations: List[Dict[str, Any]]):
        super().__init__(message, details={"violations": violations})
        self.violations = violations


class PayoutRequestError(ValueError):
    """Business-rule violation while creating a payout request."""
