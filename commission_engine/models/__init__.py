# Models module - importing registers every table on Base.metadata
from commission_engine.models.tenant import Tenant
from commission_engine.models.partner import (
    PartnerTier,
    Partner,
    PartnerRelation,
    TierStatus,
    PartnerStatus,
    RelationType,
    RelationStatus,
)
from commission_engine.models.commission import (
    PartnerCommission,
    PayoutRequest,
    TransactionType,
    CalculationStatus,
    PayoutStatus,
    PayoutRequestStatus,
)
from commission_engine.models.document_sequence import DocumentSequence

__all__ = [
    "Tenant",
    "PartnerTier",
    "Partner",
    "PartnerRelation",
    "TierStatus",
    "PartnerStatus",
    "RelationType",
    "RelationStatus",
    "PartnerCommission",
    "PayoutRequest",
    "TransactionType",
    "CalculationStatus",
    "PayoutStatus",
    "PayoutRequestStatus",
    "DocumentSequence",
]
