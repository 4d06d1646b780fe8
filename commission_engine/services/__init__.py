from commission_engine.services.settlement_service import (
    CommissionSettlementService,
    SettlementState,
    get_settlement_service,
    process_commission_settlement,
)
from commission_engine.services.commission_query_service import CommissionQueryService
from commission_engine.services.payout_service import PayoutService
from commission_engine.services.document_sequence_service import DocumentSequenceService
from commission_engine.services.partner_directory import PartnerDirectory
from commission_engine.services.ledger_store import CommissionLedger

__all__ = [
    "CommissionSettlementService",
    "SettlementState",
    "get_settlement_service",
    "process_commission_settlement",
    "CommissionQueryService",
    "PayoutService",
    "DocumentSequenceService",
    "PartnerDirectory",
    "CommissionLedger",
]
