from commission_engine.schemas.base import BaseResponseSchema
from commission_engine.schemas.settlement import (
    SettlementTransaction,
    CommissionRecordSchema,
    SettlementErrorDetail,
    SettlementResult,
)
from commission_engine.schemas.commission import (
    CommissionStats,
    CommissionReportSummary,
    CommissionReport,
    ReferralStats,
    PayoutRequestCreate,
    PayoutRequestResponse,
)

__all__ = [
    "BaseResponseSchema",
    "SettlementTransaction",
    "CommissionRecordSchema",
    "SettlementErrorDetail",
    "SettlementResult",
    "CommissionStats",
    "CommissionReportSummary",
    "CommissionReport",
    "ReferralStats",
    "PayoutRequestCreate",
    "PayoutRequestResponse",
]
