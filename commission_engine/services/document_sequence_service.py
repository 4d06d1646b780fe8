"""
Document Sequence Service for Atomic Number Generation

- Financial year based numbering (April-March by default)
- Continuous sequence within a financial year, one counter per tenant
- Atomic increment under a database row lock, never in-process state
- Format: {PREFIX}/{TENANT_CODE}/{FY}/{SEQUENCE}

USAGE:
    from commission_engine.services.document_sequence_service import DocumentSequenceService

    async def create_payout(db: AsyncSession, tenant_id):
        service = DocumentSequenceService(db)
        number = await service.get_next_number(tenant_id, "PAY")
        # Returns: PAY/ACME/25-26/00001

SUPPORTED DOCUMENT TYPES:
    PAY - Partner payout request
"""
import uuid
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.config import settings
from commission_engine.models.document_sequence import DocumentSequence
from commission_engine.models.tenant import Tenant

logger = logging.getLogger(__name__)


# Document type metadata
DOCUMENT_METADATA = {
    settings.PAYOUT_REQUEST_PREFIX: {"name": "Partner Payout Request", "padding": 5},
}


class DocumentSequenceService:
    """
    Generates per-tenant document numbers.

    Uses SELECT FOR UPDATE so two concurrent requests in the same tenant
    never receive the same number. The increment is flushed, not
    committed: the number is only consumed if the caller's transaction
    commits.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def _validate_type(self, document_type: str) -> str:
        doc_type = document_type.upper()
        if doc_type not in DOCUMENT_METADATA:
            valid_types = ", ".join(DOCUMENT_METADATA.keys())
            raise ValueError(f"Invalid document type '{doc_type}'. Valid types: {valid_types}")
        return doc_type

    def _current_financial_year(self) -> str:
        return DocumentSequence.get_financial_year(start_month=settings.FINANCIAL_YEAR_START_MONTH)

    async def _get_tenant_code(self, tenant_id: uuid.UUID) -> str:
        result = await self.db.execute(select(Tenant.code).where(Tenant.id == tenant_id))
        code = result.scalar_one_or_none()
        if code is None:
            raise ValueError(f"Tenant {tenant_id} not found")
        return code.upper()

    async def get_next_number(
        self,
        tenant_id: uuid.UUID,
        document_type: str,
        financial_year: Optional[str] = None
    ) -> str:
        """
        Get next document number with atomic increment.

        Returns:
            Formatted document number, e.g., PAY/ACME/25-26/00001

        Raises:
            ValueError: If document_type is invalid or the tenant does not exist
        """
        doc_type = self._validate_type(document_type)
        if not financial_year:
            financial_year = self._current_financial_year()

        sequence = await self._get_or_create_sequence(tenant_id, doc_type, financial_year)
        doc_number = sequence.get_next_number()
        await self.db.flush()

        logger.debug(f"Issued {doc_number} for tenant {tenant_id}")
        return doc_number

    async def preview_next_number(
        self,
        tenant_id: uuid.UUID,
        document_type: str,
        financial_year: Optional[str] = None
    ) -> str:
        """What the next number would be, without incrementing."""
        doc_type = self._validate_type(document_type)
        if not financial_year:
            financial_year = self._current_financial_year()

        sequence = await self._find_sequence(tenant_id, doc_type, financial_year)
        if sequence:
            return sequence.preview_next_number()

        # No sequence exists yet - would be first number
        tenant_code = await self._get_tenant_code(tenant_id)
        seq = "1".zfill(DOCUMENT_METADATA[doc_type]["padding"])
        return f"{doc_type}/{tenant_code}/{financial_year}/{seq}"

    async def get_current_number(
        self,
        tenant_id: uuid.UUID,
        document_type: str,
        financial_year: Optional[str] = None
    ) -> int:
        """The last used sequence number (0 if none issued yet)."""
        doc_type = document_type.upper()
        if not financial_year:
            financial_year = self._current_financial_year()

        result = await self.db.execute(
            select(DocumentSequence.current_number).where(
                DocumentSequence.tenant_id == tenant_id,
                DocumentSequence.document_type == doc_type,
                DocumentSequence.financial_year == financial_year,
            )
        )
        return result.scalar_one_or_none() or 0

    async def _find_sequence(
        self,
        tenant_id: uuid.UUID,
        document_type: str,
        financial_year: str,
        for_update: bool = False
    ) -> Optional[DocumentSequence]:
        stmt = select(DocumentSequence).where(
            DocumentSequence.tenant_id == tenant_id,
            DocumentSequence.document_type == document_type,
            DocumentSequence.financial_year == financial_year,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_create_sequence(
        self,
        tenant_id: uuid.UUID,
        document_type: str,
        financial_year: str
    ) -> DocumentSequence:
        """Existing sequence row under lock, or a new one."""
        sequence = await self._find_sequence(tenant_id, document_type, financial_year, for_update=True)
        if sequence:
            return sequence

        tenant_code = await self._get_tenant_code(tenant_id)
        sequence = DocumentSequence(
            tenant_id=tenant_id,
            document_type=document_type,
            tenant_code=tenant_code,
            financial_year=financial_year,
            current_number=0,
            padding_length=DOCUMENT_METADATA[document_type]["padding"],
            separator="/",
        )
        self.db.add(sequence)
        await self.db.flush()

        # Re-fetch with lock to ensure atomicity
        result = await self.db.execute(
            select(DocumentSequence)
            .where(DocumentSequence.id == sequence.id)
            .with_for_update()
        )
        return result.scalar_one()
