"""
Per-tenant document sequence counters.

Replaces shared in-process counters with one database row per
(tenant, document type, financial year), incremented under a row lock.

FORMAT:
    {PREFIX}/{TENANT_CODE}/{FY}/{SEQUENCE}
    PAY/ACME/25-26/00001
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from commission_engine.database import Base
from commission_engine.db_types import UUIDType


class DocumentSequence(Base):
    """
    Atomic counter row for one document type in one tenant and financial year.

    Example:
        document_type = "PAY", tenant_code = "ACME",
        financial_year = "25-26", current_number = 41
        -> next payout request number: PAY/ACME/25-26/00042
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "document_type", "financial_year",
            name="uq_document_sequence_tenant_type_fy"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    document_type: Mapped[str] = mapped_column(String(10), nullable=False)
    tenant_code: Mapped[str] = mapped_column(String(20), nullable=False)
    financial_year: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="e.g., 25-26 for FY 2025-26"
    )
    current_number: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Last used sequence number"
    )
    padding_length: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    separator: Mapped[str] = mapped_column(String(5), default="/", nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def format_number(self, number: int) -> str:
        seq = str(number).zfill(self.padding_length)
        sep = self.separator
        return f"{self.document_type}{sep}{self.tenant_code}{sep}{self.financial_year}{sep}{seq}"

    def get_next_number(self) -> str:
        """
        Increment the counter and format the new number.

        Does NOT flush or commit; the caller owns the transaction and
        must hold the row lock.
        """
        self.current_number += 1
        return self.format_number(self.current_number)

    def preview_next_number(self) -> str:
        return self.format_number(self.current_number + 1)

    @staticmethod
    def get_financial_year(now: Optional[datetime] = None, start_month: int = 4) -> str:
        """
        Financial year label for ``now``.

        With the default April start:
        - Jan 2026 -> "25-26"
        - Apr 2026 -> "26-27"
        """
        now = now or datetime.now(timezone.utc)
        if now.month >= start_month:
            fy_start = now.year
        else:
            fy_start = now.year - 1
        if start_month == 1:
            return f"{fy_start % 100:02d}"
        return f"{fy_start % 100:02d}-{(fy_start + 1) % 100:02d}"
