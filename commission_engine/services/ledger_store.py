"""
Commission ledger writes and reads.

``insert_if_absent`` relies on the unique constraint
(tenant_id, transaction_id, beneficiary_partner_id, levels_from_source):
a conflicting row is skipped, not treated as an error. This is the last
of the three duplicate-prevention layers and the only one that still
holds when the idempotency cache is cold and the lock lease has expired.

The caller owns the transaction. Nothing here commits.
"""
import uuid
import logging
from typing import List, Sequence

from sqlalchemy import select, func, insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.models.commission import PartnerCommission

logger = logging.getLogger(__name__)

CONFLICT_COLUMNS = [
    "tenant_id",
    "transaction_id",
    "beneficiary_partner_id",
    "levels_from_source",
]


class CommissionLedger:
    """Insert-or-skip persistence for ``partner_commissions``."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _column_values(row: dict) -> dict:
        # Keyed by Column so attribute names like extra_data map to their DB column
        columns = PartnerCommission.__mapper__.columns
        return {columns[attr]: value for attr, value in row.items()}

    def _insert_or_skip(self, row: dict):
        table = PartnerCommission.__table__
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(table).values(self._column_values(row))
        elif dialect == "sqlite":
            stmt = sqlite.insert(table).values(self._column_values(row))
        else:
            return None
        return (
            stmt.on_conflict_do_nothing(index_elements=CONFLICT_COLUMNS)
            .returning(table.c.id)
        )

    async def insert_if_absent(self, candidates: Sequence) -> List[uuid.UUID]:
        """
        Insert every candidate whose uniqueness key is not already present.

        Returns:
            ids of the rows actually inserted by this call
        """
        inserted: List[uuid.UUID] = []
        for candidate in candidates:
            row = candidate.to_row()
            stmt = self._insert_or_skip(row)

            if stmt is not None:
                new_id = (await self.db.execute(stmt)).scalar_one_or_none()
            else:
                new_id = await self._insert_with_savepoint(row)

            if new_id is None:
                logger.debug(
                    f"Commission already recorded: txn={candidate.transaction_id} "
                    f"beneficiary={candidate.beneficiary_partner_code} level={candidate.levels_from_source}"
                )
            else:
                inserted.append(new_id)
        return inserted

    async def _insert_with_savepoint(self, row: dict):
        """Fallback for dialects without ON CONFLICT."""
        try:
            async with self.db.begin_nested():
                await self.db.execute(
                    insert(PartnerCommission.__table__).values(self._column_values(row))
                )
            return row["id"]
        except IntegrityError:
            return None

    async def count_for_transaction(self, tenant_id: uuid.UUID, transaction_id: str) -> int:
        result = await self.db.execute(
            select(func.count(PartnerCommission.id)).where(
                PartnerCommission.tenant_id == tenant_id,
                PartnerCommission.transaction_id == transaction_id,
            )
        )
        return result.scalar() or 0

    async def list_for_transaction(
        self,
        tenant_id: uuid.UUID,
        transaction_id: str
    ) -> List[PartnerCommission]:
        """All ledger rows of a transaction, nearest beneficiary first."""
        result = await self.db.execute(
            select(PartnerCommission)
            .where(
                PartnerCommission.tenant_id == tenant_id,
                PartnerCommission.transaction_id == transaction_id,
            )
            .order_by(PartnerCommission.levels_from_source)
        )
        return list(result.scalars().all())
