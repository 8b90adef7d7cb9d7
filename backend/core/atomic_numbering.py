"""
ATOMIC DOCUMENT NUMBERING

Provides:
1. Per-prefix, per-month sequences via findOneAndUpdate + $inc
2. Document numbers of the form PREFIX-YYYY-MM-NNNNN
3. Unique index creation for sequences and document numbers
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional
import logging

logger = logging.getLogger(__name__)

RECEIPT_PREFIX = "RCP"
EXPENSE_PREFIX = "EXP"
REFUND_PREFIX = "RFD"


class AtomicDocumentNumbering:
    """
    Atomic document number generator.

    Uses findOneAndUpdate with $inc so two concurrent requests never receive
    the same sequence value.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_next_sequence(self, prefix: str, period: str, session=None) -> int:
        """Returns the NEW sequence number after increment."""
        result = await self.db.document_sequences.find_one_and_update(
            {"prefix": prefix, "period": period},
            {
                "$inc": {"current_sequence": 1},
                "$set": {"updated_at": datetime.utcnow()},
                "$setOnInsert": {"created_at": datetime.utcnow()}
            },
            upsert=True,
            return_document=True,
            session=session
        )

        return result["current_sequence"]

    async def generate_document_number(
        self,
        prefix: str,
        at: Optional[datetime] = None,
        session=None
    ) -> str:
        """Generate e.g. RFD-2024-03-00012."""
        at = at or datetime.utcnow()
        period = f"{at.year}-{at.month:02d}"

        sequence = await self.get_next_sequence(prefix, period, session)
        document_number = f"{prefix}-{period}-{sequence:05d}"

        logger.info(f"Generated document number: {document_number}")
        return document_number

    async def create_unique_constraints(self):
        """Create unique indexes on sequences and document numbers."""
        await self.db.document_sequences.create_index(
            [("prefix", 1), ("period", 1)],
            unique=True,
            name="idx_sequence_prefix_period_unique"
        )
        await self.db.receipts.create_index(
            [("receipt_number", 1)], unique=True, name="idx_receipt_number_unique"
        )
        await self.db.expenses.create_index(
            [("expense_number", 1)], unique=True, name="idx_expense_number_unique"
        )
        await self.db.refunds.create_index(
            [("refund_number", 1)], unique=True, name="idx_refund_number_unique"
        )

        logger.info("Created unique constraints for document numbering")
