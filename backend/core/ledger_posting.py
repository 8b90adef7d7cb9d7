"""
LEDGER POSTING HOOK

Fired when a Receipt or Expense first enters 'Approved'.

- Claims the document with a conditional update on posted_to_ledger
  so the ledger is written at most once per document
- A failed write releases the claim; repost() picks the document up again
  (POST /api/{receipts|expenses}/{id}/post-to-ledger)
- Writes the two double-entry rows
- Receipt: Dr Cash/Bank, Cr Accounts Receivable - Clients
- Expense: Dr Expenses - <category>, Cr Cash/Bank
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Any, List, Optional
import logging

from core.financial_precision import to_decimal128
from core.errors import InvalidStateTransitionError, NotFoundError
from core.document_utils import to_object_id

logger = logging.getLogger(__name__)

RECEIVABLE_ACCOUNT = "Accounts Receivable - Clients"


def cash_account_for(method: Optional[str]) -> str:
    return "Cash" if method == "Cash" else "Bank"


class LedgerPostingHook:
    """Posts approved receipts and expenses to the ledger collection."""

    COLLECTIONS = {
        "receipt": "receipts",
        "expense": "expenses",
    }

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def __call__(self, kind: str, entity: Dict[str, Any], actor_id: str) -> bool:
        return await self.post(kind, entity, actor_id)

    async def post(self, kind: str, entity: Dict[str, Any], actor_id: str) -> bool:
        """
        Post an approved document. Returns False when it was already posted.
        """
        collection = self.db[self.COLLECTIONS[kind]]
        posted_at = datetime.utcnow()

        claimed = await collection.find_one_and_update(
            {
                "_id": entity["_id"],
                "approval_status": "Approved",
                "posted_to_ledger": {"$ne": True}
            },
            {"$set": {"posted_to_ledger": True, "ledger_posting_date": posted_at}},
            return_document=True
        )

        if claimed is None:
            logger.info(f"[LEDGER] {kind} {entity['_id']} already posted, skipping")
            return False

        entries = self._build_entries(kind, claimed, actor_id, posted_at)

        try:
            await self.db.ledger.insert_many(entries)
        except Exception:
            # Release the claim; repost() retries it
            await collection.update_one(
                {"_id": entity["_id"]},
                {"$set": {"posted_to_ledger": False, "ledger_posting_date": None}}
            )
            logger.error(f"[LEDGER] Failed to post {kind} {entity['_id']}")
            raise

        logger.info(f"[LEDGER] Posted {kind} {claimed.get(self._number_field(kind))}: {len(entries)} entries")
        return True

    async def repost(self, kind: str, document_id: str, actor_id: str) -> bool:
        """
        Post an Approved document whose posting failed after approval.
        Returns False when it is already on the ledger.
        """
        collection = self.db[self.COLLECTIONS[kind]]
        doc = await collection.find_one({"_id": to_object_id(document_id, kind), "is_active": True})
        if not doc:
            raise NotFoundError(kind, document_id)
        if doc.get("approval_status") != "Approved":
            raise InvalidStateTransitionError(kind, doc.get("approval_status"), "post to ledger")

        logger.info(f"[LEDGER] Retrying posting of {kind} {document_id} by {actor_id}")
        return await self.post(kind, doc, actor_id)

    def _number_field(self, kind: str) -> str:
        return f"{kind}_number"

    def _build_entries(
        self,
        kind: str,
        doc: Dict[str, Any],
        actor_id: str,
        posted_at: datetime
    ) -> List[Dict[str, Any]]:
        amount = to_decimal128(doc["amount"])
        zero = to_decimal128(0)
        reference_number = doc.get(self._number_field(kind))

        common = {
            "reference_id": doc["_id"],
            "reference_number": reference_number,
            "created_by": actor_id,
            "is_active": True,
            "created_at": posted_at
        }

        if kind == "receipt":
            cash_account = cash_account_for(doc.get("method"))
            common.update({
                "transaction_date": doc.get("receipt_date") or posted_at,
                "transaction_type": "Receipt",
                "reference_model": "Receipt",
                "client_id": doc.get("client_id"),
                "description": f"Receipt {reference_number} for sale {doc.get('sale_id')}"
            })
            return [
                {**common, "account": cash_account, "account_type": "Asset",
                 "debit": amount, "credit": zero},
                {**common, "account": RECEIVABLE_ACCOUNT, "account_type": "Asset",
                 "debit": zero, "credit": amount},
            ]

        cash_account = cash_account_for(doc.get("payment_method"))
        common.update({
            "transaction_date": doc.get("expense_date") or posted_at,
            "transaction_type": "Payment",
            "reference_model": "Expense",
            "description": f"Expense {reference_number}: {doc.get('description', '')}".strip()
        })
        return [
            {**common, "account": f"Expenses - {doc.get('category', 'General')}",
             "account_type": "Expense", "debit": amount, "credit": zero},
            {**common, "account": cash_account, "account_type": "Asset",
             "debit": zero, "credit": amount},
        ]
