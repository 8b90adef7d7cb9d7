from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Any, Optional, List
import logging

from core.atomic_numbering import AtomicDocumentNumbering, RECEIPT_PREFIX, EXPENSE_PREFIX
from core.approval_workflow import COLLECTIONS
from core.document_utils import to_object_id, to_datetime
from core.errors import NotFoundError, InvalidAmountError
from core.financial_precision import to_decimal128, validate_positive, NegativeValueError
from models import ApprovalStatus, ReceiptCreate, ExpenseCreate

logger = logging.getLogger(__name__)


class FinancialDocumentService:
    """
    Creation and lookup of money-in (Receipt) and money-out (Expense)
    documents. Both start in approval 'Draft' and are never posted to the
    ledger until the approval workflow reaches 'Approved'.
    """

    def __init__(self, db: AsyncIOMotorDatabase, audit_service=None):
        self.db = db
        self.audit_service = audit_service
        self.document_numbering = AtomicDocumentNumbering(db)

    def _validate_amount(self, amount: float):
        try:
            validate_positive(amount, "amount")
        except NegativeValueError as e:
            raise InvalidAmountError(str(e))

    async def create_receipt(self, data: ReceiptCreate, actor: Dict[str, Any]) -> Dict[str, Any]:
        """Create a Draft receipt against an existing sale."""
        self._validate_amount(data.amount)

        sale = await self.db.sales.find_one({"_id": to_object_id(data.sale_id, "sale"), "is_active": True})
        if not sale:
            raise NotFoundError("sale", data.sale_id)

        now = datetime.utcnow()
        receipt = {
            "receipt_number": await self.document_numbering.generate_document_number(RECEIPT_PREFIX, now),
            "sale_id": data.sale_id,
            "client_id": data.client_id,
            "receipt_type": data.receipt_type.value,
            "amount": to_decimal128(data.amount),
            "method": data.method.value,
            "receipt_date": to_datetime(data.receipt_date) or now,
            "approval_status": ApprovalStatus.DRAFT.value,
            "approval_history": [],
            "posted_to_ledger": False,
            "notes": data.notes,
            "created_by": actor["user_id"],
            "is_active": True,
            "created_at": now,
            "updated_at": now
        }

        return await self._insert("receipt", receipt, actor)

    async def create_expense(self, data: ExpenseCreate, actor: Dict[str, Any]) -> Dict[str, Any]:
        """Create a Draft expense."""
        self._validate_amount(data.amount)

        now = datetime.utcnow()
        expense = {
            "expense_number": await self.document_numbering.generate_document_number(EXPENSE_PREFIX, now),
            "category": data.category,
            "vendor": data.vendor,
            "description": data.description,
            "amount": to_decimal128(data.amount),
            "payment_method": data.payment_method.value,
            "expense_date": to_datetime(data.expense_date) or now,
            "approval_status": ApprovalStatus.DRAFT.value,
            "approval_history": [],
            "posted_to_ledger": False,
            "notes": data.notes,
            "created_by": actor["user_id"],
            "is_active": True,
            "created_at": now,
            "updated_at": now
        }

        return await self._insert("expense", expense, actor)

    async def get_document(self, kind: str, document_id: str) -> Dict[str, Any]:
        doc = await self.db[COLLECTIONS[kind]].find_one(
            {"_id": to_object_id(document_id, kind), "is_active": True}
        )
        if not doc:
            raise NotFoundError(kind, document_id)
        return doc

    async def list_documents(
        self,
        kind: str,
        approval_status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"is_active": True}
        if approval_status:
            query["approval_status"] = approval_status

        cursor = self.db[COLLECTIONS[kind]].find(query).sort("created_at", -1)
        return await cursor.to_list(length=None)

    async def _insert(self, kind: str, doc: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.db[COLLECTIONS[kind]].insert_one(doc)
        doc["_id"] = result.inserted_id

        if self.audit_service:
            await self.audit_service.log_action(
                module_name="FINANCIAL_DOCUMENTS",
                entity_type=kind.upper(),
                entity_id=str(result.inserted_id),
                action_type="CREATE",
                user_id=actor["user_id"],
                new_value={"amount": str(doc["amount"]), "approval_status": doc["approval_status"]}
            )

        logger.info(f"{kind.capitalize()} created: {doc.get(f'{kind}_number')} ({result.inserted_id})")
        return doc
