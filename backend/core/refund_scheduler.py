"""
REFUND SCHEDULER

Creates the installment schedule for an approved Cancellation and closes
out individual Refunds once they are approved and paid.

- One schedule per Cancellation, claimed with a conditional update on
  refund_schedule_created before any Refund is written; a failed write
  releases the claim
- Installment amounts come from split_into_installments, so the schedule
  always sums to refundable_amount exactly
- Every Refund starts in approval 'Draft' and payment 'Pending'
- Paying a Refund re-derives the Cancellation status
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from datetime import datetime, date
from typing import Dict, Any, Optional, List
import logging

from core.financial_precision import (
    to_decimal, to_decimal128, split_into_installments,
    validate_installment_count, InstallmentSlice, WHOLE_UNIT
)
from core.errors import (
    InvalidStateTransitionError, InvalidInstallmentCountError,
    ScheduleAlreadyExistsError, ConcurrentModificationError, NotFoundError
)
from core.atomic_numbering import AtomicDocumentNumbering, REFUND_PREFIX
from core.cancellation_engine import CancellationEngine
from core.document_utils import to_object_id, to_datetime
from models import CancellationStatus, RefundStatus, ApprovalStatus

logger = logging.getLogger(__name__)


class RefundScheduler:
    """Refund schedule creation and payment marking."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        cancellation_engine: CancellationEngine,
        audit_service=None
    ):
        self.db = db
        self.cancellation_engine = cancellation_engine
        self.audit_service = audit_service
        self.document_numbering = AtomicDocumentNumbering(db)

    async def create_indexes(self):
        """Backstop against duplicate installments for one cancellation."""
        await self.db.refunds.create_index(
            [("cancellation_id", 1), ("installment_number", 1)],
            unique=True,
            partialFilterExpression={"is_active": True},
            name="idx_refund_installment_unique"
        )
        await self.db.refunds.create_index(
            [("status", 1), ("approval_status", 1), ("is_active", 1)],
            name="idx_refund_status"
        )

    # =========================================================================
    # READS
    # =========================================================================

    async def get_refund(self, refund_id: str) -> Dict[str, Any]:
        doc = await self.db.refunds.find_one(
            {"_id": to_object_id(refund_id, "refund"), "is_active": True}
        )
        if not doc:
            raise NotFoundError("refund", refund_id)
        return doc

    async def list_refunds(
        self,
        cancellation_id: Optional[str] = None,
        status: Optional[str] = None,
        approval_status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"is_active": True}
        if cancellation_id:
            query["cancellation_id"] = cancellation_id
        if status:
            query["status"] = status
        if approval_status:
            query["approval_status"] = approval_status

        cursor = self.db.refunds.find(query).sort([("cancellation_id", 1), ("installment_number", 1)])
        return await cursor.to_list(length=None)

    async def get_stats(self) -> Dict[str, Any]:
        stats = {
            "total_refunds": 0,
            "pending_refunds": 0,
            "paid_refunds": 0,
            "pending_approvals": 0,
            "total_amount": Decimal('0'),
            "paid_amount": Decimal('0'),
        }
        pending_approval = (ApprovalStatus.PENDING_ACCOUNTS.value, ApprovalStatus.PENDING_HOF.value)

        async for refund in self.db.refunds.find({"is_active": True}):
            amount = to_decimal(refund["amount"])
            stats["total_refunds"] += 1
            stats["total_amount"] += amount
            if refund["status"] == RefundStatus.PENDING.value:
                stats["pending_refunds"] += 1
            elif refund["status"] == RefundStatus.PAID.value:
                stats["paid_refunds"] += 1
                stats["paid_amount"] += amount
            if refund["approval_status"] in pending_approval:
                stats["pending_approvals"] += 1

        stats["total_amount"] = to_decimal128(stats["total_amount"])
        stats["paid_amount"] = to_decimal128(stats["paid_amount"])
        return stats

    # =========================================================================
    # SCHEDULE
    # =========================================================================

    async def create_schedule(
        self,
        cancellation_id: str,
        number_of_installments: int,
        actor: Dict[str, Any],
        start_date: Optional[date] = None,
        notes: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Create one Draft Refund per installment.

        Raises:
            NotFoundError: cancellation missing
            InvalidStateTransitionError: cancellation not Approved
            InvalidInstallmentCountError: count outside [1, 36], or more
                installments than whole units to refund
            ScheduleAlreadyExistsError: refunds already scheduled (or a
                concurrent request claimed the schedule first)
        """
        validate_installment_count(number_of_installments)

        cancellation = await self.cancellation_engine.get_cancellation(cancellation_id)
        cid = str(cancellation["_id"])

        if cancellation["status"] != CancellationStatus.APPROVED.value:
            raise InvalidStateTransitionError(
                "cancellation", cancellation["status"], "schedule refunds for", []
            )

        refundable = to_decimal(cancellation["refundable_amount"])
        if refundable < WHOLE_UNIT * number_of_installments:
            raise InvalidInstallmentCountError(
                number_of_installments,
                f"Cannot split {refundable} into {number_of_installments} installments "
                f"of at least 1 each"
            )

        existing = await self.db.refunds.count_documents({"cancellation_id": cid, "is_active": True})
        if existing > 0 or cancellation.get("refund_schedule_created"):
            raise ScheduleAlreadyExistsError(cid)

        # Claim the schedule before writing any refund
        claimed = await self.db.cancellations.find_one_and_update(
            {
                "_id": cancellation["_id"],
                "status": CancellationStatus.APPROVED.value,
                "refund_schedule_created": {"$ne": True}
            },
            {"$set": {
                "refund_schedule_created": True,
                "refund_schedule_created_at": datetime.utcnow(),
                "number_of_installments": number_of_installments,
                "updated_at": datetime.utcnow()
            }},
            return_document=True
        )
        if claimed is None:
            raise ScheduleAlreadyExistsError(cid)

        first_due = to_datetime(start_date) if start_date else datetime.utcnow().replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        slices = split_into_installments(refundable, number_of_installments, first_due)

        try:
            refunds = await self._insert_installments(cid, slices, actor, notes)
        except Exception:
            await self._release_schedule(cancellation["_id"], cid)
            logger.error(f"[REFUND] Failed to schedule refunds for cancellation {cid}, claim released")
            raise

        if self.audit_service:
            await self.audit_service.log_action(
                module_name="REFUNDS",
                entity_type="CANCELLATION",
                entity_id=cid,
                action_type="SCHEDULE_REFUNDS",
                user_id=actor["user_id"],
                new_value={
                    "number_of_installments": number_of_installments,
                    "refundable_amount": str(refundable)
                }
            )

        logger.info(f"[REFUND] Scheduled {number_of_installments} refunds for cancellation {cid}, total={refundable}")
        return refunds

    async def _insert_installments(
        self,
        cid: str,
        slices: List[InstallmentSlice],
        actor: Dict[str, Any],
        notes: Optional[str]
    ) -> List[Dict[str, Any]]:
        refunds = []
        now = datetime.utcnow()
        for installment in slices:
            refund = {
                "refund_number": await self.document_numbering.generate_document_number(REFUND_PREFIX, now),
                "cancellation_id": cid,
                "installment_number": installment.installment_number,
                "due_date": installment.due_date,
                "amount": to_decimal128(installment.amount),
                "status": RefundStatus.PENDING.value,
                "approval_status": ApprovalStatus.DRAFT.value,
                "approval_history": [],
                "notes": notes,
                "created_by": actor["user_id"],
                "is_active": True,
                "created_at": now,
                "updated_at": now
            }
            refunds.append(refund)

        result = await self.db.refunds.insert_many(refunds)
        for refund, inserted_id in zip(refunds, result.inserted_ids):
            refund["_id"] = inserted_id
        return refunds

    async def _release_schedule(self, cancellation_oid, cid: str):
        """Undo a half-written schedule so the cancellation can be scheduled again."""
        await self.db.refunds.delete_many({"cancellation_id": cid})
        await self.db.cancellations.update_one(
            {"_id": cancellation_oid, "refund_schedule_created": True},
            {
                "$set": {"refund_schedule_created": False, "updated_at": datetime.utcnow()},
                "$unset": {"refund_schedule_created_at": "", "number_of_installments": ""}
            }
        )

    # =========================================================================
    # PAYMENT
    # =========================================================================

    async def mark_as_paid(
        self,
        refund_id: str,
        payment_method: str,
        actor: Dict[str, Any],
        payment_date: Optional[date] = None,
        transaction_ref: Optional[str] = None,
        remarks: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Pending -> Paid for an Approved refund, then re-derive the cancellation.

        Raises:
            InvalidStateTransitionError: not Approved, or not payable
            ConcurrentModificationError: another request paid it first
        """
        refund = await self.get_refund(refund_id)

        if refund["approval_status"] != ApprovalStatus.APPROVED.value:
            raise InvalidStateTransitionError(
                "refund", refund["approval_status"], "mark as paid", []
            )
        if refund["status"] != RefundStatus.PENDING.value:
            raise InvalidStateTransitionError("refund", refund["status"], "mark as paid", [])

        now = datetime.utcnow()
        changes = {
            "status": RefundStatus.PAID.value,
            "paid_date": to_datetime(payment_date) or now,
            "payment_method": payment_method,
            "transaction_ref": transaction_ref,
            "paid_by": actor["user_id"],
            "updated_at": now
        }
        if remarks:
            changes["payment_remarks"] = remarks

        updated = await self.db.refunds.find_one_and_update(
            {
                "_id": refund["_id"],
                "approval_status": ApprovalStatus.APPROVED.value,
                "status": RefundStatus.PENDING.value
            },
            {"$set": changes},
            return_document=True
        )
        if updated is None:
            raise ConcurrentModificationError("refund", str(refund["_id"]), RefundStatus.PENDING.value)

        if self.audit_service:
            await self.audit_service.log_action(
                module_name="REFUNDS",
                entity_type="REFUND",
                entity_id=str(refund["_id"]),
                action_type="MARK_PAID",
                user_id=actor["user_id"],
                old_value={"status": RefundStatus.PENDING.value},
                new_value={"status": RefundStatus.PAID.value, "payment_method": payment_method}
            )

        logger.info(f"[REFUND] {updated.get('refund_number')} paid via {payment_method}")

        await self.cancellation_engine.rederive_status(updated["cancellation_id"])
        return updated

    async def cancel_rejected_refund(self, kind: str, refund: Dict[str, Any], actor_id: str):
        """on_rejected hook: a rejected installment will never be paid."""
        await self.db.refunds.update_one(
            {"_id": refund["_id"], "status": RefundStatus.PENDING.value},
            {"$set": {"status": RefundStatus.CANCELLED.value, "updated_at": datetime.utcnow()}}
        )
        logger.info(f"[REFUND] {refund.get('refund_number')} cancelled after rejection by {actor_id}")
