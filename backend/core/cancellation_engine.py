"""
CANCELLATION ENGINE

Turns a cancelled Sale into a Cancellation with a computed refundable amount
and tracks refund progress against it.

LOCKED FORMULAS:
- total_paid = sale.paid_amount at cancellation time
- office_charge_amount = round_half_up(total_paid * office_charge_percent / 100)
- refundable_amount = total_paid - office_charge_amount - other_deductions
- refunded_amount = SUM(amount) of Paid refunds
- remaining_refund = refundable_amount - refunded_amount

Status:
- Pending -> Approved | Rejected (single-step decision)
- Approved -> Partial Refund -> Refunded (derived from refund progress)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError
from decimal import Decimal
from datetime import datetime
from typing import Dict, Any, Optional
import logging
import os

from core.financial_precision import (
    to_decimal, to_decimal128, round_financial, compute_office_charge, compute_refundable
)
from core.errors import (
    DuplicateCancellationError, InvalidStateTransitionError,
    ConcurrentModificationError, MissingReasonError, NotFoundError
)
from core.document_utils import to_object_id
from models import CancellationStatus, SaleStatus, RefundStatus

logger = logging.getLogger(__name__)

DEFAULT_OFFICE_CHARGE_PERCENT = float(os.environ.get("DEFAULT_OFFICE_CHARGE_PERCENT", "10"))

# Statuses from which refunds may progress
REFUND_PROGRESS_STATES = [
    CancellationStatus.APPROVED.value,
    CancellationStatus.PARTIAL_REFUND.value,
    CancellationStatus.REFUNDED.value,
]


MAX_REFUND_PROGRESS_ATTEMPTS = 10


class CancellationEngine:
    """
    Cancellation lifecycle with optimistic compare-and-swap on status.
    """

    def __init__(self, db: AsyncIOMotorDatabase, audit_service=None):
        self.db = db
        self.audit_service = audit_service

    async def create_indexes(self):
        """Backstop for one live cancellation per sale."""
        await self.db.cancellations.create_index(
            [("sale_id", 1)],
            unique=True,
            partialFilterExpression={
                "is_active": True,
                "status": {"$in": [
                    CancellationStatus.PENDING.value,
                    CancellationStatus.APPROVED.value,
                    CancellationStatus.PARTIAL_REFUND.value,
                    CancellationStatus.REFUNDED.value,
                ]}
            },
            name="idx_cancellation_live_sale_unique"
        )
        await self.db.cancellations.create_index(
            [("status", 1), ("is_active", 1)], name="idx_cancellation_status"
        )

    # =========================================================================
    # READS
    # =========================================================================

    async def get_cancellation(self, cancellation_id: str) -> Dict[str, Any]:
        doc = await self.db.cancellations.find_one(
            {"_id": to_object_id(cancellation_id, "cancellation"), "is_active": True}
        )
        if not doc:
            raise NotFoundError("cancellation", cancellation_id)
        return doc

    async def list_cancellations(
        self,
        status: Optional[str] = None,
        sale_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"is_active": True}
        if status:
            query["status"] = status
        if sale_id:
            query["sale_id"] = sale_id
        if from_date or to_date:
            query["cancellation_date"] = {}
            if from_date:
                query["cancellation_date"]["$gte"] = from_date
            if to_date:
                query["cancellation_date"]["$lte"] = to_date

        skip = (page - 1) * limit
        cursor = self.db.cancellations.find(query).sort("cancellation_date", -1).skip(skip).limit(limit)
        items = await cursor.to_list(length=limit)
        total = await self.db.cancellations.count_documents(query)

        return {
            "items": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": (total + limit - 1) // limit if limit else 0
            }
        }

    async def get_stats(self) -> Dict[str, Any]:
        stats = {
            "total_cancellations": 0,
            "pending_cancellations": 0,
            "approved_cancellations": 0,
            "total_refundable": Decimal('0'),
            "total_refunded": Decimal('0'),
            "total_office_charge": Decimal('0'),
        }

        async for doc in self.db.cancellations.find({"is_active": True}):
            stats["total_cancellations"] += 1
            if doc["status"] == CancellationStatus.PENDING.value:
                stats["pending_cancellations"] += 1
            elif doc["status"] == CancellationStatus.APPROVED.value:
                stats["approved_cancellations"] += 1
            stats["total_refundable"] += to_decimal(doc.get("refundable_amount"))
            stats["total_refunded"] += to_decimal(doc.get("refunded_amount"))
            stats["total_office_charge"] += to_decimal(doc.get("office_charge_amount"))

        for key in ("total_refundable", "total_refunded", "total_office_charge"):
            stats[key] = to_decimal128(stats[key])
        return stats

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_cancellation(
        self,
        sale_id: str,
        reason: str,
        actor: Dict[str, Any],
        office_charge_percent: Optional[float] = None,
        other_deductions: float = 0,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a Pending cancellation from a sale snapshot.

        Raises:
            NotFoundError: sale missing or inactive
            DuplicateCancellationError: sale already cancelled or has a live cancellation
            InvalidDeductionError: percent out of range or refundable < 0
        """
        sale_oid = to_object_id(sale_id, "sale")
        sale = await self.db.sales.find_one({"_id": sale_oid, "is_active": True})
        if not sale:
            raise NotFoundError("sale", sale_id)

        if sale.get("status") == SaleStatus.CANCELLED.value:
            raise DuplicateCancellationError(f"Sale {sale_id} has already been cancelled")

        existing = await self.db.cancellations.find_one({
            "sale_id": str(sale_oid),
            "is_active": True,
            "status": {"$ne": CancellationStatus.REJECTED.value}
        })
        if existing:
            raise DuplicateCancellationError(f"A cancellation already exists for sale {sale_id}")

        percent = DEFAULT_OFFICE_CHARGE_PERCENT if office_charge_percent is None else office_charge_percent
        # Stored amounts are 2dp, so derive from the 2dp values
        total_paid = round_financial(sale.get("paid_amount"))
        deductions = round_financial(other_deductions)

        # Money math raises before anything is written
        office_charge = compute_office_charge(total_paid, percent)
        refundable = compute_refundable(total_paid, office_charge, deductions)

        # Claim the sale: a concurrent create loses here
        claimed = await self.db.sales.find_one_and_update(
            {"_id": sale_oid, "status": sale.get("status")},
            {"$set": {
                "status": SaleStatus.CANCELLED.value,
                "status_before_cancellation": sale.get("status"),
                "updated_at": datetime.utcnow()
            }},
            return_document=True
        )
        if claimed is None:
            raise ConcurrentModificationError("sale", sale_id, sale.get("status"))

        now = datetime.utcnow()
        cancellation = {
            "sale_id": str(sale_oid),
            "cancellation_date": now,
            "reason": reason,
            "total_paid": to_decimal128(total_paid),
            "office_charge_percent": float(percent),
            "office_charge_amount": to_decimal128(office_charge),
            "other_deductions": to_decimal128(deductions),
            "refundable_amount": to_decimal128(refundable),
            "refunded_amount": to_decimal128(0),
            "remaining_refund": to_decimal128(refundable),
            "refund_revision": 0,
            "status": CancellationStatus.PENDING.value,
            "notes": notes,
            "refund_schedule_created": False,
            "created_by": actor["user_id"],
            "is_active": True,
            "created_at": now,
            "updated_at": now
        }

        try:
            result = await self.db.cancellations.insert_one(cancellation)
        except DuplicateKeyError:
            await self._restore_sale(str(sale_oid))
            raise DuplicateCancellationError(f"A cancellation already exists for sale {sale_id}")
        cancellation["_id"] = result.inserted_id

        await self._audit("CREATE", cancellation, actor, None, {
            "sale_id": str(sale_oid),
            "refundable_amount": str(refundable)
        })
        logger.info(
            f"[CANCELLATION] Created {result.inserted_id} for sale {sale_id}: "
            f"paid={total_paid}, charge={office_charge}, refundable={refundable}"
        )
        return cancellation

    # =========================================================================
    # UPDATE / DELETE (Pending only)
    # =========================================================================

    async def update_cancellation(
        self,
        cancellation_id: str,
        actor: Dict[str, Any],
        reason: Optional[str] = None,
        office_charge_percent: Optional[float] = None,
        other_deductions: Optional[float] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Edit a Pending cancellation and recompute its amounts."""
        doc = await self.get_cancellation(cancellation_id)
        self._require_status(doc, CancellationStatus.PENDING.value, "update")

        percent = doc["office_charge_percent"] if office_charge_percent is None else office_charge_percent
        deductions = round_financial(
            doc.get("other_deductions") if other_deductions is None else other_deductions
        )
        total_paid = round_financial(doc["total_paid"])

        office_charge = compute_office_charge(total_paid, percent)
        refundable = compute_refundable(total_paid, office_charge, deductions)

        changes: Dict[str, Any] = {
            "office_charge_percent": float(percent),
            "office_charge_amount": to_decimal128(office_charge),
            "other_deductions": to_decimal128(deductions),
            "refundable_amount": to_decimal128(refundable),
            "remaining_refund": to_decimal128(refundable),
            "updated_at": datetime.utcnow()
        }
        if reason is not None:
            changes["reason"] = reason
        if notes is not None:
            changes["notes"] = notes

        updated = await self._compare_and_set(doc, CancellationStatus.PENDING.value, changes)
        await self._audit("UPDATE", updated, actor, {"refundable_amount": str(to_decimal(doc["refundable_amount"]))},
                          {"refundable_amount": str(refundable)})
        return updated

    async def delete_cancellation(self, cancellation_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        """Soft delete a Pending cancellation and restore the sale."""
        doc = await self.get_cancellation(cancellation_id)
        self._require_status(doc, CancellationStatus.PENDING.value, "delete")

        updated = await self._compare_and_set(doc, CancellationStatus.PENDING.value, {
            "is_active": False,
            "updated_at": datetime.utcnow()
        })
        await self._restore_sale(doc["sale_id"])
        await self._audit("SOFT_DELETE", updated, actor, {"is_active": True}, {"is_active": False})
        logger.info(f"[CANCELLATION] Soft deleted {cancellation_id}")
        return updated

    # =========================================================================
    # DECISION
    # =========================================================================

    async def decide(
        self,
        cancellation_id: str,
        approve: bool,
        actor: Dict[str, Any],
        remarks: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Single-step decision, only from Pending.

        approve=True  -> Approved (approved_by, approved_at, remarks kept as notes)
        approve=False -> Rejected (rejection_reason required), sale restored
        """
        if not approve and (not remarks or not remarks.strip()):
            raise MissingReasonError("Rejection reason is required")

        doc = await self.get_cancellation(cancellation_id)
        action = "approve" if approve else "reject"
        self._require_status(doc, CancellationStatus.PENDING.value, action)

        now = datetime.utcnow()
        changes: Dict[str, Any] = {
            "approved_by": actor["user_id"],
            "approved_at": now,
            "updated_at": now
        }
        if approve:
            changes["status"] = CancellationStatus.APPROVED.value
            if remarks:
                changes["notes"] = remarks
        else:
            changes["status"] = CancellationStatus.REJECTED.value
            changes["rejection_reason"] = remarks.strip()

        updated = await self._compare_and_set(doc, CancellationStatus.PENDING.value, changes)

        if not approve:
            await self._restore_sale(doc["sale_id"])

        await self._audit(action.upper(), updated, actor, {"status": doc["status"]}, {"status": updated["status"]})
        logger.info(f"[CANCELLATION] {cancellation_id} {updated['status']} by {actor['user_id']}")
        return updated

    # =========================================================================
    # REFUND PROGRESS
    # =========================================================================

    async def rederive_status(self, cancellation_id) -> Dict[str, Any]:
        """
        Recompute refunded_amount from Paid refunds and derive the status.

        refunded == refundable      -> Refunded
        0 < refunded < refundable   -> Partial Refund

        The write is conditional on refund_revision as read, and the Paid
        refunds are summed after that read. If another payment's update lands
        in between, the write misses and the sum is taken again, so the last
        write always reflects every Paid refund.
        """
        oid = to_object_id(cancellation_id, "cancellation")

        for _ in range(MAX_REFUND_PROGRESS_ATTEMPTS):
            doc = await self.db.cancellations.find_one({"_id": oid})
            if not doc:
                raise NotFoundError("cancellation", str(cancellation_id))
            if doc["status"] not in REFUND_PROGRESS_STATES:
                raise InvalidStateTransitionError("cancellation", doc["status"], "record refund progress on")

            refunded = Decimal('0')
            async for refund in self.db.refunds.find({
                "cancellation_id": str(oid),
                "status": RefundStatus.PAID.value,
                "is_active": True
            }):
                refunded += to_decimal(refund["amount"])

            refundable = to_decimal(doc["refundable_amount"])
            status = doc["status"]
            if refunded == refundable:
                status = CancellationStatus.REFUNDED.value
            elif Decimal('0') < refunded < refundable:
                status = CancellationStatus.PARTIAL_REFUND.value

            if "refund_revision" in doc:
                revision_filter = doc["refund_revision"]
            else:
                revision_filter = {"$exists": False}

            updated = await self.db.cancellations.find_one_and_update(
                {
                    "_id": oid,
                    "status": {"$in": REFUND_PROGRESS_STATES},
                    "refund_revision": revision_filter
                },
                {
                    "$set": {
                        "refunded_amount": to_decimal128(refunded),
                        "remaining_refund": to_decimal128(refundable - refunded),
                        "status": status,
                        "updated_at": datetime.utcnow()
                    },
                    "$inc": {"refund_revision": 1}
                },
                return_document=True
            )
            if updated is not None:
                logger.info(f"[CANCELLATION] {oid} refunded={refunded}/{refundable} -> {status}")
                return updated

            logger.info(f"[CANCELLATION] {oid} refund progress changed underneath, re-reading")

        raise ConcurrentModificationError("cancellation", str(oid), "refund progress")

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _require_status(self, doc: Dict[str, Any], expected: str, action: str):
        if doc["status"] != expected:
            raise InvalidStateTransitionError("cancellation", doc["status"], action, [])

    async def _compare_and_set(self, doc: Dict[str, Any], expected: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        updated = await self.db.cancellations.find_one_and_update(
            {"_id": doc["_id"], "status": expected, "is_active": True},
            {"$set": changes},
            return_document=True
        )
        if updated is None:
            raise ConcurrentModificationError("cancellation", str(doc["_id"]), expected)
        return updated

    async def _restore_sale(self, sale_id: str):
        sale = await self.db.sales.find_one({"_id": to_object_id(sale_id, "sale")})
        if not sale:
            logger.warning(f"[CANCELLATION] Sale {sale_id} not found while restoring")
            return
        await self.db.sales.update_one(
            {"_id": sale["_id"], "status": SaleStatus.CANCELLED.value},
            {"$set": {
                "status": sale.get("status_before_cancellation") or SaleStatus.ACTIVE.value,
                "updated_at": datetime.utcnow()
            }}
        )

    async def _audit(self, action_type: str, doc: Dict, actor: Dict,
                     old_value: Optional[Dict], new_value: Optional[Dict]):
        if not self.audit_service:
            return
        await self.audit_service.log_action(
            module_name="CANCELLATIONS",
            entity_type="CANCELLATION",
            entity_id=str(doc["_id"]),
            action_type=action_type,
            user_id=actor["user_id"],
            old_value=old_value,
            new_value=new_value
        )
