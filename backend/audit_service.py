"""
AUDIT TRAIL

Insert-only log of every state change on receipts, expenses, refunds and
cancellations. Each financial entity type has a closed set of audited
actions; anything outside it (a hard DELETE in particular) is refused.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from core.errors import ForbiddenError

logger = logging.getLogger(__name__)

APPROVAL_ACTIONS = {"SUBMIT", "APPROVE", "REJECT"}

# Financial entities are never removed, only moved through these actions
AUDITED_ACTIONS = {
    "RECEIPT": {"CREATE"} | APPROVAL_ACTIONS,
    "EXPENSE": {"CREATE"} | APPROVAL_ACTIONS,
    "REFUND": {"MARK_PAID"} | APPROVAL_ACTIONS,
    "CANCELLATION": {"CREATE", "UPDATE", "SOFT_DELETE", "APPROVE", "REJECT", "SCHEDULE_REFUNDS"},
}


class AuditService:
    """Append-only audit trail for the back-office workflows"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    def check_action_allowed(self, entity_type: str, action_type: str):
        """
        Raise ForbiddenError for an action a financial entity does not support.

        Soft delete is the only removal: cancellations log SOFT_DELETE and
        flip is_active, while receipts, expenses and refunds are never removed.
        """
        allowed = AUDITED_ACTIONS.get(entity_type)
        if allowed is not None and action_type not in allowed:
            logger.warning(f"[AUDIT] Refused {action_type} on {entity_type}")
            raise ForbiddenError(
                f"{action_type} is not permitted on {entity_type}. "
                f"Allowed actions: {sorted(allowed)}"
            )

    async def log_action(
        self,
        module_name: str,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: str,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ):
        """
        Append one audit entry.

        The action check raises; a failed insert is only logged so the
        business operation that already committed is not reported as failed.
        """
        self.check_action_allowed(entity_type, action_type)

        entry = {
            "module_name": module_name,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action_type": action_type,
            "old_value_json": old_value,
            "new_value_json": new_value,
            "user_id": user_id,
            "timestamp": datetime.utcnow()
        }
        try:
            await self.collection.insert_one(entry)
        except Exception as e:
            logger.error(f"[AUDIT] Failed to record {action_type} on {entity_type}:{entity_id}: {e}")
            return

        logger.info(f"[AUDIT] {action_type} on {entity_type}:{entity_id} by user:{user_id}")

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        action_type: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Newest first"""
        query: Dict[str, Any] = {}
        for field, value in (
            ("entity_type", entity_type),
            ("entity_id", entity_id),
            ("action_type", action_type),
            ("user_id", user_id),
        ):
            if value:
                query[field] = value

        cursor = self.collection.find(query).sort("timestamp", -1).limit(limit)
        logs = await cursor.to_list(length=limit)
        for log in logs:
            log["audit_id"] = str(log.pop("_id"))
        return logs
