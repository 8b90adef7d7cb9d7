"""
APPROVAL QUEUE

Everything currently waiting on the caller's role, across receipts,
expenses and refunds, newest submission first. Read-only.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Any, List, Optional, Iterable
import logging

from core.approval_workflow import COLLECTIONS
from core.errors import ForbiddenError
from models import ApprovalStatus, UserRole

logger = logging.getLogger(__name__)

QUEUE_STATUS_BY_ROLE = {
    UserRole.ACCOUNT_MANAGER.value: ApprovalStatus.PENDING_ACCOUNTS.value,
    UserRole.HOF.value: ApprovalStatus.PENDING_HOF.value,
    UserRole.ADMIN.value: ApprovalStatus.PENDING_HOF.value,
}


def queue_status_for(actor_role: str) -> str:
    """Approval status a role is responsible for deciding."""
    status = QUEUE_STATUS_BY_ROLE.get(actor_role)
    if status is None:
        raise ForbiddenError(f"Role '{actor_role}' has no approval queue")
    return status


class ApprovalQueueService:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_queue(
        self,
        actor_role: str,
        kinds: Optional[Iterable[str]] = None
    ) -> List[Dict[str, Any]]:
        status = queue_status_for(actor_role)
        kinds = list(kinds) if kinds else list(COLLECTIONS.keys())

        items = []
        for kind in kinds:
            cursor = self.db[COLLECTIONS[kind]].find(
                {"approval_status": status, "is_active": True}
            )
            async for doc in cursor:
                doc["entity_kind"] = kind
                items.append(doc)

        # Stable, most recent submission first
        items.sort(key=lambda d: d.get("submitted_at") or datetime.min, reverse=True)

        logger.info(f"[QUEUE] {actor_role}: {len(items)} items awaiting '{status}'")
        return items
