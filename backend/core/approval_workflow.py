"""
TWO-TIER APPROVAL WORKFLOW

One state machine shared by Receipts, Expenses and Refunds:

    Draft -> Pending Accounts -> Pending HOF -> Approved
                     |                |
                     +--> Rejected <--+

- Pending Accounts is decided by an AccountManager
- Pending HOF is decided by HOF (Admin may act as HOF)
- Approved and Rejected are terminal
- Every decision appends one entry to approval_history in the same
  conditional update that moves the status
- Entering Approved fires the kind's on_approved hook exactly once
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Any, Optional, Callable, Awaitable, List, Tuple
import logging

from core.state_machine import StateMachine
from core.errors import InvalidStateTransitionError, MissingReasonError, NotFoundError
from core.document_utils import to_object_id
from models import (
    ApprovalStatus, ApprovalLevel, ApprovalAction, ApprovalHistoryEntry, UserRole
)

logger = logging.getLogger(__name__)

# Hook signature: async def hook(kind, entity_doc, actor_id)
ApprovalHook = Callable[[str, Dict[str, Any], str], Awaitable[Any]]

COLLECTIONS = {
    "receipt": "receipts",
    "expense": "expenses",
    "refund": "refunds",
}

REQUIRED_APPROVERS = {
    ApprovalStatus.PENDING_ACCOUNTS.value: (UserRole.ACCOUNT_MANAGER.value,),
    ApprovalStatus.PENDING_HOF.value: (UserRole.HOF.value, UserRole.ADMIN.value),
}

APPROVAL_LEVELS = {
    ApprovalStatus.PENDING_ACCOUNTS.value: ApprovalLevel.ACCOUNTS.value,
    ApprovalStatus.PENDING_HOF.value: ApprovalLevel.HOF.value,
}

NEXT_ON_APPROVE = {
    ApprovalStatus.PENDING_ACCOUNTS.value: ApprovalStatus.PENDING_HOF.value,
    ApprovalStatus.PENDING_HOF.value: ApprovalStatus.APPROVED.value,
}

PENDING_STATES = tuple(REQUIRED_APPROVERS.keys())


# =============================================================================
# AUTHORIZATION CAPABILITY
# =============================================================================

def can_approve(actor_role: str, current_state: str) -> bool:
    """
    Single source of truth for who may decide an item in a given state.
    Applies to both approve and reject. Clients may use it for hints only.
    """
    return actor_role in REQUIRED_APPROVERS.get(current_state, ())


def allowed_actions(actor_role: str, current_state: str) -> List[str]:
    """Actions the actor could take right now, for display."""
    if current_state == ApprovalStatus.DRAFT.value:
        if actor_role in (UserRole.ADMIN.value, UserRole.ACCOUNT_MANAGER.value):
            return ["submit"]
        return []
    if can_approve(actor_role, current_state):
        return ["approve", "reject"]
    return []


def create_approval_state_machine(kind: str) -> StateMachine:
    """
    Create the approval state machine for one entity kind.
    """
    machine = StateMachine(kind, status_field="approval_status")

    async def guard_required_approver(entity: Dict, context: Dict) -> Tuple[bool, str]:
        state = entity.get("approval_status")
        role = context.get("actor_role")
        if can_approve(role, state):
            return (True, "")
        required = " or ".join(REQUIRED_APPROVERS.get(state, ()))
        return (False, f"Role '{role}' cannot decide a {kind} at '{state}'; requires {required}")

    machine.register(
        ApprovalStatus.DRAFT.value, ApprovalStatus.PENDING_ACCOUNTS.value,
        description="Submit for approval"
    )
    machine.register(
        ApprovalStatus.PENDING_ACCOUNTS.value, ApprovalStatus.PENDING_HOF.value,
        guard=guard_required_approver, description="Accounts approval"
    )
    machine.register(
        ApprovalStatus.PENDING_HOF.value, ApprovalStatus.APPROVED.value,
        guard=guard_required_approver, description="HOF approval"
    )
    machine.register(
        ApprovalStatus.PENDING_ACCOUNTS.value, ApprovalStatus.REJECTED.value,
        guard=guard_required_approver, description="Accounts rejection"
    )
    machine.register(
        ApprovalStatus.PENDING_HOF.value, ApprovalStatus.REJECTED.value,
        guard=guard_required_approver, description="HOF rejection"
    )

    return machine


# =============================================================================
# WORKFLOW SERVICE
# =============================================================================

class ApprovalWorkflow:
    """
    Submit / approve / reject for one entity kind.

    Args:
        db: Motor database
        kind: 'receipt', 'expense' or 'refund'
        audit_service: optional AuditService for the audit trail
        on_approved: hook fired once when the entity first enters Approved
        on_rejected: hook fired once when the entity enters Rejected
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        kind: str,
        audit_service=None,
        on_approved: Optional[ApprovalHook] = None,
        on_rejected: Optional[ApprovalHook] = None
    ):
        if kind not in COLLECTIONS:
            raise ValueError(f"Unknown approval entity kind: {kind}")

        self.db = db
        self.kind = kind
        self.collection = db[COLLECTIONS[kind]]
        self.audit_service = audit_service
        self.on_approved = on_approved
        self.on_rejected = on_rejected

        self.machine = create_approval_state_machine(kind)
        self.machine.on_post_transition(self._fire_hooks)

    async def _fire_hooks(self, entity: Dict, from_state: str, to_state: str, context: Dict):
        if to_state == ApprovalStatus.APPROVED.value and self.on_approved:
            await self.on_approved(self.kind, entity, context.get("actor_id"))
        elif to_state == ApprovalStatus.REJECTED.value and self.on_rejected:
            await self.on_rejected(self.kind, entity, context.get("actor_id"))

    async def get(self, entity_id: str) -> Dict[str, Any]:
        doc = await self.collection.find_one(
            {"_id": to_object_id(entity_id, self.kind), "is_active": True}
        )
        if not doc:
            raise NotFoundError(self.kind, entity_id)
        return doc

    # =========================================================================
    # ACTIONS
    # =========================================================================

    async def submit(self, entity_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        """Draft -> Pending Accounts."""
        doc = await self.get(entity_id)
        now = datetime.utcnow()

        updated = await self.machine.apply_transition(
            self.collection,
            doc,
            ApprovalStatus.PENDING_ACCOUNTS.value,
            update={"submitted_at": now, "submitted_by": actor["user_id"]},
            context=self._context(actor),
            action="submit"
        )

        await self._audit("SUBMIT", updated, actor, doc["approval_status"])
        logger.info(f"[APPROVAL] {self.kind} {entity_id} submitted by {actor['user_id']}")
        return updated

    async def approve(
        self,
        entity_id: str,
        actor: Dict[str, Any],
        remarks: Optional[str] = None
    ) -> Dict[str, Any]:
        """Pending Accounts -> Pending HOF, or Pending HOF -> Approved."""
        doc = await self.get(entity_id)
        state = doc["approval_status"]

        if state not in PENDING_STATES:
            raise InvalidStateTransitionError(
                self.kind, state, "approve", self.machine.get_allowed_transitions(state)
            )

        entry = self._history_entry(state, actor, ApprovalAction.APPROVED, remarks)

        updated = await self.machine.apply_transition(
            self.collection,
            doc,
            NEXT_ON_APPROVE[state],
            push={"approval_history": entry},
            context=self._context(actor),
            action="approve"
        )

        await self._audit("APPROVE", updated, actor, state)
        logger.info(
            f"[APPROVAL] {self.kind} {entity_id} approved at {APPROVAL_LEVELS[state]} "
            f"by {actor['user_id']} -> {updated['approval_status']}"
        )
        return updated

    async def reject(
        self,
        entity_id: str,
        actor: Dict[str, Any],
        remarks: Optional[str]
    ) -> Dict[str, Any]:
        """Any pending state -> Rejected. Remarks are mandatory."""
        if not remarks or not remarks.strip():
            raise MissingReasonError()

        doc = await self.get(entity_id)
        state = doc["approval_status"]

        if state not in PENDING_STATES:
            raise InvalidStateTransitionError(
                self.kind, state, "reject", self.machine.get_allowed_transitions(state)
            )

        entry = self._history_entry(state, actor, ApprovalAction.REJECTED, remarks.strip())

        updated = await self.machine.apply_transition(
            self.collection,
            doc,
            ApprovalStatus.REJECTED.value,
            update={"rejection_reason": remarks.strip()},
            push={"approval_history": entry},
            context=self._context(actor),
            action="reject"
        )

        await self._audit("REJECT", updated, actor, state)
        logger.info(f"[APPROVAL] {self.kind} {entity_id} rejected at {APPROVAL_LEVELS[state]} by {actor['user_id']}")
        return updated

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _context(self, actor: Dict[str, Any]) -> Dict[str, Any]:
        return {"actor_id": actor["user_id"], "actor_role": actor.get("role")}

    def _history_entry(
        self,
        state: str,
        actor: Dict[str, Any],
        action: ApprovalAction,
        remarks: Optional[str]
    ) -> Dict[str, Any]:
        entry = ApprovalHistoryEntry(
            approved_by=actor["user_id"],
            approval_level=APPROVAL_LEVELS[state],
            action=action,
            remarks=remarks
        )
        return entry.model_dump()

    async def _audit(self, action_type: str, updated: Dict, actor: Dict, from_state: str):
        if not self.audit_service:
            return
        await self.audit_service.log_action(
            module_name="APPROVALS",
            entity_type=self.kind.upper(),
            entity_id=str(updated["_id"]),
            action_type=action_type,
            user_id=actor["user_id"],
            old_value={"approval_status": from_state},
            new_value={"approval_status": updated["approval_status"]}
        )
