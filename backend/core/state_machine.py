"""
GENERIC STATE MACHINE UTILITY

A reusable state machine for managing entity state transitions with:
- Transition registration with guards
- Transition validation
- Optimistic compare-and-swap on the status field
- Post-transition callbacks
- Invalid transition rejection

Usage:
    machine = StateMachine("receipt", status_field="approval_status")
    machine.register("Draft", "Pending Accounts", description="Submit")
    machine.register("Pending Accounts", "Pending HOF", guard=accounts_guard)

    updated = await machine.apply_transition(
        db.receipts, receipt_doc, "Pending HOF",
        update={"submitted_by": user_id}, context={"actor": actor}
    )

Every transition is a single conditional update filtered on the status the
caller read. If another actor moved the document first, the filter matches
nothing and ConcurrentModificationError is raised.
"""

from typing import Dict, Any, Optional, Callable, Awaitable, List, Set, Tuple
from datetime import datetime
import logging

from core.errors import (
    InvalidStateTransitionError,
    ForbiddenError,
    ConcurrentModificationError,
)

logger = logging.getLogger(__name__)


class GuardConditionError(ForbiddenError):
    """Raised when guard condition prevents transition."""
    def __init__(self, entity: str, from_state: str, to_state: str, reason: str):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        super().__init__(reason or f"Not allowed to move {entity} from '{from_state}' to '{to_state}'")


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

# Guard signature: async def guard(entity_doc, context) -> Tuple[bool, str]
GuardCondition = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Tuple[bool, str]]]

# Callback signature: async def callback(entity_doc, from_state, to_state, context)
TransitionCallback = Callable[[Dict[str, Any], str, str, Dict[str, Any]], Awaitable[None]]


class Transition:
    """Definition of a state transition."""

    def __init__(
        self,
        from_state: str,
        to_state: str,
        guard: Optional[GuardCondition] = None,
        description: str = ""
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.guard = guard
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


class StateMachine:
    """
    Generic state machine over MongoDB documents.

    Example:
        machine = StateMachine("refund", status_field="approval_status")
        machine.register("Draft", "Pending Accounts")
        updated = await machine.apply_transition(db.refunds, doc, "Pending Accounts")
    """

    def __init__(self, entity_name: str, status_field: str = "status"):
        """
        Args:
            entity_name: Name of the entity (for logging/errors)
            status_field: Field name that holds current state
        """
        self.entity_name = entity_name
        self.status_field = status_field

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], Transition] = {}
        self._states: Set[str] = set()
        self._post_callbacks: List[TransitionCallback] = []

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(
        self,
        from_state: str,
        to_state: str,
        guard: Optional[GuardCondition] = None,
        description: str = ""
    ) -> "StateMachine":
        """Register a state transition. Returns self for chaining."""
        key = (from_state, to_state)

        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' -> '{to_state}'"
            )

        self._transitions[key] = Transition(
            from_state=from_state,
            to_state=to_state,
            guard=guard,
            description=description
        )
        self._states.add(from_state)
        self._states.add(to_state)

        return self

    def on_post_transition(self, callback: TransitionCallback) -> "StateMachine":
        """Register callback to run AFTER a successful transition."""
        self._post_callbacks.append(callback)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        """Get list of valid target states from a given state."""
        return [dst for (src, dst) in self._transitions.keys() if src == from_state]

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """Check if transition is registered (does not check guards)."""
        return (from_state, to_state) in self._transitions

    def validate_transition(self, from_state: str, to_state: str, action: Optional[str] = None) -> None:
        """Raises InvalidStateTransitionError if the transition is not registered."""
        if not self.can_transition(from_state, to_state):
            raise InvalidStateTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                action=action or f"move to '{to_state}'",
                allowed=self.get_allowed_transitions(from_state)
            )

    async def check_guard(
        self,
        entity_doc: Dict[str, Any],
        from_state: str,
        to_state: str,
        context: Dict[str, Any]
    ) -> None:
        """Raises GuardConditionError if the guard rejects."""
        transition = self._transitions.get((from_state, to_state))

        if transition and transition.guard:
            allowed, reason = await transition.guard(entity_doc, context)
            if not allowed:
                raise GuardConditionError(
                    entity=self.entity_name,
                    from_state=from_state,
                    to_state=to_state,
                    reason=reason
                )

    # =========================================================================
    # TRANSITION EXECUTION
    # =========================================================================

    async def apply_transition(
        self,
        collection,
        entity_doc: Dict[str, Any],
        to_state: str,
        update: Optional[Dict[str, Any]] = None,
        push: Optional[Dict[str, Any]] = None,
        extra_filter: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        action: Optional[str] = None,
        session=None
    ) -> Dict[str, Any]:
        """
        Validate, guard and persist a transition as one conditional update.

        Args:
            collection: Motor collection holding the entity
            entity_doc: The entity as read by the caller (must have status_field)
            to_state: Target state
            update: Extra fields to $set together with the status
            push: Fields to $push (append-only arrays such as history)
            extra_filter: Extra conditions the document must still satisfy
            context: Passed to guards and callbacks
            action: Verb used in error messages

        Returns:
            The updated document.

        Raises:
            InvalidStateTransitionError: If transition not registered
            GuardConditionError: If guard condition fails
            ConcurrentModificationError: If the document moved under us
        """
        context = context or {}
        from_state = entity_doc.get(self.status_field)

        if from_state is None:
            raise InvalidStateTransitionError(
                entity=self.entity_name,
                from_state="<missing>",
                action=action or f"move to '{to_state}'"
            )

        self.validate_transition(from_state, to_state, action)
        await self.check_guard(entity_doc, from_state, to_state, context)

        now = datetime.utcnow()
        set_fields = {
            self.status_field: to_state,
            f"{self.status_field}_changed_at": now,
            "updated_at": now
        }
        set_fields.update(update or {})

        mongo_update: Dict[str, Any] = {"$set": set_fields}
        if push:
            mongo_update["$push"] = push

        query = {"_id": entity_doc["_id"], self.status_field: from_state}
        query.update(extra_filter or {})

        updated = await collection.find_one_and_update(
            query,
            mongo_update,
            return_document=True,
            session=session
        )

        if updated is None:
            logger.warning(
                f"[STATE_MACHINE] Lost race on {self.entity_name} {entity_doc['_id']}: "
                f"expected '{from_state}'"
            )
            raise ConcurrentModificationError(self.entity_name, str(entity_doc["_id"]), from_state)

        logger.info(
            f"[STATE_MACHINE] {self.entity_name} {entity_doc['_id']}: "
            f"'{from_state}' -> '{to_state}'"
        )

        for callback in self._post_callbacks:
            try:
                await callback(updated, from_state, to_state, context)
            except Exception as e:
                logger.error(f"[STATE_MACHINE] Post-callback error on {self.entity_name}: {e}")
                raise

        return updated

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )
