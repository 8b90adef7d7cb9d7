"""
WORKFLOW ERRORS

All approval, cancellation and refund operations report failures through
these exceptions. Each carries a stable error code and the HTTP status the
API layer answers with. None of them is retried by the core.
"""

from typing import Optional, List


class WorkflowError(Exception):
    """Base exception for workflow errors."""
    code = "WORKFLOW_ERROR"
    http_status = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidDeductionError(WorkflowError):
    """Raised when a refundable or derived amount would be negative."""
    code = "INVALID_DEDUCTION"
    http_status = 400


class InvalidInstallmentCountError(WorkflowError):
    """Raised when an installment count is outside the allowed range."""
    code = "INVALID_INSTALLMENT_COUNT"
    http_status = 400

    def __init__(self, count, message: Optional[str] = None):
        self.count = count
        super().__init__(message or f"Number of installments must be between 1 and 36, got {count}")


class InvalidStateTransitionError(WorkflowError):
    """Raised when an action is not valid from the entity's current state."""
    code = "INVALID_STATE_TRANSITION"
    http_status = 409

    def __init__(self, entity: str, from_state: str, action: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.action = action
        self.allowed = allowed or []

        allowed_str = f" Allowed from '{from_state}': {self.allowed}" if self.allowed else ""
        super().__init__(f"Cannot {action} {entity} in state '{from_state}'.{allowed_str}")


class ForbiddenError(WorkflowError):
    """Raised when the actor's role is not the required approver."""
    code = "FORBIDDEN"
    http_status = 403


class MissingReasonError(WorkflowError):
    """Raised when a rejection carries no remarks."""
    code = "MISSING_REASON"
    http_status = 400

    def __init__(self, message: str = "Remarks are required when rejecting"):
        super().__init__(message)


class DuplicateCancellationError(WorkflowError):
    """Raised when a sale already has a live cancellation."""
    code = "DUPLICATE_CANCELLATION"
    http_status = 409


class ScheduleAlreadyExistsError(WorkflowError):
    """Raised when refunds were already scheduled for a cancellation."""
    code = "SCHEDULE_ALREADY_EXISTS"
    http_status = 409

    def __init__(self, cancellation_id: str):
        self.cancellation_id = cancellation_id
        super().__init__(f"Refund schedule already exists for cancellation {cancellation_id}")


class ConcurrentModificationError(WorkflowError):
    """Raised when another actor changed the entity between read and write."""
    code = "CONCURRENT_MODIFICATION"
    http_status = 409

    def __init__(self, entity: str, entity_id: str, expected_state: str):
        self.entity = entity
        self.entity_id = entity_id
        self.expected_state = expected_state
        super().__init__(
            f"{entity} {entity_id} is no longer in state '{expected_state}'. "
            f"Reload and try again."
        )


class NotFoundError(WorkflowError):
    """Raised when a referenced document does not exist or is inactive."""
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidAmountError(WorkflowError):
    """Raised when a document amount is zero or negative."""
    code = "INVALID_AMOUNT"
    http_status = 400
