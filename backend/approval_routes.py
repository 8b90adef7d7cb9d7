"""
APPROVAL API ROUTES

Two-tier approval actions shared by receipts, expenses and refunds:
- POST /api/{receipts|expenses|refunds}/{id}/submit
- POST /api/{receipts|expenses|refunds}/{id}/approve
- POST /api/{receipts|expenses|refunds}/{id}/reject
- GET  /api/{receipts|expenses|refunds}/approval-queue
- GET  /api/approval-queue (all kinds merged)

Route role lists are a coarse first filter. Whether the caller may decide
at the document's current level is answered by can_approve in the workflow.
"""

from fastapi import APIRouter, Depends, Request
from typing import Dict, Any, Optional
import logging

from auth import get_current_user
from core.approval_workflow import allowed_actions
from core.approval_queue import queue_status_for
from core.document_utils import serialize_doc
from models import ApprovalActionRequest, ApprovalQueueResponse, UserRole

logger = logging.getLogger(__name__)

SUBMIT_ROLES = (UserRole.ADMIN.value, UserRole.ACCOUNT_MANAGER.value)
DECIDE_ROLES = (UserRole.ADMIN.value, UserRole.ACCOUNT_MANAGER.value, UserRole.HOF.value)

KIND_PREFIXES = {
    "receipt": "/api/receipts",
    "expense": "/api/expenses",
    "refund": "/api/refunds",
}


def present_document(doc: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a receipt/expense/refund with the caller's allowed actions attached."""
    data = serialize_doc(doc)
    data["allowed_actions"] = allowed_actions(user.get("role"), doc.get("approval_status"))
    return data


async def authorize(request: Request, current_user: dict, *roles: str) -> Dict[str, Any]:
    checker = request.app.state.permission_checker
    user = await checker.get_authenticated_user(current_user)
    if roles:
        await checker.check_roles(user, *roles)
    return user


async def build_queue_response(request: Request, user: Dict[str, Any], kinds=None) -> ApprovalQueueResponse:
    awaiting = queue_status_for(user.get("role"))
    items = await request.app.state.approval_queue.get_queue(user.get("role"), kinds)
    return ApprovalQueueResponse(
        role=user["role"],
        awaiting_status=awaiting,
        count=len(items),
        items=[present_document(item, user) for item in items]
    )


def create_approval_router(kind: str) -> APIRouter:
    """Submit / approve / reject / queue endpoints for one entity kind."""
    router = APIRouter(prefix=KIND_PREFIXES[kind], tags=[f"{kind.capitalize()} Approvals"])

    @router.get("/approval-queue", response_model=ApprovalQueueResponse)
    async def get_kind_queue(
        request: Request,
        current_user: dict = Depends(get_current_user)
    ):
        """Items of this kind waiting on the caller's approval level."""
        user = await authorize(request, current_user, *DECIDE_ROLES)
        return await build_queue_response(request, user, [kind])

    @router.post("/{entity_id}/submit")
    async def submit(
        entity_id: str,
        request: Request,
        current_user: dict = Depends(get_current_user)
    ):
        """Draft -> Pending Accounts"""
        user = await authorize(request, current_user, *SUBMIT_ROLES)
        updated = await request.app.state.workflows[kind].submit(entity_id, user)
        return present_document(updated, user)

    @router.post("/{entity_id}/approve")
    async def approve(
        entity_id: str,
        request: Request,
        action: Optional[ApprovalActionRequest] = None,
        current_user: dict = Depends(get_current_user)
    ):
        """Advance one approval level. AccountManager decides Pending Accounts, HOF/Admin decide Pending HOF."""
        user = await authorize(request, current_user, *DECIDE_ROLES)
        remarks = action.remarks if action else None
        updated = await request.app.state.workflows[kind].approve(entity_id, user, remarks)
        return present_document(updated, user)

    @router.post("/{entity_id}/reject")
    async def reject(
        entity_id: str,
        request: Request,
        action: Optional[ApprovalActionRequest] = None,
        current_user: dict = Depends(get_current_user)
    ):
        """Reject at the current level. Remarks are required."""
        user = await authorize(request, current_user, *DECIDE_ROLES)
        remarks = action.remarks if action else None
        updated = await request.app.state.workflows[kind].reject(entity_id, user, remarks)
        return present_document(updated, user)

    return router


receipt_approval_router = create_approval_router("receipt")
expense_approval_router = create_approval_router("expense")
refund_approval_router = create_approval_router("refund")

approval_queue_router = APIRouter(prefix="/api", tags=["Approval Queue"])


@approval_queue_router.get("/approval-queue", response_model=ApprovalQueueResponse)
async def get_approval_queue(
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """
    Everything waiting on the caller's level across receipts, expenses and
    refunds, newest submission first.
    """
    user = await authorize(request, current_user, *DECIDE_ROLES)
    return await build_queue_response(request, user)
