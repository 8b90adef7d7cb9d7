"""
CANCELLATION API ROUTES

Cancellation lifecycle:
- Create (Pending) snapshots the sale's paid amount and flags the sale Cancelled
- Update / delete only while Pending
- Approve / reject is a single-step decision; rejecting restores the sale
- Refund progress (Partial Refund, Refunded) is derived, never set here
"""

from fastapi import APIRouter, Depends, Request, Query, status
from datetime import date
from typing import Optional

from auth import get_current_user
from approval_routes import authorize
from core.document_utils import serialize_doc, to_datetime
from models import CancellationCreate, CancellationUpdate, CancellationDecision, UserRole

cancellation_router = APIRouter(prefix="/api/cancellations", tags=["Cancellations"])

EDIT_ROLES = (UserRole.ADMIN.value, UserRole.ACCOUNT_MANAGER.value)
DECIDE_ROLES = (UserRole.ADMIN.value, UserRole.HOF.value)


@cancellation_router.post("", status_code=status.HTTP_201_CREATED)
async def create_cancellation(
    cancellation_data: CancellationCreate,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """
    Cancel a sale.

    office_charge_percent defaults to DEFAULT_OFFICE_CHARGE_PERCENT. Nothing
    is written when the deductions exceed the amount paid.
    """
    user = await authorize(request, current_user, *EDIT_ROLES)
    cancellation = await request.app.state.cancellation_engine.create_cancellation(
        cancellation_data.sale_id,
        cancellation_data.reason,
        user,
        office_charge_percent=cancellation_data.office_charge_percent,
        other_deductions=cancellation_data.other_deductions,
        notes=cancellation_data.notes
    )
    return serialize_doc(cancellation)


@cancellation_router.get("")
async def get_cancellations(
    request: Request,
    cancellation_status: Optional[str] = Query(default=None, alias="status"),
    sale_id: Optional[str] = Query(default=None),
    from_date: Optional[date] = Query(default=None),
    to_date: Optional[date] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: dict = Depends(get_current_user)
):
    await authorize(request, current_user)
    result = await request.app.state.cancellation_engine.list_cancellations(
        status=cancellation_status,
        sale_id=sale_id,
        from_date=to_datetime(from_date),
        to_date=to_datetime(to_date),
        page=page,
        limit=limit
    )
    return {
        "items": [serialize_doc(c) for c in result["items"]],
        "pagination": result["pagination"]
    }


@cancellation_router.get("/stats")
async def get_cancellation_stats(
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    await authorize(request, current_user)
    stats = await request.app.state.cancellation_engine.get_stats()
    return serialize_doc(stats)


@cancellation_router.get("/{cancellation_id}")
async def get_cancellation(
    cancellation_id: str,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    await authorize(request, current_user)
    cancellation = await request.app.state.cancellation_engine.get_cancellation(cancellation_id)
    return serialize_doc(cancellation)


@cancellation_router.put("/{cancellation_id}")
async def update_cancellation(
    cancellation_id: str,
    update_data: CancellationUpdate,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """Edit a Pending cancellation. Amounts are recomputed."""
    user = await authorize(request, current_user, *EDIT_ROLES)
    updated = await request.app.state.cancellation_engine.update_cancellation(
        cancellation_id,
        user,
        reason=update_data.reason,
        office_charge_percent=update_data.office_charge_percent,
        other_deductions=update_data.other_deductions,
        notes=update_data.notes
    )
    return serialize_doc(updated)


@cancellation_router.delete("/{cancellation_id}")
async def delete_cancellation(
    cancellation_id: str,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """Soft delete a Pending cancellation (Admin only)"""
    checker = request.app.state.permission_checker
    user = await checker.get_authenticated_user(current_user)
    await checker.check_admin_role(user)

    await request.app.state.cancellation_engine.delete_cancellation(cancellation_id, user)
    return {"message": "Cancellation deleted", "cancellation_id": cancellation_id}


@cancellation_router.post("/{cancellation_id}/approve")
async def approve_cancellation(
    cancellation_id: str,
    request: Request,
    decision: Optional[CancellationDecision] = None,
    current_user: dict = Depends(get_current_user)
):
    user = await authorize(request, current_user, *DECIDE_ROLES)
    updated = await request.app.state.cancellation_engine.decide(
        cancellation_id, True, user, decision.remarks if decision else None
    )
    return serialize_doc(updated)


@cancellation_router.post("/{cancellation_id}/reject")
async def reject_cancellation(
    cancellation_id: str,
    request: Request,
    decision: Optional[CancellationDecision] = None,
    current_user: dict = Depends(get_current_user)
):
    """Reject a Pending cancellation. Remarks are required; the sale is restored."""
    user = await authorize(request, current_user, *DECIDE_ROLES)
    updated = await request.app.state.cancellation_engine.decide(
        cancellation_id, False, user, decision.remarks if decision else None
    )
    return serialize_doc(updated)
