"""
REFUND API ROUTES

- POST /api/refunds/schedule       installment schedule for an approved cancellation
- POST /api/refunds/{id}/mark-paid close out an approved refund
- GET  /api/refunds, /api/refunds/stats, /api/refunds/{id}

Refund approval actions are served by approval_routes.
"""

from fastapi import APIRouter, Depends, Request, Query, status
from typing import Optional

from auth import get_current_user
from approval_routes import authorize, present_document, SUBMIT_ROLES
from core.document_utils import serialize_doc
from models import RefundScheduleCreate, MarkPaidRequest

refund_router = APIRouter(prefix="/api/refunds", tags=["Refunds"])


@refund_router.post("/schedule", status_code=status.HTTP_201_CREATED)
async def create_refund_schedule(
    schedule_data: RefundScheduleCreate,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """
    Split the cancellation's refundable amount into monthly installments.

    One Draft refund per installment; installments sum to refundable_amount
    exactly, the last one absorbing the remainder.
    """
    user = await authorize(request, current_user, *SUBMIT_ROLES)
    refunds = await request.app.state.refund_scheduler.create_schedule(
        schedule_data.cancellation_id,
        schedule_data.number_of_installments,
        user,
        start_date=schedule_data.start_date,
        notes=schedule_data.notes
    )
    return {
        "cancellation_id": schedule_data.cancellation_id,
        "count": len(refunds),
        "refunds": [present_document(r, user) for r in refunds]
    }


@refund_router.get("")
async def get_refunds(
    request: Request,
    cancellation_id: Optional[str] = Query(default=None),
    refund_status: Optional[str] = Query(default=None, alias="status"),
    approval_status: Optional[str] = Query(default=None),
    current_user: dict = Depends(get_current_user)
):
    user = await authorize(request, current_user)
    refunds = await request.app.state.refund_scheduler.list_refunds(
        cancellation_id=cancellation_id,
        status=refund_status,
        approval_status=approval_status
    )
    return [present_document(r, user) for r in refunds]


@refund_router.get("/stats")
async def get_refund_stats(
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    await authorize(request, current_user)
    stats = await request.app.state.refund_scheduler.get_stats()
    return serialize_doc(stats)


@refund_router.get("/{refund_id}")
async def get_refund(
    refund_id: str,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    user = await authorize(request, current_user)
    refund = await request.app.state.refund_scheduler.get_refund(refund_id)
    return present_document(refund, user)


@refund_router.post("/{refund_id}/mark-paid")
async def mark_refund_paid(
    refund_id: str,
    payment: MarkPaidRequest,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """Pending -> Paid for an Approved refund. Re-derives the cancellation status."""
    user = await authorize(request, current_user, *SUBMIT_ROLES)
    updated = await request.app.state.refund_scheduler.mark_as_paid(
        refund_id,
        payment.payment_method.value,
        user,
        payment_date=payment.payment_date,
        transaction_ref=payment.transaction_ref,
        remarks=payment.remarks
    )
    return present_document(updated, user)
