"""
RECEIPT & EXPENSE API ROUTES

Receipts and expenses are created in approval 'Draft'. Approval actions live
in approval_routes; ledger posting happens on final approval. An Admin can
retry a posting that failed after approval via /post-to-ledger.
"""

from fastapi import APIRouter, Depends, Request, Query, status
from typing import Optional

from auth import get_current_user
from approval_routes import authorize, present_document, SUBMIT_ROLES
from models import ReceiptCreate, ExpenseCreate

financial_router = APIRouter(prefix="/api", tags=["Receipts & Expenses"])


async def repost_to_ledger(request: Request, current_user: dict, kind: str, document_id: str):
    user = await authorize(request, current_user, "Admin")
    posted = await request.app.state.ledger_hook.repost(kind, document_id, user["user_id"])
    document = await request.app.state.financial_service.get_document(kind, document_id)
    return {"posted": posted, kind: present_document(document, user)}


# ============================================
# RECEIPTS
# ============================================

@financial_router.post("/receipts", status_code=status.HTTP_201_CREATED)
async def create_receipt(
    receipt_data: ReceiptCreate,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """Record money received against a sale (Draft)"""
    user = await authorize(request, current_user, *SUBMIT_ROLES)
    receipt = await request.app.state.financial_service.create_receipt(receipt_data, user)
    return present_document(receipt, user)


@financial_router.get("/receipts")
async def get_receipts(
    request: Request,
    approval_status: Optional[str] = Query(default=None),
    current_user: dict = Depends(get_current_user)
):
    user = await authorize(request, current_user)
    receipts = await request.app.state.financial_service.list_documents("receipt", approval_status)
    return [present_document(r, user) for r in receipts]


@financial_router.get("/receipts/{receipt_id}")
async def get_receipt(
    receipt_id: str,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    user = await authorize(request, current_user)
    receipt = await request.app.state.financial_service.get_document("receipt", receipt_id)
    return present_document(receipt, user)


@financial_router.post("/receipts/{receipt_id}/post-to-ledger")
async def post_receipt_to_ledger(
    receipt_id: str,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """Retry ledger posting for an Approved receipt (Admin)"""
    return await repost_to_ledger(request, current_user, "receipt", receipt_id)


# ============================================
# EXPENSES
# ============================================

@financial_router.post("/expenses", status_code=status.HTTP_201_CREATED)
async def create_expense(
    expense_data: ExpenseCreate,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """Record money paid out (Draft)"""
    user = await authorize(request, current_user, *SUBMIT_ROLES)
    expense = await request.app.state.financial_service.create_expense(expense_data, user)
    return present_document(expense, user)


@financial_router.get("/expenses")
async def get_expenses(
    request: Request,
    approval_status: Optional[str] = Query(default=None),
    current_user: dict = Depends(get_current_user)
):
    user = await authorize(request, current_user)
    expenses = await request.app.state.financial_service.list_documents("expense", approval_status)
    return [present_document(e, user) for e in expenses]


@financial_router.get("/expenses/{expense_id}")
async def get_expense(
    expense_id: str,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    user = await authorize(request, current_user)
    expense = await request.app.state.financial_service.get_document("expense", expense_id)
    return present_document(expense, user)


@financial_router.post("/expenses/{expense_id}/post-to-ledger")
async def post_expense_to_ledger(
    expense_id: str,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """Retry ledger posting for an Approved expense (Admin)"""
    return await repost_to_ledger(request, current_user, "expense", expense_id)
