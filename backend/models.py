from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, date
from enum import Enum


# ============================================
# ENUMS
# ============================================
class UserRole(str, Enum):
    ADMIN = "Admin"
    ACCOUNT_MANAGER = "AccountManager"
    HOF = "HOF"  # Head of Finance


class EntityKind(str, Enum):
    RECEIPT = "receipt"
    EXPENSE = "expense"
    REFUND = "refund"


class ApprovalStatus(str, Enum):
    DRAFT = "Draft"
    PENDING_ACCOUNTS = "Pending Accounts"
    PENDING_HOF = "Pending HOF"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class ApprovalLevel(str, Enum):
    ACCOUNTS = "Accounts"
    HOF = "HOF"


class ApprovalAction(str, Enum):
    APPROVED = "Approved"
    REJECTED = "Rejected"


class SaleStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    ON_HOLD = "On Hold"


class CancellationStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    PARTIAL_REFUND = "Partial Refund"
    REFUNDED = "Refunded"


class RefundStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    CANCELLED = "Cancelled"


class PaymentMethod(str, Enum):
    CASH = "Cash"
    BANK_TRANSFER = "Bank Transfer"
    CHEQUE = "Cheque"
    MOBILE_WALLET = "Mobile Wallet"


class ReceiptType(str, Enum):
    BOOKING = "Booking"
    INSTALLMENT = "Installment"
    REGISTRATION = "Registration"
    HANDOVER = "Handover"
    OTHER = "Other"


# ============================================
# APPROVAL HISTORY (embedded, append-only)
# ============================================
class ApprovalHistoryEntry(BaseModel):
    approved_by: str
    approval_level: ApprovalLevel
    approved_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    action: ApprovalAction
    remarks: Optional[str] = Field(default=None, max_length=500)

    class Config:
        use_enum_values = True


class ApprovalActionRequest(BaseModel):
    remarks: Optional[str] = Field(default=None, max_length=500)


# ============================================
# CANCELLATION MODELS
# ============================================
class CancellationCreate(BaseModel):
    sale_id: str
    reason: str = Field(min_length=1, max_length=1000)
    # Range checks happen in the money math so they surface as INVALID_DEDUCTION
    office_charge_percent: Optional[float] = None
    other_deductions: float = 0
    notes: Optional[str] = Field(default=None, max_length=1000)


class CancellationUpdate(BaseModel):
    reason: Optional[str] = Field(default=None, min_length=1, max_length=1000)
    office_charge_percent: Optional[float] = None
    other_deductions: Optional[float] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class CancellationDecision(BaseModel):
    remarks: Optional[str] = Field(default=None, max_length=500)


# ============================================
# REFUND MODELS
# ============================================
class RefundScheduleCreate(BaseModel):
    cancellation_id: str
    number_of_installments: int
    start_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class MarkPaidRequest(BaseModel):
    payment_method: PaymentMethod
    payment_date: Optional[date] = None
    transaction_ref: Optional[str] = Field(default=None, max_length=100)
    remarks: Optional[str] = Field(default=None, max_length=1000)


# ============================================
# RECEIPT / EXPENSE MODELS
# ============================================
class ReceiptCreate(BaseModel):
    sale_id: str
    client_id: str
    receipt_type: ReceiptType = ReceiptType.INSTALLMENT
    amount: float
    method: PaymentMethod
    receipt_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class ExpenseCreate(BaseModel):
    category: str = Field(min_length=1, max_length=100)
    vendor: Optional[str] = Field(default=None, max_length=200)
    description: str = Field(min_length=1, max_length=500)
    amount: float
    payment_method: PaymentMethod
    expense_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


# ============================================
# QUEUE RESPONSE
# ============================================
class ApprovalQueueResponse(BaseModel):
    role: UserRole
    awaiting_status: ApprovalStatus
    count: int
    items: List[dict]
