"""
Approval, Cancellation and Refund Engine Modules
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    round_currency_unit,
    to_decimal128,
    validate_positive,
    calculate_percentage,
    add_months,
    compute_office_charge,
    compute_refundable,
    validate_installment_count,
    split_into_installments,
    InstallmentSlice,
    FinancialPrecisionError,
    NegativeValueError
)

from .errors import (
    WorkflowError,
    InvalidDeductionError,
    InvalidInstallmentCountError,
    InvalidStateTransitionError,
    ForbiddenError,
    MissingReasonError,
    DuplicateCancellationError,
    ScheduleAlreadyExistsError,
    ConcurrentModificationError,
    NotFoundError,
    InvalidAmountError
)

from .atomic_numbering import AtomicDocumentNumbering

from .state_machine import StateMachine, Transition, GuardConditionError

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'round_currency_unit',
    'to_decimal128',
    'validate_positive',
    'calculate_percentage',
    'add_months',
    'compute_office_charge',
    'compute_refundable',
    'validate_installment_count',
    'split_into_installments',
    'InstallmentSlice',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Errors
    'WorkflowError',
    'InvalidDeductionError',
    'InvalidInstallmentCountError',
    'InvalidStateTransitionError',
    'ForbiddenError',
    'MissingReasonError',
    'DuplicateCancellationError',
    'ScheduleAlreadyExistsError',
    'ConcurrentModificationError',
    'NotFoundError',
    'InvalidAmountError',
    # Atomic Numbering
    'AtomicDocumentNumbering',
    # State Machine
    'StateMachine',
    'Transition',
    'GuardConditionError',
]
