"""
Typed Exception Hierarchy for the invoicing packages.

Every error is a typed class with a machine-readable ``code`` class
attribute and structured attributes, so callers catch by type and report
by code instead of parsing message strings.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    InvoicingError (base)
    |
    +-- ScheduleError
    |   +-- ScheduleInvalidError
    |
    +-- PaymentError
    |   +-- PaymentValidationError
    |   +-- AllocationInvariantError
    |
    +-- DeletionError
    |   +-- ConfirmationMismatchError
    |   +-- UndeletablePaymentError
    |
    +-- NotFoundError
        +-- InvoiceNotFoundError
        +-- PaymentNotFoundError
        +-- MilestoneNotFoundError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category   | Code                     | When Raised
-----------|--------------------------|-------------------------------------------
Schedule   | SCHEDULE_INVALID         | Percentages off 100 by >= 0.01, or an edit
           |                          | would undercut money already paid
-----------|--------------------------|-------------------------------------------
Payment    | PAYMENT_VALIDATION       | amount <= 0, amount > balance, missing or
           |                          | unknown milestone selection
           | ALLOCATION_INVARIANT     | Credits would not sum to the payment
           |                          | (programming error, never user-facing)
-----------|--------------------------|-------------------------------------------
Deletion   | CONFIRMATION_MISMATCH    | Typed reference != stored reference
           | UNDELETABLE_PAYMENT      | Payment has no reference string
-----------|--------------------------|-------------------------------------------
Lookup     | INVOICE_NOT_FOUND        | Unknown invoice id
           | PAYMENT_NOT_FOUND        | Unknown payment id on the invoice
           | MILESTONE_NOT_FOUND      | Unknown milestone id on the invoice

===============================================================================
HANDLING PATTERNS
===============================================================================

Engines raise these exceptions.  ``InvoiceService`` converts the expected,
recoverable ones into typed outcome values (status enum + the error
instance); ``AllocationInvariantError`` always propagates because it
signals a bug rather than a user mistake.

    outcome = service.record_payment(invoice_id, amount=300_00, ...)
    if not outcome.is_success:
        return {"error": outcome.error.code, "rule": outcome.error.rule}
"""


class InvoicingError(Exception):
    """
    Base exception for all invoicing errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "INVOICING_ERROR"


# Schedule-related exceptions


class ScheduleError(InvoicingError):
    """Base exception for payment-schedule errors."""

    code: str = "SCHEDULE_ERROR"


class ScheduleInvalidError(ScheduleError):
    """
    Schedule cannot be committed.

    Recoverable: the user corrects the milestones and retries.  Nothing is
    persisted when this is raised.
    """

    code: str = "SCHEDULE_INVALID"

    def __init__(
        self,
        total_percentage,
        reason: str | None = None,
        milestone_id: str | None = None,
    ):
        self.total_percentage = total_percentage
        self.reason = reason
        self.milestone_id = milestone_id
        detail = reason or f"milestone percentages total {total_percentage}%, expected 100%"
        super().__init__(f"Invalid payment schedule: {detail}")


# Payment-related exceptions


class PaymentError(InvoicingError):
    """Base exception for payment errors."""

    code: str = "PAYMENT_ERROR"


class PaymentValidationError(PaymentError):
    """
    A payment request violates one of the recording preconditions.

    ``rule`` names the violated precondition so callers can surface the
    right message without parsing text.
    """

    code: str = "PAYMENT_VALIDATION"

    AMOUNT_NOT_POSITIVE = "amount_not_positive"
    AMOUNT_EXCEEDS_BALANCE = "amount_exceeds_balance"
    MILESTONES_REQUIRED = "milestones_required"
    UNKNOWN_MILESTONE = "unknown_milestone"
    MILESTONE_SETTLED = "milestone_settled"
    AMOUNT_EXCEEDS_SELECTION = "amount_exceeds_selection"

    def __init__(self, rule: str, message: str, **details):
        self.rule = rule
        self.details = details
        super().__init__(message)


class AllocationInvariantError(PaymentError):
    """
    Allocation would lose or invent money.

    Unreachable when preconditions hold; treat as a programming error.
    """

    code: str = "ALLOCATION_INVARIANT"

    def __init__(self, amount: int, allocated: int, selected_remaining: int):
        self.amount = amount
        self.allocated = allocated
        self.selected_remaining = selected_remaining
        super().__init__(
            f"Allocation conservation violated: allocated {allocated} of "
            f"{amount} against {selected_remaining} remaining"
        )


# Deletion-related exceptions


class DeletionError(InvoicingError):
    """Base exception for payment deletion errors."""

    code: str = "DELETION_ERROR"


class ConfirmationMismatchError(DeletionError):
    """The typed confirmation does not exactly match the payment reference."""

    code: str = "CONFIRMATION_MISMATCH"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(
            f"Confirmation does not match the reference of payment {payment_id}"
        )


class UndeletablePaymentError(DeletionError):
    """
    Payment has no reference and cannot be deleted through this path.

    Requires an out-of-band correction.
    """

    code: str = "UNDELETABLE_PAYMENT"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} has no reference and cannot be deleted")


# Lookup exceptions


class NotFoundError(InvoicingError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    """Invoice with given ID was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class PaymentNotFoundError(NotFoundError):
    """Payment with given ID was not found on the invoice."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str, invoice_id: str | None = None):
        self.payment_id = payment_id
        self.invoice_id = invoice_id
        super().__init__(f"Payment not found: {payment_id}")


class MilestoneNotFoundError(NotFoundError):
    """Milestone with given ID was not found on the schedule."""

    code: str = "MILESTONE_NOT_FOUND"

    def __init__(self, milestone_id: str):
        self.milestone_id = milestone_id
        super().__init__(f"Milestone not found: {milestone_id}")
