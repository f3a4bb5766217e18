"""
Invoices Module.

Handles invoices, their milestone payment schedules, payments and
payment attachments.

Schedule editing, trigger state, allocation and balances come from the
shared engines.
"""

from invoicing_modules.invoices.config import InvoicesConfig
from invoicing_modules.invoices.models import (
    CreationMethod,
    Invoice,
    InvoiceType,
    LinkedEntityType,
    Milestone,
    Payment,
    PaymentAttachment,
    PaymentMethod,
    PaymentTermsTemplate,
    TemplateMilestone,
)
from invoicing_modules.invoices.service import (
    DeletionOutcome,
    InvoiceLockRegistry,
    InvoiceService,
    OutcomeStatus,
    PaymentOutcome,
    ScheduleOutcome,
)

__all__ = [
    "CreationMethod",
    "DeletionOutcome",
    "Invoice",
    "InvoiceLockRegistry",
    "InvoiceService",
    "InvoiceType",
    "InvoicesConfig",
    "LinkedEntityType",
    "Milestone",
    "OutcomeStatus",
    "Payment",
    "PaymentAttachment",
    "PaymentMethod",
    "PaymentOutcome",
    "PaymentTermsTemplate",
    "ScheduleOutcome",
    "TemplateMilestone",
]
