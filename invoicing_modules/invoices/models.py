"""
Invoice Domain Models (``invoicing_modules.invoices.models``).

Responsibility
--------------
Frozen dataclass value objects for the nouns of the invoices module:
invoices, schedule milestones, payments, payment attachments and
payment-terms templates.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.  Returned by
``InvoiceService`` to callers; converted to and from ORM rows by
``orm.py``.

Invariants enforced
-------------------
* All models are ``frozen=True`` (immutable after construction).
* Money is integer cents -- NEVER ``float``.
* ``Invoice.paid_amount``, ``balance`` and ``status`` are computed by
  ``BalanceAggregator`` and stored alongside the invoice for reads.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from invoicing_engines.balance import PaymentStatus
from invoicing_engines.milestones import MilestoneSnapshot, MilestoneTrigger, TriggerStatus
from invoicing_engines.payments import AppliedPayment, PaymentCredit


class InvoiceType(str, Enum):
    """What the invoice is for."""
    PRODUCT = "product"
    SHIPPING = "shipping"
    DUTIES = "duties"
    INSPECTION = "inspection"
    STORAGE = "storage"


class LinkedEntityType(str, Enum):
    """Upstream record an invoice was raised against."""
    PURCHASE_ORDER = "purchase-order"
    SHIPMENT = "shipment"
    BATCH = "batch"
    INSPECTION = "inspection"


class CreationMethod(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class PaymentMethod(str, Enum):
    WIRE_TRANSFER = "wire-transfer"
    CREDIT_CARD = "credit-card"
    PAYPAL = "paypal"
    CHECK = "check"
    OTHER = "other"


@dataclass(frozen=True)
class Milestone:
    """A portion of an invoice's total, payable once its trigger fires."""
    id: UUID
    milestone_name: str
    percentage: Decimal
    amount: int
    trigger: MilestoneTrigger = MilestoneTrigger.MANUAL
    trigger_status: TriggerStatus = TriggerStatus.PENDING
    trigger_date: date | None = None
    offset_days: int = 0
    due_date: date | None = None
    paid_amount: int = 0
    paid_date: date | None = None
    sort_order: int = 0

    @property
    def remaining(self) -> int:
        return self.amount - self.paid_amount

    @property
    def is_settled(self) -> bool:
        return self.paid_amount == self.amount

    def to_snapshot(self) -> MilestoneSnapshot:
        return MilestoneSnapshot(
            milestone_id=self.id,
            milestone_name=self.milestone_name,
            percentage=self.percentage,
            amount=self.amount,
            trigger=self.trigger,
            offset_days=self.offset_days,
            trigger_status=self.trigger_status,
            trigger_date=self.trigger_date,
            due_date=self.due_date,
            paid_amount=self.paid_amount,
            paid_date=self.paid_date,
            sort_order=self.sort_order,
        )


@dataclass(frozen=True)
class PaymentAttachment:
    """Metadata for a file attached to a payment; the blob lives elsewhere."""
    id: UUID
    name: str
    content_type: str | None = None
    url: str | None = None
    storage_path: str | None = None
    size: int | None = None


@dataclass(frozen=True)
class Payment:
    """A recorded payment and the per-milestone credits it made."""
    id: UUID
    invoice_id: UUID
    date: date
    amount: int
    method: PaymentMethod = PaymentMethod.WIRE_TRANSFER
    reference: str | None = None
    notes: str | None = None
    schedule_item_ids: tuple[UUID, ...] = ()
    allocations: tuple[PaymentCredit, ...] = ()
    attachments: tuple[PaymentAttachment, ...] = ()

    @property
    def is_deletable(self) -> bool:
        return bool(self.reference)

    def to_applied(self) -> AppliedPayment:
        return AppliedPayment(
            payment_id=self.id,
            payment_date=self.date,
            amount=self.amount,
            schedule_item_ids=self.schedule_item_ids,
            credits=self.allocations,
        )


@dataclass(frozen=True)
class Invoice:
    """An invoice with its payment schedule, payments and computed totals."""
    id: UUID
    invoice_number: str
    invoice_date: date
    amount: int
    description: str = ""
    invoice_type: InvoiceType = InvoiceType.PRODUCT
    linked_entity_type: LinkedEntityType | None = None
    linked_entity_id: str | None = None
    linked_entity_name: str | None = None
    due_date: date | None = None
    payment_terms_template_id: str | None = None
    creation_method: CreationMethod = CreationMethod.MANUAL
    notes: str | None = None
    schedule: tuple[Milestone, ...] = ()
    payments: tuple[Payment, ...] = ()
    paid_amount: int = 0
    balance: int = 0
    status: PaymentStatus = PaymentStatus.UNPAID

    def milestone(self, milestone_id: UUID) -> Milestone | None:
        return next((m for m in self.schedule if m.id == milestone_id), None)

    def payment(self, payment_id: UUID) -> Payment | None:
        return next((p for p in self.payments if p.id == payment_id), None)


@dataclass(frozen=True)
class TemplateMilestone:
    name: str
    percentage: Decimal
    trigger: MilestoneTrigger
    offset_days: int = 0


@dataclass(frozen=True)
class PaymentTermsTemplate:
    """Reusable set of milestones an invoice schedule can be seeded from."""
    id: str
    name: str
    milestones: tuple[TemplateMilestone, ...]
    description: str = ""
    is_active: bool = True

    @property
    def total_percentage(self) -> Decimal:
        return sum((m.percentage for m in self.milestones), Decimal("0"))
