"""
Invoice ORM Models (``invoicing_modules.invoices.orm``).

Responsibility
--------------
SQLAlchemy persistence models for the invoices module.  Maps the frozen
domain dataclasses from ``models.py`` to database tables.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``invoicing_kernel.db.base``
and sibling ``models.py``.  MUST NOT be imported by ``invoicing_kernel``.

Invariants enforced
-------------------
* Every payment-to-milestone credit is a ``PaymentAllocationModel`` row, so
  ``milestone.paid_amount == sum(allocations.amount)`` can be checked and a
  payment can be reversed exactly.
* A selected milestone that received no cents still gets a zero-amount
  allocation row; the rows together are the payment's selection.
* ``InvoiceModel.paid_amount``, ``balance`` and ``status`` are written by the
  service after every mutation and never edited directly.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Date,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from invoicing_kernel.db.base import TrackedBase


# ---------------------------------------------------------------------------
# 1. InvoiceModel
# ---------------------------------------------------------------------------


class InvoiceModel(TrackedBase):
    """
    ORM model for invoices.

    Maps to the ``Invoice`` frozen dataclass.  Milestones and payments are
    child tables loaded eagerly with ``selectin``.

    Guarantees:
        - invoice_number is unique (uq_invoices_invoice_number).
        - amount, paid_amount and balance are integer cents (BigInteger).
        - Enums stored as their string values.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_linked_entity", "linked_entity_type", "linked_entity_id"),
    )

    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), default="")
    invoice_type: Mapped[str] = mapped_column(String(50), default="product")
    linked_entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    linked_entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    linked_entity_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_terms_template_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    creation_method: Mapped[str] = mapped_column(String(20), default="manual")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_amount: Mapped[int] = mapped_column(default=0)
    balance: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="unpaid")

    schedule_items: Mapped[list["MilestoneModel"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MilestoneModel.sort_order",
    )
    payments: Mapped[list["PaymentModel"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PaymentModel.payment_date",
    )

    def to_dto(self):
        """Convert ORM model to frozen dataclass."""
        from invoicing_engines.balance import PaymentStatus
        from invoicing_modules.invoices.models import (
            CreationMethod,
            Invoice,
            InvoiceType,
            LinkedEntityType,
        )

        return Invoice(
            id=self.id,
            invoice_number=self.invoice_number,
            invoice_date=self.invoice_date,
            amount=self.amount,
            description=self.description,
            invoice_type=InvoiceType(self.invoice_type),
            linked_entity_type=(
                LinkedEntityType(self.linked_entity_type) if self.linked_entity_type else None
            ),
            linked_entity_id=self.linked_entity_id,
            linked_entity_name=self.linked_entity_name,
            due_date=self.due_date,
            payment_terms_template_id=self.payment_terms_template_id,
            creation_method=CreationMethod(self.creation_method),
            notes=self.notes,
            schedule=tuple(m.to_dto() for m in self.schedule_items),
            payments=tuple(p.to_dto() for p in self.payments),
            paid_amount=self.paid_amount,
            balance=self.balance,
            status=PaymentStatus(self.status),
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "InvoiceModel":
        """Create ORM model (without children) from frozen dataclass."""
        return cls(
            id=dto.id,
            invoice_number=dto.invoice_number,
            invoice_date=dto.invoice_date,
            description=dto.description,
            invoice_type=dto.invoice_type.value,
            linked_entity_type=dto.linked_entity_type.value if dto.linked_entity_type else None,
            linked_entity_id=dto.linked_entity_id,
            linked_entity_name=dto.linked_entity_name,
            amount=dto.amount,
            due_date=dto.due_date,
            payment_terms_template_id=dto.payment_terms_template_id,
            creation_method=dto.creation_method.value,
            notes=dto.notes,
            paid_amount=dto.paid_amount,
            balance=dto.balance,
            status=dto.status.value,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return (
            f"<InvoiceModel {self.invoice_number} "
            f"status={self.status} balance={self.balance}>"
        )


# ---------------------------------------------------------------------------
# 2. MilestoneModel
# ---------------------------------------------------------------------------


class MilestoneModel(TrackedBase):
    """
    ORM model for payment-schedule milestones.

    Guarantees:
        - invoice_id FK to invoices.id.
        - percentage is Numeric(7, 2) via the type_annotation_map.
    """

    __tablename__ = "payment_schedule_items"

    __table_args__ = (
        Index("idx_payment_schedule_items_invoice_id", "invoice_id"),
        Index("idx_payment_schedule_items_trigger", "trigger", "trigger_status"),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    milestone_name: Mapped[str] = mapped_column(String(255), default="")
    percentage: Mapped[Decimal] = mapped_column(nullable=False)
    amount: Mapped[int] = mapped_column(nullable=False)
    trigger: Mapped[str] = mapped_column(String(50), default="manual")
    trigger_status: Mapped[str] = mapped_column(String(20), default="pending")
    trigger_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    offset_days: Mapped[int] = mapped_column(default=0)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_amount: Mapped[int] = mapped_column(default=0)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    sort_order: Mapped[int] = mapped_column(default=0)

    invoice: Mapped["InvoiceModel"] = relationship(back_populates="schedule_items")

    def to_dto(self):
        from invoicing_engines.milestones import MilestoneTrigger, TriggerStatus
        from invoicing_modules.invoices.models import Milestone

        return Milestone(
            id=self.id,
            milestone_name=self.milestone_name,
            percentage=Decimal(self.percentage).quantize(Decimal("0.01")),
            amount=self.amount,
            trigger=MilestoneTrigger(self.trigger),
            trigger_status=TriggerStatus(self.trigger_status),
            trigger_date=self.trigger_date,
            offset_days=self.offset_days,
            due_date=self.due_date,
            paid_amount=self.paid_amount,
            paid_date=self.paid_date,
            sort_order=self.sort_order,
        )

    def apply_snapshot(self, snapshot) -> None:
        """Copy engine-computed state from a ``MilestoneSnapshot`` onto the row."""
        self.milestone_name = snapshot.milestone_name
        self.percentage = snapshot.percentage
        self.amount = snapshot.amount
        self.trigger = snapshot.trigger.value
        self.trigger_status = snapshot.trigger_status.value
        self.trigger_date = snapshot.trigger_date
        self.offset_days = snapshot.offset_days
        self.due_date = snapshot.due_date
        self.paid_amount = snapshot.paid_amount
        self.paid_date = snapshot.paid_date
        self.sort_order = snapshot.sort_order

    def __repr__(self) -> str:
        return f"<MilestoneModel {self.milestone_name} {self.percentage}% paid={self.paid_amount}>"


# ---------------------------------------------------------------------------
# 3. PaymentModel
# ---------------------------------------------------------------------------


class PaymentModel(TrackedBase):
    """
    ORM model for recorded payments.

    Guarantees:
        - amount > 0 (enforced by PaymentAllocator before insert).
        - Deleting a payment deletes its allocation and attachment rows.
    """

    __tablename__ = "invoice_payments"

    __table_args__ = (
        Index("idx_invoice_payments_invoice_id", "invoice_id"),
        Index("idx_invoice_payments_reference", "reference"),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[int] = mapped_column(nullable=False)
    method: Mapped[str] = mapped_column(String(30), default="wire-transfer")
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    invoice: Mapped["InvoiceModel"] = relationship(back_populates="payments")
    allocations: Mapped[list["PaymentAllocationModel"]] = relationship(
        back_populates="payment",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    attachments: Mapped[list["PaymentAttachmentModel"]] = relationship(
        back_populates="payment",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self):
        from invoicing_engines.payments import PaymentCredit
        from invoicing_modules.invoices.models import Payment, PaymentMethod

        return Payment(
            id=self.id,
            invoice_id=self.invoice_id,
            date=self.payment_date,
            amount=self.amount,
            method=PaymentMethod(self.method),
            reference=self.reference,
            notes=self.notes,
            schedule_item_ids=tuple(a.schedule_item_id for a in self.allocations),
            allocations=tuple(
                PaymentCredit(milestone_id=a.schedule_item_id, amount=a.amount)
                for a in self.allocations
                if a.amount > 0
            ),
            attachments=tuple(a.to_dto() for a in self.attachments),
        )

    def __repr__(self) -> str:
        return f"<PaymentModel {self.reference or self.id} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 4. PaymentAllocationModel
# ---------------------------------------------------------------------------


class PaymentAllocationModel(TrackedBase):
    """Cents one payment credited to one milestone."""

    __tablename__ = "payment_allocations"

    __table_args__ = (
        UniqueConstraint(
            "payment_id", "schedule_item_id", name="uq_payment_allocations_payment_item"
        ),
        Index("idx_payment_allocations_schedule_item_id", "schedule_item_id"),
    )

    payment_id: Mapped[UUID] = mapped_column(ForeignKey("invoice_payments.id"), nullable=False)
    schedule_item_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_schedule_items.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(nullable=False)

    payment: Mapped["PaymentModel"] = relationship(back_populates="allocations")


# ---------------------------------------------------------------------------
# 5. PaymentAttachmentModel
# ---------------------------------------------------------------------------


class PaymentAttachmentModel(TrackedBase):
    """Attachment metadata; blob transport is external."""

    __tablename__ = "payment_attachments"

    __table_args__ = (
        Index("idx_payment_attachments_payment_id", "payment_id"),
    )

    payment_id: Mapped[UUID] = mapped_column(ForeignKey("invoice_payments.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    storage_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    size: Mapped[int | None] = mapped_column(nullable=True)

    payment: Mapped["PaymentModel"] = relationship(back_populates="attachments")

    def to_dto(self):
        from invoicing_modules.invoices.models import PaymentAttachment

        return PaymentAttachment(
            id=self.id,
            name=self.name,
            content_type=self.content_type,
            url=self.url,
            storage_path=self.storage_path,
            size=self.size,
        )

    @classmethod
    def from_dto(cls, dto, payment_id: UUID, created_by_id: UUID) -> "PaymentAttachmentModel":
        return cls(
            id=dto.id,
            payment_id=payment_id,
            name=dto.name,
            content_type=dto.content_type,
            url=dto.url,
            storage_path=dto.storage_path,
            size=dto.size,
            created_by_id=created_by_id,
        )
