"""
Invoices Module Service - Orchestrates payment-schedule operations via engines.

Thin glue layer that:
1. Calls ScheduleEditor to validate schedule edits before they are written
2. Calls TriggerStatusResolver for trigger events and overdue checks
3. Calls PaymentAllocator to record and reverse payments
4. Calls BalanceAggregator to recompute invoice paid/balance/status

All computation lives in engines.  This service owns the transaction
boundary: each operation runs in one session, commits on success and rolls
back on any failure.  Mutations of one invoice are serialized by an
in-process per-invoice lock plus ``SELECT ... FOR UPDATE`` on the invoice row.

Expected failures (validation, confirmation mismatch, unknown ids) come
back as typed outcome values.  ``AllocationInvariantError`` propagates.

Usage:
    service = InvoiceService(get_session_factory(), clock=SystemClock())
    invoice = service.create_invoice(
        invoice_number="INV-1001", invoice_date=date(2024, 1, 15),
        amount=1_000_000, actor_id=actor_id,
    )
    outcome = service.record_payment(
        invoice.id, amount=300_000, payment_date=date(2024, 1, 20),
        milestone_ids=[invoice.schedule[0].id], reference="WT-001",
        actor_id=actor_id,
    )
"""

from __future__ import annotations

import threading
import weakref
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date, timedelta
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from invoicing_engines.balance import BalanceAggregator, FinancialSummary
from invoicing_engines.milestones import MilestoneSnapshot, MilestoneTrigger, TriggerStatus
from invoicing_engines.payments import PaymentAllocator
from invoicing_engines.schedule import (
    EditableMilestone,
    ScheduleChangeSet,
    ScheduleEditor,
    ScheduledMilestone,
)
from invoicing_engines.triggers import TimelineEntry, TriggerStatusResolver
from invoicing_kernel.domain.clock import Clock, SystemClock
from invoicing_kernel.exceptions import (
    DeletionError,
    InvoiceNotFoundError,
    MilestoneNotFoundError,
    NotFoundError,
    PaymentNotFoundError,
    PaymentValidationError,
    ScheduleInvalidError,
    ConfirmationMismatchError,
    UndeletablePaymentError,
)
from invoicing_kernel.logging_config import LogContext, get_logger
from invoicing_modules.invoices.config import InvoicesConfig
from invoicing_modules.invoices.models import (
    CreationMethod,
    Invoice,
    InvoiceType,
    LinkedEntityType,
    Payment,
    PaymentAttachment,
    PaymentMethod,
    PaymentTermsTemplate,
)
from invoicing_modules.invoices.orm import (
    InvoiceModel,
    MilestoneModel,
    PaymentAllocationModel,
    PaymentAttachmentModel,
    PaymentModel,
)

logger = get_logger("modules.invoices.service")


def _as_uuid(value: UUID | str) -> UUID | str:
    """Parse string ids; anything unparseable is passed through and reported as unknown."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return value


# =============================================================================
# Outcomes
# =============================================================================


class OutcomeStatus(str, Enum):
    """Status of a mutating invoice operation."""

    COMMITTED = "committed"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of ``record_payment``."""

    status: OutcomeStatus
    payment: Payment | None = None
    invoice: Invoice | None = None
    error: PaymentValidationError | NotFoundError | None = None

    @property
    def is_success(self) -> bool:
        return self.status == OutcomeStatus.COMMITTED


@dataclass(frozen=True)
class DeletionOutcome:
    """Result of ``delete_payment``; ``deleted`` is False whenever ``error`` is set."""

    status: OutcomeStatus
    deleted: bool = False
    invoice: Invoice | None = None
    error: DeletionError | NotFoundError | None = None

    @property
    def is_success(self) -> bool:
        return self.deleted


@dataclass(frozen=True)
class ScheduleOutcome:
    """Result of ``save_schedule``."""

    status: OutcomeStatus
    invoice: Invoice | None = None
    change_set: ScheduleChangeSet | None = None
    error: ScheduleInvalidError | NotFoundError | None = None

    @property
    def is_success(self) -> bool:
        return self.status == OutcomeStatus.COMMITTED


# =============================================================================
# Locking
# =============================================================================


class InvoiceLock:
    """A ``threading.Lock`` that the registry can hold weakly."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> bool:
        return self._lock.acquire()

    def __exit__(self, *exc_info) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


class InvoiceLockRegistry:
    """
    One in-process lock per invoice id.

    Serializes concurrent mutations of the same invoice inside this
    process; ``SELECT ... FOR UPDATE`` covers other processes.  Locks are
    held weakly, so an invoice's entry disappears once no thread is
    holding or waiting on it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, InvoiceLock] = (
            weakref.WeakValueDictionary()
        )
        self._guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, invoice_id: UUID | str) -> InvoiceLock:
        key = str(invoice_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = InvoiceLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, invoice_id: UUID | str) -> Iterator[None]:
        with self.lock_for(invoice_id):
            yield


# =============================================================================
# Service
# =============================================================================


class InvoiceService:
    """
    Orchestrates invoice payment-schedule operations through engines.

    Engine composition:
    - ScheduleEditor: schedule validation and change sets
    - TriggerStatusResolver: trigger events and overdue detection
    - PaymentAllocator: payment recording and reversal
    - BalanceAggregator: invoice roll-up and dashboard summary

    Transaction boundary: one session per operation; commit on success,
    rollback on failure.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        config: InvoicesConfig | None = None,
        locks: InvoiceLockRegistry | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._config = config or InvoicesConfig.with_defaults()
        self._locks = locks if locks is not None else InvoiceLockRegistry()

        # Stateless engines
        self._resolver = TriggerStatusResolver()
        self._allocator = PaymentAllocator(
            require_milestones_when_unpaid=self._config.require_milestones_when_unpaid,
        )
        self._aggregator = BalanceAggregator()

    # =========================================================================
    # Invoices
    # =========================================================================

    def create_invoice(
        self,
        *,
        invoice_number: str,
        invoice_date: date,
        amount: int,
        actor_id: UUID,
        description: str = "",
        invoice_type: InvoiceType = InvoiceType.PRODUCT,
        linked_entity_type: LinkedEntityType | None = None,
        linked_entity_id: str | None = None,
        linked_entity_name: str | None = None,
        due_date: date | None = None,
        template: PaymentTermsTemplate | None = None,
        creation_method: CreationMethod = CreationMethod.MANUAL,
        notes: str | None = None,
        invoice_id: UUID | None = None,
    ) -> Invoice:
        """
        Create an invoice with its initial schedule.

        The schedule comes from ``template`` when given, otherwise a single
        100% milestone named by ``InvoicesConfig.default_milestone_name``.
        Upfront milestones are triggered on ``invoice_date``.

        Raises:
            ValueError: amount is not positive.
            ScheduleInvalidError: the template does not total 100%.
        """
        if amount <= 0:
            raise ValueError(f"Invoice amount must be positive, got {amount}")
        invoice_id = invoice_id or uuid4()

        if template is not None:
            editor = ScheduleEditor.from_template(amount, template.milestones)
        else:
            editor = ScheduleEditor.from_milestones(
                amount,
                (),
                default_name=self._config.default_milestone_name,
                default_trigger=self._config.default_milestone_trigger,
            )
        change_set = self._with_tolerance(editor).commit()

        with LogContext.bind(invoice_id=str(invoice_id), actor_id=str(actor_id)):
            logger.info("invoice_create_started", extra={
                "invoice_number": invoice_number,
                "amount": amount,
                "template": template.id if template else None,
                "milestone_count": len(change_set.to_create),
            })
            with self._transaction() as session:
                model = InvoiceModel(
                    id=invoice_id,
                    invoice_number=invoice_number,
                    invoice_date=invoice_date,
                    description=description,
                    invoice_type=InvoiceType(invoice_type).value,
                    linked_entity_type=(
                        LinkedEntityType(linked_entity_type).value if linked_entity_type else None
                    ),
                    linked_entity_id=linked_entity_id,
                    linked_entity_name=linked_entity_name,
                    amount=amount,
                    due_date=due_date,
                    payment_terms_template_id=template.id if template else None,
                    creation_method=CreationMethod(creation_method).value,
                    notes=notes,
                    paid_amount=0,
                    balance=amount,
                    created_by_id=actor_id,
                )
                for scheduled in change_set.to_create:
                    row = self._new_milestone_row(scheduled, invoice_id, actor_id, invoice_date)
                    model.schedule_items.append(row)
                session.add(model)
                self._recompute(model)
                session.flush()
                invoice = model.to_dto()
            logger.info("invoice_created", extra={
                "invoice_number": invoice_number,
                "status": invoice.status.value,
            })
        return invoice

    def get_invoice(self, invoice_id: UUID) -> Invoice:
        """Read model with computed paid/balance/status and milestone trigger state."""
        session = self._session_factory()
        try:
            model = session.get(InvoiceModel, invoice_id)
            if model is None:
                raise InvoiceNotFoundError(str(invoice_id))
            return model.to_dto()
        finally:
            session.close()

    def list_invoices(self) -> list[Invoice]:
        session = self._session_factory()
        try:
            models = session.execute(
                select(InvoiceModel).order_by(InvoiceModel.invoice_date, InvoiceModel.invoice_number)
            ).scalars().all()
            return [m.to_dto() for m in models]
        finally:
            session.close()

    def financial_summary(self, as_of: date | None = None) -> FinancialSummary:
        """Totals, outstanding, overdue count and milestones due in the upcoming window."""
        as_of = as_of or self._clock.today()
        balances = [
            self._aggregator.summarize(
                invoice_amount=invoice.amount,
                payment_amounts=[p.amount for p in invoice.payments],
                milestones=[m.to_snapshot() for m in invoice.schedule],
                due_date=invoice.due_date,
                as_of=as_of,
            )
            for invoice in self.list_invoices()
        ]
        return self._aggregator.fold(
            balances, as_of, upcoming_window_days=self._config.upcoming_window_days
        )

    def milestone_timeline(self, invoice_id: UUID) -> list[TimelineEntry]:
        invoice = self.get_invoice(invoice_id)
        return [self._resolver.timeline(m.to_snapshot()) for m in invoice.schedule]

    # =========================================================================
    # Triggers
    # =========================================================================

    def apply_trigger_event(
        self,
        invoice_id: UUID,
        trigger: MilestoneTrigger,
        event_date: date,
        actor_id: UUID | None = None,
    ) -> Invoice:
        """
        Apply one event from the purchase-order/shipment feed.

        Manual and upfront events never come from the feed; they are ignored
        with a warning and the invoice is returned unchanged.

        Raises:
            InvoiceNotFoundError: unknown invoice.
        """
        trigger = MilestoneTrigger(trigger)
        if not trigger.is_externally_fired:
            logger.warning("trigger_event_ignored", extra={
                "invoice_id": str(invoice_id),
                "trigger": trigger.value,
                "reason": "not_externally_fired",
            })
            return self.get_invoice(invoice_id)

        with LogContext.bind(invoice_id=str(invoice_id)):
            with self._locked_invoice(invoice_id) as (session, model):
                fired = 0
                for row in model.schedule_items:
                    before = self._snapshot(row)
                    after = self._resolver.fire(before, trigger, event_date)
                    if after is not before:
                        row.apply_snapshot(after)
                        self._touch(row, actor_id)
                        fired += 1
                self._recompute(model)
                session.flush()
                invoice = model.to_dto()
            logger.info("trigger_event_applied", extra={
                "trigger": trigger.value,
                "event_date": event_date.isoformat(),
                "milestones_fired": fired,
            })
        return invoice

    def mark_milestone_triggered(
        self,
        invoice_id: UUID,
        milestone_id: UUID,
        actor_id: UUID | None = None,
    ) -> Invoice:
        """
        Fire a manual milestone as of the clock's current date.

        Raises:
            InvoiceNotFoundError, MilestoneNotFoundError.
        """
        today = self._clock.today()
        with LogContext.bind(invoice_id=str(invoice_id)):
            with self._locked_invoice(invoice_id) as (session, model):
                row = self._milestone_row(model, milestone_id)
                snapshot = self._snapshot(row)
                if snapshot.trigger != MilestoneTrigger.MANUAL:
                    logger.warning("manual_trigger_ignored", extra={
                        "milestone_id": str(milestone_id),
                        "trigger": snapshot.trigger.value,
                    })
                else:
                    fired = self._resolver.fire(snapshot, MilestoneTrigger.MANUAL, today)
                    if fired is not snapshot:
                        row.apply_snapshot(fired)
                        self._touch(row, actor_id)
                self._recompute(model)
                session.flush()
                return model.to_dto()

    def refresh_statuses(self, invoice_id: UUID | None = None) -> list[Invoice]:
        """
        Run the overdue check with the injected clock and recompute status.

        Safe to call repeatedly; a second call with the same date changes nothing.
        """
        if invoice_id is not None:
            ids = [invoice_id]
        else:
            session = self._session_factory()
            try:
                ids = list(session.execute(select(InvoiceModel.id)).scalars().all())
            finally:
                session.close()

        refreshed = []
        for current_id in ids:
            with self._locked_invoice(current_id) as (session, model):
                previous = model.status
                self._recompute(model)
                session.flush()
                if model.status != previous:
                    logger.info("invoice_status_changed", extra={
                        "invoice_id": str(current_id),
                        "from_status": previous,
                        "to_status": model.status,
                    })
                refreshed.append(model.to_dto())
        return refreshed

    # =========================================================================
    # Payments
    # =========================================================================

    def record_payment(
        self,
        invoice_id: UUID,
        *,
        amount: int,
        payment_date: date,
        actor_id: UUID,
        method: PaymentMethod = PaymentMethod.WIRE_TRANSFER,
        reference: str | None = None,
        notes: str | None = None,
        milestone_ids: Sequence[UUID] = (),
        attachments: Sequence[PaymentAttachment] = (),
        payment_id: UUID | None = None,
    ) -> PaymentOutcome:
        """
        Record a payment and credit it to the selected milestones.

        Engine: PaymentAllocator validates and splits the amount.
        Engine: BalanceAggregator recomputes the invoice afterwards.
        """
        payment_id = payment_id or uuid4()
        with LogContext.bind(
            invoice_id=str(invoice_id), payment_id=str(payment_id), actor_id=str(actor_id)
        ):
            logger.info("payment_record_started", extra={
                "amount": amount,
                "milestone_count": len(milestone_ids),
            })
            try:
                with self._locked_invoice(invoice_id) as (session, model):
                    result = self._allocator.record(
                        payment_id=payment_id,
                        payment_date=payment_date,
                        amount=amount,
                        invoice_balance=model.balance,
                        milestones=[self._snapshot(row) for row in model.schedule_items],
                        milestone_ids=tuple(_as_uuid(mid) for mid in milestone_ids),
                    )

                    rows = {row.id: row for row in model.schedule_items}
                    for snapshot in result.milestones:
                        rows[snapshot.milestone_id].apply_snapshot(snapshot)

                    payment_row = PaymentModel(
                        id=payment_id,
                        invoice_id=model.id,
                        payment_date=payment_date,
                        amount=amount,
                        method=PaymentMethod(method).value,
                        reference=reference,
                        notes=notes,
                        created_by_id=actor_id,
                    )
                    credited = {c.milestone_id: c.amount for c in result.credits}
                    for milestone_id in result.payment.schedule_item_ids:
                        payment_row.allocations.append(
                            PaymentAllocationModel(
                                schedule_item_id=milestone_id,
                                amount=credited.get(milestone_id, 0),
                                created_by_id=actor_id,
                            )
                        )
                    for attachment in attachments:
                        payment_row.attachments.append(
                            PaymentAttachmentModel.from_dto(attachment, payment_id, actor_id)
                        )
                    model.payments.append(payment_row)

                    self._recompute(model)
                    session.flush()
                    invoice = model.to_dto()
            except (PaymentValidationError, NotFoundError) as exc:
                logger.warning("payment_rejected", extra={
                    "error_code": exc.code,
                    "rule": getattr(exc, "rule", None),
                    "amount": amount,
                })
                status = (
                    OutcomeStatus.NOT_FOUND if isinstance(exc, NotFoundError)
                    else OutcomeStatus.REJECTED
                )
                return PaymentOutcome(status=status, error=exc)

            logger.info("payment_recorded", extra={
                "amount": amount,
                "method": result.method.value,
                "invoice_status": invoice.status.value,
                "balance": invoice.balance,
            })
            return PaymentOutcome(
                status=OutcomeStatus.COMMITTED,
                payment=invoice.payment(payment_id),
                invoice=invoice,
            )

    def add_payment_attachments(
        self,
        invoice_id: UUID,
        payment_id: UUID,
        attachments: Sequence[PaymentAttachment],
        actor_id: UUID,
    ) -> Payment:
        """
        Attach more file metadata to an existing payment.

        Raises:
            InvoiceNotFoundError, PaymentNotFoundError.
        """
        with self._locked_invoice(invoice_id) as (session, model):
            row = self._payment_row(model, payment_id)
            for attachment in attachments:
                row.attachments.append(
                    PaymentAttachmentModel.from_dto(attachment, payment_id, actor_id)
                )
            session.flush()
            payment = row.to_dto()
        logger.info("payment_attachments_added", extra={
            "invoice_id": str(invoice_id),
            "payment_id": str(payment_id),
            "attachment_count": len(attachments),
        })
        return payment

    def delete_payment(
        self,
        invoice_id: UUID,
        payment_id: UUID,
        confirmation_reference: str,
        actor_id: UUID | None = None,
    ) -> DeletionOutcome:
        """
        Delete a payment after exact re-entry of its reference.

        Fails closed: a payment without a reference cannot be deleted here,
        and any difference between the typed and stored reference (case,
        whitespace) is a mismatch.  Milestone credits are reversed exactly.
        """
        with LogContext.bind(invoice_id=str(invoice_id), payment_id=str(payment_id)):
            try:
                with self._locked_invoice(invoice_id) as (session, model):
                    row = self._payment_row(model, payment_id)
                    if not row.reference:
                        raise UndeletablePaymentError(str(payment_id))
                    if confirmation_reference != row.reference:
                        raise ConfirmationMismatchError(str(payment_id))

                    payment = row.to_dto()
                    milestones = self._allocator.reverse(
                        payment.to_applied(),
                        [self._snapshot(r) for r in model.schedule_items],
                    )
                    rows = {r.id: r for r in model.schedule_items}
                    for snapshot in milestones:
                        rows[snapshot.milestone_id].apply_snapshot(snapshot)
                        self._touch(rows[snapshot.milestone_id], actor_id)

                    model.payments.remove(row)
                    self._recompute(model)
                    session.flush()
                    invoice = model.to_dto()
            except (DeletionError, NotFoundError) as exc:
                logger.warning("payment_delete_rejected", extra={"error_code": exc.code})
                status = (
                    OutcomeStatus.NOT_FOUND if isinstance(exc, NotFoundError)
                    else OutcomeStatus.REJECTED
                )
                return DeletionOutcome(status=status, error=exc)

            logger.info("payment_deleted", extra={
                "amount": payment.amount,
                "credits_reversed": len(payment.allocations),
                "balance": invoice.balance,
            })
            return DeletionOutcome(status=OutcomeStatus.COMMITTED, deleted=True, invoice=invoice)

    # =========================================================================
    # Schedule
    # =========================================================================

    def editor_for(self, invoice_id: UUID) -> ScheduleEditor:
        """Seed a ScheduleEditor from the invoice's persisted milestones."""
        invoice = self.get_invoice(invoice_id)
        editor = ScheduleEditor.from_milestones(
            invoice.amount,
            [m.to_snapshot() for m in invoice.schedule],
            default_name=self._config.default_milestone_name,
            default_trigger=self._config.default_milestone_trigger,
        )
        return self._with_tolerance(editor)

    def save_schedule(
        self,
        invoice_id: UUID,
        editor_or_items: ScheduleEditor | Sequence[EditableMilestone],
        actor_id: UUID,
    ) -> ScheduleOutcome:
        """
        Commit a schedule edit atomically.

        Paid amounts are re-read from the database under the invoice lock,
        so an editor opened before a payment cannot undercut it.  New upfront
        milestones are triggered on the clock's current date.
        """
        today = self._clock.today()
        with LogContext.bind(invoice_id=str(invoice_id), actor_id=str(actor_id)):
            try:
                with self._locked_invoice(invoice_id) as (session, model):
                    editor = self._editor_against(model, editor_or_items)
                    change_set = editor.commit()
                    self._apply_change_set(session, model, change_set, actor_id, today)
                    self._recompute(model)
                    session.flush()
                    invoice = model.to_dto()
            except (ScheduleInvalidError, NotFoundError) as exc:
                logger.warning("schedule_save_rejected", extra={
                    "error_code": exc.code,
                    "reason": str(exc),
                })
                status = (
                    OutcomeStatus.NOT_FOUND if isinstance(exc, NotFoundError)
                    else OutcomeStatus.REJECTED
                )
                return ScheduleOutcome(status=status, error=exc)

            logger.info("schedule_committed", extra={
                "create_count": len(change_set.to_create),
                "update_count": len(change_set.to_update),
                "delete_count": len(change_set.to_delete),
            })
            return ScheduleOutcome(
                status=OutcomeStatus.COMMITTED, invoice=invoice, change_set=change_set
            )

    # =========================================================================
    # Internals
    # =========================================================================

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _locked_invoice(self, invoice_id: UUID) -> Iterator[tuple[Session, InvoiceModel]]:
        """Hold the invoice lock and its row lock for one transaction."""
        with self._locks.hold(invoice_id):
            with self._transaction() as session:
                model = session.execute(
                    select(InvoiceModel)
                    .where(InvoiceModel.id == invoice_id)
                    .with_for_update()
                ).scalar_one_or_none()
                if model is None:
                    raise InvoiceNotFoundError(str(invoice_id))
                yield session, model

    def _recompute(self, model: InvoiceModel) -> None:
        """Overdue check, then paid/balance/status from payments and milestones."""
        today = self._clock.today()
        rows = list(model.schedule_items)
        snapshots = self._resolver.tick_all([self._snapshot(row) for row in rows], today)
        for row, ticked in zip(rows, snapshots):
            row.trigger_status = ticked.trigger_status.value

        balance = self._aggregator.summarize(
            invoice_amount=model.amount,
            payment_amounts=[p.amount for p in model.payments],
            milestones=snapshots,
            due_date=model.due_date,
            as_of=today,
        )
        model.paid_amount = balance.paid_amount
        model.balance = balance.balance
        model.status = balance.status.value

    def _with_tolerance(self, editor: ScheduleEditor) -> ScheduleEditor:
        return replace(editor, tolerance=self._config.percentage_tolerance)

    def _editor_against(
        self,
        model: InvoiceModel,
        editor_or_items: ScheduleEditor | Sequence[EditableMilestone],
    ) -> ScheduleEditor:
        """
        Rebase a caller's editor onto the persisted amounts under the lock.

        Every persisted milestone must be accounted for.  An editor that
        lacks one was opened before another save and is rejected as stale;
        a plain sequence is the complete new schedule, so persisted
        milestones it omits are removed.
        """
        is_editor = isinstance(editor_or_items, ScheduleEditor)
        if is_editor:
            editor = editor_or_items
            if editor.invoice_amount != model.amount:
                raise ScheduleInvalidError(
                    editor.total_percentage,
                    reason=(
                        f"schedule was built for {editor.invoice_amount}, "
                        f"invoice amount is {model.amount}"
                    ),
                )
        else:
            editor = ScheduleEditor(invoice_amount=model.amount, items=tuple(editor_or_items))

        persisted = {str(row.id): row for row in model.schedule_items}
        items = []
        for item in editor.items:
            if item.is_new:
                items.append(item)
                continue
            row = persisted.pop(str(item.milestone_id), None)
            if row is None:
                raise MilestoneNotFoundError(str(item.milestone_id))
            items.append(replace(item, milestone_id=row.id, paid_amount=row.paid_amount))

        if persisted:
            omitted = sorted(persisted)
            if is_editor:
                logger.warning("schedule_editor_stale", extra={"omitted_ids": omitted})
                raise ScheduleInvalidError(
                    editor.total_percentage,
                    reason=(
                        "schedule is stale: milestones "
                        f"{', '.join(omitted)} were added since it was opened"
                    ),
                )
            for row in persisted.values():
                snapshot = self._snapshot(row)
                items.append(
                    EditableMilestone(
                        milestone_id=row.id,
                        milestone_name=snapshot.milestone_name,
                        percentage=snapshot.percentage,
                        amount=snapshot.amount,
                        trigger=snapshot.trigger,
                        offset_days=snapshot.offset_days,
                        paid_amount=snapshot.paid_amount,
                        is_deleted=True,
                    )
                )
        return self._with_tolerance(replace(editor, items=tuple(items)))

    def _apply_change_set(
        self,
        session: Session,
        model: InvoiceModel,
        change_set: ScheduleChangeSet,
        actor_id: UUID,
        today: date,
    ) -> None:
        rows = {row.id: row for row in model.schedule_items}

        for milestone_id in change_set.to_delete:
            row = rows[milestone_id]
            # Zero-credit selections are the only allocation rows a deletable milestone has
            for allocation in session.execute(
                select(PaymentAllocationModel)
                .where(PaymentAllocationModel.schedule_item_id == row.id)
            ).scalars().all():
                allocation.payment.allocations.remove(allocation)
            session.flush()
            model.schedule_items.remove(row)

        for scheduled in change_set.to_update:
            row = rows[scheduled.milestone_id]
            snapshot = self._snapshot(row)
            trigger_changed = snapshot.trigger != scheduled.trigger
            updated = replace(
                snapshot,
                milestone_name=scheduled.milestone_name,
                percentage=scheduled.percentage,
                amount=scheduled.amount,
                trigger=scheduled.trigger,
                offset_days=scheduled.offset_days,
                sort_order=scheduled.sort_order,
            )
            if trigger_changed and snapshot.trigger_status == TriggerStatus.PENDING:
                updated = self._resolver.initialize(updated, today)
            elif updated.trigger_date is not None:
                updated = replace(
                    updated,
                    due_date=updated.trigger_date + timedelta(days=updated.offset_days),
                )
            if updated.is_settled:
                updated = replace(updated, paid_date=updated.paid_date or today)
            else:
                updated = replace(updated, paid_date=None)
            row.apply_snapshot(updated)
            self._touch(row, actor_id)

        for scheduled in change_set.to_create:
            model.schedule_items.append(
                self._new_milestone_row(scheduled, model.id, actor_id, today)
            )

    def _new_milestone_row(
        self,
        scheduled: ScheduledMilestone,
        invoice_id: UUID,
        actor_id: UUID,
        issued_on: date,
    ) -> MilestoneModel:
        snapshot = self._resolver.initialize(
            MilestoneSnapshot(
                milestone_id=uuid4(),
                milestone_name=scheduled.milestone_name,
                percentage=scheduled.percentage,
                amount=scheduled.amount,
                trigger=scheduled.trigger,
                offset_days=scheduled.offset_days,
                sort_order=scheduled.sort_order,
            ),
            issued_on,
        )
        row = MilestoneModel(
            id=snapshot.milestone_id,
            invoice_id=invoice_id,
            created_by_id=actor_id,
        )
        row.apply_snapshot(snapshot)
        return row

    @staticmethod
    def _snapshot(row: MilestoneModel) -> MilestoneSnapshot:
        return row.to_dto().to_snapshot()

    @staticmethod
    def _milestone_row(model: InvoiceModel, milestone_id: UUID) -> MilestoneModel:
        for row in model.schedule_items:
            if str(row.id) == str(milestone_id):
                return row
        raise MilestoneNotFoundError(str(milestone_id))

    @staticmethod
    def _payment_row(model: InvoiceModel, payment_id: UUID) -> PaymentModel:
        for row in model.payments:
            if str(row.id) == str(payment_id):
                return row
        raise PaymentNotFoundError(str(payment_id), invoice_id=str(model.id))

    @staticmethod
    def _touch(row, actor_id: UUID | None) -> None:
        if actor_id is not None:
            row.updated_by_id = actor_id
