"""
Tests for InvoiceService.

Runs every operation against a real database session (in-memory SQLite by
default) with a DeterministicClock pinned to 2024-01-15.

Covers:
- Invoice creation (default schedule, templates, upfront milestones)
- Payment recording and rejection outcomes
- Payment deletion with reference confirmation
- Trigger feed, manual triggers and overdue refresh
- Schedule commits
- Read models (timeline, dashboard summary)
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from invoicing_config import load_payment_terms_templates
from invoicing_engines.balance import PaymentStatus
from invoicing_engines.milestones import MilestoneTrigger, TriggerStatus
from invoicing_engines.payments import PaymentCredit
from invoicing_engines.schedule import EditableMilestone
from invoicing_engines.triggers import TimelineState
from invoicing_kernel.exceptions import (
    ConfirmationMismatchError,
    InvoiceNotFoundError,
    MilestoneNotFoundError,
    PaymentNotFoundError,
    PaymentValidationError,
    ScheduleInvalidError,
    UndeletablePaymentError,
)
from invoicing_modules.invoices.config import InvoicesConfig
from invoicing_modules.invoices.models import (
    LinkedEntityType,
    PaymentAttachment,
    PaymentMethod,
    PaymentTermsTemplate,
    TemplateMilestone,
)
from invoicing_modules.invoices.service import InvoiceService, OutcomeStatus


@pytest.fixture(scope="module")
def templates():
    return {t.id: t for t in load_payment_terms_templates()}


@pytest.fixture
def upfront_template():
    return PaymentTermsTemplate(
        id="upfront-50",
        name="50% upfront",
        milestones=(
            TemplateMilestone("Deposit", Decimal("50"), MilestoneTrigger.UPFRONT, 3),
            TemplateMilestone("Balance", Decimal("50"), MilestoneTrigger.GOODS_RECEIVED, 30),
        ),
    )


@pytest.fixture
def pay(service, test_actor_id):
    def _pay(invoice, amount, milestones=(), **kwargs):
        kwargs.setdefault("payment_date", date(2024, 1, 20))
        kwargs.setdefault("actor_id", test_actor_id)
        return service.record_payment(
            invoice.id,
            amount=amount,
            milestone_ids=[m.id for m in milestones],
            **kwargs,
        )

    return _pay


class TestCreateInvoice:

    def test_default_single_full_payment_milestone(self, create_invoice):
        invoice = create_invoice(1_000_000)

        (milestone,) = invoice.schedule
        assert milestone.milestone_name == "Full Payment"
        assert milestone.percentage == Decimal("100.00")
        assert milestone.amount == 1_000_000
        assert milestone.trigger == MilestoneTrigger.MANUAL
        assert milestone.trigger_status == TriggerStatus.PENDING
        assert invoice.status == PaymentStatus.UNPAID
        assert invoice.balance == 1_000_000
        assert invoice.paid_amount == 0

    def test_from_template(self, create_invoice, templates):
        invoice = create_invoice(
            1_000_000,
            template=templates["standard-30-70"],
            linked_entity_type=LinkedEntityType.PURCHASE_ORDER,
            linked_entity_id="PO-2024-001",
        )

        assert [m.milestone_name for m in invoice.schedule] == ["Deposit", "Balance"]
        assert [m.amount for m in invoice.schedule] == [300_000, 700_000]
        assert [m.sort_order for m in invoice.schedule] == [0, 1]
        assert all(m.trigger_status == TriggerStatus.PENDING for m in invoice.schedule)
        assert invoice.payment_terms_template_id == "standard-30-70"
        assert invoice.linked_entity_type == LinkedEntityType.PURCHASE_ORDER

    def test_upfront_milestone_triggered_on_invoice_date(self, create_invoice, upfront_template):
        invoice = create_invoice(1_000_000, template=upfront_template)
        deposit, balance = invoice.schedule

        assert deposit.trigger_status == TriggerStatus.TRIGGERED
        assert deposit.trigger_date == date(2024, 1, 15)
        assert deposit.due_date == date(2024, 1, 18)
        assert balance.trigger_status == TriggerStatus.PENDING
        assert balance.due_date is None

    def test_non_positive_amount_rejected(self, create_invoice):
        with pytest.raises(ValueError):
            create_invoice(0)

    def test_read_back(self, service, create_invoice):
        invoice = create_invoice(250_000)
        assert service.get_invoice(invoice.id) == invoice

    def test_unknown_invoice(self, service):
        with pytest.raises(InvoiceNotFoundError):
            service.get_invoice(uuid4())

    def test_list_invoices_ordered_by_date(self, service, create_invoice):
        later = create_invoice(100, invoice_date=date(2024, 3, 1))
        earlier = create_invoice(100, invoice_date=date(2024, 1, 2))
        assert [i.id for i in service.list_invoices()] == [earlier.id, later.id]


class TestRecordPayment:

    def test_deposit_payment(self, create_invoice, templates, pay):
        """$3,000 against the 30% deposit of a $10,000 invoice."""
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        m1, m2 = invoice.schedule

        outcome = pay(invoice, 300_000, [m1], reference="WT-001")

        assert outcome.is_success
        updated = outcome.invoice
        assert updated.milestone(m1.id).paid_amount == 300_000
        assert updated.milestone(m1.id).paid_date == date(2024, 1, 20)
        assert updated.milestone(m2.id).paid_amount == 0
        assert updated.paid_amount == 300_000
        assert updated.balance == 700_000
        assert updated.status == PaymentStatus.PARTIAL
        assert outcome.payment.allocations == (PaymentCredit(m1.id, 300_000),)
        assert outcome.payment.method == PaymentMethod.WIRE_TRANSFER

    def test_full_payment_marks_paid(self, create_invoice, templates, pay):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        outcome = pay(invoice, 1_000_000, invoice.schedule, reference="WT-9")
        assert outcome.invoice.status == PaymentStatus.PAID
        assert outcome.invoice.balance == 0
        assert all(m.is_settled for m in outcome.invoice.schedule)

    def test_string_milestone_ids_accepted(self, service, create_invoice, test_actor_id):
        invoice = create_invoice(1_000)
        outcome = service.record_payment(
            invoice.id,
            amount=1_000,
            payment_date=date(2024, 1, 20),
            actor_id=test_actor_id,
            milestone_ids=[str(invoice.schedule[0].id)],
        )
        assert outcome.is_success

    def test_milestone_selection_required(self, service, create_invoice, pay):
        invoice = create_invoice(1_000_000)
        outcome = pay(invoice, 100)

        assert outcome.status == OutcomeStatus.REJECTED
        assert isinstance(outcome.error, PaymentValidationError)
        assert outcome.error.rule == PaymentValidationError.MILESTONES_REQUIRED
        assert service.get_invoice(invoice.id) == invoice

    def test_amount_over_balance_rejected(self, service, create_invoice, pay):
        invoice = create_invoice(1_000)
        pay(invoice, 600, invoice.schedule)
        outcome = pay(invoice, 500, invoice.schedule)
        assert outcome.error.rule == PaymentValidationError.AMOUNT_EXCEEDS_BALANCE
        assert service.get_invoice(invoice.id).paid_amount == 600

    def test_unknown_milestone_rejected(self, service, create_invoice, test_actor_id):
        invoice = create_invoice(1_000)
        outcome = service.record_payment(
            invoice.id,
            amount=100,
            payment_date=date(2024, 1, 20),
            actor_id=test_actor_id,
            milestone_ids=["not-a-milestone"],
        )
        assert outcome.error.rule == PaymentValidationError.UNKNOWN_MILESTONE

    def test_unknown_invoice(self, service, test_actor_id):
        outcome = service.record_payment(
            uuid4(), amount=100, payment_date=date(2024, 1, 20), actor_id=test_actor_id
        )
        assert outcome.status == OutcomeStatus.NOT_FOUND
        assert isinstance(outcome.error, InvoiceNotFoundError)

    def test_unlinked_payment_counts_toward_invoice(
        self, session_factory, deterministic_clock, test_actor_id
    ):
        service = InvoiceService(
            session_factory,
            clock=deterministic_clock,
            config=InvoicesConfig(require_milestones_when_unpaid=False),
        )
        invoice = service.create_invoice(
            invoice_number="INV-LEGACY",
            invoice_date=date(2024, 1, 15),
            amount=1_000,
            actor_id=test_actor_id,
        )
        outcome = service.record_payment(
            invoice.id, amount=400, payment_date=date(2024, 1, 16), actor_id=test_actor_id
        )

        assert outcome.is_success
        assert outcome.invoice.paid_amount == 400
        assert outcome.invoice.schedule[0].paid_amount == 0
        assert outcome.payment.schedule_item_ids == ()

    def test_attachments(self, service, create_invoice, pay, test_actor_id):
        invoice = create_invoice(1_000)
        receipt = PaymentAttachment(
            id=uuid4(), name="remittance.pdf", content_type="application/pdf", size=2_048
        )
        outcome = pay(invoice, 500, invoice.schedule, attachments=[receipt])
        assert outcome.payment.attachments == (receipt,)

        swift = PaymentAttachment(id=uuid4(), name="swift.png", content_type="image/png")
        payment = service.add_payment_attachments(
            invoice.id, outcome.payment.id, [swift], actor_id=test_actor_id
        )
        assert {a.name for a in payment.attachments} == {"remittance.pdf", "swift.png"}

    def test_attachments_unknown_payment(self, service, create_invoice, test_actor_id):
        invoice = create_invoice(1_000)
        with pytest.raises(PaymentNotFoundError):
            service.add_payment_attachments(invoice.id, uuid4(), [], actor_id=test_actor_id)

    def test_logs_with_invoice_context(self, create_invoice, pay, captured_logs):
        invoice = create_invoice(1_000)
        pay(invoice, 1_000, invoice.schedule)

        recorded = [r for r in captured_logs() if r["message"] == "payment_recorded"]
        assert len(recorded) == 1
        assert recorded[0]["invoice_id"] == str(invoice.id)
        assert recorded[0]["method"] == "exact"


class TestDeletePayment:

    def test_reference_mismatch_changes_nothing(self, service, create_invoice, templates, pay):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        payment = pay(invoice, 300_000, invoice.schedule[:1], reference="WT-001").payment
        before = service.get_invoice(invoice.id)

        outcome = service.delete_payment(invoice.id, payment.id, "WT-002")

        assert outcome.deleted is False
        assert outcome.status == OutcomeStatus.REJECTED
        assert isinstance(outcome.error, ConfirmationMismatchError)
        assert service.get_invoice(invoice.id) == before

    @pytest.mark.parametrize("typed", ["wt-001", "WT-001 ", " WT-001", ""])
    def test_confirmation_is_exact(self, service, create_invoice, pay, typed):
        invoice = create_invoice(1_000)
        payment = pay(invoice, 500, invoice.schedule, reference="WT-001").payment
        outcome = service.delete_payment(invoice.id, payment.id, typed)
        assert isinstance(outcome.error, ConfirmationMismatchError)

    def test_exact_match_reverses_credits(self, service, create_invoice, templates, pay):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        payment = pay(invoice, 500_000, invoice.schedule, reference="WT-001").payment

        outcome = service.delete_payment(invoice.id, payment.id, "WT-001")

        assert outcome.is_success
        assert outcome.invoice.payments == ()
        assert outcome.invoice.paid_amount == 0
        assert outcome.invoice.balance == 1_000_000
        assert outcome.invoice.status == PaymentStatus.UNPAID
        assert [m.paid_amount for m in outcome.invoice.schedule] == [0, 0]
        assert all(m.paid_date is None for m in outcome.invoice.schedule)

    def test_only_the_deleted_payment_is_reversed(self, service, create_invoice, pay):
        invoice = create_invoice(1_000)
        first = pay(invoice, 300, invoice.schedule, reference="A").payment
        pay(invoice, 700, invoice.schedule, reference="B", payment_date=date(2024, 1, 25))

        outcome = service.delete_payment(invoice.id, first.id, "A")

        milestone = outcome.invoice.schedule[0]
        assert milestone.paid_amount == 700
        assert milestone.paid_date is None
        assert outcome.invoice.paid_amount == 700
        assert outcome.invoice.status == PaymentStatus.PARTIAL

    def test_payment_without_reference_is_undeletable(self, service, create_invoice, pay):
        invoice = create_invoice(1_000)
        payment = pay(invoice, 500, invoice.schedule).payment
        assert payment.is_deletable is False

        outcome = service.delete_payment(invoice.id, payment.id, "")
        assert isinstance(outcome.error, UndeletablePaymentError)
        assert service.get_invoice(invoice.id).paid_amount == 500

    def test_unknown_payment(self, service, create_invoice):
        invoice = create_invoice(1_000)
        outcome = service.delete_payment(invoice.id, uuid4(), "X")
        assert outcome.status == OutcomeStatus.NOT_FOUND
        assert isinstance(outcome.error, PaymentNotFoundError)


class TestTriggers:

    def test_inspection_event_then_overdue(
        self, service, create_invoice, templates, deterministic_clock
    ):
        invoice = create_invoice(1_000_000, template=templates["split-30-40-30"])
        m2 = invoice.schedule[1]

        invoice = service.apply_trigger_event(
            invoice.id, MilestoneTrigger.INSPECTION_PASSED, date(2024, 2, 1)
        )
        fired = invoice.milestone(m2.id)
        assert fired.trigger_status == TriggerStatus.TRIGGERED
        assert fired.trigger_date == date(2024, 2, 1)
        assert fired.due_date == date(2024, 2, 8)
        assert invoice.schedule[0].trigger_status == TriggerStatus.PENDING

        deterministic_clock.set_time(datetime(2024, 2, 10, 9, 0, tzinfo=timezone.utc))
        (refreshed,) = service.refresh_statuses(invoice.id)
        assert refreshed.milestone(m2.id).trigger_status == TriggerStatus.OVERDUE
        assert refreshed.status == PaymentStatus.OVERDUE

    def test_refresh_is_idempotent(self, service, create_invoice, upfront_template, deterministic_clock):
        invoice = create_invoice(1_000_000, template=upfront_template)
        deterministic_clock.advance_days(4)

        first = service.refresh_statuses()
        second = service.refresh_statuses()
        assert first == second
        assert first[0].status == PaymentStatus.OVERDUE
        assert first[0].schedule[0].trigger_status == TriggerStatus.OVERDUE

    def test_payment_resolves_overdue(
        self, service, create_invoice, upfront_template, deterministic_clock, pay
    ):
        invoice = create_invoice(1_000_000, template=upfront_template)
        deterministic_clock.advance_days(4)
        service.refresh_statuses(invoice.id)

        outcome = pay(invoice, 500_000, invoice.schedule[:1])
        assert outcome.invoice.status == PaymentStatus.PARTIAL
        timeline = service.milestone_timeline(invoice.id)
        assert timeline[0].state == TimelineState.SETTLED

    @pytest.mark.parametrize("trigger", [MilestoneTrigger.MANUAL, MilestoneTrigger.UPFRONT])
    def test_feed_ignores_manual_and_upfront(self, service, create_invoice, captured_logs, trigger):
        invoice = create_invoice(1_000)
        after = service.apply_trigger_event(invoice.id, trigger, date(2024, 1, 20))

        assert after.schedule[0].trigger_status == TriggerStatus.PENDING
        assert any(r["message"] == "trigger_event_ignored" for r in captured_logs())

    def test_feed_unknown_invoice(self, service):
        with pytest.raises(InvoiceNotFoundError):
            service.apply_trigger_event(uuid4(), MilestoneTrigger.GOODS_RECEIVED, date(2024, 1, 20))

    def test_mark_manual_milestone(self, service, create_invoice):
        invoice = create_invoice(1_000)
        milestone = invoice.schedule[0]

        invoice = service.mark_milestone_triggered(invoice.id, milestone.id)

        fired = invoice.milestone(milestone.id)
        assert fired.trigger_status == TriggerStatus.TRIGGERED
        assert fired.trigger_date == date(2024, 1, 15)
        assert fired.due_date == date(2024, 1, 15)

    def test_mark_ignores_event_driven_milestone(self, service, create_invoice, templates):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        after = service.mark_milestone_triggered(invoice.id, invoice.schedule[0].id)
        assert after.schedule[0].trigger_status == TriggerStatus.PENDING

    def test_mark_unknown_milestone(self, service, create_invoice):
        invoice = create_invoice(1_000)
        with pytest.raises(MilestoneNotFoundError):
            service.mark_milestone_triggered(invoice.id, uuid4())


class TestSaveSchedule:

    def test_rebalance_thirty_seventy_to_forty_sixty(
        self, service, create_invoice, templates, test_actor_id
    ):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        m1, m2 = invoice.schedule

        editor = service.editor_for(invoice.id).set_percentage(m1.id, 40).distribute_evenly([m2.id])
        outcome = service.save_schedule(invoice.id, editor, actor_id=test_actor_id)

        assert outcome.is_success
        assert [m.percentage for m in outcome.invoice.schedule] == [Decimal("40.00"), Decimal("60.00")]
        assert [m.amount for m in outcome.invoice.schedule] == [400_000, 600_000]
        assert len(outcome.change_set.to_update) == 2

    def test_invalid_schedule_not_persisted(self, service, create_invoice, templates, test_actor_id):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        editor = service.editor_for(invoice.id).set_percentage(invoice.schedule[0].id, 10)

        outcome = service.save_schedule(invoice.id, editor, actor_id=test_actor_id)

        assert outcome.status == OutcomeStatus.REJECTED
        assert isinstance(outcome.error, ScheduleInvalidError)
        assert service.get_invoice(invoice.id) == invoice

    def test_stale_editor_cannot_undercut_payment(
        self, service, create_invoice, templates, pay, test_actor_id
    ):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        m1, m2 = invoice.schedule
        editor = service.editor_for(invoice.id)

        pay(invoice, 300_000, [m1])
        editor = editor.set_percentage(m1.id, 20).set_percentage(m2.id, 80)
        outcome = service.save_schedule(invoice.id, editor, actor_id=test_actor_id)

        assert outcome.status == OutcomeStatus.REJECTED
        assert outcome.error.milestone_id == str(m1.id)

    def test_add_upfront_milestone(self, service, create_invoice, templates, test_actor_id):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        m2 = invoice.schedule[1]
        editor = (
            service.editor_for(invoice.id)
            .set_percentage(m2.id, 50)
            .add_milestone("Final", trigger=MilestoneTrigger.UPFRONT)
        )

        outcome = service.save_schedule(invoice.id, editor, actor_id=test_actor_id)

        schedule = outcome.invoice.schedule
        assert [m.milestone_name for m in schedule] == ["Deposit", "Balance", "Final"]
        assert [m.sort_order for m in schedule] == [0, 1, 2]
        assert schedule[2].percentage == Decimal("20.00")
        assert schedule[2].trigger_status == TriggerStatus.TRIGGERED
        assert schedule[2].trigger_date == date(2024, 1, 15)
        assert sum(m.amount for m in schedule) == 1_000_000

    def test_remove_unpaid_milestone(self, service, create_invoice, templates, test_actor_id):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        m1, m2 = invoice.schedule
        editor = service.editor_for(invoice.id).remove_milestone(m1.id).set_percentage(m2.id, 100)

        outcome = service.save_schedule(invoice.id, editor, actor_id=test_actor_id)

        (only,) = outcome.invoice.schedule
        assert only.id == m2.id
        assert only.amount == 1_000_000
        assert only.sort_order == 0

    def test_remove_milestone_selected_with_zero_credit(
        self, service, create_invoice, templates, pay, test_actor_id
    ):
        # 30/70 of $10.01 is 300/701; one cent over both goes entirely to the larger remainder
        invoice = create_invoice(1_001, template=templates["standard-30-70"])
        m1, m2 = invoice.schedule
        payment = pay(invoice, 1, [m1, m2], reference="P-1").payment
        assert payment.allocations == (PaymentCredit(m2.id, 1),)
        assert set(payment.schedule_item_ids) == {m1.id, m2.id}

        editor = service.editor_for(invoice.id).remove_milestone(m1.id).set_percentage(m2.id, 100)
        outcome = service.save_schedule(invoice.id, editor, actor_id=test_actor_id)

        assert outcome.is_success
        assert outcome.invoice.payments[0].schedule_item_ids == (m2.id,)
        assert outcome.invoice.schedule[0].paid_amount == 1

    def test_trigger_change_reinitializes_pending_milestone(
        self, service, create_invoice, templates, test_actor_id
    ):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        m1 = invoice.schedule[0]
        editor = service.editor_for(invoice.id).set_trigger(m1.id, MilestoneTrigger.UPFRONT)

        outcome = service.save_schedule(invoice.id, editor, actor_id=test_actor_id)

        updated = outcome.invoice.milestone(m1.id)
        assert updated.trigger_status == TriggerStatus.TRIGGERED
        assert updated.due_date == date(2024, 1, 15)

    def test_offset_change_redates_triggered_milestone(
        self, service, create_invoice, templates, test_actor_id
    ):
        invoice = create_invoice(1_000_000, template=templates["split-30-40-30"])
        m2 = invoice.schedule[1]
        service.apply_trigger_event(invoice.id, MilestoneTrigger.INSPECTION_PASSED, date(2024, 2, 1))

        editor = service.editor_for(invoice.id).set_offset_days(m2.id, 14)
        outcome = service.save_schedule(invoice.id, editor, actor_id=test_actor_id)

        assert outcome.invoice.milestone(m2.id).due_date == date(2024, 2, 15)

    def test_accepts_item_sequence(self, service, create_invoice, test_actor_id):
        invoice = create_invoice(1_000)
        items = service.editor_for(invoice.id).set_name(invoice.schedule[0].id, "Everything").items

        outcome = service.save_schedule(invoice.id, items, actor_id=test_actor_id)

        assert outcome.invoice.schedule[0].milestone_name == "Everything"

    def test_item_sequence_replaces_omitted_milestones(
        self, service, create_invoice, test_actor_id
    ):
        invoice = create_invoice(1_000_000)
        (original,) = invoice.schedule
        items = [
            EditableMilestone("new-a", "Deposit", Decimal("30.00"), 300_000, is_new=True),
            EditableMilestone("new-b", "Balance", Decimal("70.00"), 700_000, is_new=True),
        ]

        outcome = service.save_schedule(invoice.id, items, actor_id=test_actor_id)

        assert outcome.is_success
        assert outcome.change_set.to_delete == (original.id,)
        schedule = service.get_invoice(invoice.id).schedule
        assert [m.milestone_name for m in schedule] == ["Deposit", "Balance"]
        assert sum(m.percentage for m in schedule) == Decimal("100")
        assert sum(m.amount for m in schedule) == 1_000_000

    def test_item_sequence_cannot_drop_paid_milestone(
        self, service, create_invoice, templates, pay, test_actor_id
    ):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        m1, m2 = invoice.schedule
        pay(invoice, 300_000, [m1])
        before = service.get_invoice(invoice.id)
        items = [service.editor_for(invoice.id).set_percentage(m2.id, 100).get(m2.id)]

        outcome = service.save_schedule(invoice.id, items, actor_id=test_actor_id)

        assert outcome.status == OutcomeStatus.REJECTED
        assert outcome.error.milestone_id == str(m1.id)
        assert service.get_invoice(invoice.id) == before

    def test_stale_editor_rejected_after_milestone_added(
        self, service, create_invoice, templates, test_actor_id
    ):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        m1, m2 = invoice.schedule
        stale = service.editor_for(invoice.id)

        fresh = service.editor_for(invoice.id).set_percentage(m2.id, 20).add_milestone("Final")
        assert service.save_schedule(invoice.id, fresh, actor_id=test_actor_id).is_success

        stale = stale.set_percentage(m1.id, 40).set_percentage(m2.id, 60)
        outcome = service.save_schedule(invoice.id, stale, actor_id=test_actor_id)

        assert outcome.status == OutcomeStatus.REJECTED
        assert isinstance(outcome.error, ScheduleInvalidError)
        assert "stale" in outcome.error.reason
        schedule = service.get_invoice(invoice.id).schedule
        assert [m.percentage for m in schedule] == [
            Decimal("30.00"), Decimal("20.00"), Decimal("50.00"),
        ]
        assert sum(m.amount for m in schedule) == 1_000_000

    def test_shortfall_rejected_under_configured_tolerance(
        self, session_factory, deterministic_clock, templates, test_actor_id
    ):
        service = InvoiceService(
            session_factory,
            clock=deterministic_clock,
            config=InvoicesConfig(percentage_tolerance=Decimal("0.005")),
        )
        invoice = service.create_invoice(
            invoice_number="INV-TOL",
            invoice_date=date(2024, 1, 15),
            amount=1_000_000,
            actor_id=test_actor_id,
            template=templates["standard-30-70"],
        )
        m1, m2 = invoice.schedule
        editor = service.editor_for(invoice.id).set_percentage(m1.id, 60)
        editor = editor.set_percentage(m2.id, Decimal("39.6"))

        outcome = service.save_schedule(invoice.id, editor, actor_id=test_actor_id)

        assert outcome.status == OutcomeStatus.REJECTED
        schedule = service.get_invoice(invoice.id).schedule
        assert sum(m.percentage for m in schedule) == Decimal("100")
        assert sum(m.amount for m in schedule) == 1_000_000

    def test_commit_logged_with_counts(
        self, service, create_invoice, templates, captured_logs, test_actor_id
    ):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        m2 = invoice.schedule[1]
        editor = service.editor_for(invoice.id).set_percentage(m2.id, 50).add_milestone("Final")

        outcome = service.save_schedule(invoice.id, editor, actor_id=test_actor_id)

        assert outcome.is_success
        (committed,) = [r for r in captured_logs() if r["message"] == "schedule_committed"]
        assert committed["create_count"] == 1
        assert committed["update_count"] == 2
        assert committed["delete_count"] == 0
        assert committed["invoice_id"] == str(invoice.id)

    def test_editor_for_other_amount_rejected(self, service, create_invoice, test_actor_id):
        small = create_invoice(1_000)
        large = create_invoice(2_000)
        outcome = service.save_schedule(large.id, service.editor_for(small.id), actor_id=test_actor_id)
        assert isinstance(outcome.error, ScheduleInvalidError)

    def test_unknown_invoice(self, service, create_invoice, test_actor_id):
        editor = service.editor_for(create_invoice(1_000).id)
        outcome = service.save_schedule(uuid4(), editor, actor_id=test_actor_id)
        assert outcome.status == OutcomeStatus.NOT_FOUND


class TestReadModels:

    def test_timeline(self, service, create_invoice, templates, pay):
        invoice = create_invoice(1_000_000, template=templates["standard-30-70"])
        pay(invoice, 300_000, invoice.schedule[:1])

        deposit, balance = service.milestone_timeline(invoice.id)
        assert deposit.state == TimelineState.SETTLED
        assert deposit.paid_date == date(2024, 1, 20)
        assert balance.state == TimelineState.AWAITING_TRIGGER
        assert balance.trigger_label == "Inspection Passed"

    def test_financial_summary(
        self, service, create_invoice, upfront_template, pay, deterministic_clock
    ):
        manual = create_invoice(1_000_000)
        create_invoice(500_000, template=upfront_template)
        pay(manual, 300_000, manual.schedule)

        summary = service.financial_summary()
        assert summary.invoice_count == 2
        assert summary.total_invoiced == 1_500_000
        assert summary.total_paid == 300_000
        assert summary.outstanding == 1_200_000
        assert summary.overdue_count == 0
        # Upfront deposit due 2024-01-18 is inside the week
        assert summary.upcoming_this_week == 1

        deterministic_clock.advance_days(4)
        later = service.financial_summary()
        assert later.overdue_count == 1
        assert later.upcoming_this_week == 0
