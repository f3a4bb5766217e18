"""
invoicing_engines.schedule -- Editable payment schedule for one invoice.

Responsibility:
    Stage edits to an invoice's milestones (percentages, amounts, names,
    triggers, additions, removals) and produce an all-or-nothing change set
    only when the schedule totals 100%.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Every edit returns a NEW ``ScheduleEditor``; nothing mutates in place.

Invariants enforced:
    - Percentage edits derive ``amount = round(invoice_amount * pct / 100)``;
      amount edits derive ``pct = round(amount / invoice_amount * 10000) / 100``.
      Whichever field was edited last is authoritative for that milestone.
    - Out-of-range numeric input is clamped, never rejected.
    - At least one active milestone always exists.
    - Whenever active percentages total exactly 100.00, active amounts total
      exactly ``invoice_amount``: the cent residual left by rounding is
      carried by a single rounding-target milestone.
    - ``commit`` never returns a change set that would leave a milestone
      owing less than has already been paid against it.

Failure modes:
    - ScheduleInvalidError from ``commit`` if percentages do not total 100
      (within 0.01), or an edit undercuts money already paid.
    - ScheduleInvalidError from ``remove_milestone`` on the last active milestone.
    - MilestoneNotFoundError for unknown milestone ids.

Usage:
    editor = ScheduleEditor.from_milestones(1_000_000, existing)
    editor = editor.set_percentage("m1", Decimal("30"))
    editor = editor.distribute_evenly(["m2"])
    change_set = editor.commit()
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from decimal import Decimal
from uuid import UUID

from invoicing_engines.milestones import (
    HUNDRED,
    MilestoneSnapshot,
    MilestoneTrigger,
    amount_for_percent,
    clamp_percent,
    percent_for_amount,
    quantize_percent,
)
from invoicing_engines.tracer import traced_engine
from invoicing_kernel.exceptions import MilestoneNotFoundError, ScheduleInvalidError
from invoicing_kernel.logging_config import get_logger

logger = get_logger("engines.schedule")

PERCENT_TOLERANCE = Decimal("0.01")
DEFAULT_MILESTONE_NAME = "Full Payment"
NEW_ID_PREFIX = "new-"


@dataclass(frozen=True)
class EditableMilestone:
    """
    One row of the schedule being edited.

    ``is_new`` rows have never been persisted; ``is_deleted`` rows are
    soft-deleted so the commit step can tell a removed persisted milestone
    apart from a discarded fresh one.
    """

    milestone_id: str | UUID
    milestone_name: str
    percentage: Decimal
    amount: int
    trigger: MilestoneTrigger = MilestoneTrigger.MANUAL
    offset_days: int = 0
    paid_amount: int = 0
    is_new: bool = False
    is_deleted: bool = False

    @property
    def is_active(self) -> bool:
        return not self.is_deleted


@dataclass(frozen=True)
class ScheduledMilestone:
    """A milestone as it will be written by the commit step."""

    milestone_id: str | UUID
    milestone_name: str
    percentage: Decimal
    amount: int
    trigger: MilestoneTrigger
    offset_days: int
    sort_order: int


@dataclass(frozen=True)
class ScheduleChangeSet:
    """
    Atomic result of a successful commit.

    Guarantees:
        - ``sum(m.percentage for m in active)`` is within 0.01 of 100.
        - ``sum(m.amount for m in active) == invoice_amount``.
        - ``to_delete`` only names persisted milestones.
    """

    invoice_amount: int
    to_create: tuple[ScheduledMilestone, ...]
    to_update: tuple[ScheduledMilestone, ...]
    to_delete: tuple[str | UUID, ...]

    @property
    def active(self) -> tuple[ScheduledMilestone, ...]:
        """Surviving milestones in sort order."""
        return tuple(sorted(self.to_update + self.to_create, key=lambda m: m.sort_order))


@dataclass(frozen=True)
class ScheduleEditor:
    """
    Immutable editing session over one invoice's milestones.

    Contract:
        Each edit returns a new editor.  ``is_valid`` reports whether the
        current state may be committed; ``commit`` either returns a
        ``ScheduleChangeSet`` or raises ``ScheduleInvalidError`` with no
        partial result.
    Guarantees:
        - Numeric edits are clamped into range.
        - No edit auto-rebalances other milestones' percentages.
    Non-goals:
        - Does not persist anything; the service layer writes the change set.
    """

    invoice_amount: int
    items: tuple[EditableMilestone, ...] = field(default_factory=tuple)
    last_edited_id: str | UUID | None = None
    tolerance: Decimal = PERCENT_TOLERANCE

    def __post_init__(self) -> None:
        if self.invoice_amount <= 0:
            raise ValueError("invoice_amount must be positive")
        # Commit pushes the whole residual onto one milestone
        if not Decimal("0") < self.tolerance <= PERCENT_TOLERANCE:
            raise ValueError(f"tolerance must be in (0, {PERCENT_TOLERANCE}]")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_milestones(
        cls,
        invoice_amount: int,
        milestones: Sequence[MilestoneSnapshot],
        default_name: str = DEFAULT_MILESTONE_NAME,
        default_trigger: MilestoneTrigger = MilestoneTrigger.MANUAL,
    ) -> ScheduleEditor:
        """Seed an editor from persisted milestones (or the 100% default)."""
        ordered = sorted(milestones, key=lambda m: m.sort_order)
        items = tuple(
            EditableMilestone(
                milestone_id=m.milestone_id,
                milestone_name=m.milestone_name,
                percentage=m.percentage,
                amount=m.amount,
                trigger=m.trigger,
                offset_days=m.offset_days,
                paid_amount=m.paid_amount,
            )
            for m in ordered
        )
        if not items:
            items = (
                EditableMilestone(
                    milestone_id=f"{NEW_ID_PREFIX}1",
                    milestone_name=default_name,
                    percentage=HUNDRED.quantize(PERCENT_TOLERANCE),
                    amount=invoice_amount,
                    trigger=default_trigger,
                    is_new=True,
                ),
            )
        return cls(invoice_amount=invoice_amount, items=items)

    @classmethod
    def from_template(
        cls,
        invoice_amount: int,
        template_milestones: Iterable,
    ) -> ScheduleEditor:
        """
        Seed an editor with fresh milestones from a payment-terms template.

        Each template milestone needs ``name``, ``percentage``, ``trigger``
        and ``offset_days`` attributes.
        """
        items = []
        for index, tm in enumerate(template_milestones, start=1):
            pct = clamp_percent(tm.percentage)
            items.append(
                EditableMilestone(
                    milestone_id=f"{NEW_ID_PREFIX}{index}",
                    milestone_name=tm.name,
                    percentage=pct,
                    amount=amount_for_percent(invoice_amount, pct),
                    trigger=MilestoneTrigger(tm.trigger),
                    offset_days=max(0, int(tm.offset_days)),
                    is_new=True,
                )
            )
        if not items:
            return cls.from_milestones(invoice_amount, ())
        editor = cls(invoice_amount=invoice_amount, items=tuple(items))
        return editor._reconciled()

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @property
    def active_items(self) -> tuple[EditableMilestone, ...]:
        return tuple(item for item in self.items if item.is_active)

    @property
    def total_percentage(self) -> Decimal:
        return sum((item.percentage for item in self.active_items), Decimal("0.00"))

    @property
    def total_amount(self) -> int:
        return sum(item.amount for item in self.active_items)

    def is_valid(self) -> bool:
        """True iff active percentages total 100 within ``tolerance`` (0.01 by default)."""
        return abs(self.total_percentage - HUNDRED) < self.tolerance

    def get(self, milestone_id: str | UUID) -> EditableMilestone:
        for item in self.items:
            if item.milestone_id == milestone_id:
                return item
        raise MilestoneNotFoundError(str(milestone_id))

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def set_percentage(self, milestone_id: str | UUID, value: Decimal | int | str) -> ScheduleEditor:
        """Set a milestone's percentage (clamped to [0, 100]) and derive its amount."""
        pct = clamp_percent(value)
        item = self.get(milestone_id)
        updated = replace(
            item,
            percentage=pct,
            amount=amount_for_percent(self.invoice_amount, pct),
        )
        return self._with_item(updated)._reconciled()

    def set_amount(self, milestone_id: str | UUID, value: int) -> ScheduleEditor:
        """Set a milestone's amount (clamped to [0, invoice_amount]) and derive its percentage."""
        amount = max(0, min(self.invoice_amount, int(value)))
        item = self.get(milestone_id)
        updated = replace(
            item,
            amount=amount,
            percentage=percent_for_amount(self.invoice_amount, amount),
        )
        return self._with_item(updated)._reconciled()

    def set_name(self, milestone_id: str | UUID, name: str) -> ScheduleEditor:
        return self._with_item(replace(self.get(milestone_id), milestone_name=name), touch=False)

    def set_trigger(self, milestone_id: str | UUID, trigger: MilestoneTrigger | str) -> ScheduleEditor:
        return self._with_item(
            replace(self.get(milestone_id), trigger=MilestoneTrigger(trigger)), touch=False
        )

    def set_offset_days(self, milestone_id: str | UUID, offset_days: int) -> ScheduleEditor:
        return self._with_item(
            replace(self.get(milestone_id), offset_days=max(0, int(offset_days))), touch=False
        )

    def add_milestone(
        self,
        milestone_name: str = "",
        trigger: MilestoneTrigger = MilestoneTrigger.MANUAL,
        offset_days: int = 0,
        milestone_id: str | UUID | None = None,
    ) -> ScheduleEditor:
        """Append a milestone holding whatever percentage is still unassigned."""
        pct = clamp_percent(max(Decimal("0"), HUNDRED - self.total_percentage))
        new_id = milestone_id or f"{NEW_ID_PREFIX}{len(self.items) + 1}"
        item = EditableMilestone(
            milestone_id=new_id,
            milestone_name=milestone_name,
            percentage=pct,
            amount=amount_for_percent(self.invoice_amount, pct),
            trigger=MilestoneTrigger(trigger),
            offset_days=max(0, int(offset_days)),
            is_new=True,
        )
        logger.debug("schedule_milestone_added", extra={
            "milestone_id": str(new_id),
            "percentage": str(pct),
        })
        editor = replace(self, items=self.items + (item,), last_edited_id=new_id)
        return editor._reconciled()

    def remove_milestone(self, milestone_id: str | UUID) -> ScheduleEditor:
        """Soft-delete a milestone; the last active milestone cannot be removed."""
        item = self.get(milestone_id)
        if item.is_deleted:
            return self
        if len(self.active_items) <= 1:
            raise ScheduleInvalidError(
                self.total_percentage,
                reason="at least one milestone is required",
                milestone_id=str(milestone_id),
            )
        editor = self._with_item(replace(item, is_deleted=True), touch=False)
        return replace(editor, last_edited_id=None)._reconciled()

    def distribute_evenly(
        self, milestone_ids: Sequence[str | UUID] | None = None
    ) -> ScheduleEditor:
        """
        Split percentage evenly, giving the last milestone the exact remainder.

        With no ids, all active milestones share 100%: each of the first
        ``n - 1`` gets ``floor(10000 / n) / 100`` and the last gets what is
        left, so the total is exactly 100.00.  With ids, only the named
        milestones are rewritten and they share whatever the others leave.
        """
        active = self.active_items
        if milestone_ids is None:
            targets = active
        else:
            wanted = {str(mid) for mid in milestone_ids}
            targets = tuple(item for item in active if str(item.milestone_id) in wanted)
            if len(targets) != len(wanted):
                known = {str(item.milestone_id) for item in active}
                missing = sorted(wanted - known)
                raise MilestoneNotFoundError(missing[0])
        if not targets:
            return self

        target_ids = {item.milestone_id for item in targets}
        held = sum(
            (item.percentage for item in active if item.milestone_id not in target_ids),
            Decimal("0"),
        )
        pool_bp = max(0, int((HUNDRED - held) * HUNDRED))
        share_bp = pool_bp // len(targets)

        editor = self
        for index, item in enumerate(targets):
            if index == len(targets) - 1:
                bp = pool_bp - share_bp * (len(targets) - 1)
            else:
                bp = share_bp
            pct = quantize_percent(Decimal(bp) / HUNDRED)
            editor = editor._with_item(
                replace(item, percentage=pct, amount=amount_for_percent(self.invoice_amount, pct)),
                touch=False,
            )
        logger.info("schedule_distributed_evenly", extra={
            "milestone_count": len(targets),
            "pool_basis_points": pool_bp,
        })
        return replace(editor, last_edited_id=None)._reconciled()

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    @traced_engine("schedule", "1.0")
    def commit(self) -> ScheduleChangeSet:
        """
        Validate and freeze the staged schedule.

        Postconditions:
            Returns a change set satisfying the ``ScheduleChangeSet``
            guarantees; nothing is returned on failure.
        Raises:
            ScheduleInvalidError: percentages off 100, an active milestone
                would owe less than already paid, or a paid milestone is
                being removed.
        """
        total = self.total_percentage
        if not self.is_valid():
            logger.warning("schedule_commit_rejected", extra={
                "total_percentage": str(total),
                "reason": "percentage_total",
            })
            raise ScheduleInvalidError(total)

        editor = self._reconciled(force=True)

        for item in editor.items:
            if item.is_deleted and not item.is_new and item.paid_amount > 0:
                raise ScheduleInvalidError(
                    total,
                    reason=f"milestone {item.milestone_id} has payments and cannot be removed",
                    milestone_id=str(item.milestone_id),
                )
            if item.is_active and item.amount < item.paid_amount:
                raise ScheduleInvalidError(
                    total,
                    reason=(
                        f"milestone {item.milestone_id} amount {item.amount} is below "
                        f"the {item.paid_amount} already paid"
                    ),
                    milestone_id=str(item.milestone_id),
                )

        to_create: list[ScheduledMilestone] = []
        to_update: list[ScheduledMilestone] = []
        for sort_order, item in enumerate(editor.active_items):
            scheduled = ScheduledMilestone(
                milestone_id=item.milestone_id,
                milestone_name=item.milestone_name,
                percentage=item.percentage,
                amount=item.amount,
                trigger=item.trigger,
                offset_days=item.offset_days,
                sort_order=sort_order,
            )
            (to_create if item.is_new else to_update).append(scheduled)

        to_delete = tuple(
            item.milestone_id for item in editor.items if item.is_deleted and not item.is_new
        )

        # INVARIANT: active amounts cover the invoice exactly
        assert sum(m.amount for m in to_create + to_update) == self.invoice_amount, (
            f"Schedule amounts {editor.total_amount} != invoice amount {self.invoice_amount}"
        )

        logger.info("schedule_commit_validated", extra={
            "create_count": len(to_create),
            "update_count": len(to_update),
            "delete_count": len(to_delete),
            "invoice_amount": self.invoice_amount,
        })
        return ScheduleChangeSet(
            invoice_amount=self.invoice_amount,
            to_create=tuple(to_create),
            to_update=tuple(to_update),
            to_delete=to_delete,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _with_item(self, updated: EditableMilestone, touch: bool = True) -> ScheduleEditor:
        items = tuple(
            updated if item.milestone_id == updated.milestone_id else item
            for item in self.items
        )
        last_edited = updated.milestone_id if touch else self.last_edited_id
        return replace(self, items=items, last_edited_id=last_edited)

    def _reconciled(self, force: bool = False) -> ScheduleEditor:
        """
        Push the rounding residual onto one milestone when the schedule is whole.

        Only runs when active percentages total exactly 100.00, or when
        ``force`` is set by ``commit`` for a total within tolerance.  The rounding
        target is the last active milestone other than the one just edited,
        so the user's own edit is never overwritten.
        """
        active = self.active_items
        if not active or (not force and self.total_percentage != HUNDRED):
            return self
        residual = self.invoice_amount - self.total_amount
        if residual == 0:
            return self

        candidates = [
            item for item in reversed(active) if item.milestone_id != self.last_edited_id
        ] or list(reversed(active))
        target = next(
            (item for item in candidates if item.amount + residual >= item.paid_amount),
            max(active, key=lambda item: item.amount),
        )
        logger.debug("schedule_rounding_residual_assigned", extra={
            "milestone_id": str(target.milestone_id),
            "residual": residual,
        })
        return self._with_item(replace(target, amount=target.amount + residual), touch=False)
