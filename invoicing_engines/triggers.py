"""
invoicing_engines.triggers -- Trigger-driven milestone lifecycle.

Responsibility:
    Derive each milestone's trigger state (pending -> triggered -> overdue)
    from business events and elapsed time.  Settlement (paid_amount ==
    amount) is tracked separately and is orthogonal to trigger state.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    The resolver never reads a clock; callers pass ``today`` explicitly.

Invariants enforced:
    - ``due_date == trigger_date + offset_days`` whenever trigger_date is set.
    - ``fire`` only affects milestones whose configured trigger matches and
      which are still pending; the first matching event wins.
    - ``tick`` is idempotent and never regresses a milestone to pending.
    - Comparisons are at date granularity, so a milestone is never overdue
      on its own due date.

Failure modes:
    - ValueError for an unhandled trigger or status value.

Usage:
    resolver = TriggerStatusResolver()
    m2 = resolver.fire(m2, MilestoneTrigger.INSPECTION_PASSED, date(2024, 2, 1))
    m2 = resolver.tick(m2, date(2024, 2, 10))
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import date, timedelta
from enum import Enum

from invoicing_engines.milestones import MilestoneSnapshot, MilestoneTrigger, TriggerStatus
from invoicing_kernel.logging_config import get_logger

logger = get_logger("engines.triggers")


class TimelineState(str, Enum):
    """What a milestone's timeline entry should show."""

    SETTLED = "settled"
    OVERDUE = "overdue"
    DUE = "due"
    AWAITING_TRIGGER = "awaiting_trigger"


@dataclass(frozen=True)
class TimelineEntry:
    """Display read model for one milestone."""

    milestone_id: object
    milestone_name: str
    state: TimelineState
    trigger_label: str
    trigger_date: date | None = None
    due_date: date | None = None
    paid_date: date | None = None


class TriggerStatusResolver:
    """
    Pure state machine over ``MilestoneSnapshot`` values.

    Contract:
        Each method takes snapshots and returns new snapshots; an input
        that the transition does not apply to is returned unchanged.
    Non-goals:
        - Does not decide which events may come from an external feed;
          the service layer filters manual and upfront events.
    """

    def initialize(self, milestone: MilestoneSnapshot, issued_on: date) -> MilestoneSnapshot:
        """
        Set the creation-time state of a milestone.

        Upfront milestones are triggered on the issue date; every other
        trigger starts pending with no dates.
        """
        match milestone.trigger:
            case MilestoneTrigger.UPFRONT:
                return self._triggered(milestone, issued_on)
            case (
                MilestoneTrigger.PO_CONFIRMED
                | MilestoneTrigger.INSPECTION_PASSED
                | MilestoneTrigger.SHIPMENT_DEPARTED
                | MilestoneTrigger.CUSTOMS_CLEARED
                | MilestoneTrigger.GOODS_RECEIVED
                | MilestoneTrigger.MANUAL
            ):
                return replace(
                    milestone,
                    trigger_status=TriggerStatus.PENDING,
                    trigger_date=None,
                    due_date=None,
                )
            case _:
                raise ValueError(f"Unhandled milestone trigger: {milestone.trigger!r}")

    def fire(
        self,
        milestone: MilestoneSnapshot,
        trigger: MilestoneTrigger,
        event_date: date,
    ) -> MilestoneSnapshot:
        """Apply a business event; no-op unless the trigger matches a pending milestone."""
        if milestone.trigger != MilestoneTrigger(trigger):
            return milestone
        if milestone.trigger_status != TriggerStatus.PENDING:
            logger.debug("trigger_already_fired", extra={
                "milestone_id": str(milestone.milestone_id),
                "trigger": milestone.trigger.value,
                "trigger_status": milestone.trigger_status.value,
            })
            return milestone
        fired = self._triggered(milestone, event_date)
        logger.info("milestone_triggered", extra={
            "milestone_id": str(milestone.milestone_id),
            "trigger": milestone.trigger.value,
            "trigger_date": event_date.isoformat(),
            "due_date": fired.due_date.isoformat(),
        })
        return fired

    def tick(self, milestone: MilestoneSnapshot, today: date) -> MilestoneSnapshot:
        """Mark a triggered, unsettled milestone overdue once ``today`` passes its due date."""
        match milestone.trigger_status:
            case TriggerStatus.PENDING | TriggerStatus.OVERDUE:
                return milestone
            case TriggerStatus.TRIGGERED:
                if milestone.is_settled or milestone.due_date is None:
                    return milestone
                if today > milestone.due_date:
                    logger.info("milestone_overdue", extra={
                        "milestone_id": str(milestone.milestone_id),
                        "due_date": milestone.due_date.isoformat(),
                        "remaining": milestone.remaining,
                    })
                    return replace(milestone, trigger_status=TriggerStatus.OVERDUE)
                return milestone
            case _:
                raise ValueError(f"Unhandled trigger status: {milestone.trigger_status!r}")

    def fire_all(
        self,
        milestones: Sequence[MilestoneSnapshot],
        trigger: MilestoneTrigger,
        event_date: date,
    ) -> list[MilestoneSnapshot]:
        return [self.fire(m, trigger, event_date) for m in milestones]

    def tick_all(
        self, milestones: Sequence[MilestoneSnapshot], today: date
    ) -> list[MilestoneSnapshot]:
        return [self.tick(m, today) for m in milestones]

    def timeline(self, milestone: MilestoneSnapshot) -> TimelineEntry:
        """Settled milestones show their paid date; others show trigger and due info."""
        if milestone.is_settled:
            state = TimelineState.SETTLED
        else:
            match milestone.trigger_status:
                case TriggerStatus.OVERDUE:
                    state = TimelineState.OVERDUE
                case TriggerStatus.TRIGGERED:
                    state = TimelineState.DUE
                case TriggerStatus.PENDING:
                    state = TimelineState.AWAITING_TRIGGER
                case _:
                    raise ValueError(
                        f"Unhandled trigger status: {milestone.trigger_status!r}"
                    )

        if state == TimelineState.SETTLED:
            return TimelineEntry(
                milestone_id=milestone.milestone_id,
                milestone_name=milestone.milestone_name,
                state=state,
                trigger_label=milestone.trigger.label,
                paid_date=milestone.paid_date,
            )
        return TimelineEntry(
            milestone_id=milestone.milestone_id,
            milestone_name=milestone.milestone_name,
            state=state,
            trigger_label=milestone.trigger.label,
            trigger_date=milestone.trigger_date,
            due_date=milestone.due_date,
        )

    @staticmethod
    def _triggered(milestone: MilestoneSnapshot, on: date) -> MilestoneSnapshot:
        return replace(
            milestone,
            trigger_status=TriggerStatus.TRIGGERED,
            trigger_date=on,
            due_date=on + timedelta(days=milestone.offset_days),
        )
