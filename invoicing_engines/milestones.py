"""
invoicing_engines.milestones -- Milestone value types shared by all engines.

Responsibility:
    Define the closed trigger and status enumerations, the immutable
    ``MilestoneSnapshot`` every engine reads and returns, and the exact
    percentage/amount conversions used by the schedule editor.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Amounts are integer minor units (cents); percentages are ``Decimal``
      quantized to two places.  Floats never appear.
    - ``0 <= paid_amount <= amount`` on every snapshot.
    - Conversions round half-up, matching what a user sees in the editor.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import UUID

HUNDRED = Decimal("100")
PERCENT_QUANTUM = Decimal("0.01")


class MilestoneTrigger(str, Enum):
    """Business event that starts a milestone's due-date countdown."""

    UPFRONT = "upfront"
    PO_CONFIRMED = "po_confirmed"
    INSPECTION_PASSED = "inspection_passed"
    SHIPMENT_DEPARTED = "shipment_departed"
    CUSTOMS_CLEARED = "customs_cleared"
    GOODS_RECEIVED = "goods_received"
    MANUAL = "manual"

    @property
    def is_externally_fired(self) -> bool:
        """True if the trigger arrives from the purchase-order/shipment feed."""
        match self:
            case (
                MilestoneTrigger.PO_CONFIRMED
                | MilestoneTrigger.INSPECTION_PASSED
                | MilestoneTrigger.SHIPMENT_DEPARTED
                | MilestoneTrigger.CUSTOMS_CLEARED
                | MilestoneTrigger.GOODS_RECEIVED
            ):
                return True
            case MilestoneTrigger.UPFRONT | MilestoneTrigger.MANUAL:
                return False
            case _:
                raise ValueError(f"Unhandled milestone trigger: {self!r}")

    @property
    def label(self) -> str:
        return _TRIGGER_LABELS[self]


_TRIGGER_LABELS: dict[MilestoneTrigger, str] = {
    MilestoneTrigger.UPFRONT: "Upfront (Immediate)",
    MilestoneTrigger.PO_CONFIRMED: "PO Confirmed",
    MilestoneTrigger.INSPECTION_PASSED: "Inspection Passed",
    MilestoneTrigger.SHIPMENT_DEPARTED: "Shipment Departed",
    MilestoneTrigger.CUSTOMS_CLEARED: "Customs Cleared",
    MilestoneTrigger.GOODS_RECEIVED: "Goods Received",
    MilestoneTrigger.MANUAL: "Manual",
}


class TriggerStatus(str, Enum):
    """Lifecycle state of a milestone's trigger."""

    PENDING = "pending"
    TRIGGERED = "triggered"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class MilestoneSnapshot:
    """
    Immutable view of one payment-schedule milestone.

    Contract:
        Every engine takes snapshots and returns new snapshots; nothing is
        mutated in place.
    Guarantees:
        - ``0 <= paid_amount <= amount``.
        - ``offset_days >= 0``.
        - ``percentage`` is a two-place ``Decimal`` in [0, 100].
    Non-goals:
        - Does not check ``amount`` against the invoice total; that is the
          schedule editor's job.
    """

    milestone_id: str | UUID
    milestone_name: str
    percentage: Decimal
    amount: int
    trigger: MilestoneTrigger = MilestoneTrigger.MANUAL
    offset_days: int = 0
    trigger_status: TriggerStatus = TriggerStatus.PENDING
    trigger_date: date | None = None
    due_date: date | None = None
    paid_amount: int = 0
    paid_date: date | None = None
    sort_order: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.percentage, Decimal):
            object.__setattr__(self, "percentage", quantize_percent(self.percentage))
        if self.amount < 0:
            raise ValueError("Milestone amount cannot be negative")
        if self.offset_days < 0:
            raise ValueError("offset_days cannot be negative")
        if not 0 <= self.paid_amount <= self.amount:
            raise ValueError(
                f"paid_amount {self.paid_amount} outside [0, {self.amount}] "
                f"for milestone {self.milestone_id}"
            )

    @property
    def remaining(self) -> int:
        """Unpaid cents on this milestone."""
        return self.amount - self.paid_amount

    @property
    def is_settled(self) -> bool:
        """Fully paid, regardless of trigger state."""
        return self.paid_amount == self.amount

    def is_past_due(self, as_of: date) -> bool:
        """Unsettled and either marked overdue or past its due date."""
        if self.is_settled:
            return False
        if self.trigger_status == TriggerStatus.OVERDUE:
            return True
        return self.due_date is not None and as_of > self.due_date


def quantize_percent(value: Decimal | int | str) -> Decimal:
    """Round a percentage to two decimal places (half-up)."""
    return Decimal(str(value)).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def clamp_percent(value: Decimal | int | str) -> Decimal:
    """Quantize and clamp a percentage into [0, 100]."""
    pct = quantize_percent(value)
    return max(Decimal("0.00"), min(HUNDRED.quantize(PERCENT_QUANTUM), pct))


def amount_for_percent(invoice_amount: int, percentage: Decimal) -> int:
    """``round(invoice_amount * percentage / 100)`` in whole cents."""
    exact = Decimal(invoice_amount) * percentage / HUNDRED
    return int(exact.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_for_amount(invoice_amount: int, amount: int) -> Decimal:
    """``round(amount / invoice_amount * 10000) / 100`` -- basis points, then scaled."""
    if invoice_amount <= 0:
        return Decimal("0.00")
    basis_points = (Decimal(amount) * Decimal(10000) / Decimal(invoice_amount)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return (basis_points / HUNDRED).quantize(PERCENT_QUANTUM)
