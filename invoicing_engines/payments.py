"""
invoicing_engines.payments -- Loss-free allocation of payments to milestones.

Responsibility:
    Validate a payment request against an invoice's balance and schedule,
    split the payment across the selected milestones without losing or
    inventing a cent, and reverse exactly those credits on deletion.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Conservation: ``sum(credit.amount) == payment.amount`` for every
      milestone-linked payment.
    - ``0 <= paid_amount <= amount`` on every milestone after record/reverse.
    - Reversal subtracts exactly the stored per-milestone credits, so
      ``reverse(record(x))`` restores every touched milestone.
    - Largest-remainder ties go to the milestone with the lower sort_order,
      so the same input always yields the same credits.

Failure modes:
    - PaymentValidationError (with ``rule``) when a precondition fails.
    - AllocationInvariantError if credits would not sum to the payment.
      Unreachable when preconditions hold.

Usage:
    allocator = PaymentAllocator()
    result = allocator.record(
        payment_id="p-1",
        payment_date=date(2024, 3, 1),
        amount=300_000,
        invoice_balance=1_000_000,
        milestones=schedule,
        milestone_ids=["m1"],
    )
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from uuid import UUID

from invoicing_engines.milestones import MilestoneSnapshot
from invoicing_engines.tracer import traced_engine
from invoicing_kernel.exceptions import (
    AllocationInvariantError,
    MilestoneNotFoundError,
    PaymentValidationError,
)
from invoicing_kernel.logging_config import get_logger

logger = get_logger("engines.payments")


class AllocationMethod(str, Enum):
    """How a payment was split across milestones."""

    EXACT = "exact"  # Amount equals the selected remaining total
    LARGEST_REMAINDER = "largest_remainder"  # Proportional, leftover cents by remainder
    UNLINKED = "unlinked"  # Not credited to any milestone


@dataclass(frozen=True)
class PaymentCredit:
    """Cents one payment contributed to one milestone."""

    milestone_id: str | UUID
    amount: int

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("Credit amount cannot be negative")


@dataclass(frozen=True)
class AppliedPayment:
    """
    A payment together with the linkage needed to reverse it.

    ``schedule_item_ids`` is the user's selection; ``credits`` is what each
    milestone actually received (a selected milestone may receive 0).
    """

    payment_id: str | UUID
    payment_date: date
    amount: int
    schedule_item_ids: tuple[str | UUID, ...] = ()
    credits: tuple[PaymentCredit, ...] = ()

    @property
    def is_linked(self) -> bool:
        return bool(self.schedule_item_ids)

    @property
    def credited_total(self) -> int:
        return sum(c.amount for c in self.credits)


@dataclass(frozen=True)
class PaymentRecordResult:
    """Outcome of ``PaymentAllocator.record``."""

    payment: AppliedPayment
    milestones: tuple[MilestoneSnapshot, ...]
    method: AllocationMethod

    @property
    def credits(self) -> tuple[PaymentCredit, ...]:
        return self.payment.credits


class PaymentAllocator:
    """
    Record and reverse payments against a milestone schedule.

    Contract:
        Pure functions over ``MilestoneSnapshot`` values.  Returns new
        snapshots; inputs are never mutated.
    Guarantees:
        - Exact fill when the amount equals the selected remaining total.
        - Otherwise largest-remainder apportionment using exact integer
          arithmetic (no floats, no Decimal division).
    Non-goals:
        - Does not check deletion confirmation; that is a boundary concern.
        - Does not track invoice-level totals; see BalanceAggregator.
    """

    def __init__(self, require_milestones_when_unpaid: bool = True):
        self._require_milestones = require_milestones_when_unpaid

    @traced_engine("payments", "1.0", fingerprint_fields=("amount", "invoice_balance", "milestone_ids"))
    def record(
        self,
        *,
        payment_id: str | UUID,
        payment_date: date,
        amount: int,
        invoice_balance: int,
        milestones: Sequence[MilestoneSnapshot],
        milestone_ids: Sequence[str | UUID] = (),
    ) -> PaymentRecordResult:
        """
        Validate and apply one payment.

        Preconditions (each failure names its ``rule``):
            - ``amount > 0``.
            - ``amount <= invoice_balance``.
            - Every id in ``milestone_ids`` names a milestone on the schedule.
            - If any milestone still has a remaining balance, at least one
              milestone is selected.
            - A linked payment does not exceed the selected remaining total.
        Raises:
            PaymentValidationError, AllocationInvariantError.
        """
        selected_ids = tuple(dict.fromkeys(milestone_ids))
        self._check_preconditions(amount, invoice_balance, milestones, selected_ids)

        by_id = {m.milestone_id: m for m in milestones}
        if not selected_ids:
            payment = AppliedPayment(
                payment_id=payment_id, payment_date=payment_date, amount=amount
            )
            logger.info("payment_allocated", extra={
                "payment_id": str(payment_id),
                "amount": amount,
                "method": AllocationMethod.UNLINKED.value,
            })
            return PaymentRecordResult(
                payment=payment,
                milestones=tuple(milestones),
                method=AllocationMethod.UNLINKED,
            )

        selected = sorted(
            (by_id[mid] for mid in selected_ids if by_id[mid].remaining > 0),
            key=lambda m: m.sort_order,
        )
        credits, method = self.allocate(amount, selected)

        credit_by_id = {c.milestone_id: c.amount for c in credits}
        updated = []
        for milestone in milestones:
            credit = credit_by_id.get(milestone.milestone_id, 0)
            if credit:
                paid = milestone.paid_amount + credit
                milestone = replace(
                    milestone,
                    paid_amount=paid,
                    paid_date=payment_date if paid == milestone.amount else milestone.paid_date,
                )
            updated.append(milestone)

        payment = AppliedPayment(
            payment_id=payment_id,
            payment_date=payment_date,
            amount=amount,
            schedule_item_ids=selected_ids,
            credits=credits,
        )
        logger.info("payment_allocated", extra={
            "payment_id": str(payment_id),
            "amount": amount,
            "method": method.value,
            "credit_count": len(credits),
        })
        return PaymentRecordResult(payment=payment, milestones=tuple(updated), method=method)

    def allocate(
        self, amount: int, selected: Sequence[MilestoneSnapshot]
    ) -> tuple[tuple[PaymentCredit, ...], AllocationMethod]:
        """
        Split ``amount`` across ``selected`` (already ordered by sort_order).

        Postconditions:
            ``sum(credits) == amount`` and each credit <= that milestone's
            remaining, or AllocationInvariantError is raised.
        """
        remainders = [m.remaining for m in selected]
        total_remaining = sum(remainders)
        if total_remaining <= 0:
            raise AllocationInvariantError(amount, 0, total_remaining)

        if amount == total_remaining:
            shares = list(remainders)
            method = AllocationMethod.EXACT
        else:
            shares = self._largest_remainder(amount, remainders, selected)
            method = AllocationMethod.LARGEST_REMAINDER

        # Clamp; any cents this drops surface in the conservation check below
        shares = [min(share, remaining) for share, remaining in zip(shares, remainders)]

        allocated = sum(shares)
        # INVARIANT: credits sum to the payment amount
        if allocated != amount:
            logger.error("allocation_invariant_violated", extra={
                "amount": amount,
                "allocated": allocated,
                "selected_remaining": total_remaining,
            })
            raise AllocationInvariantError(amount, allocated, total_remaining)

        credits = tuple(
            PaymentCredit(milestone_id=m.milestone_id, amount=share)
            for m, share in zip(selected, shares)
            if share > 0
        )
        return credits, method

    @traced_engine("payments.reverse", "1.0")
    def reverse(
        self, payment: AppliedPayment, milestones: Sequence[MilestoneSnapshot]
    ) -> tuple[MilestoneSnapshot, ...]:
        """
        Undo exactly the credits ``payment`` contributed.

        A milestone that drops below its amount has ``paid_date`` cleared.

        Raises:
            MilestoneNotFoundError: a credited milestone is missing.
            AllocationInvariantError: a credit exceeds the milestone's paid amount.
        """
        by_id = {m.milestone_id: m for m in milestones}
        for credit in payment.credits:
            if credit.milestone_id not in by_id:
                raise MilestoneNotFoundError(str(credit.milestone_id))

        credit_by_id = {c.milestone_id: c.amount for c in payment.credits}
        updated = []
        for milestone in milestones:
            credit = credit_by_id.get(milestone.milestone_id, 0)
            if credit:
                paid = milestone.paid_amount - credit
                if paid < 0:
                    raise AllocationInvariantError(payment.amount, credit, milestone.paid_amount)
                milestone = replace(
                    milestone,
                    paid_amount=paid,
                    paid_date=milestone.paid_date if paid == milestone.amount else None,
                )
            updated.append(milestone)

        logger.info("payment_reversed", extra={
            "payment_id": str(payment.payment_id),
            "amount": payment.amount,
            "credit_count": len(payment.credits),
        })
        return tuple(updated)

    def _check_preconditions(
        self,
        amount: int,
        invoice_balance: int,
        milestones: Sequence[MilestoneSnapshot],
        selected_ids: tuple[str | UUID, ...],
    ) -> None:
        if amount <= 0:
            raise PaymentValidationError(
                PaymentValidationError.AMOUNT_NOT_POSITIVE,
                f"Payment amount must be positive, got {amount}",
                amount=amount,
            )
        if amount > invoice_balance:
            raise PaymentValidationError(
                PaymentValidationError.AMOUNT_EXCEEDS_BALANCE,
                f"Payment amount {amount} exceeds invoice balance {invoice_balance}",
                amount=amount,
                balance=invoice_balance,
            )

        by_id = {m.milestone_id: m for m in milestones}
        unknown = [mid for mid in selected_ids if mid not in by_id]
        if unknown:
            raise PaymentValidationError(
                PaymentValidationError.UNKNOWN_MILESTONE,
                f"Unknown milestone: {unknown[0]}",
                milestone_ids=[str(mid) for mid in unknown],
            )

        if not selected_ids:
            if self._require_milestones and any(m.remaining > 0 for m in milestones):
                raise PaymentValidationError(
                    PaymentValidationError.MILESTONES_REQUIRED,
                    "Select at least one milestone for this payment",
                )
            return

        selected_remaining = sum(by_id[mid].remaining for mid in selected_ids)
        if selected_remaining == 0:
            raise PaymentValidationError(
                PaymentValidationError.MILESTONE_SETTLED,
                "Every selected milestone is already fully paid",
                milestone_ids=[str(mid) for mid in selected_ids],
            )
        if amount > selected_remaining:
            raise PaymentValidationError(
                PaymentValidationError.AMOUNT_EXCEEDS_SELECTION,
                f"Payment amount {amount} exceeds the {selected_remaining} remaining "
                f"on the selected milestones",
                amount=amount,
                selected_remaining=selected_remaining,
            )

    @staticmethod
    def _largest_remainder(
        amount: int,
        remainders: Sequence[int],
        selected: Sequence[MilestoneSnapshot],
    ) -> list[int]:
        total = sum(remainders)
        base = [amount * r // total for r in remainders]
        # Fractional part of amount*r/total, kept as an exact numerator over total
        fractions = [amount * r % total for r in remainders]
        leftover = amount - sum(base)
        order = sorted(
            range(len(remainders)),
            key=lambda i: (-fractions[i], selected[i].sort_order, i),
        )
        for i in order[:leftover]:
            base[i] += 1
        return base
