"""
invoicing_engines.balance -- Invoice roll-up of payments and milestones.

Responsibility:
    Recompute an invoice's paid amount, balance and status from its
    payments and milestones, and fold many invoices into a dashboard
    summary.

Architecture position:
    Engines -- pure calculation layer, zero I/O, no clock access.

Invariants enforced:
    - ``paid_amount == sum(payment amounts)`` regardless of milestone linkage.
    - ``balance == max(0, invoice_amount - paid_amount)``.
    - Status precedence: paid, then overdue, then partial, then unpaid.

Failure modes:
    - ValueError on a non-positive invoice amount or negative payment.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from uuid import UUID

from invoicing_engines.milestones import MilestoneSnapshot
from invoicing_kernel.logging_config import get_logger

logger = get_logger("engines.balance")


class PaymentStatus(str, Enum):
    """Invoice-level payment status."""

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class InvoiceBalance:
    """Computed read model for one invoice."""

    invoice_amount: int
    paid_amount: int
    balance: int
    status: PaymentStatus
    overdue_milestone_ids: tuple[str | UUID, ...] = ()
    open_due_dates: tuple[date, ...] = ()

    @property
    def is_overdue(self) -> bool:
        return self.status == PaymentStatus.OVERDUE


@dataclass(frozen=True)
class FinancialSummary:
    """Totals across many invoices."""

    total_invoiced: int
    total_paid: int
    outstanding: int
    overdue_count: int
    upcoming_this_week: int
    invoice_count: int


class BalanceAggregator:
    """
    Pure recomputation of invoice totals.

    Contract:
        ``summarize`` is run after every payment or schedule mutation; its
        result is the only source of an invoice's paid/balance/status.
    """

    def summarize(
        self,
        *,
        invoice_amount: int,
        payment_amounts: Iterable[int],
        milestones: Sequence[MilestoneSnapshot] = (),
        due_date: date | None = None,
        as_of: date,
    ) -> InvoiceBalance:
        """
        Roll up one invoice.

        An invoice is overdue when it still has a balance and either a
        milestone is past due or, with no schedule, the invoice's own due
        date has passed.
        """
        if invoice_amount <= 0:
            raise ValueError("invoice_amount must be positive")
        amounts = list(payment_amounts)
        if any(a < 0 for a in amounts):
            raise ValueError("Payment amounts cannot be negative")

        paid = sum(amounts)
        balance = max(0, invoice_amount - paid)

        overdue_ids = tuple(m.milestone_id for m in milestones if m.is_past_due(as_of))
        open_due = [
            m.due_date for m in milestones if not m.is_settled and m.due_date is not None
        ]
        if milestones:
            past_due = bool(overdue_ids)
        else:
            past_due = due_date is not None and as_of > due_date
            if due_date is not None and balance > 0:
                open_due.append(due_date)

        if balance == 0:
            status = PaymentStatus.PAID
        elif past_due:
            status = PaymentStatus.OVERDUE
        elif paid > 0:
            status = PaymentStatus.PARTIAL
        else:
            status = PaymentStatus.UNPAID

        return InvoiceBalance(
            invoice_amount=invoice_amount,
            paid_amount=paid,
            balance=balance,
            status=status,
            overdue_milestone_ids=overdue_ids if balance > 0 else (),
            open_due_dates=tuple(sorted(open_due)) if balance > 0 else (),
        )

    def fold(
        self,
        balances: Iterable[InvoiceBalance],
        as_of: date,
        upcoming_window_days: int = 7,
    ) -> FinancialSummary:
        """Linear scan: totals, overdue invoice count, and due dates in the next window."""
        window_end = as_of + timedelta(days=upcoming_window_days)
        total_invoiced = total_paid = outstanding = 0
        overdue_count = upcoming = count = 0
        for b in balances:
            count += 1
            total_invoiced += b.invoice_amount
            total_paid += b.paid_amount
            outstanding += b.balance
            if b.is_overdue:
                overdue_count += 1
            upcoming += sum(1 for d in b.open_due_dates if as_of <= d <= window_end)

        summary = FinancialSummary(
            total_invoiced=total_invoiced,
            total_paid=total_paid,
            outstanding=outstanding,
            overdue_count=overdue_count,
            upcoming_this_week=upcoming,
            invoice_count=count,
        )
        logger.debug("financial_summary_folded", extra={
            "invoice_count": count,
            "outstanding": outstanding,
            "overdue_count": overdue_count,
        })
        return summary
