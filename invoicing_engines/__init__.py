"""
Module: invoicing_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    payment-schedule engines.  This is the canonical import surface for
    invoicing_modules.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import invoicing_kernel (exceptions, logging) and sibling
    engine modules.  MUST NOT import invoicing_modules or invoicing_config.

Invariants enforced:
    - Purity: engines never call ``datetime.now()`` or ``date.today()``.
      Dates are passed in by the service layer from its injected clock.
    - Integer cents for money, two-place ``Decimal`` for percentages;
      floats never appear.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from invoicing_engines import ScheduleEditor, PaymentAllocator
    from invoicing_engines.triggers import TriggerStatusResolver
    from invoicing_engines.balance import BalanceAggregator
    from invoicing_engines.variance import VarianceCalculator
"""

from invoicing_kernel.logging_config import get_logger

logger = get_logger("engines")

from invoicing_engines.balance import (
    BalanceAggregator,
    FinancialSummary,
    InvoiceBalance,
    PaymentStatus,
)
from invoicing_engines.milestones import (
    MilestoneSnapshot,
    MilestoneTrigger,
    TriggerStatus,
    amount_for_percent,
    percent_for_amount,
)
from invoicing_engines.payments import (
    AllocationMethod,
    AppliedPayment,
    PaymentAllocator,
    PaymentCredit,
    PaymentRecordResult,
)
from invoicing_engines.schedule import (
    EditableMilestone,
    ScheduleChangeSet,
    ScheduledMilestone,
    ScheduleEditor,
)
from invoicing_engines.triggers import (
    TimelineEntry,
    TimelineState,
    TriggerStatusResolver,
)
from invoicing_engines.variance import (
    AdditionalCost,
    AdditionalCostType,
    ReviewedSubmission,
    SubmissionLine,
    SubmissionStatus,
    SubmissionSummary,
    SubmissionVariance,
    VarianceCalculator,
    VarianceResult,
)

__all__ = [
    # Milestones
    "MilestoneSnapshot",
    "MilestoneTrigger",
    "TriggerStatus",
    "amount_for_percent",
    "percent_for_amount",
    # Schedule
    "EditableMilestone",
    "ScheduleChangeSet",
    "ScheduledMilestone",
    "ScheduleEditor",
    # Triggers
    "TimelineEntry",
    "TimelineState",
    "TriggerStatusResolver",
    # Payments
    "AllocationMethod",
    "AppliedPayment",
    "PaymentAllocator",
    "PaymentCredit",
    "PaymentRecordResult",
    # Balance
    "BalanceAggregator",
    "FinancialSummary",
    "InvoiceBalance",
    "PaymentStatus",
    # Variance
    "AdditionalCost",
    "AdditionalCostType",
    "ReviewedSubmission",
    "SubmissionLine",
    "SubmissionStatus",
    "SubmissionSummary",
    "SubmissionVariance",
    "VarianceCalculator",
    "VarianceResult",
]

logger.debug("engines_package_loaded", extra={
    "modules": ["milestones", "schedule", "triggers", "payments", "balance", "variance"],
})
