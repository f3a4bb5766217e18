"""
invoicing_engines.variance -- Supplier price variance against the ordered total.

Responsibility:
    Compare what a supplier submitted against what was originally ordered,
    per line and in total, and summarize submissions awaiting review.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Runs independently of the payment schedule.

Invariants enforced:
    - ``variance == submitted_total - original_total`` exactly, in cents.
      Positive means the supplier charged more than ordered.
    - ``variance_percent`` is exact (no internal rounding); only
      ``display_percent`` rounds, to two places.
    - ``variance_percent`` is ``None`` when the original total is zero.

Failure modes:
    - ValueError on negative quantities, unit costs or totals.

Usage:
    calculator = VarianceCalculator()
    result = calculator.total_variance(original_total=1_000_000, submitted_total=1_035_000)
    result.variance          # 35000
    result.variance_percent  # Decimal("3.5")
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import UUID

from invoicing_engines.tracer import traced_engine
from invoicing_kernel.logging_config import get_logger

logger = get_logger("engines.variance")

DISPLAY_QUANTUM = Decimal("0.01")


class SubmissionStatus(str, Enum):
    """Review state of a supplier price submission."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISED = "revised"  # Superseded by a later revision
    EXPIRED = "expired"


class AdditionalCostType(str, Enum):
    """Charges a supplier may add on top of line items."""

    HANDLING = "handling"
    RUSH = "rush"
    TOOLING = "tooling"
    SHIPPING = "shipping"
    INSPECTION = "inspection"
    OTHER = "other"


@dataclass(frozen=True)
class VarianceResult:
    """
    Signed difference between a submitted and an original total.

    All fields are immutable. Use properties for derived values.
    """

    original_total: int
    submitted_total: int
    variance: int
    variance_percent: Decimal | None

    @property
    def is_over(self) -> bool:
        return self.variance > 0

    @property
    def is_under(self) -> bool:
        return self.variance < 0

    @property
    def is_exact(self) -> bool:
        return self.variance == 0

    @property
    def display_percent(self) -> Decimal | None:
        """``variance_percent`` rounded half-up to two places."""
        if self.variance_percent is None:
            return None
        return self.variance_percent.quantize(DISPLAY_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class SubmissionLine:
    """One ordered line with the supplier's submitted unit cost."""

    quantity: int
    original_unit_cost: int
    submitted_unit_cost: int
    line_id: str | UUID | None = None
    sku: str | None = None

    def __post_init__(self) -> None:
        if self.quantity < 0:
            raise ValueError("quantity cannot be negative")
        if self.original_unit_cost < 0 or self.submitted_unit_cost < 0:
            raise ValueError("unit costs cannot be negative")


@dataclass(frozen=True)
class AdditionalCost:
    """
    Extra supplier charge.  A per-unit cost is multiplied by ``unit_count``.
    """

    cost_type: AdditionalCostType
    amount: int
    per_unit: bool = False
    unit_count: int | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("additional cost cannot be negative")
        if self.per_unit and (self.unit_count is None or self.unit_count < 0):
            raise ValueError("per-unit costs need a non-negative unit_count")

    @property
    def total(self) -> int:
        if self.per_unit:
            return self.amount * self.unit_count
        return self.amount


@dataclass(frozen=True)
class LineVariance:
    line: SubmissionLine
    result: VarianceResult


@dataclass(frozen=True)
class SubmissionVariance:
    """Line-level and total variance for one supplier submission."""

    lines: tuple[LineVariance, ...]
    original_subtotal: int
    submitted_subtotal: int
    additional_costs_total: int
    total: VarianceResult

    @property
    def submitted_total(self) -> int:
        return self.submitted_subtotal + self.additional_costs_total


@dataclass(frozen=True)
class ReviewedSubmission:
    status: SubmissionStatus
    variance: VarianceResult


@dataclass(frozen=True)
class SubmissionSummary:
    pending_count: int
    pending_variance_total: int
    approved_count: int
    approved_variance_total: int
    average_variance_percent: Decimal | None


class VarianceCalculator:
    """
    Pure function calculator for supplier price variance.

    Contract:
        No I/O, fully deterministic, integer cents in and out.
    Guarantees:
        - ``total_variance``: submitted - original, percent of original.
        - ``submission_variance``: the original side is the sum of ordered
          line totals; the submitted side adds additional costs.
    """

    @traced_engine("variance", "1.0", fingerprint_fields=("original_total", "submitted_total"))
    def total_variance(self, *, original_total: int, submitted_total: int) -> VarianceResult:
        if original_total < 0 or submitted_total < 0:
            raise ValueError("totals cannot be negative")
        variance = submitted_total - original_total
        if original_total == 0:
            percent = None
        else:
            percent = Decimal(variance) * Decimal(100) / Decimal(original_total)
        return VarianceResult(
            original_total=original_total,
            submitted_total=submitted_total,
            variance=variance,
            variance_percent=percent,
        )

    def line_variance(self, line: SubmissionLine) -> LineVariance:
        return LineVariance(
            line=line,
            result=self.total_variance(
                original_total=line.quantity * line.original_unit_cost,
                submitted_total=line.quantity * line.submitted_unit_cost,
            ),
        )

    def submission_variance(
        self,
        lines: Sequence[SubmissionLine],
        additional_costs: Sequence[AdditionalCost] = (),
    ) -> SubmissionVariance:
        line_results = tuple(self.line_variance(line) for line in lines)
        original_subtotal = sum(lv.result.original_total for lv in line_results)
        submitted_subtotal = sum(lv.result.submitted_total for lv in line_results)
        costs_total = sum(cost.total for cost in additional_costs)

        total = self.total_variance(
            original_total=original_subtotal,
            submitted_total=submitted_subtotal + costs_total,
        )
        if total.is_over:
            logger.info("supplier_submission_over_original", extra={
                "variance": total.variance,
                "variance_percent": str(total.display_percent),
                "line_count": len(line_results),
            })
        return SubmissionVariance(
            lines=line_results,
            original_subtotal=original_subtotal,
            submitted_subtotal=submitted_subtotal,
            additional_costs_total=costs_total,
            total=total,
        )

    def summarize_submissions(
        self, submissions: Iterable[ReviewedSubmission]
    ) -> SubmissionSummary:
        """Pending review count and variance, plus approved totals and mean percent."""
        pending_count = pending_total = 0
        approved_count = approved_total = 0
        approved_percents: list[Decimal] = []
        for submission in submissions:
            match submission.status:
                case SubmissionStatus.PENDING:
                    pending_count += 1
                    pending_total += submission.variance.variance
                case SubmissionStatus.APPROVED:
                    approved_count += 1
                    approved_total += submission.variance.variance
                    if submission.variance.variance_percent is not None:
                        approved_percents.append(submission.variance.variance_percent)
                case SubmissionStatus.REJECTED | SubmissionStatus.REVISED | SubmissionStatus.EXPIRED:
                    pass
                case _:
                    raise ValueError(f"Unhandled submission status: {submission.status!r}")

        average = None
        if approved_percents:
            average = (sum(approved_percents) / len(approved_percents)).quantize(
                DISPLAY_QUANTUM, rounding=ROUND_HALF_UP
            )
        return SubmissionSummary(
            pending_count=pending_count,
            pending_variance_total=pending_total,
            approved_count=approved_count,
            approved_variance_total=approved_total,
            average_variance_percent=average,
        )
