"""
Invoices Configuration Schema.

Defines the structure and sensible defaults for invoice settings.
Actual values are loaded from YAML at runtime (see ``invoicing_config``).
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Self

from invoicing_engines.milestones import MilestoneTrigger
from invoicing_engines.schedule import PERCENT_TOLERANCE
from invoicing_kernel.logging_config import get_logger

logger = get_logger("modules.invoices.config")


@dataclass
class InvoicesConfig:
    """
    Configuration schema for the invoices module.

    Override at instantiation with deployment-specific values:

        config = InvoicesConfig(
            upcoming_window_days=14,
            **load_invoices_config(path),
        )
    """

    # Default schedule for invoices created without a template
    default_milestone_name: str = "Full Payment"
    default_milestone_trigger: MilestoneTrigger = MilestoneTrigger.MANUAL

    # Dashboard summary
    upcoming_window_days: int = 7

    # Schedule validity
    percentage_tolerance: Decimal = PERCENT_TOLERANCE

    # Payments against a schedule with unpaid milestones must name milestones
    require_milestones_when_unpaid: bool = True

    def __post_init__(self):
        if not isinstance(self.default_milestone_trigger, MilestoneTrigger):
            self.default_milestone_trigger = MilestoneTrigger(self.default_milestone_trigger)
        if not isinstance(self.percentage_tolerance, Decimal):
            self.percentage_tolerance = Decimal(str(self.percentage_tolerance))

        if not self.default_milestone_name or not self.default_milestone_name.strip():
            raise ValueError("default_milestone_name cannot be empty")
        if self.default_milestone_trigger.is_externally_fired:
            raise ValueError(
                "default_milestone_trigger must be 'manual' or 'upfront', "
                f"got '{self.default_milestone_trigger.value}'"
            )
        if self.upcoming_window_days < 0:
            raise ValueError("upcoming_window_days cannot be negative")
        if not Decimal("0") < self.percentage_tolerance <= PERCENT_TOLERANCE:
            raise ValueError(f"percentage_tolerance must be in (0, {PERCENT_TOLERANCE}]")

        logger.info(
            "invoices_config_initialized",
            extra={
                "default_milestone_name": self.default_milestone_name,
                "default_milestone_trigger": self.default_milestone_trigger.value,
                "upcoming_window_days": self.upcoming_window_days,
                "require_milestones_when_unpaid": self.require_milestones_when_unpaid,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with the standard defaults."""
        logger.info("invoices_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create config from dictionary (e.g., loaded from a YAML file)."""
        logger.info(
            "invoices_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        return cls(**data)
