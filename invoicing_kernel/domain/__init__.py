"""
Pure domain layer.

No dependencies on ORM, database, or I/O.
"""

from invoicing_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
]
