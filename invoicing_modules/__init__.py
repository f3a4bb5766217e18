"""
Invoicing Modules.

Thin orchestration layers over the invoicing kernel and engines.
Each module contains:
- Domain models (the nouns)
- ORM models (persistence)
- Configuration schema (settings)
- Service (transaction boundary)

Modules:
- Invoices: invoices, payment schedules, payments, attachments

Actual calculation logic lives in the engines.
"""

from invoicing_modules import invoices

__all__ = ["invoices"]
