"""
Module ORM Registry (``invoicing_modules._orm_registry``).

Responsibility
--------------
Ensure all module-level SQLAlchemy ORM models are imported so that
``Base.metadata`` contains their table definitions before tables are
created.  ``invoicing_kernel.db.engine.create_tables`` calls this first.

Architecture position
---------------------
**Modules layer** -- utility.  MUST NOT be imported at module level by
``invoicing_kernel``; the kernel imports it lazily inside ``create_tables``.
"""


def import_all_orm_models() -> None:
    """Import every ``invoicing_modules.*.orm`` module to register ORM models.

    This function is idempotent -- repeated calls are harmless.
    """
    import invoicing_modules.invoices.orm  # noqa: F401
