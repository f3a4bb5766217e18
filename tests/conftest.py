"""
Pytest fixtures for the invoicing test suite.

Provides:
- In-memory SQLite database per test (PostgreSQL when DATABASE_URL is set)
- A DeterministicClock and an InvoiceService wired to it
- Milestone snapshot builders for engine tests
- Structured log capture

Environment Variables:
- DATABASE_URL: optional PostgreSQL connection URL.  Tests marked
  ``postgres`` are skipped unless it is set.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from invoicing_engines.milestones import MilestoneSnapshot, MilestoneTrigger, TriggerStatus
from invoicing_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from invoicing_kernel.domain.clock import DeterministicClock
from invoicing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from invoicing_modules.invoices.config import InvoicesConfig
from invoicing_modules.invoices.service import InvoiceService

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()

SQLITE_URL = "sqlite://"


def pytest_collection_modifyitems(config, items):
    """Skip PostgreSQL-only tests when no DATABASE_URL is configured."""
    if os.environ.get("DATABASE_URL"):
        return
    skip_pg = pytest.mark.skip(reason="DATABASE_URL not set")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture invoicing logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, service):
            service.record_payment(...)
            logs = captured_logs()
            assert any(r["message"] == "payment_recorded" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("invoicing")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def db_engine():
    """Fresh schema for every test; dropped afterwards."""
    engine = init_engine_from_url(os.environ.get("DATABASE_URL", SQLITE_URL))
    create_tables()
    yield engine
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def test_actor_id():
    return TEST_ACTOR_ID


@pytest.fixture
def deterministic_clock():
    """Clock pinned to 2024-01-15 09:00 UTC."""
    return DeterministicClock(datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def invoices_config():
    return InvoicesConfig.with_defaults()


@pytest.fixture
def service(session_factory, deterministic_clock, invoices_config):
    return InvoiceService(
        session_factory,
        clock=deterministic_clock,
        config=invoices_config,
    )


@pytest.fixture
def create_invoice(service, test_actor_id):
    """Factory creating an invoice dated 2024-01-15 with sensible defaults."""

    def _create(amount: int = 1_000_000, **kwargs):
        kwargs.setdefault("invoice_number", f"INV-{uuid4().hex[:8]}")
        kwargs.setdefault("invoice_date", date(2024, 1, 15))
        kwargs.setdefault("actor_id", test_actor_id)
        return service.create_invoice(amount=amount, **kwargs)

    return _create


# =============================================================================
# Engine fixtures
# =============================================================================


def make_milestone(
    milestone_id: str,
    amount: int,
    percentage: str | Decimal = "0",
    *,
    trigger: MilestoneTrigger = MilestoneTrigger.MANUAL,
    trigger_status: TriggerStatus = TriggerStatus.PENDING,
    paid_amount: int = 0,
    sort_order: int = 0,
    **kwargs,
) -> MilestoneSnapshot:
    return MilestoneSnapshot(
        milestone_id=milestone_id,
        milestone_name=kwargs.pop("milestone_name", milestone_id),
        percentage=Decimal(str(percentage)),
        amount=amount,
        trigger=trigger,
        trigger_status=trigger_status,
        paid_amount=paid_amount,
        sort_order=sort_order,
        **kwargs,
    )


@pytest.fixture
def milestone_factory():
    return make_milestone


@pytest.fixture
def thirty_seventy():
    """$10,000.00 invoice split 30/70 on PO confirmation and inspection."""
    return [
        make_milestone(
            "m1", 300_000, "30", trigger=MilestoneTrigger.PO_CONFIRMED, sort_order=0
        ),
        make_milestone(
            "m2", 700_000, "70", trigger=MilestoneTrigger.INSPECTION_PASSED, sort_order=1
        ),
    ]
