"""
Pytest fixtures for the forecast ledger test suite.

Provides:
- A fresh SQLite database per test (file in tmp_path, foreign keys on)
- Service fixtures wired with a deterministic clock and no-wait retries
- Data builders for projects, line items and PO mappings
- Captured structured logs

Environment Variables:
- DATABASE_URL: run the database tests against another database (e.g. a
  local PostgreSQL).  Tables are dropped and recreated per test.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import uuid4

import pytest
from sqlalchemy.orm import Session

from forecast_config import EngineSettings
from forecast_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from forecast_kernel.db.immutability import register_immutability_listeners
from forecast_kernel.domain.clock import DeterministicClock
from forecast_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from forecast_kernel.models.purchase_order import POLineItem, POMapping, PurchaseOrder
from forecast_kernel.services.baseline_service import BaselineService
from forecast_kernel.services.retry_service import RetryPolicy, fixed_backoff
from forecast_services.forecast_service import ForecastService
from tests.factories import classification

TEST_ACTOR = "test-user"

FIXED_NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


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
    Capture forecast_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, forecast_service):
            forecast_service.create_version(...)
            logs = captured_logs()
            assert any(r["message"] == "forecast_version_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    handler.setLevel(logging.DEBUG)
    root = logging.getLogger("forecast_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _immutability_listeners():
    """ORM immutability listeners stay registered for the whole suite."""
    register_immutability_listeners()
    yield


@pytest.fixture
def db_engine(tmp_path):
    """A fresh database per test; SQLite in tmp_path unless DATABASE_URL is set."""
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'forecast.db'}"
    engine = init_engine_from_url(url, echo=False, pool_timeout=5)
    if os.environ.get("DATABASE_URL"):
        drop_tables()
    create_tables()
    yield engine
    reset_engine()


@pytest.fixture
def session(db_engine) -> Generator[Session, None, None]:
    """A real session.  Services under test commit through it."""
    sess = get_session()
    try:
        yield sess
    finally:
        sess.rollback()
        sess.close()


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock(FIXED_NOW)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def forecast_service(session, settings, deterministic_clock) -> ForecastService:
    """ForecastService with a fixed clock and zero-delay retries."""
    return ForecastService(
        session,
        settings=settings,
        clock=deterministic_clock,
        retry_policy=RetryPolicy(max_attempts=3, backoff=fixed_backoff(0.0)),
        sleep=lambda seconds: None,
    )


@pytest.fixture
def baseline_service(session) -> BaselineService:
    return BaselineService(session)


# =============================================================================
# Data builders
# =============================================================================


@pytest.fixture
def make_project(session, baseline_service):
    """Create and commit a project; returns its id."""

    def _make(name: str = "Plant Expansion", start_date: date | None = date(2024, 1, 1)):
        project = baseline_service.create_project(
            name, business_line="Commercial", start_date=start_date, actor=TEST_ACTOR
        )
        session.commit()
        return project.id

    return _make


@pytest.fixture
def make_line_item(session, baseline_service):
    """Create and commit a baseline line item; returns its LineItemInfo."""

    def _make(project_id, budget, **levels):
        info = baseline_service.add_line_item(
            project_id, classification(**levels), Decimal(str(budget)), actor=TEST_ACTOR
        )
        session.commit()
        return info

    return _make


@pytest.fixture
def make_po_mapping(session):
    """
    Map a new PO line onto a line item and commit.

    PO data is externally owned, so tests write the rows directly.
    """

    def _make(
        line_item_id,
        mapped_amount,
        *,
        line_value="1000",
        invoiced_value=None,
        invoiced_quantity=None,
        invoice_date=None,
        supplier_promise_date=None,
        line_created_date=None,
    ) -> POMapping:
        po = PurchaseOrder(po_number=f"PO-{uuid4().hex[:8]}", vendor_name="Acme Supply")
        session.add(po)
        session.flush()
        po_line = POLineItem(
            po_id=po.id,
            description="Supply",
            line_value=Decimal(str(line_value)),
            invoiced_value=None if invoiced_value is None else Decimal(str(invoiced_value)),
            invoiced_quantity=None if invoiced_quantity is None else Decimal(str(invoiced_quantity)),
            invoice_date=invoice_date,
            supplier_promise_date=supplier_promise_date,
            line_created_date=line_created_date,
        )
        session.add(po_line)
        session.flush()
        mapping = POMapping(
            po_line_item_id=po_line.id,
            line_item_id=line_item_id,
            mapped_amount=Decimal(str(mapped_amount)),
            mapped_by=TEST_ACTOR,
        )
        session.add(mapping)
        session.commit()
        return mapping

    return _make
