"""
Pytest fixtures for the settlement engine test suite.

Provides:
- In-memory SQLite sessions (SAVEPOINT-capable) for every test
- A deterministic clock and actor id
- Fake document and messaging collaborators
- Factory fixtures for clients, quotes and invoices

No external database is needed: ``build_engine("sqlite://")`` shares one
connection across the session and turns nested transactions into real
SAVEPOINTs.
"""

import json
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO
from typing import Mapping, Sequence
from uuid import UUID

import pytest
from sqlalchemy.orm import sessionmaker

from settlement_engines.calculator import (
    FinancialConfig,
    LineItem,
    MonetaryBreakdown,
    VatConfig,
)
from settlement_kernel.db.engine import build_engine, create_tables
from settlement_kernel.domain.clock import DeterministicClock
from settlement_kernel.exceptions import TransportFailureError
from settlement_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from settlement_modules.followup.config import FollowUpRules
from settlement_modules.followup.ports import Attachment, SendResult
from settlement_modules.invoicing.config import InvoicingConfig
from settlement_modules.invoicing.models import Invoice
from settlement_modules.invoicing.service import InvoiceService


# Test actor ID for all test operations
TEST_ACTOR_ID = UUID("00000000-0000-4000-a000-00000000a001")

# 2026-03-02 09:00 UTC: one hour after the default dispatch hour
TEST_NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)
TEST_TODAY = TEST_NOW.date()


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
    Capture settlement logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, dispatcher):
            dispatcher.dispatch_due()
            logs = captured_logs()
            assert any(r["message"] == "followup_sent" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("settlement")
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
def engine():
    """Fresh in-memory database per test."""
    eng = build_engine("sqlite://")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


# =============================================================================
# Time, actors, configuration
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(fixed_time=TEST_NOW)


@pytest.fixture
def test_actor_id():
    return TEST_ACTOR_ID


@pytest.fixture
def rules():
    return FollowUpRules()


@pytest.fixture
def invoicing_config():
    return InvoicingConfig(site_url="https://app.example.test")


# =============================================================================
# Collaborator fakes
# =============================================================================


class RecordingMessagingService:
    """MessagingService that records every send and always succeeds."""

    def __init__(self):
        self.sent: list[dict] = []

    def send(
        self,
        *,
        template: str,
        variables: Mapping[str, str],
        recipient: str,
        attachments: Sequence[Attachment] = (),
        language: str = "fr",
        metadata: Mapping[str, str] | None = None,
    ) -> SendResult:
        self.sent.append({
            "template": template,
            "variables": dict(variables),
            "recipient": recipient,
            "attachments": list(attachments),
            "language": language,
            "metadata": dict(metadata or {}),
        })
        return SendResult(success=True, message_id=f"msg-{len(self.sent)}")


class FailingMessagingService:
    """MessagingService whose transport always fails.

    ``raise_error=True`` raises TransportFailureError instead of returning
    an unsuccessful SendResult.
    """

    def __init__(self, raise_error: bool = False):
        self.raise_error = raise_error
        self.calls = 0

    def send(self, *, template, variables, recipient, attachments=(), language="fr", metadata=None):
        self.calls += 1
        if self.raise_error:
            raise TransportFailureError(recipient, "smtp connection refused")
        return SendResult(success=False, error="mailbox unavailable")


class FakeDocumentService:
    """In-memory document store; rendering can be made to fail."""

    def __init__(self, render_fails: bool = False):
        self.render_fails = render_fails
        self.rendered: list[str] = []
        self.store: dict[str, bytes] = {}

    def render_document(
        self,
        invoice: Invoice,
        line_items: Sequence[LineItem],
        breakdown: MonetaryBreakdown,
    ) -> bytes:
        if self.render_fails:
            raise RuntimeError("renderer offline")
        self.rendered.append(invoice.invoice_number)
        return f"%PDF {invoice.invoice_number} {breakdown.balance_amount}".encode()

    def store_document(self, content: bytes) -> str:
        handle = f"doc-{len(self.store) + 1}"
        self.store[handle] = content
        return handle

    def fetch_stored_document(self, handle: str) -> bytes | None:
        return self.store.get(handle)


@pytest.fixture
def messaging():
    return RecordingMessagingService()


@pytest.fixture
def documents():
    return FakeDocumentService()


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def invoice_service(session, clock, invoicing_config, rules):
    return InvoiceService(session, config=invoicing_config, clock=clock, rules=rules)


def vat_config(rate: str = "21") -> FinancialConfig:
    return FinancialConfig(vat=VatConfig(enabled=True, rate_percent=Decimal(rate)))


@pytest.fixture
def create_client(invoice_service, test_actor_id):
    def _create(name: str = "Atelier Dupont", email: str | None = "compta@dupont.test", language: str = "fr"):
        return invoice_service.create_client(name, email, actor_id=test_actor_id, language=language)

    return _create


@pytest.fixture
def create_quote(invoice_service, create_client, test_actor_id):
    """Quote priced at 21% VAT from plain line totals."""

    def _create(
        line_totals: Sequence[str] = ("1000.00",),
        config: FinancialConfig | None = None,
        client=None,
    ):
        client = client or create_client()
        items = [
            LineItem(description=f"Poste {i}", line_total=Decimal(total))
            for i, total in enumerate(line_totals, start=1)
        ]
        return invoice_service.create_quote(
            client.id,
            items,
            config or vat_config(),
            actor_id=test_actor_id,
            title="Rénovation cuisine",
        )

    return _create


@pytest.fixture
def create_invoice(invoice_service, create_quote, test_actor_id):
    """
    Issue a standard invoice due ``due_in_days`` from TEST_TODAY.

    Negative values give an invoice already past its due date.  Payment
    terms are 30 days, so the issue date is back-computed.
    """

    def _create(
        due_in_days: int = 30,
        line_totals: Sequence[str] = ("1000.00",),
        client=None,
    ):
        quote = create_quote(line_totals, client=client)
        issue_date = TEST_TODAY + timedelta(days=due_in_days - 30)
        return invoice_service.issue_invoice_from_quote(
            quote.id, actor_id=test_actor_id, issue_date=issue_date,
        )

    return _create


def at(day: date, hour: int = 9) -> datetime:
    """UTC datetime on ``day`` at ``hour``."""
    return datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)
