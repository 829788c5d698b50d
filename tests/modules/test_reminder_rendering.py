"""
Tests for reminder message variables.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from settlement_modules.followup.config import FollowUpRules
from settlement_modules.followup.rendering import (
    build_reminder_variables,
    days_overdue,
    days_until_due,
    format_date,
)
from settlement_modules.invoicing.config import InvoicingConfig
from settlement_modules.invoicing.models import Client, InvoiceStatus, StandardInvoice


def _invoice(**overrides) -> StandardInvoice:
    fields = dict(
        id=uuid4(),
        invoice_number="FAC-2026-0042",
        client_id=uuid4(),
        status=InvoiceStatus.OVERDUE,
        issue_date=date(2026, 1, 15),
        due_date=date(2026, 2, 14),
        amount=Decimal("12345.60"),
        net_amount=Decimal("10202.98"),
        vat_amount=Decimal("2142.62"),
        subtotal=Decimal("10202.98"),
        title="Extension terrasse",
    )
    fields.update(overrides)
    return StandardInvoice(**fields)


@pytest.mark.parametrize(
    "today, expected",
    [(date(2026, 2, 10), 0), (date(2026, 2, 14), 0), (date(2026, 2, 15), 1), (date(2026, 3, 16), 30)],
)
def test_days_overdue(today, expected):
    assert days_overdue(today, date(2026, 2, 14)) == expected


def test_days_until_due_never_negative():
    assert days_until_due(date(2026, 2, 10), date(2026, 2, 14)) == 4
    assert days_until_due(date(2026, 2, 20), date(2026, 2, 14)) == 0


def test_format_date():
    assert format_date(date(2026, 3, 4)) == "04/03/2026"


class TestBuildReminderVariables:
    def test_all_values_are_formatted_strings(self):
        invoice = _invoice()
        variables = build_reminder_variables(
            invoice=invoice,
            client=Client(id=invoice.client_id, name="Boulangerie Martin", email="b@martin.test"),
            amount_due=Decimal("12345.6"),
            today=date(2026, 2, 20),
            stage=2,
            rules=FollowUpRules(),
            invoicing=InvoicingConfig(site_url="https://app.example.test/"),
        )

        assert all(isinstance(v, str) for v in variables.values())
        assert variables["invoice_amount"] == "12\u202f345,60\u00a0€"
        assert variables["due_date"] == "14/02/2026"
        assert variables["days_overdue"] == "6"
        assert variables["days_until_due"] == "0"
        assert variables["stage"] == "2"
        assert variables["invoice_title"] == "Extension terrasse"
        assert variables["invoice_link"] == f"https://app.example.test/invoices/{invoice.id}"

    def test_fallbacks_for_missing_name_and_site(self):
        invoice = _invoice()
        variables = build_reminder_variables(
            invoice=invoice,
            client=Client(id=invoice.client_id, name=""),
            amount_due=Decimal("0"),
            today=date(2026, 2, 1),
            stage=1,
            rules=FollowUpRules(default_client_name="Cher client"),
            invoicing=InvoicingConfig(),
        )

        assert variables["client_name"] == "Cher client"
        assert variables["invoice_link"] == ""
        assert variables["invoice_amount"] == "0,00\u00a0€"

    def test_currency_symbol_is_configurable(self):
        invoice = _invoice()
        variables = build_reminder_variables(
            invoice=invoice,
            client=Client(id=invoice.client_id, name="X"),
            amount_due=Decimal("1000"),
            today=date(2026, 2, 1),
            stage=1,
            rules=FollowUpRules(),
            invoicing=InvoicingConfig(currency_symbol="CHF"),
        )
        assert variables["invoice_amount"] == "1\u202f000,00\u00a0CHF"
