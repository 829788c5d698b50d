"""Reminder message variables."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from settlement_kernel.domain.money import format_currency
from settlement_modules.followup.config import FollowUpRules
from settlement_modules.invoicing.config import InvoicingConfig
from settlement_modules.invoicing.models import Client, Invoice


def days_overdue(today: date, due_date: date) -> int:
    """Whole days past the due date; 0 on or before it."""
    return max((today - due_date).days, 0)


def days_until_due(today: date, due_date: date) -> int:
    return max((due_date - today).days, 0)


def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def build_reminder_variables(
    *,
    invoice: Invoice,
    client: Client,
    amount_due: Decimal,
    today: date,
    stage: int,
    rules: FollowUpRules,
    invoicing: InvoicingConfig,
) -> dict[str, str]:
    """All values are pre-formatted strings (decimal comma, dd/mm/YYYY)."""
    return {
        "invoice_number": invoice.invoice_number,
        "invoice_title": invoice.title,
        "client_name": client.name or rules.default_client_name,
        "invoice_amount": format_currency(amount_due, invoicing.currency_symbol),
        "invoice_total": format_currency(invoice.amount, invoicing.currency_symbol),
        "due_date": format_date(invoice.due_date),
        "days_overdue": str(days_overdue(today, invoice.due_date)),
        "days_until_due": str(days_until_due(today, invoice.due_date)),
        "stage": str(stage),
        "invoice_link": invoicing.invoice_link(invoice.id) or "",
    }
