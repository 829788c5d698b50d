"""
settlement_modules.invoicing
============================

Responsibility:
    Clients, quotes, invoices (standard, deposit, final) and credit notes,
    their stored amounts, status workflow and event log.  Monetary math is
    delegated to ``settlement_engines``; follow-up side effects of status
    changes go through ``settlement_modules.followup``.

Architecture:
    Module layer.  May import from settlement_kernel and settlement_engines.
    ``InvoiceService`` and ``InvoiceStatusController`` are imported from
    their own modules (``service``, ``status``).

Invariants enforced:
    - Paying or cancelling an invoice stops its follow-ups, after the new
      status is persisted.
    - Credit notes are negative, reference their invoice, and never push
      its balance below zero.
"""

from settlement_modules.invoicing.config import InvoicingConfig
from settlement_modules.invoicing.models import (
    Client,
    CreditNote,
    DepositInvoice,
    DocumentType,
    FinalInvoice,
    Invoice,
    InvoiceEvent,
    InvoiceEventType,
    InvoiceStatistics,
    InvoiceStatus,
    InvoiceType,
    Quote,
    StandardInvoice,
)
from settlement_modules.invoicing.workflows import (
    CREDIT_NOTE_WORKFLOW,
    INVOICE_STATUS_WORKFLOW,
)

__all__ = [
    "Client",
    "CreditNote",
    "DepositInvoice",
    "DocumentType",
    "FinalInvoice",
    "Invoice",
    "InvoiceEvent",
    "InvoiceEventType",
    "InvoiceStatistics",
    "InvoiceStatus",
    "InvoiceType",
    "Quote",
    "StandardInvoice",
    "CREDIT_NOTE_WORKFLOW",
    "INVOICE_STATUS_WORKFLOW",
    "InvoicingConfig",
]
