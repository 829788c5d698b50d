"""
Invoicing Domain Models (``settlement_modules.invoicing.models``).

Responsibility
--------------
Frozen dataclass value objects for clients, quotes, invoice events and the
invoice itself.  An invoice is a tagged union with one variant per kind:

    StandardInvoice | DepositInvoice | FinalInvoice | CreditNote

Each variant declares the fields it requires, so no caller has to inspect an
open metadata bag for deposit or credit-note flags.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.

Invariants enforced
-------------------
* All models are ``frozen=True``.
* All monetary fields use ``Decimal``.
* ``CreditNote.related_invoice_id`` is required; its amounts are negative.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Union
from uuid import UUID

from settlement_engines.calculator import LineItem
from settlement_kernel.domain.money import ZERO


class InvoiceStatus(str, Enum):
    """Invoice payment states."""
    UNPAID = "unpaid"
    OVERDUE = "overdue"
    PAID = "paid"
    CANCELLED = "cancelled"

    @property
    def is_open(self) -> bool:
        return self in (InvoiceStatus.UNPAID, InvoiceStatus.OVERDUE)


class DocumentType(str, Enum):
    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"


class InvoiceType(str, Enum):
    STANDARD = "standard"
    DEPOSIT = "deposit"
    FINAL = "final"


class InvoiceEventType(str, Enum):
    """Append-only audit events recorded against an invoice."""
    STATUS_CHANGED = "status_changed"
    CREDIT_NOTE_ISSUED = "credit_note_issued"
    FOLLOWUP_CREATED = "followup_created"
    FOLLOWUP_ADVANCED = "followup_advanced"
    FOLLOWUPS_STOPPED = "followups_stopped"
    FOLLOWUP_SENT = "followup_sent"
    FOLLOWUP_FAILED = "followup_failed"
    FOLLOWUP_SKIPPED = "followup_skipped"
    DOCUMENT_REGENERATED = "document_regenerated"


@dataclass(frozen=True)
class Client:
    """Someone who receives quotes and invoices."""
    id: UUID
    name: str
    email: str | None = None
    language: str = "fr"


@dataclass(frozen=True)
class Quote:
    """A priced proposal; its breakdown is what invoices are issued from."""
    id: UUID
    quote_number: str
    client_id: UUID
    title: str
    line_items: tuple[LineItem, ...]
    vat_enabled: bool
    vat_rate_percent: Decimal
    discount_enabled: bool
    discount_rate_percent: Decimal
    deposit_enabled: bool
    deposit_amount: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    vat_amount: Decimal
    total_amount: Decimal


@dataclass(frozen=True, kw_only=True)
class _InvoiceBase:
    """Fields shared by every invoice variant."""
    id: UUID
    invoice_number: str
    client_id: UUID
    status: InvoiceStatus
    issue_date: date
    due_date: date
    amount: Decimal
    net_amount: Decimal
    vat_amount: Decimal
    vat_rate_percent: Decimal = ZERO
    balance_due: Decimal = ZERO
    title: str = ""
    quote_id: UUID | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    document_handle: str | None = None
    line_items: tuple[LineItem, ...] = field(default_factory=tuple)

    document_type: ClassVar[str] = DocumentType.INVOICE.value
    invoice_type: ClassVar[str] = InvoiceType.STANDARD.value

    @property
    def is_credit_note(self) -> bool:
        return self.document_type == DocumentType.CREDIT_NOTE.value


@dataclass(frozen=True, kw_only=True)
class StandardInvoice(_InvoiceBase):
    subtotal: Decimal
    discount_amount: Decimal = ZERO


@dataclass(frozen=True, kw_only=True)
class DepositInvoice(_InvoiceBase):
    """Upfront partial payment on a larger quote.

    ``amount`` is the deposit grossed up at the blended project VAT rate.
    """
    deposit_net: Decimal
    deposit_vat: Decimal
    project_subtotal: Decimal
    project_vat: Decimal
    project_total: Decimal

    invoice_type: ClassVar[str] = InvoiceType.DEPOSIT.value


@dataclass(frozen=True, kw_only=True)
class FinalInvoice(_InvoiceBase):
    """Remainder of a project after its deposit invoice.

    ``net_amount`` / ``vat_amount`` show the full project; ``amount`` is
    what is still payable.
    """
    project_subtotal: Decimal
    project_vat: Decimal
    project_total: Decimal
    deposit_net: Decimal
    deposit_vat: Decimal
    deposit_total: Decimal
    deposit_invoice_id: UUID | None = None

    invoice_type: ClassVar[str] = InvoiceType.FINAL.value


@dataclass(frozen=True, kw_only=True)
class CreditNote(_InvoiceBase):
    """Negative document offsetting ``related_invoice_id``."""
    related_invoice_id: UUID
    reason: str | None = None

    document_type: ClassVar[str] = DocumentType.CREDIT_NOTE.value


Invoice = Union[StandardInvoice, DepositInvoice, FinalInvoice, CreditNote]


@dataclass(frozen=True)
class InvoiceEvent:
    """One audit log entry for an invoice."""
    id: UUID
    invoice_id: UUID
    event_type: InvoiceEventType
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InvoiceStatistics:
    """Counts and outstanding amounts per status."""
    counts: dict[str, int]
    amounts: dict[str, Decimal]
    outstanding_balance: Decimal
