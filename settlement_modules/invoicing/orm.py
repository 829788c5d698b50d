"""
Invoicing ORM Models (``settlement_modules.invoicing.orm``).

Responsibility
--------------
SQLAlchemy persistence for clients, quotes, invoices (all four variants in
one table with discriminator columns), frozen invoice lines and the
append-only invoice event log.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``settlement_kernel.db.base``
and sibling ``models.py``.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_engines.calculator import LineItem
from settlement_kernel.db.base import TrackedBase
from settlement_kernel.domain.money import ZERO
from settlement_modules.invoicing.models import (
    Client,
    CreditNote,
    DepositInvoice,
    DocumentType,
    FinalInvoice,
    Invoice,
    InvoiceEvent,
    InvoiceEventType,
    InvoiceStatus,
    InvoiceType,
    Quote,
    StandardInvoice,
)


# ---------------------------------------------------------------------------
# 1. ClientModel
# ---------------------------------------------------------------------------


class ClientModel(TrackedBase):
    """ORM model for clients.  ``email`` may be missing; reminders then fail."""

    __tablename__ = "clients"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    language: Mapped[str] = mapped_column(String(8), default="fr", nullable=False)

    def to_dto(self) -> Client:
        return Client(id=self.id, name=self.name, email=self.email, language=self.language)

    def __repr__(self) -> str:
        return f"<ClientModel {self.name}>"


# ---------------------------------------------------------------------------
# 2. QuoteModel / QuoteLineModel
# ---------------------------------------------------------------------------


class QuoteModel(TrackedBase):
    """
    ORM model for quotes.

    Stores the financial configuration alongside the computed breakdown so
    that the stored amounts can serve as fallbacks for legacy quotes.
    """

    __tablename__ = "quotes"

    __table_args__ = (
        UniqueConstraint("quote_number", name="uq_quotes_number"),
        Index("idx_quotes_client_id", "client_id"),
    )

    quote_number: Mapped[str] = mapped_column(String(50), nullable=False)
    client_id: Mapped[UUID] = mapped_column(ForeignKey("clients.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    vat_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    vat_rate_percent: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    discount_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    discount_rate_percent: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    deposit_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)

    subtotal: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    vat_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)

    lines: Mapped[list[QuoteLineModel]] = relationship(
        "QuoteLineModel",
        order_by="QuoteLineModel.position",
        cascade="all, delete-orphan",
    )

    def to_dto(self) -> Quote:
        return Quote(
            id=self.id,
            quote_number=self.quote_number,
            client_id=self.client_id,
            title=self.title,
            line_items=tuple(line.to_line_item() for line in self.lines),
            vat_enabled=self.vat_enabled,
            vat_rate_percent=self.vat_rate_percent,
            discount_enabled=self.discount_enabled,
            discount_rate_percent=self.discount_rate_percent,
            deposit_enabled=self.deposit_enabled,
            deposit_amount=self.deposit_amount,
            subtotal=self.subtotal,
            discount_amount=self.discount_amount,
            net_amount=self.net_amount,
            vat_amount=self.vat_amount,
            total_amount=self.total_amount,
        )

    def __repr__(self) -> str:
        return f"<QuoteModel {self.quote_number}>"


class _LineColumns:
    """Columns shared by quote and invoice lines."""

    position: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    quantity: Mapped[Decimal] = mapped_column(default=Decimal("1"), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="", nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(nullable=False)

    def to_line_item(self) -> LineItem:
        return LineItem(
            id=str(self.id),
            description=self.description,
            quantity=self.quantity,
            unit=self.unit,
            unit_price=self.unit_price,
            line_total=self.line_total,
        )

    @classmethod
    def from_line_item(cls, item: LineItem, position: int, created_by_id: UUID, **kwargs: Any):
        return cls(
            position=position,
            description=item.description,
            quantity=item.quantity,
            unit=item.unit,
            unit_price=item.unit_price,
            line_total=item.line_total,
            created_by_id=created_by_id,
            **kwargs,
        )


class QuoteLineModel(_LineColumns, TrackedBase):
    __tablename__ = "quote_lines"

    __table_args__ = (
        Index("idx_quote_lines_quote_id", "quote_id"),
    )

    quote_id: Mapped[UUID] = mapped_column(
        ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False,
    )


# ---------------------------------------------------------------------------
# 3. InvoiceModel / InvoiceLineModel
# ---------------------------------------------------------------------------


class InvoiceModel(TrackedBase):
    """
    ORM model for invoices and credit notes.

    One table holds every variant; ``document_type`` and ``invoice_type``
    select the variant in ``to_dto()``.

    Guarantees:
        - invoice_number is unique.
        - a credit note always references the invoice it offsets.
        - variant-specific columns are NULL for other variants.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_invoices_number"),
        CheckConstraint(
            "document_type IN ('invoice', 'credit_note')",
            name="ck_invoices_document_type",
        ),
        CheckConstraint(
            "document_type <> 'credit_note' OR related_invoice_id IS NOT NULL",
            name="ck_invoices_credit_note_related",
        ),
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_due_date", "due_date"),
        Index("idx_invoices_related_invoice_id", "related_invoice_id"),
        Index("idx_invoices_client_id", "client_id"),
    )

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    client_id: Mapped[UUID] = mapped_column(ForeignKey("clients.id"), nullable=False)
    quote_id: Mapped[UUID | None] = mapped_column(ForeignKey("quotes.id"), nullable=True)
    document_type: Mapped[str] = mapped_column(String(20), nullable=False)
    invoice_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    related_invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True,
    )
    deposit_invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True,
    )

    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    amount: Mapped[Decimal] = mapped_column(nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(nullable=False)
    vat_amount: Mapped[Decimal] = mapped_column(nullable=False)
    vat_rate_percent: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)
    balance_due: Mapped[Decimal] = mapped_column(default=ZERO, nullable=False)

    deposit_net: Mapped[Decimal | None] = mapped_column(nullable=True)
    deposit_vat: Mapped[Decimal | None] = mapped_column(nullable=True)
    deposit_total: Mapped[Decimal | None] = mapped_column(nullable=True)
    project_subtotal: Mapped[Decimal | None] = mapped_column(nullable=True)
    project_vat: Mapped[Decimal | None] = mapped_column(nullable=True)
    project_total: Mapped[Decimal | None] = mapped_column(nullable=True)

    credit_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    document_handle: Mapped[str | None] = mapped_column(String(500), nullable=True)

    lines: Mapped[list[InvoiceLineModel]] = relationship(
        "InvoiceLineModel",
        order_by="InvoiceLineModel.position",
        cascade="all, delete-orphan",
    )

    @property
    def is_credit_note(self) -> bool:
        return self.document_type == DocumentType.CREDIT_NOTE.value

    @property
    def invoice_status(self) -> InvoiceStatus:
        return InvoiceStatus(self.status)

    def to_dto(self) -> Invoice:
        """Convert to the matching frozen invoice variant."""
        common = dict(
            id=self.id,
            invoice_number=self.invoice_number,
            client_id=self.client_id,
            status=InvoiceStatus(self.status),
            issue_date=self.issue_date,
            due_date=self.due_date,
            amount=self.amount,
            net_amount=self.net_amount,
            vat_amount=self.vat_amount,
            vat_rate_percent=self.vat_rate_percent,
            balance_due=self.balance_due,
            title=self.title,
            quote_id=self.quote_id,
            paid_at=self.paid_at,
            cancelled_at=self.cancelled_at,
            document_handle=self.document_handle,
            line_items=tuple(line.to_line_item() for line in self.lines),
        )
        if self.is_credit_note:
            return CreditNote(
                related_invoice_id=self.related_invoice_id,
                reason=self.credit_reason,
                **common,
            )
        if self.invoice_type == InvoiceType.DEPOSIT.value:
            return DepositInvoice(
                deposit_net=self.deposit_net,
                deposit_vat=self.deposit_vat,
                project_subtotal=self.project_subtotal,
                project_vat=self.project_vat,
                project_total=self.project_total,
                **common,
            )
        if self.invoice_type == InvoiceType.FINAL.value:
            return FinalInvoice(
                project_subtotal=self.project_subtotal,
                project_vat=self.project_vat,
                project_total=self.project_total,
                deposit_net=self.deposit_net,
                deposit_vat=self.deposit_vat,
                deposit_total=self.deposit_total,
                deposit_invoice_id=self.deposit_invoice_id,
                **common,
            )
        return StandardInvoice(
            subtotal=self.subtotal,
            discount_amount=self.discount_amount,
            **common,
        )

    def __repr__(self) -> str:
        return f"<InvoiceModel {self.invoice_number} {self.document_type}/{self.status}>"


class InvoiceLineModel(_LineColumns, TrackedBase):
    """Line frozen onto an invoice at issue time."""

    __tablename__ = "invoice_lines"

    __table_args__ = (
        Index("idx_invoice_lines_invoice_id", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False,
    )


# ---------------------------------------------------------------------------
# 4. InvoiceEventModel
# ---------------------------------------------------------------------------


class InvoiceEventModel(TrackedBase):
    """Append-only audit log entry for an invoice."""

    __tablename__ = "invoice_events"

    __table_args__ = (
        Index("idx_invoice_events_invoice_id", "invoice_id", "occurred_at"),
        Index("idx_invoice_events_type", "event_type"),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    def to_dto(self) -> InvoiceEvent:
        return InvoiceEvent(
            id=self.id,
            invoice_id=self.invoice_id,
            event_type=InvoiceEventType(self.event_type),
            occurred_at=self.occurred_at,
            payload=self.payload or {},
        )
