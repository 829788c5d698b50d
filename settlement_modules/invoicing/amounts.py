"""
Stored amounts of persisted invoices.

``stored_breakdown`` rebuilds the breakdown an invoice was issued with from
its own columns (never a live recomputation, so historical documents stay
stable).  ``resolve_invoice_balance`` runs the BalanceResolver against the
credit notes currently persisted for an invoice.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_engines.balance import BalanceResolver
from settlement_engines.calculator import MonetaryBreakdown
from settlement_kernel.domain.money import ZERO
from settlement_modules.invoicing.models import (
    CreditNote,
    DepositInvoice,
    DocumentType,
    FinalInvoice,
    Invoice,
    InvoiceStatus,
    StandardInvoice,
)
from settlement_modules.invoicing.orm import InvoiceModel


def stored_breakdown(invoice: Invoice) -> MonetaryBreakdown:
    """Breakdown as printed on the document."""
    rate = invoice.vat_rate_percent
    match invoice:
        case FinalInvoice():
            return MonetaryBreakdown(
                subtotal=invoice.project_subtotal,
                discount_amount=invoice.project_subtotal - invoice.net_amount,
                net_amount=invoice.net_amount,
                vat_amount=invoice.project_vat,
                total_with_vat=invoice.project_total,
                deposit_amount=invoice.deposit_total,
                balance_amount=invoice.amount,
                vat_rate_percent=rate,
            )
        case DepositInvoice():
            return MonetaryBreakdown(
                subtotal=invoice.deposit_net,
                discount_amount=ZERO,
                net_amount=invoice.deposit_net,
                vat_amount=invoice.deposit_vat,
                total_with_vat=invoice.amount,
                deposit_amount=ZERO,
                balance_amount=invoice.amount,
                vat_rate_percent=rate,
            )
        case StandardInvoice():
            return MonetaryBreakdown(
                subtotal=invoice.subtotal,
                discount_amount=invoice.discount_amount,
                net_amount=invoice.net_amount,
                vat_amount=invoice.vat_amount,
                total_with_vat=invoice.net_amount + invoice.vat_amount,
                deposit_amount=ZERO,
                balance_amount=invoice.amount,
                vat_rate_percent=rate,
            )
        case CreditNote():
            return MonetaryBreakdown(
                subtotal=invoice.net_amount,
                discount_amount=ZERO,
                net_amount=invoice.net_amount,
                vat_amount=invoice.vat_amount,
                total_with_vat=invoice.amount,
                deposit_amount=ZERO,
                balance_amount=invoice.amount,
                vat_rate_percent=rate,
            )
    raise TypeError(f"Unknown invoice variant: {type(invoice).__name__}")


def linked_credit_notes(session: Session, invoice_id) -> list[InvoiceModel]:
    return list(
        session.execute(
            select(InvoiceModel).where(
                InvoiceModel.related_invoice_id == invoice_id,
                InvoiceModel.document_type == DocumentType.CREDIT_NOTE.value,
                InvoiceModel.status != InvoiceStatus.CANCELLED.value,
            )
        ).scalars()
    )


def resolve_invoice_balance(
    session: Session,
    invoice: InvoiceModel,
    resolver: BalanceResolver | None = None,
) -> Decimal | None:
    """Outstanding balance from persisted state; None for a credit note.

    Cancelled (voided) credit notes no longer offset anything.
    """
    resolver = resolver or BalanceResolver()
    documents = [m.to_dto() for m in linked_credit_notes(session, invoice.id)]
    return resolver.resolve_balance(invoice.to_dto(), documents)
