"""
Balance Resolver - outstanding balance of an invoice after credit notes.

    balance = invoice.amount + sum(credit_note.amount for linked credit notes)

Credit note amounts are stored negative, so the offset is a plain sum.
The result is NOT clamped at zero: a negative balance means the invoice is
over-credited and is reported as such (``is_over_credited``).  The issuing
service refuses to create credit notes that would get there, so negative
balances only appear for imported or legacy data.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Protocol
from uuid import UUID

from settlement_kernel.domain.money import ZERO

CREDIT_NOTE = "credit_note"


class SettlementDocument(Protocol):
    """Anything with an id, a payable amount and a document type."""

    id: UUID
    amount: Decimal

    @property
    def document_type(self) -> str: ...


def _related_invoice_id(document: SettlementDocument) -> UUID | None:
    if document.document_type != CREDIT_NOTE:
        return None
    return getattr(document, "related_invoice_id", None)


class BalanceResolver:
    """Pure balance computation over a set of documents."""

    def linked_credit_notes(
        self,
        invoice: SettlementDocument,
        documents: Iterable[SettlementDocument],
    ) -> list[SettlementDocument]:
        return [
            doc for doc in documents
            if doc.id != invoice.id and _related_invoice_id(doc) == invoice.id
        ]

    def credited_total(
        self,
        invoice: SettlementDocument,
        documents: Iterable[SettlementDocument],
    ) -> Decimal:
        """Sum of linked credit-note amounts (zero or negative)."""
        return sum(
            (doc.amount for doc in self.linked_credit_notes(invoice, documents)),
            ZERO,
        )

    def resolve_balance(
        self,
        invoice: SettlementDocument,
        documents: Iterable[SettlementDocument],
    ) -> Decimal | None:
        """
        Outstanding balance of ``invoice``.

        Returns:
            None for a credit note (never chased for payment), otherwise
            invoice.amount reduced by every linked credit note.
        """
        if invoice.document_type == CREDIT_NOTE:
            return None
        return invoice.amount + self.credited_total(invoice, documents)

    def is_over_credited(
        self,
        invoice: SettlementDocument,
        documents: Iterable[SettlementDocument],
    ) -> bool:
        balance = self.resolve_balance(invoice, documents)
        return balance is not None and balance < 0
