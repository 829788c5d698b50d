"""
Tests for the BalanceResolver.
"""

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from settlement_engines.balance import BalanceResolver


@dataclass
class Doc:
    amount: Decimal
    document_type: str = "invoice"
    related_invoice_id: UUID | None = None
    id: UUID = None

    def __post_init__(self):
        self.id = self.id or uuid4()


def _credit(invoice: Doc, amount: str) -> Doc:
    return Doc(amount=Decimal(amount), document_type="credit_note", related_invoice_id=invoice.id)


@pytest.fixture
def resolver():
    return BalanceResolver()


class TestResolveBalance:
    def test_invoice_without_credit_notes(self, resolver):
        invoice = Doc(amount=Decimal("500.00"))
        assert resolver.resolve_balance(invoice, []) == Decimal("500.00")

    def test_credit_note_reduces_balance(self, resolver):
        invoice = Doc(amount=Decimal("500.00"))
        documents = [invoice, _credit(invoice, "-200.00")]

        assert resolver.resolve_balance(invoice, documents) == Decimal("300.00")
        assert resolver.credited_total(invoice, documents) == Decimal("-200.00")

    def test_several_credit_notes(self, resolver):
        invoice = Doc(amount=Decimal("1210.00"))
        documents = [_credit(invoice, "-121.00"), _credit(invoice, "-242.00")]
        assert resolver.resolve_balance(invoice, documents) == Decimal("847.00")

    def test_credit_notes_of_other_invoices_are_ignored(self, resolver):
        invoice = Doc(amount=Decimal("500.00"))
        other = Doc(amount=Decimal("800.00"))
        documents = [_credit(other, "-800.00"), Doc(amount=Decimal("999.00"))]
        assert resolver.resolve_balance(invoice, documents) == Decimal("500.00")

    def test_credit_note_has_no_balance(self, resolver):
        invoice = Doc(amount=Decimal("500.00"))
        note = _credit(invoice, "-500.00")
        assert resolver.resolve_balance(note, [invoice, note]) is None

    def test_over_credit_is_not_clamped(self, resolver):
        invoice = Doc(amount=Decimal("100.00"))
        documents = [_credit(invoice, "-150.00")]

        assert resolver.resolve_balance(invoice, documents) == Decimal("-50.00")
        assert resolver.is_over_credited(invoice, documents)

    def test_exact_credit_is_not_over_credit(self, resolver):
        invoice = Doc(amount=Decimal("100.00"))
        documents = [_credit(invoice, "-100.00")]

        assert resolver.resolve_balance(invoice, documents) == Decimal("0.00")
        assert not resolver.is_over_credited(invoice, documents)

    def test_invoice_is_not_its_own_credit_note(self, resolver):
        invoice = Doc(amount=Decimal("100.00"))
        assert resolver.linked_credit_notes(invoice, [invoice]) == []
