"""
Tests for OutboxMessagingService.
"""

import base64

import pytest
from sqlalchemy import select

from settlement_kernel.exceptions import TransportFailureError
from settlement_modules.followup.orm import EmailOutboxModel
from settlement_modules.followup.outbox import OutboxMessagingService
from settlement_modules.followup.ports import Attachment, MessagingService
from tests.conftest import TEST_NOW


@pytest.fixture
def outbox(session, clock, test_actor_id):
    return OutboxMessagingService(session, clock=clock, actor_id=test_actor_id)


def test_outbox_satisfies_messaging_protocol(outbox):
    assert isinstance(outbox, MessagingService)


def test_send_queues_row(outbox, session, create_invoice):
    invoice = create_invoice()

    result = outbox.send(
        template="invoice_payment_reminder",
        variables={"invoice_number": invoice.invoice_number},
        recipient="compta@dupont.test",
        attachments=(Attachment(filename="f.pdf", content=b"%PDF-1.7"),),
        language="nl",
        metadata={"invoice_id": str(invoice.id)},
    )

    assert result.success
    row = session.execute(select(EmailOutboxModel)).scalar_one()
    assert result.message_id == str(row.id)
    assert row.status == "queued"
    assert row.language == "nl"
    assert row.invoice_id == invoice.id
    assert row.follow_up_id is None
    assert row.queued_at == TEST_NOW
    assert row.variables == {"invoice_number": invoice.invoice_number}
    assert row.attachments[0]["filename"] == "f.pdf"
    assert row.attachments[0]["content_type"] == "application/pdf"
    assert base64.b64decode(row.attachments[0]["content_b64"]) == b"%PDF-1.7"


def test_send_without_attachments(outbox, session):
    outbox.send(template="t", variables={}, recipient="a@b.test")

    row = session.execute(select(EmailOutboxModel)).scalar_one()
    assert row.attachments is None
    assert row.invoice_id is None


@pytest.mark.parametrize("recipient", ["", "not-an-address"])
def test_invalid_recipient_raises(outbox, session, recipient):
    with pytest.raises(TransportFailureError) as exc_info:
        outbox.send(template="t", variables={}, recipient=recipient)

    assert exc_info.value.reason == "invalid recipient address"
    assert session.execute(select(EmailOutboxModel)).first() is None
