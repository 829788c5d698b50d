"""
Outbox messaging service.

Writes each message to the ``email_outbox`` table in the caller's
transaction.  Delivery is the job of a separate mailer; queueing in the
same transaction as the follow-up status change means a rolled-back
dispatch never leaves an orphan email behind.
"""

from __future__ import annotations

import base64
from typing import Mapping, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from settlement_kernel.domain.actors import SYSTEM_ACTOR_ID
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.exceptions import TransportFailureError
from settlement_kernel.logging_config import get_logger
from settlement_modules.followup.orm import EmailOutboxModel
from settlement_modules.followup.ports import Attachment, SendResult

logger = get_logger("modules.followup.outbox")


class OutboxMessagingService:
    """MessagingService implementation backed by the email outbox table."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._actor_id = actor_id

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
        if not recipient or "@" not in recipient:
            raise TransportFailureError(recipient or "<empty>", "invalid recipient address")

        metadata = metadata or {}
        row = EmailOutboxModel(
            recipient=recipient,
            template=template,
            language=language,
            variables=dict(variables),
            attachments=[
                {
                    "filename": a.filename,
                    "content_type": a.content_type,
                    "content_b64": base64.b64encode(a.content).decode("ascii"),
                }
                for a in attachments
            ] or None,
            status="queued",
            invoice_id=UUID(metadata["invoice_id"]) if "invoice_id" in metadata else None,
            follow_up_id=UUID(metadata["follow_up_id"]) if "follow_up_id" in metadata else None,
            queued_at=self._clock.now(),
            created_by_id=self._actor_id,
        )
        self._session.add(row)
        self._session.flush()

        logger.info(
            "email_queued",
            extra={
                "outbox_id": str(row.id),
                "template": template,
                "attachment_count": len(attachments),
            },
        )
        return SendResult(success=True, message_id=str(row.id))
