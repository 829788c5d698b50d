"""
Follow-up ORM Models (``settlement_modules.followup.orm``).

Responsibility
--------------
Persistence for follow-up campaign rows and the email outbox the default
messaging service writes to.

Invariants enforced
-------------------
* ``uq_invoice_follow_ups_one_active`` -- a partial unique index on
  ``invoice_id`` restricted to active statuses.  Two concurrent scheduler
  passes cannot both create an active follow-up for the same invoice; the
  loser gets an IntegrityError and re-reads the winner's row.
* ``(invoice_id, sequence)`` is unique: campaigns per invoice are numbered.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import TrackedBase
from settlement_modules.followup.models import (
    ACTIVE_STATUSES,
    FollowUp,
    FollowUpKind,
    FollowUpStatus,
)

_ACTIVE_SQL = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STATUSES, key=lambda s: s.value))
)


class FollowUpModel(TrackedBase):
    """ORM model for one follow-up campaign row."""

    __tablename__ = "invoice_follow_ups"

    __table_args__ = (
        UniqueConstraint("invoice_id", "sequence", name="uq_invoice_follow_ups_sequence"),
        Index(
            "uq_invoice_follow_ups_one_active",
            "invoice_id",
            unique=True,
            sqlite_where=text(_ACTIVE_SQL),
            postgresql_where=text(_ACTIVE_SQL),
        ),
        Index("idx_invoice_follow_ups_due", "status", "scheduled_at"),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    stage: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    template_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    stopped_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)

    @property
    def follow_up_status(self) -> FollowUpStatus:
        return FollowUpStatus(self.status)

    def to_dto(self) -> FollowUp:
        return FollowUp(
            id=self.id,
            invoice_id=self.invoice_id,
            sequence=self.sequence,
            stage=self.stage,
            kind=FollowUpKind(self.kind),
            status=FollowUpStatus(self.status),
            scheduled_at=self.scheduled_at,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            template_type=self.template_type,
            sent_at=self.sent_at,
            last_attempt_at=self.last_attempt_at,
            last_error=self.last_error,
            stopped_reason=self.stopped_reason,
        )

    def __repr__(self) -> str:
        return (
            f"<FollowUpModel invoice={self.invoice_id} #{self.sequence} "
            f"{self.kind}/{self.stage} {self.status}>"
        )


class EmailOutboxModel(TrackedBase):
    """
    Queued outbound email.

    A separate mailer process delivers ``queued`` rows; this engine only
    writes them.
    """

    __tablename__ = "email_outbox"

    __table_args__ = (
        Index("idx_email_outbox_status", "status"),
        Index("idx_email_outbox_follow_up_id", "follow_up_id"),
    )

    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    template: Mapped[str] = mapped_column(String(100), nullable=False)
    language: Mapped[str] = mapped_column(String(8), default="fr", nullable=False)
    variables: Mapped[dict] = mapped_column(JSON, nullable=False)
    attachments: Mapped[list | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="queued", nullable=False)
    invoice_id: Mapped[UUID | None] = mapped_column(ForeignKey("invoices.id"), nullable=True)
    follow_up_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoice_follow_ups.id"), nullable=True,
    )
    queued_at: Mapped[datetime] = mapped_column(nullable=False)
