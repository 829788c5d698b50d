"""
FollowUpDispatcher -- sends due reminders.

Each due follow-up is processed inside its own SAVEPOINT.  Before sending,
the dispatcher re-reads the invoice: a payment or cancellation that
committed after the row was scheduled turns the dispatch into a skip (the
row is stopped), never a send.

A follow-up is dispatched at most once per scheduled occurrence: the row
is claimed (``ready_for_dispatch``) before the transport is called and
leaves the dispatchable statuses in the same transaction as the send is
recorded.  A second pass sees ``sent``/``failed`` and skips it.  Whatever
the transport raises is recorded as a failure on the row, so a crashing
SMTP client cannot cause the same reminder to go out on every pass.

``send_manual`` sends the overdue reminder for one invoice on demand,
outside the schedule.

Document attachment is best-effort: stored PDF, else render + store,
else send without attachment.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_engines.balance import BalanceResolver
from settlement_kernel.domain.actors import SYSTEM_ACTOR_ID
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.exceptions import (
    ConcurrentStatusChangeError,
    FollowUpNotAllowedError,
    FollowUpNotFoundError,
    InvoiceNotFoundError,
    TransportFailureError,
)
from settlement_kernel.logging_config import LogContext, get_logger
from settlement_modules.followup.config import FollowUpRules
from settlement_modules.followup.models import (
    ACTIVE_STATUSES,
    DISPATCHABLE_STATUSES,
    DispatchOutcome,
    DispatchReport,
    DispatchResult,
    FollowUpKind,
    FollowUpStatus,
)
from settlement_modules.followup.orm import FollowUpModel
from settlement_modules.followup.ports import Attachment, DocumentService, MessagingService
from settlement_modules.followup.rendering import build_reminder_variables, days_overdue
from settlement_modules.invoicing.amounts import resolve_invoice_balance, stored_breakdown
from settlement_modules.invoicing.config import InvoicingConfig
from settlement_modules.invoicing.events import record_invoice_event
from settlement_modules.invoicing.models import InvoiceEventType, InvoiceStatus
from settlement_modules.invoicing.orm import ClientModel, InvoiceModel

logger = get_logger("modules.followup.dispatcher")

_DISPATCHABLE_VALUES = tuple(s.value for s in DISPATCHABLE_STATUSES)
_ACTIVE_VALUES = tuple(s.value for s in ACTIVE_STATUSES)


@dataclass(frozen=True)
class _Delivery:
    error: str | None = None
    message_id: str | None = None
    has_attachment: bool = False


class FollowUpDispatcher:
    """Sends due follow-ups through the injected messaging service."""

    def __init__(
        self,
        session: Session,
        messaging: MessagingService,
        documents: DocumentService | None = None,
        rules: FollowUpRules | None = None,
        invoicing: InvoicingConfig | None = None,
        clock: Clock | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        resolver: BalanceResolver | None = None,
    ):
        self._session = session
        self._messaging = messaging
        self._documents = documents
        self._rules = rules or FollowUpRules()
        self._invoicing = invoicing or InvoicingConfig()
        self._clock = clock or SystemClock()
        self._actor_id = actor_id
        self._resolver = resolver or BalanceResolver()

    def due_follow_up_ids(self, now: datetime | None = None) -> list[UUID]:
        """Dispatchable follow-ups whose scheduled time has passed, oldest first."""
        now = now or self._clock.now()
        return list(
            self._session.execute(
                select(FollowUpModel.id)
                .where(
                    FollowUpModel.status.in_(_DISPATCHABLE_VALUES),
                    FollowUpModel.scheduled_at <= now,
                )
                .order_by(FollowUpModel.scheduled_at, FollowUpModel.sequence)
                .limit(self._rules.max_dispatch_per_pass)
            ).scalars()
        )

    def dispatch_due(self, now: datetime | None = None) -> DispatchReport:
        """
        Dispatch every due follow-up, each in its own SAVEPOINT.

        An unexpected exception rolls back only that follow-up; the pass
        continues.  Does NOT commit -- the caller owns the transaction.
        """
        started_at = self._clock.now()
        now = now or started_at
        outcomes: list[DispatchOutcome] = []

        for follow_up_id in self.due_follow_up_ids(now):
            savepoint = self._session.begin_nested()
            try:
                outcome = self.dispatch_one(follow_up_id, now=now)
                savepoint.commit()
            except Exception as exc:
                savepoint.rollback()
                logger.exception(
                    "followup_dispatch_error",
                    extra={"follow_up_id": str(follow_up_id), "error": str(exc)},
                )
                outcome = DispatchOutcome(
                    follow_up_id=follow_up_id,
                    invoice_id=None,
                    result=DispatchResult.ERROR,
                    reason=f"{type(exc).__name__}: {exc}",
                )
            outcomes.append(outcome)

        report = DispatchReport(
            started_at=started_at,
            completed_at=self._clock.now(),
            outcomes=tuple(outcomes),
        )
        logger.info(
            "followup_dispatch_pass_completed",
            extra={
                "total": report.total,
                "sent": report.sent,
                "failed": report.failed,
                "skipped": report.skipped,
                "errors": report.errors,
            },
        )
        return report

    def dispatch_one(
        self,
        follow_up_id: UUID,
        now: datetime | None = None,
    ) -> DispatchOutcome:
        """
        Dispatch a single follow-up.

        Returns:
            DispatchOutcome -- SENT, FAILED (recorded on the row) or SKIPPED.

        Raises:
            FollowUpNotFoundError: If the follow-up does not exist.
        """
        now = now or self._clock.now()
        row = self._session.execute(
            select(FollowUpModel)
            .where(FollowUpModel.id == follow_up_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise FollowUpNotFoundError(str(follow_up_id))

        with LogContext.bind(follow_up_id=str(row.id), invoice_id=str(row.invoice_id)):
            if row.status not in _DISPATCHABLE_VALUES:
                logger.info("followup_already_processed", extra={"status": row.status})
                return self._outcome(row, DispatchResult.SKIPPED, reason="already_processed")

            invoice = self._session.execute(
                select(InvoiceModel)
                .where(InvoiceModel.id == row.invoice_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if invoice is None:
                raise InvoiceNotFoundError(str(row.invoice_id))

            try:
                self._check_still_chaseable(invoice)
            except ConcurrentStatusChangeError as exc:
                return self._skip_for_status(row, invoice, exc, now)

            # Claim before any external call
            row.status = FollowUpStatus.READY_FOR_DISPATCH.value
            row.updated_by_id = self._actor_id
            self._session.flush()

            return self._send(row, invoice, now)

    def send_manual(self, invoice_id: UUID, now: datetime | None = None) -> DispatchOutcome:
        """
        Send the overdue reminder for one invoice right away.

        Bypasses the schedule: no follow-up row is claimed or advanced.
        The send, or its failure, is recorded as an invoice event with
        ``manual=True``.

        Raises:
            InvoiceNotFoundError: If the invoice does not exist.
            FollowUpNotAllowedError: If the invoice is paid, cancelled or
                a credit note.
        """
        now = now or self._clock.now()
        invoice = self._session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))

        with LogContext.bind(invoice_id=str(invoice_id)):
            try:
                self._check_still_chaseable(invoice)
            except ConcurrentStatusChangeError as exc:
                raise FollowUpNotAllowedError(str(invoice_id), exc.status) from None

            template = self._rules.template_for(FollowUpKind.OVERDUE.value)
            active = self._session.execute(
                select(FollowUpModel).where(
                    FollowUpModel.invoice_id == invoice_id,
                    FollowUpModel.status.in_(_ACTIVE_VALUES),
                )
            ).scalar_one_or_none()
            stage = active.stage if active is not None else 1

            client = self._session.get(ClientModel, invoice.client_id)
            if client is None or not client.email:
                error = "client_has_no_email"
                delivery = None
            else:
                delivery = self._deliver(invoice, client, template, stage, now, {
                    "invoice_id": str(invoice.id), "manual": "true",
                })
                error = delivery.error

            if error is not None:
                record_invoice_event(
                    self._session,
                    invoice_id=invoice.id,
                    event_type=InvoiceEventType.FOLLOWUP_FAILED,
                    occurred_at=now,
                    actor_id=self._actor_id,
                    manual=True,
                    template=template,
                    error=error,
                )
                self._session.flush()
                logger.warning("manual_followup_failed", extra={"error": error})
                return DispatchOutcome(
                    follow_up_id=None,
                    invoice_id=invoice.id,
                    result=DispatchResult.FAILED,
                    stage=stage,
                    kind=FollowUpKind.OVERDUE,
                    template=template,
                    reason=error,
                )

            record_invoice_event(
                self._session,
                invoice_id=invoice.id,
                event_type=InvoiceEventType.FOLLOWUP_SENT,
                occurred_at=now,
                actor_id=self._actor_id,
                manual=True,
                template=template,
                recipient=client.email,
                days_overdue=days_overdue(now.date(), invoice.due_date),
                has_attachment=delivery.has_attachment,
                message_id=delivery.message_id,
            )
            self._session.flush()
            logger.info("manual_followup_sent", extra={"template": template})
            return DispatchOutcome(
                follow_up_id=None,
                invoice_id=invoice.id,
                result=DispatchResult.SENT,
                stage=stage,
                kind=FollowUpKind.OVERDUE,
                template=template,
                has_attachment=delivery.has_attachment,
            )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _check_still_chaseable(self, invoice: InvoiceModel) -> None:
        status = InvoiceStatus(invoice.status)
        if invoice.is_credit_note or not status.is_open:
            raise ConcurrentStatusChangeError(str(invoice.id), status.value)

    def _skip_for_status(
        self,
        row: FollowUpModel,
        invoice: InvoiceModel,
        exc: ConcurrentStatusChangeError,
        now: datetime,
    ) -> DispatchOutcome:
        row.status = FollowUpStatus.STOPPED.value
        row.stopped_reason = f"invoice_{exc.status}"
        row.updated_by_id = self._actor_id
        record_invoice_event(
            self._session,
            invoice_id=invoice.id,
            event_type=InvoiceEventType.FOLLOWUP_SKIPPED,
            occurred_at=now,
            actor_id=self._actor_id,
            follow_up_id=row.id,
            reason=exc.code,
            invoice_status=exc.status,
        )
        self._session.flush()
        logger.info("followup_skipped", extra={"reason": exc.code, "invoice_status": exc.status})
        return self._outcome(row, DispatchResult.SKIPPED, reason="concurrent_status_change")

    def _send(self, row: FollowUpModel, invoice: InvoiceModel, now: datetime) -> DispatchOutcome:
        client = self._session.get(ClientModel, invoice.client_id)
        if client is None or not client.email:
            return self._record_failure(row, invoice, now, "client_has_no_email", template=None)

        # Template follows the live overdue state, not the kind at creation
        if now.date() > invoice.due_date:
            kind = FollowUpKind.OVERDUE
        else:
            kind = FollowUpKind.APPROACHING_DEADLINE
        template = self._rules.template_for(kind.value)

        delivery = self._deliver(invoice, client, template, row.stage, now, {
            "invoice_id": str(invoice.id), "follow_up_id": str(row.id),
        })
        if delivery.error is not None:
            return self._record_failure(row, invoice, now, delivery.error, template=template)

        row.status = FollowUpStatus.SENT.value
        row.sent_at = now
        row.last_attempt_at = now
        row.attempts += 1
        row.template_type = template
        row.last_error = None
        row.updated_by_id = self._actor_id
        record_invoice_event(
            self._session,
            invoice_id=invoice.id,
            event_type=InvoiceEventType.FOLLOWUP_SENT,
            occurred_at=now,
            actor_id=self._actor_id,
            follow_up_id=row.id,
            stage=row.stage,
            kind=kind,
            template=template,
            attempts=row.attempts,
            has_attachment=delivery.has_attachment,
            message_id=delivery.message_id,
        )
        self._session.flush()

        logger.info(
            "followup_sent",
            extra={
                "stage": row.stage,
                "kind": kind.value,
                "template": template,
                "attempts": row.attempts,
                "has_attachment": delivery.has_attachment,
            },
        )
        return self._outcome(
            row, DispatchResult.SENT,
            kind=kind, template=template, has_attachment=delivery.has_attachment,
        )

    def _deliver(
        self,
        invoice: InvoiceModel,
        client: ClientModel,
        template: str,
        stage: int,
        now: datetime,
        metadata: dict[str, str],
    ) -> _Delivery:
        """Render variables, attach the PDF and hand the message to the transport.

        Any exception from the transport is reported as an error string.
        """
        amount_due = resolve_invoice_balance(self._session, invoice, self._resolver)
        variables = build_reminder_variables(
            invoice=invoice.to_dto(),
            client=client.to_dto(),
            amount_due=amount_due if amount_due is not None else Decimal("0"),
            today=now.date(),
            stage=stage,
            rules=self._rules,
            invoicing=self._invoicing,
        )
        attachment = self._resolve_attachment(invoice, now)
        has_attachment = attachment is not None

        try:
            result = self._messaging.send(
                template=template,
                variables=variables,
                recipient=client.email,
                attachments=(attachment,) if has_attachment else (),
                language=client.language,
                metadata=metadata,
            )
        except TransportFailureError as exc:
            return _Delivery(error=exc.reason, has_attachment=has_attachment)
        except Exception as exc:
            logger.warning("followup_transport_error", extra={"error": str(exc)}, exc_info=True)
            return _Delivery(error=f"{type(exc).__name__}: {exc}", has_attachment=has_attachment)

        if not result.success:
            return _Delivery(error=result.error or "send_failed", has_attachment=has_attachment)
        return _Delivery(message_id=result.message_id, has_attachment=has_attachment)

    def _record_failure(
        self,
        row: FollowUpModel,
        invoice: InvoiceModel,
        now: datetime,
        error: str,
        template: str | None,
    ) -> DispatchOutcome:
        row.status = FollowUpStatus.FAILED.value
        row.last_error = error
        row.last_attempt_at = now
        row.attempts += 1
        row.updated_by_id = self._actor_id
        record_invoice_event(
            self._session,
            invoice_id=invoice.id,
            event_type=InvoiceEventType.FOLLOWUP_FAILED,
            occurred_at=now,
            actor_id=self._actor_id,
            follow_up_id=row.id,
            stage=row.stage,
            error=error,
            attempts=row.attempts,
        )
        self._session.flush()
        logger.warning("followup_failed", extra={"error": error, "attempts": row.attempts})
        return self._outcome(row, DispatchResult.FAILED, reason=error, template=template)

    def _resolve_attachment(self, invoice: InvoiceModel, now: datetime) -> Attachment | None:
        """Stored PDF, else a freshly rendered one, else None."""
        if self._documents is None:
            return None
        filename = f"{invoice.invoice_number}.pdf"

        if invoice.document_handle:
            try:
                content = self._documents.fetch_stored_document(invoice.document_handle)
            except Exception as exc:
                logger.warning(
                    "followup_document_fetch_failed",
                    extra={"handle": invoice.document_handle, "error": str(exc)},
                )
                content = None
            if content:
                return Attachment(filename=filename, content=content)

        invoice_dto = invoice.to_dto()
        try:
            content = self._documents.render_document(
                invoice_dto, invoice_dto.line_items, stored_breakdown(invoice_dto),
            )
            handle = self._documents.store_document(content)
        except Exception as exc:
            logger.warning(
                "followup_attachment_unavailable",
                extra={"invoice_number": invoice.invoice_number, "error": str(exc)},
            )
            return None

        previous = invoice.document_handle
        invoice.document_handle = handle
        record_invoice_event(
            self._session,
            invoice_id=invoice.id,
            event_type=InvoiceEventType.DOCUMENT_REGENERATED,
            occurred_at=now,
            actor_id=self._actor_id,
            previous_handle=previous,
            handle=handle,
        )
        logger.info("invoice_document_regenerated", extra={"handle": handle})
        return Attachment(filename=filename, content=content)

    def _outcome(
        self,
        row: FollowUpModel,
        result: DispatchResult,
        *,
        kind: FollowUpKind | None = None,
        template: str | None = None,
        reason: str | None = None,
        has_attachment: bool = False,
    ) -> DispatchOutcome:
        return DispatchOutcome(
            follow_up_id=row.id,
            invoice_id=row.invoice_id,
            result=result,
            stage=row.stage,
            kind=kind or FollowUpKind(row.kind),
            template=template,
            reason=reason,
            has_attachment=has_attachment,
        )
