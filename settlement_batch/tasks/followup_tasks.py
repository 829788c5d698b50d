"""
Batch tasks: invoice due status and follow-up campaigns.

Four passes, run in this order by the orchestrator:

    invoices.refresh_due_status   unpaid <-> overdue from the due date
    followups.reconcile_finalized stop follow-ups left active on paid or
                                  cancelled invoices (at-least-once cleanup
                                  behind the controller's own stop signal)
    followups.schedule            promote pending rows, then ensure one
                                  follow-up per open invoice
    followups.dispatch            send every due follow-up

Every pass re-reads state per item, so running a pass twice is harmless.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_batch.domain.types import BatchItemStatus
from settlement_batch.tasks.base import BatchItemInput, BatchTaskResult
from settlement_kernel.domain.actors import SYSTEM_ACTOR_ID
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_modules.followup.config import FollowUpRules
from settlement_modules.followup.dispatcher import FollowUpDispatcher
from settlement_modules.followup.models import ACTIVE_STATUSES, DispatchResult
from settlement_modules.followup.orm import FollowUpModel
from settlement_modules.followup.outbox import OutboxMessagingService
from settlement_modules.followup.ports import DocumentService, MessagingService
from settlement_modules.followup.scheduler import FollowUpScheduler
from settlement_modules.invoicing.config import InvoicingConfig
from settlement_modules.invoicing.models import DocumentType, InvoiceStatus
from settlement_modules.invoicing.orm import InvoiceModel
from settlement_modules.invoicing.status import InvoiceStatusController

MessagingFactory = Callable[[Session], MessagingService]

_OPEN = (InvoiceStatus.UNPAID.value, InvoiceStatus.OVERDUE.value)
_CLOSED = (InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value)

ACTIVATE_PENDING_KEY = "activate_pending"


def _open_invoice_items(session: Session) -> tuple[BatchItemInput, ...]:
    invoice_ids = session.execute(
        select(InvoiceModel.id)
        .where(
            InvoiceModel.document_type == DocumentType.INVOICE.value,
            InvoiceModel.status.in_(_OPEN),
        )
        .order_by(InvoiceModel.due_date, InvoiceModel.invoice_number)
    ).scalars()
    return tuple(
        BatchItemInput(
            item_index=i,
            item_key=str(invoice_id),
            payload={"invoice_id": str(invoice_id)},
        )
        for i, invoice_id in enumerate(invoice_ids)
    )


class DueStatusRefreshTask:
    """Batch task moving open invoices between unpaid and overdue."""

    def __init__(self, clock: Clock | None = None, actor_id: UUID = SYSTEM_ACTOR_ID):
        self._clock = clock or SystemClock()
        self._actor_id = actor_id

    @property
    def task_type(self) -> str:
        return "invoices.refresh_due_status"

    @property
    def description(self) -> str:
        return "Refresh unpaid/overdue status of open invoices from their due date"

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        return _open_invoice_items(session)

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        controller = InvoiceStatusController(session, clock=self._clock, auto_commit=False)
        result = controller.refresh_due_status(
            UUID(item.payload["invoice_id"]), actor_id=self._actor_id,
        )
        return BatchTaskResult(
            status=BatchItemStatus.SUCCEEDED if result.changed else BatchItemStatus.SKIPPED,
            result_data={
                "previous_status": result.previous_status.value,
                "new_status": result.new_status.value,
            },
        )


class FinalizedFollowUpReconcileTask:
    """Batch task stopping follow-ups still active on paid or cancelled invoices."""

    def __init__(self, clock: Clock | None = None, actor_id: UUID = SYSTEM_ACTOR_ID):
        self._clock = clock or SystemClock()
        self._actor_id = actor_id

    @property
    def task_type(self) -> str:
        return "followups.reconcile_finalized"

    @property
    def description(self) -> str:
        return "Stop active follow-ups of paid or cancelled invoices"

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        rows = session.execute(
            select(InvoiceModel.id, InvoiceModel.status)
            .join(FollowUpModel, FollowUpModel.invoice_id == InvoiceModel.id)
            .where(
                InvoiceModel.status.in_(_CLOSED),
                FollowUpModel.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
            .distinct()
            .order_by(InvoiceModel.id)
        ).all()
        return tuple(
            BatchItemInput(
                item_index=i,
                item_key=str(invoice_id),
                payload={"invoice_id": str(invoice_id), "status": status},
            )
            for i, (invoice_id, status) in enumerate(rows)
        )

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        scheduler = FollowUpScheduler(session, clock=self._clock, actor_id=self._actor_id)
        stopped = scheduler.stop_all(
            UUID(item.payload["invoice_id"]),
            reason=f"invoice_{item.payload['status']}",
        )
        return BatchTaskResult(
            status=BatchItemStatus.SUCCEEDED if stopped else BatchItemStatus.SKIPPED,
            result_data={"stopped": stopped},
        )


class FollowUpSchedulingTask:
    """Batch task creating or advancing the follow-up of every open invoice.

    Item 0 promotes ``pending`` rows whose time has come; the remaining
    items run ``ensure_follow_up`` per open invoice.
    """

    def __init__(
        self,
        rules: FollowUpRules | None = None,
        clock: Clock | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ):
        self._rules = rules or FollowUpRules()
        self._clock = clock or SystemClock()
        self._actor_id = actor_id

    @property
    def task_type(self) -> str:
        return "followups.schedule"

    @property
    def description(self) -> str:
        return "Create or advance the follow-up campaign of open invoices"

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        activation = BatchItemInput(item_index=0, item_key=ACTIVATE_PENDING_KEY)
        invoices = tuple(
            BatchItemInput(
                item_index=item.item_index + 1,
                item_key=item.item_key,
                payload=item.payload,
            )
            for item in _open_invoice_items(session)
        )
        return (activation,) + invoices

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        scheduler = FollowUpScheduler(
            session, rules=self._rules, clock=self._clock, actor_id=self._actor_id,
        )
        if item.item_key == ACTIVATE_PENDING_KEY:
            activated = scheduler.activate_due(now=as_of)
            return BatchTaskResult(
                status=BatchItemStatus.SUCCEEDED if activated else BatchItemStatus.SKIPPED,
                result_data={"activated": activated},
            )

        follow_up = scheduler.ensure_follow_up(UUID(item.payload["invoice_id"]))
        if follow_up is None:
            return BatchTaskResult(
                status=BatchItemStatus.SKIPPED,
                result_data={"reason": "no_follow_up_due"},
            )
        return BatchTaskResult(
            status=BatchItemStatus.SUCCEEDED,
            result_data={
                "follow_up_id": str(follow_up.id),
                "kind": follow_up.kind.value,
                "stage": follow_up.stage,
                "status": follow_up.status.value,
                "scheduled_at": follow_up.scheduled_at.isoformat(),
            },
        )


class FollowUpDispatchTask:
    """Batch task sending every due follow-up."""

    def __init__(
        self,
        rules: FollowUpRules | None = None,
        invoicing: InvoicingConfig | None = None,
        clock: Clock | None = None,
        messaging_factory: MessagingFactory | None = None,
        documents: DocumentService | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ):
        self._rules = rules or FollowUpRules()
        self._invoicing = invoicing or InvoicingConfig()
        self._clock = clock or SystemClock()
        self._messaging_factory = messaging_factory
        self._documents = documents
        self._actor_id = actor_id

    @property
    def task_type(self) -> str:
        return "followups.dispatch"

    @property
    def description(self) -> str:
        return "Send due follow-up reminders"

    def _dispatcher(self, session: Session) -> FollowUpDispatcher:
        if self._messaging_factory is not None:
            messaging = self._messaging_factory(session)
        else:
            messaging = OutboxMessagingService(
                session, clock=self._clock, actor_id=self._actor_id,
            )
        return FollowUpDispatcher(
            session,
            messaging,
            documents=self._documents,
            rules=self._rules,
            invoicing=self._invoicing,
            clock=self._clock,
            actor_id=self._actor_id,
        )

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        follow_up_ids = self._dispatcher(session).due_follow_up_ids(as_of)
        return tuple(
            BatchItemInput(
                item_index=i,
                item_key=str(follow_up_id),
                payload={"follow_up_id": str(follow_up_id)},
            )
            for i, follow_up_id in enumerate(follow_up_ids)
        )

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        outcome = self._dispatcher(session).dispatch_one(
            UUID(item.payload["follow_up_id"]), now=as_of,
        )
        result_data = {
            "invoice_id": str(outcome.invoice_id) if outcome.invoice_id else None,
            "stage": outcome.stage,
            "template": outcome.template,
            "has_attachment": outcome.has_attachment,
            "reason": outcome.reason,
        }
        if outcome.result == DispatchResult.SENT:
            return BatchTaskResult(status=BatchItemStatus.SUCCEEDED, result_data=result_data)
        if outcome.result == DispatchResult.SKIPPED:
            return BatchTaskResult(status=BatchItemStatus.SKIPPED, result_data=result_data)
        return BatchTaskResult(
            status=BatchItemStatus.FAILED,
            result_data=result_data,
            error_code="DISPATCH_FAILED",
            error_message=outcome.reason,
        )
