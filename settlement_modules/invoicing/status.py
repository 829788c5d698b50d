"""
settlement_modules.invoicing.status
===================================

Responsibility:
    Single writer of invoice payment status.  Validates every change
    against ``INVOICE_STATUS_WORKFLOW``, recomputes ``balance_due``, appends
    a ``status_changed`` event and signals the follow-up scheduler.

Architecture:
    Module layer.  Owns the transaction boundary when ``auto_commit=True``
    (commit on success, rollback on failure).  With ``auto_commit=False``
    the caller owns it and the controller only flushes.

Invariants enforced:
    - The new status is persisted BEFORE the follow-up signal is issued, so
      a dispatcher that re-reads the invoice after the signal always sees
      the terminal status.
    - Paying or cancelling an invoice stops every active follow-up.
      Re-paying a paid invoice re-issues the stop (idempotent).
    - Reactivation creates a follow-up only when none is active.
    - Due-date refreshes never touch follow-ups.
    - Credit notes can only be cancelled.

Failure modes:
    - InvoiceNotFoundError if the invoice does not exist.
    - InvalidStatusTransitionError if the transition is not in the workflow
      or its guard does not hold.
    - Unexpected exception -> session rolled back, exception re-raised.

Usage::

    controller = InvoiceStatusController(session, clock=clock)
    result = controller.mark_paid(invoice_id, actor_id=actor_id)
    assert result.new_status == InvoiceStatus.PAID
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_engines.balance import BalanceResolver
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.domain.money import ZERO
from settlement_kernel.domain.workflow import Transition, Workflow
from settlement_kernel.exceptions import (
    InvalidStatusTransitionError,
    InvoiceNotFoundError,
)
from settlement_kernel.logging_config import LogContext, get_logger
from settlement_modules.followup.models import FollowUp
from settlement_modules.followup.scheduler import FollowUpScheduler
from settlement_modules.invoicing.amounts import resolve_invoice_balance
from settlement_modules.invoicing.events import record_invoice_event
from settlement_modules.invoicing.models import InvoiceEventType, InvoiceStatus
from settlement_modules.invoicing.orm import InvoiceModel
from settlement_modules.invoicing.workflows import (
    CREDIT_NOTE_WORKFLOW,
    DUE_DATE_NOT_PASSED,
    DUE_DATE_PASSED,
    INVOICE_STATUS_WORKFLOW,
)

logger = get_logger("modules.invoicing.status")

STOP_REASON_PAID = "invoice_paid"
STOP_REASON_CANCELLED = "invoice_cancelled"


@dataclass(frozen=True)
class StatusChangeResult:
    """Outcome of one status operation."""
    invoice_id: UUID
    previous_status: InvoiceStatus
    new_status: InvoiceStatus
    changed: bool
    balance_due: Decimal
    follow_ups_stopped: int = 0
    follow_up: FollowUp | None = None


class InvoiceStatusController:
    """
    Applies invoice status transitions and their follow-up side effects.

    Contract:
        Each public method returns a StatusChangeResult or raises.  With
        ``auto_commit=True`` the session is committed on success and
        rolled back on failure.
    """

    def __init__(
        self,
        session: Session,
        scheduler: FollowUpScheduler | None = None,
        clock: Clock | None = None,
        auto_commit: bool = True,
        resolver: BalanceResolver | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._scheduler = scheduler or FollowUpScheduler(session, clock=self._clock)
        self._auto_commit = auto_commit
        self._resolver = resolver or BalanceResolver()

    # =========================================================================
    # Public operations
    # =========================================================================

    def mark_paid(
        self,
        invoice_id: UUID,
        actor_id: UUID,
        paid_at: datetime | None = None,
    ) -> StatusChangeResult:
        """Mark the invoice paid and stop its follow-ups."""
        with LogContext.bind(invoice_id=str(invoice_id), actor_id=str(actor_id)):
            try:
                invoice = self._load(invoice_id)
                previous = InvoiceStatus(invoice.status)
                changed = previous != InvoiceStatus.PAID
                if changed:
                    self._apply(invoice, InvoiceStatus.PAID, actor_id)
                    invoice.paid_at = paid_at or self._clock.now()
                self._persist_status()

                stopped = self._scheduler.stop_all(invoice.id, STOP_REASON_PAID, actor_id)
                self._finish()
                return self._result(invoice, previous, changed, follow_ups_stopped=stopped)
            except Exception:
                self._rollback()
                raise

    def cancel(
        self,
        invoice_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> StatusChangeResult:
        """Cancel the invoice (or void a credit note) and stop its follow-ups."""
        with LogContext.bind(invoice_id=str(invoice_id), actor_id=str(actor_id)):
            try:
                invoice = self._load(invoice_id)
                previous = InvoiceStatus(invoice.status)
                changed = previous != InvoiceStatus.CANCELLED
                if changed:
                    self._apply(invoice, InvoiceStatus.CANCELLED, actor_id, reason=reason)
                    invoice.cancelled_at = self._clock.now()
                    if invoice.is_credit_note:
                        self._refresh_related_balance(invoice, actor_id)
                self._persist_status()

                stopped = self._scheduler.stop_all(
                    invoice.id, STOP_REASON_CANCELLED, actor_id,
                )
                self._finish()
                return self._result(invoice, previous, changed, follow_ups_stopped=stopped)
            except Exception:
                self._rollback()
                raise

    def reactivate(self, invoice_id: UUID, actor_id: UUID) -> StatusChangeResult:
        """
        Reopen a paid or cancelled invoice.

        The new status (unpaid or overdue) follows the due date.  A fresh
        follow-up campaign is started only if no follow-up is active.
        """
        with LogContext.bind(invoice_id=str(invoice_id), actor_id=str(actor_id)):
            try:
                invoice = self._load(invoice_id)
                previous = InvoiceStatus(invoice.status)
                target = self._due_status(invoice.due_date)
                self._apply(invoice, target, actor_id)
                invoice.paid_at = None
                invoice.cancelled_at = None
                self._persist_status()

                follow_up = self._scheduler.active_follow_up(invoice.id)
                if follow_up is None:
                    follow_up = self._scheduler.ensure_follow_up(invoice.id, restart=True)
                else:
                    logger.info(
                        "followup_already_active",
                        extra={"follow_up_id": str(follow_up.id)},
                    )
                self._finish()
                return self._result(invoice, previous, True, follow_up=follow_up)
            except Exception:
                self._rollback()
                raise

    def refresh_due_status(self, invoice_id: UUID, actor_id: UUID) -> StatusChangeResult:
        """Switch an open invoice between unpaid and overdue.  No follow-up side effects."""
        with LogContext.bind(invoice_id=str(invoice_id), actor_id=str(actor_id)):
            try:
                invoice = self._load(invoice_id)
                previous = InvoiceStatus(invoice.status)
                if invoice.is_credit_note or not previous.is_open:
                    return self._result(invoice, previous, False)

                target = self._due_status(invoice.due_date)
                changed = target != previous
                if changed:
                    self._apply(invoice, target, actor_id)
                else:
                    invoice.balance_due = self._balance_for(invoice, previous)
                self._persist_status()
                self._finish()
                return self._result(invoice, previous, changed)
            except Exception:
                self._rollback()
                raise

    def set_status(
        self,
        invoice_id: UUID,
        status: InvoiceStatus | str,
        actor_id: UUID,
    ) -> StatusChangeResult:
        """
        Route a requested status to the matching operation.

        ``unpaid``/``overdue`` reactivate a closed invoice or refresh an open
        one; the due date decides which of the two it ends up in.
        """
        status = InvoiceStatus(status)
        if status == InvoiceStatus.PAID:
            return self.mark_paid(invoice_id, actor_id)
        if status == InvoiceStatus.CANCELLED:
            return self.cancel(invoice_id, actor_id)

        invoice = self._load(invoice_id)
        if InvoiceStatus(invoice.status).is_open:
            return self.refresh_due_status(invoice_id, actor_id)
        return self.reactivate(invoice_id, actor_id)

    # =========================================================================
    # Internals
    # =========================================================================

    def _load(self, invoice_id: UUID) -> InvoiceModel:
        invoice = self._session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def _workflow(self, invoice: InvoiceModel) -> Workflow:
        return CREDIT_NOTE_WORKFLOW if invoice.is_credit_note else INVOICE_STATUS_WORKFLOW

    def _due_status(self, due_date: date) -> InvoiceStatus:
        if self._clock.today() > due_date:
            return InvoiceStatus.OVERDUE
        return InvoiceStatus.UNPAID

    def _guard_holds(self, transition: Transition, invoice: InvoiceModel) -> bool:
        if transition.guard is None:
            return True
        overdue = self._clock.today() > invoice.due_date
        if transition.guard == DUE_DATE_PASSED:
            return overdue
        if transition.guard == DUE_DATE_NOT_PASSED:
            return not overdue
        raise ValueError(f"Unknown guard: {transition.guard.name}")

    def _apply(
        self,
        invoice: InvoiceModel,
        target: InvoiceStatus,
        actor_id: UUID,
        reason: str | None = None,
    ) -> None:
        previous = invoice.status
        transition = self._workflow(invoice).find(previous, target.value)
        if transition is None or not self._guard_holds(transition, invoice):
            logger.warning(
                "invoice_status_transition_rejected",
                extra={"from_status": previous, "to_status": target.value},
            )
            raise InvalidStatusTransitionError(str(invoice.id), previous, target.value)

        invoice.status = target.value
        invoice.balance_due = self._balance_for(invoice, target)
        invoice.updated_by_id = actor_id

        payload = {
            "from_status": previous,
            "to_status": target.value,
            "action": transition.action,
            "balance_due": invoice.balance_due,
        }
        if reason:
            payload["reason"] = reason
        record_invoice_event(
            self._session,
            invoice_id=invoice.id,
            event_type=InvoiceEventType.STATUS_CHANGED,
            occurred_at=self._clock.now(),
            actor_id=actor_id,
            **payload,
        )
        logger.info(
            "invoice_status_changed",
            extra={
                "from_status": previous,
                "to_status": target.value,
                "action": transition.action,
            },
        )

    def _balance_for(self, invoice: InvoiceModel, status: InvoiceStatus) -> Decimal:
        if invoice.is_credit_note or not status.is_open:
            return ZERO
        return resolve_invoice_balance(self._session, invoice, self._resolver)

    def _refresh_related_balance(self, credit_note: InvoiceModel, actor_id: UUID) -> None:
        """A voided credit note no longer offsets its invoice."""
        self._session.flush()
        related = self._session.get(InvoiceModel, credit_note.related_invoice_id)
        if related is None:
            return
        status = InvoiceStatus(related.status)
        related.balance_due = self._balance_for(related, status)
        related.updated_by_id = actor_id
        logger.info(
            "invoice_balance_recomputed",
            extra={
                "related_invoice_id": str(related.id),
                "balance_due": str(related.balance_due),
            },
        )

    def _persist_status(self) -> None:
        # Status must be durable before the follow-up signal goes out
        if self._auto_commit:
            self._session.commit()
        else:
            self._session.flush()

    def _finish(self) -> None:
        if self._auto_commit:
            self._session.commit()
        else:
            self._session.flush()

    def _rollback(self) -> None:
        if self._auto_commit:
            self._session.rollback()

    def _result(
        self,
        invoice: InvoiceModel,
        previous: InvoiceStatus,
        changed: bool,
        follow_ups_stopped: int = 0,
        follow_up: FollowUp | None = None,
    ) -> StatusChangeResult:
        return StatusChangeResult(
            invoice_id=invoice.id,
            previous_status=previous,
            new_status=InvoiceStatus(invoice.status),
            changed=changed,
            balance_due=invoice.balance_due,
            follow_ups_stopped=follow_ups_stopped,
            follow_up=follow_up,
        )
