"""
FollowUpScheduler -- decides, per invoice, what the next reminder is.

Contract:
    ``ensure_follow_up(invoice_id)`` returns the invoice's active follow-up,
    creating or advancing one when needed, or ``None`` when nothing should
    be chased (paid / cancelled / credit note / campaign completed).

Invariants enforced:
    - At most one ACTIVE follow-up per invoice.  Checked by query before
      every write and enforced by the ``uq_invoice_follow_ups_one_active``
      partial unique index; a losing concurrent insert is rolled back to
      its SAVEPOINT and the winning row is returned.
    - Re-entrant: every call re-reads the invoice and its follow-ups.
      Calling it twice in a row returns the same follow-up.
    - A ``sent`` row is advanced in place (same stage retried, or the next
      stage) instead of starting a parallel campaign.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
    - Does NOT send anything -- that is the dispatcher's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_kernel.domain.actors import SYSTEM_ACTOR_ID
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.exceptions import InvoiceNotFoundError
from settlement_kernel.logging_config import LogContext, get_logger
from settlement_modules.followup.config import FollowUpRules
from settlement_modules.followup.models import (
    ACTIVE_STATUSES,
    FollowUp,
    FollowUpKind,
    FollowUpStatistics,
    FollowUpStatus,
)
from settlement_modules.followup.orm import FollowUpModel
from settlement_modules.invoicing.events import record_invoice_event
from settlement_modules.invoicing.models import InvoiceEventType, InvoiceStatus
from settlement_modules.invoicing.orm import InvoiceModel

logger = get_logger("modules.followup.scheduler")

_ACTIVE_VALUES = tuple(s.value for s in ACTIVE_STATUSES)


@dataclass(frozen=True)
class _Plan:
    kind: FollowUpKind
    stage: int
    status: FollowUpStatus
    scheduled_on: date


class FollowUpScheduler:
    """Creates, advances and stops follow-up campaign rows."""

    def __init__(
        self,
        session: Session,
        rules: FollowUpRules | None = None,
        clock: Clock | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ):
        self._session = session
        self._rules = rules or FollowUpRules()
        self._clock = clock or SystemClock()
        self._actor_id = actor_id

    @property
    def rules(self) -> FollowUpRules:
        return self._rules

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def active_follow_up(self, invoice_id: UUID) -> FollowUp | None:
        row = self._active_row(invoice_id)
        return row.to_dto() if row is not None else None

    def history(self, invoice_id: UUID) -> list[FollowUp]:
        """Every follow-up row for the invoice, oldest campaign first."""
        rows = self._session.execute(
            select(FollowUpModel)
            .where(FollowUpModel.invoice_id == invoice_id)
            .order_by(FollowUpModel.sequence)
        ).scalars()
        return [row.to_dto() for row in rows]

    def statistics(self) -> FollowUpStatistics:
        """Counts per status, stage and kind over all follow-up rows."""
        rows = self._session.execute(
            select(
                FollowUpModel.status,
                FollowUpModel.stage,
                FollowUpModel.kind,
                func.count(FollowUpModel.id),
            ).group_by(FollowUpModel.status, FollowUpModel.stage, FollowUpModel.kind)
        ).all()

        by_status = {status.value: 0 for status in FollowUpStatus}
        by_stage = {stage: 0 for stage in range(1, self._rules.max_stages + 1)}
        by_kind = {kind.value: 0 for kind in FollowUpKind}
        total = 0
        for status, stage, kind, count in rows:
            by_status[status] = by_status.get(status, 0) + count
            by_stage[stage] = by_stage.get(stage, 0) + count
            by_kind[kind] = by_kind.get(kind, 0) + count
            total += count

        return FollowUpStatistics(
            total=total, by_status=by_status, by_stage=by_stage, by_kind=by_kind,
        )

    def _active_row(self, invoice_id: UUID) -> FollowUpModel | None:
        return self._session.execute(
            select(FollowUpModel)
            .where(
                FollowUpModel.invoice_id == invoice_id,
                FollowUpModel.status.in_(_ACTIVE_VALUES),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()

    def _latest_row(self, invoice_id: UUID) -> FollowUpModel | None:
        return self._session.execute(
            select(FollowUpModel)
            .where(FollowUpModel.invoice_id == invoice_id)
            .order_by(FollowUpModel.sequence.desc())
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()

    def _load_invoice(self, invoice_id: UUID) -> InvoiceModel:
        invoice = self._session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.id == invoice_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    # -------------------------------------------------------------------------
    # Ensure
    # -------------------------------------------------------------------------

    def ensure_follow_up(
        self,
        invoice_id: UUID,
        *,
        restart: bool = False,
    ) -> FollowUp | None:
        """Return the invoice's active follow-up, creating or advancing one.

        Args:
            invoice_id: Invoice to evaluate.
            restart: Start a fresh campaign even if the previous one was
                completed (used on reactivation).

        Returns:
            The active FollowUp, or None when the invoice is not eligible
            or its campaign is finished.

        Raises:
            InvoiceNotFoundError: If the invoice does not exist.
        """
        with LogContext.bind(invoice_id=str(invoice_id)):
            invoice = self._load_invoice(invoice_id)
            if invoice.is_credit_note or not InvoiceStatus(invoice.status).is_open:
                logger.debug(
                    "followup_not_eligible",
                    extra={"status": invoice.status, "document_type": invoice.document_type},
                )
                return None

            active = self._active_row(invoice_id)
            if active is not None:
                return active.to_dto()

            today = self._clock.today()
            latest = self._latest_row(invoice_id)

            if latest is not None and not restart:
                status = FollowUpStatus(latest.status)
                if status == FollowUpStatus.SENT:
                    return self._advance(latest, invoice, today)
                if status == FollowUpStatus.COMPLETED:
                    return None
                if status == FollowUpStatus.FAILED:
                    return self._retry_after_failure(latest, invoice, today)

            return self._create(invoice, self._fresh_plan(invoice.due_date, today))

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def _fresh_plan(self, due_date: date, today: date) -> _Plan:
        """Kind, stage and schedule for a brand-new campaign row."""
        if today <= due_date:
            arm_on = due_date - timedelta(days=self._rules.approaching_deadline_days)
            if arm_on > today:
                return _Plan(
                    FollowUpKind.APPROACHING_DEADLINE, 1, FollowUpStatus.PENDING, arm_on,
                )
            return _Plan(
                FollowUpKind.APPROACHING_DEADLINE, 1, FollowUpStatus.SCHEDULED, today,
            )

        stage = self._rules.stage_for_days_overdue((today - due_date).days)
        return _Plan(FollowUpKind.OVERDUE, stage, FollowUpStatus.SCHEDULED, today)

    def _next_plan(self, row: FollowUpModel, due_date: date, today: date) -> _Plan | None:
        """Step after a sent row; None when every stage has been sent."""
        sent_on = (row.sent_at or self._clock.now()).date()
        earliest = sent_on + timedelta(days=self._rules.retry_interval_days)
        kind = FollowUpKind(row.kind)
        is_overdue = today > due_date

        if kind == FollowUpKind.APPROACHING_DEADLINE:
            if not is_overdue and row.attempts < row.max_attempts:
                return _Plan(kind, row.stage, FollowUpStatus.SCHEDULED, earliest)
            first = due_date + timedelta(days=self._rules.delay_for_stage(1))
            return _Plan(FollowUpKind.OVERDUE, 1, FollowUpStatus.SCHEDULED, max(first, earliest))

        if row.attempts < row.max_attempts:
            return _Plan(kind, row.stage, FollowUpStatus.SCHEDULED, earliest)
        if row.stage < self._rules.max_stages:
            stage = row.stage + 1
            threshold = due_date + timedelta(days=self._rules.delay_for_stage(stage))
            return _Plan(kind, stage, FollowUpStatus.SCHEDULED, max(threshold, earliest))
        return None

    def _at_dispatch_hour(self, on: date) -> datetime:
        return datetime.combine(
            on, time(hour=self._rules.dispatch_hour_utc), tzinfo=timezone.utc,
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _advance(
        self, row: FollowUpModel, invoice: InvoiceModel, today: date,
    ) -> FollowUp | None:
        plan = self._next_plan(row, invoice.due_date, today)
        now = self._clock.now()

        if plan is None:
            row.status = FollowUpStatus.COMPLETED.value
            row.updated_by_id = self._actor_id
            self._session.flush()
            logger.info(
                "followup_campaign_completed",
                extra={"follow_up_id": str(row.id), "stage": row.stage},
            )
            return None

        previous = (row.kind, row.stage)
        same_step = previous == (plan.kind.value, plan.stage)

        savepoint = self._session.begin_nested()
        try:
            row.kind = plan.kind.value
            row.stage = plan.stage
            row.status = plan.status.value
            row.scheduled_at = self._at_dispatch_hour(plan.scheduled_on)
            row.template_type = self._rules.template_for(plan.kind.value)
            row.last_error = None
            if not same_step:
                row.attempts = 0
                row.max_attempts = self._rules.max_attempts_for(plan.kind.value)
            row.updated_by_id = self._actor_id
            self._session.flush()
            savepoint.commit()
        except IntegrityError as exc:
            savepoint.rollback()
            return self._winner_after_conflict(invoice.id, exc)

        record_invoice_event(
            self._session,
            invoice_id=invoice.id,
            event_type=InvoiceEventType.FOLLOWUP_ADVANCED,
            occurred_at=now,
            actor_id=self._actor_id,
            follow_up_id=row.id,
            from_kind=previous[0],
            from_stage=previous[1],
            kind=row.kind,
            stage=row.stage,
            scheduled_at=row.scheduled_at,
        )
        self._session.flush()

        logger.info(
            "followup_advanced",
            extra={
                "follow_up_id": str(row.id),
                "kind": row.kind,
                "stage": row.stage,
                "scheduled_at": row.scheduled_at.isoformat(),
            },
        )
        return row.to_dto()

    def _retry_after_failure(
        self, row: FollowUpModel, invoice: InvoiceModel, today: date,
    ) -> FollowUp | None:
        failures = self._consecutive_failures(invoice.id)
        if failures >= self._rules.max_consecutive_failures:
            logger.warning(
                "followup_retries_exhausted",
                extra={"follow_up_id": str(row.id), "consecutive_failures": failures},
            )
            return None

        failed_on = (row.last_attempt_at or row.scheduled_at).date()
        retry_on = failed_on + timedelta(days=self._rules.retry_interval_days)
        kind = FollowUpKind(row.kind)

        if kind == FollowUpKind.APPROACHING_DEADLINE and today > invoice.due_date:
            plan = self._fresh_plan(invoice.due_date, today)
        else:
            plan = _Plan(kind, row.stage, FollowUpStatus.SCHEDULED, retry_on)
        return self._create(invoice, plan)

    def _consecutive_failures(self, invoice_id: UUID) -> int:
        statuses = self._session.execute(
            select(FollowUpModel.status)
            .where(FollowUpModel.invoice_id == invoice_id)
            .order_by(FollowUpModel.sequence.desc())
        ).scalars()
        count = 0
        for status in statuses:
            if status != FollowUpStatus.FAILED.value:
                break
            count += 1
        return count

    def _create(self, invoice: InvoiceModel, plan: _Plan) -> FollowUp | None:
        now = self._clock.now()
        next_sequence = (
            self._session.execute(
                select(func.max(FollowUpModel.sequence)).where(
                    FollowUpModel.invoice_id == invoice.id,
                )
            ).scalar()
            or 0
        ) + 1

        row = FollowUpModel(
            invoice_id=invoice.id,
            sequence=next_sequence,
            stage=plan.stage,
            kind=plan.kind.value,
            status=plan.status.value,
            scheduled_at=self._at_dispatch_hour(plan.scheduled_on),
            attempts=0,
            max_attempts=self._rules.max_attempts_for(plan.kind.value),
            template_type=self._rules.template_for(plan.kind.value),
            created_by_id=self._actor_id,
        )

        savepoint = self._session.begin_nested()
        try:
            self._session.add(row)
            self._session.flush()
            savepoint.commit()
        except IntegrityError as exc:
            savepoint.rollback()
            return self._winner_after_conflict(invoice.id, exc)

        record_invoice_event(
            self._session,
            invoice_id=invoice.id,
            event_type=InvoiceEventType.FOLLOWUP_CREATED,
            occurred_at=now,
            actor_id=self._actor_id,
            follow_up_id=row.id,
            sequence=row.sequence,
            kind=row.kind,
            stage=row.stage,
            status=row.status,
            scheduled_at=row.scheduled_at,
        )
        self._session.flush()

        logger.info(
            "followup_created",
            extra={
                "follow_up_id": str(row.id),
                "sequence": row.sequence,
                "kind": row.kind,
                "stage": row.stage,
                "status": row.status,
                "scheduled_at": row.scheduled_at.isoformat(),
            },
        )
        return row.to_dto()

    def _winner_after_conflict(
        self, invoice_id: UUID, error: IntegrityError,
    ) -> FollowUp | None:
        """A concurrent pass wrote first; return its active row."""
        logger.warning("followup_write_conflict", extra={"invoice_id": str(invoice_id)})
        active = self._active_row(invoice_id)
        if active is None:
            # Conflict on the sequence number, not on the active slot
            raise error
        return active.to_dto()

    # -------------------------------------------------------------------------
    # Stop / activate
    # -------------------------------------------------------------------------

    def stop_all(
        self,
        invoice_id: UUID,
        reason: str,
        actor_id: UUID | None = None,
    ) -> int:
        """Stop every active follow-up of the invoice.

        Idempotent: an invoice without active follow-ups is a no-op.

        Returns:
            Number of rows stopped.
        """
        actor = actor_id or self._actor_id
        rows = list(
            self._session.execute(
                select(FollowUpModel)
                .where(
                    FollowUpModel.invoice_id == invoice_id,
                    FollowUpModel.status.in_(_ACTIVE_VALUES),
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars()
        )
        if not rows:
            return 0

        for row in rows:
            row.status = FollowUpStatus.STOPPED.value
            row.stopped_reason = reason
            row.updated_by_id = actor

        record_invoice_event(
            self._session,
            invoice_id=invoice_id,
            event_type=InvoiceEventType.FOLLOWUPS_STOPPED,
            occurred_at=self._clock.now(),
            actor_id=actor,
            reason=reason,
            count=len(rows),
            follow_up_ids=[row.id for row in rows],
        )
        self._session.flush()

        logger.info(
            "followups_stopped",
            extra={"invoice_id": str(invoice_id), "reason": reason, "count": len(rows)},
        )
        return len(rows)

    def activate_due(
        self,
        now: datetime | None = None,
        invoice_id: UUID | None = None,
    ) -> int:
        """Promote ``pending`` rows whose scheduled time has arrived."""
        now = now or self._clock.now()
        stmt = (
            update(FollowUpModel)
            .where(
                FollowUpModel.status == FollowUpStatus.PENDING.value,
                FollowUpModel.scheduled_at <= now,
            )
            .values(
                status=FollowUpStatus.SCHEDULED.value,
                updated_by_id=self._actor_id,
            )
            .execution_options(synchronize_session="fetch")
        )
        if invoice_id is not None:
            stmt = stmt.where(FollowUpModel.invoice_id == invoice_id)
        count = self._session.execute(stmt).rowcount or 0
        if count:
            logger.info("followups_activated", extra={"count": count})
        return count
