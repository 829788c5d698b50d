"""
Tests for the settlement batch tasks, driven item by item through
prepare_items / execute_item.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from settlement_batch.domain.types import BatchItemStatus
from settlement_batch.tasks.base import BatchTask
from settlement_batch.tasks.followup_tasks import (
    ACTIVATE_PENDING_KEY,
    DueStatusRefreshTask,
    FinalizedFollowUpReconcileTask,
    FollowUpDispatchTask,
    FollowUpSchedulingTask,
)
from settlement_modules.followup.models import FollowUpStatus
from settlement_modules.followup.orm import EmailOutboxModel, FollowUpModel
from settlement_modules.followup.scheduler import FollowUpScheduler
from settlement_modules.invoicing.models import InvoiceStatus
from settlement_modules.invoicing.orm import InvoiceModel
from tests.conftest import TEST_NOW, TEST_TODAY, FailingMessagingService, at


@pytest.fixture
def scheduler(session, clock, rules, test_actor_id):
    return FollowUpScheduler(session, rules=rules, clock=clock, actor_id=test_actor_id)


def _run_all_items(task, session, as_of=TEST_NOW):
    items = task.prepare_items({}, session, as_of)
    return items, [task.execute_item(item, {}, session, as_of) for item in items]


def _force_status(session, invoice_id, status: InvoiceStatus):
    session.get(InvoiceModel, invoice_id).status = status.value
    session.flush()


def test_tasks_satisfy_protocol(clock):
    for task in (
        DueStatusRefreshTask(clock=clock),
        FinalizedFollowUpReconcileTask(clock=clock),
        FollowUpSchedulingTask(clock=clock),
        FollowUpDispatchTask(clock=clock),
    ):
        assert isinstance(task, BatchTask)


# =============================================================================
# invoices.refresh_due_status
# =============================================================================


class TestDueStatusRefreshTask:
    @pytest.fixture
    def task(self, clock, test_actor_id):
        return DueStatusRefreshTask(clock=clock, actor_id=test_actor_id)

    def test_past_due_invoice_becomes_overdue(self, task, session, create_invoice, invoice_service):
        late = create_invoice(due_in_days=-5)
        current = create_invoice(due_in_days=10)

        items, results = _run_all_items(task, session)

        assert [item.item_key for item in items] == [str(late.id), str(current.id)]
        assert results[0].status == BatchItemStatus.SUCCEEDED
        assert results[0].result_data == {"previous_status": "unpaid", "new_status": "overdue"}
        assert results[1].status == BatchItemStatus.SKIPPED
        assert invoice_service.get_invoice(late.id).status == InvoiceStatus.OVERDUE

    def test_closed_invoices_are_not_items(self, task, session, create_invoice, invoice_service, test_actor_id):
        invoice = create_invoice(due_in_days=-5)
        invoice_service.issue_credit_note(invoice.id, test_actor_id)

        items = task.prepare_items({}, session, TEST_NOW)

        assert items == ()


# =============================================================================
# followups.reconcile_finalized
# =============================================================================


class TestFinalizedFollowUpReconcileTask:
    @pytest.fixture
    def task(self, clock, test_actor_id):
        return FinalizedFollowUpReconcileTask(clock=clock, actor_id=test_actor_id)

    def test_stops_follow_up_left_on_paid_invoice(self, task, session, scheduler, create_invoice):
        invoice = create_invoice(due_in_days=2)
        follow_up = scheduler.ensure_follow_up(invoice.id)
        _force_status(session, invoice.id, InvoiceStatus.PAID)

        items, results = _run_all_items(task, session)

        assert len(items) == 1
        assert items[0].payload == {"invoice_id": str(invoice.id), "status": "paid"}
        assert results[0].status == BatchItemStatus.SUCCEEDED
        assert results[0].result_data == {"stopped": 1}

        row = session.get(FollowUpModel, follow_up.id)
        assert row.status == FollowUpStatus.STOPPED.value
        assert row.stopped_reason == "invoice_paid"

    def test_open_invoices_are_not_items(self, task, session, scheduler, create_invoice):
        scheduler.ensure_follow_up(create_invoice(due_in_days=2).id)

        assert task.prepare_items({}, session, TEST_NOW) == ()

    def test_already_stopped_item_is_skipped(self, task, session, scheduler, create_invoice):
        invoice = create_invoice(due_in_days=2)
        scheduler.ensure_follow_up(invoice.id)
        _force_status(session, invoice.id, InvoiceStatus.CANCELLED)
        items = task.prepare_items({}, session, TEST_NOW)
        scheduler.stop_all(invoice.id, reason="invoice_cancelled")

        result = task.execute_item(items[0], {}, session, TEST_NOW)

        assert result.status == BatchItemStatus.SKIPPED


# =============================================================================
# followups.schedule
# =============================================================================


class TestFollowUpSchedulingTask:
    @pytest.fixture
    def task(self, rules, clock, test_actor_id):
        return FollowUpSchedulingTask(rules=rules, clock=clock, actor_id=test_actor_id)

    def test_activation_item_comes_first(self, task, session, create_invoice):
        invoice = create_invoice(due_in_days=2)

        items = task.prepare_items({}, session, TEST_NOW)

        assert [item.item_key for item in items] == [ACTIVATE_PENDING_KEY, str(invoice.id)]
        assert [item.item_index for item in items] == [0, 1]

    def test_creates_follow_up_per_open_invoice(self, task, session, create_invoice):
        invoice = create_invoice(due_in_days=2)

        _, results = _run_all_items(task, session)

        assert results[0].status == BatchItemStatus.SKIPPED
        assert results[0].result_data == {"activated": 0}
        assert results[1].status == BatchItemStatus.SUCCEEDED
        assert results[1].result_data["status"] == "scheduled"
        assert results[1].result_data["kind"] == "approaching_deadline"

        row = session.execute(
            select(FollowUpModel).where(FollowUpModel.invoice_id == invoice.id)
        ).scalar_one()
        assert str(row.id) == results[1].result_data["follow_up_id"]

    def test_second_run_keeps_single_active_row(self, task, session, create_invoice):
        invoice = create_invoice(due_in_days=2)
        _run_all_items(task, session)
        _, results = _run_all_items(task, session)

        rows = session.execute(
            select(FollowUpModel).where(FollowUpModel.invoice_id == invoice.id)
        ).scalars().all()
        assert len(rows) == 1
        assert results[1].result_data["follow_up_id"] == str(rows[0].id)

    def test_activation_promotes_pending_rows(self, task, session, scheduler, create_invoice):
        invoice = create_invoice(due_in_days=10)
        pending = scheduler.ensure_follow_up(invoice.id)
        as_of = at(TEST_TODAY + timedelta(days=7), hour=8)

        items = task.prepare_items({}, session, as_of)
        result = task.execute_item(items[0], {}, session, as_of)

        assert result.status == BatchItemStatus.SUCCEEDED
        assert result.result_data == {"activated": 1}
        assert session.get(FollowUpModel, pending.id).status == FollowUpStatus.SCHEDULED.value

    def test_paid_invoice_is_not_an_item(self, task, session, create_invoice):
        invoice = create_invoice(due_in_days=2)
        _force_status(session, invoice.id, InvoiceStatus.PAID)

        items = task.prepare_items({}, session, TEST_NOW)

        assert [item.item_key for item in items] == [ACTIVATE_PENDING_KEY]

    def test_completed_campaign_is_skipped(self, task, session, scheduler, create_invoice):
        invoice = create_invoice(due_in_days=2)
        follow_up = scheduler.ensure_follow_up(invoice.id)
        session.get(FollowUpModel, follow_up.id).status = FollowUpStatus.COMPLETED.value
        session.flush()

        items = task.prepare_items({}, session, TEST_NOW)
        result = task.execute_item(items[1], {}, session, TEST_NOW)

        assert result.status == BatchItemStatus.SKIPPED
        assert result.result_data == {"reason": "no_follow_up_due"}


# =============================================================================
# followups.dispatch
# =============================================================================


class TestFollowUpDispatchTask:
    @pytest.fixture
    def make_task(self, rules, invoicing_config, clock, test_actor_id):
        def _make(messaging=None, documents=None):
            factory = (lambda session: messaging) if messaging is not None else None
            return FollowUpDispatchTask(
                rules=rules,
                invoicing=invoicing_config,
                clock=clock,
                messaging_factory=factory,
                documents=documents,
                actor_id=test_actor_id,
            )

        return _make

    def test_sends_due_follow_up(self, make_task, session, scheduler, create_invoice, messaging):
        invoice = create_invoice(due_in_days=2)
        follow_up = scheduler.ensure_follow_up(invoice.id)
        task = make_task(messaging)

        items, results = _run_all_items(task, session)

        assert [item.payload for item in items] == [{"follow_up_id": str(follow_up.id)}]
        assert results[0].status == BatchItemStatus.SUCCEEDED
        assert results[0].result_data["invoice_id"] == str(invoice.id)
        assert results[0].result_data["template"] == "invoice_payment_reminder"
        assert results[0].result_data["has_attachment"] is False
        assert len(messaging.sent) == 1

    def test_pending_rows_are_not_items(self, make_task, session, scheduler, create_invoice, messaging):
        scheduler.ensure_follow_up(create_invoice(due_in_days=10).id)

        assert make_task(messaging).prepare_items({}, session, TEST_NOW) == ()

    def test_transport_failure_is_failed_item(self, make_task, session, scheduler, create_invoice):
        follow_up = scheduler.ensure_follow_up(create_invoice(due_in_days=2).id)
        task = make_task(FailingMessagingService())

        _, results = _run_all_items(task, session)

        assert results[0].status == BatchItemStatus.FAILED
        assert results[0].error_code == "DISPATCH_FAILED"
        assert results[0].error_message == "mailbox unavailable"

        row = session.get(FollowUpModel, follow_up.id)
        assert row.status == FollowUpStatus.FAILED.value
        assert row.last_error == "mailbox unavailable"

    def test_item_processed_elsewhere_is_skipped(self, make_task, session, scheduler, create_invoice, messaging):
        scheduler.ensure_follow_up(create_invoice(due_in_days=2).id)
        task = make_task(messaging)
        items = task.prepare_items({}, session, TEST_NOW)
        task.execute_item(items[0], {}, session, TEST_NOW)

        again = task.execute_item(items[0], {}, session, TEST_NOW)

        assert again.status == BatchItemStatus.SKIPPED
        assert again.result_data["reason"] == "already_processed"
        assert len(messaging.sent) == 1

    def test_outbox_is_default_transport(self, make_task, session, scheduler, create_invoice, documents):
        invoice = create_invoice(due_in_days=2)
        follow_up = scheduler.ensure_follow_up(invoice.id)
        task = make_task(documents=documents)

        _, results = _run_all_items(task, session)

        assert results[0].status == BatchItemStatus.SUCCEEDED
        queued = session.execute(select(EmailOutboxModel)).scalar_one()
        assert queued.recipient == "compta@dupont.test"
        assert queued.invoice_id == invoice.id
        assert queued.follow_up_id == follow_up.id
        assert queued.attachments[0]["filename"].endswith(".pdf")
