"""
Tests for settlement_batch.services.executor.

Validates BatchExecutor: submit_job, execute_job (SAVEPOINT-per-item),
cancel_job, get_job, get_job_items, idempotency and the concurrency guard.

A returned FAILED result keeps the item's writes; only a raised exception
rolls the item back.
"""

from datetime import datetime
from typing import Any
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_batch.domain.types import BatchItemStatus, BatchJobStatus
from settlement_batch.models.batch import BatchJobModel
from settlement_batch.services.executor import BatchExecutor
from settlement_batch.tasks.base import (
    BatchItemInput,
    BatchTask,
    BatchTaskResult,
    TaskRegistry,
)
from settlement_kernel.exceptions import (
    BatchAlreadyRunningError,
    BatchIdempotencyError,
    BatchJobNotFoundError,
    TaskNotRegisteredError,
)
from settlement_modules.invoicing.orm import ClientModel
from tests.conftest import TEST_ACTOR_ID


# =============================================================================
# Fake tasks
# =============================================================================


class _FakeTask:
    task_type = "test.base"
    description = "fake"

    def prepare_items(
        self, parameters: dict[str, Any], session: Session, as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        count = parameters.get("item_count", 3)
        return tuple(BatchItemInput(item_index=i, item_key=f"item-{i:03d}") for i in range(count))


class SuccessTask(_FakeTask):
    task_type = "test.success"

    def execute_item(self, item, parameters, session, as_of) -> BatchTaskResult:
        return BatchTaskResult(status=BatchItemStatus.SUCCEEDED, result_data={"processed": item.item_key})


class OddFailTask(_FakeTask):
    task_type = "test.odd_fail"

    def execute_item(self, item, parameters, session, as_of) -> BatchTaskResult:
        if item.item_index % 2:
            return BatchTaskResult(
                status=BatchItemStatus.FAILED,
                error_code="ODD_INDEX",
                error_message=f"Item {item.item_key} has odd index",
            )
        return BatchTaskResult(status=BatchItemStatus.SUCCEEDED)


class SkipTask(_FakeTask):
    task_type = "test.skip"

    def execute_item(self, item, parameters, session, as_of) -> BatchTaskResult:
        return BatchTaskResult(status=BatchItemStatus.SKIPPED)


class RecordingTask(_FakeTask):
    """Writes a client row per item, then fails or raises on demand."""

    task_type = "test.recording"

    def execute_item(self, item, parameters, session, as_of) -> BatchTaskResult:
        session.add(ClientModel(name=item.item_key, created_by_id=TEST_ACTOR_ID))
        session.flush()
        if item.item_index == 0:
            return BatchTaskResult(status=BatchItemStatus.FAILED, error_code="RECORDED")
        if item.item_index == 1:
            raise RuntimeError("Unexpected error in item processing")
        return BatchTaskResult(status=BatchItemStatus.SUCCEEDED)


class PrepareFailTask(_FakeTask):
    task_type = "test.prepare_fail"

    def prepare_items(self, parameters, session, as_of):
        raise ValueError("Cannot query eligible items")

    def execute_item(self, item, parameters, session, as_of) -> BatchTaskResult:
        return BatchTaskResult(status=BatchItemStatus.SUCCEEDED)


@pytest.fixture
def registry():
    registry = TaskRegistry()
    for task in (SuccessTask(), OddFailTask(), SkipTask(), RecordingTask(), PrepareFailTask()):
        registry.register(task)
    return registry


@pytest.fixture
def executor(session, registry, clock):
    return BatchExecutor(session=session, task_registry=registry, clock=clock)


def _run(executor, task_type, **kwargs):
    job = executor.submit_job(
        job_name=f"{task_type} run", task_type=task_type, actor_id=TEST_ACTOR_ID, **kwargs,
    )
    return job, executor.execute_job(job.job_id, TEST_ACTOR_ID)


# =============================================================================
# Registry
# =============================================================================


class TestTaskRegistry:
    def test_fake_tasks_satisfy_protocol(self):
        assert isinstance(SuccessTask(), BatchTask)

    def test_duplicate_registration_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.register(SuccessTask())

    def test_unknown_task_lists_available(self, registry):
        with pytest.raises(TaskNotRegisteredError) as exc_info:
            registry.get("nope")
        assert "test.success" in exc_info.value.available

    def test_list_tasks_sorted(self, registry):
        assert registry.list_tasks() == tuple(sorted(registry.list_tasks()))
        assert len(registry) == 5


# =============================================================================
# submit_job
# =============================================================================


class TestSubmitJob:
    def test_submit_creates_pending_job(self, executor, clock):
        job = executor.submit_job(
            job_name="Nightly",
            task_type="test.success",
            idempotency_key="key-001",
            actor_id=TEST_ACTOR_ID,
            correlation_id="corr-001",
        )

        assert job.status == BatchJobStatus.PENDING
        assert job.idempotency_key == "key-001"
        assert job.created_by == TEST_ACTOR_ID
        assert job.created_at == clock.now()
        assert job.correlation_id == "corr-001"

    def test_default_idempotency_key(self, executor):
        job = executor.submit_job(job_name="J", task_type="test.success", actor_id=TEST_ACTOR_ID)
        assert job.idempotency_key == f"test.success:{job.job_id}"

    def test_duplicate_idempotency_key_raises(self, executor):
        executor.submit_job(
            job_name="J1", task_type="test.success", actor_id=TEST_ACTOR_ID, idempotency_key="dup",
        )
        with pytest.raises(BatchIdempotencyError):
            executor.submit_job(
                job_name="J2", task_type="test.success", actor_id=TEST_ACTOR_ID, idempotency_key="dup",
            )

    def test_unregistered_task_raises(self, executor):
        with pytest.raises(TaskNotRegisteredError):
            executor.submit_job(job_name="J", task_type="missing", actor_id=TEST_ACTOR_ID)


# =============================================================================
# execute_job
# =============================================================================


class TestExecuteJob:
    def test_all_succeed(self, executor):
        _, result = _run(executor, "test.success", parameters={"item_count": 4})

        assert result.status == BatchJobStatus.COMPLETED
        assert result.total_items == 4
        assert result.succeeded == 4
        assert result.item_results[0].result_data == {"processed": "item-000"}

    def test_partial_failure(self, executor):
        _, result = _run(executor, "test.odd_fail")

        assert result.status == BatchJobStatus.PARTIALLY_COMPLETED
        assert result.succeeded == 2
        assert result.failed == 1
        assert result.error_summary == "1 item(s) failed"

    def test_skipped_only_completes(self, executor):
        _, result = _run(executor, "test.skip", parameters={"item_count": 2})

        assert result.status == BatchJobStatus.COMPLETED
        assert result.skipped == 2

    def test_empty_batch_completes(self, executor):
        _, result = _run(executor, "test.success", parameters={"item_count": 0})
        assert result.status == BatchJobStatus.COMPLETED
        assert result.total_items == 0

    def test_returned_failure_keeps_writes_exception_rolls_back(self, executor, session):
        _, result = _run(executor, "test.recording", parameters={"item_count": 3})

        assert result.failed == 2
        assert result.succeeded == 1
        names = set(session.execute(select(ClientModel.name)).scalars())
        assert names == {"item-000", "item-002"}

        raised = result.item_results[1]
        assert raised.error_code == "UNHANDLED_EXCEPTION"
        assert "Unexpected error" in raised.error_message

    def test_prepare_failure_fails_job(self, executor):
        _, result = _run(executor, "test.prepare_fail")

        assert result.status == BatchJobStatus.FAILED
        assert result.total_items == 0
        assert "Cannot query" in result.error_summary

    def test_job_not_found(self, executor):
        with pytest.raises(BatchJobNotFoundError):
            executor.execute_job(uuid4(), TEST_ACTOR_ID)

    def test_job_runs_once(self, executor):
        job, _ = _run(executor, "test.success")

        with pytest.raises(BatchAlreadyRunningError):
            executor.execute_job(job.job_id, TEST_ACTOR_ID)

    def test_running_job_is_not_executed(self, executor, session):
        job = executor.submit_job(job_name="J", task_type="test.success", actor_id=TEST_ACTOR_ID)
        session.get(BatchJobModel, job.job_id).status = BatchJobStatus.RUNNING.value
        session.flush()

        with pytest.raises(BatchAlreadyRunningError):
            executor.execute_job(job.job_id, TEST_ACTOR_ID)

    def test_items_and_counters_persisted(self, executor):
        job, _ = _run(executor, "test.odd_fail")

        stored = executor.get_job(job.job_id)
        assert stored.status == BatchJobStatus.PARTIALLY_COMPLETED
        assert (stored.total_items, stored.succeeded_items, stored.failed_items) == (3, 2, 1)

        items = executor.get_job_items(job.job_id)
        assert [i.item_key for i in items] == ["item-000", "item-001", "item-002"]
        assert items[1].error_code == "ODD_INDEX"

    def test_job_id_bound_in_logs(self, executor, captured_logs):
        job, _ = _run(executor, "test.success", correlation_id="corr-42")

        completed = [r for r in captured_logs() if r["message"] == "batch_job_completed"]
        assert completed[0]["job_id"] == str(job.job_id)
        assert completed[0]["correlation_id"] == "corr-42"


# =============================================================================
# cancel_job
# =============================================================================


class TestCancelJob:
    def test_cancel_pending_job(self, executor):
        job = executor.submit_job(job_name="J", task_type="test.success", actor_id=TEST_ACTOR_ID)

        cancelled = executor.cancel_job(job.job_id, "maintenance", TEST_ACTOR_ID)

        assert cancelled.status == BatchJobStatus.CANCELLED
        assert cancelled.error_summary == "Cancelled: maintenance"

    def test_cannot_cancel_finished_job(self, executor):
        job, _ = _run(executor, "test.success")
        with pytest.raises(ValueError):
            executor.cancel_job(job.job_id, "too late", TEST_ACTOR_ID)

    def test_cancel_unknown_job(self, executor):
        with pytest.raises(BatchJobNotFoundError):
            executor.cancel_job(uuid4(), "x", TEST_ACTOR_ID)
