"""
BatchExecutor -- runs one settlement pass as a persisted batch job.

A job moves PENDING -> RUNNING -> COMPLETED / PARTIALLY_COMPLETED / FAILED
(or CANCELLED before it runs).  Each item of the job runs inside its own
SAVEPOINT:

    returned result (succeeded, skipped or failed)  savepoint released
    raised exception                                savepoint rolled back

A returned FAILED keeps the item's writes: the dispatcher records a
transport failure on the follow-up row and that record must survive.

The executor never commits; the caller owns the outer transaction.  Job
rows are locked FOR UPDATE before any state change, and only PENDING jobs
execute.  Timestamps come from the injected Clock.
"""

from __future__ import annotations

import time
from collections import Counter
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchJob,
    BatchJobStatus,
    BatchRunResult,
)
from settlement_batch.models.batch import BatchItemModel, BatchJobModel
from settlement_batch.tasks.base import BatchItemInput, BatchTask, TaskRegistry
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.exceptions import (
    BatchAlreadyRunningError,
    BatchIdempotencyError,
    BatchJobNotFoundError,
    TaskNotRegisteredError,
)
from settlement_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.executor")

_CANCELLABLE = (BatchJobStatus.PENDING.value, BatchJobStatus.RUNNING.value)


def _elapsed_ms(since: float) -> int:
    return int((time.monotonic() - since) * 1000)


def final_job_status(counts: Counter) -> BatchJobStatus:
    """Job outcome from per-item counts.

    Skipped items count as handled: a pass that had nothing to do is
    COMPLETED.
    """
    if not counts[BatchItemStatus.FAILED]:
        return BatchJobStatus.COMPLETED
    if counts[BatchItemStatus.SUCCEEDED] or counts[BatchItemStatus.SKIPPED]:
        return BatchJobStatus.PARTIALLY_COMPLETED
    return BatchJobStatus.FAILED


class BatchExecutor:
    """Submit, run, cancel and read batch jobs."""

    def __init__(
        self,
        session: Session,
        task_registry: TaskRegistry,
        clock: Clock | None = None,
    ):
        self._session = session
        self._task_registry = task_registry
        self._clock = clock or SystemClock()

    def submit_job(
        self,
        job_name: str,
        task_type: str,
        actor_id: UUID,
        parameters: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        correlation_id: str | None = None,
    ) -> BatchJob:
        """Record a PENDING job.

        Without an explicit ``idempotency_key`` the job gets
        ``<task_type>:<job_id>``, so only callers that pass a key are
        deduplicated.

        Raises:
            TaskNotRegisteredError: If task_type is not in the registry.
            BatchIdempotencyError: If idempotency_key is already used.
        """
        if task_type not in self._task_registry:
            raise TaskNotRegisteredError(task_type, self._task_registry.list_tasks())

        job_id = uuid4()
        key = idempotency_key or f"{task_type}:{job_id}"
        clash = self._session.execute(
            select(BatchJobModel.id).where(BatchJobModel.idempotency_key == key)
        ).scalar_one_or_none()
        if clash is not None:
            raise BatchIdempotencyError(key, str(clash))

        job = BatchJob(
            job_id=job_id,
            job_name=job_name,
            task_type=task_type,
            status=BatchJobStatus.PENDING,
            idempotency_key=key,
            parameters=parameters or {},
            created_at=self._clock.now(),
            created_by=actor_id,
            correlation_id=correlation_id,
        )
        self._session.add(BatchJobModel.from_job(job, actor_id))
        self._session.flush()

        logger.info(
            "batch_job_submitted",
            extra={"job_id": str(job_id), "task_type": task_type, "idempotency_key": key},
        )
        return job

    def execute_job(self, job_id: UUID, actor_id: UUID) -> BatchRunResult:
        """Run every item of a PENDING job.

        Raises:
            BatchJobNotFoundError: If job_id does not exist.
            BatchAlreadyRunningError: If the job is not PENDING.
            TaskNotRegisteredError: If its task_type is no longer registered.
        """
        started = time.monotonic()
        job = self._lock_job(job_id)
        if job.status != BatchJobStatus.PENDING.value:
            raise BatchAlreadyRunningError(job.job_name, str(job_id))
        task = self._task_registry.get(job.task_type)
        parameters = job.parameters or {}

        with LogContext.bind(job_id=str(job_id), correlation_id=job.correlation_id):
            as_of = self._clock.now()
            job.status = BatchJobStatus.RUNNING.value
            job.started_at = as_of
            self._session.flush()
            logger.info("batch_job_started", extra={"task_type": job.task_type})

            try:
                items = task.prepare_items(parameters=parameters, session=self._session, as_of=as_of)
            except Exception as exc:
                logger.exception("batch_prepare_failed", extra={"error": str(exc)})
                return self._finish_failed(job, f"prepare_items failed: {exc}", started)

            job.total_items = len(items)
            self._session.flush()

            results = []
            for item in items:
                result = self._run_item(task, item, parameters, as_of)
                self._session.add(BatchItemModel.from_result(result, job_id, actor_id))
                results.append(result)

            counts = Counter(r.status for r in results)
            job.succeeded_items = counts[BatchItemStatus.SUCCEEDED]
            job.failed_items = counts[BatchItemStatus.FAILED]
            job.skipped_items = counts[BatchItemStatus.SKIPPED]
            job.status = final_job_status(counts).value
            if job.failed_items:
                job.error_summary = f"{job.failed_items} item(s) failed"
            job.completed_at = self._clock.now()
            self._session.flush()

            duration_ms = _elapsed_ms(started)
            logger.info(
                "batch_job_completed",
                extra={
                    "status": job.status,
                    "total_items": job.total_items,
                    "succeeded": job.succeeded_items,
                    "failed": job.failed_items,
                    "skipped": job.skipped_items,
                    "duration_ms": duration_ms,
                },
            )
            return BatchRunResult(
                job_id=job_id,
                status=BatchJobStatus(job.status),
                total_items=job.total_items,
                succeeded=job.succeeded_items,
                failed=job.failed_items,
                skipped=job.skipped_items,
                item_results=tuple(results),
                started_at=job.started_at,
                completed_at=job.completed_at,
                duration_ms=duration_ms,
                correlation_id=job.correlation_id,
                error_summary=job.error_summary,
            )

    def cancel_job(self, job_id: UUID, reason: str, actor_id: UUID) -> BatchJob:
        """Cancel a job that has not finished.

        Raises:
            BatchJobNotFoundError: If job_id does not exist.
            ValueError: If the job already finished.
        """
        job = self._lock_job(job_id)
        if job.status not in _CANCELLABLE:
            raise ValueError(f"Cannot cancel job in status {job.status}")

        job.status = BatchJobStatus.CANCELLED.value
        job.completed_at = self._clock.now()
        job.error_summary = f"Cancelled: {reason}"
        job.updated_by_id = actor_id
        self._session.flush()

        logger.info("batch_job_cancelled", extra={"job_id": str(job_id), "reason": reason})
        return job.to_dto()

    def get_job(self, job_id: UUID) -> BatchJob:
        job = self._session.get(BatchJobModel, job_id)
        if job is None:
            raise BatchJobNotFoundError(str(job_id))
        return job.to_dto()

    def get_job_items(self, job_id: UUID) -> tuple[BatchItemResult, ...]:
        rows = self._session.execute(
            select(BatchItemModel)
            .where(BatchItemModel.job_id == job_id)
            .order_by(BatchItemModel.item_index)
        ).scalars()
        return tuple(row.to_dto() for row in rows)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _lock_job(self, job_id: UUID) -> BatchJobModel:
        job = self._session.execute(
            select(BatchJobModel).where(BatchJobModel.id == job_id).with_for_update()
        ).scalar_one_or_none()
        if job is None:
            raise BatchJobNotFoundError(str(job_id))
        return job

    def _run_item(
        self,
        task: BatchTask,
        item: BatchItemInput,
        parameters: dict[str, Any],
        as_of: datetime,
    ) -> BatchItemResult:
        started = time.monotonic()
        started_at = self._clock.now()
        savepoint = self._session.begin_nested()
        try:
            outcome = task.execute_item(
                item=item, parameters=parameters, session=self._session, as_of=as_of,
            )
        except Exception as exc:
            savepoint.rollback()
            logger.warning(
                "batch_item_exception",
                extra={"item_key": item.item_key, "error": str(exc)},
                exc_info=True,
            )
            status = BatchItemStatus.FAILED
            error_code = getattr(exc, "code", "UNHANDLED_EXCEPTION")
            error_message = str(exc)
            result_data = None
        else:
            savepoint.commit()
            status = outcome.status
            error_code = outcome.error_code
            error_message = outcome.error_message
            result_data = outcome.result_data
            if status == BatchItemStatus.FAILED:
                logger.warning(
                    "batch_item_failed",
                    extra={"item_key": item.item_key, "error_code": error_code, "error_message": error_message},
                )

        return BatchItemResult(
            item_index=item.item_index,
            item_key=item.item_key,
            status=status,
            error_code=error_code,
            error_message=error_message,
            result_data=result_data,
            duration_ms=_elapsed_ms(started),
            started_at=started_at,
            completed_at=self._clock.now(),
        )

    def _finish_failed(self, job: BatchJobModel, summary: str, started: float) -> BatchRunResult:
        job.status = BatchJobStatus.FAILED.value
        job.completed_at = self._clock.now()
        job.error_summary = summary
        self._session.flush()
        return BatchRunResult(
            job_id=job.id,
            status=BatchJobStatus.FAILED,
            total_items=0,
            succeeded=0,
            failed=0,
            skipped=0,
            started_at=job.started_at,
            completed_at=job.completed_at,
            duration_ms=_elapsed_ms(started),
            correlation_id=job.correlation_id,
            error_summary=summary,
        )
