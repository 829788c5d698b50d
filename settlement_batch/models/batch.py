"""
Batch job persistence.

One ``batch_jobs`` row per pass run, one ``batch_items`` row per item the
pass touched.  The item rows are the audit trail of a cron run: which
invoice or follow-up was handled, how, and why it failed.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from settlement_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchJob,
    BatchJobStatus,
)
from settlement_kernel.db.base import TrackedBase


class BatchJobModel(TrackedBase):
    """One run of a settlement pass."""

    __tablename__ = "batch_jobs"

    __table_args__ = (
        Index("idx_batch_jobs_task_status", "task_type", "status"),
    )

    job_name: Mapped[str] = mapped_column(String(200))
    task_type: Mapped[str] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(30))
    # Unique so a re-submitted key cannot run the same pass twice
    idempotency_key: Mapped[str] = mapped_column(String(200), unique=True)
    parameters: Mapped[dict | None] = mapped_column(JSON)
    total_items: Mapped[int] = mapped_column(default=0)
    succeeded_items: Mapped[int] = mapped_column(default=0)
    failed_items: Mapped[int] = mapped_column(default=0)
    skipped_items: Mapped[int] = mapped_column(default=0)
    started_at: Mapped[datetime | None]
    completed_at: Mapped[datetime | None]
    correlation_id: Mapped[str | None] = mapped_column(String(100))
    error_summary: Mapped[str | None] = mapped_column(Text)

    @classmethod
    def from_job(cls, job: BatchJob, actor_id: UUID) -> BatchJobModel:
        return cls(
            id=job.job_id,
            job_name=job.job_name,
            task_type=job.task_type,
            status=job.status.value,
            idempotency_key=job.idempotency_key,
            parameters=job.parameters or None,
            correlation_id=job.correlation_id,
            created_at=job.created_at,
            created_by_id=actor_id,
        )

    def to_dto(self) -> BatchJob:
        return BatchJob(
            job_id=self.id,
            job_name=self.job_name,
            task_type=self.task_type,
            status=BatchJobStatus(self.status),
            idempotency_key=self.idempotency_key,
            parameters=self.parameters or {},
            total_items=self.total_items,
            succeeded_items=self.succeeded_items,
            failed_items=self.failed_items,
            skipped_items=self.skipped_items,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            created_by=self.created_by_id,
            correlation_id=self.correlation_id,
            error_summary=self.error_summary,
        )

    def __repr__(self) -> str:
        return f"<BatchJobModel {self.task_type} {self.status} items={self.total_items}>"


class BatchItemModel(TrackedBase):
    """Outcome of one item of a batch job."""

    __tablename__ = "batch_items"

    __table_args__ = (
        Index("idx_batch_items_job", "job_id", "item_index"),
        Index("idx_batch_items_key", "item_key"),
    )

    job_id: Mapped[UUID] = mapped_column(ForeignKey("batch_jobs.id", ondelete="CASCADE"))
    item_index: Mapped[int]
    # invoice_id, follow_up_id, or a marker such as "activate_pending"
    item_key: Mapped[str] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(30))
    error_code: Mapped[str | None] = mapped_column(String(100))
    error_message: Mapped[str | None] = mapped_column(Text)
    result_data: Mapped[dict | None] = mapped_column(JSON)
    duration_ms: Mapped[int] = mapped_column(default=0)
    started_at: Mapped[datetime | None]
    completed_at: Mapped[datetime | None]

    @classmethod
    def from_result(cls, result: BatchItemResult, job_id: UUID, actor_id: UUID) -> BatchItemModel:
        return cls(
            job_id=job_id,
            item_index=result.item_index,
            item_key=result.item_key,
            status=result.status.value,
            error_code=result.error_code,
            error_message=result.error_message,
            result_data=result.result_data,
            duration_ms=result.duration_ms,
            started_at=result.started_at,
            completed_at=result.completed_at,
            created_at=result.completed_at,
            created_by_id=actor_id,
        )

    def to_dto(self) -> BatchItemResult:
        return BatchItemResult(
            item_index=self.item_index,
            item_key=self.item_key,
            status=BatchItemStatus(self.status),
            error_code=self.error_code,
            error_message=self.error_message,
            result_data=self.result_data,
            duration_ms=self.duration_ms,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )
