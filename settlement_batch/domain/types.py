"""
Batch job value objects.

A settlement pass is recorded as a job with one result per item.  These
are the shapes the executor hands back to the orchestrator and the CLI;
the ORM rows in ``settlement_batch.models`` convert to and from them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class BatchJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    # Items could not be prepared, or none of them went through
    FAILED = "failed"
    CANCELLED = "cancelled"


class BatchItemStatus(str, Enum):
    SUCCEEDED = "succeeded"
    # Nothing to do: the item was already in the target state
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchJob:
    """A submitted pass run, e.g. ``followups.dispatch`` for one night."""

    job_id: UUID
    job_name: str
    task_type: str
    status: BatchJobStatus
    idempotency_key: str
    parameters: dict[str, Any] = field(default_factory=dict)
    total_items: int = 0
    succeeded_items: int = 0
    failed_items: int = 0
    skipped_items: int = 0
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_by: UUID | None = None
    correlation_id: str | None = None
    error_summary: str | None = None


@dataclass(frozen=True)
class BatchItemResult:
    """How one invoice or follow-up fared within a job.

    ``item_key`` is the business id the pass worked on, so failures can be
    traced back to the invoice without reading ``result_data``.
    """

    item_index: int
    item_key: str
    status: BatchItemStatus
    error_code: str | None = None
    error_message: str | None = None
    result_data: dict[str, Any] | None = None
    duration_ms: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class BatchRunResult:
    """Outcome of ``BatchExecutor.execute_job``."""

    job_id: UUID
    status: BatchJobStatus
    total_items: int
    succeeded: int
    failed: int
    skipped: int
    item_results: tuple[BatchItemResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    correlation_id: str | None = None
    error_summary: str | None = None
