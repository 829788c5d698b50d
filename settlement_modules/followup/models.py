"""
Follow-up Domain Models (``settlement_modules.followup.models``).

Responsibility
--------------
Frozen value objects for follow-up (reminder) campaigns and dispatch
reports.

Invariants enforced
-------------------
* At most one follow-up per invoice is in an ACTIVE status.
* Terminal rows are never deleted; only the scheduler moves a ``sent``
  row on to its next step.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from settlement_modules.followup.config import APPROACHING_DEADLINE, OVERDUE


class FollowUpStatus(str, Enum):
    """Follow-up lifecycle states."""
    PENDING = "pending"  # Created before the reminder window opens
    SCHEDULED = "scheduled"  # Armed; dispatched once scheduled_at passes
    READY_FOR_DISPATCH = "ready_for_dispatch"  # Claimed by a dispatch pass
    SENT = "sent"
    FAILED = "failed"
    STOPPED = "stopped"  # Invoice paid / cancelled
    COMPLETED = "completed"  # Every stage sent

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES: frozenset[FollowUpStatus] = frozenset({
    FollowUpStatus.PENDING,
    FollowUpStatus.SCHEDULED,
    FollowUpStatus.READY_FOR_DISPATCH,
})

DISPATCHABLE_STATUSES: frozenset[FollowUpStatus] = frozenset({
    FollowUpStatus.SCHEDULED,
    FollowUpStatus.READY_FOR_DISPATCH,
})


class FollowUpKind(str, Enum):
    APPROACHING_DEADLINE = APPROACHING_DEADLINE
    OVERDUE = OVERDUE


@dataclass(frozen=True)
class FollowUp:
    """Snapshot of one follow-up row."""
    id: UUID
    invoice_id: UUID
    sequence: int
    stage: int
    kind: FollowUpKind
    status: FollowUpStatus
    scheduled_at: datetime
    attempts: int = 0
    max_attempts: int = 1
    template_type: str | None = None
    sent_at: datetime | None = None
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    stopped_reason: str | None = None


class DispatchResult(str, Enum):
    SENT = "sent"
    FAILED = "failed"  # Transport failure or unreachable client; recorded on the row
    SKIPPED = "skipped"  # Already processed, or invoice paid/cancelled meanwhile
    ERROR = "error"  # Unexpected exception; item rolled back


@dataclass(frozen=True)
class DispatchOutcome:
    """Per-follow-up result of a dispatch pass."""
    follow_up_id: UUID | None  # None for manual sends
    invoice_id: UUID | None
    result: DispatchResult
    stage: int | None = None
    kind: FollowUpKind | None = None
    template: str | None = None
    reason: str | None = None
    has_attachment: bool = False


@dataclass(frozen=True)
class DispatchReport:
    """Result of one ``dispatch_due`` pass."""
    started_at: datetime
    completed_at: datetime
    outcomes: tuple[DispatchOutcome, ...] = ()

    def _count(self, result: DispatchResult) -> int:
        return sum(1 for o in self.outcomes if o.result == result)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def sent(self) -> int:
        return self._count(DispatchResult.SENT)

    @property
    def failed(self) -> int:
        return self._count(DispatchResult.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(DispatchResult.SKIPPED)

    @property
    def errors(self) -> int:
        return self._count(DispatchResult.ERROR)


@dataclass(frozen=True)
class FollowUpStatistics:
    """Follow-up row counts across every invoice.

    ``by_status`` and ``by_kind`` list every enum value, ``by_stage`` every
    configured stage, so absent combinations read as 0.
    """
    total: int
    by_status: dict[str, int]
    by_stage: dict[int, int]
    by_kind: dict[str, int]
