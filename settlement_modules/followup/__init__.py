"""
settlement_modules.followup
===========================

Responsibility:
    Payment reminder campaigns.  ``FollowUpScheduler`` decides what the
    next reminder of an invoice is; ``FollowUpDispatcher`` sends due
    reminders through an injected ``MessagingService``.

Invariants enforced:
    - At most one active follow-up per invoice (partial unique index).
    - A follow-up is dispatched at most once per scheduled occurrence.
    - Nothing is sent for an invoice that is paid or cancelled at send time.
"""

from settlement_modules.followup.config import FollowUpRules
from settlement_modules.followup.models import (
    ACTIVE_STATUSES,
    DISPATCHABLE_STATUSES,
    DispatchOutcome,
    DispatchReport,
    DispatchResult,
    FollowUp,
    FollowUpKind,
    FollowUpStatus,
)

__all__ = [
    "ACTIVE_STATUSES",
    "DISPATCHABLE_STATUSES",
    "DispatchOutcome",
    "DispatchReport",
    "DispatchResult",
    "FollowUp",
    "FollowUpKind",
    "FollowUpStatus",
    "FollowUpRules",
]
