"""
Wiring for the settlement passes.

``BatchOrchestrator`` owns the task registry and hands every task the same
clock and actor.  A pass is submitted and executed as one batch job; the
caller commits.

Passes always run in ``PASS_ORDER``: due statuses are refreshed first so
reconciliation and scheduling see today's overdue invoices, and dispatch
goes last so it sends what scheduling just made due.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy.orm import Session

from settlement_batch.domain.types import BatchRunResult
from settlement_batch.services.executor import BatchExecutor
from settlement_batch.tasks.base import TaskRegistry
from settlement_batch.tasks.followup_tasks import (
    DueStatusRefreshTask,
    FinalizedFollowUpReconcileTask,
    FollowUpDispatchTask,
    FollowUpSchedulingTask,
    MessagingFactory,
)
from settlement_kernel.domain.actors import SYSTEM_ACTOR_ID
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.logging_config import get_logger
from settlement_modules.followup.ports import DocumentService

if TYPE_CHECKING:
    from settlement_config.schema import SettlementConfig

logger = get_logger("batch.orchestrator")

PASSES: dict[str, str] = {
    "refresh": "invoices.refresh_due_status",
    "reconcile": "followups.reconcile_finalized",
    "schedule": "followups.schedule",
    "dispatch": "followups.dispatch",
}

PASS_ORDER: tuple[str, ...] = ("refresh", "reconcile", "schedule", "dispatch")


def build_registry(
    clock: Clock,
    actor_id: UUID,
    config: SettlementConfig | None = None,
    messaging_factory: MessagingFactory | None = None,
    documents: DocumentService | None = None,
) -> TaskRegistry:
    """Registry holding the four settlement tasks.

    Without a config the tasks fall back to the module defaults.
    """
    rules = config.follow_up if config else None
    invoicing = config.invoicing if config else None

    registry = TaskRegistry()
    for task in (
        DueStatusRefreshTask(clock=clock, actor_id=actor_id),
        FinalizedFollowUpReconcileTask(clock=clock, actor_id=actor_id),
        FollowUpSchedulingTask(rules=rules, clock=clock, actor_id=actor_id),
        FollowUpDispatchTask(
            rules=rules,
            invoicing=invoicing,
            clock=clock,
            messaging_factory=messaging_factory,
            documents=documents,
            actor_id=actor_id,
        ),
    ):
        registry.register(task)
    return registry


class BatchOrchestrator:
    def __init__(
        self,
        session: Session,
        task_registry: TaskRegistry,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or SYSTEM_ACTOR_ID
        self._executor = BatchExecutor(session, task_registry, clock=self._clock)
        self.task_registry = task_registry

    @classmethod
    def from_session(
        cls,
        session: Session,
        config: SettlementConfig | None = None,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
        messaging_factory: MessagingFactory | None = None,
        documents: DocumentService | None = None,
    ) -> BatchOrchestrator:
        """Orchestrator with the default registry.

        ``messaging_factory`` builds the transport for a session; the
        email outbox is used when it is None.
        """
        clock = clock or SystemClock()
        actor_id = actor_id or SYSTEM_ACTOR_ID
        registry = build_registry(
            clock,
            actor_id,
            config=config,
            messaging_factory=messaging_factory,
            documents=documents,
        )
        return cls(session, registry, clock=clock, actor_id=actor_id)

    def run_pass(self, name: str, correlation_id: str | None = None) -> BatchRunResult:
        """Submit and execute the pass called ``name``.

        Raises:
            ValueError: If ``name`` is not in ``PASSES``.
        """
        if name not in PASSES:
            raise ValueError(f"Unknown pass '{name}'; expected one of {', '.join(PASS_ORDER)}")

        job = self._executor.submit_job(
            job_name=f"settlement.{name}",
            task_type=PASSES[name],
            actor_id=self._actor_id,
            correlation_id=correlation_id,
        )
        result = self._executor.execute_job(job.job_id, actor_id=self._actor_id)
        logger.info(
            "batch_pass_finished",
            extra={"pass_name": name, "job_id": str(job.job_id), "status": result.status.value},
        )
        return result

    def run_all(self, correlation_id: str | None = None) -> dict[str, BatchRunResult]:
        return {name: self.run_pass(name, correlation_id) for name in PASS_ORDER}
