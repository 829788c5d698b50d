"""
What a settlement pass has to provide to run under the batch executor.

A task splits its work into items with ``prepare_items`` and handles one
item per ``execute_item`` call.  The executor wraps each call in a
savepoint and records the outcome; tasks never commit or roll back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy.orm import Session

from settlement_batch.domain.types import BatchItemStatus
from settlement_kernel.exceptions import TaskNotRegisteredError


@dataclass(frozen=True)
class BatchItemInput:
    """Input for a single batch item."""

    item_index: int
    item_key: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchTaskResult:
    """What ``execute_item`` reports back.

    A FAILED result is still committed with its savepoint, so a task can
    record a transport failure and report it in the same call.
    """

    status: BatchItemStatus
    result_data: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None


@runtime_checkable
class BatchTask(Protocol):
    @property
    def task_type(self) -> str: ...

    @property
    def description(self) -> str: ...

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        """Items to handle in this run, in processing order."""
        ...

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult: ...


class TaskRegistry:
    """Tasks keyed by ``task_type``."""

    def __init__(self) -> None:
        self._by_type: dict[str, BatchTask] = {}

    def register(self, task: BatchTask) -> None:
        """Raises ValueError when ``task.task_type`` is taken."""
        if task.task_type in self._by_type:
            raise ValueError(f"Task type '{task.task_type}' is already registered")
        self._by_type[task.task_type] = task

    def get(self, task_type: str) -> BatchTask:
        task = self._by_type.get(task_type)
        if task is None:
            raise TaskNotRegisteredError(task_type, self.list_tasks())
        return task

    def list_tasks(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_type))

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._by_type

    def __len__(self) -> int:
        return len(self._by_type)
