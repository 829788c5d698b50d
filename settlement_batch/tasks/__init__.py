"""
settlement_batch.tasks -- Task protocol, registry, and settlement passes.

``base.py`` only depends on the batch domain types.  ``followup_tasks.py``
wires the invoicing and follow-up modules into batch tasks.
"""

from settlement_batch.tasks.base import (
    BatchItemInput,
    BatchTask,
    BatchTaskResult,
    TaskRegistry,
)

__all__ = [
    "BatchItemInput",
    "BatchTask",
    "BatchTaskResult",
    "TaskRegistry",
]
