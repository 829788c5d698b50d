"""ORM models for batch job persistence."""

from settlement_batch.models.batch import BatchItemModel, BatchJobModel

__all__ = ["BatchItemModel", "BatchJobModel"]
