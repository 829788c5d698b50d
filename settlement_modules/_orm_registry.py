"""
Module ORM Registry (``settlement_modules._orm_registry``).

Ensure every SQLAlchemy ORM model is imported so that ``Base.metadata``
contains all table definitions before ``create_all()`` runs.  Scripts,
the batch CLI and ``tests/conftest.py`` all go through this function.
"""


def import_all_orm_models() -> None:
    """Import every ORM module.  Idempotent."""
    import settlement_modules.invoicing.orm  # noqa: F401
    import settlement_modules.followup.orm  # noqa: F401
    import settlement_batch.models.batch  # noqa: F401
