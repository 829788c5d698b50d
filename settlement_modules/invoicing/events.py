"""Append entries to the invoice event log."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from settlement_modules.invoicing.models import InvoiceEventType
from settlement_modules.invoicing.orm import InvoiceEventModel


def _json_safe(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def record_invoice_event(
    session: Session,
    *,
    invoice_id: UUID,
    event_type: InvoiceEventType,
    occurred_at: datetime,
    actor_id: UUID,
    **payload: Any,
) -> InvoiceEventModel:
    """Add an event row to the session (flushed with the caller's work)."""
    event = InvoiceEventModel(
        invoice_id=invoice_id,
        event_type=event_type.value,
        occurred_at=occurred_at,
        payload=_json_safe(payload),
        created_by_id=actor_id,
    )
    session.add(event)
    return event
