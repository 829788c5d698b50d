"""
Collaborator contracts for the follow-up dispatcher.

Document rendering/storage and message transport live outside the engine.
The dispatcher only depends on these Protocols; any object with matching
methods can be injected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol, Sequence, runtime_checkable

from settlement_engines.calculator import LineItem, MonetaryBreakdown
from settlement_modules.invoicing.models import Invoice


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


@dataclass(frozen=True)
class SendResult:
    """Outcome reported by a messaging transport."""
    success: bool
    message_id: str | None = None
    error: str | None = None


@runtime_checkable
class DocumentService(Protocol):
    """Renders, stores and fetches invoice documents (PDF)."""

    def render_document(
        self,
        invoice: Invoice,
        line_items: Sequence[LineItem],
        breakdown: MonetaryBreakdown,
    ) -> bytes:
        """Render the invoice document.  May raise on failure."""
        ...

    def store_document(self, content: bytes) -> str:
        """Persist content and return an opaque handle."""
        ...

    def fetch_stored_document(self, handle: str) -> bytes | None:
        """Return stored content, or None if the handle no longer resolves."""
        ...


@runtime_checkable
class MessagingService(Protocol):
    """Sends templated messages.

    Implementations either return ``SendResult(success=False, ...)`` or
    raise ``TransportFailureError``; the dispatcher treats both the same.
    """

    def send(
        self,
        *,
        template: str,
        variables: Mapping[str, str],
        recipient: str,
        attachments: Sequence[Attachment] = (),
        language: str = "fr",
        metadata: Mapping[str, str] | None = None,
    ) -> SendResult:
        ...
