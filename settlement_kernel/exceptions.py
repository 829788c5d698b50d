"""
Typed Exception Hierarchy for the Settlement Engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Settlement errors are financial: a wrong VAT base, a duplicate reminder or
a reminder sent for a paid invoice.  Callers must be able to react to each
failure precisely, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        breakdown = calculator.compute(line_items=items, config=config)
    except InvalidConfigError as e:
        api_response(code=e.code, field=e.field, value=e.value)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    SettlementKernelError (base)
    |
    +-- InvalidConfigError
    |
    +-- DocumentError
    |   +-- DocumentUnavailableError
    |
    +-- MessagingError
    |   +-- TransportFailureError
    |
    +-- InvoiceError
    |   +-- InvoiceNotFoundError
    |   +-- QuoteNotFoundError
    |   +-- ClientNotFoundError
    |   +-- InvalidStatusTransitionError
    |   +-- InvalidCreditNoteError
    |   +-- OverCreditError
    |
    +-- FollowUpError
    |   +-- FollowUpNotFoundError
    |   +-- ConcurrentStatusChangeError
    |   +-- FollowUpNotAllowedError
    |
    +-- BatchError
        +-- TaskNotRegisteredError
        +-- BatchJobNotFoundError
        +-- BatchAlreadyRunningError
        +-- BatchIdempotencyError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category   | Code                       | When Raised
-----------|----------------------------|------------------------------------------
Config     | INVALID_CONFIG             | Negative / non-finite rate or deposit
-----------|----------------------------|------------------------------------------
Document   | DOCUMENT_UNAVAILABLE       | PDF could not be fetched or regenerated
           |                            | (non-fatal: reminder sent without it)
-----------|----------------------------|------------------------------------------
Messaging  | TRANSPORT_FAILURE          | Email transport rejected the message
-----------|----------------------------|------------------------------------------
Invoice    | INVOICE_NOT_FOUND          | Invoice ID doesn't exist
           | QUOTE_NOT_FOUND            | Quote ID doesn't exist
           | CLIENT_NOT_FOUND           | Client ID doesn't exist
           | INVALID_STATUS_TRANSITION  | Transition not in the status workflow
           | INVALID_CREDIT_NOTE        | Credit note against a credit note, etc.
           | OVER_CREDIT                | Credit note exceeds outstanding balance
-----------|----------------------------|------------------------------------------
Follow-up  | FOLLOW_UP_NOT_FOUND        | Follow-up ID doesn't exist
           | CONCURRENT_STATUS_CHANGE   | Invoice paid/cancelled under a dispatch
           |                            | (treated as a skip, never a failure)
           | FOLLOW_UP_NOT_ALLOWED      | Manual reminder for a paid/cancelled invoice
-----------|----------------------------|------------------------------------------
Batch      | TASK_NOT_REGISTERED        | Unknown batch task type
           | BATCH_JOB_NOT_FOUND        | Batch job ID doesn't exist
           | BATCH_ALREADY_RUNNING      | Job is not PENDING
           | BATCH_IDEMPOTENCY_CONFLICT | Idempotency key reused

===============================================================================
"""

from typing import Any


class SettlementKernelError(Exception):
    """
    Base exception for all settlement engine errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "SETTLEMENT_ERROR"


# Configuration


class InvalidConfigError(SettlementKernelError):
    """Financial configuration rejected before computation."""

    code: str = "INVALID_CONFIG"

    def __init__(self, field: str, value: Any, reason: str):
        self.field = field
        self.value = str(value)
        self.reason = reason
        super().__init__(f"Invalid {field}={value!s}: {reason}")


# Documents


class DocumentError(SettlementKernelError):
    """Base exception for document service errors."""

    code: str = "DOCUMENT_ERROR"


class DocumentUnavailableError(DocumentError):
    """Invoice document could not be fetched or regenerated."""

    code: str = "DOCUMENT_UNAVAILABLE"

    def __init__(self, invoice_id: str, reason: str):
        self.invoice_id = invoice_id
        self.reason = reason
        super().__init__(f"Document unavailable for invoice {invoice_id}: {reason}")


# Messaging


class MessagingError(SettlementKernelError):
    """Base exception for messaging errors."""

    code: str = "MESSAGING_ERROR"


class TransportFailureError(MessagingError):
    """The messaging transport failed to deliver a message."""

    code: str = "TRANSPORT_FAILURE"

    def __init__(self, recipient: str, reason: str):
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"Transport failure sending to {recipient}: {reason}")


# Invoices


class InvoiceError(SettlementKernelError):
    """Base exception for invoice errors."""

    code: str = "INVOICE_ERROR"


class InvoiceNotFoundError(InvoiceError):
    """Invoice with given ID was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class QuoteNotFoundError(InvoiceError):
    """Quote with given ID was not found."""

    code: str = "QUOTE_NOT_FOUND"

    def __init__(self, quote_id: str):
        self.quote_id = quote_id
        super().__init__(f"Quote not found: {quote_id}")


class ClientNotFoundError(InvoiceError):
    """Client with given ID was not found."""

    code: str = "CLIENT_NOT_FOUND"

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Client not found: {client_id}")


class InvalidStatusTransitionError(InvoiceError):
    """Requested status change is not part of the invoice workflow."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, invoice_id: str, from_status: str, to_status: str):
        self.invoice_id = invoice_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invoice {invoice_id} cannot move from {from_status} to {to_status}"
        )


class InvalidCreditNoteError(InvoiceError):
    """Credit note cannot be issued against the given document."""

    code: str = "INVALID_CREDIT_NOTE"

    def __init__(self, invoice_id: str, reason: str):
        self.invoice_id = invoice_id
        self.reason = reason
        super().__init__(f"Cannot credit invoice {invoice_id}: {reason}")


class OverCreditError(InvoiceError):
    """Credit note would drive the outstanding balance below zero."""

    code: str = "OVER_CREDIT"

    def __init__(self, invoice_id: str, balance: str, credit_amount: str):
        self.invoice_id = invoice_id
        self.balance = balance
        self.credit_amount = credit_amount
        super().__init__(
            f"Credit of {credit_amount} exceeds outstanding balance "
            f"{balance} on invoice {invoice_id}"
        )


# Follow-ups


class FollowUpError(SettlementKernelError):
    """Base exception for follow-up errors."""

    code: str = "FOLLOW_UP_ERROR"


class FollowUpNotFoundError(FollowUpError):
    """Follow-up with given ID was not found."""

    code: str = "FOLLOW_UP_NOT_FOUND"

    def __init__(self, follow_up_id: str):
        self.follow_up_id = follow_up_id
        super().__init__(f"Follow-up not found: {follow_up_id}")


class ConcurrentStatusChangeError(FollowUpError):
    """Invoice left the chaseable states while a follow-up was in flight."""

    code: str = "CONCURRENT_STATUS_CHANGE"

    def __init__(self, invoice_id: str, status: str):
        self.invoice_id = invoice_id
        self.status = status
        super().__init__(f"Invoice {invoice_id} is now {status}")


class FollowUpNotAllowedError(FollowUpError):
    """Reminder requested for an invoice that is not open."""

    code: str = "FOLLOW_UP_NOT_ALLOWED"

    def __init__(self, invoice_id: str, status: str):
        self.invoice_id = invoice_id
        self.status = status
        super().__init__(f"Cannot send a reminder for invoice {invoice_id} in status {status}")


# Batch


class BatchError(SettlementKernelError):
    """Base exception for batch processing errors."""

    code: str = "BATCH_ERROR"


class TaskNotRegisteredError(BatchError):
    """No batch task is registered for the requested task type."""

    code: str = "TASK_NOT_REGISTERED"

    def __init__(self, task_type: str, available: tuple[str, ...]):
        self.task_type = task_type
        self.available = available
        super().__init__(
            f"No task registered for '{task_type}'. Available: {list(available)}"
        )


class BatchJobNotFoundError(BatchError):
    """Batch job with given ID was not found."""

    code: str = "BATCH_JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Batch job not found: {job_id}")


class BatchAlreadyRunningError(BatchError):
    """Batch job is not in a state that allows execution."""

    code: str = "BATCH_ALREADY_RUNNING"

    def __init__(self, job_name: str, job_id: str):
        self.job_name = job_name
        self.job_id = job_id
        super().__init__(f"Batch job '{job_name}' ({job_id}) is not pending")


class BatchIdempotencyError(BatchError):
    """A batch job with this idempotency key already exists."""

    code: str = "BATCH_IDEMPOTENCY_CONFLICT"

    def __init__(self, idempotency_key: str, existing_job_id: str):
        self.idempotency_key = idempotency_key
        self.existing_job_id = existing_job_id
        super().__init__(
            f"Idempotency key '{idempotency_key}' already used by job {existing_job_id}"
        )
