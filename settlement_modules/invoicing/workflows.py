"""
Invoicing Workflows.

State machine for invoice payment status.  ``unpaid``/``overdue`` are the
open states; ``paid`` and ``cancelled`` end collections but can be left
again through explicit reactivation.
"""

from settlement_kernel.domain.workflow import Guard, Transition, Workflow
from settlement_kernel.logging_config import get_logger
from settlement_modules.invoicing.models import InvoiceStatus

logger = get_logger("modules.invoicing.workflows")

UNPAID = InvoiceStatus.UNPAID.value
OVERDUE = InvoiceStatus.OVERDUE.value
PAID = InvoiceStatus.PAID.value
CANCELLED = InvoiceStatus.CANCELLED.value


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

DUE_DATE_PASSED = Guard(
    name="due_date_passed",
    description="Invoice due date is before today",
)

DUE_DATE_NOT_PASSED = Guard(
    name="due_date_not_passed",
    description="Invoice due date is today or later",
)


# -----------------------------------------------------------------------------
# Invoice Status Workflow
# -----------------------------------------------------------------------------

INVOICE_STATUS_WORKFLOW = Workflow(
    name="invoice_status",
    description="Invoice payment status lifecycle",
    initial_state=UNPAID,
    states=(UNPAID, OVERDUE, PAID, CANCELLED),
    transitions=(
        Transition(UNPAID, OVERDUE, action="mark_overdue", guard=DUE_DATE_PASSED),
        Transition(OVERDUE, UNPAID, action="mark_current", guard=DUE_DATE_NOT_PASSED),
        Transition(UNPAID, PAID, action="mark_paid"),
        Transition(OVERDUE, PAID, action="mark_paid"),
        Transition(UNPAID, CANCELLED, action="cancel"),
        Transition(OVERDUE, CANCELLED, action="cancel"),
        Transition(PAID, CANCELLED, action="cancel"),
        Transition(PAID, UNPAID, action="reactivate", guard=DUE_DATE_NOT_PASSED),
        Transition(PAID, OVERDUE, action="reactivate", guard=DUE_DATE_PASSED),
        Transition(CANCELLED, UNPAID, action="reactivate", guard=DUE_DATE_NOT_PASSED),
        Transition(CANCELLED, OVERDUE, action="reactivate", guard=DUE_DATE_PASSED),
    ),
)

# Credit notes are never chased: they can only be voided.
CREDIT_NOTE_WORKFLOW = Workflow(
    name="credit_note_status",
    description="Credit note lifecycle",
    initial_state=UNPAID,
    states=(UNPAID, OVERDUE, PAID, CANCELLED),
    transitions=(
        Transition(UNPAID, CANCELLED, action="cancel"),
        Transition(OVERDUE, CANCELLED, action="cancel"),
        Transition(PAID, CANCELLED, action="cancel"),
    ),
)

logger.debug(
    "invoice_workflows_registered",
    extra={
        "workflows": [INVOICE_STATUS_WORKFLOW.name, CREDIT_NOTE_WORKFLOW.name],
        "transition_count": len(INVOICE_STATUS_WORKFLOW.transitions),
    },
)
