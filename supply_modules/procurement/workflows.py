"""
Procurement Workflows.

State machines for purchase request, purchase order and receipt processing.
Orchestrators check every status change against these definitions with
``require_transition``.
"""

from supply_kernel.domain.workflow import Guard, Transition, Workflow
from supply_kernel.logging_config import get_logger

logger = get_logger("modules.procurement.workflows")


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

BUDGET_CONTROL_PASSED = Guard(
    name="budget_control_passed",
    description="No line is BLOCKED by item-level budget control",
)

BUDGET_RESERVED = Guard(
    name="budget_reserved",
    description="The ledger confirmed a reservation for the PR total",
)

RESERVATION_RELEASED = Guard(
    name="reservation_released",
    description="The ledger confirmed release of the PR reservation",
)

APPROVER_AUTHORIZED = Guard(
    name="approver_authorized",
    description="Approver holds the approve permission for the document",
)

APPROVAL_DOCUMENT_ATTACHED = Guard(
    name="approval_document_attached",
    description="High-value POs carry an approval document",
)

BUDGET_COMMITTED = Guard(
    name="budget_committed",
    description="The ledger converted the PR reservation into a PO commitment",
)

NO_RECEIPTS = Guard(
    name="no_receipts",
    description="No receipt references the PO",
)

ALL_LINES_RECEIVED = Guard(
    name="all_lines_received",
    description="All PO lines fully received",
)

POSTING_VALIDATED = Guard(
    name="posting_validated",
    description="Enough inspectors and no line exceeds the PO remaining quantity",
)

logger.info(
    "procurement_workflow_guards_defined",
    extra={
        "guards": [
            BUDGET_CONTROL_PASSED.name,
            BUDGET_RESERVED.name,
            RESERVATION_RELEASED.name,
            APPROVER_AUTHORIZED.name,
            APPROVAL_DOCUMENT_ATTACHED.name,
            BUDGET_COMMITTED.name,
            NO_RECEIPTS.name,
            ALL_LINES_RECEIVED.name,
            POSTING_VALIDATED.name,
        ],
    },
)


# -----------------------------------------------------------------------------
# Purchase Request Workflow
# -----------------------------------------------------------------------------

PURCHASE_REQUEST_WORKFLOW = Workflow(
    name="purchase_request",
    description="Purchase request lifecycle",
    initial_state="DRAFT",
    states=(
        "DRAFT",
        "SUBMITTED",
        "APPROVED",
        "REJECTED",
        "CONVERTED",
    ),
    transitions=(
        Transition("DRAFT", "SUBMITTED", action="submit", guard=BUDGET_RESERVED, touches_ledger=True),
        Transition("SUBMITTED", "APPROVED", action="approve", guard=APPROVER_AUTHORIZED),
        Transition("SUBMITTED", "REJECTED", action="reject", guard=RESERVATION_RELEASED, touches_ledger=True),
        Transition("APPROVED", "CONVERTED", action="convert_to_po"),
    ),
    terminal_states=("REJECTED", "CONVERTED"),
)

logger.info(
    "procurement_pr_workflow_registered",
    extra={
        "workflow_name": PURCHASE_REQUEST_WORKFLOW.name,
        "state_count": len(PURCHASE_REQUEST_WORKFLOW.states),
        "transition_count": len(PURCHASE_REQUEST_WORKFLOW.transitions),
        "initial_state": PURCHASE_REQUEST_WORKFLOW.initial_state,
    },
)


# -----------------------------------------------------------------------------
# Purchase Order Workflow
# -----------------------------------------------------------------------------

PURCHASE_ORDER_WORKFLOW = Workflow(
    name="purchase_order",
    description="Purchase order lifecycle",
    initial_state="DRAFT",
    states=(
        "DRAFT",
        "PENDING",
        "APPROVED",
        "SENT",
        "PARTIAL",
        "COMPLETED",
        "CANCELLED",
    ),
    transitions=(
        Transition("DRAFT", "PENDING", action="submit"),
        Transition("PENDING", "APPROVED", action="approve", guard=APPROVAL_DOCUMENT_ATTACHED),
        Transition("APPROVED", "SENT", action="send", guard=BUDGET_COMMITTED, touches_ledger=True),
        Transition("SENT", "PARTIAL", action="receive_partial"),
        Transition("SENT", "COMPLETED", action="receive_complete", guard=ALL_LINES_RECEIVED),
        Transition("PARTIAL", "PARTIAL", action="receive_partial"),
        Transition("PARTIAL", "COMPLETED", action="receive_complete", guard=ALL_LINES_RECEIVED),
        Transition("DRAFT", "CANCELLED", action="cancel", guard=NO_RECEIPTS, touches_ledger=True),
        Transition("PENDING", "CANCELLED", action="cancel", guard=NO_RECEIPTS, touches_ledger=True),
        Transition("APPROVED", "CANCELLED", action="cancel", guard=NO_RECEIPTS, touches_ledger=True),
        Transition("SENT", "CANCELLED", action="cancel", guard=NO_RECEIPTS, touches_ledger=True),
    ),
    terminal_states=("COMPLETED", "CANCELLED"),
)

logger.info(
    "procurement_po_workflow_registered",
    extra={
        "workflow_name": PURCHASE_ORDER_WORKFLOW.name,
        "state_count": len(PURCHASE_ORDER_WORKFLOW.states),
        "transition_count": len(PURCHASE_ORDER_WORKFLOW.transitions),
        "initial_state": PURCHASE_ORDER_WORKFLOW.initial_state,
    },
)


# -----------------------------------------------------------------------------
# Receipt Workflow
# -----------------------------------------------------------------------------

RECEIPT_WORKFLOW = Workflow(
    name="receipt",
    description="Goods receipt inspection and posting",
    initial_state="DRAFT",
    states=(
        "DRAFT",
        "INSPECTING",
        "ACCEPTED",
        "POSTED",
        "REJECTED",
    ),
    transitions=(
        Transition("DRAFT", "INSPECTING", action="start_inspection"),
        Transition("INSPECTING", "ACCEPTED", action="accept"),
        Transition("ACCEPTED", "POSTED", action="post", guard=POSTING_VALIDATED),
        Transition("DRAFT", "REJECTED", action="reject"),
        Transition("INSPECTING", "REJECTED", action="reject"),
        Transition("ACCEPTED", "REJECTED", action="reject"),
    ),
    terminal_states=("POSTED", "REJECTED"),
)

logger.info(
    "procurement_receipt_workflow_registered",
    extra={
        "workflow_name": RECEIPT_WORKFLOW.name,
        "state_count": len(RECEIPT_WORKFLOW.states),
        "transition_count": len(RECEIPT_WORKFLOW.transitions),
        "initial_state": RECEIPT_WORKFLOW.initial_state,
    },
)
