"""
Purchasing Workflows.

State machine for purchase invoice approval and finalization:

    draft -> pending_approval -> approved -> closed
                     |              |
                     v              v
                  rejected <--------+
                     |
                     +--> draft (revise)

The workflow state is not stored; it is derived from approval_status,
finalization_status and submitted_at (see ``derive_state``).
"""

from dataclasses import dataclass

from costing_kernel.exceptions import InvalidInvoiceTransitionError
from costing_kernel.logging_config import get_logger
from costing_modules.purchasing.models import InvoiceState

logger = get_logger("modules.purchasing.workflows")


@dataclass(frozen=True)
class Guard:
    """A condition for a transition."""
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition."""
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    runs_allocation: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition."""
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]

    def transition_for(self, from_state: str, action: str) -> Transition | None:
        for transition in self.transitions:
            if transition.from_state == from_state and transition.action == action:
                return transition
        return None

    def actions_from(self, from_state: str) -> tuple[str, ...]:
        return tuple(t.action for t in self.transitions if t.from_state == from_state)


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

HAS_LINE_ITEMS = Guard(
    name="has_line_items",
    description="Invoice has at least one non-voided line item",
)

CHECKLIST_COMPLETE = Guard(
    name="checklist_complete",
    description="Receiving linked, freight complete, financials complete, approved",
)


# -----------------------------------------------------------------------------
# Invoice Workflow
# -----------------------------------------------------------------------------

INVOICE_WORKFLOW = Workflow(
    name="purchase_invoice",
    description="Purchase invoice approval and cost finalization",
    initial_state=InvoiceState.DRAFT.value,
    states=tuple(s.value for s in InvoiceState),
    transitions=(
        Transition("draft", "pending_approval", action="submit", guard=HAS_LINE_ITEMS),
        Transition("pending_approval", "approved", action="approve", runs_allocation=True),
        Transition("pending_approval", "rejected", action="reject"),
        Transition("approved", "rejected", action="reject"),
        Transition("rejected", "draft", action="revise"),
        Transition(
            "approved", "closed", action="close",
            guard=CHECKLIST_COMPLETE, runs_allocation=True,
        ),
    ),
)

logger.info(
    "purchasing_invoice_workflow_registered",
    extra={
        "workflow_name": INVOICE_WORKFLOW.name,
        "state_count": len(INVOICE_WORKFLOW.states),
        "transition_count": len(INVOICE_WORKFLOW.transitions),
        "initial_state": INVOICE_WORKFLOW.initial_state,
    },
)


def derive_state(invoice) -> InvoiceState:
    """Workflow state of an invoice row (or anything with the same fields)."""
    if invoice.finalization_status == "closed":
        return InvoiceState.CLOSED
    if invoice.approval_status == "rejected":
        return InvoiceState.REJECTED
    if invoice.approval_status == "approved":
        return InvoiceState.APPROVED
    if invoice.submitted_at is not None:
        return InvoiceState.PENDING_APPROVAL
    return InvoiceState.DRAFT


def require_transition(invoice, action: str) -> Transition:
    """
    Look up the transition for ``action`` from the invoice's current state.

    Raises:
        InvalidInvoiceTransitionError: no such transition.
    """
    state = derive_state(invoice).value
    transition = INVOICE_WORKFLOW.transition_for(state, action)
    if transition is None:
        logger.warning("invoice_transition_rejected", extra={
            "invoice_id": str(invoice.id),
            "from_state": state,
            "action": action,
            "allowed_actions": list(INVOICE_WORKFLOW.actions_from(state)),
        })
        raise InvalidInvoiceTransitionError(
            invoice_id=str(invoice.id),
            from_state=state,
            action=action,
        )
    return transition
