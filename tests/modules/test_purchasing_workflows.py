"""
Tests for the purchase invoice workflow definition.

The state is derived from stored fields, so these tests use a plain
namespace in place of an invoice row.
"""

from datetime import datetime, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest

from costing_kernel.exceptions import InvalidInvoiceTransitionError
from costing_modules.purchasing.models import InvoiceState
from costing_modules.purchasing.workflows import (
    CHECKLIST_COMPLETE,
    HAS_LINE_ITEMS,
    INVOICE_WORKFLOW,
    derive_state,
    require_transition,
)

SUBMITTED = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _invoice(approval="pending", finalization="incomplete", submitted_at=None):
    return SimpleNamespace(
        id=uuid4(),
        approval_status=approval,
        finalization_status=finalization,
        submitted_at=submitted_at,
    )


class TestDeriveState:
    @pytest.mark.parametrize("fields,expected", [
        ({}, InvoiceState.DRAFT),
        ({"submitted_at": SUBMITTED}, InvoiceState.PENDING_APPROVAL),
        ({"approval": "approved", "submitted_at": SUBMITTED}, InvoiceState.APPROVED),
        ({"approval": "rejected", "submitted_at": SUBMITTED}, InvoiceState.REJECTED),
        ({"approval": "approved", "finalization": "closed"}, InvoiceState.CLOSED),
        ({"approval": "approved", "finalization": "ready_to_close"}, InvoiceState.APPROVED),
    ])
    def test_states(self, fields, expected):
        assert derive_state(_invoice(**fields)) is expected


class TestWorkflowDefinition:
    def test_initial_state(self):
        assert INVOICE_WORKFLOW.initial_state == "draft"
        assert set(INVOICE_WORKFLOW.states) == {s.value for s in InvoiceState}

    def test_guards(self):
        assert INVOICE_WORKFLOW.transition_for("draft", "submit").guard is HAS_LINE_ITEMS
        assert INVOICE_WORKFLOW.transition_for("approved", "close").guard is CHECKLIST_COMPLETE

    def test_allocation_runs_on_approve_and_close(self):
        running = {t.action for t in INVOICE_WORKFLOW.transitions if t.runs_allocation}
        assert running == {"approve", "close"}

    def test_closed_is_terminal(self):
        assert INVOICE_WORKFLOW.actions_from("closed") == ()

    def test_rejected_can_only_revise(self):
        assert INVOICE_WORKFLOW.actions_from("rejected") == ("revise",)


class TestRequireTransition:
    def test_valid_transition(self):
        transition = require_transition(_invoice(submitted_at=SUBMITTED), "approve")
        assert transition.to_state == "approved"

    @pytest.mark.parametrize("fields,action", [
        ({}, "approve"),
        ({}, "close"),
        ({"submitted_at": SUBMITTED}, "close"),
        ({"approval": "approved", "finalization": "closed"}, "reject"),
    ])
    def test_invalid_transition(self, fields, action):
        invoice = _invoice(**fields)
        with pytest.raises(InvalidInvoiceTransitionError) as exc_info:
            require_transition(invoice, action)
        assert exc_info.value.action == action
        assert exc_info.value.invoice_id == str(invoice.id)
