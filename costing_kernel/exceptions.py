"""
Typed exception hierarchy for the costing kernel.

Every error raised by the landed cost core is a ``CostingKernelError``
subclass carrying:

  1. a class-level ``code`` (machine-readable, API-safe);
  2. structured attributes naming the violated rule (which PO line, which
     checklist item, which lot) so callers never parse messages.

    CostingKernelError (base)
    |
    +-- LedgerError
    |   +-- OverInvoiceError
    |   +-- InvalidLineItemError
    |   +-- LotAlreadyClaimedError
    |
    +-- NotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- LineItemNotFoundError
    |   +-- PurchaseOrderLineNotFoundError
    |   +-- ReceivingLotNotFoundError
    |   +-- AdditionalCostNotFoundError
    |   +-- FreightLinkNotFoundError
    |
    +-- InvoiceError
    |   +-- InvoiceClosedError
    |   +-- InvoiceTypeError
    |   +-- DuplicateInvoiceNumberError
    |   +-- InvalidInvoiceTransitionError
    |   +-- DuplicateFreightLinkError
    |   +-- FreightOverAllocationError
    |
    +-- AllocationError
    |   +-- DivisionGuardError      (internal, resolved by zero-allocation policy)
    |
    +-- FinalizationError
    |   +-- ChecklistIncompleteError
    |
    +-- LockError
    |   +-- LotCostLockedError
    |
    +-- ImmutabilityViolationError

Handling pattern::

    try:
        service.close_invoice(invoice_id, actor_id)
    except ChecklistIncompleteError as e:
        return {"error": e.code, "failed": list(e.failed_conditions)}
"""

from collections.abc import Iterable
from decimal import Decimal


class CostingKernelError(Exception):
    """Base exception for all costing kernel errors."""

    code: str = "COSTING_KERNEL_ERROR"


# Ledger


class LedgerError(CostingKernelError):
    """Base exception for invoice line ledger violations."""

    code: str = "LEDGER_ERROR"


class OverInvoiceError(LedgerError):
    """Requested invoice quantity exceeds what is still invoiceable on a PO line."""

    code: str = "OVER_INVOICE"

    def __init__(self, po_line_id: str, requested: Decimal, remaining: Decimal):
        self.po_line_id = str(po_line_id)
        self.requested = str(requested)
        self.remaining = str(remaining)
        super().__init__(
            f"Cannot invoice {requested} on PO line {po_line_id}: "
            f"only {remaining} received and not yet invoiced"
        )


class InvalidLineItemError(LedgerError):
    """Line item input is malformed (non-positive quantity, foreign lot...)."""

    code: str = "INVALID_LINE_ITEM"

    def __init__(self, reason: str, line_item_id: str | None = None):
        self.reason = reason
        self.line_item_id = str(line_item_id) if line_item_id else None
        super().__init__(f"Invalid line item: {reason}")


class LotAlreadyClaimedError(LedgerError):
    """A receiving lot is already referenced by another invoice's line items."""

    code: str = "LOT_ALREADY_CLAIMED"

    def __init__(self, lot_id: str, claiming_invoice_id: str):
        self.lot_id = str(lot_id)
        self.claiming_invoice_id = str(claiming_invoice_id)
        super().__init__(
            f"Receiving lot {lot_id} is already invoiced on invoice {claiming_invoice_id}"
        )


# Lookups


class NotFoundError(CostingKernelError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = str(invoice_id)
        super().__init__(f"Invoice not found: {invoice_id}")


class LineItemNotFoundError(NotFoundError):
    code: str = "LINE_ITEM_NOT_FOUND"

    def __init__(self, line_item_id: str):
        self.line_item_id = str(line_item_id)
        super().__init__(f"Invoice line item not found: {line_item_id}")


class PurchaseOrderLineNotFoundError(NotFoundError):
    code: str = "PO_LINE_NOT_FOUND"

    def __init__(self, po_line_id: str):
        self.po_line_id = str(po_line_id)
        super().__init__(f"Purchase order line not found: {po_line_id}")


class ReceivingLotNotFoundError(NotFoundError):
    code: str = "RECEIVING_LOT_NOT_FOUND"

    def __init__(self, lot_id: str):
        self.lot_id = str(lot_id)
        super().__init__(f"Receiving lot not found: {lot_id}")


class AdditionalCostNotFoundError(NotFoundError):
    code: str = "ADDITIONAL_COST_NOT_FOUND"

    def __init__(self, cost_id: str):
        self.cost_id = str(cost_id)
        super().__init__(f"Additional cost not found: {cost_id}")


class FreightLinkNotFoundError(NotFoundError):
    code: str = "FREIGHT_LINK_NOT_FOUND"

    def __init__(self, material_invoice_id: str, freight_invoice_id: str):
        self.material_invoice_id = str(material_invoice_id)
        self.freight_invoice_id = str(freight_invoice_id)
        super().__init__(
            f"Freight invoice {freight_invoice_id} is not linked to {material_invoice_id}"
        )


# Invoice lifecycle


class InvoiceError(CostingKernelError):
    """Base exception for invoice state and shape errors."""

    code: str = "INVOICE_ERROR"


class InvoiceClosedError(InvoiceError):
    """
    Mutation attempted on a closed invoice.

    Closed invoices are read-only for every cost-bearing field; the whole
    operation is rejected, nothing is partially applied.
    """

    code: str = "INVOICE_CLOSED"

    def __init__(self, invoice_id: str, operation: str):
        self.invoice_id = str(invoice_id)
        self.operation = operation
        super().__init__(
            f"Invoice {invoice_id} is closed; '{operation}' is not permitted"
        )


class InvoiceTypeError(InvoiceError):
    """Operation requires a different invoice type (material vs freight)."""

    code: str = "INVOICE_TYPE_MISMATCH"

    def __init__(self, invoice_id: str, expected: str, actual: str):
        self.invoice_id = str(invoice_id)
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Invoice {invoice_id} is a {actual} invoice; expected {expected}"
        )


class DuplicateInvoiceNumberError(InvoiceError):
    code: str = "DUPLICATE_INVOICE_NUMBER"

    def __init__(self, supplier_id: str, invoice_number: str):
        self.supplier_id = str(supplier_id)
        self.invoice_number = invoice_number
        super().__init__(
            f"Invoice number {invoice_number!r} already exists for supplier {supplier_id}"
        )


class InvalidInvoiceTransitionError(InvoiceError):
    """Workflow action not allowed from the invoice's current state."""

    code: str = "INVALID_INVOICE_TRANSITION"

    def __init__(self, invoice_id: str, from_state: str, action: str, reason: str = ""):
        self.invoice_id = str(invoice_id)
        self.from_state = from_state
        self.action = action
        self.reason = reason
        msg = f"Cannot {action} invoice {invoice_id} from state {from_state}"
        super().__init__(f"{msg}: {reason}" if reason else msg)


class DuplicateFreightLinkError(InvoiceError):
    code: str = "DUPLICATE_FREIGHT_LINK"

    def __init__(self, material_invoice_id: str, freight_invoice_id: str):
        self.material_invoice_id = str(material_invoice_id)
        self.freight_invoice_id = str(freight_invoice_id)
        super().__init__(
            f"Freight invoice {freight_invoice_id} is already linked to "
            f"material invoice {material_invoice_id}"
        )


class FreightOverAllocationError(InvoiceError):
    """Links would attribute more than a freight invoice's total."""

    code: str = "FREIGHT_OVER_ALLOCATION"

    def __init__(self, freight_invoice_id: str, requested: Decimal, available: Decimal):
        self.freight_invoice_id = str(freight_invoice_id)
        self.requested = str(requested)
        self.available = str(available)
        super().__init__(
            f"Freight invoice {freight_invoice_id}: cannot attribute {requested}, "
            f"only {available} left unlinked"
        )


# Allocation


class AllocationError(CostingKernelError):
    code: str = "ALLOCATION_ERROR"


class DivisionGuardError(AllocationError):
    """
    Total allocation weight is zero.

    Internal only: the landed cost engine resolves it by allocating zero
    indirect cost and never lets it reach a caller.
    """

    code: str = "ZERO_ALLOCATION_WEIGHT"

    def __init__(self, amount: Decimal, target_count: int):
        self.amount = str(amount)
        self.target_count = target_count
        super().__init__(
            f"Cannot split {amount} across {target_count} target(s) with zero total weight"
        )


# Finalization


class FinalizationError(CostingKernelError):
    code: str = "FINALIZATION_ERROR"


class ChecklistIncompleteError(FinalizationError):
    """Close attempted while one or more checklist conditions are unmet."""

    code: str = "CHECKLIST_INCOMPLETE"

    def __init__(self, invoice_id: str, failed_conditions: Iterable[str]):
        self.invoice_id = str(invoice_id)
        self.failed_conditions = tuple(failed_conditions)
        super().__init__(
            f"Invoice {invoice_id} cannot be closed; unmet: "
            f"{', '.join(self.failed_conditions)}"
        )


# Locks


class LockError(CostingKernelError):
    code: str = "LOCK_ERROR"


class LotCostLockedError(LockError):
    """Cost fields of a finalized receiving lot cannot change."""

    code: str = "LOT_COST_LOCKED"

    def __init__(self, lot_id: str, invoice_id: str | None = None):
        self.lot_id = str(lot_id)
        self.invoice_id = str(invoice_id) if invoice_id else None
        via = f" (via invoice {invoice_id})" if invoice_id else ""
        super().__init__(f"Receiving lot {lot_id} cost is finalized{via}")


class ImmutabilityViolationError(CostingKernelError):
    """Update or delete attempted on an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")
