"""
Purchasing Domain Models.

The nouns of invoice costing: purchase invoices, their line items and
indirect costs, freight links, per-lot landed cost allocations and the
outcome types returned by the service.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from costing_kernel.logging_config import get_logger
from costing_kernel.services.lot_cost_lock_service import LotLockFailure

logger = get_logger("modules.purchasing.models")


class InvoiceType(Enum):
    """What an invoice bills for."""
    MATERIAL = "material"
    FREIGHT = "freight"


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class FinalizationStatus(Enum):
    """Close readiness.  CLOSED is terminal."""
    INCOMPLETE = "incomplete"
    READY_TO_CLOSE = "ready_to_close"
    CLOSED = "closed"


class InvoiceState(Enum):
    """Workflow state derived from approval/finalization status and submitted_at."""
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    CLOSED = "closed"


class PaymentStatus(Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class CostType(Enum):
    """Additional cost categories accepted on a material invoice."""
    FREIGHT = "freight"
    SHIPPING = "shipping"
    DUTY = "duty"
    TAX = "tax"
    CUSTOMS = "customs"
    INSURANCE = "insurance"
    HANDLING = "handling"
    BROKERAGE = "brokerage"
    STORAGE = "storage"
    INSPECTION = "inspection"
    OTHER = "other"


class AttestationItem(Enum):
    """Checklist items that are operator assertions."""
    FREIGHT_COMPLETE = "freight_complete"
    FINANCIALS_COMPLETE = "financials_complete"


@dataclass(frozen=True)
class InvoiceLineItem:
    """A material line billed against a purchase order line."""
    id: UUID
    invoice_id: UUID
    po_line_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    line_total: Decimal
    receiving_item_id: UUID | None = None
    description: str | None = None
    voided_at: datetime | None = None
    voided_by_id: UUID | None = None

    @property
    def is_voided(self) -> bool:
        return self.voided_at is not None


@dataclass(frozen=True)
class AdditionalCost:
    """An indirect cost entered directly on a material invoice."""
    id: UUID
    invoice_id: UUID
    cost_type: str
    amount: Decimal
    description: str | None = None


@dataclass(frozen=True)
class FreightLink:
    """A freight invoice attributed (wholly or partly) to a material invoice."""
    id: UUID
    material_invoice_id: UUID
    freight_invoice_id: UUID
    allocation_amount: Decimal | None = None
    freight_invoice_number: str | None = None
    freight_invoice_total: Decimal = Decimal("0")

    @property
    def effective_amount(self) -> Decimal:
        if self.allocation_amount is not None:
            return self.allocation_amount
        return self.freight_invoice_total


@dataclass(frozen=True)
class PurchaseInvoice:
    """A supplier invoice (material or freight)."""
    id: UUID
    invoice_type: InvoiceType
    supplier_id: UUID
    invoice_number: str
    invoice_date: date
    purchase_order_id: UUID | None = None
    due_date: date | None = None
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    freight_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    finalization_status: FinalizationStatus = FinalizationStatus.INCOMPLETE
    state: InvoiceState = InvoiceState.DRAFT
    receiving_complete: bool = False
    freight_complete: bool | None = None
    financials_complete: bool = False
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    approved_by_id: UUID | None = None
    closed_at: datetime | None = None
    closed_by_id: UUID | None = None
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    amount_paid: Decimal = Decimal("0")
    payment_date: date | None = None
    payment_reference: str | None = None
    notes: str | None = None
    line_items: tuple[InvoiceLineItem, ...] = field(default_factory=tuple)
    additional_costs: tuple[AdditionalCost, ...] = field(default_factory=tuple)
    freight_links: tuple[FreightLink, ...] = field(default_factory=tuple)

    @property
    def is_closed(self) -> bool:
        return self.finalization_status is FinalizationStatus.CLOSED

    @property
    def active_line_items(self) -> tuple[InvoiceLineItem, ...]:
        return tuple(li for li in self.line_items if not li.is_voided)


@dataclass(frozen=True)
class LandedCostAllocation:
    """Persisted landed cost for one (invoice, receiving lot) pair."""
    id: UUID
    invoice_id: UUID
    receiving_lot_id: UUID
    quantity_in_base_unit: Decimal
    usage_quantity: Decimal
    material_cost: Decimal
    freight_allocated: Decimal
    duty_allocated: Decimal
    other_costs_allocated: Decimal
    total_landed_cost: Decimal
    cost_per_base_unit: Decimal | None = None


@dataclass(frozen=True)
class ChecklistAttestation:
    """Who asserted a checklist item, with what value, and when."""
    id: UUID
    invoice_id: UUID
    item: AttestationItem
    value: bool
    attested_by_id: UUID
    attested_at: datetime
    note: str | None = None


@dataclass(frozen=True)
class LineItemRequest:
    """Caller input for a new invoice line item."""
    po_line_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    receiving_item_id: UUID | None = None
    description: str | None = None


@dataclass(frozen=True)
class InvoiceableLine:
    """A PO line with quantity left to invoice."""
    po_line_id: UUID
    purchase_order_id: UUID
    line_number: int
    material_id: UUID
    description: str | None
    quantity_received: Decimal
    quantity_invoiced: Decimal
    remaining_quantity: Decimal
    unit_cost: Decimal
    lot_ids: tuple[UUID, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AvailableFreightInvoice:
    """A freight invoice with amount left to attribute."""
    invoice_id: UUID
    invoice_number: str
    supplier_id: UUID
    total_amount: Decimal
    linked_amount: Decimal

    @property
    def available_amount(self) -> Decimal:
        return self.total_amount - self.linked_amount


@dataclass(frozen=True)
class AllocationRun:
    """Result of recomputing an invoice's landed cost allocation."""
    invoice_id: UUID
    allocations: tuple[LandedCostAllocation, ...]
    total_allocated: Decimal
    unallocated: Decimal
    unresolved_line_ids: tuple[UUID, ...] = field(default_factory=tuple)
    removed_lot_ids: tuple[UUID, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class CloseOutcome:
    """
    Two-phase result of closing an invoice.

    The invoice is closed whenever a CloseOutcome is returned; lots that
    could not be locked are listed in ``lock_failures`` instead of rolling
    the close back.
    """
    invoice_id: UUID
    closed_at: datetime | None
    closed_by_id: UUID | None
    locked_lot_ids: tuple[UUID, ...] = field(default_factory=tuple)
    lock_failures: tuple[LotLockFailure, ...] = field(default_factory=tuple)
    already_closed: bool = False
    allocation: AllocationRun | None = None

    @property
    def fully_locked(self) -> bool:
        return not self.lock_failures


@dataclass(frozen=True)
class PurchasingAuditEntry:
    """One row of the purchasing audit trail."""
    id: UUID
    invoice_id: UUID
    action: str
    actor_id: UUID
    occurred_at: datetime
    from_state: str | None = None
    to_state: str | None = None
    lot_id: UUID | None = None
    detail: dict | None = None


@dataclass(frozen=True)
class InvoiceCostSummary:
    """Display view of an invoice's costs and what has been allocated."""
    invoice_id: UUID
    total_material_cost: Decimal
    tax_amount: Decimal
    freight_amount: Decimal
    additional_costs_total: Decimal
    linked_freight_total: Decimal
    freight_pool: Decimal
    duty_pool: Decimal
    other_pool: Decimal
    total_costs_to_allocate: Decimal
    grand_total: Decimal
    allocated_indirect_total: Decimal
    allocated_landed_total: Decimal
    additional_by_type: dict[str, Decimal] = field(default_factory=dict)

    @property
    def unallocated(self) -> Decimal:
        return self.total_costs_to_allocate - self.allocated_indirect_total
