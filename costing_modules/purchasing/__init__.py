"""
Purchasing Module (``costing_modules.purchasing``).

Responsibility
--------------
Purchase invoice costing: material and freight invoices billed against
purchase order lines, indirect costs, landed cost allocation onto
receiving lots, the finalization checklist and the close that freezes
lot costs.

Architecture position
---------------------
**Modules layer** -- DTOs, ORM models, workflow, config schema and the
``PurchasingService`` facade.  Pure calculation lives in
``costing_engines``; lot cost locking in ``costing_kernel.services``.

Failure modes
-------------
* Typed ``costing_kernel.exceptions`` errors for every rejected operation;
  the service rolls back before re-raising.
* Lot lock failures during close are reported in ``CloseOutcome``.
"""

from costing_modules.purchasing.config import PurchasingConfig
from costing_modules.purchasing.models import (
    AdditionalCost,
    AllocationRun,
    ApprovalStatus,
    AttestationItem,
    AvailableFreightInvoice,
    ChecklistAttestation,
    CloseOutcome,
    CostType,
    FinalizationStatus,
    FreightLink,
    InvoiceableLine,
    InvoiceCostSummary,
    InvoiceLineItem,
    InvoiceState,
    InvoiceType,
    LandedCostAllocation,
    LineItemRequest,
    PaymentStatus,
    PurchaseInvoice,
    PurchasingAuditEntry,
)
from costing_modules.purchasing.service import PurchasingService
from costing_modules.purchasing.workflows import INVOICE_WORKFLOW

__all__ = [
    "PurchasingConfig",
    "PurchasingService",
    "INVOICE_WORKFLOW",
    "AdditionalCost",
    "AllocationRun",
    "ApprovalStatus",
    "AttestationItem",
    "AvailableFreightInvoice",
    "ChecklistAttestation",
    "CloseOutcome",
    "CostType",
    "FinalizationStatus",
    "FreightLink",
    "InvoiceableLine",
    "InvoiceCostSummary",
    "InvoiceLineItem",
    "InvoiceState",
    "InvoiceType",
    "LandedCostAllocation",
    "LineItemRequest",
    "PaymentStatus",
    "PurchaseInvoice",
    "PurchasingAuditEntry",
]
