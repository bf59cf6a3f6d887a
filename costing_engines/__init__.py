"""
Module: costing_engines
Responsibility:
    Package entrypoint re-exporting the pure landed cost engines.  The
    canonical import surface for costing_modules.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May import costing_kernel (types, exceptions, logging) only.
    MUST NOT import costing_modules.

Invariants enforced:
    - Purity: engines never read the clock or the database.
    - Decimal-only arithmetic.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from costing_engines import LandedCostEngine, CostAggregator
"""

from costing_engines.allocation import (
    AllocationEngine,
    AllocationLine,
    AllocationResult,
    AllocationTarget,
)
from costing_engines.cost_aggregation import (
    AdditionalCharge,
    CostAggregator,
    CostPools,
    CostSummary,
    InvoiceCostInputs,
    LinkedFreight,
)
from costing_engines.finalization import (
    CHECKLIST_CONDITIONS,
    ChecklistInputs,
    ChecklistResult,
    FinalizationChecklist,
)
from costing_engines.invoice_ledger import (
    InvoiceLedger,
    LedgerEntry,
    LinePosition,
    RequestedLine,
)
from costing_engines.landed_cost import (
    LandedCostEngine,
    LandedCostResult,
    LineItemInput,
    LotAllocation,
)

__all__ = [
    "AllocationEngine",
    "AllocationLine",
    "AllocationResult",
    "AllocationTarget",
    "AdditionalCharge",
    "CostAggregator",
    "CostPools",
    "CostSummary",
    "InvoiceCostInputs",
    "LinkedFreight",
    "CHECKLIST_CONDITIONS",
    "ChecklistInputs",
    "ChecklistResult",
    "FinalizationChecklist",
    "InvoiceLedger",
    "LedgerEntry",
    "LinePosition",
    "RequestedLine",
    "LandedCostEngine",
    "LandedCostResult",
    "LineItemInput",
    "LotAllocation",
]
