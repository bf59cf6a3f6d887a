"""
Module: costing_engines.cost_aggregation
Responsibility:
    Sum the indirect costs of a material invoice into the pools the
    allocation engine distributes: freight, duty and other.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The purchasing service
    builds ``InvoiceCostInputs`` from ORM rows and calls ``aggregate``.

Invariants enforced:
    - freight + duty + other == total_costs_to_allocate, where
      total_costs_to_allocate = tax_amount + freight_amount
      + sum(additional costs) + sum(linked freight).
    - Recomputed from source inputs on every call; nothing is cached.

Routing:
    freight pool = freight_amount + linked freight + freight-type costs
    duty pool    = tax_amount + duty-type costs
    other pool   = every remaining additional cost
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from costing_engines.tracer import traced_engine
from costing_kernel.db.types import ZERO
from costing_kernel.logging_config import get_logger

logger = get_logger("engines.cost_aggregation")

DEFAULT_FREIGHT_COST_TYPES = frozenset({"freight", "shipping"})
DEFAULT_DUTY_COST_TYPES = frozenset({"duty", "tax", "customs"})


def normalize_cost_type(cost_type: str) -> str:
    return (cost_type or "other").strip().lower()


@dataclass(frozen=True)
class AdditionalCharge:
    """An operator-entered additional cost line."""

    cost_type: str
    amount: Decimal
    description: str | None = None


@dataclass(frozen=True)
class LinkedFreight:
    """
    A freight invoice linked to the material invoice.

    ``allocation_amount`` absent means the whole freight invoice total is
    attributed to this material invoice.
    """

    freight_invoice_id: UUID | str
    freight_invoice_total: Decimal
    allocation_amount: Decimal | None = None

    @property
    def amount(self) -> Decimal:
        if self.allocation_amount is not None:
            return self.allocation_amount
        return self.freight_invoice_total


@dataclass(frozen=True)
class InvoiceCostInputs:
    """Snapshot of everything that feeds the cost pools of one invoice."""

    material_line_totals: tuple[Decimal, ...] = ()
    tax_amount: Decimal = ZERO
    freight_amount: Decimal = ZERO
    additional_costs: tuple[AdditionalCharge, ...] = ()
    linked_freight: tuple[LinkedFreight, ...] = ()


@dataclass(frozen=True)
class CostPools:
    """The three buckets split independently across lots."""

    freight: Decimal = ZERO
    duty: Decimal = ZERO
    other: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.freight + self.duty + self.other

    @property
    def is_empty(self) -> bool:
        return self.total == ZERO

    def as_dict(self) -> dict[str, Decimal]:
        return {"freight": self.freight, "duty": self.duty, "other": self.other}


@dataclass(frozen=True)
class CostSummary:
    """
    Display and allocation view of an invoice's costs.

    ``grand_total`` is material plus every indirect cost: the amount the
    allocations should add up to.
    """

    total_material_cost: Decimal
    tax_amount: Decimal
    freight_amount: Decimal
    additional_costs_total: Decimal
    linked_freight_total: Decimal
    pools: CostPools
    additional_by_type: dict[str, Decimal] = field(default_factory=dict)

    @property
    def total_costs_to_allocate(self) -> Decimal:
        return self.pools.total

    @property
    def grand_total(self) -> Decimal:
        return self.total_material_cost + self.pools.total


class CostAggregator:
    """Route invoice costs into freight, duty and other pools."""

    def __init__(
        self,
        freight_cost_types: Iterable[str] = DEFAULT_FREIGHT_COST_TYPES,
        duty_cost_types: Iterable[str] = DEFAULT_DUTY_COST_TYPES,
    ):
        self.freight_cost_types = frozenset(normalize_cost_type(t) for t in freight_cost_types)
        self.duty_cost_types = frozenset(normalize_cost_type(t) for t in duty_cost_types)
        overlap = self.freight_cost_types & self.duty_cost_types
        if overlap:
            raise ValueError(f"Cost types routed to both freight and duty: {sorted(overlap)}")

    def bucket_for(self, cost_type: str) -> str:
        normalized = normalize_cost_type(cost_type)
        if normalized in self.freight_cost_types:
            return "freight"
        if normalized in self.duty_cost_types:
            return "duty"
        return "other"

    @traced_engine("cost_aggregation", "1.0", fingerprint_fields=("inputs",))
    def aggregate(self, inputs: InvoiceCostInputs) -> CostSummary:
        pools = {"freight": ZERO, "duty": ZERO, "other": ZERO}
        by_type: dict[str, Decimal] = {}

        for charge in inputs.additional_costs:
            pools[self.bucket_for(charge.cost_type)] += charge.amount
            key = normalize_cost_type(charge.cost_type)
            by_type[key] = by_type.get(key, ZERO) + charge.amount

        linked_total = sum((link.amount for link in inputs.linked_freight), ZERO)
        pools["freight"] += inputs.freight_amount + linked_total
        pools["duty"] += inputs.tax_amount

        summary = CostSummary(
            total_material_cost=sum(inputs.material_line_totals, ZERO),
            tax_amount=inputs.tax_amount,
            freight_amount=inputs.freight_amount,
            additional_costs_total=sum((c.amount for c in inputs.additional_costs), ZERO),
            linked_freight_total=linked_total,
            pools=CostPools(**pools),
            additional_by_type=by_type,
        )

        logger.debug("cost_pools_aggregated", extra={
            "freight_pool": str(summary.pools.freight),
            "duty_pool": str(summary.pools.duty),
            "other_pool": str(summary.pools.other),
            "linked_freight_count": len(inputs.linked_freight),
        })
        return summary
