"""
Module: costing_engines.landed_cost
Responsibility:
    Compute per-lot landed cost rows for one material invoice: resolve line
    items to receiving lots, convert quantities to base and usage units,
    split each cost pool by usage quantity and derive the cost per base unit.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  A pure function of an
    invoice snapshot: the same inputs always give the same rows, so a
    recompute replaces the previous rows rather than patching them.

Algorithm:
    1. quantity_in_base_unit = quantity * pack_to_base_conversion
       usage_quantity = quantity_in_base_unit * (usage_unit_conversion or 1)
    2. A line item resolves to its receiving_item_id, else to the only lot
       of its PO line.  Unresolved line items are excluded and reported.
    3. Line items on the same lot are summed into one row.
    4. Each pool (freight, duty, other) is split independently by usage
       quantity via AllocationEngine.
    5. total_landed_cost = material + freight + duty + other;
       cost_per_base_unit = total_landed_cost / quantity_in_base_unit,
       None when the base quantity is zero.

Invariants enforced:
    - Per pool: sum(allocated) == round_money(pool).
    - Zero total usage: every indirect field is zero and the pools are
      reported as unallocated; no division happens.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from costing_engines.allocation import AllocationEngine, AllocationTarget
from costing_engines.cost_aggregation import CostPools
from costing_engines.tracer import traced_engine
from costing_kernel.db.types import (
    CURRENCY_DECIMAL_PLACES,
    UNIT_COST_DECIMAL_PLACES,
    ZERO,
    quantize_unit_cost,
    round_money,
)
from costing_kernel.exceptions import DivisionGuardError
from costing_kernel.logging_config import get_logger

logger = get_logger("engines.landed_cost")

ONE = Decimal("1")

BUCKETS = ("freight", "duty", "other")


@dataclass(frozen=True)
class LineItemInput:
    """One non-voided invoice line item with its unit conversions."""

    line_item_id: UUID | str
    po_line_id: UUID | str
    quantity: Decimal
    unit_cost: Decimal
    pack_to_base_conversion: Decimal = ONE
    usage_unit_conversion: Decimal | None = None
    receiving_item_id: UUID | str | None = None
    po_line_lot_ids: tuple[UUID | str, ...] = ()

    @property
    def line_total(self) -> Decimal:
        return self.quantity * self.unit_cost

    @property
    def quantity_in_base_unit(self) -> Decimal:
        return self.quantity * self.pack_to_base_conversion

    @property
    def usage_quantity(self) -> Decimal:
        conversion = self.usage_unit_conversion
        if conversion is None or conversion <= ZERO:
            conversion = ONE
        return self.quantity_in_base_unit * conversion

    def resolve_lot(self) -> UUID | str | None:
        if self.receiving_item_id is not None:
            return self.receiving_item_id
        if len(self.po_line_lot_ids) == 1:
            return self.po_line_lot_ids[0]
        return None


@dataclass(frozen=True)
class LotAllocation:
    """Landed cost for one receiving lot on one invoice."""

    lot_id: UUID | str
    line_item_ids: tuple[UUID | str, ...]
    quantity_in_base_unit: Decimal
    usage_quantity: Decimal
    material_cost: Decimal
    freight_allocated: Decimal
    duty_allocated: Decimal
    other_costs_allocated: Decimal
    total_landed_cost: Decimal
    cost_per_base_unit: Decimal | None

    @property
    def indirect_allocated(self) -> Decimal:
        return self.freight_allocated + self.duty_allocated + self.other_costs_allocated


@dataclass(frozen=True)
class LandedCostResult:
    """
    Outcome of one allocation run.

    Guarantees:
        - For each pool: allocated + unallocated == round_money(pool).
        - ``allocations`` are ordered by first appearance of the lot among
          the line items.
    """

    invoice_id: UUID | str
    allocations: tuple[LotAllocation, ...]
    pools: CostPools
    unallocated: CostPools
    unresolved_line_ids: tuple[UUID | str, ...] = ()

    @property
    def total_allocated(self) -> Decimal:
        return sum((a.indirect_allocated for a in self.allocations), ZERO)

    @property
    def total_landed_cost(self) -> Decimal:
        return sum((a.total_landed_cost for a in self.allocations), ZERO)

    @property
    def is_fully_allocated(self) -> bool:
        return self.unallocated.is_empty

    def for_lot(self, lot_id: UUID | str) -> LotAllocation | None:
        for allocation in self.allocations:
            if allocation.lot_id == lot_id:
                return allocation
        return None


@dataclass
class _LotAccumulator:
    lot_id: UUID | str
    line_item_ids: list
    quantity_in_base_unit: Decimal = ZERO
    usage_quantity: Decimal = ZERO
    material_cost: Decimal = ZERO


class LandedCostEngine:
    """
    Distribute cost pools across receiving lots by usage quantity.

    Contract:
        Pure; no clock, no I/O.  Rounding of stored amounts to
        ``currency_decimal_places`` (ROUND_HALF_UP), unit cost quantized to
        ``unit_cost_decimal_places``.
    """

    def __init__(
        self,
        currency_decimal_places: int = CURRENCY_DECIMAL_PLACES,
        unit_cost_decimal_places: int = UNIT_COST_DECIMAL_PLACES,
    ):
        self.currency_decimal_places = currency_decimal_places
        self.unit_cost_decimal_places = unit_cost_decimal_places
        self._allocator = AllocationEngine(decimal_places=currency_decimal_places)

    @traced_engine(
        "landed_cost", "1.0", fingerprint_fields=("invoice_id", "line_items", "pools"),
    )
    def compute(
        self,
        *,
        invoice_id: UUID | str,
        line_items: Sequence[LineItemInput],
        pools: CostPools,
    ) -> LandedCostResult:
        lots, unresolved = self._group_by_lot(line_items)

        if unresolved:
            logger.warning("landed_cost_unresolved_lines", extra={
                "invoice_id": str(invoice_id),
                "unresolved_count": len(unresolved),
                "unresolved_line_ids": [str(i) for i in unresolved],
            })

        targets = [
            AllocationTarget(target_id=lot.lot_id, weight=lot.usage_quantity)
            for lot in lots
        ]

        split: dict[str, dict] = {}
        unallocated: dict[str, Decimal] = {}
        for bucket in BUCKETS:
            amount = round_money(getattr(pools, bucket), self.currency_decimal_places)
            split[bucket], unallocated[bucket] = self._split_bucket(
                invoice_id, bucket, amount, targets,
            )

        allocations = tuple(
            self._build_row(lot, split) for lot in lots
        )

        result = LandedCostResult(
            invoice_id=invoice_id,
            allocations=allocations,
            pools=pools,
            unallocated=CostPools(**unallocated),
            unresolved_line_ids=tuple(unresolved),
        )

        logger.info("landed_cost_computed", extra={
            "invoice_id": str(invoice_id),
            "lot_count": len(allocations),
            "pool_total": str(pools.total),
            "total_allocated": str(result.total_allocated),
            "unallocated_total": str(result.unallocated.total),
        })
        return result

    def _group_by_lot(self, line_items):
        lots: dict = {}
        unresolved = []
        for item in line_items:
            lot_id = item.resolve_lot()
            if lot_id is None:
                unresolved.append(item.line_item_id)
                continue
            acc = lots.get(lot_id)
            if acc is None:
                acc = lots[lot_id] = _LotAccumulator(lot_id=lot_id, line_item_ids=[])
            acc.line_item_ids.append(item.line_item_id)
            acc.quantity_in_base_unit += item.quantity_in_base_unit
            acc.usage_quantity += item.usage_quantity
            acc.material_cost += item.line_total
        return list(lots.values()), unresolved

    def _split_bucket(self, invoice_id, bucket, amount, targets):
        """Return ({lot_id: allocated}, unallocated) for one pool."""
        if amount == ZERO:
            return {}, ZERO
        try:
            result = self._allocator.allocate(amount=amount, targets=targets)
        except DivisionGuardError:
            logger.warning("landed_cost_zero_usage", extra={
                "invoice_id": str(invoice_id),
                "bucket": bucket,
                "pool_amount": str(amount),
                "lot_count": len(targets),
            })
            return {}, amount
        return {line.target_id: line.allocated for line in result.lines}, result.unallocated

    def _build_row(self, lot: _LotAccumulator, split) -> LotAllocation:
        freight = split["freight"].get(lot.lot_id, ZERO)
        duty = split["duty"].get(lot.lot_id, ZERO)
        other = split["other"].get(lot.lot_id, ZERO)
        material = round_money(lot.material_cost, self.currency_decimal_places)
        total = material + freight + duty + other

        if lot.quantity_in_base_unit == ZERO:
            cost_per_base_unit = None
        else:
            cost_per_base_unit = quantize_unit_cost(
                total / lot.quantity_in_base_unit, self.unit_cost_decimal_places,
            )

        return LotAllocation(
            lot_id=lot.lot_id,
            line_item_ids=tuple(lot.line_item_ids),
            quantity_in_base_unit=lot.quantity_in_base_unit,
            usage_quantity=lot.usage_quantity,
            material_cost=material,
            freight_allocated=freight,
            duty_allocated=duty,
            other_costs_allocated=other,
            total_landed_cost=total,
            cost_per_base_unit=cost_per_base_unit,
        )
