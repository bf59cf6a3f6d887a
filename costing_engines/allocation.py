"""
Module: costing_engines.allocation
Responsibility:
    Split a monetary amount across weighted targets with deterministic
    rounding.  The landed cost engine runs one split per cost bucket
    (freight, duty, other) with usage quantities as the weights.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Conservation: sum(allocated) == round_money(amount) exactly.
    - Rounding: every share is computed at full precision, each allocated
      amount is rounded ROUND_HALF_UP to ``decimal_places``, and the residual
      goes to a single rounding target: the largest-weight target, the
      first one on ties.
    - Purity: no clock access, no I/O.

Failure modes:
    - DivisionGuardError when total weight is zero and there is at least
      one target.  Callers decide the zero-weight policy.
    - ValueError on a negative weight.

Usage:
    from costing_engines.allocation import AllocationEngine, AllocationTarget

    result = AllocationEngine().allocate(
        amount=Decimal("40.00"),
        targets=[
            AllocationTarget(target_id="lot-a", weight=Decimal("100")),
            AllocationTarget(target_id="lot-b", weight=Decimal("300")),
        ],
    )
    # result.amount_for("lot-a") == Decimal("10.00")
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from costing_engines.tracer import traced_engine
from costing_kernel.db.types import CURRENCY_DECIMAL_PLACES, ZERO, round_money
from costing_kernel.exceptions import DivisionGuardError
from costing_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")


@dataclass(frozen=True)
class AllocationTarget:
    """
    A target that can receive a share of an amount.

    Guarantees:
        - ``weight`` is non-negative.
    """

    target_id: str | UUID
    weight: Decimal

    def __post_init__(self) -> None:
        if self.weight < ZERO:
            raise ValueError("Weight cannot be negative")


@dataclass(frozen=True)
class AllocationLine:
    """Result of allocation to a single target."""

    target_id: str | UUID
    weight: Decimal
    share: Decimal
    allocated: Decimal
    is_rounding_target: bool = False


@dataclass(frozen=True)
class AllocationResult:
    """
    Complete weighted split.

    Guarantees:
        - ``total_allocated == source_amount`` whenever there is at least
          one target.
        - ``rounding_adjustment`` is the residual absorbed by the rounding
          target (zero when the rounded shares already summed exactly).
    """

    source_amount: Decimal
    lines: tuple[AllocationLine, ...]
    total_allocated: Decimal
    rounding_adjustment: Decimal
    rounding_target_id: str | UUID | None = None

    @property
    def unallocated(self) -> Decimal:
        return self.source_amount - self.total_allocated

    def amount_for(self, target_id: str | UUID) -> Decimal:
        for line in self.lines:
            if line.target_id == target_id:
                return line.allocated
        return ZERO


def select_rounding_target(weights: Sequence[Decimal]) -> int:
    """Index of the largest weight; the first such index on ties."""
    best = 0
    for i, weight in enumerate(weights):
        if weight > weights[best]:
            best = i
    return best


class AllocationEngine:
    """
    Allocate an amount across targets by weight.

    Guarantees:
        - All intermediate calculations use full precision.
        - Final amounts rounded to ``decimal_places`` (ROUND_HALF_UP).
        - The rounding difference is assigned to the largest-weight target,
          so the allocated total always equals the rounded source amount.
    """

    def __init__(self, decimal_places: int = CURRENCY_DECIMAL_PLACES):
        self.decimal_places = decimal_places

    @traced_engine("weighted_allocation", "1.0", fingerprint_fields=("amount", "targets"))
    def allocate(
        self,
        amount: Decimal,
        targets: Sequence[AllocationTarget],
    ) -> AllocationResult:
        """
        Split ``amount`` across ``targets`` in proportion to their weights.

        Raises:
            DivisionGuardError: targets exist but their weights sum to zero.
        """
        source = round_money(amount, self.decimal_places)

        if not targets:
            logger.warning("allocation_no_targets", extra={"amount": str(source)})
            return AllocationResult(
                source_amount=source,
                lines=(),
                total_allocated=ZERO,
                rounding_adjustment=ZERO,
            )

        total_weight = sum((t.weight for t in targets), ZERO)
        if total_weight == ZERO:
            raise DivisionGuardError(amount=source, target_count=len(targets))

        return self._allocate_by_ratio(source, targets, total_weight)

    def _allocate_by_ratio(
        self,
        source: Decimal,
        targets: Sequence[AllocationTarget],
        total_weight: Decimal,
    ) -> AllocationResult:
        """
        Common logic for the ratio split.

        Postconditions:
            - Sum of all ``allocated`` amounts == ``source`` (the rounding
              target absorbs the residual).
        """
        rounding_index = select_rounding_target([t.weight for t in targets])
        shares = [t.weight / total_weight for t in targets]
        naive = [round_money(source * share, self.decimal_places) for share in shares]

        allocated_elsewhere = sum(
            (value for i, value in enumerate(naive) if i != rounding_index),
            ZERO,
        )
        rounding_amount = source - allocated_elsewhere

        lines = tuple(
            AllocationLine(
                target_id=target.target_id,
                weight=target.weight,
                share=shares[i],
                allocated=rounding_amount if i == rounding_index else naive[i],
                is_rounding_target=i == rounding_index,
            )
            for i, target in enumerate(targets)
        )

        total_allocated = sum((line.allocated for line in lines), ZERO)

        assert total_allocated == source, (
            f"Allocation conservation violated: {total_allocated} != {source}"
        )

        rounding_adjustment = rounding_amount - naive[rounding_index]

        logger.debug("allocation_by_ratio_completed", extra={
            "source_amount": str(source),
            "total_allocated": str(total_allocated),
            "rounding_adjustment": str(rounding_adjustment),
            "line_count": len(lines),
        })

        return AllocationResult(
            source_amount=source,
            lines=lines,
            total_allocated=total_allocated,
            rounding_adjustment=rounding_adjustment,
            rounding_target_id=targets[rounding_index].target_id,
        )
