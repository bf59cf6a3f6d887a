"""
Module: costing_engines.finalization
Responsibility:
    Evaluate the finalization checklist that gates closing an invoice.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Used read-only (so a
    caller can disable the close action) and as the close gate itself.

Conditions (all must hold):
    receiving_linked     every non-voided line item has a receiving lot
    freight_complete     operator attestation; unattested means true when
                         the freight pool is positive, false otherwise
    financials_complete  operator attestation only
    approved             approval_status == approved

Failure modes:
    - ChecklistIncompleteError from require_ready, naming every failing
      condition, never just the first.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from costing_kernel.db.types import ZERO
from costing_kernel.exceptions import ChecklistIncompleteError

RECEIVING_LINKED = "receiving_linked"
FREIGHT_COMPLETE = "freight_complete"
FINANCIALS_COMPLETE = "financials_complete"
APPROVED = "approved"

CHECKLIST_CONDITIONS = (
    RECEIVING_LINKED,
    FREIGHT_COMPLETE,
    FINANCIALS_COMPLETE,
    APPROVED,
)


@dataclass(frozen=True)
class ChecklistInputs:
    invoice_id: UUID | str
    line_item_count: int
    linked_line_item_count: int
    freight_pool: Decimal
    freight_attested: bool | None
    financials_complete: bool
    approved: bool


@dataclass(frozen=True)
class ChecklistResult:
    invoice_id: UUID | str
    conditions: dict[str, bool]

    @property
    def failed_conditions(self) -> tuple[str, ...]:
        return tuple(name for name in CHECKLIST_CONDITIONS if not self.conditions[name])

    @property
    def is_ready(self) -> bool:
        return not self.failed_conditions


def effective_freight_complete(attested: bool | None, freight_pool: Decimal) -> bool:
    if attested is not None:
        return attested
    return freight_pool > ZERO


class FinalizationChecklist:
    def evaluate(self, inputs: ChecklistInputs) -> ChecklistResult:
        receiving_linked = (
            inputs.line_item_count > 0
            and inputs.linked_line_item_count == inputs.line_item_count
        )
        return ChecklistResult(
            invoice_id=inputs.invoice_id,
            conditions={
                RECEIVING_LINKED: receiving_linked,
                FREIGHT_COMPLETE: effective_freight_complete(
                    inputs.freight_attested, inputs.freight_pool,
                ),
                FINANCIALS_COMPLETE: bool(inputs.financials_complete),
                APPROVED: bool(inputs.approved),
            },
        )

    def require_ready(self, inputs: ChecklistInputs) -> ChecklistResult:
        result = self.evaluate(inputs)
        if not result.is_ready:
            raise ChecklistIncompleteError(
                invoice_id=str(inputs.invoice_id),
                failed_conditions=result.failed_conditions,
            )
        return result
