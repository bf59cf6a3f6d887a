"""
Module: costing_engines.invoice_ledger
Responsibility:
    Gate invoicing against received quantity.  The ledger is a pure
    aggregation over existing line items: remaining_invoiceable is
    recomputed from them every time, there are no stored counters.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  PurchasingService loads
    the line items and PO lines and asks the ledger to validate a request
    before anything is written.

Invariants enforced:
    - For every PO line: sum(quantity of non-voided line items) never
      exceeds quantity_received.  A request over the remainder is rejected,
      never clamped; several requested lines on the same PO line are
      checked cumulatively.
    - quantity must be > 0.
    - With lot exclusivity on, a receiving lot is claimed by the non-voided
      line items of at most one invoice.

Failure modes:
    - OverInvoiceError, InvalidLineItemError, LotAlreadyClaimedError.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from costing_kernel.db.types import ZERO
from costing_kernel.exceptions import (
    InvalidLineItemError,
    LotAlreadyClaimedError,
    OverInvoiceError,
    PurchaseOrderLineNotFoundError,
)
from costing_kernel.logging_config import get_logger

logger = get_logger("engines.invoice_ledger")


@dataclass(frozen=True)
class LedgerEntry:
    """An existing invoice line item, as the ledger sees it."""

    line_item_id: UUID | str
    invoice_id: UUID | str
    po_line_id: UUID | str
    quantity: Decimal
    receiving_item_id: UUID | str | None = None
    voided: bool = False


@dataclass(frozen=True)
class RequestedLine:
    """A line item the caller wants to create."""

    po_line_id: UUID | str
    quantity: Decimal
    receiving_item_id: UUID | str | None = None


@dataclass(frozen=True)
class LinePosition:
    """Invoicing position of one PO line."""

    po_line_id: UUID | str
    quantity_received: Decimal
    quantity_invoiced: Decimal

    @property
    def remaining(self) -> Decimal:
        """Remaining invoiceable quantity, floored at zero for display."""
        return max(self.quantity_received - self.quantity_invoiced, ZERO)

    @property
    def is_fully_invoiced(self) -> bool:
        return self.remaining == ZERO


class InvoiceLedger:
    """Pure checks over invoice line items and received quantities."""

    @staticmethod
    def invoiced_quantity(
        po_line_id: UUID | str,
        entries: Iterable[LedgerEntry],
    ) -> Decimal:
        return sum(
            (e.quantity for e in entries if e.po_line_id == po_line_id and not e.voided),
            ZERO,
        )

    def position(
        self,
        po_line_id: UUID | str,
        quantity_received: Decimal,
        entries: Iterable[LedgerEntry],
    ) -> LinePosition:
        return LinePosition(
            po_line_id=po_line_id,
            quantity_received=quantity_received,
            quantity_invoiced=self.invoiced_quantity(po_line_id, entries),
        )

    def remaining_invoiceable(
        self,
        po_line_id: UUID | str,
        quantity_received: Decimal,
        entries: Iterable[LedgerEntry],
    ) -> Decimal:
        return self.position(po_line_id, quantity_received, entries).remaining

    def invoiceable_positions(
        self,
        received: Mapping[UUID | str, Decimal],
        entries: Sequence[LedgerEntry],
    ) -> list[LinePosition]:
        """Positions with something left to invoice; fully invoiced lines are dropped."""
        positions = [self.position(po_line_id, qty, entries) for po_line_id, qty in received.items()]
        return [p for p in positions if not p.is_fully_invoiced]

    def check_request(
        self,
        requests: Sequence[RequestedLine],
        received: Mapping[UUID | str, Decimal],
        entries: Sequence[LedgerEntry],
    ) -> None:
        """
        Validate a batch of new line items against the ledger.

        Raises:
            InvalidLineItemError: a requested quantity is not positive.
            PurchaseOrderLineNotFoundError: a PO line is unknown.
            OverInvoiceError: cumulative request exceeds what is left.
        """
        pending: dict = {}
        for request in requests:
            if request.quantity is None or request.quantity <= ZERO:
                raise InvalidLineItemError(
                    f"quantity must be positive, got {request.quantity}"
                )
            if request.po_line_id not in received:
                raise PurchaseOrderLineNotFoundError(str(request.po_line_id))

            already_requested = pending.get(request.po_line_id, ZERO)
            position = self.position(request.po_line_id, received[request.po_line_id], entries)
            remaining = position.quantity_received - position.quantity_invoiced - already_requested

            if request.quantity > remaining:
                logger.warning("over_invoice_rejected", extra={
                    "po_line_id": str(request.po_line_id),
                    "requested": str(request.quantity),
                    "remaining": str(max(remaining, ZERO)),
                })
                raise OverInvoiceError(
                    po_line_id=str(request.po_line_id),
                    requested=request.quantity,
                    remaining=max(remaining, ZERO),
                )
            pending[request.po_line_id] = already_requested + request.quantity

    @staticmethod
    def claiming_invoice(
        lot_id: UUID | str,
        invoice_id: UUID | str,
        entries: Iterable[LedgerEntry],
    ) -> UUID | str | None:
        """Another invoice holding a claim on ``lot_id``, or None."""
        for entry in entries:
            if entry.voided or entry.receiving_item_id != lot_id:
                continue
            if entry.invoice_id != invoice_id:
                return entry.invoice_id
        return None

    @classmethod
    def check_lot_claim(
        cls,
        lot_id: UUID | str,
        invoice_id: UUID | str,
        entries: Iterable[LedgerEntry],
    ) -> None:
        """
        Raise if another invoice already claims ``lot_id``.

        Voided line items release their claim.
        """
        claimant = cls.claiming_invoice(lot_id, invoice_id, entries)
        if claimant is not None:
            raise LotAlreadyClaimedError(
                lot_id=str(lot_id),
                claiming_invoice_id=str(claimant),
            )
