"""
Purchasing Selectors.

Read-only queries behind the purchasing screens and the service's own
checks: what is left to invoice on a purchase order, which freight
invoices can still be linked, and the persisted allocation, attestation
and audit rows of an invoice.
"""

from collections.abc import Iterable
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from costing_engines.invoice_ledger import InvoiceLedger, LedgerEntry
from costing_kernel.db.types import ZERO
from costing_kernel.exceptions import (
    InvoiceNotFoundError,
    PurchaseOrderLineNotFoundError,
)
from costing_kernel.logging_config import get_logger
from costing_kernel.models.purchase_order import PurchaseOrderLineModel
from costing_kernel.selectors.base import BaseSelector
from costing_modules.purchasing.models import (
    AvailableFreightInvoice,
    ChecklistAttestation,
    InvoiceableLine,
    InvoiceType,
    LandedCostAllocation,
    PurchaseInvoice,
    PurchasingAuditEntry,
)
from costing_modules.purchasing.orm import (
    ChecklistAttestationModel,
    FreightLinkModel,
    InvoiceLineItemModel,
    LandedCostAllocationModel,
    PurchaseInvoiceModel,
    PurchasingAuditEntryModel,
)

logger = get_logger("modules.purchasing.selectors")


class PurchasingSelector(BaseSelector[PurchaseInvoiceModel]):
    """Queries over purchase invoices and their PO lines."""

    def __init__(self, session):
        super().__init__(session)
        self._ledger = InvoiceLedger()

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def get_invoice(self, invoice_id: UUID) -> PurchaseInvoice:
        invoice = self.session.get(PurchaseInvoiceModel, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice.to_dto()

    def list_invoices_for_po(self, purchase_order_id: UUID) -> list[PurchaseInvoice]:
        rows = self.session.execute(
            select(PurchaseInvoiceModel)
            .where(PurchaseInvoiceModel.purchase_order_id == purchase_order_id)
            .order_by(PurchaseInvoiceModel.invoice_date, PurchaseInvoiceModel.invoice_number)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    # -------------------------------------------------------------------------
    # Invoice ledger
    # -------------------------------------------------------------------------

    def ledger_entries(self, po_line_ids: Iterable[UUID]) -> list[LedgerEntry]:
        """Every line item (voided included) billed against the given PO lines."""
        ids = list(dict.fromkeys(po_line_ids))
        if not ids:
            return []
        rows = self.session.execute(
            select(InvoiceLineItemModel).where(InvoiceLineItemModel.po_line_id.in_(ids))
        ).scalars().all()
        return [_ledger_entry(row) for row in rows]

    def lot_claims(self, lot_id: UUID) -> list[LedgerEntry]:
        """Line items that name ``lot_id`` as their receiving item."""
        rows = self.session.execute(
            select(InvoiceLineItemModel).where(InvoiceLineItemModel.receiving_item_id == lot_id)
        ).scalars().all()
        return [_ledger_entry(row) for row in rows]

    def remaining_invoiceable(self, po_line_id: UUID) -> Decimal:
        po_line = self.session.get(PurchaseOrderLineModel, po_line_id)
        if po_line is None:
            raise PurchaseOrderLineNotFoundError(str(po_line_id))
        return self._ledger.remaining_invoiceable(
            po_line_id, po_line.quantity_received, self.ledger_entries([po_line_id]),
        )

    def list_invoiceable_lines(self, purchase_order_id: UUID) -> list[InvoiceableLine]:
        """
        PO lines of ``purchase_order_id`` with quantity left to invoice.

        Fully invoiced lines are omitted.  Ordered by line number.
        """
        po_lines = self.session.execute(
            select(PurchaseOrderLineModel)
            .where(PurchaseOrderLineModel.purchase_order_id == purchase_order_id)
            .order_by(PurchaseOrderLineModel.line_number)
        ).scalars().all()
        by_id = {line.id: line for line in po_lines}

        entries = self.ledger_entries(by_id)
        positions = self._ledger.invoiceable_positions(
            {line.id: line.quantity_received for line in po_lines}, entries,
        )

        result = []
        for position in positions:
            line = by_id[position.po_line_id]
            result.append(InvoiceableLine(
                po_line_id=line.id,
                purchase_order_id=line.purchase_order_id,
                line_number=line.line_number,
                material_id=line.material_id,
                description=line.description,
                quantity_received=position.quantity_received,
                quantity_invoiced=position.quantity_invoiced,
                remaining_quantity=position.remaining,
                unit_cost=line.unit_cost,
                lot_ids=tuple(lot.id for lot in line.lots),
            ))

        logger.debug("invoiceable_lines_listed", extra={
            "purchase_order_id": str(purchase_order_id),
            "po_line_count": len(po_lines),
            "invoiceable_count": len(result),
        })
        return result

    # -------------------------------------------------------------------------
    # Freight
    # -------------------------------------------------------------------------

    def linked_freight_amount(self, freight_invoice_id: UUID) -> Decimal:
        """Amount of a freight invoice already attributed across all links."""
        links = self.session.execute(
            select(FreightLinkModel).where(FreightLinkModel.freight_invoice_id == freight_invoice_id)
        ).scalars().all()
        return sum((link.effective_amount for link in links), ZERO)

    def list_available_freight_invoices(
        self,
        material_invoice_id: UUID,
        supplier_id: UUID | None = None,
    ) -> list[AvailableFreightInvoice]:
        """
        Freight invoices that can still be linked to ``material_invoice_id``.

        Excludes freight invoices already linked to it and those with
        nothing left to attribute.
        """
        already_linked = set(self.session.execute(
            select(FreightLinkModel.freight_invoice_id)
            .where(FreightLinkModel.material_invoice_id == material_invoice_id)
        ).scalars().all())

        stmt = (
            select(PurchaseInvoiceModel)
            .where(PurchaseInvoiceModel.invoice_type == InvoiceType.FREIGHT.value)
            .order_by(PurchaseInvoiceModel.invoice_date, PurchaseInvoiceModel.invoice_number)
        )
        if supplier_id is not None:
            stmt = stmt.where(PurchaseInvoiceModel.supplier_id == supplier_id)

        available = []
        for freight in self.session.execute(stmt).scalars().all():
            if freight.id in already_linked:
                continue
            candidate = AvailableFreightInvoice(
                invoice_id=freight.id,
                invoice_number=freight.invoice_number,
                supplier_id=freight.supplier_id,
                total_amount=freight.total_amount,
                linked_amount=self.linked_freight_amount(freight.id),
            )
            if candidate.available_amount > ZERO:
                available.append(candidate)
        return available

    # -------------------------------------------------------------------------
    # Allocation, checklist and audit
    # -------------------------------------------------------------------------

    def list_allocations(self, invoice_id: UUID) -> list[LandedCostAllocation]:
        rows = self.session.execute(
            select(LandedCostAllocationModel)
            .where(LandedCostAllocationModel.invoice_id == invoice_id)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def list_lot_allocations(self, lot_id: UUID) -> list[LandedCostAllocation]:
        """Allocation rows for a lot across every invoice that costed it."""
        rows = self.session.execute(
            select(LandedCostAllocationModel)
            .where(LandedCostAllocationModel.receiving_lot_id == lot_id)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def list_attestations(self, invoice_id: UUID) -> list[ChecklistAttestation]:
        rows = self.session.execute(
            select(ChecklistAttestationModel)
            .where(ChecklistAttestationModel.invoice_id == invoice_id)
            .order_by(ChecklistAttestationModel.attested_at)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def list_audit_entries(
        self,
        invoice_id: UUID,
        action: str | None = None,
    ) -> list[PurchasingAuditEntry]:
        stmt = (
            select(PurchasingAuditEntryModel)
            .where(PurchasingAuditEntryModel.invoice_id == invoice_id)
            .order_by(PurchasingAuditEntryModel.occurred_at)
        )
        if action is not None:
            stmt = stmt.where(PurchasingAuditEntryModel.action == action)
        return [row.to_dto() for row in self.session.execute(stmt).scalars().all()]


def _ledger_entry(row: InvoiceLineItemModel) -> LedgerEntry:
    return LedgerEntry(
        line_item_id=row.id,
        invoice_id=row.invoice_id,
        po_line_id=row.po_line_id,
        quantity=row.quantity,
        receiving_item_id=row.receiving_item_id,
        voided=row.voided_at is not None,
    )
