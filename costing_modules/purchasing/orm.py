"""
SQLAlchemy ORM persistence models for the Purchasing module.

Responsibility
--------------
Database-backed persistence for purchase invoices and everything hanging
off them: line items, additional costs, freight links, landed cost
allocations, checklist attestations and the purchasing audit trail.

Purchase order lines, materials and receiving lots are kernel models
(``costing_kernel.models``); line items reference them by foreign key.

Architecture position
---------------------
**Modules layer** -- ORM models consumed by ``PurchasingService``.
Inherits from ``TrackedBase`` (kernel db layer).

Invariants enforced
-------------------
* All monetary and quantity fields use ``Decimal`` (Numeric(38,9)).
* Enum fields stored as String(20) for readability and portability.
* ``invoice_number`` is unique per supplier.
* One ``LandedCostAllocationModel`` per (invoice, receiving lot); its id is
  derived from that pair so a recompute writes the same row.
* One ``FreightLinkModel`` per (material invoice, freight invoice).
* Closed invoices and their children are guarded by the listeners in
  ``costing_kernel.db.immutability``.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import NAMESPACE_URL, UUID, uuid5

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costing_kernel.db.base import Base, TrackedBase, UUIDString

ALLOCATION_NAMESPACE = uuid5(NAMESPACE_URL, "urn:costing:landed-cost-allocation")


def allocation_id_for(invoice_id: UUID, lot_id: UUID) -> UUID:
    """Deterministic allocation row id for an (invoice, lot) pair."""
    return uuid5(ALLOCATION_NAMESPACE, f"{invoice_id}:{lot_id}")


# ---------------------------------------------------------------------------
# PurchaseInvoiceModel
# ---------------------------------------------------------------------------


class PurchaseInvoiceModel(TrackedBase):
    """
    A supplier invoice, material or freight.

    Maps to the ``PurchaseInvoice`` DTO in ``costing_modules.purchasing.models``.

    Guarantees:
        - ``(supplier_id, invoice_number)`` is unique.
        - ``finalization_status = closed`` is terminal; after it only the
          payment fields and notes change.
        - ``subtotal`` and ``total_amount`` are recomputed by the service
          from line items and costs, never entered.
    """

    __tablename__ = "purchase_invoices"

    __table_args__ = (
        UniqueConstraint("supplier_id", "invoice_number", name="uq_invoice_supplier_number"),
        Index("idx_invoice_purchase_order", "purchase_order_id"),
        Index("idx_invoice_type_status", "invoice_type", "finalization_status"),
    )

    invoice_type: Mapped[str] = mapped_column(String(20), nullable=False, default="material")
    purchase_order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    supplier_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(38, 9), default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), default=Decimal("0"))
    freight_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), default=Decimal("0"))

    approval_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    finalization_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="incomplete",
    )
    receiving_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # NULL: not attested, falls back to "freight pool > 0"
    freight_complete: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    financials_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="unpaid")
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(38, 9), default=Decimal("0"))
    payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    line_items: Mapped[list["InvoiceLineItemModel"]] = relationship(
        "InvoiceLineItemModel",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceLineItemModel.position",
    )
    additional_costs: Mapped[list["AdditionalCostModel"]] = relationship(
        "AdditionalCostModel",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="AdditionalCostModel.position",
    )
    freight_links: Mapped[list["FreightLinkModel"]] = relationship(
        "FreightLinkModel",
        foreign_keys="FreightLinkModel.material_invoice_id",
        back_populates="material_invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    allocations: Mapped[list["LandedCostAllocationModel"]] = relationship(
        "LandedCostAllocationModel",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    attestations: Mapped[list["ChecklistAttestationModel"]] = relationship(
        "ChecklistAttestationModel",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ChecklistAttestationModel.attested_at",
    )

    @property
    def is_closed(self) -> bool:
        return self.finalization_status == "closed"

    @property
    def active_line_items(self) -> list["InvoiceLineItemModel"]:
        return [li for li in self.line_items if li.voided_at is None]

    def to_dto(self):
        from costing_modules.purchasing.models import (
            ApprovalStatus,
            FinalizationStatus,
            InvoiceType,
            PaymentStatus,
            PurchaseInvoice,
        )
        from costing_modules.purchasing.workflows import derive_state

        return PurchaseInvoice(
            id=self.id,
            invoice_type=InvoiceType(self.invoice_type),
            supplier_id=self.supplier_id,
            invoice_number=self.invoice_number,
            invoice_date=self.invoice_date,
            purchase_order_id=self.purchase_order_id,
            due_date=self.due_date,
            subtotal=self.subtotal,
            tax_amount=self.tax_amount,
            freight_amount=self.freight_amount,
            total_amount=self.total_amount,
            approval_status=ApprovalStatus(self.approval_status),
            finalization_status=FinalizationStatus(self.finalization_status),
            state=derive_state(self),
            receiving_complete=self.receiving_complete,
            freight_complete=self.freight_complete,
            financials_complete=self.financials_complete,
            submitted_at=self.submitted_at,
            approved_at=self.approved_at,
            approved_by_id=self.approved_by_id,
            closed_at=self.closed_at,
            closed_by_id=self.closed_by_id,
            payment_status=PaymentStatus(self.payment_status),
            amount_paid=self.amount_paid,
            payment_date=self.payment_date,
            payment_reference=self.payment_reference,
            notes=self.notes,
            line_items=tuple(li.to_dto() for li in self.line_items),
            additional_costs=tuple(c.to_dto() for c in self.additional_costs),
            freight_links=tuple(link.to_dto() for link in self.freight_links),
        )

    def __repr__(self) -> str:
        return f"<PurchaseInvoice {self.invoice_number} {self.finalization_status}>"


# ---------------------------------------------------------------------------
# InvoiceLineItemModel
# ---------------------------------------------------------------------------


class InvoiceLineItemModel(TrackedBase):
    """
    A material line on a purchase invoice.

    Guarantees:
        - Belongs to exactly one invoice and references one PO line.
        - ``line_total = quantity * unit_cost``.
        - Voided lines keep their row (voided_at/voided_by_id) and stop
          counting against the PO line.
    """

    __tablename__ = "purchase_invoice_line_items"

    __table_args__ = (
        Index("idx_line_item_invoice", "invoice_id"),
        Index("idx_line_item_po_line", "po_line_id"),
        Index("idx_line_item_receiving", "receiving_item_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_invoices.id"), nullable=False,
    )
    position: Mapped[int] = mapped_column(nullable=False, default=0)
    po_line_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_order_lines.id"), nullable=False,
    )
    receiving_item_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("receiving_lots.id"), nullable=True,
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    invoice: Mapped["PurchaseInvoiceModel"] = relationship(
        "PurchaseInvoiceModel", back_populates="line_items",
    )
    po_line: Mapped["PurchaseOrderLineModel"] = relationship(  # noqa: F821
        "PurchaseOrderLineModel", lazy="selectin",
    )
    receiving_lot: Mapped["ReceivingLotModel"] = relationship(  # noqa: F821
        "ReceivingLotModel", lazy="selectin",
    )

    def to_dto(self):
        from costing_modules.purchasing.models import InvoiceLineItem

        return InvoiceLineItem(
            id=self.id,
            invoice_id=self.invoice_id,
            po_line_id=self.po_line_id,
            quantity=self.quantity,
            unit_cost=self.unit_cost,
            line_total=self.line_total,
            receiving_item_id=self.receiving_item_id,
            description=self.description,
            voided_at=self.voided_at,
            voided_by_id=self.voided_by_id,
        )


# ---------------------------------------------------------------------------
# AdditionalCostModel
# ---------------------------------------------------------------------------


class AdditionalCostModel(TrackedBase):
    """An indirect cost entered on a material invoice."""

    __tablename__ = "purchase_invoice_additional_costs"

    __table_args__ = (Index("idx_additional_cost_invoice", "invoice_id"),)

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_invoices.id"), nullable=False,
    )
    position: Mapped[int] = mapped_column(nullable=False, default=0)
    cost_type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    invoice: Mapped["PurchaseInvoiceModel"] = relationship(
        "PurchaseInvoiceModel", back_populates="additional_costs",
    )

    def to_dto(self):
        from costing_modules.purchasing.models import AdditionalCost

        return AdditionalCost(
            id=self.id,
            invoice_id=self.invoice_id,
            cost_type=self.cost_type,
            amount=self.amount,
            description=self.description,
        )


# ---------------------------------------------------------------------------
# FreightLinkModel
# ---------------------------------------------------------------------------


class FreightLinkModel(TrackedBase):
    """
    Attribution of a freight invoice to a material invoice.

    ``allocation_amount`` NULL means the freight invoice's whole total.
    """

    __tablename__ = "purchase_invoice_freight_links"

    __table_args__ = (
        UniqueConstraint(
            "material_invoice_id", "freight_invoice_id", name="uq_freight_link_pair",
        ),
        Index("idx_freight_link_freight", "freight_invoice_id"),
    )

    material_invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_invoices.id"), nullable=False,
    )
    freight_invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_invoices.id"), nullable=False,
    )
    allocation_amount: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    material_invoice: Mapped["PurchaseInvoiceModel"] = relationship(
        "PurchaseInvoiceModel",
        foreign_keys=[material_invoice_id],
        back_populates="freight_links",
    )
    freight_invoice: Mapped["PurchaseInvoiceModel"] = relationship(
        "PurchaseInvoiceModel",
        foreign_keys=[freight_invoice_id],
        lazy="selectin",
    )

    @property
    def effective_amount(self) -> Decimal:
        if self.allocation_amount is not None:
            return self.allocation_amount
        return self.freight_invoice.total_amount

    def to_dto(self):
        from costing_modules.purchasing.models import FreightLink

        return FreightLink(
            id=self.id,
            material_invoice_id=self.material_invoice_id,
            freight_invoice_id=self.freight_invoice_id,
            allocation_amount=self.allocation_amount,
            freight_invoice_number=self.freight_invoice.invoice_number,
            freight_invoice_total=self.freight_invoice.total_amount,
        )


# ---------------------------------------------------------------------------
# LandedCostAllocationModel
# ---------------------------------------------------------------------------


class LandedCostAllocationModel(TrackedBase):
    """
    Landed cost of one receiving lot on one invoice.

    Guarantees:
        - ``(invoice_id, receiving_lot_id)`` is unique and ``id`` is
          ``allocation_id_for(invoice_id, receiving_lot_id)``.
        - Rows are replaced by a full recompute, never patched field by field.
    """

    __tablename__ = "landed_cost_allocations"

    __table_args__ = (
        UniqueConstraint("invoice_id", "receiving_lot_id", name="uq_allocation_invoice_lot"),
        Index("idx_allocation_lot", "receiving_lot_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_invoices.id"), nullable=False,
    )
    receiving_lot_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("receiving_lots.id"), nullable=False,
    )
    quantity_in_base_unit: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    usage_quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    material_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    freight_allocated: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    duty_allocated: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    other_costs_allocated: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    total_landed_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    cost_per_base_unit: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)

    invoice: Mapped["PurchaseInvoiceModel"] = relationship(
        "PurchaseInvoiceModel", back_populates="allocations",
    )

    def to_dto(self):
        from costing_modules.purchasing.models import LandedCostAllocation

        return LandedCostAllocation(
            id=self.id,
            invoice_id=self.invoice_id,
            receiving_lot_id=self.receiving_lot_id,
            quantity_in_base_unit=self.quantity_in_base_unit,
            usage_quantity=self.usage_quantity,
            material_cost=self.material_cost,
            freight_allocated=self.freight_allocated,
            duty_allocated=self.duty_allocated,
            other_costs_allocated=self.other_costs_allocated,
            total_landed_cost=self.total_landed_cost,
            cost_per_base_unit=self.cost_per_base_unit,
        )


# ---------------------------------------------------------------------------
# ChecklistAttestationModel
# ---------------------------------------------------------------------------


class ChecklistAttestationModel(TrackedBase):
    """An operator assertion of a checklist item (who, what value, when)."""

    __tablename__ = "invoice_checklist_attestations"

    __table_args__ = (Index("idx_attestation_invoice_item", "invoice_id", "item"),)

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_invoices.id"), nullable=False,
    )
    item: Mapped[str] = mapped_column(String(50), nullable=False)
    value: Mapped[bool] = mapped_column(Boolean, nullable=False)
    attested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    note: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    invoice: Mapped["PurchaseInvoiceModel"] = relationship(
        "PurchaseInvoiceModel", back_populates="attestations",
    )

    def to_dto(self):
        from costing_modules.purchasing.models import AttestationItem, ChecklistAttestation

        return ChecklistAttestation(
            id=self.id,
            invoice_id=self.invoice_id,
            item=AttestationItem(self.item),
            value=self.value,
            attested_by_id=self.created_by_id,
            attested_at=self.attested_at,
            note=self.note,
        )


# ---------------------------------------------------------------------------
# PurchasingAuditEntryModel
# ---------------------------------------------------------------------------


class PurchasingAuditEntryModel(Base):
    """
    Append-only audit trail for invoice costing.

    No foreign key to the invoice: entries outlive a deleted draft invoice.
    """

    __tablename__ = "purchasing_audit_entries"

    __table_args__ = (
        Index("idx_purchasing_audit_invoice", "invoice_id", "occurred_at"),
        Index("idx_purchasing_audit_action", "action"),
    )

    invoice_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    from_state: Mapped[str | None] = mapped_column(String(30), nullable=True)
    to_state: Mapped[str | None] = mapped_column(String(30), nullable=True)
    lot_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    detail: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    def to_dto(self):
        from costing_modules.purchasing.models import PurchasingAuditEntry

        return PurchasingAuditEntry(
            id=self.id,
            invoice_id=self.invoice_id,
            action=self.action,
            actor_id=self.actor_id,
            occurred_at=self.occurred_at,
            from_state=self.from_state,
            to_state=self.to_state,
            lot_id=self.lot_id,
            detail=self.detail,
        )
