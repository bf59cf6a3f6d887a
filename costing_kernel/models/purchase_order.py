"""
Module: costing_kernel.models.purchase_order
Responsibility: ORM persistence for the reference data the landed cost core
    reads but does not own: materials (with their unit conversions) and
    purchase order lines (with the quantity received against them).
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - pack_to_base_conversion > 0 (defaults to 1).
    - usage_unit_conversion is nullable; NULL means "same as base unit".
    - Purchase order lines are never deleted while invoice line items
      reference them (FK without cascade).

Non-goals:
    - Purchase order header, supplier and material master-data CRUD belong
      to external collaborators.  purchase_order_id is a plain reference.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costing_kernel.db.base import Base, UUIDString


class MaterialModel(Base):
    """
    A purchasable material and its unit conversions.

    quantity_in_base_unit = purchased quantity * pack_to_base_conversion
    usage_quantity = quantity_in_base_unit * (usage_unit_conversion or 1)
    """

    __tablename__ = "materials"

    __table_args__ = (UniqueConstraint("code", name="uq_material_code"),)

    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    base_unit: Mapped[str] = mapped_column(String(20), nullable=False, default="EA")
    pack_to_base_conversion: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("1"),
    )
    usage_unit_conversion: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9),
        nullable=True,
    )

    @property
    def effective_usage_conversion(self) -> Decimal:
        if self.usage_unit_conversion is None or self.usage_unit_conversion <= 0:
            return Decimal("1")
        return self.usage_unit_conversion

    def __repr__(self) -> str:
        return f"<Material {self.code}>"


class PurchaseOrderLineModel(Base):
    """
    One line of a purchase order.

    quantity_received is maintained by the receiving process and is the
    ceiling for invoicing on this line.
    """

    __tablename__ = "purchase_order_lines"

    __table_args__ = (
        UniqueConstraint("purchase_order_id", "line_number", name="uq_po_line_number"),
        Index("idx_po_line_po", "purchase_order_id"),
    )

    purchase_order_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    line_number: Mapped[int] = mapped_column(nullable=False)
    material_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("materials.id"),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    quantity_ordered: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    quantity_received: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )
    unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    material: Mapped[MaterialModel] = relationship(lazy="selectin")

    lots: Mapped[list["ReceivingLotModel"]] = relationship(  # noqa: F821
        "ReceivingLotModel",
        back_populates="po_line",
        lazy="selectin",
        order_by="ReceivingLotModel.internal_lot_number",
    )

    def __repr__(self) -> str:
        return f"<PurchaseOrderLine {self.purchase_order_id}#{self.line_number}>"
