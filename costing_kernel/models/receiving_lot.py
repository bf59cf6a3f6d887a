"""
Module: costing_kernel.models.receiving_lot
Responsibility: ORM persistence for receiving lots, the physical, lot-numbered
    receipts against a purchase order line.  The receiving process owns the
    rows; the landed cost core annotates them with cost fields and the
    cost_finalized flag.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Cost fields (landed_cost_total, landed_unit_cost, cost_invoice_id) are
      mutable only while cost_finalized is false.
    - cost_finalized is monotonic: once true it never returns to false.
    Both are enforced by LotCostLockService and, regardless of caller, by the
    before_update listener in costing_kernel.db.immutability.

Failure modes:
    - LotCostLockedError on any cost write to a finalized lot.

Audit relevance:
    A finalized lot's landed_unit_cost is the cost used by downstream
    inventory consumption.  cost_finalized_at / cost_finalized_by_id record
    who closed the invoice that froze it.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costing_kernel.db.base import Base, UUIDString

# Fields frozen once cost_finalized is true.
LOT_COST_FIELDS = (
    "landed_cost_total",
    "landed_unit_cost",
    "cost_invoice_id",
)


class ReceivingLotModel(Base):
    """
    A receiving lot and its landed cost annotation.

    Guarantees:
        - quantity_in_base_unit is the allocation denominator for
          landed_unit_cost; zero leaves landed_unit_cost NULL.
        - cost_invoice_id names the invoice whose allocation last wrote
          the cost fields.
    """

    __tablename__ = "receiving_lots"

    __table_args__ = (
        Index("idx_receiving_lot_po_line", "po_line_id"),
        Index("idx_receiving_lot_cost_invoice", "cost_invoice_id"),
    )

    po_line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("purchase_order_lines.id"),
        nullable=False,
    )
    internal_lot_number: Mapped[str] = mapped_column(String(100), nullable=False)
    received_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    quantity_received: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    quantity_in_base_unit: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    # Cost annotation (written by the allocation engine)
    landed_cost_total: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9),
        nullable=True,
    )
    landed_unit_cost: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9),
        nullable=True,
    )
    cost_invoice_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Lock state (monotonic)
    cost_finalized: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    cost_finalized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cost_finalized_by_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    po_line: Mapped["PurchaseOrderLineModel"] = relationship(  # noqa: F821
        "PurchaseOrderLineModel",
        back_populates="lots",
    )

    def __repr__(self) -> str:
        state = "finalized" if self.cost_finalized else "open"
        return f"<ReceivingLot {self.internal_lot_number} {state}>"
