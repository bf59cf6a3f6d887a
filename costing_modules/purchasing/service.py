"""
Purchasing Module Service (``costing_modules.purchasing.service``).

Responsibility
--------------
Orchestrates purchase invoice costing -- invoice and line item capture
against purchase order lines, indirect costs and freight links, approval,
landed cost allocation onto receiving lots, and the final close that
freezes lot costs -- by delegating pure computation to ``costing_engines``
and lot cost writes to ``costing_kernel.services.lot_cost_lock_service``.

Architecture position
---------------------
**Modules layer** -- thin glue.  ``PurchasingService`` is the sole public
entry point for invoice mutations.  It composes stateless engines
(``InvoiceLedger``, ``CostAggregator``, ``LandedCostEngine``,
``FinalizationChecklist``) and the kernel ``LotCostLockService``.

Invariants enforced
-------------------
* Each public method owns the transaction boundary (``commit`` on
  success, ``rollback`` and re-raise on exception).
* The invoice row is loaded ``FOR UPDATE`` before any mutation, so
  concurrent approve/recalculate/close on one invoice serialize.
* Cumulative invoiced quantity per PO line never exceeds the received
  quantity (voided lines excluded).
* A receiving lot is claimed by at most one invoice (configurable).
* Allocation is a full recompute: rows are upserted by (invoice, lot) and
  rows for lots that dropped out are removed.
* Once closed an invoice is read-only except payment fields and notes;
  its lots' costs are frozen.

Failure modes
-------------
* Typed ``CostingKernelError`` subclasses for every business rule
  (over-invoice, closed invoice, bad transition, incomplete checklist,
  locked lot).  Session rolled back, exception re-raised.
* Lot lock failures during close do NOT undo the close; they are
  returned in ``CloseOutcome.lock_failures``, written to the audit trail
  and logged at ERROR.

Audit relevance
---------------
Every mutation writes a ``PurchasingAuditEntryModel`` row (actor, time,
from/to state) and a structured log event.

Usage::

    service = PurchasingService(session, config=PurchasingConfig(), clock=clock)
    invoice = service.create_material_invoice(
        supplier_id=supplier_id, invoice_number="INV-1001",
        invoice_date=date(2024, 1, 5), purchase_order_id=po_id,
        line_items=[LineItemRequest(po_line_id=line_id, quantity=Decimal("10"),
                                    unit_cost=Decimal("4.50"))],
        actor_id=actor_id,
    )
    service.submit_for_approval(invoice.id, actor_id=actor_id)
    run = service.approve(invoice.id, actor_id=actor_id)
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_engines.cost_aggregation import (
    AdditionalCharge,
    CostAggregator,
    CostSummary,
    InvoiceCostInputs,
    LinkedFreight,
    normalize_cost_type,
)
from costing_engines.finalization import (
    ChecklistInputs,
    ChecklistResult,
    FinalizationChecklist,
)
from costing_engines.invoice_ledger import InvoiceLedger, RequestedLine
from costing_engines.landed_cost import LandedCostEngine, LineItemInput
from costing_kernel.db.types import ZERO
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.exceptions import (
    AdditionalCostNotFoundError,
    DuplicateFreightLinkError,
    DuplicateInvoiceNumberError,
    FreightLinkNotFoundError,
    FreightOverAllocationError,
    InvalidInvoiceTransitionError,
    InvalidLineItemError,
    InvoiceClosedError,
    InvoiceNotFoundError,
    InvoiceTypeError,
    LineItemNotFoundError,
    PurchaseOrderLineNotFoundError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.purchase_order import PurchaseOrderLineModel
from costing_kernel.models.receiving_lot import ReceivingLotModel
from costing_kernel.services.lot_cost_lock_service import LotCostLockService
from costing_modules.purchasing.config import PurchasingConfig
from costing_modules.purchasing.models import (
    AdditionalCost,
    AllocationRun,
    ApprovalStatus,
    AttestationItem,
    AvailableFreightInvoice,
    ChecklistAttestation,
    CloseOutcome,
    FinalizationStatus,
    FreightLink,
    InvoiceableLine,
    InvoiceCostSummary,
    InvoiceLineItem,
    InvoiceState,
    InvoiceType,
    LineItemRequest,
    PaymentStatus,
    PurchaseInvoice,
)
from costing_modules.purchasing.orm import (
    AdditionalCostModel,
    ChecklistAttestationModel,
    FreightLinkModel,
    InvoiceLineItemModel,
    LandedCostAllocationModel,
    PurchaseInvoiceModel,
    PurchasingAuditEntryModel,
    allocation_id_for,
)
from costing_modules.purchasing.selectors import PurchasingSelector
from costing_modules.purchasing.workflows import derive_state, require_transition

logger = get_logger("modules.purchasing.service")

_ALLOCATION_FIELDS = (
    "quantity_in_base_unit",
    "usage_quantity",
    "material_cost",
    "freight_allocated",
    "duty_allocated",
    "other_costs_allocated",
    "total_landed_cost",
    "cost_per_base_unit",
)


class PurchasingService:
    """
    Orchestrates purchase invoice costing through engines and kernel.

    Contract
    --------
    * Mutating methods return frozen DTOs from ``models``; ORM rows never
      leave the service.
    * Read helpers (``get_invoice``, ``get_cost_summary``, ``get_checklist``
      and the listings) never commit.

    Guarantees
    ----------
    * Session is committed only when the whole operation succeeded.
    * Allocation rows, lot cost writes and the status change of approve
      and close land in one transaction.
    * Clock is injectable for deterministic testing.
    """

    def __init__(
        self,
        session: Session,
        config: PurchasingConfig | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._config = config or PurchasingConfig()
        self._clock = clock or SystemClock()

        # Stateless engines
        self._ledger = InvoiceLedger()
        self._aggregator = CostAggregator(
            freight_cost_types=self._config.freight_cost_types,
            duty_cost_types=self._config.duty_cost_types,
        )
        self._landed_cost = LandedCostEngine(
            currency_decimal_places=self._config.currency_decimal_places,
            unit_cost_decimal_places=self._config.unit_cost_decimal_places,
        )
        self._checklist = FinalizationChecklist()

        # Kernel collaborators
        self._lots = LotCostLockService(session, clock=self._clock)
        self._selector = PurchasingSelector(session)

    # =========================================================================
    # Invoice capture
    # =========================================================================

    def create_material_invoice(
        self,
        *,
        supplier_id: UUID,
        invoice_number: str,
        invoice_date: date,
        purchase_order_id: UUID,
        actor_id: UUID,
        line_items: Sequence[LineItemRequest] = (),
        tax_amount: Decimal = ZERO,
        freight_amount: Decimal = ZERO,
        due_date: date | None = None,
        notes: str | None = None,
        invoice_id: UUID | None = None,
    ) -> PurchaseInvoice:
        """
        Create a draft material invoice, optionally with its line items.

        Raises:
            DuplicateInvoiceNumberError: number already used by the supplier.
            OverInvoiceError: a line would bill more than was received.
            LotAlreadyClaimedError: a named lot is on another invoice.
        """
        try:
            logger.info("purchasing_invoice_create_started", extra={
                "invoice_type": InvoiceType.MATERIAL.value,
                "supplier_id": str(supplier_id),
                "invoice_number": invoice_number,
                "purchase_order_id": str(purchase_order_id),
                "line_count": len(line_items),
            })

            _require_non_negative("tax_amount", tax_amount)
            _require_non_negative("freight_amount", freight_amount)
            self._require_unique_number(supplier_id, invoice_number)

            invoice = PurchaseInvoiceModel(
                id=invoice_id or uuid4(),
                invoice_type=InvoiceType.MATERIAL.value,
                supplier_id=supplier_id,
                invoice_number=invoice_number,
                invoice_date=invoice_date,
                due_date=due_date,
                purchase_order_id=purchase_order_id,
                subtotal=ZERO,
                tax_amount=tax_amount,
                freight_amount=freight_amount,
                total_amount=ZERO,
                approval_status=ApprovalStatus.PENDING.value,
                finalization_status=FinalizationStatus.INCOMPLETE.value,
                receiving_complete=False,
                financials_complete=False,
                payment_status=PaymentStatus.UNPAID.value,
                amount_paid=ZERO,
                notes=notes,
                created_by_id=actor_id,
            )
            self._session.add(invoice)

            self._add_line_items(invoice, line_items, actor_id)
            self._refresh_totals(invoice)
            self._refresh_finalization_status(invoice)
            self._audit(
                invoice.id, "invoice_created", actor_id,
                to_state=InvoiceState.DRAFT.value,
                detail={"line_count": len(line_items), "invoice_number": invoice_number},
            )
            self._session.flush()

            self._session.commit()
            logger.info("purchasing_invoice_created", extra={
                "invoice_id": str(invoice.id),
                "total_amount": str(invoice.total_amount),
            })
            return invoice.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def create_freight_invoice(
        self,
        *,
        supplier_id: UUID,
        invoice_number: str,
        invoice_date: date,
        total_amount: Decimal,
        actor_id: UUID,
        due_date: date | None = None,
        notes: str | None = None,
        invoice_id: UUID | None = None,
    ) -> PurchaseInvoice:
        """Create a freight invoice; its total becomes linkable freight."""
        try:
            logger.info("purchasing_invoice_create_started", extra={
                "invoice_type": InvoiceType.FREIGHT.value,
                "supplier_id": str(supplier_id),
                "invoice_number": invoice_number,
                "total_amount": str(total_amount),
            })

            _require_non_negative("total_amount", total_amount)
            self._require_unique_number(supplier_id, invoice_number)

            invoice = PurchaseInvoiceModel(
                id=invoice_id or uuid4(),
                invoice_type=InvoiceType.FREIGHT.value,
                supplier_id=supplier_id,
                invoice_number=invoice_number,
                invoice_date=invoice_date,
                due_date=due_date,
                subtotal=total_amount,
                tax_amount=ZERO,
                freight_amount=ZERO,
                total_amount=total_amount,
                approval_status=ApprovalStatus.PENDING.value,
                finalization_status=FinalizationStatus.INCOMPLETE.value,
                receiving_complete=False,
                financials_complete=False,
                payment_status=PaymentStatus.UNPAID.value,
                amount_paid=ZERO,
                notes=notes,
                created_by_id=actor_id,
            )
            self._session.add(invoice)
            self._audit(
                invoice.id, "invoice_created", actor_id,
                to_state=InvoiceState.DRAFT.value,
                detail={"invoice_number": invoice_number, "total_amount": str(total_amount)},
            )
            self._session.flush()

            self._session.commit()
            return invoice.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def add_line_items(
        self,
        invoice_id: UUID,
        line_items: Sequence[LineItemRequest],
        actor_id: UUID,
    ) -> PurchaseInvoice:
        try:
            invoice = self._load_invoice(invoice_id, for_update=True)
            self._require_open(invoice, "add line items")
            self._require_type(invoice, InvoiceType.MATERIAL)

            logger.info("purchasing_line_items_add_started", extra={
                "invoice_id": str(invoice_id),
                "line_count": len(line_items),
            })

            created = self._add_line_items(invoice, line_items, actor_id)
            self._refresh_totals(invoice)
            self._refresh_finalization_status(invoice)
            invoice.updated_by_id = actor_id
            self._audit(
                invoice.id, "line_items_added", actor_id,
                detail={"line_item_ids": [str(item.id) for item in created]},
            )
            self._session.flush()

            self._session.commit()
            return invoice.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def void_line_item(self, line_item_id: UUID, actor_id: UUID) -> InvoiceLineItem:
        """
        Void a line item.  Its quantity stops counting against the PO line
        and its lot claim is released; the row itself is kept.
        """
        try:
            item = self._load_line_item(line_item_id)
            invoice = self._load_invoice(item.invoice_id, for_update=True)
            self._require_open(invoice, "void line item")

            if item.voided_at is not None:
                raise InvalidLineItemError("line item is already voided", str(line_item_id))

            item.voided_at = self._clock.now()
            item.voided_by_id = actor_id
            item.updated_by_id = actor_id
            self._refresh_totals(invoice)
            self._refresh_finalization_status(invoice)
            invoice.updated_by_id = actor_id
            self._audit(
                invoice.id, "line_item_voided", actor_id,
                lot_id=item.receiving_item_id,
                detail={"line_item_id": str(item.id), "quantity": str(item.quantity)},
            )
            self._session.flush()

            self._session.commit()
            logger.info("purchasing_line_item_voided", extra={
                "invoice_id": str(invoice.id),
                "line_item_id": str(line_item_id),
            })
            return item.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def link_receiving_lot(
        self,
        line_item_id: UUID,
        lot_id: UUID,
        actor_id: UUID,
    ) -> InvoiceLineItem:
        """Point a line item at the receiving lot it bills for."""
        try:
            item = self._load_line_item(line_item_id)
            invoice = self._load_invoice(item.invoice_id, for_update=True)
            self._require_open(invoice, "link receiving lot")
            if item.voided_at is not None:
                raise InvalidLineItemError("cannot link a voided line item", str(line_item_id))

            self._check_lot_for_line(invoice, item.po_line, lot_id)
            previous = item.receiving_item_id
            item.receiving_item_id = lot_id
            item.updated_by_id = actor_id
            self._refresh_finalization_status(invoice)
            invoice.updated_by_id = actor_id
            self._audit(
                invoice.id, "receiving_lot_linked", actor_id,
                lot_id=lot_id,
                detail={
                    "line_item_id": str(item.id),
                    "previous_lot_id": str(previous) if previous else None,
                },
            )
            self._session.flush()

            self._session.commit()
            return item.to_dto()

        except Exception:
            self._session.rollback()
            raise

    # =========================================================================
    # Indirect costs
    # =========================================================================

    def update_header_costs(
        self,
        invoice_id: UUID,
        actor_id: UUID,
        *,
        tax_amount: Decimal | None = None,
        freight_amount: Decimal | None = None,
        due_date: date | None = None,
    ) -> PurchaseInvoice:
        try:
            invoice = self._load_invoice(invoice_id, for_update=True)
            self._require_open(invoice, "update header costs")
            self._require_type(invoice, InvoiceType.MATERIAL)

            changes = {}
            if tax_amount is not None:
                _require_non_negative("tax_amount", tax_amount)
                changes["tax_amount"] = str(tax_amount)
                invoice.tax_amount = tax_amount
            if freight_amount is not None:
                _require_non_negative("freight_amount", freight_amount)
                changes["freight_amount"] = str(freight_amount)
                invoice.freight_amount = freight_amount
            if due_date is not None:
                changes["due_date"] = due_date.isoformat()
                invoice.due_date = due_date

            self._refresh_totals(invoice)
            self._refresh_finalization_status(invoice)
            invoice.updated_by_id = actor_id
            self._audit(invoice.id, "header_costs_updated", actor_id, detail=changes)
            self._session.flush()

            self._session.commit()
            return invoice.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def add_additional_cost(
        self,
        invoice_id: UUID,
        cost_type: str,
        amount: Decimal,
        actor_id: UUID,
        description: str | None = None,
    ) -> AdditionalCost:
        """
        Add an indirect cost line.  ``cost_type`` decides the pool it feeds
        (see PurchasingConfig.freight_cost_types / duty_cost_types).
        """
        try:
            invoice = self._load_invoice(invoice_id, for_update=True)
            self._require_open(invoice, "add additional cost")
            self._require_type(invoice, InvoiceType.MATERIAL)

            normalized = normalize_cost_type(cost_type)
            if normalized not in self._config.allowed_cost_types:
                raise ValueError(
                    f"Unknown cost type {cost_type!r}; "
                    f"expected one of {list(self._config.allowed_cost_types)}"
                )
            _require_non_negative("amount", amount)

            position = max((c.position for c in invoice.additional_costs), default=-1) + 1
            cost = AdditionalCostModel(
                id=uuid4(),
                invoice_id=invoice.id,
                position=position,
                cost_type=normalized,
                amount=amount,
                description=description,
                created_by_id=actor_id,
            )
            invoice.additional_costs.append(cost)

            self._refresh_totals(invoice)
            self._refresh_finalization_status(invoice)
            invoice.updated_by_id = actor_id
            self._audit(
                invoice.id, "additional_cost_added", actor_id,
                detail={
                    "cost_id": str(cost.id),
                    "cost_type": normalized,
                    "amount": str(amount),
                    "pool": self._aggregator.bucket_for(normalized),
                },
            )
            self._session.flush()

            self._session.commit()
            return cost.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def remove_additional_cost(self, cost_id: UUID, actor_id: UUID) -> None:
        try:
            cost = self._session.get(AdditionalCostModel, cost_id)
            if cost is None:
                raise AdditionalCostNotFoundError(str(cost_id))
            invoice = self._load_invoice(cost.invoice_id, for_update=True)
            self._require_open(invoice, "remove additional cost")

            invoice.additional_costs.remove(cost)
            self._refresh_totals(invoice)
            self._refresh_finalization_status(invoice)
            invoice.updated_by_id = actor_id
            self._audit(
                invoice.id, "additional_cost_removed", actor_id,
                detail={"cost_id": str(cost_id), "cost_type": cost.cost_type, "amount": str(cost.amount)},
            )
            self._session.flush()

            self._session.commit()

        except Exception:
            self._session.rollback()
            raise

    # =========================================================================
    # Freight links
    # =========================================================================

    def link_freight_invoice(
        self,
        material_invoice_id: UUID,
        freight_invoice_id: UUID,
        actor_id: UUID,
        allocation_amount: Decimal | None = None,
    ) -> FreightLink:
        """
        Attribute a freight invoice (or part of it) to a material invoice.

        Raises:
            DuplicateFreightLinkError: the pair is already linked.
            FreightOverAllocationError: more than the freight invoice has left.
        """
        try:
            material = self._load_invoice(material_invoice_id, for_update=True)
            self._require_open(material, "link freight invoice")
            self._require_type(material, InvoiceType.MATERIAL)
            freight = self._load_invoice(freight_invoice_id, for_update=True)
            self._require_type(freight, InvoiceType.FREIGHT)

            if any(link.freight_invoice_id == freight.id for link in material.freight_links):
                raise DuplicateFreightLinkError(str(material.id), str(freight.id))

            if allocation_amount is not None and allocation_amount <= ZERO:
                raise ValueError(f"allocation_amount must be positive, got {allocation_amount}")
            requested = freight.total_amount if allocation_amount is None else allocation_amount
            available = freight.total_amount - self._selector.linked_freight_amount(freight.id)
            if requested > available:
                logger.warning("freight_over_allocation_rejected", extra={
                    "freight_invoice_id": str(freight.id),
                    "requested": str(requested),
                    "available": str(available),
                })
                raise FreightOverAllocationError(
                    freight_invoice_id=str(freight.id),
                    requested=requested,
                    available=max(available, ZERO),
                )

            link = FreightLinkModel(
                id=uuid4(),
                material_invoice_id=material.id,
                freight_invoice_id=freight.id,
                allocation_amount=allocation_amount,
                created_by_id=actor_id,
            )
            link.freight_invoice = freight
            material.freight_links.append(link)

            self._refresh_finalization_status(material)
            material.updated_by_id = actor_id
            self._audit(
                material.id, "freight_invoice_linked", actor_id,
                detail={
                    "freight_invoice_id": str(freight.id),
                    "amount": str(requested),
                },
            )
            self._session.flush()

            self._session.commit()
            logger.info("purchasing_freight_linked", extra={
                "material_invoice_id": str(material.id),
                "freight_invoice_id": str(freight.id),
                "amount": str(requested),
            })
            return link.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def unlink_freight_invoice(
        self,
        material_invoice_id: UUID,
        freight_invoice_id: UUID,
        actor_id: UUID,
    ) -> None:
        try:
            material = self._load_invoice(material_invoice_id, for_update=True)
            self._require_open(material, "unlink freight invoice")

            link = next(
                (lk for lk in material.freight_links if lk.freight_invoice_id == freight_invoice_id),
                None,
            )
            if link is None:
                raise FreightLinkNotFoundError(str(material.id), str(freight_invoice_id))

            material.freight_links.remove(link)
            self._refresh_finalization_status(material)
            material.updated_by_id = actor_id
            self._audit(
                material.id, "freight_invoice_unlinked", actor_id,
                detail={"freight_invoice_id": str(freight_invoice_id)},
            )
            self._session.flush()

            self._session.commit()

        except Exception:
            self._session.rollback()
            raise

    # =========================================================================
    # Approval workflow
    # =========================================================================

    def submit_for_approval(self, invoice_id: UUID, actor_id: UUID) -> PurchaseInvoice:
        try:
            invoice = self._load_invoice(invoice_id, for_update=True)
            transition = require_transition(invoice, "submit")
            if (
                invoice.invoice_type == InvoiceType.MATERIAL.value
                and not invoice.active_line_items
            ):
                raise InvalidInvoiceTransitionError(
                    invoice_id=str(invoice.id),
                    from_state=transition.from_state,
                    action="submit",
                    reason=transition.guard.description if transition.guard else "",
                )

            invoice.submitted_at = self._clock.now()
            invoice.updated_by_id = actor_id
            self._audit(
                invoice.id, "invoice_submitted", actor_id,
                from_state=transition.from_state, to_state=transition.to_state,
            )
            self._session.flush()

            self._session.commit()
            return invoice.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def approve(self, invoice_id: UUID, actor_id: UUID) -> AllocationRun | None:
        """
        Approve a submitted invoice and run its landed cost allocation.

        Returns the allocation run for material invoices, None for freight
        invoices (which carry no lots).
        """
        with LogContext.bind(invoice_id=invoice_id, actor_id=actor_id):
            try:
                invoice = self._load_invoice(invoice_id, for_update=True)
                self._require_open(invoice, "approve")
                transition = require_transition(invoice, "approve")

                logger.info("purchasing_approve_started", extra={
                    "invoice_id": str(invoice.id),
                    "invoice_type": invoice.invoice_type,
                })

                invoice.approval_status = ApprovalStatus.APPROVED.value
                invoice.approved_at = self._clock.now()
                invoice.approved_by_id = actor_id
                invoice.updated_by_id = actor_id

                run = None
                if invoice.invoice_type == InvoiceType.MATERIAL.value and transition.runs_allocation:
                    run = self._run_allocation(invoice, actor_id)
                    self._refresh_finalization_status(invoice)

                self._audit(
                    invoice.id, "invoice_approved", actor_id,
                    from_state=transition.from_state, to_state=transition.to_state,
                )
                self._session.flush()

                self._session.commit()
                logger.info("purchasing_invoice_approved", extra={
                    "invoice_id": str(invoice.id),
                    "lot_count": len(run.allocations) if run else 0,
                })
                return run

            except Exception:
                self._session.rollback()
                raise

    def reject(
        self,
        invoice_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> PurchaseInvoice:
        """
        Reject a pending or approved invoice.

        Its allocation rows are dropped and the lot costs it wrote are
        cleared; approving again after ``revise`` recomputes them.
        """
        try:
            invoice = self._load_invoice(invoice_id, for_update=True)
            self._require_open(invoice, "reject")
            transition = require_transition(invoice, "reject")

            invoice.approval_status = ApprovalStatus.REJECTED.value
            invoice.approved_at = None
            invoice.approved_by_id = None
            invoice.updated_by_id = actor_id
            cleared = self._release_allocations(invoice)
            self._refresh_finalization_status(invoice)
            detail = {"cleared_lot_ids": [str(i) for i in cleared]}
            if reason:
                detail["reason"] = reason
            self._audit(
                invoice.id, "invoice_rejected", actor_id,
                from_state=transition.from_state, to_state=transition.to_state,
                detail=detail,
            )
            self._session.flush()

            self._session.commit()
            return invoice.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def revise(self, invoice_id: UUID, actor_id: UUID) -> PurchaseInvoice:
        """Send a rejected invoice back to draft."""
        try:
            invoice = self._load_invoice(invoice_id, for_update=True)
            transition = require_transition(invoice, "revise")

            invoice.approval_status = ApprovalStatus.PENDING.value
            invoice.submitted_at = None
            invoice.updated_by_id = actor_id
            self._audit(
                invoice.id, "invoice_revised", actor_id,
                from_state=transition.from_state, to_state=transition.to_state,
            )
            self._session.flush()

            self._session.commit()
            return invoice.to_dto()

        except Exception:
            self._session.rollback()
            raise

    # =========================================================================
    # Allocation
    # =========================================================================

    def recalculate(self, invoice_id: UUID, actor_id: UUID) -> AllocationRun:
        """
        Recompute the landed cost allocation of an open material invoice.

        Idempotent: running it twice on unchanged inputs writes nothing
        the second time.

        Raises:
            InvoiceClosedError: the invoice is closed.
            LotCostLockedError: a lot the invoice covers was finalized by
                another invoice.
        """
        with LogContext.bind(invoice_id=invoice_id, actor_id=actor_id):
            try:
                invoice = self._load_invoice(invoice_id, for_update=True)
                self._require_open(invoice, "recalculate")
                self._require_type(invoice, InvoiceType.MATERIAL)

                logger.info("purchasing_recalculate_started", extra={
                    "invoice_id": str(invoice.id),
                    "line_count": len(invoice.active_line_items),
                })

                run = self._run_allocation(invoice, actor_id)
                self._refresh_finalization_status(invoice)
                self._session.flush()

                self._session.commit()
                return run

            except Exception:
                self._session.rollback()
                raise

    # =========================================================================
    # Finalization
    # =========================================================================

    def attest_checklist_item(
        self,
        invoice_id: UUID,
        item: AttestationItem,
        value: bool,
        actor_id: UUID,
        note: str | None = None,
    ) -> ChecklistAttestation:
        """Record an operator assertion for ``freight_complete`` or ``financials_complete``."""
        try:
            invoice = self._load_invoice(invoice_id, for_update=True)
            self._require_open(invoice, "attest checklist item")
            self._require_type(invoice, InvoiceType.MATERIAL)
            item = AttestationItem(item)

            attestation = ChecklistAttestationModel(
                id=uuid4(),
                invoice_id=invoice.id,
                item=item.value,
                value=bool(value),
                attested_at=self._clock.now(),
                note=note,
                created_by_id=actor_id,
            )
            invoice.attestations.append(attestation)

            if item is AttestationItem.FREIGHT_COMPLETE:
                invoice.freight_complete = bool(value)
            else:
                invoice.financials_complete = bool(value)

            self._refresh_finalization_status(invoice)
            invoice.updated_by_id = actor_id
            self._audit(
                invoice.id, "checklist_attested", actor_id,
                detail={"item": item.value, "value": bool(value)},
            )
            self._session.flush()

            self._session.commit()
            return attestation.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def close_invoice(self, invoice_id: UUID, actor_id: UUID) -> CloseOutcome:
        """
        Close a material invoice and freeze the cost of its lots.

        Phase 1 (all or nothing): lock the invoice row, check the
        checklist, rerun the allocation, mark the invoice closed.
        Phase 2 (best effort): lock each receiving lot in its own
        savepoint.  Failures are reported, not raised.

        Closing an already closed invoice is a no-op that returns
        ``already_closed=True``.

        Raises:
            ChecklistIncompleteError: one or more checklist conditions fail.
            InvoiceTypeError: the invoice is a freight invoice.
        """
        with LogContext.bind(invoice_id=invoice_id, actor_id=actor_id):
            try:
                invoice = self._load_invoice(invoice_id, for_update=True)

                if invoice.is_closed:
                    logger.info("purchasing_close_already_closed", extra={
                        "invoice_id": str(invoice.id),
                        "closed_at": invoice.closed_at.isoformat() if invoice.closed_at else None,
                    })
                    self._session.commit()
                    return CloseOutcome(
                        invoice_id=invoice.id,
                        closed_at=invoice.closed_at,
                        closed_by_id=invoice.closed_by_id,
                        already_closed=True,
                    )

                self._require_type(invoice, InvoiceType.MATERIAL)
                logger.info("purchasing_close_started", extra={
                    "invoice_id": str(invoice.id),
                    "line_count": len(invoice.active_line_items),
                })

                self._checklist.require_ready(self._checklist_inputs(invoice))
                transition = require_transition(invoice, "close")

                run = None
                if self._config.recalculate_on_close and transition.runs_allocation:
                    run = self._run_allocation(invoice, actor_id)
                # Child rows must reach the database while the invoice is still open.
                self._session.flush()

                closed_at = self._clock.now()
                invoice.finalization_status = FinalizationStatus.CLOSED.value
                invoice.receiving_complete = True
                invoice.closed_at = closed_at
                invoice.closed_by_id = actor_id
                invoice.updated_by_id = actor_id
                self._session.flush()

                lock_result = self._lots.lock_lots(
                    self._referenced_lot_ids(invoice), invoice.id, actor_id,
                )

                for failure in lock_result.failures:
                    logger.error("purchasing_close_lot_lock_failed", extra={
                        "invoice_id": str(invoice.id),
                        "lot_id": str(failure.lot_id),
                        "error_code": failure.error_code,
                    })
                    self._audit(
                        invoice.id, "lot_lock_failed", actor_id,
                        lot_id=failure.lot_id,
                        detail={"error_code": failure.error_code, "message": failure.message},
                    )
                self._audit(
                    invoice.id, "invoice_closed", actor_id,
                    from_state=transition.from_state, to_state=transition.to_state,
                    detail={
                        "locked_lot_ids": [str(i) for i in lock_result.locked],
                        "already_locked_lot_ids": [str(i) for i in lock_result.already_locked],
                        "failure_count": len(lock_result.failures),
                    },
                )
                self._session.flush()

                self._session.commit()
                logger.info("purchasing_invoice_closed", extra={
                    "invoice_id": str(invoice.id),
                    "locked_count": len(lock_result.locked),
                    "failure_count": len(lock_result.failures),
                })
                return CloseOutcome(
                    invoice_id=invoice.id,
                    closed_at=closed_at,
                    closed_by_id=actor_id,
                    locked_lot_ids=lock_result.locked + lock_result.already_locked,
                    lock_failures=lock_result.failures,
                    allocation=run,
                )

            except Exception:
                self._session.rollback()
                raise

    # =========================================================================
    # Payment and lifecycle
    # =========================================================================

    def record_payment(
        self,
        invoice_id: UUID,
        amount_paid: Decimal,
        actor_id: UUID,
        payment_date: date | None = None,
        payment_reference: str | None = None,
        payment_status: PaymentStatus | None = None,
    ) -> PurchaseInvoice:
        """
        Record payment against an invoice.  Allowed after close.

        ``payment_status`` is derived from ``amount_paid`` against
        ``total_amount`` unless given.
        """
        try:
            invoice = self._load_invoice(invoice_id, for_update=True)
            _require_non_negative("amount_paid", amount_paid)

            if payment_status is None:
                if amount_paid == ZERO:
                    payment_status = PaymentStatus.UNPAID
                elif amount_paid >= invoice.total_amount:
                    payment_status = PaymentStatus.PAID
                else:
                    payment_status = PaymentStatus.PARTIAL

            invoice.amount_paid = amount_paid
            invoice.payment_status = PaymentStatus(payment_status).value
            invoice.payment_date = payment_date
            invoice.payment_reference = payment_reference
            invoice.updated_by_id = actor_id
            self._audit(
                invoice.id, "payment_recorded", actor_id,
                detail={
                    "amount_paid": str(amount_paid),
                    "payment_status": invoice.payment_status,
                    "payment_reference": payment_reference,
                },
            )
            self._session.flush()

            self._session.commit()
            return invoice.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def update_notes(self, invoice_id: UUID, notes: str | None, actor_id: UUID) -> PurchaseInvoice:
        try:
            invoice = self._load_invoice(invoice_id, for_update=True)
            invoice.notes = notes
            invoice.updated_by_id = actor_id
            self._session.flush()

            self._session.commit()
            return invoice.to_dto()

        except Exception:
            self._session.rollback()
            raise

    def delete_invoice(self, invoice_id: UUID, actor_id: UUID) -> None:
        """
        Delete an open invoice with everything hanging off it.

        Lot costs written by the invoice are cleared.  A freight invoice
        that is still linked to a material invoice cannot be deleted.
        """
        try:
            invoice = self._load_invoice(invoice_id, for_update=True)
            self._require_open(invoice, "delete")

            if invoice.invoice_type == InvoiceType.FREIGHT.value:
                linked_to = self._session.execute(
                    select(FreightLinkModel.material_invoice_id)
                    .where(FreightLinkModel.freight_invoice_id == invoice.id)
                ).scalars().all()
                if linked_to:
                    raise InvalidInvoiceTransitionError(
                        invoice_id=str(invoice.id),
                        from_state=derive_state(invoice).value,
                        action="delete",
                        reason=f"linked to {len(linked_to)} material invoice(s)",
                    )

            cleared = self._release_allocations(invoice)

            self._audit(
                invoice.id, "invoice_deleted", actor_id,
                from_state=derive_state(invoice).value,
                detail={
                    "invoice_number": invoice.invoice_number,
                    "cleared_lot_ids": [str(i) for i in cleared],
                },
            )
            self._session.delete(invoice)
            self._session.flush()

            self._session.commit()
            logger.info("purchasing_invoice_deleted", extra={
                "invoice_id": str(invoice_id),
                "cleared_lot_count": len(cleared),
            })

        except Exception:
            self._session.rollback()
            raise

    # =========================================================================
    # Read helpers
    # =========================================================================

    def get_invoice(self, invoice_id: UUID) -> PurchaseInvoice:
        return self._selector.get_invoice(invoice_id)

    def get_checklist(self, invoice_id: UUID) -> ChecklistResult:
        invoice = self._load_invoice(invoice_id)
        return self._checklist.evaluate(self._checklist_inputs(invoice))

    def get_cost_summary(self, invoice_id: UUID) -> InvoiceCostSummary:
        invoice = self._load_invoice(invoice_id)
        summary = self._summarize(invoice)
        allocated_indirect = sum(
            (a.freight_allocated + a.duty_allocated + a.other_costs_allocated
             for a in invoice.allocations),
            ZERO,
        )
        return InvoiceCostSummary(
            invoice_id=invoice.id,
            total_material_cost=summary.total_material_cost,
            tax_amount=summary.tax_amount,
            freight_amount=summary.freight_amount,
            additional_costs_total=summary.additional_costs_total,
            linked_freight_total=summary.linked_freight_total,
            freight_pool=summary.pools.freight,
            duty_pool=summary.pools.duty,
            other_pool=summary.pools.other,
            total_costs_to_allocate=summary.total_costs_to_allocate,
            grand_total=summary.grand_total,
            allocated_indirect_total=allocated_indirect,
            allocated_landed_total=sum(
                (a.total_landed_cost for a in invoice.allocations), ZERO,
            ),
            additional_by_type=dict(summary.additional_by_type),
        )

    def remaining_invoiceable(self, po_line_id: UUID) -> Decimal:
        return self._selector.remaining_invoiceable(po_line_id)

    def list_invoiceable_lines(self, purchase_order_id: UUID) -> list[InvoiceableLine]:
        return self._selector.list_invoiceable_lines(purchase_order_id)

    def list_available_freight_invoices(
        self,
        material_invoice_id: UUID,
        supplier_id: UUID | None = None,
    ) -> list[AvailableFreightInvoice]:
        return self._selector.list_available_freight_invoices(material_invoice_id, supplier_id)

    # =========================================================================
    # Internals
    # =========================================================================

    def _load_invoice(self, invoice_id: UUID, for_update: bool = False) -> PurchaseInvoiceModel:
        stmt = select(PurchaseInvoiceModel).where(PurchaseInvoiceModel.id == invoice_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        invoice = self._session.execute(stmt).scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def _load_line_item(self, line_item_id: UUID) -> InvoiceLineItemModel:
        item = self._session.get(InvoiceLineItemModel, line_item_id)
        if item is None:
            raise LineItemNotFoundError(str(line_item_id))
        return item

    def _require_open(self, invoice: PurchaseInvoiceModel, operation: str) -> None:
        if invoice.is_closed:
            logger.warning("purchasing_closed_invoice_mutation_rejected", extra={
                "invoice_id": str(invoice.id),
                "operation": operation,
            })
            raise InvoiceClosedError(invoice_id=str(invoice.id), operation=operation)

    def _require_type(self, invoice: PurchaseInvoiceModel, expected: InvoiceType) -> None:
        if invoice.invoice_type != expected.value:
            raise InvoiceTypeError(
                invoice_id=str(invoice.id),
                expected=expected.value,
                actual=invoice.invoice_type,
            )

    def _require_unique_number(self, supplier_id: UUID, invoice_number: str) -> None:
        existing = self._session.execute(
            select(PurchaseInvoiceModel.id).where(
                PurchaseInvoiceModel.supplier_id == supplier_id,
                PurchaseInvoiceModel.invoice_number == invoice_number,
            )
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateInvoiceNumberError(str(supplier_id), invoice_number)

    def _add_line_items(
        self,
        invoice: PurchaseInvoiceModel,
        requests: Sequence[LineItemRequest],
        actor_id: UUID,
    ) -> list[InvoiceLineItemModel]:
        """Validate ``requests`` against the invoice ledger and append them."""
        if not requests:
            return []

        po_lines: dict[UUID, PurchaseOrderLineModel] = {}
        for po_line_id in dict.fromkeys(r.po_line_id for r in requests):
            po_line = self._session.get(
                PurchaseOrderLineModel, po_line_id, with_for_update=True,
            )
            if po_line is None:
                raise PurchaseOrderLineNotFoundError(str(po_line_id))
            if (
                invoice.purchase_order_id is not None
                and po_line.purchase_order_id != invoice.purchase_order_id
            ):
                raise InvalidLineItemError(
                    f"PO line {po_line_id} is not on purchase order {invoice.purchase_order_id}"
                )
            po_lines[po_line_id] = po_line

        self._ledger.check_request(
            [
                RequestedLine(r.po_line_id, r.quantity, r.receiving_item_id)
                for r in requests
            ],
            {line_id: line.quantity_received for line_id, line in po_lines.items()},
            self._selector.ledger_entries(po_lines),
        )

        for request in requests:
            if request.unit_cost is None or request.unit_cost < ZERO:
                raise InvalidLineItemError(
                    f"unit_cost must not be negative, got {request.unit_cost}"
                )
            if request.receiving_item_id is not None:
                self._check_lot_for_line(
                    invoice, po_lines[request.po_line_id], request.receiving_item_id,
                )

        position = max((li.position for li in invoice.line_items), default=-1) + 1
        created = []
        for offset, request in enumerate(requests):
            po_line = po_lines[request.po_line_id]
            item = InvoiceLineItemModel(
                id=uuid4(),
                invoice_id=invoice.id,
                position=position + offset,
                po_line_id=request.po_line_id,
                receiving_item_id=request.receiving_item_id,
                quantity=request.quantity,
                unit_cost=request.unit_cost,
                line_total=request.quantity * request.unit_cost,
                description=request.description or po_line.description,
                created_by_id=actor_id,
            )
            item.po_line = po_line
            invoice.line_items.append(item)
            created.append(item)
        return created

    def _check_lot_for_line(
        self,
        invoice: PurchaseInvoiceModel,
        po_line: PurchaseOrderLineModel,
        lot_id: UUID,
    ) -> None:
        lot = self._lots.get_lot(lot_id)
        if lot.po_line_id != po_line.id:
            raise InvalidLineItemError(
                f"receiving lot {lot_id} was not received against PO line {po_line.id}"
            )
        if self._config.enforce_lot_exclusivity:
            self._ledger.check_lot_claim(lot_id, invoice.id, self._selector.lot_claims(lot_id))

    def _refresh_totals(self, invoice: PurchaseInvoiceModel) -> None:
        if invoice.invoice_type != InvoiceType.MATERIAL.value:
            return
        subtotal = sum((li.line_total for li in invoice.active_line_items), ZERO)
        additional = sum((c.amount for c in invoice.additional_costs), ZERO)
        invoice.subtotal = subtotal
        invoice.total_amount = (
            subtotal + (invoice.tax_amount or ZERO) + (invoice.freight_amount or ZERO) + additional
        )

    def _summarize(self, invoice: PurchaseInvoiceModel) -> CostSummary:
        inputs = InvoiceCostInputs(
            material_line_totals=tuple(li.line_total for li in invoice.active_line_items),
            tax_amount=invoice.tax_amount or ZERO,
            freight_amount=invoice.freight_amount or ZERO,
            additional_costs=tuple(
                AdditionalCharge(c.cost_type, c.amount, c.description)
                for c in invoice.additional_costs
            ),
            linked_freight=tuple(
                LinkedFreight(
                    freight_invoice_id=link.freight_invoice_id,
                    freight_invoice_total=link.freight_invoice.total_amount,
                    allocation_amount=link.allocation_amount,
                )
                for link in invoice.freight_links
            ),
        )
        return self._aggregator.aggregate(inputs=inputs)

    def _checklist_inputs(self, invoice: PurchaseInvoiceModel) -> ChecklistInputs:
        active = invoice.active_line_items
        return ChecklistInputs(
            invoice_id=invoice.id,
            line_item_count=len(active),
            linked_line_item_count=sum(1 for li in active if li.receiving_item_id is not None),
            freight_pool=self._summarize(invoice).pools.freight,
            freight_attested=invoice.freight_complete,
            financials_complete=invoice.financials_complete,
            approved=invoice.approval_status == ApprovalStatus.APPROVED.value,
        )

    def _refresh_finalization_status(self, invoice: PurchaseInvoiceModel) -> None:
        if invoice.is_closed or invoice.invoice_type != InvoiceType.MATERIAL.value:
            return
        result = self._checklist.evaluate(self._checklist_inputs(invoice))
        invoice.finalization_status = (
            FinalizationStatus.READY_TO_CLOSE.value if result.is_ready
            else FinalizationStatus.INCOMPLETE.value
        )

    def _fallback_lot_ids(
        self,
        invoice: PurchaseInvoiceModel,
        po_line: PurchaseOrderLineModel,
    ) -> tuple[UUID, ...]:
        """
        Lots an unlinked line item may resolve to.

        With lot exclusivity on, a sole lot held by another invoice (an
        explicit claim or a cost it wrote) is withheld and the line stays
        unresolved.
        """
        lot_ids = tuple(lot.id for lot in po_line.lots)
        if len(lot_ids) != 1 or not self._config.enforce_lot_exclusivity:
            return lot_ids
        lot = po_line.lots[0]
        claimant = self._ledger.claiming_invoice(
            lot.id, invoice.id, self._selector.lot_claims(lot.id),
        )
        if claimant is None and lot.cost_invoice_id not in (None, invoice.id):
            claimant = lot.cost_invoice_id
        if claimant is None:
            return lot_ids
        logger.info("purchasing_lot_fallback_withheld", extra={
            "invoice_id": str(invoice.id),
            "lot_id": str(lot.id),
            "claiming_invoice_id": str(claimant),
        })
        return ()

    def _line_item_input(
        self,
        invoice: PurchaseInvoiceModel,
        item: InvoiceLineItemModel,
    ) -> LineItemInput:
        po_line = item.po_line
        material = po_line.material
        lot_ids = (
            () if item.receiving_item_id is not None
            else self._fallback_lot_ids(invoice, po_line)
        )
        return LineItemInput(
            line_item_id=item.id,
            po_line_id=item.po_line_id,
            quantity=item.quantity,
            unit_cost=item.unit_cost,
            pack_to_base_conversion=material.pack_to_base_conversion,
            usage_unit_conversion=material.usage_unit_conversion,
            receiving_item_id=item.receiving_item_id,
            po_line_lot_ids=lot_ids,
        )

    def _run_allocation(self, invoice: PurchaseInvoiceModel, actor_id: UUID) -> AllocationRun:
        """
        Recompute allocation rows and lot costs for ``invoice`` (flush only).

        Raises:
            LotCostLockedError: a target lot is finalized.
        """
        summary = self._summarize(invoice)
        result = self._landed_cost.compute(
            invoice_id=invoice.id,
            line_items=[self._line_item_input(invoice, li) for li in invoice.active_line_items],
            pools=summary.pools,
        )

        existing = {row.receiving_lot_id: row for row in invoice.allocations}
        rows = []
        for allocation in result.allocations:
            lot = self._lots.get_lot(allocation.lot_id, for_update=True)
            self._lots.write_cost(
                lot, invoice.id, allocation.total_landed_cost, allocation.cost_per_base_unit,
            )
            values = {name: getattr(allocation, name) for name in _ALLOCATION_FIELDS}

            row = existing.pop(allocation.lot_id, None)
            if row is None:
                row = LandedCostAllocationModel(
                    id=allocation_id_for(invoice.id, allocation.lot_id),
                    invoice_id=invoice.id,
                    receiving_lot_id=allocation.lot_id,
                    created_by_id=actor_id,
                    **values,
                )
                invoice.allocations.append(row)
            elif _assign_changed(row, values):
                row.updated_by_id = actor_id
            rows.append(row)

        removed = []
        for lot_id, row in existing.items():
            lot = self._session.get(ReceivingLotModel, lot_id)
            if lot is not None:
                self._lots.clear_cost(lot, invoice.id)
            invoice.allocations.remove(row)
            removed.append(lot_id)

        self._session.flush()

        run = AllocationRun(
            invoice_id=invoice.id,
            allocations=tuple(row.to_dto() for row in rows),
            total_allocated=result.total_allocated,
            unallocated=result.unallocated.total,
            unresolved_line_ids=tuple(result.unresolved_line_ids),
            removed_lot_ids=tuple(removed),
        )
        self._audit(
            invoice.id, "allocation_recalculated", actor_id,
            detail={
                "lot_count": len(rows),
                "total_allocated": str(run.total_allocated),
                "unallocated": str(run.unallocated),
                "removed_lot_ids": [str(i) for i in removed],
                "unresolved_line_ids": [str(i) for i in run.unresolved_line_ids],
            },
        )
        if run.unallocated != ZERO:
            logger.warning("purchasing_allocation_incomplete", extra={
                "invoice_id": str(invoice.id),
                "unallocated": str(run.unallocated),
                "unresolved_count": len(run.unresolved_line_ids),
            })
        return run

    def _release_allocations(self, invoice: PurchaseInvoiceModel) -> list[UUID]:
        """Drop the invoice's allocation rows and clear the lot costs it wrote."""
        cleared = []
        for row in list(invoice.allocations):
            lot = self._session.get(ReceivingLotModel, row.receiving_lot_id)
            if lot is not None and self._lots.clear_cost(lot, invoice.id):
                cleared.append(lot.id)
            invoice.allocations.remove(row)
        return cleared

    def _referenced_lot_ids(self, invoice: PurchaseInvoiceModel) -> list[UUID]:
        """Lots on the invoice's allocation rows and non-voided line items."""
        lot_ids = [row.receiving_lot_id for row in invoice.allocations]
        lot_ids.extend(
            li.receiving_item_id for li in invoice.active_line_items
            if li.receiving_item_id is not None
        )
        return list(dict.fromkeys(lot_ids))

    def _audit(
        self,
        invoice_id: UUID,
        action: str,
        actor_id: UUID,
        *,
        from_state: str | None = None,
        to_state: str | None = None,
        lot_id: UUID | None = None,
        detail: dict | None = None,
    ) -> None:
        self._session.add(PurchasingAuditEntryModel(
            id=uuid4(),
            invoice_id=invoice_id,
            action=action,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            from_state=from_state,
            to_state=to_state,
            lot_id=lot_id,
            detail=detail,
        ))


def _require_non_negative(name: str, value: Decimal) -> None:
    if value is None or value < ZERO:
        raise ValueError(f"{name} must not be negative, got {value}")


def _assign_changed(row, values: dict) -> bool:
    """Set attributes that differ; return True when anything changed."""
    changed = False
    for name, value in values.items():
        if getattr(row, name) != value:
            setattr(row, name, value)
            changed = True
    return changed
