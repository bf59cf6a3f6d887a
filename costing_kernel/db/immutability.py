"""
ORM-Level Immutability Enforcement.

Two kinds of record freeze once costing is final:

Entity                  | When immutable                         | Error
------------------------|----------------------------------------|---------------------
ReceivingLot            | Cost fields once cost_finalized = true | LotCostLockedError
                        | cost_finalized true -> false           | LotCostLockedError
PurchaseInvoice         | Every field except payment/notes once  | InvoiceClosedError
                        | finalization_status = closed           |
InvoiceLineItem,        | Insert/update/delete while the parent  | InvoiceClosedError
AdditionalCost,         | invoice is closed                      |
FreightLink,            |                                        |
LandedCostAllocation    |                                        |
PurchasingAuditEntry    | ALWAYS (append-only)                   | ImmutabilityViolationError

SQLAlchemy fires mapper events before the SQL for a flush is emitted:

    session.flush()
         |
         v
    [before_insert/update/delete] --> _check_*() --> raise
         |
         v
    SQL sent to database (only if checks pass)

The services check the same rules first and raise the same errors; these
listeners are the final arbiter regardless of caller.

Detection uses attribute history: "was closed" is read from the value
before this flush, so the transition that closes the invoice (or finalizes
the lot) is itself allowed, and everything after it is blocked.

Usage:

    from costing_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # idempotent; init_engine_from_url calls it
"""

from sqlalchemy import event, inspect, select
from sqlalchemy.orm.attributes import get_history

from costing_kernel.exceptions import (
    ImmutabilityViolationError,
    InvoiceClosedError,
    LotCostLockedError,
)
from costing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

CLOSED = "closed"

# Invoice fields that stay writable after close (not cost-bearing).
INVOICE_MUTABLE_AFTER_CLOSE = frozenset({
    "payment_status",
    "amount_paid",
    "payment_date",
    "payment_reference",
    "notes",
    "updated_at",
    "updated_by_id",
})


def _value_before_flush(target, key):
    """Value of ``key`` as of the last load/flush (ignores pending changes)."""
    history = get_history(target, key)
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return None


def _changed_fields(target, allowed=frozenset()):
    changed = []
    for attr in inspect(target).mapper.column_attrs:
        if attr.key in allowed:
            continue
        if get_history(target, attr.key).has_changes():
            changed.append(attr.key)
    return changed


# =============================================================================
# ReceivingLot cost lock
# =============================================================================


def _check_receiving_lot_cost_lock(mapper, connection, target):
    """
    Block cost writes to a finalized lot, and un-finalizing it.

    Allowed:
        cost_finalized False -> True, together with final cost fields.
    Blocked:
        Any change to LOT_COST_FIELDS once cost_finalized was already true.
        cost_finalized True -> False.
    """
    from costing_kernel.models.receiving_lot import LOT_COST_FIELDS

    was_finalized = bool(_value_before_flush(target, "cost_finalized"))
    if not was_finalized:
        return

    changed = [
        key for key in (*LOT_COST_FIELDS, "cost_finalized", "cost_finalized_at")
        if get_history(target, key).has_changes()
    ]
    if not changed:
        return

    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "ReceivingLot",
            "entity_id": str(target.id),
            "operation": "UPDATE",
            "fields": changed,
        },
    )
    raise LotCostLockedError(
        lot_id=str(target.id),
        invoice_id=str(target.cost_invoice_id) if target.cost_invoice_id else None,
    )


# =============================================================================
# PurchaseInvoice closed
# =============================================================================


def _check_invoice_closed_update(mapper, connection, target):
    """
    A closed invoice is read-only except for payment fields and notes.

    The close itself (status -> closed, closed_at, closed_by_id,
    receiving_complete) happens while the stored status is not yet closed
    and therefore passes.
    """
    if _value_before_flush(target, "finalization_status") != CLOSED:
        return

    changed = _changed_fields(target, INVOICE_MUTABLE_AFTER_CLOSE)
    if not changed:
        return

    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "PurchaseInvoice",
            "entity_id": str(target.id),
            "operation": "UPDATE",
            "fields": changed,
        },
    )
    raise InvoiceClosedError(invoice_id=str(target.id), operation="update")


def _check_invoice_closed_delete(mapper, connection, target):
    if _value_before_flush(target, "finalization_status") != CLOSED:
        return

    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "PurchaseInvoice",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise InvoiceClosedError(invoice_id=str(target.id), operation="delete")


def _parent_invoice_is_closed(connection, invoice_id) -> bool:
    from costing_modules.purchasing.orm import PurchaseInvoiceModel

    status = connection.execute(
        select(PurchaseInvoiceModel.finalization_status).where(
            PurchaseInvoiceModel.id == invoice_id
        )
    ).scalar_one_or_none()
    return status == CLOSED


def _make_child_check(entity_type: str, parent_key: str, operation: str):
    def _check(mapper, connection, target):
        parent_id = getattr(target, parent_key)
        if parent_id is None or not _parent_invoice_is_closed(connection, parent_id):
            return
        logger.error(
            "immutability_violation_blocked",
            extra={
                "entity_type": entity_type,
                "entity_id": str(target.id) if target.id else None,
                "invoice_id": str(parent_id),
                "operation": operation.upper(),
            },
        )
        raise InvoiceClosedError(
            invoice_id=str(parent_id),
            operation=f"{operation} {entity_type}",
        )

    _check.__name__ = f"_check_{entity_type}_{operation}"
    return _check


def _check_audit_entry_append_only(mapper, connection, target):
    """Audit entries are never updated or deleted."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "PurchasingAuditEntry",
            "entity_id": str(target.id),
        },
    )
    raise ImmutabilityViolationError(
        entity_type="PurchasingAuditEntry",
        entity_id=str(target.id),
        reason="audit entries are append-only",
    )


# =============================================================================
# Registration
# =============================================================================

_child_checks: dict[tuple[str, str], object] = {}


def _listener_table():
    """(model, event name, listener) for every rule in this module."""
    from costing_kernel.models.receiving_lot import ReceivingLotModel
    from costing_modules.purchasing.orm import (
        AdditionalCostModel,
        FreightLinkModel,
        InvoiceLineItemModel,
        LandedCostAllocationModel,
        PurchaseInvoiceModel,
        PurchasingAuditEntryModel,
    )

    table = [
        (ReceivingLotModel, "before_update", _check_receiving_lot_cost_lock),
        (PurchaseInvoiceModel, "before_update", _check_invoice_closed_update),
        (PurchaseInvoiceModel, "before_delete", _check_invoice_closed_delete),
        (PurchasingAuditEntryModel, "before_update", _check_audit_entry_append_only),
        (PurchasingAuditEntryModel, "before_delete", _check_audit_entry_append_only),
    ]

    children = (
        (InvoiceLineItemModel, "InvoiceLineItem", "invoice_id"),
        (AdditionalCostModel, "AdditionalCost", "invoice_id"),
        (FreightLinkModel, "FreightLink", "material_invoice_id"),
        (LandedCostAllocationModel, "LandedCostAllocation", "invoice_id"),
    )
    for model, entity_type, parent_key in children:
        for operation in ("insert", "update", "delete"):
            key = (entity_type, operation)
            if key not in _child_checks:
                _child_checks[key] = _make_child_check(entity_type, parent_key, operation)
            table.append((model, f"before_{operation}", _child_checks[key]))

    return table


def register_immutability_listeners():
    """
    Register all immutability listeners.

    Idempotent: listeners already registered are not added twice.
    """
    for model, event_name, listener in _listener_table():
        if not event.contains(model, event_name, listener):
            event.listen(model, event_name, listener)


def unregister_immutability_listeners():
    """
    Remove the immutability listeners.

    WARNING: tests only, to prove the service-level checks on their own.
    """
    for model, event_name, listener in _listener_table():
        if event.contains(model, event_name, listener):
            event.remove(model, event_name, listener)
