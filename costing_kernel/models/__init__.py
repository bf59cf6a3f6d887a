"""Kernel ORM models: reference data read by the landed cost core."""

from costing_kernel.models.purchase_order import MaterialModel, PurchaseOrderLineModel
from costing_kernel.models.receiving_lot import LOT_COST_FIELDS, ReceivingLotModel

__all__ = [
    "MaterialModel",
    "PurchaseOrderLineModel",
    "ReceivingLotModel",
    "LOT_COST_FIELDS",
]
