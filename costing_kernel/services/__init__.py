"""Kernel services (flush-only; the caller owns the transaction)."""

from costing_kernel.services.base import BaseService
from costing_kernel.services.lot_cost_lock_service import (
    LockResult,
    LotCostLockService,
    LotLockFailure,
)

__all__ = ["BaseService", "LotCostLockService", "LockResult", "LotLockFailure"]
