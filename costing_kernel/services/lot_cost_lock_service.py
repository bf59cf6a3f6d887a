"""
LotCostLockService -- freezes and guards receiving lot cost fields.

Responsibility:
    Write landed cost onto receiving lots while they are open, and flip
    ``cost_finalized`` when the invoice that costed them closes.  After
    that, every cost write to the lot is refused.

Architecture position:
    Kernel > Services -- imperative shell, flush-only.  The caller
    (PurchasingService) owns the transaction.

Invariants enforced:
    - Monotonic lock: cost_finalized never returns to false.
    - Cost fields of a finalized lot never change (also enforced by the
      before_update listener in costing_kernel.db.immutability).
    - Each lot is locked inside its own savepoint: one failing lot is
      rolled back alone and reported, the rest of the transaction
      (including the invoice close) survives.

Failure modes:
    - LotCostLockedError from write_cost on a finalized lot.
    - lock_lots never raises per-lot errors; they come back in
      LockResult.failures and are logged at ERROR.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.exceptions import (
    CostingKernelError,
    LotCostLockedError,
    ReceivingLotNotFoundError,
)
from costing_kernel.logging_config import get_logger
from costing_kernel.models.receiving_lot import ReceivingLotModel
from costing_kernel.services.base import BaseService

logger = get_logger("services.lot_cost_lock")


@dataclass(frozen=True)
class LotLockFailure:
    """A lot that could not be locked, with the reason."""

    lot_id: UUID
    error_code: str
    message: str


@dataclass(frozen=True)
class LockResult:
    invoice_id: UUID
    locked: tuple[UUID, ...] = field(default_factory=tuple)
    already_locked: tuple[UUID, ...] = field(default_factory=tuple)
    failures: tuple[LotLockFailure, ...] = field(default_factory=tuple)

    @property
    def all_locked(self) -> bool:
        return not self.failures


class LotCostLockService(BaseService[ReceivingLotModel]):
    """
    Lock receiving lot costs.

    Contract:
        write_cost/clear_cost refuse finalized lots; lock_lots is
        idempotent per lot and isolates failures with savepoints.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def get_lot(self, lot_id: UUID, for_update: bool = False) -> ReceivingLotModel:
        lot = self.session.get(ReceivingLotModel, lot_id, with_for_update=for_update)
        if lot is None:
            raise ReceivingLotNotFoundError(str(lot_id))
        return lot

    def assert_cost_writable(self, lot: ReceivingLotModel, invoice_id: UUID | None = None) -> None:
        if lot.cost_finalized:
            logger.warning("lot_cost_write_rejected", extra={
                "lot_id": str(lot.id),
                "invoice_id": str(invoice_id) if invoice_id else None,
                "locked_by_invoice_id": str(lot.cost_invoice_id) if lot.cost_invoice_id else None,
            })
            raise LotCostLockedError(
                lot_id=str(lot.id),
                invoice_id=str(lot.cost_invoice_id) if lot.cost_invoice_id else None,
            )

    def write_cost(
        self,
        lot: ReceivingLotModel,
        invoice_id: UUID,
        landed_cost_total: Decimal,
        landed_unit_cost: Decimal | None,
    ) -> None:
        """Write allocation output onto an open lot."""
        self.assert_cost_writable(lot, invoice_id)
        lot.landed_cost_total = landed_cost_total
        lot.landed_unit_cost = landed_unit_cost
        lot.cost_invoice_id = invoice_id

    def clear_cost(self, lot: ReceivingLotModel, invoice_id: UUID) -> bool:
        """
        Clear cost fields written by ``invoice_id``.

        Returns False (and leaves the lot alone) when another invoice wrote
        the current cost.
        """
        if lot.cost_invoice_id != invoice_id:
            return False
        self.assert_cost_writable(lot, invoice_id)
        lot.landed_cost_total = None
        lot.landed_unit_cost = None
        lot.cost_invoice_id = None
        return True

    def lock_lots(
        self,
        lot_ids: Iterable[UUID],
        invoice_id: UUID,
        actor_id: UUID,
    ) -> LockResult:
        """
        Set cost_finalized on every lot; best effort per lot.

        Postconditions:
            - Each lot id appears in exactly one of locked, already_locked
              or failures.
        """
        locked: list[UUID] = []
        already_locked: list[UUID] = []
        failures: list[LotLockFailure] = []

        for lot_id in dict.fromkeys(lot_ids):
            try:
                with self.session.begin_nested():
                    if self._lock_one(lot_id, invoice_id, actor_id):
                        locked.append(lot_id)
                    else:
                        already_locked.append(lot_id)
            except (CostingKernelError, SQLAlchemyError) as exc:
                code = getattr(exc, "code", type(exc).__name__)
                failures.append(LotLockFailure(lot_id=lot_id, error_code=code, message=str(exc)))
                logger.error("lot_cost_lock_failed", extra={
                    "lot_id": str(lot_id),
                    "invoice_id": str(invoice_id),
                    "error_code": code,
                }, exc_info=True)

        logger.info("lot_cost_lock_completed", extra={
            "invoice_id": str(invoice_id),
            "locked_count": len(locked),
            "already_locked_count": len(already_locked),
            "failure_count": len(failures),
        })

        return LockResult(
            invoice_id=invoice_id,
            locked=tuple(locked),
            already_locked=tuple(already_locked),
            failures=tuple(failures),
        )

    def _lock_one(self, lot_id: UUID, invoice_id: UUID, actor_id: UUID) -> bool:
        """Lock a single lot.  Returns False when it was already locked."""
        lot = self.get_lot(lot_id, for_update=True)
        if lot.cost_finalized:
            logger.debug("lot_already_locked", extra={
                "lot_id": str(lot_id),
                "cost_invoice_id": str(lot.cost_invoice_id) if lot.cost_invoice_id else None,
            })
            return False

        lot.cost_finalized = True
        lot.cost_finalized_at = self._clock.now()
        lot.cost_finalized_by_id = actor_id
        if lot.cost_invoice_id is None:
            lot.cost_invoice_id = invoice_id
        self.session.flush()

        logger.info("lot_cost_locked", extra={
            "lot_id": str(lot_id),
            "invoice_id": str(invoice_id),
            "landed_unit_cost": str(lot.landed_unit_cost) if lot.landed_unit_cost is not None else None,
        })
        return True
