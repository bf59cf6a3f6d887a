"""
Tests for LotCostLockService.

Covers:
- Cost writes on open lots
- Monotonic lock with actor and timestamp
- Per-lot failure isolation in lock_lots
- Refusal of cost writes once finalized
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from costing_kernel.exceptions import LotCostLockedError
from costing_kernel.services.lot_cost_lock_service import LotCostLockService


@pytest.fixture
def lock_service(session, deterministic_clock):
    return LotCostLockService(session, clock=deterministic_clock)


@pytest.fixture
def lot(create_po_line, create_lot):
    return create_lot(create_po_line())


class TestWriteCost:
    def test_write_on_open_lot(self, session, lock_service, lot):
        invoice_id = uuid4()
        lock_service.write_cost(lot, invoice_id, Decimal("110.00"), Decimal("1.100000"))
        session.flush()

        assert lot.landed_cost_total == Decimal("110.00")
        assert lot.landed_unit_cost == Decimal("1.100000")
        assert lot.cost_invoice_id == invoice_id

    def test_clear_cost_only_for_writing_invoice(self, session, lock_service, lot):
        invoice_id = uuid4()
        lock_service.write_cost(lot, invoice_id, Decimal("5.00"), Decimal("0.5"))

        assert lock_service.clear_cost(lot, uuid4()) is False
        assert lot.landed_cost_total == Decimal("5.00")

        assert lock_service.clear_cost(lot, invoice_id) is True
        assert lot.landed_cost_total is None
        assert lot.cost_invoice_id is None


class TestLockLots:
    def test_lock_sets_finalized_fields(
        self, session, lock_service, lot, test_actor_id, deterministic_clock,
    ):
        invoice_id = uuid4()
        result = lock_service.lock_lots([lot.id], invoice_id, test_actor_id)

        assert result.locked == (lot.id,)
        assert result.all_locked
        assert lot.cost_finalized is True
        assert lot.cost_finalized_at == deterministic_clock.now()
        assert lot.cost_finalized_by_id == test_actor_id
        assert lot.cost_invoice_id == invoice_id

    def test_second_lock_reports_already_locked(self, session, lock_service, lot, test_actor_id):
        invoice_id = uuid4()
        lock_service.lock_lots([lot.id], invoice_id, test_actor_id)
        result = lock_service.lock_lots([lot.id, lot.id], invoice_id, test_actor_id)

        assert result.locked == ()
        assert result.already_locked == (lot.id,)

    def test_missing_lot_reported_others_locked(
        self, session, lock_service, lot, test_actor_id, captured_logs,
    ):
        missing = uuid4()
        result = lock_service.lock_lots([missing, lot.id], uuid4(), test_actor_id)

        assert result.locked == (lot.id,)
        assert len(result.failures) == 1
        assert result.failures[0].lot_id == missing
        assert result.failures[0].error_code == "RECEIVING_LOT_NOT_FOUND"
        assert lot.cost_finalized is True

        errors = [r for r in captured_logs() if r["message"] == "lot_cost_lock_failed"]
        assert len(errors) == 1
        assert errors[0]["level"] == "ERROR"


class TestFinalizedLot:
    def test_write_cost_refused(self, session, lock_service, lot, test_actor_id):
        invoice_id = uuid4()
        lock_service.lock_lots([lot.id], invoice_id, test_actor_id)

        with pytest.raises(LotCostLockedError) as exc_info:
            lock_service.write_cost(lot, uuid4(), Decimal("1.00"), Decimal("1"))
        assert exc_info.value.lot_id == str(lot.id)
        assert exc_info.value.invoice_id == str(invoice_id)

    def test_clear_cost_refused(self, session, lock_service, lot, test_actor_id):
        invoice_id = uuid4()
        lock_service.write_cost(lot, invoice_id, Decimal("5.00"), Decimal("0.5"))
        lock_service.lock_lots([lot.id], invoice_id, test_actor_id)

        with pytest.raises(LotCostLockedError):
            lock_service.clear_cost(lot, invoice_id)
        assert lot.landed_cost_total == Decimal("5.00")
