"""Tests for the invoice-scoped fields of the structured log output."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from costing_kernel.exceptions import OverInvoiceError
from costing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture
def log_stream():
    """Fresh costing_kernel handler writing JSON lines to a buffer."""
    reset_logging()
    LogContext.clear()
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    configure_logging(handler=handler, level=logging.DEBUG)

    def _records() -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines() if line]

    yield _records
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


class TestInvoiceContext:
    def test_bound_invoice_and_actor_on_every_record(self, log_stream):
        invoice_id, actor_id = uuid4(), uuid4()
        logger = get_logger("modules.purchasing.service")

        with LogContext.bind(invoice_id=invoice_id, actor_id=actor_id):
            logger.info("purchasing_invoice_closed")
        logger.info("after_close")

        inside, after = log_stream()
        assert inside["invoice_id"] == str(invoice_id)
        assert inside["actor_id"] == str(actor_id)
        assert inside["logger"] == "costing_kernel.modules.purchasing.service"
        assert "invoice_id" not in after

    def test_nested_bind_restores_outer_invoice(self, log_stream):
        with LogContext.bind(invoice_id="material-1"):
            with LogContext.bind(invoice_id="freight-1"):
                assert LogContext.get_all()["invoice_id"] == "freight-1"
            assert LogContext.get_all()["invoice_id"] == "material-1"

    def test_unknown_field_rejected(self, log_stream):
        with pytest.raises(KeyError):
            LogContext.set(lot_number="L-1")
        with pytest.raises(KeyError):
            with LogContext.bind(lot_number="L-1"):
                pass


class TestDecimalPayloads:
    """Quantities and amounts are logged as fixed-point strings."""

    @pytest.mark.parametrize("value,expected", [
        (Decimal("10.50"), "10.50"),
        (Decimal("1E+2"), "100"),
        (Decimal("40.000000000"), "40.000000000"),
        (Decimal("-0.01"), "-0.01"),
    ])
    def test_decimal_extra(self, log_stream, value, expected):
        get_logger("engines.landed_cost").info("landed_cost_computed", extra={"pool_total": value})
        assert log_stream()[0]["pool_total"] == expected

    def test_lot_ids_serialized(self, log_stream):
        lot_id = uuid4()
        get_logger("services.lot_cost_lock").info("lots_locked", extra={
            "lot_ids": frozenset({lot_id}),
        })
        assert log_stream()[0]["lot_ids"] == [str(lot_id)]


class TestExceptionFolding:
    def test_over_invoice_fields_folded(self, log_stream):
        logger = get_logger("engines.invoice_ledger")
        try:
            raise OverInvoiceError("po-line-1", Decimal("51"), Decimal("50"))
        except OverInvoiceError:
            logger.error("over_invoice_rejected", exc_info=True)

        record = log_stream()[0]
        assert record["exc_code"] == "OVER_INVOICE"
        assert record["exc_type"] == "OverInvoiceError"
        assert record["exc_po_line_id"] == "po-line-1"
        assert record["exc_requested"] == "51"
        assert record["exc_remaining"] == "50"
        assert "traceback" in record
