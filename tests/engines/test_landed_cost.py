"""
Tests for the Landed Cost Engine.

Covers:
- Freight split by usage quantity across lots
- Unit conversions (pack to base, base to usage)
- Lot resolution and grouping of line items
- Per-pool rounding conservation
- Zero usage and zero base quantity
"""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from costing_engines.cost_aggregation import CostPools
from costing_engines.landed_cost import LandedCostEngine, LineItemInput


def _line(line_id, lot_id, quantity, unit_cost="1.00", po_line="po-1", **kwargs):
    return LineItemInput(
        line_item_id=line_id,
        po_line_id=po_line,
        quantity=Decimal(quantity),
        unit_cost=Decimal(unit_cost),
        receiving_item_id=lot_id,
        **kwargs,
    )


class TestFreightSplit:
    """Freight follows usage quantity."""

    def setup_method(self):
        self.engine = LandedCostEngine()

    def test_forty_freight_over_two_lots(self):
        result = self.engine.compute(
            invoice_id="inv-1",
            line_items=[
                _line("li-a", "lot-a", "100", "1.00"),
                _line("li-b", "lot-b", "300", "2.00"),
            ],
            pools=CostPools(freight=Decimal("40.00")),
        )

        lot_a = result.for_lot("lot-a")
        lot_b = result.for_lot("lot-b")
        assert lot_a.freight_allocated == Decimal("10.00")
        assert lot_b.freight_allocated == Decimal("30.00")
        assert lot_a.material_cost == Decimal("100.00")
        assert lot_b.material_cost == Decimal("600.00")
        assert lot_a.total_landed_cost == Decimal("110.00")
        assert lot_b.total_landed_cost == Decimal("630.00")
        assert lot_a.cost_per_base_unit == Decimal("1.100000")
        assert lot_b.cost_per_base_unit == Decimal("2.100000")
        assert result.total_allocated == Decimal("40.00")
        assert result.is_fully_allocated

    def test_pools_split_independently(self):
        result = self.engine.compute(
            invoice_id="inv-1",
            line_items=[
                _line("li-a", "lot-a", "1"),
                _line("li-b", "lot-b", "3"),
            ],
            pools=CostPools(
                freight=Decimal("4.00"),
                duty=Decimal("8.00"),
                other=Decimal("2.00"),
            ),
        )

        lot_b = result.for_lot("lot-b")
        assert lot_b.freight_allocated == Decimal("3.00")
        assert lot_b.duty_allocated == Decimal("6.00")
        assert lot_b.other_costs_allocated == Decimal("1.50")
        assert lot_b.indirect_allocated == Decimal("10.50")

    def test_each_pool_conserved(self):
        result = self.engine.compute(
            invoice_id="inv-1",
            line_items=[
                _line("li-a", "lot-a", "1"),
                _line("li-b", "lot-b", "1"),
                _line("li-c", "lot-c", "1"),
            ],
            pools=CostPools(freight=Decimal("100.00"), duty=Decimal("0.05")),
        )

        assert sum(a.freight_allocated for a in result.allocations) == Decimal("100.00")
        assert sum(a.duty_allocated for a in result.allocations) == Decimal("0.05")
        assert result.allocations[0].freight_allocated == Decimal("33.34")

    def test_no_pools_yields_material_only(self):
        result = self.engine.compute(
            invoice_id="inv-1",
            line_items=[_line("li-a", "lot-a", "4", "2.50")],
            pools=CostPools(),
        )
        row = result.allocations[0]
        assert row.indirect_allocated == Decimal("0")
        assert row.total_landed_cost == Decimal("10.00")
        assert row.cost_per_base_unit == Decimal("2.500000")


class TestUnitConversions:
    """Base and usage quantities."""

    def setup_method(self):
        self.engine = LandedCostEngine()

    def test_pack_and_usage_conversion(self):
        item = _line(
            "li-a", "lot-a", "10", "12.00",
            pack_to_base_conversion=Decimal("12"),
            usage_unit_conversion=Decimal("0.5"),
        )
        assert item.quantity_in_base_unit == Decimal("120")
        assert item.usage_quantity == Decimal("60.0")

    @pytest.mark.parametrize("conversion", [None, Decimal("0"), Decimal("-2")])
    def test_missing_or_non_positive_usage_conversion_is_one(self, conversion):
        item = _line("li-a", "lot-a", "5", usage_unit_conversion=conversion)
        assert item.usage_quantity == Decimal("5")

    def test_usage_weights_drive_split_not_base_quantity(self):
        result = self.engine.compute(
            invoice_id="inv-1",
            line_items=[
                _line("li-a", "lot-a", "10", usage_unit_conversion=Decimal("3")),
                _line("li-b", "lot-b", "10"),
            ],
            pools=CostPools(freight=Decimal("8.00")),
        )
        assert result.for_lot("lot-a").freight_allocated == Decimal("6.00")
        assert result.for_lot("lot-b").freight_allocated == Decimal("2.00")

    def test_cost_per_base_unit_uses_base_quantity(self):
        result = self.engine.compute(
            invoice_id="inv-1",
            line_items=[
                _line("li-a", "lot-a", "2", "24.00", pack_to_base_conversion=Decimal("12")),
            ],
            pools=CostPools(freight=Decimal("6.00")),
        )
        row = result.for_lot("lot-a")
        assert row.quantity_in_base_unit == Decimal("24")
        assert row.total_landed_cost == Decimal("54.00")
        assert row.cost_per_base_unit == Decimal("2.250000")


class TestLotResolution:
    """Line items map to receiving lots."""

    def setup_method(self):
        self.engine = LandedCostEngine()

    def test_line_items_on_same_lot_are_summed(self):
        result = self.engine.compute(
            invoice_id="inv-1",
            line_items=[
                _line("li-1", "lot-a", "10", "1.00"),
                _line("li-2", "lot-a", "30", "1.00"),
                _line("li-3", "lot-b", "40", "1.00"),
            ],
            pools=CostPools(freight=Decimal("8.00")),
        )

        assert len(result.allocations) == 2
        lot_a = result.for_lot("lot-a")
        assert lot_a.line_item_ids == ("li-1", "li-2")
        assert lot_a.usage_quantity == Decimal("40")
        assert lot_a.freight_allocated == Decimal("4.00")

    def test_single_po_line_lot_is_used_when_unlinked(self):
        item = LineItemInput(
            line_item_id="li-1",
            po_line_id="po-1",
            quantity=Decimal("5"),
            unit_cost=Decimal("1"),
            po_line_lot_ids=("lot-only",),
        )
        assert item.resolve_lot() == "lot-only"

    def test_ambiguous_line_is_unresolved(self):
        result = self.engine.compute(
            invoice_id="inv-1",
            line_items=[
                _line("li-a", "lot-a", "10"),
                LineItemInput(
                    line_item_id="li-x",
                    po_line_id="po-2",
                    quantity=Decimal("10"),
                    unit_cost=Decimal("1"),
                    po_line_lot_ids=("lot-1", "lot-2"),
                ),
            ],
            pools=CostPools(freight=Decimal("10.00")),
        )

        assert result.unresolved_line_ids == ("li-x",)
        assert [a.lot_id for a in result.allocations] == ["lot-a"]
        assert result.for_lot("lot-a").freight_allocated == Decimal("10.00")

    def test_allocations_ordered_by_first_appearance(self):
        result = self.engine.compute(
            invoice_id="inv-1",
            line_items=[
                _line("li-1", "lot-z", "1"),
                _line("li-2", "lot-a", "1"),
                _line("li-3", "lot-z", "1"),
            ],
            pools=CostPools(),
        )
        assert [a.lot_id for a in result.allocations] == ["lot-z", "lot-a"]


class TestZeroQuantities:
    """Zero usage and zero base quantity."""

    def setup_method(self):
        self.engine = LandedCostEngine()

    def test_zero_total_usage_leaves_pools_unallocated(self):
        result = self.engine.compute(
            invoice_id="inv-1",
            line_items=[_line("li-a", "lot-a", "0")],
            pools=CostPools(freight=Decimal("40.00"), other=Decimal("5.00")),
        )

        row = result.for_lot("lot-a")
        assert row.freight_allocated == Decimal("0")
        assert row.other_costs_allocated == Decimal("0")
        assert row.cost_per_base_unit is None
        assert result.unallocated.freight == Decimal("40.00")
        assert result.unallocated.other == Decimal("5.00")
        assert not result.is_fully_allocated

    def test_no_lots_leaves_pools_unallocated(self):
        result = self.engine.compute(
            invoice_id="inv-1",
            line_items=[],
            pools=CostPools(duty=Decimal("3.00")),
        )
        assert result.allocations == ()
        assert result.unallocated.duty == Decimal("3.00")

    def test_deterministic(self):
        kwargs = dict(
            invoice_id="inv-1",
            line_items=[_line("li-a", "lot-a", "3"), _line("li-b", "lot-b", "7")],
            pools=CostPools(freight=Decimal("9.99")),
        )
        assert self.engine.compute(**kwargs) == self.engine.compute(**kwargs)


_money = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("50000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)


class TestLandedCostConservation:
    """
    Sum of lot landed costs equals material plus every pool, for any
    invoice whose lines all resolve to lots with positive usage.
    """

    @given(
        lines=st.lists(
            st.tuples(
                st.sampled_from(["lot-a", "lot-b", "lot-c", "lot-d"]),
                st.integers(min_value=1, max_value=5000),
                _money,
            ),
            min_size=1,
            max_size=10,
        ),
        freight=_money,
        duty=_money,
        other=_money,
    )
    @settings(max_examples=200)
    def test_total_landed_cost_conserved(self, lines, freight, duty, other):
        line_items = [
            _line(f"li-{i}", lot, str(quantity), unit_cost=str(unit_cost))
            for i, (lot, quantity, unit_cost) in enumerate(lines)
        ]
        pools = CostPools(freight=freight, duty=duty, other=other)

        result = LandedCostEngine().compute(
            invoice_id="inv-1", line_items=line_items, pools=pools,
        )

        material = sum(item.line_total for item in line_items)
        assert result.is_fully_allocated
        assert result.unresolved_line_ids == ()
        assert result.total_allocated == freight + duty + other
        assert result.total_landed_cost == material + freight + duty + other
