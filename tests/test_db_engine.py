"""Tests for the engine helpers and rounding types."""

from decimal import Decimal
from uuid import uuid4

import pytest

from costing_kernel.db.engine import get_session_factory, is_postgres, session_scope
from costing_kernel.db.types import quantize_unit_cost, round_money
from costing_kernel.models.purchase_order import MaterialModel


def _material():
    return MaterialModel(
        id=uuid4(),
        code=f"MAT-{uuid4().hex[:8]}",
        name="Scope test",
        base_unit="EA",
        pack_to_base_conversion=Decimal("1"),
    )


class TestSessionScope:
    def test_commits_on_success(self, db_engine):
        material = _material()
        with session_scope() as s:
            s.add(material)

        with session_scope() as s:
            assert s.get(MaterialModel, material.id) is not None

    def test_rolls_back_on_error(self, db_engine):
        material = _material()
        with pytest.raises(RuntimeError):
            with session_scope() as s:
                s.add(material)
                s.flush()
                raise RuntimeError("boom")

        with session_scope() as s:
            assert s.get(MaterialModel, material.id) is None

    def test_factory_does_not_expire_on_commit(self, db_engine):
        assert get_session_factory().kw["expire_on_commit"] is False

    def test_is_postgres_matches_dialect(self, db_engine):
        assert is_postgres() is (db_engine.dialect.name == "postgresql")


class TestRounding:
    @pytest.mark.parametrize("value,places,expected", [
        (Decimal("10.005"), 2, Decimal("10.01")),
        (Decimal("10.004"), 2, Decimal("10.00")),
        (Decimal("2.5"), 0, Decimal("3")),
    ])
    def test_round_money_half_up(self, value, places, expected):
        assert round_money(value, places) == expected

    def test_unit_cost_six_places(self):
        assert quantize_unit_cost(Decimal("630") / Decimal("300")) == Decimal("2.100000")
        assert str(quantize_unit_cost(Decimal("1") / Decimal("3"))) == "0.333333"
