"""
Tests for purchasing configuration loading.

Covers:
- Defaults
- Dict and YAML overrides
- Rejection of unknown keys, overlapping routing and negative precision
"""

import pytest

from costing_modules.purchasing.config import DEFAULT_ALLOWED_COST_TYPES, PurchasingConfig


class TestDefaults:
    def test_with_defaults(self):
        config = PurchasingConfig.with_defaults()

        assert config.currency_decimal_places == 2
        assert config.unit_cost_decimal_places == 6
        assert config.enforce_lot_exclusivity is True
        assert config.recalculate_on_close is True
        assert config.freight_cost_types == frozenset({"freight", "shipping"})
        assert config.duty_cost_types == frozenset({"duty", "tax", "customs"})
        assert config.allowed_cost_types == DEFAULT_ALLOWED_COST_TYPES

    def test_cost_types_lowercased(self):
        config = PurchasingConfig(freight_cost_types={"Freight", "COURIER"})
        assert config.freight_cost_types == frozenset({"freight", "courier"})


class TestFromDict:
    def test_overrides(self):
        config = PurchasingConfig.from_dict({
            "currency_decimal_places": 3,
            "enforce_lot_exclusivity": False,
            "freight_cost_types": ["freight", "courier"],
        })
        assert config.currency_decimal_places == 3
        assert config.enforce_lot_exclusivity is False
        assert "courier" in config.freight_cost_types

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown purchasing config keys"):
            PurchasingConfig.from_dict({"currency_places": 2})

    def test_overlapping_routing_rejected(self):
        with pytest.raises(ValueError, match="both freight and duty"):
            PurchasingConfig.from_dict({
                "freight_cost_types": ["freight", "duty"],
                "duty_cost_types": ["duty"],
            })

    def test_negative_places_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            PurchasingConfig.from_dict({"unit_cost_decimal_places": -1})

    def test_to_dict_round_trip(self):
        config = PurchasingConfig(currency_decimal_places=0)
        assert PurchasingConfig.from_dict(config.to_dict()) == config


class TestFromYaml:
    def test_nested_section(self, tmp_path):
        path = tmp_path / "purchasing.yaml"
        path.write_text(
            "purchasing:\n"
            "  currency_decimal_places: 4\n"
            "  recalculate_on_close: false\n"
            "  duty_cost_types: [duty, excise]\n"
        )
        config = PurchasingConfig.from_yaml(path)

        assert config.currency_decimal_places == 4
        assert config.recalculate_on_close is False
        assert config.duty_cost_types == frozenset({"duty", "excise"})

    def test_top_level_settings(self, tmp_path):
        path = tmp_path / "purchasing.yaml"
        path.write_text("enforce_lot_exclusivity: false\n")
        assert PurchasingConfig.from_yaml(path).enforce_lot_exclusivity is False

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "purchasing.yaml"
        path.write_text("")
        assert PurchasingConfig.from_yaml(path) == PurchasingConfig()

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "purchasing.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="Expected a mapping"):
            PurchasingConfig.from_yaml(path)
