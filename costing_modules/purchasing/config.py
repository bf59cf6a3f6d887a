"""
Purchasing Configuration Schema.

Defines the structure and defaults for invoice costing settings.  Values
are overridden per company from a dict or a YAML file:

    # purchasing.yaml
    purchasing:
      currency_decimal_places: 2
      enforce_lot_exclusivity: false
      freight_cost_types: [freight, shipping, courier]
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Self

import yaml

from costing_kernel.logging_config import get_logger

logger = get_logger("modules.purchasing.config")


DEFAULT_ALLOWED_COST_TYPES = (
    "freight",
    "shipping",
    "duty",
    "tax",
    "customs",
    "insurance",
    "handling",
    "brokerage",
    "storage",
    "inspection",
    "other",
)


@dataclass
class PurchasingConfig:
    """
    Configuration schema for the purchasing module.

        config = PurchasingConfig(
            enforce_lot_exclusivity=False,
            **load_from_database("purchasing_settings"),
        )
    """

    # Rounding
    currency_decimal_places: int = 2
    unit_cost_decimal_places: int = 6

    # Ledger
    enforce_lot_exclusivity: bool = True

    # Close
    recalculate_on_close: bool = True

    # Cost routing (anything not listed lands in the "other" pool)
    freight_cost_types: frozenset[str] = field(
        default_factory=lambda: frozenset({"freight", "shipping"}),
    )
    duty_cost_types: frozenset[str] = field(
        default_factory=lambda: frozenset({"duty", "tax", "customs"}),
    )
    allowed_cost_types: tuple[str, ...] = DEFAULT_ALLOWED_COST_TYPES

    def __post_init__(self):
        self.freight_cost_types = frozenset(t.lower() for t in self.freight_cost_types)
        self.duty_cost_types = frozenset(t.lower() for t in self.duty_cost_types)
        self.allowed_cost_types = tuple(t.lower() for t in self.allowed_cost_types)

        if self.currency_decimal_places < 0 or self.unit_cost_decimal_places < 0:
            raise ValueError("Decimal places cannot be negative")
        overlap = self.freight_cost_types & self.duty_cost_types
        if overlap:
            raise ValueError(
                f"Cost types cannot route to both freight and duty: {sorted(overlap)}"
            )

        logger.info(
            "purchasing_config_initialized",
            extra={
                "currency_decimal_places": self.currency_decimal_places,
                "unit_cost_decimal_places": self.unit_cost_decimal_places,
                "enforce_lot_exclusivity": self.enforce_lot_exclusivity,
                "recalculate_on_close": self.recalculate_on_close,
                "freight_cost_types": sorted(self.freight_cost_types),
                "duty_cost_types": sorted(self.duty_cost_types),
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with the standard defaults."""
        logger.info("purchasing_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create config from dictionary (e.g., loaded from database/file)."""
        logger.info(
            "purchasing_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown purchasing config keys: {sorted(unknown)}")

        data = dict(data)
        for key in ("freight_cost_types", "duty_cost_types"):
            if key in data:
                data[key] = frozenset(data[key])
        if "allowed_cost_types" in data:
            data["allowed_cost_types"] = tuple(data["allowed_cost_types"])
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> Self:
        """
        Load config from a YAML file.

        The settings may sit at the top level or under a ``purchasing`` key.
        An empty file yields the defaults.
        """
        path = Path(path)
        with path.open() as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Expected a mapping in {path}, got {type(raw).__name__}")
        section = raw.get("purchasing", raw)
        logger.info("purchasing_config_loaded_from_yaml", extra={"path": str(path)})
        return cls.from_dict(section or {})

    def to_dict(self) -> dict:
        data = asdict(self)
        data["freight_cost_types"] = sorted(self.freight_cost_types)
        data["duty_cost_types"] = sorted(self.duty_cost_types)
        data["allowed_cost_types"] = list(self.allowed_cost_types)
        return data
