"""Read-only selectors."""

from costing_kernel.selectors.base import BaseSelector

__all__ = ["BaseSelector"]
