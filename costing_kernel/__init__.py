"""
Costing Kernel

Persistence, logging, errors and lot locking for the landed cost core:
- Decimal-only money handling with explicit rounding
- ORM-level immutability for finalized lots and closed invoices
- Structured, auditable logging
"""

__version__ = "0.1.0"
