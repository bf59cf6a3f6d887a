"""
Module: costing_kernel.selectors.base
Responsibility: Abstract base class for read-only query selectors.
Architecture position: Kernel > Selectors.  May import from db/ and models/.

Invariants enforced:
    - Read-only access: selectors MUST NOT add, delete, flush or commit.
    - Selectors return frozen dataclasses or computed results, not ORM rows.
    - The caller owns the session and its transaction scope.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from costing_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """
    Abstract base class for all selectors.

    Subclasses implement domain-specific queries (invoiceable lines,
    available freight invoices, allocation listings).
    """

    def __init__(self, session: Session):
        self.session = session
