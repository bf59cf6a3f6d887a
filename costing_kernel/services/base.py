"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor and session-handling contract.  Kernel services
    persist through ``session.flush()`` only; the caller (a module service
    such as PurchasingService, or a test) owns commit and rollback.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Failure modes:
    - A subclass that commits breaks the atomicity of approve/close, where
      allocation, status change and lot locking must land together.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from costing_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``; savepoints it opens are its own.
    """

    def __init__(self, session: Session):
        self.session = session
