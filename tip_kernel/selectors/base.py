"""
Module: tip_kernel.selectors.base
Responsibility: Base class for read-only query selectors.
Invariants enforced:
    - Selectors never add, delete, flush or commit.
    - Selectors return frozen dataclasses, not ORM instances.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from tip_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """Read-only access over a caller-owned session."""

    def __init__(self, session: Session):
        self.session = session
