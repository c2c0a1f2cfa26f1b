"""
BaseService -- common constructor for kernel services.

Services write through ``session.flush()`` inside the caller's transaction
and never commit or roll back the outer transaction themselves. Multi-row
operations wrap their writes in ``session.begin_nested()`` so a typed
failure leaves nothing behind while the caller's transaction stays usable.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from tip_kernel.db.base import Base
from tip_kernel.domain.clock import Clock, SystemClock

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """Abstract base for services that mutate kernel state."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
