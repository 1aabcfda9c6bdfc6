"""
BaseService -- abstract base for all costing services.

Responsibility:
    Common constructor and session-handling contract.  Services receive a
    SQLAlchemy ``Session`` and persist with ``session.flush()``, never
    ``session.commit()``; the caller owns the transaction.

Failure modes:
    - A subclass that commits breaks the per-run atomicity of COGS runs and
      import rollbacks.
"""

from abc import ABC
from uuid import UUID

from sqlalchemy.orm import Session

from costing_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for all costing services.

    Guarantees:
        - Never calls ``session.commit()`` or ``session.rollback()``;
          savepoints (``begin_nested``) are the only nested boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
    ):
        """
        Args:
            session: SQLAlchemy session for database operations.
            clock: Time source; defaults to SystemClock.
            actor_id: User recorded on rows this service writes.
        """
        self.session = session
        self.clock = clock or SystemClock()
        self.actor_id = actor_id
