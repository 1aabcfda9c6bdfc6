"""
Module: costing_kernel.selectors.base
Responsibility: Abstract base class for read-only query selectors.
Architecture position: Kernel > Selectors.  May import from db/ and models/.

Invariants enforced:
    - Read-only access: selectors never add, delete, flush or commit.
    - Selectors return plain values or frozen dataclasses, not ORM rows
      that callers could mutate.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """Accepts a Session from the caller and performs read-only queries."""

    def __init__(self, session: Session):
        self.session = session
