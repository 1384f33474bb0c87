"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor contract for every service in the
    kernel layer.  A service receives a SQLAlchemy ``Session`` and a
    ``Clock``, reads and writes documents through a ``DocumentStore`` bound
    to that session, and only ever flushes.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    Transaction boundaries: services flush within the caller's transaction
    and never commit or roll back themselves.  The action dispatcher owns
    commit/rollback, so every action is all-or-nothing.

Failure modes:
    - If a subclass commits, an aborted action could leave partial writes
      (a deducted ledger without the matching requisition update).
"""

from abc import ABC

from sqlalchemy.orm import Session

from requisition_kernel.db.document_store import DocumentStore
from requisition_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        """
        Args:
            session: SQLAlchemy session for database operations.
            clock: Time source; defaults to the system clock.
        """
        self.session = session
        self.clock = clock or SystemClock()
        self.store = DocumentStore(session)
