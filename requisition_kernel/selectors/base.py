"""
Module: requisition_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.  Selectors
    form the query side of the kernel, answering list, detail, count and
    report requests without mutation capability.
Architecture position: Kernel > Selectors.  May import from db/ and the pure
    domain/ package.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: Selectors accept a Session from the caller and read
      through DocumentStore.get/scan_all/query_equal only.  They never call
      set, update, add or delete.
    - Session ownership: Selectors do NOT create or manage their own sessions;
      the caller owns the session and its transaction scope.

Failure modes:
    - Return empty lists or None when no matching documents exist; only
      the detail lookups raise NotFoundError subclasses.
"""

from abc import ABC

from sqlalchemy.orm import Session

from requisition_kernel.db.document_store import DocumentStore
from requisition_kernel.domain.clock import Clock, SystemClock


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a Session from the caller, perform read-only queries,
        and return plain dicts ready for the response envelope.

    Non-goals:
        - BaseSelector does NOT define any query methods; subclasses implement
          the request, production and report queries.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
        self.store = DocumentStore(session)
