"""
SequenceService -- monotonic identifier allocation via locked counter documents.

Responsibility:
    Provides strictly increasing sequence numbers for requisition, dispatch,
    formula request and stock adjustment identifiers (``REQ-000001``).
    Each sequence is one ``Counters`` document read with a row lock and
    written back with a version compare-and-swap.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - The counter document is the sole source of truth for the next value;
      identifiers are never derived from the wall clock or from a scan.
    - Transactional: an allocation is only visible after the caller's
      transaction commits.  Rollback returns the value.

Failure modes:
    - ConflictError if two transactions race to create the same counter or
      to advance it; the losing action is retried by its caller.
"""

from requisition_kernel.db.collections import COUNTERS
from requisition_kernel.logging_config import get_logger
from requisition_kernel.services.base import BaseService

logger = get_logger("services.sequence")


class SequenceService(BaseService):
    """
    Service for generating transactional sequence numbers.

    Usage:
        with database.session_scope() as session:
            request_id = SequenceService(session).next_id(SequenceService.REQUISITION)
    """

    # Well-known sequence names and their identifier prefixes
    REQUISITION = "REQ"
    DISPATCH = "DSP"
    FORMULA_REQUEST = "FR"
    STOCK_ADJUSTMENT = "SAR"

    def next_value(self, sequence_name: str) -> int:
        """
        Lock the counter (creating it on first use), increment, return.

        Postconditions:
            Returns an integer > 0, strictly greater than any value
            previously committed for this sequence.
        """
        doc = self.store.get_for_update(COUNTERS, sequence_name)
        if doc is None:
            self.store.set(COUNTERS, sequence_name, {"name": sequence_name, "value": 1})
            value = 1
        else:
            value = int(doc.get("value", 0)) + 1
            self.store.set(
                COUNTERS,
                sequence_name,
                {"name": sequence_name, "value": value},
                expected_version=doc.version,
            )
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": value},
        )
        return value

    def next_id(self, prefix: str) -> str:
        """``<prefix>-<zero-padded value>``, e.g. ``REQ-000042``."""
        return f"{prefix}-{self.next_value(prefix):06d}"

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing, or None if never allocated."""
        doc = self.store.get(COUNTERS, sequence_name)
        return int(doc.get("value", 0)) if doc is not None else None
