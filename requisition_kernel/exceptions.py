"""
Typed Exception Hierarchy for the Requisition Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every action invoked through the dispatcher ends in a structured result
``{"result": "error", "error": <message>, "code": <code>}``.  Callers (the
web client, the CLI, tests) branch on ``code``, never on message text:

    try:
        machine.approve(request_id, user=actor)
    except ConflictError as e:                # Typed catch
        retry_with(e.server_version)          # Structured data
    except InvalidTransitionError as e:
        show(f"Cannot {e.action} while {e.current_state}")

Every class carries:
  1. A ``code`` class attribute (machine-readable, API-safe)
  2. Structured attributes describing the failure
  3. A short, human-readable message (never a raw payload)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from RequisitionKernelError:

    RequisitionKernelError (base)
    |
    +-- ValidationError
    |
    +-- NotFoundError
    |   +-- RequisitionNotFoundError
    |   +-- DispatchNotFoundError
    |   +-- UserNotFoundError
    |   +-- BatchNotFoundError
    |   +-- FormulaRequestNotFoundError
    |   +-- StockAdjustmentNotFoundError
    |   +-- DocumentNotFoundError
    |
    +-- AccessError
    |   +-- PermissionDeniedError
    |   +-- AuthenticationError
    |
    +-- ConflictError
    |
    +-- WorkflowError
    |   +-- InvalidTransitionError
    |   +-- DispatchAlreadyApprovedError
    |   +-- RequisitionFinalizedError
    |   +-- ItemsLockedError
    |
    +-- InventoryError
    |   +-- InventoryUnavailableError
    |
    +-- UserError
    |   +-- DuplicateUserError
    |
    +-- TransportFailure

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_ERROR            | Missing / malformed parameter
----------------|-----------------------------|-----------------------------------------
Not found       | REQUISITION_NOT_FOUND       | Requisition id doesn't exist
                | DISPATCH_NOT_FOUND          | Dispatch id doesn't exist
                | USER_NOT_FOUND              | User doesn't exist
                | BATCH_NOT_FOUND             | WIP batch doesn't exist
                | FORMULA_REQUEST_NOT_FOUND   | Formula request doesn't exist
                | STOCK_ADJUSTMENT_NOT_FOUND  | Stock adjustment request doesn't exist
                | DOCUMENT_NOT_FOUND          | Generic store miss on update
----------------|-----------------------------|-----------------------------------------
Access          | PERMISSION_DENIED           | Caller role not in allowed set
                | INVALID_CREDENTIALS         | Login / password check failed
----------------|-----------------------------|-----------------------------------------
Concurrency     | CONFLICT                    | Stale base version / lost CAS race
----------------|-----------------------------|-----------------------------------------
Workflow        | INVALID_TRANSITION          | Action not allowed in current state
                | DISPATCH_ALREADY_APPROVED   | Approving an approved dispatch
                | REQUISITION_FINALIZED       | Acting on a terminal requisition
                | ITEMS_LOCKED                | Editing line items after approval
----------------|-----------------------------|-----------------------------------------
Inventory       | NO_INVENTORY                | Ledger missing or unrecognised
----------------|-----------------------------|-----------------------------------------
Users           | DUPLICATE_USER              | add_user for an existing email
----------------|-----------------------------|-----------------------------------------
Notification    | TRANSPORT_FAILURE           | Send failed (caught by the worker)

===============================================================================
HANDLING PATTERNS
===============================================================================

1. The action dispatcher is the only place that converts exceptions into
   results.  Services raise; they never return error dictionaries.

2. ConflictError is retryable: the caller re-reads the ledger (or the
   requisition) and repeats the action with ``server_version``.

3. TransportFailure never reaches an action caller.  Notification delivery
   happens after commit, in the worker, which records the failure on the
   queue entry and retries later.

===============================================================================
"""


class RequisitionKernelError(Exception):
    """
    Base exception for all requisition kernel errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "REQUISITION_KERNEL_ERROR"

    def log_fields(self) -> dict:
        """Structured attributes for log lines; unset ones are omitted."""
        return {
            name: value
            for name, value in vars(self).items()
            if not name.startswith("_") and value is not None
        }


# Validation


class ValidationError(RequisitionKernelError):
    """A required parameter is missing or malformed."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


# Not found


class NotFoundError(RequisitionKernelError):
    """Base exception for missing referenced entities."""

    code: str = "NOT_FOUND"


class RequisitionNotFoundError(NotFoundError):
    """Requisition with the given id does not exist."""

    code: str = "REQUISITION_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__("Request not found")


class DispatchNotFoundError(NotFoundError):
    """Dispatch with the given id does not exist."""

    code: str = "DISPATCH_NOT_FOUND"

    def __init__(self, dispatch_id: str):
        self.dispatch_id = dispatch_id
        super().__init__("Dispatch not found")


class UserNotFoundError(NotFoundError):
    """User with the given identifier does not exist."""

    code: str = "USER_NOT_FOUND"

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__("User not found")


class BatchNotFoundError(NotFoundError):
    """WIP batch with the given id does not exist."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__("Batch not found")


class FormulaRequestNotFoundError(NotFoundError):
    """Formula request with the given id does not exist."""

    code: str = "FORMULA_REQUEST_NOT_FOUND"

    def __init__(self, formula_request_id: str):
        self.formula_request_id = formula_request_id
        super().__init__("Request not found")


class StockAdjustmentNotFoundError(NotFoundError):
    """Stock adjustment request with the given id does not exist."""

    code: str = "STOCK_ADJUSTMENT_NOT_FOUND"

    def __init__(self, adjustment_id: str):
        self.adjustment_id = adjustment_id
        super().__init__("Stock adjustment request not found")


class DocumentNotFoundError(NotFoundError):
    """Store-level miss when updating a document that must exist."""

    code: str = "DOCUMENT_NOT_FOUND"

    def __init__(self, collection: str, key: str):
        self.collection = collection
        self.key = key
        super().__init__(f"Document not found: {collection}/{key}")


# Access


class AccessError(RequisitionKernelError):
    """Base exception for authentication and authorization failures."""

    code: str = "ACCESS_ERROR"


class PermissionDeniedError(AccessError):
    """
    The caller's role does not satisfy the required role set.

    Named to avoid shadowing the builtin ``PermissionError`` (an OSError).
    """

    code: str = "PERMISSION_DENIED"

    def __init__(self, identifier: str | None, allowed_roles: tuple[str, ...], message: str):
        self.identifier = identifier
        self.allowed_roles = allowed_roles
        super().__init__(message)


class AuthenticationError(AccessError):
    """Login or password verification failed."""

    code: str = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "Invalid email or password."):
        super().__init__(message)


# Concurrency


class ConflictError(RequisitionKernelError):
    """
    Optimistic version mismatch.

    Raised when a write presents a stale base version, or when the
    compare-and-swap on a document's version loses a race.  Nothing is
    applied; the caller re-reads and retries with ``server_version``.
    """

    code: str = "CONFLICT"

    def __init__(
        self,
        collection: str,
        key: str,
        server_version: str | None,
        message: str = "Data was changed by someone else. Refresh to get the latest, then try again.",
    ):
        self.collection = collection
        self.key = key
        self.server_version = server_version
        super().__init__(message)


# Workflow


class WorkflowError(RequisitionKernelError):
    """Base exception for lifecycle violations."""

    code: str = "WORKFLOW_ERROR"


class InvalidTransitionError(WorkflowError):
    """The requested action is not allowed from the current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, request_id: str, current_state: str, action: str):
        self.request_id = request_id
        self.current_state = current_state
        self.action = action
        super().__init__(f"Cannot {action} a request that is {current_state}")


class RequisitionFinalizedError(WorkflowError):
    """The requisition is in a terminal state."""

    code: str = "REQUISITION_FINALIZED"

    def __init__(self, request_id: str, current_state: str):
        self.request_id = request_id
        self.current_state = current_state
        super().__init__("Request is already finalized")


class DispatchAlreadyApprovedError(WorkflowError):
    """Approval of a dispatch that is already approved."""

    code: str = "DISPATCH_ALREADY_APPROVED"

    def __init__(self, dispatch_id: str):
        self.dispatch_id = dispatch_id
        super().__init__("Dispatch already approved")


class ItemsLockedError(WorkflowError):
    """Line items may only change while the request awaits its first decision."""

    code: str = "ITEMS_LOCKED"

    def __init__(self, request_id: str, current_state: str, verb: str = "edited"):
        self.request_id = request_id
        self.current_state = current_state
        super().__init__(f"Items cannot be {verb} after approval")


# Inventory


class InventoryError(RequisitionKernelError):
    """Base exception for inventory ledger errors."""

    code: str = "INVENTORY_ERROR"


class InventoryUnavailableError(InventoryError):
    """The ledger document is missing or has no recognisable structure."""

    code: str = "NO_INVENTORY"

    def __init__(self, message: str = "No inventory data. Add stock in Main Inventory first."):
        super().__init__(message)


# Users


class UserError(RequisitionKernelError):
    """Base exception for user administration errors."""

    code: str = "USER_ERROR"


class DuplicateUserError(UserError):
    """A user with this email already exists."""

    code: str = "DUPLICATE_USER"

    def __init__(self, email: str):
        self.email = email
        super().__init__("A user with this email already exists")


# Notification


class TransportFailure(RequisitionKernelError):
    """
    A notification could not be delivered.

    Raised by transports and caught by the notification worker; it never
    crosses the action dispatch boundary.
    """

    code: str = "TRANSPORT_FAILURE"

    def __init__(self, recipient: str, reason: str):
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"Delivery to {recipient} failed: {reason}")
