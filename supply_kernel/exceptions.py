"""
Typed Exception Hierarchy for the supply workflow engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The excluded HTTP layer turns these errors into user-facing messages
("3 inspectors required, 2 present", "shortage 1,250.00"). It must be able
to do that without parsing message strings, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)
  4. Every exception says whether the caller may simply retry

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    SupplyWorkflowError (base)
    |
    +-- ValidationError
    |   +-- InvalidTransitionError
    |
    +-- BudgetError
    |
    +-- BudgetServiceError
    |   +-- BudgetAPIError
    |   +-- BudgetTimeoutError      (also a builtin TimeoutError)
    |
    +-- ForbiddenError
    |
    +-- NotFoundError
    |   +-- ItemNotFoundError
    |   +-- EntityNotFoundError
    |
    +-- ConcurrencyError
    |   +-- EntityBusyError
    |
    +-- TransactionRolledBackError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                      | Retryable | When Raised
----------------|---------------------------|-----------|-------------------------------
Validation      | VALIDATION_FAILED         | no        | Local rule violated
                | INVALID_TRANSITION        | no        | Action not allowed in status
Budget          | BUDGET_INSUFFICIENT       | no        | Control BLOCKED / no funds
Ledger          | BUDGET_API_ERROR          | yes       | Ledger rejected or unreachable
                | BUDGET_TIMEOUT            | yes       | Every attempt timed out
Authorization   | FORBIDDEN                 | no        | Permission denied
Lookup          | ITEM_NOT_FOUND            | no        | Budget request item missing
                | ENTITY_NOT_FOUND          | no        | PR/PO/Receipt missing
Concurrency     | ENTITY_BUSY               | yes       | Another operation in flight
Transaction     | TRANSACTION_ROLLED_BACK   | yes       | Local step failed, rolled back
Immutability    | IMMUTABILITY_VIOLATION    | no        | Lot/transaction modified
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class SupplyWorkflowError(Exception):
    """
    Base exception for all supply workflow errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "SUPPLY_WORKFLOW_ERROR"
    retryable: bool = False


# Validation


class ValidationError(SupplyWorkflowError):
    """A local business rule rejected the operation before any side effect."""

    code: str = "VALIDATION_FAILED"

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        self.detail = detail or {}
        super().__init__(message)


class InvalidTransitionError(ValidationError):
    """The requested action is not valid from the entity's current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity_type: str, entity_id: str, status: str, action: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} {entity_type} {entity_id} with status {status}",
            detail={"status": status, "action": action},
        )


# Budget


class BudgetError(SupplyWorkflowError):
    """Budget is insufficient for the requested operation.

    ``shortages`` holds one dict per failing line (budget control) or a
    single ledger-level entry with available / requested / shortage.
    """

    code: str = "BUDGET_INSUFFICIENT"

    def __init__(
        self,
        message: str,
        *,
        available: Decimal | None = None,
        requested: Decimal | None = None,
        shortage: Decimal | None = None,
        shortages: list[dict[str, Any]] | None = None,
    ):
        self.available = available
        self.requested = requested
        self.shortage = shortage
        self.shortages = shortages or []
        super().__init__(message)


class BudgetServiceError(SupplyWorkflowError):
    """Base for failures talking to the external budget ledger."""

    code: str = "BUDGET_SERVICE_ERROR"
    retryable: bool = True

    def __init__(self, message: str, *, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(message)


class BudgetAPIError(BudgetServiceError):
    """Ledger gave a definitive rejection, or non-timeout retries ran out."""

    code: str = "BUDGET_API_ERROR"

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        attempts: int,
        status_code: int | None = None,
        body: Any = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message, operation=operation, attempts=attempts)


class BudgetTimeoutError(BudgetServiceError, TimeoutError):
    """Every attempt against the ledger timed out."""

    code: str = "BUDGET_TIMEOUT"

    def __init__(self, operation: str, attempts: int, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Budget ledger {operation} timed out after {attempts} attempt(s) "
            f"of {timeout_seconds}s",
            operation=operation,
            attempts=attempts,
        )


# Authorization


class ForbiddenError(SupplyWorkflowError):
    """The acting user lacks the permission required for the action."""

    code: str = "FORBIDDEN"

    def __init__(self, user_id: str, action: str):
        self.user_id = user_id
        self.action = action
        super().__init__(f"User {user_id} is not permitted to {action}")


# Lookup


class NotFoundError(SupplyWorkflowError):
    """Base for missing records."""

    code: str = "NOT_FOUND"


class ItemNotFoundError(NotFoundError):
    """Budget request item does not exist."""

    code: str = "ITEM_NOT_FOUND"

    def __init__(self, item_id: str | None):
        self.item_id = item_id
        super().__init__(f"Budget request item not found: {item_id}")


class EntityNotFoundError(NotFoundError):
    """Purchase request, purchase order or receipt does not exist."""

    code: str = "ENTITY_NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


# Concurrency


class ConcurrencyError(SupplyWorkflowError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    retryable: bool = True


class EntityBusyError(ConcurrencyError):
    """Another mutating operation is already in flight for this entity."""

    code: str = "ENTITY_BUSY"

    def __init__(self, entity_type: str, entity_id: str, operation: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.operation = operation
        super().__init__(
            f"Cannot {operation} {entity_type} {entity_id}: "
            "another operation is in progress"
        )


# Transaction


class TransactionRolledBackError(SupplyWorkflowError):
    """A local step failed; every local mutation of the unit was rolled back."""

    code: str = "TRANSACTION_ROLLED_BACK"
    retryable: bool = True

    def __init__(self, entity_type: str, entity_id: str, operation: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.operation = operation
        self.reason = reason
        super().__init__(
            f"{operation} on {entity_type} {entity_id} rolled back: {reason}"
        )


# Immutability


class ImmutabilityViolationError(SupplyWorkflowError):
    """Attempt to modify or delete an append-only / immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )
