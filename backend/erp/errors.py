# Overview: Domain error taxonomy shared by services and routes.

"""
Workflow error taxonomy.

Every failure inside an atomic unit surfaces to the caller as exactly one of
these. Routes never build error bodies by hand; the app factory renders any
WorkflowError with its kind, status code and details.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for client-visible workflow failures."""

    kind = "workflow_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(WorkflowError):
    """400-level input problem."""

    kind = "validation_error"


class NotFound(WorkflowError):
    """Referenced product/order/voucher/model does not exist."""

    kind = "not_found"
    status_code = 404


class InvalidTransition(WorkflowError):
    """Requested status change is not reachable from the current status."""

    kind = "invalid_transition"


class InsufficientStock(WorkflowError):
    """An outbound movement would drive derived stock negative."""

    kind = "insufficient_stock"


class AlreadySettled(WorkflowError):
    """Entity is already in a terminal or incompatible state."""

    kind = "already_settled"


class ConstraintViolation(WorkflowError):
    """
    Referential/uniqueness violation at the persistence boundary.

    The message is always generic; schema details stay in the server log.
    """

    kind = "constraint_violation"

    def __init__(self, message: str = "Request violates a data constraint", details: dict | None = None):
        super().__init__(message, details)


class LockTimeout(WorkflowError):
    """Lock could not be acquired in time. Nothing was committed; safe to retry."""

    kind = "lock_timeout"
    status_code = 503
    retryable = True

    def __init__(self, message: str = "Resource is busy, retry the request", details: dict | None = None):
        super().__init__(message, details)
