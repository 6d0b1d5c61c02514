from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""


class TicketNotFoundError(TicketServiceError):
    """Raised when an id does not resolve to a live record."""

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class ForbiddenReason(str, Enum):
    """Machine readable reason attached to every authorization denial."""

    NOT_OWNER = "not-owner"
    NOT_ASSIGNEE = "not-assignee"
    ROLE_INSUFFICIENT = "role-insufficient"
    TERMINAL_STATE = "terminal-state"


class TicketForbiddenError(TicketServiceError):
    """Raised when the acting user may not perform an operation."""

    def __init__(self, reason: ForbiddenReason, operation: str, ticket_id: str | None = None) -> None:
        target = f" on ticket {ticket_id}" if ticket_id else ""
        super().__init__(f"Operation '{operation}' denied{target}: {reason.value}")
        self.reason = reason
        self.operation = operation
        self.ticket_id = ticket_id


class InvalidTicketTransitionError(TicketServiceError):
    """Raised when attempting to transition to an invalid state."""

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(f"Cannot transition {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


@dataclass(frozen=True, slots=True)
class FieldError:
    """Validation problem attached to a single input field."""

    field: str
    message: str


class TicketValidationError(TicketServiceError):
    """Raised when input is missing or malformed."""

    def __init__(self, errors: Sequence[FieldError]) -> None:
        self.errors = list(errors)
        summary = "; ".join(f"{error.field}: {error.message}" for error in self.errors)
        super().__init__(f"Invalid ticket input: {summary}")


class TicketConflictError(TicketServiceError):
    """Raised when the ticket changed since it was read. Safe to retry after a reload."""

    retryable = True

    def __init__(self, ticket_id: str, expected_version: int) -> None:
        super().__init__(f"Ticket {ticket_id} was modified concurrently (expected version {expected_version})")
        self.ticket_id = ticket_id
        self.expected_version = expected_version


class DependencyUnavailableError(TicketServiceError):
    """Raised when the ticket store cannot be reached or fails mid-operation."""
