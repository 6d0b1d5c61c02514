"""Ticket lifecycle domain: state graphs, permissions, persistence and services."""

from .audit import AuditTrail
from .errors import (
    DependencyUnavailableError,
    FieldError,
    ForbiddenReason,
    InvalidTicketTransitionError,
    TicketConflictError,
    TicketForbiddenError,
    TicketNotFoundError,
    TicketServiceError,
    TicketValidationError,
)
from .models import (
    ActionEvent,
    ActionKind,
    Comment,
    Impact,
    Page,
    Pagination,
    Priority,
    Ticket,
    TicketChanges,
    TicketDraft,
    TicketFilters,
    UserRecord,
)
from .permissions import PermissionDecision, PermissionEvaluator, TicketOperation
from .repository import TicketRepository
from .service import TicketLifecycleService
from .state import (
    CHANGE_LIFECYCLE,
    INCIDENT_LIFECYCLE,
    LIFECYCLES,
    PROBLEM_LIFECYCLE,
    ChangeStatus,
    IncidentStatus,
    ProblemStatus,
    TicketLifecycle,
    TicketType,
    get_lifecycle,
    is_legal_transition,
)

__all__ = [
    "ActionEvent",
    "ActionKind",
    "AuditTrail",
    "CHANGE_LIFECYCLE",
    "ChangeStatus",
    "Comment",
    "DependencyUnavailableError",
    "FieldError",
    "ForbiddenReason",
    "INCIDENT_LIFECYCLE",
    "Impact",
    "IncidentStatus",
    "InvalidTicketTransitionError",
    "LIFECYCLES",
    "PROBLEM_LIFECYCLE",
    "Page",
    "Pagination",
    "PermissionDecision",
    "PermissionEvaluator",
    "Priority",
    "ProblemStatus",
    "Ticket",
    "TicketChanges",
    "TicketConflictError",
    "TicketDraft",
    "TicketFilters",
    "TicketForbiddenError",
    "TicketLifecycle",
    "TicketLifecycleService",
    "TicketNotFoundError",
    "TicketOperation",
    "TicketRepository",
    "TicketServiceError",
    "TicketType",
    "TicketValidationError",
    "UserRecord",
    "get_lifecycle",
    "is_legal_transition",
]
