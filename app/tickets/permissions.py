"""Role, ownership and assignment rules gating ticket operations.

Everything here is pure: the evaluator receives an already loaded ticket and an
already authenticated actor and answers synchronously. Viewing a ticket is the
precondition of every other ticket-bound operation, so a user who cannot see a
ticket is denied everything on it with ``not-owner``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Collection, Iterable

from app.security import Actor, Role

from .errors import ForbiddenReason, TicketForbiddenError
from .models import Comment, Ticket
from .state import TicketLifecycle


class TicketOperation(str, Enum):
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    TRANSITION = "transition"
    ASSIGN = "assign"
    DELETE = "delete"
    COMMENT = "comment"


RESOLUTION_FIELDS = frozenset({"root_cause", "solution", "resolution_notes"})

# Internal comments are staff-only: AGENT and above.
INTERNAL_COMMENT_MIN_ROLE = Role.AGENT


@dataclass(frozen=True, slots=True)
class PermissionDecision:
    allowed: bool
    reason: ForbiddenReason | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = PermissionDecision(True)


def deny(reason: ForbiddenReason) -> PermissionDecision:
    return PermissionDecision(False, reason)


@dataclass(frozen=True, slots=True)
class ListScope:
    """Restriction applied to list queries so results only contain viewable tickets."""

    unrestricted: bool
    user_id: str
    department: str | None = None


def is_reporter(actor: Actor, ticket: Ticket) -> bool:
    return ticket.reporter_id == actor.id


def is_assignee(actor: Actor, ticket: Ticket) -> bool:
    return ticket.assignee_id is not None and ticket.assignee_id == actor.id


def can_see_internal_comments(actor: Actor) -> bool:
    return actor.has_role(INTERNAL_COMMENT_MIN_ROLE)


def visible_comments(actor: Actor, comments: Iterable[Comment]) -> list[Comment]:
    """Drop internal comments for viewers below staff rank, oldest first."""

    ordered = sorted(comments, key=lambda comment: comment.created_at)
    if can_see_internal_comments(actor):
        return ordered
    return [comment for comment in ordered if not comment.is_internal]


def list_scope(actor: Actor) -> ListScope:
    if actor.is_admin:
        return ListScope(unrestricted=True, user_id=actor.id)
    department = actor.department if actor.role is Role.MANAGER else None
    return ListScope(unrestricted=False, user_id=actor.id, department=department)


class PermissionEvaluator:
    """Evaluate ``(actor, ticket, operation)`` triples for one ticket type."""

    def __init__(self, lifecycle: TicketLifecycle) -> None:
        self._lifecycle = lifecycle

    def can_view(self, actor: Actor, ticket: Ticket) -> PermissionDecision:
        if actor.is_admin or is_reporter(actor, ticket) or is_assignee(actor, ticket):
            return ALLOW
        if (
            actor.role is Role.MANAGER
            and actor.department is not None
            and actor.department == ticket.reporter_department
        ):
            return ALLOW
        return deny(ForbiddenReason.NOT_OWNER)

    def can_create(self, actor: Actor) -> PermissionDecision:
        return ALLOW

    def can_update(self, actor: Actor, ticket: Ticket, fields: Collection[str]) -> PermissionDecision:
        viewable = self.can_view(actor, ticket)
        if not viewable:
            return viewable
        if actor.is_admin:
            return ALLOW
        if is_reporter(actor, ticket) and not self._lifecycle.is_terminal(ticket.status):
            return ALLOW
        if is_assignee(actor, ticket) and set(fields) <= RESOLUTION_FIELDS:
            return ALLOW
        if is_reporter(actor, ticket):
            return deny(ForbiddenReason.TERMINAL_STATE)
        if is_assignee(actor, ticket):
            return deny(ForbiddenReason.ROLE_INSUFFICIENT)
        return deny(ForbiddenReason.NOT_OWNER)

    def can_transition(self, actor: Actor, ticket: Ticket, target: Enum) -> PermissionDecision:
        viewable = self.can_view(actor, ticket)
        if not viewable:
            return viewable
        if actor.is_admin or is_assignee(actor, ticket):
            return ALLOW
        if is_reporter(actor, ticket) and target in self._lifecycle.self_service:
            return ALLOW
        return deny(ForbiddenReason.NOT_ASSIGNEE)

    def can_assign(self, actor: Actor, ticket: Ticket) -> PermissionDecision:
        viewable = self.can_view(actor, ticket)
        if not viewable:
            return viewable
        if actor.has_role(Role.MANAGER) or is_assignee(actor, ticket):
            return ALLOW
        return deny(ForbiddenReason.ROLE_INSUFFICIENT)

    def can_delete(self, actor: Actor, ticket: Ticket) -> PermissionDecision:
        viewable = self.can_view(actor, ticket)
        if not viewable:
            return viewable
        if actor.is_admin or is_reporter(actor, ticket):
            return ALLOW
        return deny(ForbiddenReason.NOT_OWNER)

    def can_comment(self, actor: Actor, ticket: Ticket) -> PermissionDecision:
        return self.can_view(actor, ticket)

    def evaluate(
        self,
        actor: Actor,
        ticket: Ticket | None,
        operation: TicketOperation,
        *,
        target_status: Enum | None = None,
        fields: Collection[str] = (),
    ) -> PermissionDecision:
        if operation is TicketOperation.CREATE:
            return self.can_create(actor)
        if ticket is None:
            raise ValueError(f"Operation '{operation.value}' requires a ticket")
        if operation is TicketOperation.VIEW:
            return self.can_view(actor, ticket)
        if operation is TicketOperation.UPDATE:
            return self.can_update(actor, ticket, fields)
        if operation is TicketOperation.TRANSITION:
            if target_status is None:
                raise ValueError("Transition checks require a target status")
            return self.can_transition(actor, ticket, target_status)
        if operation is TicketOperation.ASSIGN:
            return self.can_assign(actor, ticket)
        if operation is TicketOperation.DELETE:
            return self.can_delete(actor, ticket)
        if operation is TicketOperation.COMMENT:
            return self.can_comment(actor, ticket)
        raise ValueError(f"Unsupported operation: {operation!s}")

    def authorize(
        self,
        actor: Actor,
        ticket: Ticket | None,
        operation: TicketOperation,
        *,
        target_status: Enum | None = None,
        fields: Collection[str] = (),
    ) -> None:
        """Raise ``TicketForbiddenError`` unless ``operation`` is allowed."""

        decision = self.evaluate(actor, ticket, operation, target_status=target_status, fields=fields)
        if not decision.allowed:
            raise TicketForbiddenError(
                decision.reason or ForbiddenReason.NOT_OWNER,
                operation.value,
                ticket.id if ticket is not None else None,
            )
