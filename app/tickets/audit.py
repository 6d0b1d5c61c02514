"""Append-only action trail for tickets.

Events are written through the same unit of work as the ticket change they
describe, so a change and its history commit or roll back together.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Mapping, Sequence

from .models import ActionEvent, ActionKind

if TYPE_CHECKING:
    from .repository import TicketRepository, TicketUnitOfWork


PAYLOAD_KEYS: Mapping[ActionKind, frozenset[str]] = {
    ActionKind.STATUS_CHANGE: frozenset({"from", "to"}),
    ActionKind.ASSIGNMENT: frozenset({"from", "to"}),
    ActionKind.COMMENT_ADDED: frozenset({"comment_id", "is_internal"}),
    ActionKind.ROOT_CAUSE_UPDATE: frozenset({"previous", "new"}),
    ActionKind.SOLUTION_UPDATE: frozenset({"previous", "new"}),
    ActionKind.RELATED_LINK_ADDED: frozenset({"ticket_ids"}),
    ActionKind.RELATED_LINK_REMOVED: frozenset({"ticket_ids"}),
}

_FIELD_KINDS: Mapping[str, ActionKind] = {
    "root_cause": ActionKind.ROOT_CAUSE_UPDATE,
    "solution": ActionKind.SOLUTION_UPDATE,
}


def _status_value(status: Enum | str | None) -> str | None:
    if isinstance(status, Enum):
        return status.value
    return status


def status_changed(
    ticket_id: str, actor_id: str, from_status: Enum | str, to_status: Enum | str, at: datetime
) -> ActionEvent:
    return ActionEvent(
        ticket_id=ticket_id,
        kind=ActionKind.STATUS_CHANGE,
        actor_id=actor_id,
        payload={"from": _status_value(from_status), "to": _status_value(to_status)},
        created_at=at,
    )


def assignment_changed(
    ticket_id: str, actor_id: str, previous: str | None, assignee_id: str, at: datetime
) -> ActionEvent:
    return ActionEvent(
        ticket_id=ticket_id,
        kind=ActionKind.ASSIGNMENT,
        actor_id=actor_id,
        payload={"from": previous, "to": assignee_id},
        created_at=at,
    )


def comment_added(ticket_id: str, actor_id: str, comment_id: str, is_internal: bool, at: datetime) -> ActionEvent:
    return ActionEvent(
        ticket_id=ticket_id,
        kind=ActionKind.COMMENT_ADDED,
        actor_id=actor_id,
        payload={"comment_id": comment_id, "is_internal": is_internal},
        created_at=at,
    )


def field_updated(
    ticket_id: str, actor_id: str, field_name: str, previous: str | None, new: str | None, at: datetime
) -> ActionEvent:
    """Record an edit of ``root_cause`` or ``solution``."""

    try:
        kind = _FIELD_KINDS[field_name]
    except KeyError:
        raise ValueError(f"Field '{field_name}' is not tracked in the action trail") from None
    return ActionEvent(
        ticket_id=ticket_id,
        kind=kind,
        actor_id=actor_id,
        payload={"previous": previous, "new": new},
        created_at=at,
    )


def related_links_changed(
    ticket_id: str, actor_id: str, ticket_ids: Sequence[str], *, added: bool, at: datetime
) -> ActionEvent:
    return ActionEvent(
        ticket_id=ticket_id,
        kind=ActionKind.RELATED_LINK_ADDED if added else ActionKind.RELATED_LINK_REMOVED,
        actor_id=actor_id,
        payload={"ticket_ids": list(ticket_ids)},
        created_at=at,
    )


def tracked_fields() -> frozenset[str]:
    return frozenset(_FIELD_KINDS)


class AuditTrail:
    """Validate and persist action events, and read a ticket's history back."""

    def __init__(self, repository: TicketRepository) -> None:
        self._repository = repository

    @staticmethod
    def check(event: ActionEvent) -> None:
        if not event.ticket_id:
            raise ValueError("Action events must reference a ticket")
        if not event.actor_id:
            raise ValueError("Action events must name an actor")
        expected = PAYLOAD_KEYS[event.kind]
        keys = set(event.payload)
        if keys != expected:
            raise ValueError(
                f"Payload for {event.kind.value} must have keys {sorted(expected)}, got {sorted(keys)}"
            )

    async def append(self, uow: TicketUnitOfWork, event: ActionEvent) -> ActionEvent:
        self.check(event)
        return await uow.append_action_event(event)

    async def extend(self, uow: TicketUnitOfWork, events: Sequence[ActionEvent]) -> list[ActionEvent]:
        return [await self.append(uow, event) for event in events]

    async def list_for(self, ticket_id: str) -> list[ActionEvent]:
        """Return the trail oldest first."""

        return list(await self._repository.list_action_events(ticket_id))

