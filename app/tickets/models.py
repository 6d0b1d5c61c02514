from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Mapping, Sequence, TypeVar

from app.security import Actor, Role

from .state import TicketStatus, TicketType


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Impact(str, Enum):
    """Impact levels. ``ENTERPRISE`` is only meaningful for change requests."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    ENTERPRISE = "enterprise"


class ActionKind(str, Enum):
    """Kinds of entries recorded in a ticket's action trail."""

    STATUS_CHANGE = "status_change"
    ASSIGNMENT = "assignment"
    COMMENT_ADDED = "comment_added"
    ROOT_CAUSE_UPDATE = "root_cause_update"
    SOLUTION_UPDATE = "solution_update"
    RELATED_LINK_ADDED = "related_link_added"
    RELATED_LINK_REMOVED = "related_link_removed"


@dataclass(frozen=True, slots=True)
class Active:
    """Deletion state of a live ticket."""

    is_deleted = False
    at = None


@dataclass(frozen=True, slots=True)
class Deleted:
    """Tombstone of a soft-deleted ticket."""

    at: datetime
    is_deleted = True


DeletionState = Active | Deleted

ACTIVE = Active()


@dataclass(slots=True)
class Comment:
    """Remark attached to a ticket. Internal comments are hidden from end users."""

    id: str
    ticket_id: str
    author_id: str
    content: str
    is_internal: bool
    created_at: datetime


@dataclass(slots=True)
class ActionEvent:
    """Append-only history entry describing one lifecycle change of a ticket."""

    ticket_id: str
    kind: ActionKind
    actor_id: str
    payload: Mapping[str, Any]
    created_at: datetime
    id: int | None = None


@dataclass(slots=True)
class Ticket:
    """Aggregate shared by incidents, problems and change requests."""

    id: str
    ticket_type: TicketType
    title: str
    description: str
    status: TicketStatus
    priority: Priority
    impact: Impact
    reporter_id: str
    created_at: datetime
    updated_at: datetime
    reporter_department: str | None = None
    assignee_id: str | None = None
    resolution_notes: str | None = None
    root_cause: str | None = None
    solution: str | None = None
    tags: list[str] = field(default_factory=list)
    related_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    deletion: DeletionState = ACTIVE
    version: int = 1
    comments: list[Comment] = field(default_factory=list)

    @property
    def is_deleted(self) -> bool:
        return self.deletion.is_deleted

    @property
    def deleted_at(self) -> datetime | None:
        return self.deletion.at


@dataclass(slots=True)
class UserRecord:
    """User as stored in the directory, including fields never returned to callers."""

    id: str
    email: str
    role: Role
    display_name: str | None = None
    department: str | None = None
    is_active: bool = True
    hashed_password: str | None = None

    def to_actor(self) -> Actor:
        return Actor(id=self.id, role=self.role, department=self.department)


@dataclass(slots=True)
class TicketDraft:
    """Caller supplied input for ticket creation. Reporter is never part of it."""

    title: str
    description: str
    priority: str = Priority.MEDIUM.value
    impact: str = Impact.MEDIUM.value
    assignee_id: str | None = None
    tags: Sequence[str] = ()
    related_ids: Sequence[str] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TicketChanges:
    """Partial field update. ``None`` means "leave unchanged"."""

    title: str | None = None
    description: str | None = None
    priority: str | None = None
    impact: str | None = None
    tags: Sequence[str] | None = None
    resolution_notes: str | None = None
    root_cause: str | None = None
    solution: str | None = None
    add_related_ids: Sequence[str] = ()
    remove_related_ids: Sequence[str] = ()

    def changed_fields(self) -> frozenset[str]:
        names = {
            name
            for name in (
                "title",
                "description",
                "priority",
                "impact",
                "tags",
                "resolution_notes",
                "root_cause",
                "solution",
            )
            if getattr(self, name) is not None
        }
        if self.add_related_ids or self.remove_related_ids:
            names.add("related_ids")
        return frozenset(names)


@dataclass(slots=True)
class TicketFilters:
    statuses: Sequence[str] = ()
    priorities: Sequence[str] = ()
    impacts: Sequence[str] = ()
    assignee_id: str | None = None
    reporter_id: str | None = None
    search: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    tags: Sequence[str] = ()
    include_closed: bool = False
    include_deleted: bool = False


@dataclass(slots=True)
class Pagination:
    """1-based page request."""

    page: int = 1
    limit: int = 10
    sort_by: str = "created_at"
    sort_order: str = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One page of results together with navigation metadata."""

    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1
