from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Union

from .errors import InvalidTicketTransitionError


class TicketType(str, Enum):
    """Ticket variants sharing the lifecycle engine."""

    INCIDENT = "incident"
    PROBLEM = "problem"
    CHANGE = "change"


class IncidentStatus(str, Enum):
    """Supported states for an incident's lifecycle."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class ProblemStatus(str, Enum):
    """Supported states for a problem's lifecycle."""

    IDENTIFIED = "identified"
    ANALYZING = "analyzing"
    ROOT_CAUSE_IDENTIFIED = "root_cause_identified"
    WORKAROUND_AVAILABLE = "workaround_available"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REOPENED = "reopened"


class ChangeStatus(str, Enum):
    """Supported states for a change request's lifecycle."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    IN_REVIEW = "in_review"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    IMPLEMENTED = "implemented"
    REJECTED = "rejected"
    CLOSED = "closed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TicketStatus = Union[IncidentStatus, ProblemStatus, ChangeStatus]


@dataclass(frozen=True, slots=True)
class TicketLifecycle:
    """Status graph and lifecycle markers for one ticket type.

    ``work`` is the state an assignment moves a ticket into when it is still in
    one of ``auto_progress_from``. ``resolved`` and ``closing`` drive the
    ``resolved_at``/``closed_at`` timestamps. ``terminal`` states accept no
    transitions other than the ``reopen`` targets. ``self_service`` lists the
    targets a reporter may move their own ticket into.
    """

    ticket_type: TicketType
    statuses: type[Enum]
    transitions: Mapping[Enum, frozenset[Enum]]
    initial: Enum
    work: Enum
    resolved: frozenset[Enum]
    closing: frozenset[Enum]
    terminal: frozenset[Enum]
    reopen: frozenset[Enum] = frozenset()
    self_service: frozenset[Enum] = frozenset()
    auto_progress_from: frozenset[Enum] = frozenset()

    def __post_init__(self) -> None:
        members = set(self.statuses)
        missing = members - set(self.transitions)
        if missing:
            names = ", ".join(sorted(status.value for status in missing))
            raise ValueError(f"{self.ticket_type.value} lifecycle has no edges defined for: {names}")
        for source, targets in self.transitions.items():
            if source not in members or not targets <= members:
                raise ValueError(f"{self.ticket_type.value} lifecycle references a foreign status from {source!s}")
        for status in self.terminal:
            if not self.transitions[status] <= self.reopen:
                raise ValueError(f"Terminal status {status.value} may only lead to a reopen state")
        markers = {self.initial, self.work} | self.resolved | self.closing | self.self_service | self.auto_progress_from
        if not markers <= members:
            raise ValueError(f"{self.ticket_type.value} lifecycle markers must be members of its status enum")

    def parse_status(self, value: str | Enum) -> Enum:
        """Return the enum member for ``value`` or raise ``ValueError``."""

        return self.statuses(value.value if isinstance(value, Enum) else value)

    def next_statuses(self, current: Enum) -> frozenset[Enum]:
        try:
            return self.transitions[current]
        except KeyError:
            raise ValueError(f"Unknown {self.ticket_type.value} status: {current!s}") from None

    def can_transition(self, current: Enum, target: Enum) -> bool:
        return target in self.next_statuses(current)

    def assert_transition(self, current: Enum, target: Enum) -> None:
        if not self.can_transition(current, target):
            raise InvalidTicketTransitionError(_value(current), _value(target))

    def is_terminal(self, status: Enum) -> bool:
        return status in self.terminal

    def is_resolved(self, status: Enum) -> bool:
        return status in self.resolved

    def is_closing(self, status: Enum) -> bool:
        return status in self.closing


def _value(status: Enum | str) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def _edges(table: Mapping[Enum, tuple[Enum, ...]]) -> dict[Enum, frozenset[Enum]]:
    return {source: frozenset(targets) for source, targets in table.items()}


INCIDENT_LIFECYCLE = TicketLifecycle(
    ticket_type=TicketType.INCIDENT,
    statuses=IncidentStatus,
    transitions=_edges(
        {
            IncidentStatus.OPEN: (
                IncidentStatus.IN_PROGRESS,
                IncidentStatus.ON_HOLD,
                IncidentStatus.RESOLVED,
                IncidentStatus.CANCELLED,
            ),
            IncidentStatus.IN_PROGRESS: (IncidentStatus.ON_HOLD, IncidentStatus.RESOLVED, IncidentStatus.CANCELLED),
            IncidentStatus.ON_HOLD: (IncidentStatus.IN_PROGRESS, IncidentStatus.RESOLVED, IncidentStatus.CANCELLED),
            IncidentStatus.RESOLVED: (IncidentStatus.CLOSED, IncidentStatus.IN_PROGRESS),
            IncidentStatus.CLOSED: (),
            IncidentStatus.CANCELLED: (),
        }
    ),
    initial=IncidentStatus.OPEN,
    work=IncidentStatus.IN_PROGRESS,
    resolved=frozenset({IncidentStatus.RESOLVED}),
    closing=frozenset({IncidentStatus.CLOSED, IncidentStatus.CANCELLED}),
    terminal=frozenset({IncidentStatus.CLOSED, IncidentStatus.CANCELLED}),
    self_service=frozenset({IncidentStatus.CANCELLED}),
    auto_progress_from=frozenset({IncidentStatus.OPEN}),
)

PROBLEM_LIFECYCLE = TicketLifecycle(
    ticket_type=TicketType.PROBLEM,
    statuses=ProblemStatus,
    transitions=_edges(
        {
            ProblemStatus.IDENTIFIED: (ProblemStatus.ANALYZING,),
            ProblemStatus.ANALYZING: (ProblemStatus.ROOT_CAUSE_IDENTIFIED, ProblemStatus.WORKAROUND_AVAILABLE),
            ProblemStatus.ROOT_CAUSE_IDENTIFIED: (ProblemStatus.WORKAROUND_AVAILABLE, ProblemStatus.RESOLVED),
            ProblemStatus.WORKAROUND_AVAILABLE: (ProblemStatus.RESOLVED,),
            ProblemStatus.RESOLVED: (ProblemStatus.CLOSED, ProblemStatus.REOPENED),
            ProblemStatus.CLOSED: (ProblemStatus.REOPENED,),
            ProblemStatus.REOPENED: (ProblemStatus.ANALYZING,),
        }
    ),
    initial=ProblemStatus.IDENTIFIED,
    work=ProblemStatus.ANALYZING,
    resolved=frozenset({ProblemStatus.RESOLVED}),
    closing=frozenset({ProblemStatus.CLOSED}),
    terminal=frozenset({ProblemStatus.CLOSED}),
    reopen=frozenset({ProblemStatus.REOPENED}),
    auto_progress_from=frozenset({ProblemStatus.IDENTIFIED}),
)

CHANGE_LIFECYCLE = TicketLifecycle(
    ticket_type=TicketType.CHANGE,
    statuses=ChangeStatus,
    transitions=_edges(
        {
            ChangeStatus.DRAFT: (ChangeStatus.SUBMITTED,),
            ChangeStatus.SUBMITTED: (ChangeStatus.IN_REVIEW, ChangeStatus.REJECTED),
            ChangeStatus.IN_REVIEW: (ChangeStatus.SCHEDULED, ChangeStatus.REJECTED),
            ChangeStatus.SCHEDULED: (ChangeStatus.IN_PROGRESS, ChangeStatus.REJECTED),
            ChangeStatus.IN_PROGRESS: (ChangeStatus.IMPLEMENTED, ChangeStatus.FAILED, ChangeStatus.ROLLED_BACK),
            ChangeStatus.IMPLEMENTED: (ChangeStatus.CLOSED,),
            ChangeStatus.REJECTED: (ChangeStatus.DRAFT,),
            ChangeStatus.FAILED: (ChangeStatus.IN_PROGRESS, ChangeStatus.ROLLED_BACK),
            ChangeStatus.ROLLED_BACK: (ChangeStatus.DRAFT, ChangeStatus.REJECTED),
            ChangeStatus.CLOSED: (),
        }
    ),
    initial=ChangeStatus.DRAFT,
    work=ChangeStatus.IN_PROGRESS,
    resolved=frozenset({ChangeStatus.IMPLEMENTED}),
    closing=frozenset({ChangeStatus.CLOSED}),
    terminal=frozenset({ChangeStatus.CLOSED}),
    # A requester may submit their own draft as well as withdraw it.
    self_service=frozenset({ChangeStatus.SUBMITTED, ChangeStatus.REJECTED}),
    auto_progress_from=frozenset({ChangeStatus.DRAFT}),
)

LIFECYCLES: Mapping[TicketType, TicketLifecycle] = {
    TicketType.INCIDENT: INCIDENT_LIFECYCLE,
    TicketType.PROBLEM: PROBLEM_LIFECYCLE,
    TicketType.CHANGE: CHANGE_LIFECYCLE,
}


def get_lifecycle(ticket_type: TicketType | str) -> TicketLifecycle:
    return LIFECYCLES[TicketType(ticket_type)]


def is_legal_transition(ticket_type: TicketType | str, current: str | Enum, target: str | Enum) -> bool:
    """Return whether ``current -> target`` is an edge of the type's status graph."""

    lifecycle = get_lifecycle(ticket_type)
    return lifecycle.can_transition(lifecycle.parse_status(current), lifecycle.parse_status(target))
