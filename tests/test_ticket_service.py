from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from sqlalchemy.exc import OperationalError

from app.tickets.errors import (
    DependencyUnavailableError,
    ForbiddenReason,
    InvalidTicketTransitionError,
    TicketConflictError,
    TicketForbiddenError,
    TicketNotFoundError,
    TicketValidationError,
)
from app.tickets.models import ActionKind, Pagination, TicketChanges, TicketDraft, TicketFilters
from app.tickets.repository import SqlTicketUnitOfWork, TicketRepository
from app.tickets.service import TicketLifecycleService
from app.tickets.state import (
    CHANGE_LIFECYCLE,
    INCIDENT_LIFECYCLE,
    PROBLEM_LIFECYCLE,
    ChangeStatus,
    IncidentStatus,
    ProblemStatus,
)


def _draft(**overrides) -> TicketDraft:
    values = dict(title="Email is down", description="Outlook cannot reach the server", priority="high")
    values.update(overrides)
    return TicketDraft(**values)


@pytest.fixture
def incidents(make_service) -> TicketLifecycleService:
    return make_service(INCIDENT_LIFECYCLE)


@pytest.fixture
def problems(make_service) -> TicketLifecycleService:
    return make_service(PROBLEM_LIFECYCLE)


@pytest.fixture
def changes(make_service) -> TicketLifecycleService:
    return make_service(CHANGE_LIFECYCLE)


@pytest.mark.asyncio
async def test_create_forces_reporter_and_initial_status(incidents, actors):
    ticket = await incidents.create(_draft(tags=["mail", "mail"]), actors["reporter"])

    assert ticket.reporter_id == "u-reporter"
    assert ticket.reporter_department == "ops"
    assert ticket.status is IncidentStatus.OPEN
    assert ticket.tags == ["mail"]
    assert ticket.version == 1
    assert await incidents.history(ticket.id, actors["reporter"]) == []


@pytest.mark.asyncio
async def test_create_rejects_invalid_input(incidents, actors):
    with pytest.raises(TicketValidationError) as exc:
        await incidents.create(_draft(title="", impact="enterprise"), actors["reporter"])

    assert {error.field for error in exc.value.errors} == {"title", "impact"}


@pytest.mark.asyncio
async def test_create_with_assignee_starts_work(incidents, actors):
    ticket = await incidents.create(_draft(assignee_id="u-agent"), actors["manager"])

    assert ticket.status is IncidentStatus.IN_PROGRESS
    history = await incidents.history(ticket.id, actors["manager"])
    assert [event.kind for event in history] == [ActionKind.ASSIGNMENT, ActionKind.STATUS_CHANGE]
    assert history[1].payload == {"from": "open", "to": "in_progress"}


@pytest.mark.asyncio
async def test_create_with_unknown_assignee_persists_nothing(incidents, actors):
    with pytest.raises(TicketNotFoundError) as exc:
        await incidents.create(_draft(assignee_id="u-ghost"), actors["manager"])

    assert exc.value.resource == "User"
    page = await incidents.list(actor=actors["admin"])
    assert page.total == 0


@pytest.mark.asyncio
async def test_assignment_moves_open_incident_to_in_progress(incidents, actors):
    ticket = await incidents.create(_draft(), actors["reporter"])

    assigned = await incidents.assign(ticket.id, "u-agent", actors["manager"])

    assert assigned.assignee_id == "u-agent"
    assert assigned.status is IncidentStatus.IN_PROGRESS
    history = await incidents.history(ticket.id, actors["admin"])
    assert [(event.kind, dict(event.payload)) for event in history] == [
        (ActionKind.ASSIGNMENT, {"from": None, "to": "u-agent"}),
        (ActionKind.STATUS_CHANGE, {"from": "open", "to": "in_progress"}),
    ]
    assert all(event.actor_id == "u-manager" for event in history)


@pytest.mark.asyncio
async def test_open_incident_cannot_be_closed_directly(incidents, actors):
    ticket = await incidents.create(_draft(), actors["reporter"])

    with pytest.raises(InvalidTicketTransitionError) as exc:
        await incidents.update_status(ticket.id, "closed", actors["admin"])

    assert (exc.value.from_status, exc.value.to_status) == ("open", "closed")
    unchanged = await incidents.find_by_id(ticket.id, actors["admin"])
    assert unchanged.status is IncidentStatus.OPEN
    assert unchanged.version == 1


@pytest.mark.asyncio
async def test_stranger_cannot_view_resolved_problem(problems, actors):
    problem = await problems.create(_draft(title="Recurring mail outages"), actors["reporter"])
    for status in ("analyzing", "root_cause_identified", "resolved"):
        await problems.update_status(problem.id, status, actors["admin"])

    with pytest.raises(TicketForbiddenError) as exc:
        await problems.find_by_id(problem.id, actors["stranger"])

    assert exc.value.reason is ForbiddenReason.NOT_OWNER
    resolved = await problems.find_by_id(problem.id, actors["reporter"])
    assert resolved.status is ProblemStatus.RESOLVED


@pytest.mark.asyncio
async def test_change_reporter_submits_and_withdraws(changes, actors):
    change = await changes.create(_draft(title="Upgrade mail server", impact="enterprise"), actors["reporter"])

    await changes.update_status(change.id, ChangeStatus.SUBMITTED, actors["reporter"])
    rejected = await changes.update_status(change.id, "rejected", actors["reporter"])

    assert rejected.status is ChangeStatus.REJECTED
    history = await changes.history(change.id, actors["reporter"])
    assert [dict(event.payload) for event in history] == [
        {"from": "draft", "to": "submitted"},
        {"from": "submitted", "to": "rejected"},
    ]
    assert [event.created_at for event in history] == sorted(event.created_at for event in history)


@pytest.mark.asyncio
async def test_admin_rejects_submitted_change(changes, actors):
    change = await changes.create(_draft(title="Rewire core switch"), actors["reporter"])

    await changes.update_status(change.id, "submitted", actors["reporter"])
    rejected = await changes.update_status(change.id, "rejected", actors["admin"], comment="Needs a rollback plan")

    assert rejected.status is ChangeStatus.REJECTED
    history = await changes.history(change.id, actors["admin"])
    assert [(event.actor_id, dict(event.payload)) for event in history] == [
        ("u-reporter", {"from": "draft", "to": "submitted"}),
        ("u-admin", {"from": "submitted", "to": "rejected"}),
    ]


@pytest.mark.asyncio
async def test_reporter_soft_delete(incidents, actors):
    ticket = await incidents.create(_draft(), actors["reporter"])
    await incidents.add_comment(ticket.id, "Any news?", actors["reporter"])

    await incidents.remove(ticket.id, actors["reporter"])

    page = await incidents.list(actor=actors["reporter"])
    assert page.items == []
    with pytest.raises(TicketNotFoundError):
        await incidents.find_by_id(ticket.id, actors["reporter"])

    deleted = await incidents.find_by_id(ticket.id, actors["reporter"], include_deleted=True)
    assert deleted.is_deleted
    assert deleted.deleted_at is not None
    assert [comment.content for comment in deleted.comments] == ["Any news?"]
    history = await incidents.history(ticket.id, actors["reporter"])
    assert [event.kind for event in history] == [ActionKind.COMMENT_ADDED]

    listed = await incidents.list(TicketFilters(include_deleted=True), actor=actors["reporter"])
    assert [item.id for item in listed.items] == [ticket.id]


@pytest.mark.asyncio
async def test_assignee_cannot_delete(incidents, actors):
    ticket = await incidents.create(_draft(assignee_id="u-agent"), actors["manager"])

    with pytest.raises(TicketForbiddenError) as exc:
        await incidents.remove(ticket.id, actors["agent"])

    assert exc.value.reason is ForbiddenReason.NOT_OWNER


@pytest.mark.asyncio
async def test_resolution_timestamp_is_set_once(incidents, actors):
    ticket = await incidents.create(_draft(assignee_id="u-agent"), actors["manager"])

    resolved = await incidents.update_status(ticket.id, "resolved", actors["agent"], comment="Restarted the relay")
    assert resolved.resolved_at is not None
    assert resolved.resolution_notes == "Restarted the relay"
    assert [comment.is_internal for comment in resolved.comments] == [True]

    with pytest.raises(InvalidTicketTransitionError):
        await incidents.update_status(ticket.id, "resolved", actors["agent"])

    await incidents.update_status(ticket.id, "in_progress", actors["agent"])
    again = await incidents.update_status(ticket.id, "resolved", actors["agent"])
    assert again.resolved_at == resolved.resolved_at

    closed = await incidents.update_status(ticket.id, "closed", actors["agent"])
    assert closed.closed_at is not None
    assert closed.closed_at >= closed.resolved_at >= closed.created_at


@pytest.mark.asyncio
async def test_each_status_change_adds_exactly_one_event(incidents, actors):
    ticket = await incidents.create(_draft(assignee_id="u-agent"), actors["manager"])
    before = await incidents.history(ticket.id, actors["agent"])

    await incidents.update_status(ticket.id, "on_hold", actors["agent"], comment="Waiting for vendor")

    after = await incidents.history(ticket.id, actors["agent"])
    assert len(after) == len(before) + 1
    assert after[-1].kind is ActionKind.STATUS_CHANGE
    assert after[-1].payload == {"from": "in_progress", "to": "on_hold"}


@pytest.mark.asyncio
async def test_reporter_cannot_resolve_but_can_cancel(incidents, actors):
    ticket = await incidents.create(_draft(), actors["reporter"])

    with pytest.raises(TicketForbiddenError) as exc:
        await incidents.update_status(ticket.id, "resolved", actors["reporter"])
    assert exc.value.reason is ForbiddenReason.NOT_ASSIGNEE

    cancelled = await incidents.update_status(ticket.id, "cancelled", actors["reporter"])
    assert cancelled.closed_at is not None
    assert cancelled.resolved_at is None


@pytest.mark.asyncio
async def test_unknown_status_is_a_validation_error(incidents, actors):
    ticket = await incidents.create(_draft(), actors["reporter"])

    with pytest.raises(TicketValidationError):
        await incidents.update_status(ticket.id, "identified", actors["admin"])


@pytest.mark.asyncio
async def test_assign_rules(incidents, actors):
    ticket = await incidents.create(_draft(), actors["reporter"])

    with pytest.raises(TicketForbiddenError) as exc:
        await incidents.assign(ticket.id, "u-agent", actors["reporter"])
    assert exc.value.reason is ForbiddenReason.ROLE_INSUFFICIENT

    with pytest.raises(TicketNotFoundError):
        await incidents.assign(ticket.id, "u-retired", actors["manager"])

    await incidents.assign(ticket.id, "u-agent", actors["manager"])
    with pytest.raises(TicketValidationError):
        await incidents.assign(ticket.id, "u-agent", actors["manager"])

    handed_off = await incidents.assign(ticket.id, "u-admin", actors["agent"], comment="Needs admin rights")
    assert handed_off.assignee_id == "u-admin"
    assert handed_off.status is IncidentStatus.IN_PROGRESS
    history = await incidents.history(ticket.id, actors["admin"])
    assert history[-1].payload == {"from": "u-agent", "to": "u-admin"}


@pytest.mark.asyncio
async def test_assigning_a_draft_change_starts_implementation(changes, actors):
    change = await changes.create(_draft(title="Patch servers"), actors["reporter"])

    assigned = await changes.assign(change.id, "u-agent", actors["manager"])

    assert assigned.status is ChangeStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_problem_update_records_field_and_link_events(problems, actors):
    problem = await problems.create(_draft(title="Mail outages", assignee_id="u-agent"), actors["manager"])

    updated = await problems.update(problem.id, TicketChanges(root_cause="Expired certificate"), actors["agent"])
    assert updated.root_cause == "Expired certificate"

    with pytest.raises(TicketForbiddenError):
        await problems.update(problem.id, TicketChanges(add_related_ids=["i-1"]), actors["agent"])

    updated = await problems.update(problem.id, TicketChanges(add_related_ids=["i-1", "i-2"]), actors["manager"])
    assert updated.related_ids == ["i-1", "i-2"]

    await problems.update(problem.id, TicketChanges(solution="Automate renewal"), actors["agent"])
    updated = await problems.update(
        problem.id, TicketChanges(remove_related_ids=["i-2", "i-9"]), actors["manager"]
    )
    assert updated.related_ids == ["i-1"]

    history = await problems.history(problem.id, actors["agent"])
    kinds = [event.kind for event in history]
    assert kinds[-4:] == [
        ActionKind.ROOT_CAUSE_UPDATE,
        ActionKind.RELATED_LINK_ADDED,
        ActionKind.SOLUTION_UPDATE,
        ActionKind.RELATED_LINK_REMOVED,
    ]
    assert history[-4].payload == {"previous": None, "new": "Expired certificate"}
    assert history[-1].payload == {"ticket_ids": ["i-2"]}


@pytest.mark.asyncio
async def test_update_permissions(incidents, actors):
    ticket = await incidents.create(_draft(assignee_id="u-agent"), actors["reporter"])

    with pytest.raises(TicketForbiddenError) as exc:
        await incidents.update(ticket.id, TicketChanges(title="Renamed"), actors["agent"])
    assert exc.value.reason is ForbiddenReason.ROLE_INSUFFICIENT

    renamed = await incidents.update(ticket.id, TicketChanges(title="Renamed", tags=["mail"]), actors["reporter"])
    assert renamed.title == "Renamed"
    assert renamed.tags == ["mail"]

    with pytest.raises(TicketValidationError):
        await incidents.update(ticket.id, TicketChanges(add_related_ids=[ticket.id]), actors["reporter"])


@pytest.mark.asyncio
async def test_reporter_cannot_edit_closed_ticket(incidents, actors):
    ticket = await incidents.create(_draft(), actors["reporter"])
    await incidents.update_status(ticket.id, "cancelled", actors["reporter"])

    with pytest.raises(TicketForbiddenError) as exc:
        await incidents.update(ticket.id, TicketChanges(description="More details"), actors["reporter"])

    assert exc.value.reason is ForbiddenReason.TERMINAL_STATE


@pytest.mark.asyncio
async def test_internal_comments(incidents, actors):
    ticket = await incidents.create(_draft(assignee_id="u-agent"), actors["reporter"])

    own_note = await incidents.add_comment(ticket.id, "psst", actors["reporter"], is_internal=True)
    assert own_note.is_internal

    note = await incidents.add_comment(ticket.id, "Vendor case #42", actors["agent"], is_internal=True)
    await incidents.add_comment(ticket.id, "Still broken", actors["reporter"])

    staff_view = await incidents.find_by_id(ticket.id, actors["agent"])
    reporter_view = await incidents.find_by_id(ticket.id, actors["reporter"])
    assert [comment.content for comment in staff_view.comments] == ["psst", "Vendor case #42", "Still broken"]
    assert [comment.content for comment in reporter_view.comments] == ["Still broken"]

    history = await incidents.history(ticket.id, actors["agent"])
    assert history[-2].payload == {"comment_id": note.id, "is_internal": True}

    with pytest.raises(TicketForbiddenError):
        await incidents.add_comment(ticket.id, "hello", actors["stranger"])


@pytest.mark.asyncio
async def test_list_is_scoped_and_paginated(incidents, actors):
    for index in range(3):
        await incidents.create(_draft(title=f"Reporter ticket {index}"), actors["reporter"])
    await incidents.create(_draft(title="Finance ticket"), actors["stranger"])

    page = await incidents.list(TicketFilters(), Pagination(page=1, limit=2), actor=actors["reporter"])
    assert page.total == 3
    assert page.total_pages == 2
    assert page.has_next and not page.has_previous
    assert [ticket.title for ticket in page.items] == ["Reporter ticket 2", "Reporter ticket 1"]

    manager_page = await incidents.list(actor=actors["manager"])
    assert manager_page.total == 3

    admin_page = await incidents.list(TicketFilters(search="finance"), actor=actors["admin"])
    assert [ticket.title for ticket in admin_page.items] == ["Finance ticket"]

    with pytest.raises(TicketValidationError):
        await incidents.list(pagination=Pagination(limit=1000), actor=actors["admin"])


@pytest.mark.asyncio
async def test_stats_are_zero_filled(incidents, actors):
    first = await incidents.create(_draft(), actors["reporter"])
    await incidents.create(_draft(assignee_id="u-agent"), actors["reporter"])
    gone = await incidents.create(_draft(), actors["reporter"])
    await incidents.update_status(first.id, "cancelled", actors["reporter"])
    await incidents.remove(gone.id, actors["reporter"])

    stats = await incidents.stats()

    assert stats == {
        "open": 0,
        "in_progress": 1,
        "on_hold": 0,
        "resolved": 0,
        "closed": 0,
        "cancelled": 1,
        "total": 2,
    }


@pytest.mark.asyncio
async def test_missing_ticket_is_not_found(incidents, actors):
    with pytest.raises(TicketNotFoundError) as exc:
        await incidents.update_status("nope", "resolved", actors["admin"])

    assert exc.value.resource == "Incident"


@pytest.mark.asyncio
async def test_concurrent_modification_raises_conflict(repository: TicketRepository, clock, actors):
    class StaleUnitOfWork(SqlTicketUnitOfWork):
        async def load(self, ticket_id, **kwargs):
            ticket = await super().load(ticket_id, **kwargs)
            return replace(ticket, version=ticket.version - 1) if ticket else None

    class StaleRepository(TicketRepository):
        unit_of_work_class = StaleUnitOfWork

    fresh = TicketLifecycleService(INCIDENT_LIFECYCLE, repository, clock=clock)
    ticket = await fresh.create(_draft(assignee_id="u-agent"), actors["manager"])

    stale_repository = StaleRepository(repository._session_factory)
    stale = TicketLifecycleService(INCIDENT_LIFECYCLE, stale_repository, clock=clock)

    with pytest.raises(TicketConflictError) as exc:
        await stale.update_status(ticket.id, "resolved", actors["agent"], comment="done")

    assert exc.value.retryable
    current = await fresh.find_by_id(ticket.id, actors["agent"])
    assert current.status is IncidentStatus.IN_PROGRESS
    assert current.comments == []
    history = await fresh.history(ticket.id, actors["agent"])
    assert [event.kind for event in history] == [ActionKind.ASSIGNMENT, ActionKind.STATUS_CHANGE]


@pytest.mark.asyncio
async def test_failed_event_write_rolls_back_the_transition(repository: TicketRepository, clock, actors):
    class BrokenTrailUnitOfWork(SqlTicketUnitOfWork):
        async def append_action_event(self, event):
            raise OperationalError("INSERT INTO ticket_action_events", {}, Exception("disk I/O error"))

    class BrokenTrailRepository(TicketRepository):
        unit_of_work_class = BrokenTrailUnitOfWork

    healthy = TicketLifecycleService(INCIDENT_LIFECYCLE, repository, clock=clock)
    ticket = await healthy.create(_draft(), actors["reporter"])
    broken = TicketLifecycleService(INCIDENT_LIFECYCLE, BrokenTrailRepository(repository._session_factory), clock=clock)

    with pytest.raises(DependencyUnavailableError):
        await broken.update_status(ticket.id, "in_progress", actors["admin"], comment="Picking this up")

    current = await healthy.find_by_id(ticket.id, actors["admin"])
    assert current.status is IncidentStatus.OPEN
    assert current.version == 1
    assert current.comments == []
    assert await healthy.history(ticket.id, actors["admin"]) == []


@pytest.mark.asyncio
async def test_concurrent_transitions_from_same_version(file_session_factory, clock, actors):
    loaded: list[str] = []
    both_loaded = asyncio.Event()

    class RendezvousUnitOfWork(SqlTicketUnitOfWork):
        # Hold every reader until both have seen the same version.
        async def load(self, ticket_id, **kwargs):
            ticket = await super().load(ticket_id, **kwargs)
            loaded.append(ticket_id)
            if len(loaded) == 2:
                both_loaded.set()
            await asyncio.wait_for(both_loaded.wait(), timeout=5)
            return ticket

    class RendezvousRepository(TicketRepository):
        unit_of_work_class = RendezvousUnitOfWork

    plain = TicketLifecycleService(INCIDENT_LIFECYCLE, TicketRepository(file_session_factory), clock=clock)
    ticket = await plain.create(_draft(assignee_id="u-agent"), actors["manager"])
    racing = TicketLifecycleService(INCIDENT_LIFECYCLE, RendezvousRepository(file_session_factory), clock=clock)

    outcomes = await asyncio.gather(
        racing.update_status(ticket.id, "resolved", actors["agent"]),
        racing.update_status(ticket.id, "on_hold", actors["agent"]),
        return_exceptions=True,
    )

    assert sorted(type(outcome).__name__ for outcome in outcomes) == ["Ticket", "TicketConflictError"]
    winner = next(outcome for outcome in outcomes if not isinstance(outcome, Exception))
    current = await plain.find_by_id(ticket.id, actors["agent"])
    assert current.status is winner.status
    assert current.version == 2
    history = await plain.history(ticket.id, actors["agent"])
    assert [event.kind for event in history].count(ActionKind.STATUS_CHANGE) == 2
