from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterator, Sequence
from uuid import uuid4

from opentelemetry import trace

from app.security import Actor

from . import audit as events
from .audit import AuditTrail
from .errors import (
    FieldError,
    TicketConflictError,
    TicketForbiddenError,
    TicketNotFoundError,
    TicketValidationError,
)
from .models import (
    ActionEvent,
    Comment,
    Impact,
    Page,
    Pagination,
    Priority,
    Ticket,
    TicketChanges,
    TicketDraft,
    TicketFilters,
)
from .permissions import (
    PermissionEvaluator,
    TicketOperation,
    list_scope,
    visible_comments,
)
from .repository import TicketRepository, TicketUnitOfWork
from .state import TicketLifecycle, TicketType
from .validation import (
    coerce_status,
    ensure_valid,
    validate_changes,
    validate_comment,
    validate_draft,
    validate_query,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unique(values: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(value.strip() for value in values))


class TicketLifecycleService:
    """Create, read, transition, assign, comment and delete tickets of one type.

    Every write runs in a single unit of work: the ticket row, its action events
    and any comment commit together or not at all. The ticket version read at the
    start of the unit of work guards the write, so a concurrent modification
    surfaces as ``TicketConflictError``.
    """

    def __init__(
        self,
        lifecycle: TicketLifecycle,
        repository: TicketRepository,
        *,
        audit: AuditTrail | None = None,
        clock: Clock | None = None,
        max_page_size: int = 100,
    ) -> None:
        self.lifecycle = lifecycle
        self.permissions = PermissionEvaluator(lifecycle)
        self._repository = repository
        self._audit = audit or AuditTrail(repository)
        self._clock = clock or _utcnow
        self._max_page_size = max_page_size
        self._resource = lifecycle.ticket_type.value.capitalize()

    @property
    def ticket_type(self) -> TicketType:
        return self.lifecycle.ticket_type

    async def create(self, draft: TicketDraft, actor: Actor) -> Ticket:
        with self._operation("create", actor):
            self.permissions.authorize(actor, None, TicketOperation.CREATE)
            ensure_valid(validate_draft(self.lifecycle, draft))

            now = self._clock()
            ticket = Ticket(
                id=str(uuid4()),
                ticket_type=self.ticket_type,
                title=draft.title.strip(),
                description=draft.description.strip(),
                status=self.lifecycle.initial,
                priority=Priority(draft.priority),
                impact=Impact(draft.impact),
                reporter_id=actor.id,
                reporter_department=actor.department,
                tags=_unique(draft.tags),
                related_ids=_unique(draft.related_ids),
                metadata=dict(draft.metadata),
                created_at=now,
                updated_at=now,
            )

            async with self._repository.unit_of_work() as uow:
                trail: list[ActionEvent] = []
                if draft.assignee_id:
                    await self._require_assignee(uow, draft.assignee_id)
                    ticket.assignee_id = draft.assignee_id
                    ticket.status = self.lifecycle.work
                    trail.append(events.assignment_changed(ticket.id, actor.id, None, draft.assignee_id, now))
                    trail.append(
                        events.status_changed(ticket.id, actor.id, self.lifecycle.initial, self.lifecycle.work, now)
                    )
                await uow.insert(ticket)
                await self._audit.extend(uow, trail)

            logger.info("Created %s %s for reporter %s", self.ticket_type.value, ticket.id, actor.id)
            return ticket

    async def find_by_id(self, ticket_id: str, actor: Actor, *, include_deleted: bool = False) -> Ticket:
        with self._operation("find_by_id", actor, ticket_id):
            ticket = await self._repository.get_ticket(
                ticket_id, with_comments=True, include_deleted=include_deleted
            )
            ticket = self._ensure_found(ticket, ticket_id)
            self.permissions.authorize(actor, ticket, TicketOperation.VIEW)
            return self._shape(ticket, actor)

    async def list(
        self,
        filters: TicketFilters | None = None,
        pagination: Pagination | None = None,
        *,
        actor: Actor,
    ) -> Page[Ticket]:
        filters = filters or TicketFilters()
        pagination = pagination or Pagination()
        with self._operation("list", actor):
            ensure_valid(validate_query(self.lifecycle, filters, pagination, max_limit=self._max_page_size))
            items, total = await self._repository.query(
                self.ticket_type, filters, pagination, list_scope(actor)
            )
            return Page(items=items, total=total, page=pagination.page, limit=pagination.limit)

    async def update(self, ticket_id: str, changes: TicketChanges, actor: Actor) -> Ticket:
        with self._operation("update", actor, ticket_id):
            ensure_valid(validate_changes(self.lifecycle, changes))
            if ticket_id in changes.add_related_ids:
                raise TicketValidationError([FieldError("related_ids", "A ticket cannot be linked to itself")])

            async with self._repository.unit_of_work() as uow:
                ticket = self._ensure_found(await uow.load(ticket_id, with_comments=True), ticket_id)
                self.permissions.authorize(
                    actor, ticket, TicketOperation.UPDATE, fields=changes.changed_fields()
                )

                now = self._clock()
                trail: list[ActionEvent] = []
                for name in sorted(events.tracked_fields()):
                    new_value = getattr(changes, name)
                    previous = getattr(ticket, name)
                    if new_value is not None and new_value != previous:
                        trail.append(events.field_updated(ticket.id, actor.id, name, previous, new_value, now))

                related = list(ticket.related_ids)
                added = [value for value in _unique(changes.add_related_ids) if value not in related]
                removed = [value for value in _unique(changes.remove_related_ids) if value in related]
                if added:
                    trail.append(events.related_links_changed(ticket.id, actor.id, added, added=True, at=now))
                if removed:
                    trail.append(events.related_links_changed(ticket.id, actor.id, removed, added=False, at=now))
                related = [value for value in related if value not in removed] + added

                updated = replace(
                    ticket,
                    title=changes.title.strip() if changes.title is not None else ticket.title,
                    description=(
                        changes.description.strip() if changes.description is not None else ticket.description
                    ),
                    priority=Priority(changes.priority) if changes.priority is not None else ticket.priority,
                    impact=Impact(changes.impact) if changes.impact is not None else ticket.impact,
                    tags=_unique(changes.tags) if changes.tags is not None else ticket.tags,
                    resolution_notes=(
                        changes.resolution_notes
                        if changes.resolution_notes is not None
                        else ticket.resolution_notes
                    ),
                    root_cause=changes.root_cause if changes.root_cause is not None else ticket.root_cause,
                    solution=changes.solution if changes.solution is not None else ticket.solution,
                    related_ids=related,
                    updated_at=now,
                )
                saved = await uow.save(updated, ticket.version)
                await self._audit.extend(uow, trail)

            logger.info(
                "Updated %s %s fields=%s", self.ticket_type.value, ticket_id, ",".join(sorted(changes.changed_fields()))
            )
            return self._shape(saved, actor)

    async def update_status(
        self,
        ticket_id: str,
        new_status: str | Enum,
        actor: Actor,
        *,
        comment: str | None = None,
    ) -> Ticket:
        with self._operation("update_status", actor, ticket_id):
            target = coerce_status(self.lifecycle, new_status)

            async with self._repository.unit_of_work() as uow:
                ticket = self._ensure_found(await uow.load(ticket_id, with_comments=True), ticket_id)
                self.permissions.authorize(actor, ticket, TicketOperation.TRANSITION, target_status=target)
                self.lifecycle.assert_transition(ticket.status, target)

                now = self._clock()
                remark = comment.strip() if comment and comment.strip() else None
                updated = replace(ticket, status=target, updated_at=now)
                if self.lifecycle.is_resolved(target):
                    if updated.resolved_at is None:
                        updated.resolved_at = now
                    if remark is not None:
                        updated.resolution_notes = remark
                if self.lifecycle.is_closing(target) and updated.closed_at is None:
                    updated.closed_at = now

                if remark is not None:
                    updated.comments = [*ticket.comments, await self._remark(uow, ticket.id, actor, remark, now)]
                saved = await uow.save(updated, ticket.version)
                await self._audit.append(uow, events.status_changed(ticket.id, actor.id, ticket.status, target, now))

            logger.info(
                "Moved %s %s from %s to %s", self.ticket_type.value, ticket_id, ticket.status.value, target.value
            )
            return self._shape(saved, actor)

    async def assign(
        self,
        ticket_id: str,
        assignee_id: str,
        actor: Actor,
        *,
        comment: str | None = None,
    ) -> Ticket:
        with self._operation("assign", actor, ticket_id):
            if not assignee_id or not assignee_id.strip():
                raise TicketValidationError([FieldError("assignee_id", "Assignee id is required")])

            async with self._repository.unit_of_work() as uow:
                ticket = self._ensure_found(await uow.load(ticket_id, with_comments=True), ticket_id)
                await self._require_assignee(uow, assignee_id)
                self.permissions.authorize(actor, ticket, TicketOperation.ASSIGN)
                if ticket.assignee_id == assignee_id:
                    raise TicketValidationError(
                        [FieldError("assignee_id", "Ticket is already assigned to this user")]
                    )

                now = self._clock()
                trail = [events.assignment_changed(ticket.id, actor.id, ticket.assignee_id, assignee_id, now)]
                updated = replace(ticket, assignee_id=assignee_id, updated_at=now)
                if ticket.status in self.lifecycle.auto_progress_from:
                    updated.status = self.lifecycle.work
                    trail.append(events.status_changed(ticket.id, actor.id, ticket.status, self.lifecycle.work, now))

                remark = comment.strip() if comment and comment.strip() else None
                if remark is not None:
                    updated.comments = [*ticket.comments, await self._remark(uow, ticket.id, actor, remark, now)]
                saved = await uow.save(updated, ticket.version)
                await self._audit.extend(uow, trail)

            logger.info("Assigned %s %s to %s", self.ticket_type.value, ticket_id, assignee_id)
            return self._shape(saved, actor)

    async def add_comment(
        self,
        ticket_id: str,
        content: str,
        actor: Actor,
        *,
        is_internal: bool = False,
    ) -> Comment:
        with self._operation("add_comment", actor, ticket_id):
            ensure_valid(validate_comment(content))

            async with self._repository.unit_of_work() as uow:
                ticket = self._ensure_found(await uow.load(ticket_id), ticket_id)
                self.permissions.authorize(actor, ticket, TicketOperation.COMMENT)

                now = self._clock()
                comment = Comment(
                    id=str(uuid4()),
                    ticket_id=ticket.id,
                    author_id=actor.id,
                    content=content.strip(),
                    is_internal=is_internal,
                    created_at=now,
                )
                await uow.append_comment(comment)
                await uow.save(replace(ticket, updated_at=now), ticket.version)
                await self._audit.append(
                    uow, events.comment_added(ticket.id, actor.id, comment.id, comment.is_internal, now)
                )

            logger.info("Comment %s added to %s %s", comment.id, self.ticket_type.value, ticket_id)
            return comment

    async def remove(self, ticket_id: str, actor: Actor) -> None:
        with self._operation("remove", actor, ticket_id):
            async with self._repository.unit_of_work() as uow:
                ticket = self._ensure_found(await uow.load(ticket_id), ticket_id)
                self.permissions.authorize(actor, ticket, TicketOperation.DELETE)
                await uow.soft_delete(ticket.id, self._clock(), ticket.version)

            logger.info("Soft-deleted %s %s", self.ticket_type.value, ticket_id)

    async def stats(self) -> dict[str, int]:
        """Count live tickets per status, including statuses with no tickets."""

        with self._operation("stats"):
            counts = await self._repository.count_by_status(self.ticket_type)
            result = {status.value: counts.get(status.value, 0) for status in self.lifecycle.statuses}
            result["total"] = sum(result.values())
            return result

    async def history(self, ticket_id: str, actor: Actor) -> list[ActionEvent]:
        with self._operation("history", actor, ticket_id):
            ticket = await self._repository.get_ticket(ticket_id, with_comments=False, include_deleted=True)
            ticket = self._ensure_found(ticket, ticket_id)
            self.permissions.authorize(actor, ticket, TicketOperation.VIEW)
            return await self._audit.list_for(ticket.id)

    async def _require_assignee(self, uow: TicketUnitOfWork, assignee_id: str) -> None:
        user = await uow.find_user(assignee_id)
        if user is None or not user.is_active:
            raise TicketNotFoundError("User", assignee_id)

    async def _remark(
        self, uow: TicketUnitOfWork, ticket_id: str, actor: Actor, content: str, at: datetime
    ) -> Comment:
        # Operator remarks on status changes and assignments are staff notes.
        comment = Comment(
            id=str(uuid4()),
            ticket_id=ticket_id,
            author_id=actor.id,
            content=content,
            is_internal=True,
            created_at=at,
        )
        return await uow.append_comment(comment)

    def _ensure_found(self, ticket: Ticket | None, ticket_id: str) -> Ticket:
        if ticket is None:
            raise TicketNotFoundError(self._resource, ticket_id)
        return ticket

    @staticmethod
    def _shape(ticket: Ticket, actor: Actor) -> Ticket:
        return replace(ticket, comments=visible_comments(actor, ticket.comments))

    @contextmanager
    def _operation(self, name: str, actor: Actor | None = None, ticket_id: str | None = None) -> Iterator[None]:
        with tracer.start_as_current_span(f"tickets.{name}") as span:
            span.set_attribute("ticket.type", self.ticket_type.value)
            if ticket_id is not None:
                span.set_attribute("ticket.id", ticket_id)
            if actor is not None:
                span.set_attribute("actor.id", actor.id)
            try:
                yield
            except TicketForbiddenError as exc:
                logger.warning(
                    "Denied %s on %s %s for %s: %s",
                    name,
                    self.ticket_type.value,
                    ticket_id,
                    actor.id if actor else None,
                    exc.reason.value,
                )
                raise
            except TicketConflictError:
                logger.warning("Version conflict during %s on %s %s", name, self.ticket_type.value, ticket_id)
                raise
