"""SQLModel persistence for tickets, comments, action events and users."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Protocol, Sequence

from sqlalchemy import delete, exists, func, or_, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from app.security import Role
from packages.db.models import (
    TicketActionEventTable,
    TicketCommentTable,
    TicketTable,
    TicketTagTable,
    UserTable,
)

from .errors import DependencyUnavailableError, TicketConflictError
from .models import (
    ACTIVE,
    ActionEvent,
    ActionKind,
    Comment,
    Deleted,
    Impact,
    Pagination,
    Priority,
    Ticket,
    TicketFilters,
    UserRecord,
)
from .permissions import ListScope
from .state import TicketType, get_lifecycle

logger = logging.getLogger(__name__)


class TicketUnitOfWork(Protocol):
    """Operations available inside a single database transaction."""

    async def load(
        self, ticket_id: str, *, with_comments: bool = False, include_deleted: bool = False
    ) -> Ticket | None:
        ...

    async def insert(self, ticket: Ticket) -> Ticket:
        ...

    async def save(self, ticket: Ticket, expected_version: int) -> Ticket:
        ...

    async def soft_delete(self, ticket_id: str, at: datetime, expected_version: int) -> None:
        ...

    async def append_comment(self, comment: Comment) -> Comment:
        ...

    async def append_action_event(self, event: ActionEvent) -> ActionEvent:
        ...

    async def find_user(self, user_id: str) -> UserRecord | None:
        ...


class SqlTicketUnitOfWork:
    """Unit of work bound to one ``AsyncSession`` inside an open transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def load(
        self, ticket_id: str, *, with_comments: bool = False, include_deleted: bool = False
    ) -> Ticket | None:
        row = await self._session.get(TicketTable, ticket_id)
        if row is None or (row.is_deleted and not include_deleted):
            return None
        tags = await self._tags_for([row.id])
        comments: list[Comment] = []
        if with_comments:
            result = await self._session.execute(
                select(TicketCommentTable)
                .where(TicketCommentTable.ticket_id == ticket_id)
                .order_by(TicketCommentTable.created_at.asc())
            )
            comments = [_table_to_comment(comment) for comment in result.scalars().all()]
        return _table_to_ticket(row, tags.get(row.id, []), comments)

    async def insert(self, ticket: Ticket) -> Ticket:
        self._session.add(TicketTable(id=ticket.id, version=ticket.version, **_ticket_columns(ticket)))
        self._session.add_all(TicketTagTable(ticket_id=ticket.id, tag=tag) for tag in ticket.tags)
        await self._session.flush()
        return ticket

    async def save(self, ticket: Ticket, expected_version: int) -> Ticket:
        """Write ``ticket`` if its stored version is still ``expected_version``.

        Returns the ticket carrying the bumped version.
        """

        new_version = expected_version + 1
        result = await self._session.execute(
            update(TicketTable)
            .where(TicketTable.id == ticket.id, TicketTable.version == expected_version)
            .values(version=new_version, **_ticket_columns(ticket))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise TicketConflictError(ticket.id, expected_version)
        await self._session.execute(delete(TicketTagTable).where(TicketTagTable.ticket_id == ticket.id))
        self._session.add_all(TicketTagTable(ticket_id=ticket.id, tag=tag) for tag in ticket.tags)
        return replace(ticket, version=new_version)

    async def soft_delete(self, ticket_id: str, at: datetime, expected_version: int) -> None:
        result = await self._session.execute(
            update(TicketTable)
            .where(
                TicketTable.id == ticket_id,
                TicketTable.version == expected_version,
                TicketTable.is_deleted == False,  # noqa: E712
            )
            .values(is_deleted=True, deleted_at=at, updated_at=at, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise TicketConflictError(ticket_id, expected_version)

    async def append_comment(self, comment: Comment) -> Comment:
        self._session.add(
            TicketCommentTable(
                id=comment.id,
                ticket_id=comment.ticket_id,
                author_id=comment.author_id,
                content=comment.content,
                is_internal=comment.is_internal,
                created_at=comment.created_at,
            )
        )
        return comment

    async def append_action_event(self, event: ActionEvent) -> ActionEvent:
        row = TicketActionEventTable(
            ticket_id=event.ticket_id,
            kind=event.kind.value,
            actor_id=event.actor_id,
            payload=dict(event.payload),
            created_at=event.created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return replace(event, id=row.id)

    async def find_user(self, user_id: str) -> UserRecord | None:
        row = await self._session.get(UserTable, user_id)
        if row is None:
            return None
        return _table_to_user(row)

    async def add_user(self, user: UserRecord) -> UserRecord:
        self._session.add(
            UserTable(
                id=user.id,
                email=user.email,
                display_name=user.display_name,
                hashed_password=user.hashed_password,
                role=user.role.value,
                department=user.department,
                is_active=user.is_active,
            )
        )
        return user

    async def query(
        self,
        ticket_type: TicketType,
        filters: TicketFilters,
        pagination: Pagination,
        scope: ListScope | None = None,
    ) -> tuple[list[Ticket], int]:
        conditions = _filter_conditions(ticket_type, filters, scope)

        total = await self._session.scalar(select(func.count()).select_from(TicketTable).where(*conditions))

        sort_column = getattr(TicketTable, pagination.sort_by)
        ordering = sort_column.asc() if pagination.sort_order.lower() == "asc" else sort_column.desc()
        result = await self._session.execute(
            select(TicketTable)
            .where(*conditions)
            .order_by(ordering, TicketTable.id.asc())
            .offset(pagination.offset)
            .limit(pagination.limit)
        )
        rows = result.scalars().all()
        tags = await self._tags_for([row.id for row in rows])
        return [_table_to_ticket(row, tags.get(row.id, [])) for row in rows], int(total or 0)

    async def count_by_status(self, ticket_type: TicketType) -> dict[str, int]:
        result = await self._session.execute(
            select(TicketTable.status, func.count())
            .where(TicketTable.ticket_type == ticket_type.value, TicketTable.is_deleted == False)  # noqa: E712
            .group_by(TicketTable.status)
        )
        return {status: int(count) for status, count in result.all()}

    async def list_action_events(self, ticket_id: str) -> list[ActionEvent]:
        result = await self._session.execute(
            select(TicketActionEventTable)
            .where(TicketActionEventTable.ticket_id == ticket_id)
            .order_by(TicketActionEventTable.created_at.asc(), TicketActionEventTable.id.asc())
        )
        return [_table_to_event(row) for row in result.scalars().all()]

    async def _tags_for(self, ticket_ids: Sequence[str]) -> dict[str, list[str]]:
        if not ticket_ids:
            return {}
        # Columns only, so tag rows never enter the identity map and ``save`` can rewrite them.
        result = await self._session.execute(
            select(TicketTagTable.ticket_id, TicketTagTable.tag)
            .where(TicketTagTable.ticket_id.in_(ticket_ids))
            .order_by(TicketTagTable.tag.asc())
        )
        tags: dict[str, list[str]] = {}
        for ticket_id, tag in result.all():
            tags.setdefault(ticket_id, []).append(tag)
        return tags


class TicketRepository:
    """Persistence helper wrapping the ticket tables behind units of work."""

    unit_of_work_class: type[SqlTicketUnitOfWork] = SqlTicketUnitOfWork

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SqlTicketUnitOfWork]:
        """Open a transaction that commits on success and rolls back on any error."""

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield self.unit_of_work_class(session)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Ticket store operation failed: %s", exc.__class__.__name__)
            raise DependencyUnavailableError("Ticket store is unavailable") from exc

    async def get_ticket(
        self, ticket_id: str, *, with_comments: bool = True, include_deleted: bool = False
    ) -> Ticket | None:
        async with self.unit_of_work() as uow:
            return await uow.load(ticket_id, with_comments=with_comments, include_deleted=include_deleted)

    async def query(
        self,
        ticket_type: TicketType,
        filters: TicketFilters,
        pagination: Pagination,
        scope: ListScope | None = None,
    ) -> tuple[list[Ticket], int]:
        async with self.unit_of_work() as uow:
            return await uow.query(ticket_type, filters, pagination, scope)

    async def count_by_status(self, ticket_type: TicketType) -> dict[str, int]:
        async with self.unit_of_work() as uow:
            return await uow.count_by_status(ticket_type)

    async def list_action_events(self, ticket_id: str) -> list[ActionEvent]:
        async with self.unit_of_work() as uow:
            return await uow.list_action_events(ticket_id)

    async def find_user(self, user_id: str) -> UserRecord | None:
        async with self.unit_of_work() as uow:
            return await uow.find_user(user_id)

    async def add_user(self, user: UserRecord) -> UserRecord:
        async with self.unit_of_work() as uow:
            return await uow.add_user(user)

    async def ping(self) -> bool:
        if self._engine is None:
            return False
        try:
            async with self._engine.connect() as connection:
                await connection.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Ticket store ping failed", exc_info=True)
            return False
        return True


def _filter_conditions(ticket_type: TicketType, filters: TicketFilters, scope: ListScope | None) -> list[Any]:
    lifecycle = get_lifecycle(ticket_type)
    conditions: list[Any] = [TicketTable.ticket_type == ticket_type.value]

    if not filters.include_deleted:
        conditions.append(TicketTable.is_deleted == False)  # noqa: E712
    if filters.statuses:
        conditions.append(TicketTable.status.in_([lifecycle.parse_status(status).value for status in filters.statuses]))
    elif not filters.include_closed:
        conditions.append(TicketTable.status.not_in([status.value for status in lifecycle.terminal]))
    if filters.priorities:
        conditions.append(TicketTable.priority.in_([Priority(value).value for value in filters.priorities]))
    if filters.impacts:
        conditions.append(TicketTable.impact.in_([Impact(value).value for value in filters.impacts]))
    if filters.assignee_id:
        conditions.append(TicketTable.assignee_id == filters.assignee_id)
    if filters.reporter_id:
        conditions.append(TicketTable.reporter_id == filters.reporter_id)
    if filters.search:
        conditions.append(TicketTable.title.icontains(filters.search, autoescape=True))
    if filters.created_from:
        conditions.append(TicketTable.created_at >= filters.created_from)
    if filters.created_to:
        conditions.append(TicketTable.created_at <= filters.created_to)
    for tag in filters.tags:
        conditions.append(
            exists().where(TicketTagTable.ticket_id == TicketTable.id, TicketTagTable.tag == tag)
        )

    if scope is not None and not scope.unrestricted:
        visible = [TicketTable.reporter_id == scope.user_id, TicketTable.assignee_id == scope.user_id]
        if scope.department:
            visible.append(TicketTable.reporter_department == scope.department)
        conditions.append(or_(*visible))
    return conditions


def _ticket_columns(ticket: Ticket) -> dict[str, Any]:
    return {
        "ticket_type": ticket.ticket_type.value,
        "title": ticket.title,
        "description": ticket.description,
        "status": ticket.status.value,
        "priority": ticket.priority.value,
        "impact": ticket.impact.value,
        "reporter_id": ticket.reporter_id,
        "reporter_department": ticket.reporter_department,
        "assignee_id": ticket.assignee_id,
        "resolution_notes": ticket.resolution_notes,
        "root_cause": ticket.root_cause,
        "solution": ticket.solution,
        "related_ids": list(ticket.related_ids),
        "metadata_": dict(ticket.metadata),
        "resolved_at": ticket.resolved_at,
        "closed_at": ticket.closed_at,
        "is_deleted": ticket.is_deleted,
        "deleted_at": ticket.deleted_at,
        "created_at": ticket.created_at,
        "updated_at": ticket.updated_at,
    }


def _table_to_ticket(row: TicketTable, tags: Sequence[str], comments: Sequence[Comment] = ()) -> Ticket:
    ticket_type = TicketType(row.ticket_type)
    return Ticket(
        id=row.id,
        ticket_type=ticket_type,
        title=row.title,
        description=row.description,
        status=get_lifecycle(ticket_type).parse_status(row.status),
        priority=Priority(row.priority),
        impact=Impact(row.impact),
        reporter_id=row.reporter_id,
        reporter_department=row.reporter_department,
        assignee_id=row.assignee_id,
        resolution_notes=row.resolution_notes,
        root_cause=row.root_cause,
        solution=row.solution,
        tags=list(tags),
        related_ids=list(row.related_ids or []),
        metadata=dict(row.metadata_ or {}),
        created_at=_ensure_datetime(row.created_at),
        updated_at=_ensure_datetime(row.updated_at),
        resolved_at=_optional_datetime(row.resolved_at),
        closed_at=_optional_datetime(row.closed_at),
        deletion=Deleted(at=_ensure_datetime(row.deleted_at)) if row.is_deleted else ACTIVE,
        version=row.version,
        comments=list(comments),
    )


def _table_to_comment(row: TicketCommentTable) -> Comment:
    return Comment(
        id=row.id,
        ticket_id=row.ticket_id,
        author_id=row.author_id,
        content=row.content,
        is_internal=row.is_internal,
        created_at=_ensure_datetime(row.created_at),
    )


def _table_to_event(row: TicketActionEventTable) -> ActionEvent:
    return ActionEvent(
        id=row.id,
        ticket_id=row.ticket_id,
        kind=ActionKind(row.kind),
        actor_id=row.actor_id,
        payload=dict(row.payload or {}),
        created_at=_ensure_datetime(row.created_at),
    )


def _table_to_user(row: UserTable) -> UserRecord:
    return UserRecord(
        id=row.id,
        email=row.email,
        role=Role(row.role),
        display_name=row.display_name,
        department=row.department,
        is_active=row.is_active,
        hashed_password=row.hashed_password,
    )


def _optional_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return _ensure_datetime(value)


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")
