from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field

from app.dependencies.auth import CurrentActor, ManagerActor
from app.dependencies.tickets import ticket_service_for
from app.tickets.models import ActionEvent, Comment, Page, Pagination, Ticket, TicketChanges, TicketDraft, TicketFilters
from app.tickets.service import TicketLifecycleService
from app.tickets.state import TicketType


class TicketCreateRequest(BaseModel):
    title: str
    description: str
    priority: str = "medium"
    impact: str = "medium"
    assignee_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    related_ids: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TicketUpdateRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    priority: str | None = None
    impact: str | None = None
    tags: list[str] | None = None
    resolution_notes: str | None = None
    root_cause: str | None = None
    solution: str | None = None
    add_related_ids: list[str] = Field(default_factory=list)
    remove_related_ids: list[str] = Field(default_factory=list)


class TicketStatusChangeRequest(BaseModel):
    status: str
    comment: str | None = Field(default=None, max_length=2000)


class TicketAssignRequest(BaseModel):
    assignee_id: str
    comment: str | None = Field(default=None, max_length=2000)


class CommentCreateRequest(BaseModel):
    content: str
    is_internal: bool = False


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    author_id: str
    content: str
    is_internal: bool
    created_at: datetime


class TicketResponse(BaseModel):
    id: str
    ticket_type: str
    title: str
    description: str
    status: str
    priority: str
    impact: str
    reporter_id: str
    reporter_department: str | None
    assignee_id: str | None
    resolution_notes: str | None
    root_cause: str | None
    solution: str | None
    tags: list[str]
    related_ids: list[str]
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None
    closed_at: datetime | None
    is_deleted: bool
    deleted_at: datetime | None
    version: int
    comments: list[CommentResponse]


class TicketPageResponse(BaseModel):
    items: list[TicketResponse]
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_previous: bool


class ActionEventResponse(BaseModel):
    id: int | None
    ticket_id: str
    kind: str
    actor_id: str
    payload: dict[str, Any]
    created_at: datetime


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse(
        id=ticket.id,
        ticket_type=ticket.ticket_type.value,
        title=ticket.title,
        description=ticket.description,
        status=ticket.status.value,
        priority=ticket.priority.value,
        impact=ticket.impact.value,
        reporter_id=ticket.reporter_id,
        reporter_department=ticket.reporter_department,
        assignee_id=ticket.assignee_id,
        resolution_notes=ticket.resolution_notes,
        root_cause=ticket.root_cause,
        solution=ticket.solution,
        tags=list(ticket.tags),
        related_ids=list(ticket.related_ids),
        metadata=dict(ticket.metadata),
        created_at=ticket.created_at,
        updated_at=ticket.updated_at,
        resolved_at=ticket.resolved_at,
        closed_at=ticket.closed_at,
        is_deleted=ticket.is_deleted,
        deleted_at=ticket.deleted_at,
        version=ticket.version,
        comments=[_to_comment_response(comment) for comment in ticket.comments],
    )


def _to_comment_response(comment: Comment) -> CommentResponse:
    return CommentResponse.model_validate(comment)


def _to_page_response(page: Page[Ticket]) -> TicketPageResponse:
    return TicketPageResponse(
        items=[_to_response(ticket) for ticket in page.items],
        total=page.total,
        page=page.page,
        limit=page.limit,
        total_pages=page.total_pages,
        has_next=page.has_next,
        has_previous=page.has_previous,
    )


def _to_event_response(event: ActionEvent) -> ActionEventResponse:
    return ActionEventResponse(
        id=event.id,
        ticket_id=event.ticket_id,
        kind=event.kind.value,
        actor_id=event.actor_id,
        payload=dict(event.payload),
        created_at=event.created_at,
    )


def build_ticket_router(ticket_type: TicketType, *, default_page_size: int = 10) -> APIRouter:
    """Expose the lifecycle service of ``ticket_type`` under ``/{type}s``."""

    router = APIRouter(prefix=f"/{ticket_type.value}s", tags=[f"{ticket_type.value}s"])
    ServiceDep = Annotated[TicketLifecycleService, Depends(ticket_service_for(ticket_type))]

    @router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
    async def create_ticket(payload: TicketCreateRequest, service: ServiceDep, actor: CurrentActor) -> TicketResponse:
        draft = TicketDraft(**payload.model_dump())
        ticket = await service.create(draft, actor)
        return _to_response(ticket)

    @router.get("", response_model=TicketPageResponse)
    async def list_tickets(
        service: ServiceDep,
        actor: CurrentActor,
        status_filter: Annotated[list[str] | None, Query(alias="status")] = None,
        priority: Annotated[list[str] | None, Query()] = None,
        impact: Annotated[list[str] | None, Query()] = None,
        tag: Annotated[list[str] | None, Query()] = None,
        assignee_id: str | None = None,
        reporter_id: str | None = None,
        search: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        include_closed: bool = False,
        include_deleted: bool = False,
        page: int = 1,
        limit: int = default_page_size,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> TicketPageResponse:
        filters = TicketFilters(
            statuses=status_filter or (),
            priorities=priority or (),
            impacts=impact or (),
            tags=tag or (),
            assignee_id=assignee_id,
            reporter_id=reporter_id,
            search=search,
            created_from=created_from,
            created_to=created_to,
            include_closed=include_closed,
            include_deleted=include_deleted,
        )
        pagination = Pagination(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)
        result = await service.list(filters, pagination, actor=actor)
        return _to_page_response(result)

    @router.get("/stats", summary="Ticket counts per status")
    async def ticket_stats(service: ServiceDep, _: ManagerActor) -> dict[str, int]:
        return await service.stats()

    @router.get("/{ticket_id}", response_model=TicketResponse)
    async def get_ticket(
        ticket_id: str, service: ServiceDep, actor: CurrentActor, include_deleted: bool = False
    ) -> TicketResponse:
        ticket = await service.find_by_id(ticket_id, actor, include_deleted=include_deleted)
        return _to_response(ticket)

    @router.patch("/{ticket_id}", response_model=TicketResponse)
    async def update_ticket(
        ticket_id: str, payload: TicketUpdateRequest, service: ServiceDep, actor: CurrentActor
    ) -> TicketResponse:
        changes = TicketChanges(**payload.model_dump())
        ticket = await service.update(ticket_id, changes, actor)
        return _to_response(ticket)

    @router.patch("/{ticket_id}/status", response_model=TicketResponse)
    async def change_ticket_status(
        ticket_id: str, payload: TicketStatusChangeRequest, service: ServiceDep, actor: CurrentActor
    ) -> TicketResponse:
        ticket = await service.update_status(ticket_id, payload.status, actor, comment=payload.comment)
        return _to_response(ticket)

    @router.patch("/{ticket_id}/assign", response_model=TicketResponse)
    async def assign_ticket(
        ticket_id: str, payload: TicketAssignRequest, service: ServiceDep, actor: CurrentActor
    ) -> TicketResponse:
        ticket = await service.assign(ticket_id, payload.assignee_id, actor, comment=payload.comment)
        return _to_response(ticket)

    @router.post("/{ticket_id}/comments", response_model=CommentResponse, status_code=status.HTTP_201_CREATED)
    async def add_comment(
        ticket_id: str, payload: CommentCreateRequest, service: ServiceDep, actor: CurrentActor
    ) -> CommentResponse:
        comment = await service.add_comment(ticket_id, payload.content, actor, is_internal=payload.is_internal)
        return _to_comment_response(comment)

    @router.get("/{ticket_id}/history", response_model=list[ActionEventResponse])
    async def ticket_history(ticket_id: str, service: ServiceDep, actor: CurrentActor) -> list[ActionEventResponse]:
        entries = await service.history(ticket_id, actor)
        return [_to_event_response(entry) for entry in entries]

    @router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_ticket(ticket_id: str, service: ServiceDep, actor: CurrentActor) -> None:
        await service.remove(ticket_id, actor)

    return router

