from __future__ import annotations

from typing import Annotated, Mapping

from fastapi import Depends, HTTPException, Request

from app.tickets.repository import TicketRepository
from app.tickets.service import TicketLifecycleService
from app.tickets.state import TicketType


async def get_ticket_repository(request: Request) -> TicketRepository:
    repository = getattr(request.app.state, "ticket_repository", None)
    if repository is None:
        raise HTTPException(status_code=503, detail="Ticket store is not configured")
    return repository


async def get_ticket_services(request: Request) -> Mapping[TicketType, TicketLifecycleService]:
    services = getattr(request.app.state, "ticket_services", None)
    if not services:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return services


def ticket_service_for(ticket_type: TicketType):
    """Dependency factory resolving the lifecycle service of one ticket type."""

    async def dependency(
        services: Annotated[Mapping[TicketType, TicketLifecycleService], Depends(get_ticket_services)],
    ) -> TicketLifecycleService:
        service = services.get(ticket_type)
        if service is None:
            raise HTTPException(status_code=503, detail=f"{ticket_type.value.capitalize()} service is not configured")
        return service

    return dependency


TicketRepositoryDep = Annotated[TicketRepository, Depends(get_ticket_repository)]
