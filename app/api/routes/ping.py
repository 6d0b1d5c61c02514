from fastapi import APIRouter, Depends, Request

from app.dependencies.auth import CurrentActor, role_required
from app.security import Role

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health probe")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/ready", summary="Ticket store readiness probe")
async def ready(request: Request) -> dict[str, str]:
    repository = getattr(request.app.state, "ticket_repository", None)
    if repository is not None and await repository.ping():
        return {"status": "ok", "database": "ok"}
    return {"status": "degraded", "database": "unavailable"}


@router.get(
    "/secure",
    summary="Authenticated probe for staff accounts",
    dependencies=[Depends(role_required(Role.AGENT))],
)
async def secure_ping(actor: CurrentActor) -> dict[str, str]:
    return {"status": "ok", "user": actor.id, "role": actor.role.value}
