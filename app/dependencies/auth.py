from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.dependencies.tickets import TicketRepositoryDep
from app.security import Actor, Role
from app.tickets.models import UserRecord

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
    repository: TicketRepositoryDep,
) -> UserRecord:
    """Resolve the bearer credential to an active user.

    The credential has already been verified upstream and carries the user id;
    this dependency only looks the user up in the directory.
    """

    cached = getattr(request.state, "user", None)
    if isinstance(cached, UserRecord):
        return cached

    token = getattr(request.state, "credential", None)
    if token is None and credentials is not None:
        token = credentials.credentials
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user = await repository.find_user(token)
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    request.state.user = user
    return user


async def get_current_actor(user: Annotated[UserRecord, Depends(get_current_user)]) -> Actor:
    return user.to_actor()


def role_required(role: Role) -> Callable[[Actor], Actor]:
    """Dependency factory ensuring the current user ranks at least ``role``."""

    async def dependency(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if not actor.has_role(role):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return actor

    return dependency


require_manager = role_required(Role.MANAGER)

CurrentUser = Annotated[UserRecord, Depends(get_current_user)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
ManagerActor = Annotated[Actor, Depends(require_manager)]
