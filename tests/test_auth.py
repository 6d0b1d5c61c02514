from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from app.core.config import Settings, to_async_dsn
from app.core.logging import init_tracer, parse_headers
from app.dependencies.auth import get_current_user, role_required
from app.security import Actor, Role
from app.tickets.models import UserRecord


def _request(**state):
    return SimpleNamespace(state=SimpleNamespace(**state))


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.mark.asyncio
async def test_role_required_allows_higher_rank():
    dependency = role_required(Role.AGENT)
    actor = Actor(id="alice", role=Role.ADMIN)
    result = await dependency(actor)  # type: ignore[arg-type]
    assert result.id == "alice"


@pytest.mark.asyncio
async def test_role_required_rejects_lower_rank():
    dependency = role_required(Role.MANAGER)
    actor = Actor(id="bob", role=Role.AGENT)
    with pytest.raises(HTTPException) as exc:
        await dependency(actor)  # type: ignore[arg-type]

    assert exc.value.status_code == 403
    assert exc.value.detail == "Insufficient permissions"


@pytest.mark.asyncio
async def test_current_user_resolves_credential_from_middleware_state():
    user = UserRecord(id="u-1", email="u1@example.com", role=Role.AGENT)
    repository = AsyncMock()
    repository.find_user = AsyncMock(return_value=user)
    request = _request(credential="u-1")

    assert await get_current_user(None, request, repository) is user
    assert request.state.user is user

    # Second call reuses the resolved user.
    assert await get_current_user(None, request, repository) is user
    repository.find_user.assert_awaited_once_with("u-1")


@pytest.mark.asyncio
async def test_current_user_falls_back_to_bearer_credentials():
    user = UserRecord(id="u-2", email="u2@example.com", role=Role.USER)
    repository = AsyncMock()
    repository.find_user = AsyncMock(return_value=user)

    assert await get_current_user(_bearer("u-2"), _request(), repository) is user


@pytest.mark.asyncio
async def test_current_user_requires_credentials():
    repository = AsyncMock()
    with pytest.raises(HTTPException) as exc:
        await get_current_user(None, _request(credential=None), repository)

    assert exc.value.status_code == 401
    assert exc.value.detail == "Not authenticated"
    repository.find_user.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "stored",
    [None, UserRecord(id="u-3", email="u3@example.com", role=Role.AGENT, is_active=False)],
)
async def test_current_user_rejects_unknown_or_inactive(stored):
    repository = AsyncMock()
    repository.find_user = AsyncMock(return_value=stored)

    with pytest.raises(HTTPException) as exc:
        await get_current_user(_bearer("u-3"), _request(), repository)

    assert exc.value.status_code == 401
    assert exc.value.detail == "Invalid authentication credentials"


def test_parse_headers_skips_malformed_items():
    assert parse_headers(None) == {}
    assert parse_headers("api-key=abc, x-tenant = ops,broken,=x") == {"api-key": "abc", "x-tenant": "ops"}


def test_tracer_is_not_installed_when_disabled():
    assert init_tracer(Settings(otel_enabled=False)) is None


@pytest.mark.parametrize(
    ("dsn", "expected"),
    [
        ("postgresql://u:p@db/itsm", "postgresql+asyncpg://u:p@db/itsm"),
        ("postgres://u:p@db/itsm", "postgresql+asyncpg://u:p@db/itsm"),
        ("postgresql+asyncpg://u:p@db/itsm", "postgresql+asyncpg://u:p@db/itsm"),
        ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
    ],
)
def test_to_async_dsn(dsn, expected):
    assert to_async_dsn(dsn) == expected
