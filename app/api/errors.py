"""Translate ticket service errors into JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.tickets.errors import (
    DependencyUnavailableError,
    InvalidTicketTransitionError,
    TicketConflictError,
    TicketForbiddenError,
    TicketNotFoundError,
    TicketValidationError,
)

logger = logging.getLogger(__name__)


async def _not_found(request: Request, exc: TicketNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


async def _forbidden(request: Request, exc: TicketForbiddenError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={"detail": str(exc), "reason": exc.reason.value},
    )


async def _invalid_transition(request: Request, exc: InvalidTicketTransitionError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "from": exc.from_status, "to": exc.to_status},
    )


async def _validation(request: Request, exc: TicketValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Validation failed",
            "errors": [{"field": error.field, "message": error.message} for error in exc.errors],
        },
    )


async def _conflict(request: Request, exc: TicketConflictError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "retryable": exc.retryable},
    )


async def _unavailable(request: Request, exc: DependencyUnavailableError) -> JSONResponse:
    logger.error("Dependency unavailable while serving %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TicketNotFoundError, _not_found)
    app.add_exception_handler(TicketForbiddenError, _forbidden)
    app.add_exception_handler(InvalidTicketTransitionError, _invalid_transition)
    app.add_exception_handler(TicketValidationError, _validation)
    app.add_exception_handler(TicketConflictError, _conflict)
    app.add_exception_handler(DependencyUnavailableError, _unavailable)
