import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.api.errors import register_exception_handlers
from app.api.routes import ping, users
from app.api.routes.tickets import build_ticket_router
from app.core.config import Settings, get_settings, to_async_dsn
from app.core.logging import configure_logging, init_tracer, shutdown_tracer
from app.middleware import RBACMiddleware
from app.tickets.repository import TicketRepository
from app.tickets.service import TicketLifecycleService
from app.tickets.state import LIFECYCLES, TicketType

logger = logging.getLogger(__name__)


def build_services(repository: TicketRepository, settings: Settings) -> dict[TicketType, TicketLifecycleService]:
    return {
        ticket_type: TicketLifecycleService(lifecycle, repository, max_page_size=settings.max_page_size)
        for ticket_type, lifecycle in LIFECYCLES.items()
    }


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.tracer_provider = tracer_provider

    db_engine = create_async_engine(to_async_dsn(settings.database_url), echo=settings.database_echo)
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
    repository = TicketRepository(session_factory, engine=db_engine)
    app.state.db_engine = db_engine
    app.state.ticket_repository = repository
    app.state.ticket_services = build_services(repository, settings)

    if settings.auto_create_schema:
        try:
            await repository.ensure_schema()
        except (SQLAlchemyError, OSError):
            # Requests answer 503 through the unit of work until the database is reachable.
            logger.exception("Could not create the ticket schema at startup")
    try:
        yield
    finally:
        await db_engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(RBACMiddleware)
    register_exception_handlers(app)
    app.include_router(ping.router)
    app.include_router(users.router)
    for ticket_type in TicketType:
        app.include_router(build_ticket_router(ticket_type, default_page_size=settings.default_page_size))
    return app


app = create_app()
