import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from helpdesk.api.errors import register_exception_handlers
from helpdesk.api.routes import health, tickets
from helpdesk.core.config import Settings, get_settings
from helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from helpdesk.identity import UserDirectory
from helpdesk.security import SlidingWindowRateLimiter
from helpdesk.tickets import TicketRepository, TicketService, TicketStatisticsService, TicketStorageError


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure a postgres DSN uses the asyncpg driver; other URLs pass through."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    if dsn.startswith("postgres://"):
        return "postgresql+asyncpg://" + dsn[len("postgres://") :]
    return dsn


def _build_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
        logger = configure_logging(settings)
        tracer_provider = init_tracer(settings)

        app.state.logger = logger
        app.state.tracer_provider = tracer_provider
        app.state.rate_limiter = SlidingWindowRateLimiter(
            settings.rate_limit_requests,
            settings.rate_limit_window_seconds,
            max_keys=settings.rate_limit_max_keys,
        )
        app.state.db_engine = None
        app.state.ticket_service = None
        app.state.statistics_service = None
        app.state.user_directory = None

        db_engine = create_async_engine(
            _to_asyncpg_dsn(settings.database_url),
            echo=settings.database_echo,
            future=True,
        )
        session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
        try:
            ticket_repository = TicketRepository(session_factory, engine=db_engine)
            await ticket_repository.ensure_schema()
        except (TicketStorageError, OSError):
            logger.exception("Ticket store initialisation failed; serving in degraded mode")
        else:
            directory = UserDirectory(session_factory)
            app.state.user_directory = directory
            app.state.ticket_service = TicketService(
                ticket_repository,
                directory,
                max_retries=settings.update_max_retries,
                default_page_size=settings.default_page_size,
                max_page_size=settings.max_page_size,
            )
            app.state.statistics_service = TicketStatisticsService(
                ticket_repository,
                user_stats_limit=settings.user_stats_limit,
                preview_limit=settings.statistics_preview_limit,
            )
        app.state.db_engine = db_engine
        app.state.db_session_factory = session_factory
        try:
            yield
        finally:
            try:
                await db_engine.dispose()
            except SQLAlchemyError:
                logging.getLogger(__name__).warning("Engine dispose failed", exc_info=True)
            shutdown_tracer(tracer_provider)

    return lifespan


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name, lifespan=_build_lifespan(settings))
    register_exception_handlers(app)
    app.include_router(health.router)
    app.include_router(tickets.router)
    return app


app = create_app()
