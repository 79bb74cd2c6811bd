"""FastAPI application bootstrap."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from catalog_importer.api.routers import events, health, mapping_cache, sessions
from catalog_importer.core.config import Settings, get_settings
from catalog_importer.db import session as db_session
from catalog_importer.services.import_service import ImportService, build_import_service
from catalog_importer.services.progress_broadcaster import ProgressBroadcaster, RedisEventRelay
from catalog_importer.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, import_service: ImportService | None = None) -> FastAPI:
    """Instantiate the FastAPI app, its engine wiring and top-level routers.

    Passing ``settings`` builds a dedicated database engine (tests, scripts);
    passing ``import_service`` skips engine wiring for the service entirely.
    """
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)

    if settings is get_settings():
        engine = db_session.engine
        session_factory = db_session.SessionLocal
    else:
        engine = db_session.build_engine(settings.database_url)
        session_factory = db_session.build_session_factory(engine)

    relay = None
    if import_service is None:
        redis_client = create_redis_client(settings.redis_url, decode_responses=True)
        broadcaster = ProgressBroadcaster(redis_client=redis_client)
        import_service = build_import_service(settings, session_factory, broadcaster=broadcaster)
        if settings.event_relay_enabled:
            relay = RedisEventRelay(broadcaster, redis_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db_session.init_db(engine)
        if relay is not None:
            relay.start()
        logger.info(f"{settings.app_name} ready (inline imports: {settings.run_imports_inline})")
        yield
        if relay is not None:
            relay.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.import_service = import_service

    cors_origins = settings.cors_origins
    logger.info(f"[CORS] Allowed origins: {cors_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(sessions.router, prefix="/api/sessions", tags=["sessions"])
    app.include_router(events.router, prefix="/api/sessions", tags=["events"])
    app.include_router(mapping_cache.router, prefix="/api/mapping-cache", tags=["mapping-cache"])

    return app


app = create_app()
