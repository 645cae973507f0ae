"""
FastAPI application for the device platform access-control service.

Routes:
- GET  /health            : liveness
- GET  /api/health/cache  : permission cache statistics
- /api/rbac/...           : see core.rbac.router
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Request
from sqlalchemy.ext.asyncio import AsyncEngine

from config.database import DatabaseSettings, get_database_settings
from config.settings import RBACSettings, Settings, get_rbac_settings, get_settings
from core.rbac.cache import PermissionCache
from core.rbac.middleware import PrincipalMiddleware
from core.rbac.router import router as rbac_router
from core.rbac.services import AccessControlService
from database.async_engine import create_engine, get_session_factory, init_database

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger().setLevel(level)


def create_app(
    settings: Optional[Settings] = None,
    db_settings: Optional[DatabaseSettings] = None,
    rbac_settings: Optional[RBACSettings] = None,
    engine: Optional[AsyncEngine] = None,
) -> FastAPI:
    """
    Build the application.

    Pass engine to share an existing engine (tests); otherwise one is created
    from DB_* settings on startup and disposed on shutdown.
    """
    settings = settings or get_settings()
    db_settings = db_settings or get_database_settings()
    rbac_settings = rbac_settings or get_rbac_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_engine = engine is None
        app_engine = engine or create_engine(db_settings)
        if db_settings.is_sqlite:
            await init_database(app_engine)

        service = AccessControlService(
            cache=PermissionCache.from_settings(rbac_settings),
            settings=rbac_settings,
        )
        app.state.engine = app_engine
        app.state.session_factory = get_session_factory(app_engine)
        app.state.access_control = service
        service.start()
        logger.info(f"{settings.name} {settings.version} started ({settings.environment})")
        try:
            yield
        finally:
            await service.stop()
            if owns_engine:
                await app_engine.dispose()
            logger.info(f"{settings.name} stopped")

    app = FastAPI(title=settings.name, version=settings.version, debug=settings.debug, lifespan=lifespan)
    app.add_middleware(PrincipalMiddleware)
    app.include_router(rbac_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": settings.version}

    @app.get("/api/health/cache")
    async def cache_health(request: Request):
        return request.app.state.access_control.cache.stats()

    return app


app = create_app()
