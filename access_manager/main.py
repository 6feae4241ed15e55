"""FastAPI main application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from access_manager.core.clock import Clock, utcnow
from access_manager.core.config import settings
from access_manager.core.exceptions import AccessManagerError, StorageUnavailable
from access_manager.core.middleware import install_request_id_logging, setup_middleware
from access_manager.core.rate_limiter import init_rate_limiter
from access_manager.db.session import get_db
from access_manager.services.notification_service import NotificationService
from access_manager.services.request_store import RequestStore

from access_manager.api.access import router as access_router
from access_manager.api.admin import router as admin_router
from access_manager.api.webhooks import router as webhooks_router

# Configure logging
install_request_id_logging()
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] [%(request_id)s] %(name)s: %(message)s",
)
logger = logging.getLogger("access_manager")


def create_app(
    session_factory: Optional[sessionmaker] = None,
    notifier: Optional[NotificationService] = None,
    clock: Clock = utcnow,
) -> FastAPI:
    """Build the API. Tests pass their own session factory, notifier and clock."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        logger.info("Starting %s access manager API", settings.APP_NAME)
        engine = None
        if app.state.session_factory is None:
            from access_manager.db.session import build_engine, build_session_factory

            engine = build_engine()
            app.state.session_factory = build_session_factory(engine)

        # Redis check (run lock only; the API works without it)
        try:
            from access_manager.services.cache_service import cache_service
            if cache_service.health_check():
                logger.info("Redis connected")
            else:
                logger.warning("Redis not available; scheduled job runs will abort")
        except Exception:
            logger.warning("Redis not available; scheduled job runs will abort")

        yield

        if engine is not None:
            engine.dispose()
        logger.info("Shutting down access manager API")

    app = FastAPI(
        title=f"{settings.APP_NAME} Access Manager API",
        description="Queue, slot and expiry management for shared dashboard access",
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.session_factory = session_factory
    app.state.notifier = notifier or NotificationService()
    app.state.clock = clock

    # Middleware
    setup_middleware(app)

    # Rate limiting
    init_rate_limiter(app)

    @app.exception_handler(AccessManagerError)
    async def access_manager_exception_handler(request: Request, exc: AccessManagerError):
        if isinstance(exc, StorageUnavailable):
            # Driver details are logged by the store, never returned.
            return JSONResponse(status_code=exc.status_code, content={"detail": StorageUnavailable().message})
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, **exc.data},
        )

    # Register routers
    app.include_router(access_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
    app.include_router(webhooks_router, prefix="/api")

    @app.get("/")
    async def root():
        return {
            "name": f"{settings.APP_NAME} Access Manager",
            "version": settings.APP_VERSION,
            "docs": "/docs",
        }

    @app.get("/api/health")
    async def health(request: Request, db: Session = Depends(get_db)):
        """Health check including the request store."""
        try:
            RequestStore(db, clock=request.app.state.clock).ping()
        except StorageUnavailable:
            return JSONResponse(status_code=503, content={"status": "degraded", "database": "unavailable"})
        return {"status": "ok", "database": "ok"}

    return app


app = create_app()
