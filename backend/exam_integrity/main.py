import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware

from exam_integrity.config import settings
from exam_integrity.services.engine import integrity_engine
from exam_integrity.api.v1.endpoints import (
    dashboard,
    incidents,
    policies,
    sessions,
    signals,
    subscriptions,
    termination,
)

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    integrity_engine.start()
    yield
    await integrity_engine.stop()


def get_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register health endpoint
    @app.get("/health", tags=["health"])
    def health_check() -> dict:
        return {"status": "ok"}

    # API v1 routers
    api_router = APIRouter(prefix=settings.API_V1_PREFIX)

    api_router.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
    api_router.include_router(signals.router, prefix="/sessions", tags=["signals"])
    api_router.include_router(termination.router, prefix="/termination-requests", tags=["sessions"])
    api_router.include_router(incidents.router, prefix="/incidents", tags=["incidents"])
    api_router.include_router(policies.router, prefix="/policies", tags=["policies"])
    api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
    api_router.include_router(subscriptions.ws_router, tags=["subscriptions"])
    api_router.include_router(dashboard.router, prefix="/dashboard", tags=["dashboard"])

    app.include_router(api_router)

    return app


app = get_application()
