"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from willtank.config import get_settings
from willtank.database import close_db, init_db
from willtank.health.router import router as health_router
from willtank.liveness.router import router as liveness_router
from willtank.middleware import setup_middleware
from willtank.redis_client import close_redis, init_redis
from willtank.retention.router import router as retention_router
from willtank.subscriptions.router import router as subscriptions_router
from willtank.unlock.router import router as unlock_router
from willtank.verification.router import router as verification_router


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="WillTank Lifecycle API",
        description="Dead-man's switch, quorum will unlock and content retention",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(liveness_router)
    app.include_router(verification_router)
    app.include_router(unlock_router)
    app.include_router(retention_router)
    app.include_router(subscriptions_router)

    return app


app = create_app()
