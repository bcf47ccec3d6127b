"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from seasonhub.config import get_settings
from seasonhub.database import close_db, create_tables, init_db
from seasonhub.health.router import router as health_router
from seasonhub.identity.router import router as auth_router
from seasonhub.leaderboard.router import router as leaderboard_router
from seasonhub.ledger.admin_router import router as admin_router
from seasonhub.ledger.router import router as user_router
from seasonhub.middleware import setup_middleware
from seasonhub.redis_client import close_redis, init_redis


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await create_tables()
    await init_redis(settings.redis_url)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="SeasonHub API",
        description="Unified identities, seasonal progression, anti-cheat and leaderboards",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router)
    app.include_router(user_router)
    app.include_router(admin_router)
    app.include_router(leaderboard_router)

    return app


app = create_app()
