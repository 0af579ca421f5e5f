"""FastAPI application entry point for the Escrow Arbiter.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, create tables (dev mode).
    2. Running: Serve REST API + MCP tools on a single Uvicorn process.
    3. Shutdown: Let queued notifications finish, then close database and
       Redis connections gracefully.

The MCP server is mounted at /mcp so operator tooling can discover tools
alongside the REST API at /api/v1/*.

Run with:
    uv run uvicorn escrow_arbiter.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from escrow_arbiter.config import get_settings
from escrow_arbiter.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
        payment_simulate=settings.payment_simulate,
        payment_timeout_seconds=settings.payment_timeout_seconds,
        settlement_max_attempts=settings.settlement_max_attempts,
    )
    if not settings.admin_user_id_list:
        # Filing still works, but every resolve and review will be refused
        logger.warning("app.no_admins_configured", setting="ADMIN_USER_IDS")
    if not settings.payment_simulate and not settings.stripe_secret_key:
        logger.warning("app.stripe_key_missing", setting="STRIPE_SECRET_KEY")

    # 2. Initialize database
    from escrow_arbiter.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Initialize Redis
    from escrow_arbiter.infrastructure.redis_client import close_redis, init_redis

    try:
        await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    from escrow_arbiter.api.deps import get_notification_dispatcher

    await get_notification_dispatcher().drain()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Escrow Arbiter",
        description=(
            "Dispute filing and resolution for escrowed marketplace payments. "
            "Freezes disputed jobs, settles funds, keeps records consistent."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from escrow_arbiter.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from escrow_arbiter.api.routes.disputes import router as disputes_router
    from escrow_arbiter.api.routes.health import router as health_router
    from escrow_arbiter.api.routes.settlements import router as settlements_router

    app.include_router(health_router)
    app.include_router(disputes_router)
    app.include_router(settlements_router)

    # --- MCP Server (mounted as sub-application) ---
    from escrow_arbiter.mcp_server.tools import mcp

    mcp_app = mcp.sse_app()
    app.mount("/mcp", mcp_app)

    return app


# The app instance used by Uvicorn
app = create_app()
