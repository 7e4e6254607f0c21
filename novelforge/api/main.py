"""
FastAPI application for the NovelForge pipeline API.

This module sets up the app with routes, middleware and the lifespan
that owns the service container and the embedded queue worker.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from novelforge.config import AppConfig, config
from novelforge.container import build_services
from novelforge.routes.editing import router as editing_router
from novelforge.routes.outlines import router as outlines_router
from novelforge.routes.queue import router as queue_router
from novelforge.utils.logging import api_logger as logger, configure_logging


def create_app(settings: Optional[AppConfig] = None, **agents) -> FastAPI:
    """
    Build the app. `agents` are forwarded to the stage handlers (tests pass
    agents backed by fake chat models).
    """
    settings = settings or config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.LOG_LEVEL)

        print("=" * 60)
        print("NovelForge API Starting...")
        print("=" * 60)
        print(f"   ANTHROPIC_API_KEY: {'✓ Set' if settings.can_call_models else '✗ Missing'}")
        print(f"   Database: {settings.job_db_path}")
        print(f"   Embedded worker: {'✓' if settings.EMBEDDED_WORKER else '✗ (run start.py worker)'}")
        if "*" in settings.allowed_origins_list:
            print("   ⚠️  CORS: All origins allowed (configure ALLOWED_ORIGINS for production)")
        print("=" * 60)

        services = await build_services(settings, **agents)
        app.state.services = services

        if settings.EMBEDDED_WORKER:
            await services.worker.start()

        try:
            yield
        finally:
            await services.worker.stop(timeout=settings.WORKER_SHUTDOWN_TIMEOUT_SECONDS)
            await services.close()
            logger.info("API shut down")

    app = FastAPI(
        title="NovelForge API",
        description="Chapter generation and editing pipeline backed by a persistent job queue",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS middleware for frontend access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(editing_router)
    app.include_router(outlines_router)
    app.include_router(queue_router)

    # ===== Health Check =====

    @app.get("/health")
    async def health_check():
        """Health check endpoint - must be fast and reliable."""
        services = getattr(app.state, "services", None)
        return {
            "status": "healthy",
            "worker": services.worker.state.value if services else "stopped",
        }

    # ===== Error Handlers =====

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Global exception handler."""
        logger.exception("Unhandled error", path=request.url.path, error=str(exc))
        show_details = settings.ENVIRONMENT != "production"
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if show_details else "An error occurred",
                "type": type(exc).__name__
            }
        )

    return app


app = create_app()
