"""
Upkeep Update API
"""
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from upkeep.config import Settings

logger = structlog.get_logger(__name__)


def create_app(settings: Settings) -> FastAPI:
    """Create and configure FastAPI application"""

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="""
# Upkeep Update API

Self-update and rollback for a deployed application:

- **Check** - Discover releases newer than the installed version
- **Download** - Fetch and verify a release artifact
- **Apply** - Snapshot, apply, migrate, rebuild and verify a release
- **Rollback** - Restore the files and snapshot recorded for an attempt

Only one download, apply or rollback runs at a time; a second request gets 409.
When `UPDATES_AUTH_TOKEN` is set every `/updates` route requires the
`X-Update-Token` header. `X-Operator` is recorded as the initiator.
        """,
        docs_url="/docs" if settings.api_docs_enabled else None,
        redoc_url="/redoc" if settings.api_docs_enabled else None,
        openapi_tags=[
            {
                "name": "system",
                "description": "Liveness endpoint for monitoring.",
            },
            {
                "name": "updates",
                "description": "Release discovery, update pipeline and rollback.",
            },
        ],
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("unhandled_api_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    # Health check endpoint
    @app.get(
        "/health",
        summary="Health Check",
        description="Check if the daemon is running. Use this endpoint for monitoring and health probes.",
        tags=["system"],
    )
    async def health_check():
        """Health check endpoint for monitoring"""
        return {
            "status": "healthy",
            "version": settings.api_version,
            "service": "upkeep",
        }

    # Register API routers
    from upkeep.api.routes import updates

    app.include_router(updates.router, prefix="/updates", tags=["updates"])

    return app
