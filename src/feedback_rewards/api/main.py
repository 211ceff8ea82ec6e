"""Main FastAPI application for the rewards API."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from feedback_rewards import __version__
from feedback_rewards.api.rate_limit import limiter
from feedback_rewards.api.v1.gamification import router as gamification_router
from feedback_rewards.api.v1.referrals import router as referrals_router
from feedback_rewards.errors import GamificationError, InvalidSettings
from feedback_rewards.logging_config import configure_logging, get_logger
from feedback_rewards.settings import settings
from feedback_rewards.storage.db import db

logger = get_logger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only, nothing to load
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    configure_logging()
    logger.info("app_starting", env=settings.env)

    db.create_tables()

    yield

    logger.info("app_shutting_down")
    db.dispose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI app
    """
    is_production = settings.env == "production"

    app = FastAPI(
        title="Feedback Rewards API",
        description="Referrals, points, badges and leaderboards",
        version=__version__,
        docs_url=None if is_production else "/api/docs",
        redoc_url=None if is_production else "/api/redoc",
        openapi_url=None if is_production else "/api/openapi.json",
        lifespan=lifespan,
    )

    # Must be added before CORS
    app.add_middleware(SecurityHeadersMiddleware)

    allowed_origins = [
        origin.strip()
        for origin in settings.allowed_origins.split(",")
        if origin.strip()
    ]
    if is_production and "*" in allowed_origins:
        logger.error("cors_wildcard_blocked", message="Wildcard CORS not allowed in production")
        allowed_origins = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept"],
        max_age=3600,
    )

    app.state.limiter = limiter

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={"error": "rate_limited", "detail": "Too many requests. Please try again later."},
        )

    @app.exception_handler(GamificationError)
    async def gamification_error_handler(request: Request, exc: GamificationError):
        if exc.http_status >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.code, detail=exc.message)
        content = {"error": exc.code, "detail": exc.message}
        if isinstance(exc, InvalidSettings):
            content["errors"] = exc.errors
        return JSONResponse(status_code=exc.http_status, content=content)

    app.include_router(referrals_router, prefix="/api/v1")
    app.include_router(gamification_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "name": settings.app_name,
            "version": __version__,
            "env": settings.env,
        }

    return app


# Create app instance
app = create_app()
