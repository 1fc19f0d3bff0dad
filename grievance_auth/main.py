"""
FastAPI Application Factory
===========================

Entry point of the grievance portal authentication backend.

Architecture:
    Browser client -> Backend (this service) -> Identity provider (GoTrue)
                                            -> User directories

Routers:
    - /api/auth/*           : Login, registration, local token refresh/verify
    - /api/users/profile    : Profile of the provider-authenticated user
    - /health               : Health check endpoint

Environment Variables Required:
    - SUPABASE_URL: Identity provider project URL
    - SUPABASE_ANON_KEY: Identity provider API key
    - LOCAL_TOKEN_SECRET: Secret for signing local tokens (>= 32 chars)
    - USER_SEED_FILE: Optional JSON file seeding the user directories
    - ALLOWED_ORIGINS: Comma-separated CORS origins
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn grievance_auth.main:create_app --factory --reload --port 5000

    Direct:
        python -m grievance_auth.main
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .auth import auth_router, users_router
from .auth.directory import CompositeUserDirectory, build_directory, load_directory
from .config import Settings, get_settings, validate_configuration
from .errors import AuthRejected
from .models import HealthResponse
from .provider import IdentityProvider

SERVICE_NAME = "grievance-auth"


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup logs the configuration report; shutdown closes the identity
    provider's HTTP client when the app created it.
    """
    logger = logging.getLogger("grievance_auth.main")
    report = validate_configuration(app.state.settings)
    for warning in report["warnings"]:
        logger.warning(warning)
    for error in report["errors"]:
        logger.error(error)

    logger.info(
        "Auth service started",
        extra={
            "service": SERVICE_NAME,
            "version": __version__,
            "issuer": report["issuer"],
            "algorithm": report["algorithm"],
        }
    )

    yield

    logger.info("Shutting down auth service")
    if app.state.owns_provider:
        await app.state.provider.aclose()
        logger.info("Closed identity provider client")


def create_app(
    settings: Optional[Settings] = None,
    provider: Optional[IdentityProvider] = None,
    directory: Optional[CompositeUserDirectory] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Identity provider adapter and user directories on app.state
        - CORS middleware
        - Route handlers
        - Exception handlers

    Args:
        settings: Settings override (defaults to environment settings)
        provider: Identity provider adapter override, for tests
        directory: User directory override, for tests

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("grievance_auth.main")

    app = FastAPI(
        title="Grievance Portal Auth Service",
        description="Dual-credential authentication for petitioners, officials and admins",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    if directory is None:
        directory = load_directory(settings.USER_SEED_FILE) if settings.USER_SEED_FILE else build_directory()

    app.state.settings = settings
    app.state.owns_provider = provider is None
    app.state.provider = provider or IdentityProvider(
        settings.supabase_url_str,
        settings.SUPABASE_ANON_KEY,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        persist_session=False,
    )
    app.state.directory = directory

    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )
        logger.info(f"CORS enabled for {len(origins)} origin(s)")

    app.include_router(auth_router)
    app.include_router(users_router)

    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Service status and basic metadata."""
        return HealthResponse(status="ok", service=SERVICE_NAME, version=__version__)

    @app.exception_handler(AuthRejected)
    async def auth_rejected_handler(request: Request, exc: AuthRejected) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers=exc.headers,
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL == "DEBUG" else None
            }
        )

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "grievance_auth.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
