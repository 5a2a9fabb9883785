from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from appforge.api.router import api_router
from appforge.config import get_settings
from appforge.core.errors import (
    ArtifactMissingError,
    ConfigurationError,
    CredentialError,
    LockConflictError,
    NotFoundError,
    UpstreamApiError,
    ValidationError,
)
from appforge.core.logging import get_logger, setup_logging
from appforge.core.rate_limit import limiter, rate_limit_exceeded_handler
from appforge.core.scheduler import start_scheduler, stop_scheduler

logger = get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    # Startup
    setup_logging()
    await start_scheduler()
    yield
    # Shutdown
    await stop_scheduler()


app = FastAPI(
    title="AppForge",
    description="Build and publish orchestration for website-wrapper mobile apps",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.base_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LockConflictError)
async def lock_conflict_handler(request: Request, exc: LockConflictError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": exc.message, "conflict": True, "resource": exc.resource},
    )


@app.exception_handler(ArtifactMissingError)
async def artifact_missing_handler(request: Request, exc: ArtifactMissingError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": exc.message})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.bind(path=request.url.path, error=exc.message).error("configuration_error")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service is not configured for this operation"},
    )


@app.exception_handler(UpstreamApiError)
async def upstream_error_handler(request: Request, exc: UpstreamApiError) -> JSONResponse:
    logger.bind(path=request.url.path, error=exc.message, upstream_status=exc.status_code).error(
        "upstream_api_error"
    )
    detail = "Upstream service request failed"
    if exc.status_code:
        detail = f"{detail} (status {exc.status_code})"
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": detail, "upstream_status": exc.status_code},
    )


@app.exception_handler(CredentialError)
async def credential_error_handler(request: Request, exc: CredentialError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": exc.message})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": exc.message})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": exc.message, "errors": exc.errors},
    )


# Include API routes
app.include_router(api_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint for load balancers."""
    return {"status": "healthy"}
