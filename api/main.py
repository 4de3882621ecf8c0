"""
Main FastAPI application definitions, middleware, and request handlers.
"""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from api.exceptions import add_exception_handlers
from api.routes import batch, chat, system
from config.settings import settings
from container import container_manager
from infrastructure.monitoring import configure_loguru, configure_structlog, get_logger

configure_structlog(settings.monitoring.log_level)
configure_loguru(settings.monitoring)
logger = get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID for tracing and correlation."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the container on startup; stop warmers and close pools on shutdown."""
    if settings.llm.anthropic_api_key is None:
        logger.warning("llm_api_key_missing", environment=settings.environment)

    await container_manager.initialize()
    logger.info("application_startup_complete", version=settings.app_version)

    yield

    await container_manager.cleanup()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title=settings.app_name,
    description="Cost-optimized, security-gated advisory assistant with batch knowledge maintenance",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

add_exception_handlers(app)

app.include_router(chat.router)
app.include_router(batch.router)
app.include_router(system.router)


@app.get("/")
async def root():
    """Redirect root to API documentation."""
    return RedirectResponse(url="/docs")


# Middleware stack (order matters: last added = first executed)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Accept",
        "Content-Type",
        "X-Request-ID",
        "X-User-Id",
        "X-User-Role",
    ],
    expose_headers=["X-Request-ID", "Retry-After"],
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info", access_log=True
    )
