"""Main FastAPI application for the chat sync Hub."""

import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.errors import ChatSyncError, ValidationError

from .config import HUB_ROOT, settings
from .database import dispose_engine, init_db
from .logging_config import configure_logging
from .routers import chats_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup - skip if in test mode (tables already created)
    if "pytest" not in sys.modules:
        load_dotenv(HUB_ROOT / ".env", override=False)

        log_file = configure_logging(
            settings.log_dir,
            settings.log_max_bytes,
            settings.log_retention_days,
            settings.debug,
            settings.uvicorn_log_level,
        )
        logger.info("Logging to %s", log_file)
        logger.info("Initializing database...")
        await init_db()
        logger.info("Hub ready!")

    yield

    if "pytest" not in sys.modules:
        logger.info("Shutting down...")

    try:
        await dispose_engine()
    except Exception:
        logger.exception("Error while disposing database engine")


# Create FastAPI app
app = FastAPI(
    title="Chat Sync Hub",
    description="Durable chat storage and sync endpoint for local-first clients",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware (all origins unless configured)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatSyncError)
async def chat_sync_error_handler(request: Request, exc: ChatSyncError):
    """Convert typed service errors into JSON error responses."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.debug("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Report malformed queries and bodies as 400 instead of 422."""
    error = ValidationError(issues=jsonable_encoder(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# Include routers
# Support both API-prefixed and non-prefixed chat routes.
app.include_router(chats_router)
if settings.api_prefix:
    app.include_router(chats_router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


def main():
    """Run the server."""
    print(f"Starting Chat Sync Hub on {settings.host}:{settings.port}")
    reload_dirs = [str(HUB_ROOT)] if settings.debug else None
    uvicorn.run(
        "hub.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=reload_dirs,
    )


if __name__ == "__main__":
    main()
