import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

# Local Imports
from app.core.config import settings
from app.core.events import startup_handler, shutdown_handler
from app.core.exceptions import register_exception_handlers
from app.api.v1.router import api_router

# Set up logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# --- 1. Startup and Shutdown ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup_handler()
    try:
        yield
    finally:
        await shutdown_handler()


# --- 2. App Initialization ---

app = FastAPI(
    lifespan=lifespan,
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

# --- 3. Error Handling ---

register_exception_handlers(app)

# --- 4. Routes ---

app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "service": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "docs": "/api/docs",
    }
