"""
Workdesk API - Main Application

Hosts the notification REST surface, the realtime websocket stream and
the background notification dispatcher.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from app.api.v2.router import api_router
from app.config import settings
from app.database import init_db, async_session_maker
from app.exceptions import NotificationError, create_exception_handlers
from app.services.delivery_channels import build_channels
from app.services.notification_dispatcher import NotificationDispatcher
from app.services.notification_service import NotificationService
from app.services.push_service import build_push_provider
from app.services.websocket_manager import ConnectionManager

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Workdesk API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        # Don't log full exception details which may contain credentials
        logger.error(f"Database initialization failed: {type(e).__name__}")
        logger.warning("App starting without database - dispatch ticks will be skipped")

    realtime = ConnectionManager() if settings.REALTIME_ENABLED else None
    channels = build_channels(settings, build_push_provider(settings), transport=realtime)

    app.state.realtime = realtime
    app.state.notification_service = NotificationService(async_session_maker, channels)
    app.state.dispatcher = NotificationDispatcher.from_settings(async_session_maker, channels, settings)

    if settings.NOTIFY_DISPATCHER_ENABLED:
        app.state.dispatcher.start()
    else:
        logger.info("Notification dispatcher disabled by configuration")

    yield

    # Shutdown
    logger.info("Shutting down Workdesk API...")
    app.state.dispatcher.stop()


# Conditionally enable docs based on settings
docs_url = "/docs" if settings.DOCS_ENABLED else None
redoc_url = "/redoc" if settings.DOCS_ENABLED else None

app = FastAPI(
    title="Workdesk API",
    description="Tasks, meetings and notification delivery for Workdesk",
    version="1.0.0",
    docs_url=docs_url,
    redoc_url=redoc_url,
    lifespan=lifespan,
)

# CORS middleware
allowed_origins = [
    settings.FRONTEND_URL,
    "http://localhost:5173",  # Vite dev server
    "http://localhost:3000",  # Alternative dev port
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# RFC 7807 error responses
handlers = create_exception_handlers(settings.DEBUG and not settings.is_production)
app.add_exception_handler(StarletteHTTPException, handlers["http"])
app.add_exception_handler(RequestValidationError, handlers["validation"])
app.add_exception_handler(NotificationError, handlers["notification"])
app.add_exception_handler(Exception, handlers["generic"])

# Include routers
app.include_router(api_router, prefix="/api/v2")


@app.get("/")
async def root():
    """Root endpoint - API info."""
    response = {
        "name": "Workdesk API",
        "version": "1.0.0",
        "health": "/health",
    }
    # Only include docs link if enabled
    if settings.DOCS_ENABLED:
        response["docs"] = "/docs"
    return response


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    dispatcher = getattr(app.state, "dispatcher", None)
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "dispatcher_running": bool(dispatcher and dispatcher.is_running),
    }


# For running with uvicorn directly (development only)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=5001,
        reload=settings.DEBUG,
    )
