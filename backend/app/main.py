import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler

from fastapi import FastAPI

# Import settings first for logging configuration
from backend.app.core.config import settings as app_settings, APP_VERSION

# Configure logging based on settings
# DEBUG=true -> DEBUG level, else use LOG_LEVEL setting
log_level_str = "DEBUG" if app_settings.debug else app_settings.log_level.upper()
log_level = getattr(logging, log_level_str, logging.INFO)
log_format = '%(asctime)s %(levelname)s [%(name)s] %(message)s'

# Create root logger
root_logger = logging.getLogger()
root_logger.setLevel(log_level)

# Console handler - always enabled
console_handler = logging.StreamHandler()
console_handler.setLevel(log_level)
console_handler.setFormatter(logging.Formatter(log_format))
root_logger.addHandler(console_handler)

# File handler - only in production or if explicitly enabled
if app_settings.log_to_file:
    log_file = app_settings.log_dir / "snapdeck.log"
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=5*1024*1024,  # 5MB
        backupCount=3,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(log_format))
    root_logger.addHandler(file_handler)
    logging.info("Logging to file: %s", log_file)

# Reduce noise from third-party libraries in production
if not app_settings.debug:
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logging.info("SnapDeck starting - debug=%s, log_level=%s", app_settings.debug, log_level_str)

from backend.app.core.database import init_db, async_session
from backend.app.api.routes import octoprint, printers, relay, uploaded_files
from backend.app.api.routes import settings as settings_routes
from backend.app.services.file_watcher import folder_watcher, init_watcher
from backend.app.services.relay import init_relay, snapmaker_relay

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await init_db()

    folder_watcher.set_session_factory(async_session)
    snapmaker_relay.set_session_factory(async_session)

    # Resume the watch folder and relay saved by the previous run
    async with async_session() as db:
        try:
            await init_watcher(db)
        except Exception as e:
            logger.error("Failed to start watch folder: %s", e)

    async with async_session() as db:
        try:
            await init_relay(db)
        except Exception as e:
            logger.error("Failed to start relay: %s", e)

    yield

    # Shutdown
    await folder_watcher.stop()
    await snapmaker_relay.stop()


app = FastAPI(
    title=app_settings.app_name,
    description="Dashboard and Luban relay for Snapmaker printers",
    version=APP_VERSION,
    lifespan=lifespan,
)

# API routes
app.include_router(printers.router, prefix=app_settings.api_prefix)
app.include_router(uploaded_files.router, prefix=app_settings.api_prefix)
app.include_router(settings_routes.router, prefix=app_settings.api_prefix)
app.include_router(relay.router, prefix=app_settings.api_prefix)

# OctoPrint-compatible upload for slicers (fixed /api paths)
app.include_router(octoprint.router)


@app.get("/")
async def root():
    return {
        "message": "SnapDeck API",
        "version": APP_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "relay": snapmaker_relay.get_status()["state"]}
