import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from feedsync.api.v1.api import api_router
from feedsync.config import get_settings
from feedsync.container import get_container
from feedsync.database import init_db
from feedsync.logging_setup import setup_logging

settings = get_settings()
setup_logging(log_level=settings.log_level, log_file=settings.log_file)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Feed Sync",
    description="Bidirectional read/starred sync between a local feed reader and Inoreader",
    version="1.0.0"
)

origins = [
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup():
    """Create database tables and start periodic sync when signed in."""
    container = get_container()
    init_db(container.engine)
    logger.info("Database tables created/verified")

    if not container.settings.sync_autostart:
        logger.info("SYNC_AUTOSTART is off; use POST /api/v1/sync/trigger")
    elif container.credential_store.exists():
        container.orchestrator.start()
    else:
        logger.warning("No OAuth credential yet; sign in via /api/v1/auth/login to start syncing")


@app.on_event("shutdown")
async def on_shutdown():
    await get_container().close()


app.include_router(api_router)


@app.get("/")
def health_check():
    return {"status": "ok"}
