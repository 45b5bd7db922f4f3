import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from newsdesk.cache import MemoryTier, SlotCache, SqlTier
from newsdesk.config import get_settings
from newsdesk.database import Base, SessionLocal, engine
from newsdesk.editorial import EditorialProcessor
from newsdesk.fetcher import build_source
from newsdesk.pipeline import IngestionPipeline
from newsdesk.refresher import RefreshService
from newsdesk.routes.news import router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup ---
    settings = get_settings()

    logger.info("Creating database tables if they don't exist...")
    Base.metadata.create_all(bind=engine)

    cache = SlotCache(
        fast=MemoryTier(),
        durable=SqlTier(SessionLocal),
        ttl_seconds=settings.cache_ttl_seconds,
    )
    app.state.pipeline = IngestionPipeline.from_settings(
        settings,
        cache=cache,
        source=build_source(settings),
        processor=EditorialProcessor.from_settings(settings),
    )

    task = None
    if settings.background_refresh:
        logger.info("Starting background edition refresher...")
        refresher = RefreshService(interval_seconds=settings.refresh_interval_seconds)
        task = asyncio.create_task(refresher.run(app.state.pipeline))

    yield

    # --- Shutdown ---
    if task is not None:
        logger.info("Shutting down background refresher...")
        task.cancel()


app = FastAPI(
    title="Newsdesk API",
    description="Serves rewritten news editions grouped into daily time slots.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)
