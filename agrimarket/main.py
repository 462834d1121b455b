import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from . import models
from .database import engine
from .routers import booking_router, damage_router
from .outbox_poller import run_outbox_poller
from .monitor import run_booking_monitor
from .catalog_consumer import consume_catalog_updates

import redis.asyncio as redis
from fastapi_limiter import FastAPILimiter
from .config import settings

logger = logging.getLogger("agrimarket")

# Create database tables on startup
models.Base.metadata.create_all(bind=engine)


async def _stop(task: asyncio.Task, name: str):
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info(f"{name} task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during {name} shutdown: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    logger.info("Starting background tasks...")

    redis_client = None
    try:
        redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
        await FastAPILimiter.init(redis_client)
        logger.info("FastAPILimiter initialized with Redis.")
    except Exception as e:
        logger.error(f"Failed to initialize FastAPILimiter: {e}")

    tasks = {
        "Outbox poller": asyncio.create_task(run_outbox_poller()),
        "Booking monitor": asyncio.create_task(run_booking_monitor()),
        "Catalog consumer": asyncio.create_task(consume_catalog_updates()),
    }

    yield  # The application is now running

    logger.info("Shutting down background tasks...")
    if redis_client is not None:
        await redis_client.aclose()

    for name, task in tasks.items():
        await _stop(task, name)


app = FastAPI(
    title="Agri Marketplace Booking API",
    description="Matches farmers' equipment requests with suppliers and runs each booking to payment.",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(booking_router.router)
app.include_router(damage_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Agri Marketplace Booking Service"}
