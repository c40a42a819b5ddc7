"""FastAPI application entry point for the Order Broadcast API."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from order_broadcast.app.config import get_settings
from order_broadcast.infra.clock import system_clock
from order_broadcast.infra.database import async_session, init_db
from order_broadcast.services.deadline_sweeper import DeadlineSweeper
from order_broadcast.services.order_bridge import BridgeDispatcher, build_order_bridge

logger = logging.getLogger(__name__)


async def sweeper_loop():
    """Run the deadline sweeper and bridge delivery on a fixed interval."""
    settings = get_settings()
    sweeper = DeadlineSweeper(clock=system_clock, settings=settings)
    dispatcher = BridgeDispatcher(build_order_bridge(settings), clock=system_clock, settings=settings)
    while True:
        try:
            async with async_session() as db:
                await sweeper.sweep(db)
                await dispatcher.deliver_pending(db)
        except Exception as e:
            logger.error("Deadline sweeper error: %s", e)
        await asyncio.sleep(settings.sweep_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database, start the sweeper."""
    await init_db()
    task = asyncio.create_task(sweeper_loop())
    yield
    task.cancel()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Order Broadcast API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware — allow all origins in debug mode
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from order_broadcast.app.routes.broadcasts import router as broadcasts_router
from order_broadcast.app.routes.merchant import router as merchant_router
from order_broadcast.app.routes.scheduler import router as scheduler_router

app.include_router(broadcasts_router)
app.include_router(merchant_router)
app.include_router(scheduler_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "order-broadcast"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "order_broadcast.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
