"""Scheduler cron endpoint — lets an external scheduler drive deadline sweeps."""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from order_broadcast.app.config import get_settings
from order_broadcast.infra.clock import get_clock
from order_broadcast.infra.database import get_db
from order_broadcast.services.deadline_sweeper import DeadlineSweeper
from order_broadcast.services.order_bridge import BridgeDispatcher, build_order_bridge

logger = logging.getLogger(__name__)


async def verify_internal_token(x_internal_token: str = Header(...)):
    """Verify that the request includes a valid internal auth token."""
    settings = get_settings()
    if x_internal_token != settings.internal_token:
        raise HTTPException(status_code=401, detail="Invalid internal token")


router = APIRouter(
    prefix="/api/internal/scheduler",
    tags=["scheduler"],
    dependencies=[Depends(verify_internal_token)],
)


@router.post("/tick")
async def scheduler_tick(db: AsyncSession = Depends(get_db), clock=Depends(get_clock)):
    """Run one deadline sweep, then one bridge delivery pass."""
    settings = get_settings()
    sweep = await DeadlineSweeper(clock=clock, settings=settings).sweep(db)
    dispatcher = BridgeDispatcher(build_order_bridge(settings), clock=clock, settings=settings)
    delivery = await dispatcher.deliver_pending(db)

    results = {"sweep": sweep.as_dict(), "bridge": delivery}
    logger.info("Scheduler tick: %s", results)
    return {"ok": True, "results": results}
