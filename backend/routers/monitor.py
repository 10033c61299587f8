"""Session monitor status and manual poll."""

import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException

from routers.deps import get_monitor
from services.session_monitor import SessionMonitor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/monitor", tags=["monitor"])


@router.get("/status", response_model=Dict)
async def get_monitor_status(monitor: SessionMonitor = Depends(get_monitor)):
    return monitor.get_status()


@router.post("/tick", response_model=Dict)
async def run_monitor_tick(monitor: SessionMonitor = Depends(get_monitor)):
    """Poll the access server now instead of waiting for the next tick."""
    result = await monitor.tick()
    if result.skipped:
        raise HTTPException(status_code=409, detail="A monitor tick is already running")
    if not result.polled:
        raise HTTPException(status_code=502, detail=result.error or "Session poll failed")
    return {"success": True, "data": result.to_dict()}
