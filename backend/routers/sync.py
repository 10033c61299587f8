"""
Account sync endpoints.

Handles:
- Manual full reconciliation (optionally dry run / deleting orphans)
- Single-user sync and external account removal
- Scheduler status, start/stop and interval changes
"""

import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException

from gateway import TransportError
from routers.deps import get_reconciler, get_scheduler
from schemas import IntervalUpdate, SchedulerControl, SyncRequest, SyncResponse
from services.account_sync import AccountReconciler, SyncSetupError, UserNotEligibleError
from services.sync_scheduler import SyncScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/users", response_model=SyncResponse)
async def sync_all_users(
    data: SyncRequest = SyncRequest(),
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """
    Reconcile every eligible user with the access server now.

    Returns 409 if a sync is already running.
    """
    try:
        outcome = await scheduler.run_now(
            dry_run=data.dry_run, delete_orphaned=data.delete_orphaned
        )
    except SyncSetupError as e:
        raise HTTPException(status_code=503, detail=str(e))

    if outcome.skipped:
        raise HTTPException(status_code=409, detail=outcome.reason)

    result = outcome.result
    counts = result.counts()
    message = (
        f"{'Dry run' if data.dry_run else 'Sync'} complete: "
        f"{counts['created']} created, {counts['updated']} updated, "
        f"{counts['deleted']} deleted, {counts['errors']} errors"
    )
    return SyncResponse(success=not result.errors, message=message, data=result.to_dict())


@router.post("/users/{user_id}", response_model=SyncResponse)
async def sync_single_user(
    user_id: int,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """
    Create or update the external account of one user.

    Returns 409 if a sync is already running.
    """
    try:
        outcome = await scheduler.sync_user(user_id)
    except UserNotEligibleError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncSetupError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if outcome.skipped:
        raise HTTPException(status_code=409, detail=outcome.reason)

    result = outcome.result
    if result.errors:
        raise HTTPException(status_code=502, detail=result.errors[0].error)

    if result.created:
        message = f"User {result.created[0].username} created on the access server"
    elif result.updated:
        message = f"User {result.updated[0].username} updated: {', '.join(result.updated[0].fields)}"
    else:
        message = "User already in sync"
    return SyncResponse(success=True, message=message, data=result.to_dict())


@router.delete("/users/{username}", response_model=Dict)
async def delete_external_account(
    username: str,
    reconciler: AccountReconciler = Depends(get_reconciler),
):
    """Remove one account from the access server."""
    try:
        await reconciler.remove_account(username)
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"success": True, "message": f"User {username} deleted from the access server"}


@router.get("/status", response_model=Dict)
async def get_sync_status(scheduler: SyncScheduler = Depends(get_scheduler)):
    """Scheduler state, statistics and recent run history."""
    return scheduler.get_status()


@router.post("/scheduler/control", response_model=Dict)
async def control_scheduler(
    data: SchedulerControl,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """Start or stop the periodic sync."""
    if data.action == "start":
        if not scheduler.start():
            raise HTTPException(status_code=400, detail="Scheduler is already running")
        message = "Scheduler started"
    else:
        if not scheduler.stop():
            raise HTTPException(status_code=400, detail="Scheduler is not running")
        message = "Scheduler stopped"

    logger.info(message)
    return {"success": True, "message": message, "data": scheduler.get_status()}


@router.put("/scheduler/interval", response_model=Dict)
async def update_scheduler_interval(
    data: IntervalUpdate,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """Change how often the periodic sync runs."""
    if not scheduler.update_interval(data.interval_minutes):
        raise HTTPException(status_code=400, detail="Interval must be between 1 and 60 minutes")
    return {
        "success": True,
        "message": f"Sync interval updated to {data.interval_minutes} minutes",
        "data": scheduler.get_status(),
    }
