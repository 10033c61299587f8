"""
Health check service for the VPN access portal.

Checks database connectivity and the state of the background loops (account
sync scheduler, session monitor), and tracks uptime.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import text

from config import settings
from database import AsyncSessionLocal

logger = logging.getLogger(__name__)

# Captured at module load, used to compute uptime
_start_time = time.monotonic()


class ComponentHealth(BaseModel):
    name: str
    status: str  # "ok" | "degraded" | "error" | "disabled"
    message: Optional[str] = None
    response_time_ms: Optional[float] = None


class HealthResponse(BaseModel):
    status: str  # "healthy" | "degraded" | "unhealthy"
    app: str
    version: str
    uptime_seconds: float
    checks: list[ComponentHealth]
    timestamp: str


async def check_database(session_factory=None) -> ComponentHealth:
    """Check database connectivity by running SELECT 1."""
    session_factory = session_factory or AsyncSessionLocal
    start = time.perf_counter()
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        elapsed = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            name="database",
            status="ok",
            response_time_ms=round(elapsed, 1),
        )
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            name="database",
            status="error",
            message=str(e),
            response_time_ms=round(elapsed, 1),
        )


def check_scheduler(scheduler, enabled: bool) -> ComponentHealth:
    """Account sync scheduler: running when enabled, last run successful."""
    if scheduler is None or not enabled:
        return ComponentHealth(name="sync_scheduler", status="disabled")
    if not scheduler.is_running:
        return ComponentHealth(
            name="sync_scheduler", status="degraded", message="Scheduler is stopped"
        )
    last = scheduler.history[0] if scheduler.history else None
    if last is not None and not last.success:
        return ComponentHealth(
            name="sync_scheduler", status="degraded", message=f"Last sync failed: {last.error}"
        )
    return ComponentHealth(name="sync_scheduler", status="ok")


def check_monitor(monitor, enabled: bool) -> ComponentHealth:
    """Session monitor: running when enabled, last poll reached the access server."""
    if monitor is None or not enabled:
        return ComponentHealth(name="session_monitor", status="disabled")
    if not monitor.is_running:
        return ComponentHealth(
            name="session_monitor", status="degraded", message="Monitor is stopped"
        )
    last = monitor.last_result
    if last is not None and not last.polled and not last.skipped:
        return ComponentHealth(
            name="session_monitor", status="degraded", message=f"Last poll failed: {last.error}"
        )
    return ComponentHealth(name="session_monitor", status="ok")


async def run_health_checks(
    scheduler=None,
    monitor=None,
    session_factory=None,
) -> HealthResponse:
    """Run all health checks and return aggregated status."""
    checks = [
        await check_database(session_factory),
        check_scheduler(scheduler, settings.SYNC_ENABLED),
        check_monitor(monitor, settings.MONITOR_ENABLED),
    ]

    # Database is critical: if it's down, the service is unhealthy.
    # Background loop problems only degrade it.
    critical_names = {"database"}
    has_critical_error = any(
        c.status == "error" and c.name in critical_names for c in checks
    )
    has_any_problem = any(c.status in ("error", "degraded") for c in checks)

    if has_critical_error:
        overall = "unhealthy"
    elif has_any_problem:
        overall = "degraded"
    else:
        overall = "healthy"

    return HealthResponse(
        status=overall,
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        uptime_seconds=round(time.monotonic() - _start_time, 1),
        checks=checks,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
