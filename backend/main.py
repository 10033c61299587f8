import time
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from database import AsyncSessionLocal, init_db, close_db
from gateway import TransportError, create_gateway
from routers import (
    sync_router,
    devices_router,
    monitor_router,
    routing_router,
)
from services.account_sync import AccountReconciler
from services.routing import RoutingCompiler
from services.session_monitor import SessionMonitor
from services.sync_scheduler import SyncScheduler
from utils.logging_utils import setup_logging, get_logger
from utils.audit import audit

# Configure logging: INFO by default, LOG_LEVEL overrides
setup_logging(level=settings.LOG_LEVEL)
logger = get_logger(__name__)


def build_services(app: FastAPI, gateway, session_factory) -> None:
    """Create the reconciliation services and attach them to ``app.state``."""
    reconciler = AccountReconciler(
        gateway, session_factory, password_length=settings.TEMP_PASSWORD_LENGTH
    )
    app.state.gateway = gateway
    app.state.session_factory = session_factory
    app.state.reconciler = reconciler
    app.state.scheduler = SyncScheduler(
        reconciler,
        interval_minutes=settings.SYNC_INTERVAL_MINUTES,
        delete_orphaned=settings.SYNC_DELETE_ORPHANED,
    )
    app.state.monitor = SessionMonitor(
        gateway, session_factory, interval_seconds=settings.MONITOR_INTERVAL_SECONDS
    )
    app.state.routing = RoutingCompiler(
        gateway, session_factory, vpn_subnet=settings.VPN_SUBNET
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logger.info("=" * 60)
    logger.info("VPN ACCESS PORTAL STARTING UP")
    logger.info(f"App: {settings.APP_NAME} v{settings.APP_VERSION}")

    start = time.perf_counter()
    await init_db()
    logger.info(
        f"Database initialized in {(time.perf_counter() - start) * 1000:.1f}ms"
    )

    gateway = create_gateway(settings)
    logger.info(f"Gateway: {gateway.describe()}")
    build_services(app, gateway, AsyncSessionLocal)
    audit.set_actor("system")

    if settings.ROUTING_ENABLED:
        try:
            await app.state.routing.initialize()
        except TransportError as e:
            logger.error(f"Routing initialization failed, will retry on the next sync: {e}")
        app.state.routing.start(settings.ROUTING_SYNC_INTERVAL_MINUTES)

    if settings.SYNC_ENABLED:
        app.state.scheduler.start()
    else:
        logger.info("Account sync scheduler disabled (SYNC_ENABLED=false)")

    if settings.MONITOR_ENABLED:
        app.state.monitor.start()
    else:
        logger.info("Session monitor disabled (MONITOR_ENABLED=false)")

    # Run startup health checks
    from services.health import run_health_checks
    health = await run_health_checks(app.state.scheduler, app.state.monitor)
    for check in health.checks:
        status_icon = "+" if check.status in ("ok", "disabled") else "!"
        detail = ""
        if check.message:
            detail += f" ({check.message})"
        if check.response_time_ms is not None:
            detail += f" [{check.response_time_ms:.1f}ms]"
        logger.info(f"  {status_icon} {check.name}: {check.status}{detail}")
    if health.status != "healthy":
        logger.warning(f"STARTUP HEALTH: {health.status.upper()} - some checks failed")

    logger.info("STARTUP COMPLETE - Ready to accept requests")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("VPN ACCESS PORTAL SHUTTING DOWN")
    grace = settings.SHUTDOWN_GRACE_SECONDS
    for name in ("scheduler", "monitor", "routing"):
        if not await getattr(app.state, name).shutdown(grace):
            logger.warning(f"{name} did not finish within {grace:.0f}s")
    await gateway.aclose()
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan,
)


# ── Custom validation error handler ───────────────────────────────────

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
):
    """
    Return user-friendly error messages when request validation fails.

    Instead of Pydantic's raw error output, this returns a structured
    response with per-field error messages.
    """
    errors = []
    for error in exc.errors():
        # Build a dotted field path (skip the top-level "body"/"query" prefix)
        loc_parts = [str(x) for x in error.get("loc", [])]
        if loc_parts and loc_parts[0] in ("body", "query", "path"):
            loc_parts = loc_parts[1:]
        field = ".".join(loc_parts) if loc_parts else "unknown"

        msg = error.get("msg", "Validation error")
        # Pydantic wraps custom ValueError messages in "Value error, ..."
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]

        errors.append({
            "field": field,
            "message": msg,
            "type": error.get("type", "unknown"),
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Validation failed",
            "errors": errors,
        },
    )


# ── Request ID + request logging middleware ───────────────────────────

@app.middleware("http")
async def request_lifecycle(request: Request, call_next):
    """Assign a request ID, log timing, and add the ID to response headers."""
    request_id = str(uuid.uuid4())
    audit.set_request_id(request_id)
    audit.set_actor("api")

    start_time = time.perf_counter()
    logger.debug(f"→ {request.method} {request.url.path}")

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000
    status_indicator = "+" if response.status_code < 400 else "!"
    logger.info(
        f"{status_indicator} {request.method} {request.url.path} "
        f"[{response.status_code}] {duration_ms:.1f}ms rid={request_id[:8]}"
    )

    response.headers["X-Request-ID"] = request_id
    return response


# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

# Include routers
app.include_router(sync_router)
app.include_router(devices_router)
app.include_router(monitor_router)
app.include_router(routing_router)


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Health check endpoint with component status breakdown."""
    from services.health import run_health_checks
    health = await run_health_checks(
        getattr(request.app.state, "scheduler", None),
        getattr(request.app.state, "monitor", None),
        getattr(request.app.state, "session_factory", None),
    )
    status_code = 200 if health.status in ("healthy", "degraded") else 503
    return JSONResponse(content=health.model_dump(), status_code=status_code)


@app.get("/api/info", tags=["info"])
async def get_app_info(request: Request):
    """Get application version and gateway transport."""
    gateway = getattr(request.app.state, "gateway", None)
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "gateway": gateway.describe() if gateway is not None else None,
    }


@app.get("/api", tags=["root"])
async def api_root():
    """API root endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "openapi": "/openapi.json",
        "endpoints": {
            "sync": "/api/sync",
            "devices": "/api/devices",
            "monitor": "/api/monitor",
            "routing": "/api/routing",
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
