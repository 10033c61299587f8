"""
Dependencies that hand the long-lived service objects to the routers.

The objects are built once in ``main.lifespan`` and stored on ``app.state``.
"""

from fastapi import HTTPException, Request

from services.account_sync import AccountReconciler
from services.routing import RoutingCompiler
from services.session_monitor import SessionMonitor
from services.sync_scheduler import SyncScheduler


def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name.replace('_', ' ').capitalize()} is not available")
    return service


def get_reconciler(request: Request) -> AccountReconciler:
    return _state(request, "reconciler")


def get_scheduler(request: Request) -> SyncScheduler:
    return _state(request, "scheduler")


def get_monitor(request: Request) -> SessionMonitor:
    return _state(request, "monitor")


def get_routing(request: Request) -> RoutingCompiler:
    return _state(request, "routing")
