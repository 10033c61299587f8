from .sync import router as sync_router
from .devices import router as devices_router
from .monitor import router as monitor_router
from .routing import router as routing_router

__all__ = [
    "sync_router",
    "devices_router",
    "monitor_router",
    "routing_router",
]
