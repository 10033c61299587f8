"""Reconciliation services for the VPN access portal."""

from .account_sync import (
    AccountReconciler,
    ReconciliationResult,
    SyncSetupError,
    UserNotEligibleError,
    generate_temp_password,
)
from .routing import RouteDirective, RoutingCompiler, RoutingSyncResult
from .session_monitor import MonitorResult, SessionMonitor, classify_device_type
from .sync_scheduler import ReconciliationRun, SyncOutcome, SyncScheduler

__all__ = [
    "AccountReconciler",
    "ReconciliationResult",
    "SyncSetupError",
    "UserNotEligibleError",
    "generate_temp_password",
    "RouteDirective",
    "RoutingCompiler",
    "RoutingSyncResult",
    "MonitorResult",
    "SessionMonitor",
    "classify_device_type",
    "ReconciliationRun",
    "SyncOutcome",
    "SyncScheduler",
]
