"""
Structured audit logging for mutations made on the access-control system.

Events go to a dedicated 'audit' logger as one JSON object per line. The
request_id set by the HTTP middleware is carried through async calls with a
ContextVar, so an event raised deep inside a reconciliation pass can still be
tied back to the request that triggered it.

Passwords never appear in audit details.
"""

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


_request_id_context: ContextVar[Optional[str]] = ContextVar(
    'request_id', default=None
)

# Who triggered the work: 'scheduler', 'monitor', 'api', 'cli'
_actor_context: ContextVar[Optional[str]] = ContextVar(
    'actor', default=None
)


class AuditLogger:
    """
    Structured audit logger for external mutations.

    Each convenience method maps one kind of change onto the generic
    ``log`` call with a consistent resource name.
    """

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def set_request_id(self, request_id: Optional[str]) -> None:
        _request_id_context.set(request_id)

    def get_request_id(self) -> Optional[str]:
        return _request_id_context.get()

    def set_actor(self, actor: Optional[str]) -> None:
        _actor_context.set(actor)

    def get_actor(self) -> Optional[str]:
        return _actor_context.get()

    def log(
        self,
        action: str,
        resource: str,
        resource_id: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> None:
        """
        Core method to log a structured audit event.

        Args:
            action: Type of action performed (e.g., 'CREATE', 'DELETE', 'APPLY')
            resource: Type of resource affected (e.g., 'VpnAccount', 'Device')
            resource_id: Identifier of the affected resource
            status: Result status ('success', 'failure', 'skipped')
            details: Optional dict of additional context
            actor: Overrides the actor from context
        """
        event = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'action': action,
            'actor': actor or self.get_actor() or 'system',
            'resource': resource,
            'resource_id': resource_id,
            'status': status,
            'request_id': self.get_request_id(),
            'details': details or {},
        }
        self.logger.info(json.dumps(event, default=str))

    def log_account_created(self, username: str, fields: List[str]) -> None:
        self.log(
            action='CREATE',
            resource='VpnAccount',
            resource_id=username,
            status='success',
            details={'fields': fields},
        )

    def log_account_updated(self, username: str, fields: List[str]) -> None:
        self.log(
            action='UPDATE',
            resource='VpnAccount',
            resource_id=username,
            status='success',
            details={'fields': fields},
        )

    def log_account_deleted(self, username: str) -> None:
        self.log(
            action='DELETE',
            resource='VpnAccount',
            resource_id=username,
            status='success',
        )

    def log_account_failure(self, username: str, operation: str, error: str) -> None:
        self.log(
            action=operation.upper(),
            resource='VpnAccount',
            resource_id=username,
            status='failure',
            details={'error': error},
        )

    def log_device_reassigned(
        self,
        session_address: str,
        previous_user_id: int,
        new_user_id: int,
    ) -> None:
        """
        Log a session address moving from one user's device to another's.

        Args:
            session_address: The VPN address that changed owner
            previous_user_id: Owner of the device that was removed
            new_user_id: Owner of the device that replaces it
        """
        self.log(
            action='REASSIGN',
            resource='Device',
            resource_id=session_address,
            status='success',
            details={
                'previous_user_id': previous_user_id,
                'new_user_id': new_user_id,
            },
        )

    def log_routing_applied(self, networks: List[str], status: str = 'success') -> None:
        self.log(
            action='APPLY',
            resource='RoutingTable',
            resource_id='server',
            status=status,
            details={'slot_count': len(networks), 'networks': networks},
        )

    def log_scheduler_change(self, change: str, **details: Any) -> None:
        """Log a scheduler state change ('start', 'stop', 'interval', 'reset')."""
        self.log(
            action=change.upper(),
            resource='SyncScheduler',
            resource_id='accounts',
            status='success',
            details=details,
        )


audit = AuditLogger()
