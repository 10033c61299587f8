"""
In-process gateway holding accounts, sessions and routing state in dicts.

Selected with ``GATEWAY_TRANSPORT=memory`` for local development, and used by
the test suite as the single seam for external state. Failures can be injected
per operation (optionally per username) with ``fail_on``.
"""

import asyncio
from typing import Dict, List, Optional, Set, Tuple

from .base import (
    PROPERTY_KEYS,
    AccountField,
    AccountProperties,
    ConnectionSnapshot,
    Gateway,
    SessionDetail,
)
from .errors import TransportError
from .parsing import decode_bool

MUTATING_OPERATIONS = frozenset({
    "set_password",
    "set_property",
    "delete_account",
    "push_routing_table",
    "apply_routing_changes",
    "enable_nat_routing",
})

_WIRE_TO_FIELD = {wire: field for field, wire in PROPERTY_KEYS.items()}


class InMemoryGateway(Gateway):
    """Gateway backed by plain Python state."""

    transport = "memory"

    def __init__(
        self,
        accounts: Optional[Dict[str, AccountProperties]] = None,
        timeout_seconds: float = 10.0,
    ):
        super().__init__(timeout_seconds=timeout_seconds)
        self.accounts: Dict[str, Dict[AccountField, object]] = {}
        for username, props in (accounts or {}).items():
            self.add_account(username, props)
        self.passwords: Dict[str, str] = {}
        self.sessions: List[ConnectionSnapshot] = []
        self.session_details: List[SessionDetail] = []
        self.routing_table: List[str] = []
        self.apply_count = 0
        self.nat_enabled = False

        # (operation, username-or-None) in call order
        self.calls: List[Tuple[str, Optional[str]]] = []
        self._failures: Set[Tuple[str, Optional[str]]] = set()
        # When set, list_accounts waits on it; lets tests hold a run in flight
        self.list_gate: Optional[asyncio.Event] = None

    # ── Test/dev helpers ──────────────────────────────────────────────

    def add_account(self, username: str, props: Optional[AccountProperties] = None) -> None:
        props = props or AccountProperties()
        self.accounts[username] = {
            AccountField.EMAIL: props.email,
            AccountField.DISPLAY_NAME: props.display_name,
            AccountField.IS_SUPERUSER: props.is_superuser,
        }

    def fail_on(self, operation: str, username: Optional[str] = None) -> None:
        """Make ``operation`` raise TransportError (for one username, or always)."""
        self._failures.add((operation, username))

    def clear_failures(self) -> None:
        self._failures.clear()

    @property
    def mutation_calls(self) -> List[Tuple[str, Optional[str]]]:
        return [call for call in self.calls if call[0] in MUTATING_OPERATIONS]

    def _record(self, operation: str, username: Optional[str] = None) -> None:
        self.calls.append((operation, username))
        if (operation, None) in self._failures or (operation, username) in self._failures:
            raise TransportError("Injected failure", operation)

    # ── Accounts ──────────────────────────────────────────────────────

    async def list_accounts(self) -> Dict[str, AccountProperties]:
        if self.list_gate is not None:
            await self.list_gate.wait()
        self._record("list_accounts")
        return {
            username: AccountProperties(
                email=props.get(AccountField.EMAIL) or None,
                display_name=props.get(AccountField.DISPLAY_NAME) or None,
                is_superuser=bool(props.get(AccountField.IS_SUPERUSER)),
            )
            for username, props in self.accounts.items()
        }

    async def _set_password(self, username: str, password: str) -> None:
        self._record("set_password", username)
        self.accounts.setdefault(
            username,
            {AccountField.EMAIL: None, AccountField.DISPLAY_NAME: None, AccountField.IS_SUPERUSER: False},
        )
        self.passwords[username] = password

    async def _put_property(self, username: str, wire_key: str, wire_value: str) -> None:
        self._record("set_property", username)
        field = _WIRE_TO_FIELD[wire_key]
        props = self.accounts.setdefault(
            username,
            {AccountField.EMAIL: None, AccountField.DISPLAY_NAME: None, AccountField.IS_SUPERUSER: False},
        )
        if field is AccountField.IS_SUPERUSER:
            props[field] = decode_bool(wire_value)
        else:
            props[field] = wire_value or None

    async def _delete_account(self, username: str) -> None:
        self._record("delete_account", username)
        self.accounts.pop(username, None)
        self.passwords.pop(username, None)

    # ── Sessions ──────────────────────────────────────────────────────

    async def poll_sessions(self) -> List[ConnectionSnapshot]:
        self._record("poll_sessions")
        return list(self.sessions)

    async def poll_session_detail(self) -> List[SessionDetail]:
        self._record("poll_session_detail")
        return list(self.session_details)

    # ── Routing ───────────────────────────────────────────────────────

    async def _write_routing_table(self, ordered_cidrs: List[str]) -> None:
        self._record("push_routing_table")
        self.routing_table = list(ordered_cidrs)

    async def _apply(self) -> None:
        self._record("apply_routing_changes")
        self.apply_count += 1

    async def enable_nat_routing(self) -> None:
        self._record("enable_nat_routing")
        self.nat_enabled = True
