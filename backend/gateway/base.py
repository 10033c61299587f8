"""
Gateway contract for the external access-control system.

The reconciliation services only ever talk to a ``Gateway``; which transport
sits behind it (``docker exec`` + sacli, the HTTP profile proxy, or the
in-memory fake) is decided once by ``gateway.create_gateway``.

Account properties are a closed set of typed fields. Anything outside
``AccountField`` is rejected before a call leaves the process.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Sequence, Union

from .errors import UnknownPropertyError


class AccountField(str, Enum):
    """Managed properties of an external account."""

    EMAIL = "email"
    DISPLAY_NAME = "display_name"
    IS_SUPERUSER = "is_superuser"


# Wire names used by the access server's user property store
PROPERTY_KEYS: Dict[AccountField, str] = {
    AccountField.EMAIL: "prop_email",
    AccountField.DISPLAY_NAME: "prop_c_name",
    AccountField.IS_SUPERUSER: "prop_superuser",
}

ROUTING_KEY_PREFIX = "vpn.server.routing.private_network."


@dataclass(frozen=True)
class AccountProperties:
    """Typed view of an external account's managed properties."""

    email: Optional[str] = None
    display_name: Optional[str] = None
    is_superuser: bool = False

    def get(self, field: AccountField):
        return getattr(self, field.value)


@dataclass(frozen=True)
class ConnectionSnapshot:
    """One live VPN session, valid for a single poll cycle."""

    username: str
    session_address: str
    client_address: Optional[str] = None
    bytes_sent: int = 0
    bytes_received: int = 0
    connected_since: Optional[str] = None
    platform: Optional[str] = None
    client_version: Optional[str] = None


@dataclass(frozen=True)
class SessionDetail:
    """Client platform details for a session, keyed by session address."""

    session_address: str
    platform: str = "unknown"
    client_version: str = ""


def coerce_field(key: Union[AccountField, str]) -> AccountField:
    """Resolve a property key to an ``AccountField`` or raise UnknownPropertyError."""
    if isinstance(key, AccountField):
        return key
    try:
        return AccountField(key)
    except ValueError:
        pass
    for field, wire_key in PROPERTY_KEYS.items():
        if wire_key == key:
            return field
    raise UnknownPropertyError(f"Unknown account property: {key!r}")


def encode_property(field: AccountField, value) -> str:
    """Encode a typed property value to its wire string."""
    if field is AccountField.IS_SUPERUSER:
        if not isinstance(value, bool):
            raise UnknownPropertyError(f"{field.value} expects a bool, got {type(value).__name__}")
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


class Gateway(ABC):
    """
    Abstract access-control gateway.

    Mutating account calls are serialized per username; calls for different
    usernames may run concurrently. Every call is bounded by
    ``timeout_seconds`` and fails with ``TransportError`` on timeout.
    """

    transport: str = "abstract"

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds
        # Entries live only while some call holds or waits on the username
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}
        self._routing_lock = asyncio.Lock()

    @asynccontextmanager
    async def _user_lock(self, username: str) -> AsyncIterator[None]:
        lock = self._user_locks.setdefault(username, asyncio.Lock())
        self._lock_holders[username] = self._lock_holders.get(username, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[username] -= 1
            if self._lock_holders[username] == 0:
                del self._lock_holders[username]
                del self._user_locks[username]

    # ── Accounts ──────────────────────────────────────────────────────

    @abstractmethod
    async def list_accounts(self) -> Dict[str, AccountProperties]:
        """Return every user account on the access server, keyed by username."""

    async def create_or_set_password(self, username: str, password: str) -> None:
        """Create the account if needed and set its local password."""
        async with self._user_lock(username):
            await self._set_password(username, password)

    async def set_property(
        self, username: str, key: Union[AccountField, str], value
    ) -> None:
        """Set one managed property on an account."""
        field = coerce_field(key)
        wire_value = encode_property(field, value)
        async with self._user_lock(username):
            await self._put_property(username, PROPERTY_KEYS[field], wire_value)

    async def delete_account(self, username: str) -> None:
        """Remove an account and all of its properties."""
        async with self._user_lock(username):
            await self._delete_account(username)

    @abstractmethod
    async def _set_password(self, username: str, password: str) -> None: ...

    @abstractmethod
    async def _put_property(self, username: str, wire_key: str, wire_value: str) -> None: ...

    @abstractmethod
    async def _delete_account(self, username: str) -> None: ...

    # ── Sessions ──────────────────────────────────────────────────────

    @abstractmethod
    async def poll_sessions(self) -> List[ConnectionSnapshot]:
        """Live sessions from the access server's status report."""

    @abstractmethod
    async def poll_session_detail(self) -> List[SessionDetail]:
        """Platform and client version for active sessions."""

    # ── Routing ───────────────────────────────────────────────────────

    async def push_routing_table(self, ordered_cidrs: Sequence[str]) -> None:
        """Write routing slots 0..n-1 and drop any higher slots left over."""
        async with self._routing_lock:
            await self._write_routing_table(list(ordered_cidrs))

    async def apply_routing_changes(self) -> None:
        """Reload the access server so routing changes take effect."""
        async with self._routing_lock:
            await self._apply()

    @abstractmethod
    async def _write_routing_table(self, ordered_cidrs: List[str]) -> None: ...

    @abstractmethod
    async def _apply(self) -> None: ...

    @abstractmethod
    async def enable_nat_routing(self) -> None:
        """Switch private access to NAT mode and allow inter-client routing.

        Takes effect with the next ``apply_routing_changes``.
        """

    async def aclose(self) -> None:
        """Release transport resources."""
        return None

    def describe(self) -> Dict[str, object]:
        return {"transport": self.transport, "timeout_seconds": self.timeout_seconds}
