"""
LAN routing compiler.

Turns the enabled LanNetwork rows into:
- per-connection ``iroute`` directives for a connecting client, and
- the access server's global private-network routing table.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from gateway import Gateway, TransportError
from models import LanNetwork, User
from network.validators import normalize_cidr
from utils.audit import audit
from utils.ticker import PeriodicTicker

logger = logging.getLogger(__name__)

DEFAULT_VPN_SUBNET = "10.77.0.0/24"


@dataclass(frozen=True)
class RouteDirective:
    network_cidr: str
    network_ip: str
    subnet_mask: str
    description: Optional[str] = None

    def render(self) -> str:
        return f"iroute {self.network_ip} {self.subnet_mask}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network_cidr": self.network_cidr,
            "network_ip": self.network_ip,
            "subnet_mask": self.subnet_mask,
            "description": self.description,
            "directive": self.render(),
        }


@dataclass
class RoutingSyncResult:
    applied: bool
    networks: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"applied": self.applied, "networks": list(self.networks), "reason": self.reason}


class RoutingCompiler:
    """Compiles LAN networks into access server routing."""

    def __init__(
        self,
        gateway: Gateway,
        session_factory: async_sessionmaker,
        vpn_subnet: str = DEFAULT_VPN_SUBNET,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.vpn_subnet = normalize_cidr(vpn_subnet)
        self.last_applied: Optional[List[str]] = None
        self.last_sync_time: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._lock = asyncio.Lock()
        self._ticker: Optional[PeriodicTicker] = None

    async def per_connection_directives(self, username: str) -> List[RouteDirective]:
        """Directives for one connecting client; empty if the user is unknown."""
        async with self.session_factory() as session:
            user = (
                await session.execute(
                    select(User)
                    .where(
                        or_(User.email == username, User.username == username),
                        User.deleted_at.is_(None),
                    )
                    .order_by(User.id)
                    .limit(1)
                )
            ).scalars().first()
            if user is None:
                logger.warning(f"User not found: {username}")
                return []

            networks = (
                await session.execute(
                    select(LanNetwork)
                    .where(LanNetwork.user_id == user.id, LanNetwork.enabled.is_(True))
                    .order_by(LanNetwork.id)
                )
            ).scalars().all()

        return [
            RouteDirective(
                network_cidr=n.network_cidr,
                network_ip=n.network_ip,
                subnet_mask=n.subnet_mask,
                description=n.description,
            )
            for n in networks
        ]

    async def render_client_config(self, username: str) -> str:
        """Config block for the client-connect hook, or '' when there is nothing to route."""
        directives = await self.per_connection_directives(username)
        if not directives:
            logger.info(f"No enabled LAN networks for user: {username}")
            return ""

        lines = [
            f"# LAN Network Routes for {username}",
            f"# Generated at {datetime.now(timezone.utc).isoformat()}",
            "",
        ]
        for d in directives:
            description = f" - {d.description}" if d.description else ""
            lines.append(f"# {d.network_cidr}{description}")
            lines.append(d.render())
        lines.append("")
        lines.append(f"# Total networks: {len(directives)}")

        logger.info(f"Generated client config for {username} with {len(directives)} networks")
        return "\n".join(lines)

    async def compute_table(self) -> List[str]:
        """Slot-ordered routing table: the VPN subnet, then each distinct enabled CIDR by id."""
        async with self.session_factory() as session:
            cidrs = (
                await session.execute(
                    select(LanNetwork.network_cidr)
                    .where(LanNetwork.enabled.is_(True))
                    .order_by(LanNetwork.id)
                )
            ).scalars().all()

        table = [self.vpn_subnet]
        seen = {self.vpn_subnet}
        for cidr in cidrs:
            key = normalize_cidr(cidr)
            if key in seen:
                continue
            seen.add(key)
            table.append(key)
        return table

    async def server_wide_sync(self, force: bool = False) -> RoutingSyncResult:
        """
        Push the routing table and reload the access server.

        Calls are serialized; a caller arriving during a sync waits for it and
        then runs its own. The reload is skipped when the table equals the
        last one applied by this process, unless ``force`` is set.

        Raises:
            TransportError: the push or the reload failed
        """
        async with self._lock:
            table = await self.compute_table()
            if not force and table == self.last_applied:
                logger.info("Routing table unchanged, skipping reload")
                return RoutingSyncResult(applied=False, networks=table, reason="unchanged")

            logger.info(f"Updating server routing with {len(table) - 1} LAN network(s)")
            try:
                await self.gateway.push_routing_table(table)
                await self.gateway.apply_routing_changes()
            except TransportError as e:
                # Server state is unknown now; the next sync must not be skipped
                self.last_applied = None
                self.last_error = str(e)
                audit.log_routing_applied(table, status="failure")
                logger.error(f"Error updating server routing: {e}")
                raise

            self.last_applied = table
            self.last_sync_time = datetime.now(timezone.utc)
            self.last_error = None
            audit.log_routing_applied(table)
            logger.info(f"Applied routing table with {len(table)} slot(s)")
            return RoutingSyncResult(applied=True, networks=table)

    async def initialize(self) -> RoutingSyncResult:
        """Enable NAT routing, then force a full routing sync."""
        logger.info("Initializing LAN network routing")
        await self.gateway.enable_nat_routing()
        return await self.server_wide_sync(force=True)

    async def _periodic_sync(self) -> None:
        if self._lock.locked():
            logger.debug("Periodic routing sync skipped: a sync is in progress")
            return
        await self.server_wide_sync()

    def start(self, interval_minutes: int) -> bool:
        if self._ticker is None:
            self._ticker = PeriodicTicker("routing-sync", interval_minutes * 60, self._periodic_sync)
        else:
            self._ticker.reconfigure(interval_minutes * 60)
        return self._ticker.start()

    def stop(self) -> bool:
        return self._ticker.stop() if self._ticker is not None else False

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and self._ticker.is_running

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        self.stop()
        if self._ticker is None:
            return True
        return await self._ticker.drain(timeout)

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "vpn_subnet": self.vpn_subnet,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "last_applied": self.last_applied,
            "last_error": self.last_error,
        }
