"""
Session monitor: keeps the device inventory in step with live VPN sessions.

Each tick:
1. Polls live sessions (and, best effort, client platform details)
2. Upserts one Device per session, keyed by (user, session address)
3. Marks every active Device whose address was not seen as inactive
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway import ConnectionSnapshot, Gateway, SessionDetail, TransportError
from models import Device, User
from utils.audit import audit
from utils.ticker import PeriodicTicker

logger = logging.getLogger(__name__)


def classify_device_type(platform: Optional[str]) -> str:
    """Map a client platform string to a device type."""
    if not platform:
        return "desktop"
    p = platform.lower()
    if "android" in p:
        return "mobile"
    if "ios" in p or "iphone" in p:
        return "mobile"
    if "ipad" in p:
        return "tablet"
    if "mac" in p:
        return "laptop"
    # windows, linux and anything unrecognised
    return "desktop"


def device_name(username: str, device_type: str, address: str, platform: Optional[str] = None) -> str:
    platform_part = f" - {platform}" if platform else ""
    return f"{username}'s {device_type}{platform_part} ({address})"


@dataclass
class MonitorResult:
    """Counts from one monitor tick."""
    polled: bool = True
    skipped: bool = False
    sessions: int = 0
    created: int = 0
    updated: int = 0
    reassigned: int = 0
    unmatched: int = 0
    failed: int = 0
    deactivated: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SessionMonitor:
    """Polls the gateway and reconciles the Device table."""

    def __init__(
        self,
        gateway: Gateway,
        session_factory: async_sessionmaker,
        interval_seconds: float = 60.0,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.last_poll_time: Optional[datetime] = None
        self.last_result: Optional[MonitorResult] = None
        self._polling = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._ticker = PeriodicTicker(
            "session-monitor", interval_seconds, self.tick, run_immediately=True
        )

    @property
    def is_running(self) -> bool:
        return self._ticker.is_running

    @property
    def is_polling(self) -> bool:
        return self._polling

    def start(self) -> bool:
        if not self._ticker.start():
            return False
        logger.info(f"Session monitor started (every {self.interval_seconds:g}s)")
        return True

    def stop(self) -> bool:
        if not self._ticker.stop():
            return False
        logger.info("Session monitor stopped")
        return True

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no tick is in flight. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Stop ticking and wait (bounded) for any tick in flight, manual ones included."""
        if self.is_running:
            self.stop()
        drained = await self._ticker.drain(timeout)
        return drained and await self.wait_idle(timeout)

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "is_polling": self.is_polling,
            "interval_seconds": self.interval_seconds,
            "last_poll_time": self.last_poll_time.isoformat() if self.last_poll_time else None,
            "next_poll_time": (
                self._ticker.next_run_at.isoformat()
                if self.is_running and self._ticker.next_run_at
                else None
            ),
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    async def tick(self) -> MonitorResult:
        """Run one monitoring cycle unless one is already in flight."""
        if self._polling:
            logger.debug("Monitor tick skipped: previous tick still running")
            return MonitorResult(polled=False, skipped=True)

        self._polling = True
        self._idle.clear()
        try:
            result = await self._tick()
        finally:
            self._polling = False
            self._idle.set()
        self.last_poll_time = datetime.now(timezone.utc)
        self.last_result = result
        return result

    async def _tick(self) -> MonitorResult:
        try:
            sessions = await self.gateway.poll_sessions()
        except TransportError as e:
            logger.warning(f"Failed to get VPN status: {e}")
            return MonitorResult(polled=False, error=str(e))

        details = await self._session_details()
        result = MonitorResult(sessions=len(sessions))
        logger.info(f"Found {len(sessions)} active VPN connection(s)")

        seen: Set[str] = set()
        for snapshot in sessions:
            seen.add(snapshot.session_address)
            await self._record_session(snapshot, details.get(snapshot.session_address), result)

        result.deactivated = await self._sweep(seen)
        if result.deactivated:
            logger.info(f"Marked {result.deactivated} device(s) inactive")
        return result

    async def _session_details(self) -> Dict[str, SessionDetail]:
        try:
            details = await self.gateway.poll_session_detail()
        except TransportError as e:
            logger.warning(f"Failed to get client details, platform info unavailable: {e}")
            return {}
        return {detail.session_address: detail for detail in details}

    async def _find_user(self, session: AsyncSession, username: str) -> Optional[User]:
        result = await session.execute(
            select(User)
            .where(
                or_(User.username == username, User.email == username),
                User.deleted_at.is_(None),
            )
            .order_by(User.id)
            .limit(1)
        )
        return result.scalars().first()

    async def _record_session(
        self,
        snapshot: ConnectionSnapshot,
        detail: Optional[SessionDetail],
        result: MonitorResult,
    ) -> None:
        address = snapshot.session_address
        platform = (detail.platform if detail else snapshot.platform) or "unknown"
        client_version = detail.client_version if detail else snapshot.client_version
        device_type = classify_device_type(platform)
        name = device_name(
            snapshot.username, device_type, address, None if platform == "unknown" else platform
        )
        now = datetime.now(timezone.utc)

        async with self.session_factory() as session:
            try:
                user = await self._find_user(session, snapshot.username)
                if user is None:
                    logger.warning(f"User not found for VPN connection: {snapshot.username}")
                    result.unmatched += 1
                    return
                user_id = user.id

                existing = (
                    await session.execute(
                        select(Device).where(Device.user_id == user_id, Device.device_id == address)
                    )
                ).scalars().first()

                if existing is not None:
                    existing.last_connected = now
                    existing.is_active = True
                    existing.device_type = device_type
                    existing.name = name
                    existing.last_ip = snapshot.client_address
                    existing.platform = platform
                    existing.client_version = client_version
                    logger.debug(f"Updated device {existing.id} for {snapshot.username} ({device_type})")
                    await session.commit()
                    result.updated += 1
                    return

                previous = (
                    await session.execute(
                        select(Device.user_id).where(
                            Device.device_id == address, Device.user_id != user_id
                        )
                    )
                ).scalars().all()
                if previous:
                    await session.execute(
                        delete(Device).where(Device.device_id == address, Device.user_id != user_id)
                    )

                session.add(Device(
                    user_id=user_id,
                    device_id=address,
                    name=name,
                    device_type=device_type,
                    platform=platform,
                    client_version=client_version,
                    last_ip=snapshot.client_address,
                    last_connected=now,
                    is_active=True,
                ))
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Error updating device for {snapshot.username}: {e}")
                result.failed += 1
                return

        for previous_user_id in previous:
            logger.info(f"VPN IP {address} reassigned from user {previous_user_id} to user {user_id}")
            audit.log_device_reassigned(address, previous_user_id, user_id)
            result.reassigned += 1
        result.created += 1
        logger.info(f"Created new device for {snapshot.username} at {address} ({device_type})")

    async def _sweep(self, seen: Set[str]) -> int:
        stmt = update(Device).where(Device.is_active.is_(True))
        if seen:
            stmt = stmt.where(Device.device_id.not_in(sorted(seen)))
        stmt = stmt.values(is_active=False).execution_options(synchronize_session=False)

        async with self.session_factory() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Error marking inactive devices: {e}")
                return 0
        return result.rowcount or 0
