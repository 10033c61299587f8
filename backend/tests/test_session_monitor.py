"""
Tests for the session monitor.

Covers:
- Device creation and refresh from live sessions
- Matching a session to a user by username or email
- Session address reassignment between users
- Deactivation sweep (including the empty snapshot case)
- Poll failures leave the inventory untouched
- Platform classification and device naming
"""

import asyncio

import pytest
from sqlalchemy import select

from gateway import ConnectionSnapshot, InMemoryGateway, SessionDetail, TransportError
from models import Device
from services.session_monitor import SessionMonitor, classify_device_type, device_name


@pytest.fixture
def monitor(gateway, session_factory):
    return SessionMonitor(gateway, session_factory, interval_seconds=60)


async def all_devices(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(Device).order_by(Device.id))
        return result.scalars().all()


def snapshot(username, address, client_address="203.0.113.7"):
    return ConnectionSnapshot(
        username=username, session_address=address, client_address=client_address
    )


class TestClassification:
    @pytest.mark.parametrize(
        "platform, expected",
        [
            ("android", "mobile"),
            ("iOS", "mobile"),
            ("iphone", "mobile"),
            ("ipad", "tablet"),
            ("mac", "laptop"),
            ("win", "desktop"),
            ("linux", "desktop"),
            ("unknown", "desktop"),
            (None, "desktop"),
        ],
    )
    def test_classify_device_type(self, platform, expected):
        assert classify_device_type(platform) == expected

    def test_device_name(self):
        assert device_name("alice", "laptop", "10.8.0.5", "mac") == "alice's laptop - mac (10.8.0.5)"
        assert device_name("alice", "desktop", "10.8.0.5") == "alice's desktop (10.8.0.5)"


class TestTick:
    """One monitoring cycle."""

    @pytest.mark.asyncio
    async def test_creates_device_for_new_session(
        self, monitor, gateway, session_factory, make_user
    ):
        user = await make_user("alice")
        gateway.sessions = [snapshot("alice", "10.8.0.5")]
        gateway.session_details = [
            SessionDetail(session_address="10.8.0.5", platform="mac", client_version="3.4")
        ]

        result = await monitor.tick()

        assert result.polled is True
        assert result.created == 1
        devices = await all_devices(session_factory)
        assert len(devices) == 1
        device = devices[0]
        assert device.user_id == user.id
        assert device.device_id == "10.8.0.5"
        assert device.device_type == "laptop"
        assert device.platform == "mac"
        assert device.client_version == "3.4"
        assert device.last_ip == "203.0.113.7"
        assert device.name == "alice's laptop - mac (10.8.0.5)"
        assert device.is_active is True

    @pytest.mark.asyncio
    async def test_refreshes_existing_device(
        self, monitor, gateway, session_factory, make_user, make_device
    ):
        user = await make_user("alice")
        await make_device(user.id, "10.8.0.5", name="old", device_type="desktop", is_active=False)
        gateway.sessions = [snapshot("alice", "10.8.0.5", client_address="198.51.100.9")]
        gateway.session_details = [SessionDetail(session_address="10.8.0.5", platform="android")]

        result = await monitor.tick()

        assert result.updated == 1
        assert result.created == 0
        devices = await all_devices(session_factory)
        assert len(devices) == 1
        assert devices[0].is_active is True
        assert devices[0].device_type == "mobile"
        assert devices[0].last_ip == "198.51.100.9"

    @pytest.mark.asyncio
    async def test_matches_user_by_email(self, monitor, gateway, session_factory, make_user):
        user = await make_user("bob", email="bob@example.com")
        gateway.sessions = [snapshot("bob@example.com", "10.8.0.6")]

        result = await monitor.tick()

        assert result.created == 1
        devices = await all_devices(session_factory)
        assert devices[0].user_id == user.id

    @pytest.mark.asyncio
    async def test_unknown_user_is_ignored(self, monitor, gateway, session_factory):
        gateway.sessions = [snapshot("mallory", "10.8.0.7")]

        result = await monitor.tick()

        assert result.unmatched == 1
        assert await all_devices(session_factory) == []

    @pytest.mark.asyncio
    async def test_deleted_user_is_not_matched(
        self, monitor, gateway, session_factory, make_user
    ):
        await make_user("erin", deleted=True)
        gateway.sessions = [snapshot("erin", "10.8.0.8")]

        result = await monitor.tick()

        assert result.unmatched == 1
        assert await all_devices(session_factory) == []

    @pytest.mark.asyncio
    async def test_address_reassigned_to_new_user(
        self, monitor, gateway, session_factory, make_user, make_device
    ):
        alice = await make_user("alice")
        bob = await make_user("bob")
        await make_device(alice.id, "10.8.0.5")
        gateway.sessions = [snapshot("bob", "10.8.0.5")]

        result = await monitor.tick()

        assert result.created == 1
        assert result.reassigned == 1
        devices = await all_devices(session_factory)
        assert [(d.user_id, d.device_id) for d in devices] == [(bob.id, "10.8.0.5")]

    @pytest.mark.asyncio
    async def test_shared_public_address_gives_distinct_devices(
        self, monitor, gateway, session_factory, make_user
    ):
        await make_user("alice")
        gateway.sessions = [
            snapshot("alice", "10.8.0.5", client_address="203.0.113.7"),
            snapshot("alice", "10.8.0.6", client_address="203.0.113.7"),
        ]

        result = await monitor.tick()

        assert result.created == 2
        devices = await all_devices(session_factory)
        assert sorted(d.device_id for d in devices) == ["10.8.0.5", "10.8.0.6"]

    @pytest.mark.asyncio
    async def test_sweep_deactivates_unseen_devices(
        self, monitor, gateway, session_factory, make_user, make_device
    ):
        user = await make_user("alice")
        await make_device(user.id, "10.8.0.5")
        await make_device(user.id, "10.8.0.9")
        gateway.sessions = [snapshot("alice", "10.8.0.5")]

        result = await monitor.tick()

        assert result.deactivated == 1
        devices = {d.device_id: d.is_active for d in await all_devices(session_factory)}
        assert devices == {"10.8.0.5": True, "10.8.0.9": False}

    @pytest.mark.asyncio
    async def test_empty_snapshot_deactivates_everything(
        self, monitor, gateway, session_factory, make_user, make_device
    ):
        user = await make_user("alice")
        await make_device(user.id, "10.8.0.5")
        await make_device(user.id, "10.8.0.6")

        result = await monitor.tick()

        assert result.polled is True
        assert result.deactivated == 2
        assert all(not d.is_active for d in await all_devices(session_factory))

    @pytest.mark.asyncio
    async def test_poll_failure_leaves_devices_untouched(
        self, monitor, gateway, session_factory, make_user, make_device
    ):
        user = await make_user("alice")
        await make_device(user.id, "10.8.0.5")
        gateway.fail_on("poll_sessions")

        result = await monitor.tick()

        assert result.polled is False
        assert result.error
        assert all(d.is_active for d in await all_devices(session_factory))
        assert monitor.get_status()["last_result"]["polled"] is False

    @pytest.mark.asyncio
    async def test_detail_failure_falls_back_to_unknown_platform(
        self, monitor, gateway, session_factory, make_user
    ):
        await make_user("alice")
        gateway.sessions = [snapshot("alice", "10.8.0.5")]
        gateway.fail_on("poll_session_detail")

        result = await monitor.tick()

        assert result.created == 1
        device = (await all_devices(session_factory))[0]
        assert device.platform == "unknown"
        assert device.device_type == "desktop"
        assert device.name == "alice's desktop (10.8.0.5)"


class BlockingGateway(InMemoryGateway):
    """Holds poll_sessions until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def poll_sessions(self):
        await self.release.wait()
        return await super().poll_sessions()


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, session_factory):
        gateway = BlockingGateway()
        monitor = SessionMonitor(gateway, session_factory)

        first = asyncio.create_task(monitor.tick())
        await asyncio.sleep(0.01)
        assert monitor.is_polling is True

        second = await monitor.tick()
        assert second.skipped is True
        assert second.polled is False

        gateway.release.set()
        result = await first
        assert result.polled is True
        assert monitor.is_polling is False
        assert [c for c in gateway.calls if c[0] == "poll_sessions"] == [("poll_sessions", None)]

    @pytest.mark.asyncio
    async def test_start_runs_first_tick_immediately(self, monitor, gateway):
        assert monitor.start() is True
        assert monitor.start() is False
        await asyncio.sleep(0.05)
        assert ("poll_sessions", None) in gateway.calls
        assert monitor.get_status()["is_running"] is True
        assert await monitor.shutdown(1.0) is True
        assert monitor.is_running is False

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_manual_tick(self, session_factory):
        gateway = BlockingGateway()
        monitor = SessionMonitor(gateway, session_factory)
        manual = asyncio.create_task(monitor.tick())
        await asyncio.sleep(0.01)
        assert monitor.is_polling is True

        assert await monitor.shutdown(0.05) is False

        gateway.release.set()
        assert await monitor.shutdown(1.0) is True
        assert monitor.is_polling is False
        assert (await manual).polled is True

    @pytest.mark.asyncio
    async def test_wait_idle_when_nothing_in_flight(self, monitor):
        assert await monitor.wait_idle(0.01) is True
