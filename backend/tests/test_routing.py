"""
Tests for LAN routing.

Covers:
- CIDR parsing (host bits masked, invalid input rejected)
- LanNetwork derived columns
- Per-connection directives and the client config block
- Routing table compilation (slot 0, de-duplication, disabled networks)
- Server-wide sync: unchanged skip, force, push failure never applies
"""

import pytest

from gateway import TransportError
from models import LanNetwork
from network.validators import cidr_to_network, is_valid_cidr, normalize_cidr
from services.routing import RouteDirective, RoutingCompiler


VPN_SUBNET = "10.77.0.0/24"


@pytest.fixture
def routing(gateway, session_factory):
    return RoutingCompiler(gateway, session_factory, vpn_subnet=VPN_SUBNET)


class TestCidr:
    @pytest.mark.parametrize(
        "cidr, expected",
        [
            ("10.0.0.0/8", ("10.0.0.0", "255.0.0.0")),
            ("192.168.1.0/24", ("192.168.1.0", "255.255.255.0")),
            ("172.16.5.0/30", ("172.16.5.0", "255.255.255.252")),
            ("192.168.1.7/24", ("192.168.1.0", "255.255.255.0")),
            (" 10.1.0.0/16 ", ("10.1.0.0", "255.255.0.0")),
        ],
    )
    def test_cidr_to_network(self, cidr, expected):
        assert cidr_to_network(cidr) == expected

    @pytest.mark.parametrize(
        "cidr",
        ["192.168.1.0", "192.168.1.0/33", "300.1.1.1/24", "not-a-cidr", "", None, "2001:db8::/32"],
    )
    def test_invalid_cidr(self, cidr):
        assert is_valid_cidr(cidr) is False
        with pytest.raises(ValueError):
            cidr_to_network(cidr)

    def test_normalize_cidr(self):
        assert normalize_cidr("192.168.1.7/24") == "192.168.1.0/24"
        assert normalize_cidr(" 10.0.0.0/8") == "10.0.0.0/8"

    @pytest.mark.parametrize(
        "cidr, expected",
        [
            ("10.1.0.0/255.255.0.0", "10.1.0.0/16"),
            ("192.168.1.7/255.255.255.0", "192.168.1.0/24"),
            ("172.16.5.0/255.255.255.252", "172.16.5.0/30"),
        ],
    )
    def test_normalize_netmask_form(self, cidr, expected):
        assert normalize_cidr(cidr) == expected

    def test_normalize_rejects_invalid(self):
        with pytest.raises(ValueError):
            normalize_cidr("10.1.0.0")

    def test_lan_network_derives_address_fields(self):
        network = LanNetwork(user_id=1, network_cidr="172.16.5.1/30")
        assert network.network_ip == "172.16.5.0"
        assert network.subnet_mask == "255.255.255.252"

        network.network_cidr = "10.0.0.0/8"
        assert network.network_ip == "10.0.0.0"
        assert network.subnet_mask == "255.0.0.0"

    def test_lan_network_rejects_invalid_cidr(self):
        with pytest.raises(ValueError):
            LanNetwork(user_id=1, network_cidr="192.168.1.0")


class TestDirectives:
    """Per-connection iroute directives."""

    @pytest.mark.asyncio
    async def test_directives_for_user(self, routing, make_user, make_network):
        user = await make_user("alice")
        await make_network(user.id, "192.168.1.0/24", description="Home")
        await make_network(user.id, "10.10.0.0/16")
        await make_network(user.id, "172.16.0.0/12", enabled=False)

        directives = await routing.per_connection_directives("alice")

        assert [d.render() for d in directives] == [
            "iroute 192.168.1.0 255.255.255.0",
            "iroute 10.10.0.0 255.255.0.0",
        ]
        assert directives[0].description == "Home"

    @pytest.mark.asyncio
    async def test_lookup_by_email(self, routing, make_user, make_network):
        user = await make_user("alice", email="alice@corp.example")
        await make_network(user.id, "192.168.1.0/24")

        directives = await routing.per_connection_directives("alice@corp.example")

        assert len(directives) == 1

    @pytest.mark.asyncio
    async def test_unknown_user_has_no_directives(self, routing):
        assert await routing.per_connection_directives("nobody") == []
        assert await routing.render_client_config("nobody") == ""

    @pytest.mark.asyncio
    async def test_render_client_config(self, routing, make_user, make_network):
        user = await make_user("alice")
        await make_network(user.id, "192.168.1.0/24", description="Home")
        await make_network(user.id, "10.10.0.0/16")

        config = await routing.render_client_config("alice")
        lines = config.split("\n")

        assert lines[0] == "# LAN Network Routes for alice"
        assert lines[1].startswith("# Generated at ")
        assert lines[2:] == [
            "",
            "# 192.168.1.0/24 - Home",
            "iroute 192.168.1.0 255.255.255.0",
            "# 10.10.0.0/16",
            "iroute 10.10.0.0 255.255.0.0",
            "",
            "# Total networks: 2",
        ]

    def test_directive_to_dict(self):
        directive = RouteDirective("10.0.0.0/8", "10.0.0.0", "255.0.0.0", "Lab")
        assert directive.to_dict()["directive"] == "iroute 10.0.0.0 255.0.0.0"


class TestRoutingTable:
    @pytest.mark.asyncio
    async def test_vpn_subnet_is_slot_zero(self, routing):
        assert await routing.compute_table() == [VPN_SUBNET]

    @pytest.mark.asyncio
    async def test_table_deduplicates_across_users(self, routing, make_user, make_network):
        alice = await make_user("alice")
        bob = await make_user("bob")
        await make_network(alice.id, "192.168.1.0/24")
        await make_network(bob.id, "192.168.1.7/24")
        await make_network(bob.id, "10.10.0.0/16")
        await make_network(alice.id, "172.16.0.0/12", enabled=False)

        table = await routing.compute_table()

        assert table == [VPN_SUBNET, "192.168.1.0/24", "10.10.0.0/16"]

    @pytest.mark.asyncio
    async def test_network_equal_to_vpn_subnet_not_repeated(self, routing, make_user, make_network):
        user = await make_user("alice")
        await make_network(user.id, "10.77.0.0/24")

        assert await routing.compute_table() == [VPN_SUBNET]

    @pytest.mark.asyncio
    async def test_netmask_form_deduplicates_with_prefix_form(self, routing, make_user, make_network):
        alice = await make_user("alice")
        bob = await make_user("bob")
        await make_network(alice.id, "10.1.0.0/255.255.0.0")
        await make_network(bob.id, "10.1.0.0/16")

        assert await routing.compute_table() == [VPN_SUBNET, "10.1.0.0/16"]


class TestServerWideSync:
    """Push + apply."""

    @pytest.mark.asyncio
    async def test_push_then_apply(self, routing, gateway, make_user, make_network):
        user = await make_user("alice")
        await make_network(user.id, "192.168.1.0/24")

        result = await routing.server_wide_sync()

        assert result.applied is True
        assert gateway.routing_table == [VPN_SUBNET, "192.168.1.0/24"]
        assert gateway.mutation_calls == [
            ("push_routing_table", None),
            ("apply_routing_changes", None),
        ]
        assert routing.get_status()["last_applied"] == [VPN_SUBNET, "192.168.1.0/24"]

    @pytest.mark.asyncio
    async def test_netmask_form_network_is_applied(self, routing, gateway, make_user, make_network):
        user = await make_user("alice")
        await make_network(user.id, "10.1.0.0/255.255.0.0")

        result = await routing.server_wide_sync()

        assert result.applied is True
        assert gateway.routing_table == [VPN_SUBNET, "10.1.0.0/16"]

    @pytest.mark.asyncio
    async def test_unchanged_table_skips_reload(self, routing, gateway):
        await routing.server_wide_sync()
        gateway.calls.clear()

        result = await routing.server_wide_sync()

        assert result.applied is False
        assert result.reason == "unchanged"
        assert gateway.mutation_calls == []
        assert gateway.apply_count == 1

    @pytest.mark.asyncio
    async def test_force_reapplies(self, routing, gateway):
        await routing.server_wide_sync()
        result = await routing.server_wide_sync(force=True)

        assert result.applied is True
        assert gateway.apply_count == 2

    @pytest.mark.asyncio
    async def test_change_is_applied(self, routing, gateway, make_user, make_network):
        await routing.server_wide_sync()
        user = await make_user("alice")
        await make_network(user.id, "10.10.0.0/16")

        result = await routing.server_wide_sync()

        assert result.applied is True
        assert gateway.routing_table == [VPN_SUBNET, "10.10.0.0/16"]

    @pytest.mark.asyncio
    async def test_push_failure_never_applies(self, routing, gateway):
        gateway.fail_on("push_routing_table")

        with pytest.raises(TransportError):
            await routing.server_wide_sync()

        assert gateway.apply_count == 0
        assert ("apply_routing_changes", None) not in gateway.calls
        status = routing.get_status()
        assert status["last_applied"] is None
        assert status["last_error"]

    @pytest.mark.asyncio
    async def test_apply_failure_forces_next_sync(self, routing, gateway):
        await routing.server_wide_sync()
        gateway.fail_on("apply_routing_changes")
        with pytest.raises(TransportError):
            await routing.server_wide_sync(force=True)

        gateway.clear_failures()
        result = await routing.server_wide_sync()
        assert result.applied is True

    @pytest.mark.asyncio
    async def test_initialize_enables_nat_and_applies(self, routing, gateway):
        result = await routing.initialize()

        assert result.applied is True
        assert gateway.nat_enabled is True
        assert gateway.mutation_calls[0] == ("enable_nat_routing", None)
        assert gateway.apply_count == 1

    @pytest.mark.asyncio
    async def test_periodic_ticker_lifecycle(self, routing):
        assert routing.is_running is False
        assert routing.start(5) is True
        assert routing.is_running is True
        assert routing.start(5) is False
        assert await routing.shutdown(1.0) is True
        assert routing.is_running is False
