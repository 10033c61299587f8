"""
Tests for decoding access server output and for the property contract.

Covers:
- UserPropGet payloads (reserved entries, groups, boolean decoding)
- VPNStatus client lists (header lookup, port stripping, incomplete rows)
- Client info rows from the session log
- ConfigQuery routing slots
- AccountField coercion and encoding
"""

import pytest

from gateway import AccountField, AccountProperties, TransportError, UnknownPropertyError
from gateway.base import coerce_field, encode_property
from gateway.parsing import (
    parse_client_info,
    parse_client_info_rows,
    parse_json_output,
    parse_user_properties,
    parse_vpn_status,
    routing_slots,
    strip_port,
)


VPN_STATUS = {
    "openvpn_0": {
        "client_list_header": {
            "Common Name": 0,
            "Real Address": 1,
            "Bytes Received": 2,
            "Bytes Sent": 3,
            "Connected Since": 4,
            "Virtual Address": 5,
            "Username": 6,
        },
        "client_list": [
            ["alice", "203.0.113.7:51820", "1024", "2048", "2024-01-01 10:00:00", "10.77.0.5", "alice"],
            ["bob", "203.0.113.7:51821", "0", "12", "2024-01-01 10:05:00", "10.77.0.6", "bob@example.com"],
        ],
    },
    "openvpn_1": {
        "client_list_header": {"Common Name": 0, "Real Address": 1, "Virtual Address": 2},
        "client_list": [
            ["carol", "198.51.100.2:1194", "10.77.0.130"],
            ["", "198.51.100.3:1194", ""],
        ],
    },
}


class TestUserProperties:
    """UserPropGet payload decoding."""

    def test_parses_accounts_and_skips_reserved_entries(self):
        payload = {
            "__DEFAULT__": {"type": "user_default", "prop_autologin": "true"},
            "alice": {
                "type": "user_compile",
                "prop_email": "alice@example.com",
                "prop_c_name": "Alice",
                "prop_superuser": "true",
            },
            "ops": {"type": "group", "prop_superuser": "true"},
            "bob": {"type": "user_compile"},
        }
        accounts = parse_user_properties(payload)
        assert set(accounts) == {"alice", "bob"}
        assert accounts["alice"] == AccountProperties(
            email="alice@example.com", display_name="Alice", is_superuser=True
        )
        assert accounts["bob"] == AccountProperties()

    def test_superuser_false_values(self):
        payload = {"a": {"prop_superuser": "false"}, "b": {"prop_superuser": ""}}
        accounts = parse_user_properties(payload)
        assert accounts["a"].is_superuser is False
        assert accounts["b"].is_superuser is False

    def test_raw_text_payload_is_transport_error(self):
        with pytest.raises(TransportError):
            parse_user_properties({"stdout": "some text"})

    def test_non_object_payload_is_transport_error(self):
        with pytest.raises(TransportError):
            parse_user_properties(["alice"])

    def test_invalid_json_is_transport_error(self):
        with pytest.raises(TransportError) as exc_info:
            parse_json_output("not json", "list_accounts")
        assert exc_info.value.operation == "list_accounts"


class TestVpnStatus:
    """VPNStatus client list decoding."""

    def test_flattens_all_daemons(self):
        snapshots = parse_vpn_status(VPN_STATUS)
        assert [s.session_address for s in snapshots] == ["10.77.0.5", "10.77.0.6", "10.77.0.130"]

    def test_columns_come_from_header(self):
        alice = parse_vpn_status(VPN_STATUS)[0]
        assert alice.username == "alice"
        assert alice.client_address == "203.0.113.7"
        assert alice.bytes_received == 1024
        assert alice.bytes_sent == 2048
        assert alice.connected_since == "2024-01-01 10:00:00"

    def test_username_falls_back_to_common_name(self):
        carol = parse_vpn_status(VPN_STATUS)[2]
        assert carol.username == "carol"
        assert carol.bytes_sent == 0

    def test_shared_client_address_keeps_distinct_sessions(self):
        snapshots = parse_vpn_status(VPN_STATUS)
        assert snapshots[0].client_address == snapshots[1].client_address
        assert snapshots[0].session_address != snapshots[1].session_address

    def test_empty_status(self):
        assert parse_vpn_status({"openvpn_0": {"client_list": [], "client_list_header": {}}}) == []

    @pytest.mark.parametrize(
        "address, expected",
        [
            ("203.0.113.7:51820", "203.0.113.7"),
            ("203.0.113.7", "203.0.113.7"),
            ("[2001:db8::1]:1194", "2001:db8::1"),
            ("2001:db8::1", "2001:db8::1"),
            ("", None),
            (None, None),
        ],
    )
    def test_strip_port(self, address, expected):
        assert strip_port(address) == expected


class TestClientInfo:
    """Session log rows and proxy client info."""

    def test_rows_from_session_log(self):
        output = (
            "alice|203.0.113.7|10.77.0.5|android|3.3.2|2.5.1|alice|1700000000\n"
            "\n"
            "bob|203.0.113.8|10.77.0.6||||bob|1700000100\n"
        )
        details = parse_client_info_rows(output)
        assert len(details) == 2
        assert details[0].session_address == "10.77.0.5"
        assert details[0].platform == "android"
        assert details[0].client_version == "3.3.2"
        assert details[1].platform == "unknown"
        assert details[1].client_version == ""

    def test_records_without_session_address_are_dropped(self):
        details = parse_client_info([{"platform": "win"}, {"vpn_ip": "10.77.0.9", "version": "2.6"}])
        assert len(details) == 1
        assert details[0].client_version == "2.6"


class TestRoutingSlots:
    def test_extracts_numbered_slots_only(self):
        config = {
            "vpn.server.routing.private_network.0": "10.77.0.0/24",
            "vpn.server.routing.private_network.3": "192.168.1.0/24",
            "vpn.server.routing.private_network.foo": "ignored",
            "vpn.server.routing.private_access": "nat",
        }
        assert routing_slots(config) == {0: "10.77.0.0/24", 3: "192.168.1.0/24"}

    def test_non_object_config(self):
        assert routing_slots(None) == {}


class TestPropertyContract:
    """Typed property keys at the gateway boundary."""

    @pytest.mark.parametrize(
        "key, expected",
        [
            (AccountField.EMAIL, AccountField.EMAIL),
            ("display_name", AccountField.DISPLAY_NAME),
            ("prop_superuser", AccountField.IS_SUPERUSER),
        ],
    )
    def test_coerce_known_keys(self, key, expected):
        assert coerce_field(key) is expected

    @pytest.mark.parametrize("key", ["prop_autologin", "password", ""])
    def test_unknown_keys_rejected(self, key):
        with pytest.raises(UnknownPropertyError):
            coerce_field(key)

    def test_unknown_property_is_value_error(self):
        assert issubclass(UnknownPropertyError, ValueError)

    def test_encode_values(self):
        assert encode_property(AccountField.IS_SUPERUSER, True) == "true"
        assert encode_property(AccountField.IS_SUPERUSER, False) == "false"
        assert encode_property(AccountField.DISPLAY_NAME, None) == ""
        assert encode_property(AccountField.EMAIL, "a@b.c") == "a@b.c"

    def test_superuser_requires_bool(self):
        with pytest.raises(UnknownPropertyError):
            encode_property(AccountField.IS_SUPERUSER, "yes")
