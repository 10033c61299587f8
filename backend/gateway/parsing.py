"""
Parsers for access server output.

Both transports end up with the same payloads (the proxy just relays sacli's
JSON), so the decoding lives here and is shared.

Formats:
    UserPropGet   {"alice": {"type": "user_compile", "prop_email": ...}, "__DEFAULT__": {...}}
    VPNStatus     {"openvpn_0": {"client_list_header": {"Username": 9, ...},
                                 "client_list": [[...], ...]}, ...}
    client info   username|real_ip|vpn_ip|platform|gui_version|version|common_name|start_time
    ConfigQuery   {"vpn.server.routing.private_network.0": "10.77.0.0/24", ...}
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .base import (
    PROPERTY_KEYS,
    ROUTING_KEY_PREFIX,
    AccountField,
    AccountProperties,
    ConnectionSnapshot,
    SessionDetail,
)
from .errors import TransportError

logger = logging.getLogger(__name__)

CLIENT_INFO_COLUMNS = (
    "username",
    "real_ip",
    "vpn_ip",
    "platform",
    "gui_version",
    "version",
    "common_name",
    "start_time",
)


def parse_json_output(output: str, operation: str) -> Any:
    """Decode sacli JSON output; anything else is a transport failure."""
    try:
        return json.loads(output)
    except (TypeError, ValueError) as e:
        snippet = (output or "")[:200]
        raise TransportError(f"Unparseable output ({e}): {snippet!r}", operation) from e


def decode_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("true", "1", "yes")


def parse_user_properties(payload: Any) -> Dict[str, AccountProperties]:
    """Map a UserPropGet payload to typed account properties."""
    if not isinstance(payload, Mapping):
        raise TransportError(
            f"Expected an object keyed by username, got {type(payload).__name__}",
            "list_accounts",
        )
    if set(payload.keys()) == {"stdout"}:
        raise TransportError("Access server returned raw text instead of JSON", "list_accounts")

    accounts: Dict[str, AccountProperties] = {}
    for username, props in payload.items():
        # __DEFAULT__ and other reserved entries are not accounts
        if not username or username.startswith("__"):
            continue
        props = props if isinstance(props, Mapping) else {}
        if props.get("type") == "group":
            continue
        accounts[username] = AccountProperties(
            email=props.get(PROPERTY_KEYS[AccountField.EMAIL]) or None,
            display_name=props.get(PROPERTY_KEYS[AccountField.DISPLAY_NAME]) or None,
            is_superuser=decode_bool(props.get(PROPERTY_KEYS[AccountField.IS_SUPERUSER])),
        )
    return accounts


def strip_port(address: Optional[str]) -> Optional[str]:
    """``"203.0.113.7:51820"`` -> ``"203.0.113.7"``; bare addresses pass through."""
    if not address:
        return None
    address = address.strip()
    if address.startswith("[") and "]" in address:
        return address[1:address.index("]")]
    if address.count(":") == 1:
        return address.split(":", 1)[0]
    return address


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_vpn_status(payload: Any) -> List[ConnectionSnapshot]:
    """Flatten every daemon's client list from a VPNStatus payload."""
    if not isinstance(payload, Mapping):
        raise TransportError(
            f"Expected an object keyed by daemon, got {type(payload).__name__}",
            "poll_sessions",
        )
    if set(payload.keys()) == {"stdout"}:
        raise TransportError("Access server returned raw text instead of JSON", "poll_sessions")

    snapshots: List[ConnectionSnapshot] = []
    for daemon, daemon_data in payload.items():
        if not isinstance(daemon_data, Mapping):
            continue
        rows = daemon_data.get("client_list") or []
        headers = daemon_data.get("client_list_header") or {}
        if not rows:
            continue
        if not isinstance(headers, Mapping):
            logger.warning(f"Daemon {daemon}: client list has no header map, skipping")
            continue

        def column(row, name):
            index = headers.get(name)
            if index is None or index >= len(row):
                return None
            return row[index]

        for row in rows:
            username = column(row, "Username") or column(row, "Common Name")
            session_address = column(row, "Virtual Address")
            if not username or not session_address:
                logger.debug(f"Daemon {daemon}: skipping row without username/session address")
                continue
            snapshots.append(
                ConnectionSnapshot(
                    username=username,
                    session_address=session_address,
                    client_address=strip_port(column(row, "Real Address")),
                    bytes_sent=_to_int(column(row, "Bytes Sent")),
                    bytes_received=_to_int(column(row, "Bytes Received")),
                    connected_since=column(row, "Connected Since"),
                )
            )
    return snapshots


def parse_client_info(records: Iterable[Mapping[str, Any]]) -> List[SessionDetail]:
    """Client info records (proxy JSON or split log rows) to SessionDetail."""
    details: List[SessionDetail] = []
    for record in records:
        vpn_ip = (record.get("vpn_ip") or "").strip()
        if not vpn_ip:
            continue
        details.append(
            SessionDetail(
                session_address=vpn_ip,
                platform=(record.get("platform") or "unknown").strip() or "unknown",
                client_version=(record.get("gui_version") or record.get("version") or "").strip(),
            )
        )
    return details


def parse_client_info_rows(output: str) -> List[SessionDetail]:
    """Parse pipe-separated rows from the access server's session log."""
    records = []
    for line in (output or "").splitlines():
        if not line.strip():
            continue
        values = line.split("|")
        records.append(dict(zip(CLIENT_INFO_COLUMNS, values)))
    return parse_client_info(records)


def routing_slots(config: Any) -> Dict[int, str]:
    """Extract ``private_network.<n>`` slots from a ConfigQuery payload."""
    slots: Dict[int, str] = {}
    if not isinstance(config, Mapping):
        return slots
    for key, value in config.items():
        if not isinstance(key, str) or not key.startswith(ROUTING_KEY_PREFIX):
            continue
        suffix = key[len(ROUTING_KEY_PREFIX):]
        if suffix.isdigit():
            slots[int(suffix)] = value
    return slots
