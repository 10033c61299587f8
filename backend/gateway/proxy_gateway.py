"""
Gateway that talks to the host-side profile proxy over HTTP.

The proxy relays a fixed set of sacli operations for deployments where the
backend container has no access to the Docker socket.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .base import (
    AccountProperties,
    ConnectionSnapshot,
    Gateway,
    SessionDetail,
)
from .errors import TransportError
from .parsing import parse_client_info, parse_user_properties, parse_vpn_status

logger = logging.getLogger(__name__)

DEFAULT_PROXY_URL = "http://host.docker.internal:3001"


class ProxyGateway(Gateway):
    """httpx-based client for the profile proxy."""

    transport = "proxy"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout_seconds=timeout_seconds)
        self.base_url = (base_url or DEFAULT_PROXY_URL).rstrip("/")
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        logger.debug(f"Proxy {method} {path}")
        try:
            resp = await self.client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"Profile proxy unreachable: {e}", operation) from e

        if resp.status_code >= 400:
            raise TransportError(
                f"Profile proxy returned status {resp.status_code}: {resp.text[:300]}",
                operation,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(f"Profile proxy returned non-JSON body: {resp.text[:200]!r}", operation) from e

    @staticmethod
    def _user_path(username: str, action: str) -> str:
        return f"/sacli/user/{quote(username, safe='')}/{action}"

    # ── Accounts ──────────────────────────────────────────────────────

    async def list_accounts(self) -> Dict[str, AccountProperties]:
        payload = await self._request("list_accounts", "GET", "/sacli/userpropget")
        return parse_user_properties(payload)

    async def _set_password(self, username: str, password: str) -> None:
        await self._request(
            "set_password", "POST", self._user_path(username, "setpassword"), {"password": password}
        )

    async def _put_property(self, username: str, wire_key: str, wire_value: str) -> None:
        await self._request(
            "set_property",
            "POST",
            self._user_path(username, "prop"),
            {"key": wire_key, "value": wire_value},
        )

    async def _delete_account(self, username: str) -> None:
        await self._request("delete_account", "POST", self._user_path(username, "delall"))

    # ── Sessions ──────────────────────────────────────────────────────

    async def poll_sessions(self) -> List[ConnectionSnapshot]:
        payload = await self._request("poll_sessions", "GET", "/sacli/vpnstatus")
        return parse_vpn_status(payload)

    async def poll_session_detail(self) -> List[SessionDetail]:
        payload = await self._request("poll_session_detail", "GET", "/sacli/clientinfo")
        if not isinstance(payload, list):
            raise TransportError(
                f"Expected a list of sessions, got {type(payload).__name__}", "poll_session_detail"
            )
        return parse_client_info(item for item in payload if isinstance(item, dict))

    # ── Routing ───────────────────────────────────────────────────────

    async def _write_routing_table(self, ordered_cidrs: List[str]) -> None:
        await self._request(
            "push_routing_table", "POST", "/sacli/routing", {"networks": ordered_cidrs}
        )

    async def _apply(self) -> None:
        await self._request("apply_routing_changes", "POST", "/sacli/start")

    async def enable_nat_routing(self) -> None:
        for key, value in (
            ("vpn.server.routing.private_access", "nat"),
            ("vpn.client.routing.inter_client", "true"),
        ):
            await self._request("config_put", "POST", "/sacli/config", {"key": key, "value": value})

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def describe(self) -> Dict[str, object]:
        info = super().describe()
        info["proxy_url"] = self.base_url
        return info
