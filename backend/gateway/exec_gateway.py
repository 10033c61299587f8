"""
Gateway that drives the access server's ``sacli`` tool via ``docker exec``.

Commands are built as argument lists and never go through a shell, so
usernames, property values and passwords cannot break out of their argument.
"""

import asyncio
import logging
from typing import Dict, List, Sequence

from .base import (
    ROUTING_KEY_PREFIX,
    AccountProperties,
    ConnectionSnapshot,
    Gateway,
    SessionDetail,
)
from .errors import TransportError
from .parsing import (
    parse_client_info_rows,
    parse_json_output,
    parse_user_properties,
    parse_vpn_status,
    routing_slots,
)

logger = logging.getLogger(__name__)

_ACTIVE_SESSIONS_QUERY = (
    "SELECT username, real_ip, vpn_ip, platform, gui_version, version, "
    "common_name, start_time FROM log WHERE active=1;"
)

# Arguments whose following value must never reach the logs
_SECRET_FLAGS = {"--new_pass"}


def _redact(args: Sequence[str]) -> List[str]:
    redacted = []
    hide_next = False
    for arg in args:
        redacted.append("********" if hide_next else arg)
        hide_next = arg in _SECRET_FLAGS
    return redacted


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill a child that is still running and reap it."""
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()


class ExecGateway(Gateway):
    """Runs sacli inside the access server container."""

    transport = "exec"

    def __init__(
        self,
        container_name: str,
        log_db_path: str = "/openvpn/etc/db/log.db",
        timeout_seconds: float = 10.0,
        docker_binary: str = "docker",
    ):
        super().__init__(timeout_seconds=timeout_seconds)
        self.container_name = container_name
        self.log_db_path = log_db_path
        self.docker_binary = docker_binary

    async def _exec(self, operation: str, *args: str) -> str:
        cmd = [self.docker_binary, "exec", self.container_name, *args]
        logger.debug(f"Executing: {' '.join(_redact(cmd))}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TransportError(f"Failed to start {self.docker_binary}: {e}", operation) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            await _kill(proc)
            raise TransportError(
                f"Timed out after {self.timeout_seconds:.0f}s", operation
            ) from e
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or stdout.decode(
                "utf-8", errors="replace"
            ).strip()
            raise TransportError(
                f"Exited with status {proc.returncode}: {message[:300]}", operation
            )

        err_text = stderr.decode("utf-8", errors="replace").strip()
        if err_text:
            logger.debug(f"{operation} stderr: {err_text[:300]}")
        return stdout.decode("utf-8", errors="replace").strip()

    async def _sacli(self, operation: str, *args: str) -> str:
        return await self._exec(operation, "sacli", *args)

    # ── Accounts ──────────────────────────────────────────────────────

    async def list_accounts(self) -> Dict[str, AccountProperties]:
        output = await self._sacli("list_accounts", "UserPropGet")
        return parse_user_properties(parse_json_output(output, "list_accounts"))

    async def _set_password(self, username: str, password: str) -> None:
        await self._sacli(
            "set_password", "--user", username, "--new_pass", password, "SetLocalPassword"
        )

    async def _put_property(self, username: str, wire_key: str, wire_value: str) -> None:
        await self._sacli(
            "set_property",
            "--user", username,
            "--key", wire_key,
            "--value", wire_value,
            "UserPropPut",
        )

    async def _delete_account(self, username: str) -> None:
        await self._sacli("delete_account", "--user", username, "UserPropDelAll")

    # ── Sessions ──────────────────────────────────────────────────────

    async def poll_sessions(self) -> List[ConnectionSnapshot]:
        output = await self._sacli("poll_sessions", "VPNStatus")
        return parse_vpn_status(parse_json_output(output, "poll_sessions"))

    async def poll_session_detail(self) -> List[SessionDetail]:
        output = await self._exec(
            "poll_session_detail", "sqlite3", self.log_db_path, _ACTIVE_SESSIONS_QUERY
        )
        return parse_client_info_rows(output)

    # ── Routing ───────────────────────────────────────────────────────

    async def _config_put(self, key: str, value: str) -> None:
        await self._sacli("config_put", "--key", key, "--value", value, "ConfigPut")

    async def _write_routing_table(self, ordered_cidrs: List[str]) -> None:
        current = routing_slots(
            parse_json_output(await self._sacli("config_query", "ConfigQuery"), "config_query")
        )

        for index, cidr in enumerate(ordered_cidrs):
            key = f"{ROUTING_KEY_PREFIX}{index}"
            if current.get(index) == cidr:
                continue
            logger.info(f"Setting {key} = {cidr}")
            await self._config_put(key, cidr)

        for index in sorted(i for i in current if i >= len(ordered_cidrs)):
            key = f"{ROUTING_KEY_PREFIX}{index}"
            logger.info(f"Removing stale routing slot {key} ({current[index]})")
            await self._sacli("config_del", "--key", key, "ConfigDel")

    async def _apply(self) -> None:
        await self._sacli("apply_routing_changes", "start")

    async def enable_nat_routing(self) -> None:
        await self._config_put("vpn.server.routing.private_access", "nat")
        await self._config_put("vpn.client.routing.inter_client", "true")

    def describe(self) -> Dict[str, object]:
        info = super().describe()
        info["container"] = self.container_name
        return info
