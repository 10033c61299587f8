"""Access-control system gateway: contract, transports and factory."""

from .base import (
    AccountField,
    AccountProperties,
    ConnectionSnapshot,
    Gateway,
    SessionDetail,
)
from .errors import GatewayError, TransportError, UnknownPropertyError
from .exec_gateway import ExecGateway
from .memory import InMemoryGateway
from .proxy_gateway import ProxyGateway


def create_gateway(settings) -> Gateway:
    """Build the gateway selected by ``GATEWAY_TRANSPORT``."""
    transport = settings.GATEWAY_TRANSPORT
    if transport == "proxy":
        return ProxyGateway(
            base_url=settings.PROFILE_PROXY_URL,
            timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
        )
    if transport == "memory":
        return InMemoryGateway(timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS)
    return ExecGateway(
        container_name=settings.OPENVPN_CONTAINER_NAME,
        log_db_path=settings.OPENVPN_LOG_DB,
        timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
    )


__all__ = [
    "AccountField",
    "AccountProperties",
    "ConnectionSnapshot",
    "Gateway",
    "SessionDetail",
    "GatewayError",
    "TransportError",
    "UnknownPropertyError",
    "ExecGateway",
    "InMemoryGateway",
    "ProxyGateway",
    "create_gateway",
]
