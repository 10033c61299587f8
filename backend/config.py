import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


def _load_version() -> str:
    version_path = Path(__file__).resolve().parent / "VERSION"
    try:
        return version_path.read_text().strip()
    except FileNotFoundError:
        return "0.1.0"


DEFAULT_SYNC_INTERVAL_MINUTES = 15


class Settings(BaseSettings):
    """Application configuration using Pydantic settings."""

    # Database
    DATABASE_URL: str = "sqlite:///./data/portal.db"

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3002", "http://127.0.0.1:3002"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list[str] = ["*"]
    CORS_ALLOW_HEADERS: list[str] = ["*"]

    # Application
    APP_NAME: str = "VPN Access Portal"
    APP_VERSION: str = _load_version()
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # ── Access-control system gateway ──────────────────────────────────
    # "exec":   docker exec into the access server container and run sacli
    # "proxy":  HTTP calls to the host-side profile proxy
    # "memory": in-process fake, for local development
    GATEWAY_TRANSPORT: str = "exec"
    OPENVPN_CONTAINER_NAME: str = "openvpn-server"
    OPENVPN_LOG_DB: str = "/openvpn/etc/db/log.db"
    PROFILE_PROXY_URL: Optional[str] = None
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # ── Account reconciliation ─────────────────────────────────────────
    SYNC_ENABLED: bool = True
    SYNC_INTERVAL_MINUTES: int = DEFAULT_SYNC_INTERVAL_MINUTES
    SYNC_DELETE_ORPHANED: bool = False
    TEMP_PASSWORD_LENGTH: int = 16

    # ── Session monitor ────────────────────────────────────────────────
    MONITOR_ENABLED: bool = True
    MONITOR_INTERVAL_SECONDS: float = 60.0

    # ── LAN routing ────────────────────────────────────────────────────
    ROUTING_ENABLED: bool = True
    ROUTING_SYNC_INTERVAL_MINUTES: int = 30
    VPN_SUBNET: str = "10.77.0.0/24"

    # Upper bound on how long shutdown waits for in-flight runs
    SHUTDOWN_GRACE_SECONDS: float = 30.0

    @field_validator("SYNC_INTERVAL_MINUTES")
    @classmethod
    def _clamp_sync_interval(cls, value: int) -> int:
        # Out-of-range values fall back to the default instead of failing startup
        if value < 1 or value > 60:
            logging.getLogger(__name__).warning(
                f"Invalid SYNC_INTERVAL_MINUTES: {value}. "
                f"Using default: {DEFAULT_SYNC_INTERVAL_MINUTES}"
            )
            return DEFAULT_SYNC_INTERVAL_MINUTES
        return value

    @field_validator("GATEWAY_TRANSPORT")
    @classmethod
    def _check_transport(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("exec", "proxy", "memory"):
            raise ValueError("GATEWAY_TRANSPORT must be one of: exec, proxy, memory")
        return value

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
