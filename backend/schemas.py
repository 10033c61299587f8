"""
Pydantic v2 schemas for the portal's operational API.

Architecture:
  - *Fields classes: pure field definitions, no validators.  Shared by both
    input (Update) and output (Response) schemas.
  - *Update / request classes: add strict validators so bad data is rejected
    early with clear, actionable error messages.
  - *Response classes: inherit from *Fields directly (no validators) so any
    data already in the database serializes without crashing.

Device rows are written by the session monitor, which may store values the
API would not accept from a user (e.g. a platform string it has never seen).
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.device import DEVICE_TYPES

VALID_DEVICE_TYPES = frozenset(DEVICE_TYPES)


# ═══════════════════════════════════════════════════════════════════════
# ACCOUNT SYNC SCHEMAS
# ═══════════════════════════════════════════════════════════════════════

class SyncRequest(BaseModel):
    """Body of a manual reconciliation request."""

    dry_run: bool = False
    delete_orphaned: bool = False


class SchedulerControl(BaseModel):
    """Start or stop the periodic sync."""

    action: Literal["start", "stop"]


class IntervalUpdate(BaseModel):
    """New sync interval in minutes."""

    interval_minutes: int = Field(..., ge=1, le=60)


class SyncResponse(BaseModel):
    """Result of a manual sync run."""

    success: bool
    message: str
    data: Dict[str, Any]


# ═══════════════════════════════════════════════════════════════════════
# DEVICE SCHEMAS
# ═══════════════════════════════════════════════════════════════════════

class DeviceFields(BaseModel):
    """Pure field definitions for devices.  No validators."""

    name: str
    device_type: str = "desktop"


class DeviceUpdate(BaseModel):
    """Schema for renaming or retyping a device (all fields optional)."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    device_type: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        stripped = v.strip()
        if not stripped:
            raise ValueError("Device name cannot be blank")
        return stripped

    @field_validator("device_type")
    @classmethod
    def validate_device_type(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        lower = v.lower()
        if lower not in VALID_DEVICE_TYPES:
            raise ValueError(
                f"Invalid device type '{v}'. "
                f"Allowed values: {', '.join(sorted(VALID_DEVICE_TYPES))}"
            )
        return lower


class DeviceResponse(DeviceFields):
    """Schema for device responses, no validators."""

    id: int
    user_id: int
    device_id: str
    platform: Optional[str] = None
    client_version: Optional[str] = None
    last_ip: Optional[str] = None
    last_connected: Optional[datetime] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ═══════════════════════════════════════════════════════════════════════
# ROUTING SCHEMAS
# ═══════════════════════════════════════════════════════════════════════

class RouteDirectiveResponse(BaseModel):
    network_cidr: str
    network_ip: str
    subnet_mask: str
    description: Optional[str] = None
    directive: str


class ClientRoutingResponse(BaseModel):
    """Per-connection routing for one client."""

    username: str
    directives: List[RouteDirectiveResponse]
    config: str


# ═══════════════════════════════════════════════════════════════════════
# PAGINATION SCHEMAS
# ═══════════════════════════════════════════════════════════════════════

class PaginatedResponse(BaseModel):
    """Generic paginated response."""

    total: int
    skip: int
    limit: int
    items: List
