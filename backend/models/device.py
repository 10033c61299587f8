"""
Device model for VPN client inventory.

A Device is one VPN session endpoint of a user. It is keyed by the session
address the access server assigns (the "virtual address"), not by the client's
public address: several clients behind the same NAT share a public address
but always get distinct session addresses.

Rows are created and refreshed only by the session monitor; the device API can
rename or retype them.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base

DEVICE_TYPES = ("desktop", "laptop", "tablet", "mobile")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Device(Base):
    """SQLAlchemy model for a VPN client device."""

    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Session address assigned by the access server, e.g. "10.8.0.5"
    device_id = Column(String(64), nullable=False)

    name = Column(String(255), nullable=False)
    device_type = Column(String(20), nullable=False, default="desktop")
    platform = Column(String(100), nullable=True)  # as reported by the client, e.g. "win"
    client_version = Column(String(100), nullable=True)

    # Client's public address from the last session
    last_ip = Column(String(45), nullable=True)
    last_connected = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    user = relationship("User", back_populates="devices")

    __table_args__ = (
        UniqueConstraint("user_id", "device_id", name="unique_user_device"),
        Index("idx_device_device_id", "device_id"),
        Index("idx_device_is_active", "is_active"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "name": self.name,
            "device_type": self.device_type,
            "platform": self.platform,
            "client_version": self.client_version,
            "last_ip": self.last_ip,
            "last_connected": self.last_connected.isoformat() if self.last_connected else None,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return (
            f"<Device(id={self.id}, user_id={self.user_id}, "
            f"device_id={self.device_id}, type={self.device_type}, active={self.is_active})>"
        )
