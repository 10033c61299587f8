"""User-declared LAN networks routed through the VPN."""

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
from sqlalchemy.orm import relationship, validates

from database import Base
from network.validators import cidr_to_network


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LanNetwork(Base):
    """
    A network behind a user's VPN client (site-to-site style routing).

    ``network_ip`` and ``subnet_mask`` are derived from ``network_cidr`` every
    time it is assigned; they are never written on their own.
    """

    __tablename__ = "user_lan_networks"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    network_cidr = Column(String(50), nullable=False)
    network_ip = Column(String(15), nullable=False)
    subnet_mask = Column(String(15), nullable=False)
    description = Column(String(255), nullable=True)
    enabled = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=True)

    user = relationship("User", back_populates="lan_networks")

    __table_args__ = (
        UniqueConstraint("user_id", "network_cidr", name="unique_user_network"),
        Index("idx_lan_networks_enabled", "enabled"),
    )

    @validates("network_cidr")
    def _derive_address_fields(self, key, value):
        network_ip, subnet_mask = cidr_to_network(value)
        self.network_ip = network_ip
        self.subnet_mask = subnet_mask
        return value.strip()

    def __repr__(self):
        return (
            f"<LanNetwork(id={self.id}, user_id={self.user_id}, "
            f"cidr={self.network_cidr}, enabled={self.enabled})>"
        )
