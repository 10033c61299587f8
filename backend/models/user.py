"""User model: the authoritative account table."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from database import Base


class User(Base):
    """
    Portal user, created by the registration and verification flow.

    This table is the source of truth for accounts on the access-control
    system. The reconciliation engine only reads it:

        * ``deleted_at`` set: soft-deleted, never reconciled
        * ``email_verified`` off: not yet eligible for a VPN account
        * ``username`` NULL: skipped, the external system keys on it

    Roles:
        admin: mirrored as ``prop_superuser=true`` on the external account
        user: regular VPN user
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(255), unique=True, nullable=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="user", index=True)

    email_verified = Column(Boolean, default=False, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )

    devices = relationship(
        "Device", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    lan_networks = relationship(
        "LanNetwork", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def __repr__(self):
        return f"<User {self.username} role={self.role} verified={self.email_verified}>"
