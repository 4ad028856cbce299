"""
Identity model and linked external-provider identities.

An Identity is the durable user record behind every login method. It is
created on the first successful signup verification and carries the public
OS-ID, the (immutable once set) username, and setup/verification flags.
"""

import uuid
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, UniqueConstraint, Uuid, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from app.core.database import Base, utcnow


class Identity(Base):
    """
    User identity shared by all authentication methods.

    - os_id: opaque public identifier shown to the user and embedded in sessions
    - username: unique, chosen once during account setup
    - is_setup_complete: username and passcode have been chosen
    - is_verified: at least one one-time code has been verified
    """
    __tablename__ = "identities"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    os_id = Column(String(40), unique=True, nullable=False, index=True)
    username = Column(String(20), unique=True, nullable=True, index=True)

    # Account status
    is_setup_complete = Column(Boolean, default=False, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    linked_identities = relationship("LinkedIdentity", back_populates="identity", cascade="all, delete-orphan")
    passcode = relationship("PasscodeCredential", back_populates="identity", uselist=False, cascade="all, delete-orphan")
    biometric_credentials = relationship("BiometricCredential", back_populates="identity", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Identity(id={self.id}, os_id='{self.os_id}', username='{self.username}')>"


class LinkedIdentity(Base):
    """
    External-provider account linked to an Identity (e.g. a Telegram user ID).

    The (provider, provider_user_id) pair is globally unique, so one external
    account resolves to at most one Identity.
    """
    __tablename__ = "linked_identities"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    identity_id = Column(Uuid, ForeignKey("identities.id", ondelete="CASCADE"), nullable=False, index=True)

    provider = Column(String(32), nullable=False)
    provider_user_id = Column(String(128), nullable=False)

    # Provider profile data captured at link time (first name, handle, ...)
    provider_data = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    identity = relationship("Identity", back_populates="linked_identities")

    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="uq_linked_identities_provider_user"),
    )

    @property
    def identifier(self) -> str:
        return f"{self.provider}_{self.provider_user_id}"

    def __repr__(self):
        return f"<LinkedIdentity(provider='{self.provider}', provider_user_id='{self.provider_user_id}')>"
