"""
Biometric (WebAuthn-style) credential and ceremony challenge models.

BiometricCredential rows are soft-deleted (is_active=False) on removal.
AuthChallenge rows bind a signed nonce to one identity and one ceremony,
expire after a short TTL, and can be consumed exactly once.
"""

import enum
import uuid
from sqlalchemy import Column, String, Boolean, DateTime, Integer, ForeignKey, Index, Enum, LargeBinary, Uuid
from sqlalchemy.orm import relationship
from app.core.database import Base, utcnow


class DeviceType(str, enum.Enum):
    TOUCH = "TOUCH"
    FACE = "FACE"
    SECURITY_KEY = "SECURITY_KEY"
    OTHER = "OTHER"


class CeremonyType(str, enum.Enum):
    REGISTRATION = "REGISTRATION"
    ASSERTION = "ASSERTION"


class BiometricCredential(Base):
    """
    Registered public-key authenticator.

    - credential_id: base64url credential ID issued by the authenticator
    - public_key: SubjectPublicKeyInfo DER (ECDSA P-256 or Ed25519)
    - sign_count: last seen authenticator counter (must only move forward)
    """
    __tablename__ = "biometric_credentials"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    identity_id = Column(Uuid, ForeignKey("identities.id", ondelete="CASCADE"), nullable=False, index=True)

    credential_id = Column(String(512), unique=True, nullable=False, index=True)
    public_key = Column(LargeBinary, nullable=False)
    sign_count = Column(Integer, nullable=False, default=0)

    device_name = Column(String(100), nullable=False)
    device_type = Column(Enum(DeviceType), nullable=False, default=DeviceType.OTHER)

    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    identity = relationship("Identity", back_populates="biometric_credentials")

    __table_args__ = (
        Index("ix_biometric_credentials_identity_active", "identity_id", "is_active"),
    )

    def __repr__(self):
        return f"<BiometricCredential(credential_id='{self.credential_id}', device_name='{self.device_name}', is_active={self.is_active})>"


class AuthChallenge(Base):
    """Issued challenge for a registration or assertion ceremony."""
    __tablename__ = "auth_challenges"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    challenge = Column(String(128), unique=True, nullable=False, index=True)
    ceremony = Column(Enum(CeremonyType), nullable=False)
    identity_id = Column(Uuid, ForeignKey("identities.id", ondelete="CASCADE"), nullable=False, index=True)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<AuthChallenge(ceremony={self.ceremony}, identity_id={self.identity_id}, consumed={self.consumed_at is not None})>"
