"""
Security audit event model.

Append-only record of every security-relevant transition. The application
inserts rows and reads them back for the activity feed; it never updates
or deletes them.
"""

import enum
import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, Index, Enum, Text, Uuid, JSON
from sqlalchemy.dialects.postgresql import JSONB
from app.core.database import Base, utcnow


class EventType(str, enum.Enum):
    IDENTIFIER_RESOLVED = "IDENTIFIER_RESOLVED"
    OTP_SENT = "OTP_SENT"
    OTP_VERIFIED = "OTP_VERIFIED"
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    PASSCODE_VERIFIED = "PASSCODE_VERIFIED"
    PASSCODE_SET = "PASSCODE_SET"
    PASSCODE_CHANGED = "PASSCODE_CHANGED"
    PASSCODE_RESET = "PASSCODE_RESET"
    BIOMETRIC_CHALLENGE_ISSUED = "BIOMETRIC_CHALLENGE_ISSUED"
    BIOMETRIC_VERIFIED = "BIOMETRIC_VERIFIED"
    BIOMETRIC_REGISTERED = "BIOMETRIC_REGISTERED"
    BIOMETRIC_REMOVED = "BIOMETRIC_REMOVED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SETUP_COMPLETED = "SETUP_COMPLETED"
    SESSION_REFRESH = "SESSION_REFRESH"
    LOGOUT = "LOGOUT"


class RiskLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityEvent(Base):
    __tablename__ = "security_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    identity_id = Column(Uuid, ForeignKey("identities.id", ondelete="SET NULL"), nullable=True, index=True)

    event_type = Column(Enum(EventType), nullable=False, index=True)
    description = Column(Text, nullable=False)

    # Typed payload (see app.schemas.audit), stored with its "kind" tag
    payload = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    risk_level = Column(Enum(RiskLevel), nullable=False, default=RiskLevel.LOW, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_security_events_identity_created", "identity_id", "created_at"),
    )

    def __repr__(self):
        return f"<SecurityEvent(event_type={self.event_type}, risk_level={self.risk_level}, identity_id={self.identity_id})>"
