"""
One-time code model for login, signup and passcode-reset verification.

At most one row exists per (identifier, purpose); issuing a new code
overwrites it in place and resets the attempt counter.
"""

import enum
import uuid
from sqlalchemy import Column, String, Boolean, DateTime, Integer, ForeignKey, Index, Enum, UniqueConstraint, Uuid
from app.core.database import Base, utcnow


class CodePurpose(str, enum.Enum):
    """
    Flow a one-time code belongs to.

    - SIGNUP: identity may not exist yet; created on first successful verification
    - LOGIN: identity must already exist
    - RESET_PASSCODE: identity must exist; success authorizes a passcode reset
    """
    SIGNUP = "SIGNUP"
    LOGIN = "LOGIN"
    RESET_PASSCODE = "RESET_PASSCODE"


class OneTimeCode(Base):
    """
    Short-lived numeric code keyed by (identifier, purpose).

    Features:
    - HMAC digest of the 6-digit code (plaintext is never stored)
    - Expiration timestamp
    - Attempt counter capped per code
    - Single-use enforcement
    """
    __tablename__ = "one_time_codes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)

    identifier = Column(String(160), nullable=False)
    purpose = Column(Enum(CodePurpose), nullable=False)

    # Identity the code was issued for (None until a signup identity exists)
    identity_id = Column(Uuid, ForeignKey("identities.id", ondelete="CASCADE"), nullable=True, index=True)

    code_hash = Column(String(64), nullable=False)
    # Digest of the unconsumed code this one replaced, so it can be reported as superseded
    superseded_code_hash = Column(String(64), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    attempts = Column(Integer, nullable=False, default=0)
    consumed = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("identifier", "purpose", name="uq_one_time_codes_identifier_purpose"),
        Index("ix_one_time_codes_expires_at", "expires_at"),
    )

    def __repr__(self):
        return f"<OneTimeCode(identifier='{self.identifier}', purpose={self.purpose}, attempts={self.attempts}, consumed={self.consumed})>"
