"""
Passcode credential model.

One row per identity holding the bcrypt hash of a 6-digit passcode.
"""

import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from app.core.database import Base, utcnow


class PasscodeCredential(Base):
    __tablename__ = "passcode_credentials"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    identity_id = Column(Uuid, ForeignKey("identities.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)

    passcode_hash = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    identity = relationship("Identity", back_populates="passcode")

    def __repr__(self):
        return f"<PasscodeCredential(identity_id={self.identity_id})>"
