"""
Passcode verifier.

Stores and checks the 6-digit passcode of an already-identified identity.
Only bcrypt hashes are persisted; plaintext passcodes are never logged.
"""

import logging
import re
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.database import utcnow
from app.core.errors import InvalidCredentialError, InvalidRequestError, NotFoundError
from app.core.security import hash_passcode, verify_passcode_hash
from app.models.passcode import PasscodeCredential

logger = logging.getLogger(__name__)

PASSCODE_PATTERN = re.compile(r"[0-9]{6}")


def validate_passcode_format(passcode: str) -> None:
    """Raise InvalidRequestError unless the passcode is exactly 6 digits."""
    if not isinstance(passcode, str) or not PASSCODE_PATTERN.fullmatch(passcode):
        raise InvalidRequestError("Passcode must be exactly 6 digits")


def has_passcode(db: Session, identity_id: UUID) -> bool:
    return db.query(PasscodeCredential.id).filter(
        PasscodeCredential.identity_id == identity_id
    ).first() is not None


def set_or_change_passcode(db: Session, identity_id: UUID, new_passcode: str) -> bool:
    """
    Set a passcode, replacing any existing one.

    Args:
        db: Database session
        identity_id: Identity the passcode belongs to
        new_passcode: 6-digit passcode

    Returns:
        bool: True if an existing passcode was replaced
    """
    validate_passcode_format(new_passcode)
    passcode_hash = hash_passcode(new_passcode)

    credential = db.query(PasscodeCredential).filter(
        PasscodeCredential.identity_id == identity_id
    ).first()

    replaced = credential is not None
    if credential:
        credential.passcode_hash = passcode_hash
        credential.updated_at = utcnow()
    else:
        db.add(PasscodeCredential(
            identity_id=identity_id,
            passcode_hash=passcode_hash,
            created_at=utcnow(),
        ))
    db.commit()

    logger.info(f"Passcode {'changed' if replaced else 'set'} for identity {identity_id}")
    return replaced


def verify_passcode(db: Session, identity_id: UUID, supplied_passcode: str) -> None:
    """
    Check a supplied passcode against the stored hash.

    Raises:
        NotFoundError: Identity has no passcode
        InvalidCredentialError: Wrong or malformed passcode
    """
    credential = db.query(PasscodeCredential).filter(
        PasscodeCredential.identity_id == identity_id
    ).first()
    if credential is None:
        raise NotFoundError("No passcode has been set for this account")

    if not PASSCODE_PATTERN.fullmatch(supplied_passcode or ""):
        raise InvalidCredentialError("Invalid passcode")

    if not verify_passcode_hash(supplied_passcode, credential.passcode_hash):
        raise InvalidCredentialError("Invalid passcode")
