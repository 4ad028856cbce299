"""
CRUD operations for identities and their linked external accounts.

Identifiers take two forms:
- "<provider>_<provider user id>" (e.g. "telegram_123") for linked accounts
- anything else is treated as a username
"""

import re
import secrets
import string
import time
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.database import utcnow
from app.core.errors import AlreadyExistsError, InvalidRequestError
from app.models.identity import Identity, LinkedIdentity

KNOWN_PROVIDERS = ("telegram",)
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{6,20}$")
OS_ID_ALPHABET = string.ascii_uppercase + string.digits
OS_ID_RANDOM_LENGTH = 8
MAX_OS_ID_ATTEMPTS = 10


def parse_identifier(identifier: str) -> Optional[Tuple[str, str]]:
    """
    Split an external-provider identifier into (provider, provider_user_id).

    Returns None when the identifier is not a linked-account handle.
    """
    provider, sep, provider_user_id = identifier.partition("_")
    if sep and provider.lower() in KNOWN_PROVIDERS and provider_user_id:
        return provider.lower(), provider_user_id
    return None


def validate_username(username: str) -> Optional[str]:
    """Return an error message if the username breaks the rules, else None."""
    if not username:
        return "Username is required"
    if len(username) < 6:
        return "Username must be at least 6 characters"
    if len(username) > 20:
        return "Username must be at most 20 characters"
    if not USERNAME_PATTERN.match(username):
        return "Username can only contain letters, numbers, and underscores"
    return None


def _to_base36(value: int) -> str:
    digits = string.digits + string.ascii_uppercase
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def generate_os_id() -> str:
    """Generate a public OS-ID like "OS-LZ7Q3K1A-8F2KD9QX"."""
    timestamp = _to_base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(OS_ID_ALPHABET) for _ in range(OS_ID_RANDOM_LENGTH))
    return f"OS-{timestamp}-{random_part}"


def get_identity(db: Session, identity_id: UUID) -> Optional[Identity]:
    return db.query(Identity).filter(Identity.id == identity_id).first()


def get_by_username(db: Session, username: str) -> Optional[Identity]:
    return db.query(Identity).filter(Identity.username == username).first()


def get_by_identifier(db: Session, identifier: str) -> Optional[Identity]:
    """
    Resolve an identifier to an identity.

    Linked-account handles are looked up through linked_identities;
    anything else is matched against usernames.
    """
    parsed = parse_identifier(identifier)
    if parsed is None:
        return get_by_username(db, identifier)

    provider, provider_user_id = parsed
    link = db.query(LinkedIdentity).filter(
        LinkedIdentity.provider == provider,
        LinkedIdentity.provider_user_id == provider_user_id
    ).first()
    return link.identity if link else None


def create_identity(db: Session, identifier: str, provider_data: Optional[dict] = None) -> Identity:
    """
    Create a verified identity linked to an external-provider handle.

    Args:
        db: Database session
        identifier: Linked-account handle, e.g. "telegram_123"
        provider_data: Optional provider profile data

    Returns:
        Identity: The new identity (setup not yet complete)

    Raises:
        InvalidRequestError: Identifier is not a linked-account handle
        AlreadyExistsError: Handle already linked to another identity
    """
    parsed = parse_identifier(identifier)
    if parsed is None:
        raise InvalidRequestError(f"Signup requires an external account identifier, got '{identifier}'")
    provider, provider_user_id = parsed

    for _ in range(MAX_OS_ID_ATTEMPTS):
        os_id = generate_os_id()
        if not db.query(Identity).filter(Identity.os_id == os_id).first():
            break
    else:
        raise RuntimeError("Failed to generate unique OS-ID")

    identity = Identity(
        os_id=os_id,
        is_verified=True,
        is_setup_complete=False,
        created_at=utcnow(),
    )
    identity.linked_identities.append(LinkedIdentity(
        provider=provider,
        provider_user_id=provider_user_id,
        provider_data=provider_data or {},
        created_at=utcnow(),
    ))

    db.add(identity)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise AlreadyExistsError("This account is already registered")
    db.refresh(identity)
    return identity


def is_username_available(db: Session, username: str) -> bool:
    return get_by_username(db, username) is None


def set_username(db: Session, identity: Identity, username: str) -> Identity:
    """
    Assign a username. Usernames are immutable once set.

    Raises:
        InvalidRequestError: Username breaks the format rules
        AlreadyExistsError: Username taken, or identity already has one
    """
    error = validate_username(username)
    if error:
        raise InvalidRequestError(error)

    if identity.username is not None:
        if identity.username == username:
            return identity
        raise AlreadyExistsError("Username cannot be changed once set")

    if not is_username_available(db, username):
        raise AlreadyExistsError("Username is already taken")

    identity.username = username
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise AlreadyExistsError("Username is already taken")
    db.refresh(identity)
    return identity


def record_login(db: Session, identity: Identity) -> None:
    identity.last_login_at = utcnow()
    db.commit()
