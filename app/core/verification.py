"""
Core one-time code logic.

Handles generation, issuance, delivery, verification, and cleanup of 6-digit
codes keyed by (identifier, purpose).
"""

import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import as_utc, utcnow
from app.core.errors import (
    ExhaustedError,
    ExpiredError,
    InvalidCredentialError,
    NotFoundError,
    SignupRequiredError,
    UpstreamUnavailableError,
)
from app.core.security import hash_one_time_code
from app.crud import identity as identity_crud
from app.crud import one_time_code as code_crud
from app.models.identity import Identity
from app.models.one_time_code import CodePurpose, OneTimeCode
from app.services.messaging import MessagingChannel, build_code_message

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
CODE_MIN = 100000
CODE_MAX = 999999

# Purposes whose identity must exist before a code is issued
EXISTING_IDENTITY_PURPOSES = (CodePurpose.LOGIN, CodePurpose.RESET_PASSCODE)


@dataclass
class IssuedCode:
    """Result of issuing a code. ``code`` never leaves the server in production."""
    record: OneTimeCode
    code: str
    expires_in: int
    delivered: bool
    delivery_error: Optional[UpstreamUnavailableError] = None

    @property
    def fallback_hint(self) -> Optional[str]:
        return self.delivery_error.message if self.delivery_error else None


@dataclass
class VerifiedCode:
    record: OneTimeCode
    identity: Optional[Identity]

    @property
    def is_new_identity(self) -> bool:
        return self.identity is None


def generate_code() -> str:
    """
    Generate a 6-digit code, uniform over 100000-999999.

    Uses the secrets module for cryptographic randomness.
    """
    return str(secrets.randbelow(CODE_MAX - CODE_MIN + 1) + CODE_MIN)


def issue_code(
    db: Session,
    identifier: str,
    purpose: CodePurpose,
    channel: MessagingChannel,
    now: Optional[datetime] = None,
) -> IssuedCode:
    """
    Issue a new code for (identifier, purpose) and try to deliver it.

    - LOGIN and RESET_PASSCODE require an existing identity
    - Codes for an existing identity go to its linked account, never to a
      caller-supplied address
    - Replaces any previous code for the same key and resets its attempts
    - The record is committed before delivery is attempted
    - Delivery failure does not fail issuance

    Args:
        db: Database session
        identifier: Identifier the code is keyed by (e.g. "telegram_123")
        purpose: Flow the code belongs to
        channel: Delivery channel
        now: Current time (default: utcnow)

    Returns:
        IssuedCode: The stored record, the code, and delivery status

    Raises:
        SignupRequiredError: Identity missing for LOGIN / RESET_PASSCODE
    """
    identity = identity_crud.get_by_identifier(db, identifier)
    if identity is None and purpose in EXISTING_IDENTITY_PURPOSES:
        raise SignupRequiredError()

    now = now or utcnow()
    code = generate_code()
    expires_at = now + timedelta(minutes=settings.OTP_EXPIRE_MINUTES)

    record = code_crud.put_with_reset(
        db,
        identifier=identifier,
        purpose=purpose,
        code_hash=hash_one_time_code(identifier, purpose.value, code),
        expires_at=expires_at,
        identity_id=identity.id if identity else None,
    )

    recipient = resolve_recipient(identifier, identity)
    try:
        delivered = channel.send(
            recipient,
            build_code_message(code, purpose.value, settings.OTP_EXPIRE_MINUTES),
        )
    except Exception as e:
        logger.error(f"{channel.name} delivery raised {type(e).__name__}: {e}")
        delivered = False
    delivery_error = None
    if not delivered:
        logger.warning(f"{purpose.value} code for {identifier} stored but not delivered via {channel.name}")
        delivery_error = UpstreamUnavailableError(channel.fallback_hint)

    return IssuedCode(
        record=record,
        code=code,
        expires_in=settings.OTP_EXPIRE_MINUTES * 60,
        delivered=delivered,
        delivery_error=delivery_error,
    )


def resolve_recipient(identifier: str, identity: Optional[Identity]) -> str:
    """
    Channel recipient for a code.

    An existing identity receives codes at its linked account (the one named
    by the identifier when it is a linked-account handle). A signup goes to
    the provider user id inside the identifier itself.
    """
    parsed = identity_crud.parse_identifier(identifier)
    if identity is not None and identity.linked_identities:
        for link in identity.linked_identities:
            if parsed and (link.provider, link.provider_user_id) == parsed:
                return link.provider_user_id
        return identity.linked_identities[0].provider_user_id
    return parsed[1] if parsed else identifier


def verify_code(
    db: Session,
    identifier: str,
    purpose: CodePurpose,
    code: str,
    now: Optional[datetime] = None,
) -> VerifiedCode:
    """
    Verify a code for (identifier, purpose).

    Security checks:
    - A live (unconsumed) record must exist
    - Record must not be expired (expired records are retired)
    - Attempt counter must be below the cap
    - Each wrong code increments the counter before returning
    - A code replaced by a newer issuance is reported as NotFound
    - A correct code is consumed exactly once

    Returns:
        VerifiedCode: Record plus linked identity (None for a new signup)

    Raises:
        NotFoundError, ExpiredError, ExhaustedError, InvalidCredentialError
    """
    max_attempts = settings.OTP_MAX_ATTEMPTS
    record = code_crud.get_code(db, identifier, purpose)
    if record is None or record.consumed:
        raise NotFoundError("No active code for this identifier. Please request a new code.")

    if (now or utcnow()) > as_utc(record.expires_at):
        record.consumed = True
        db.commit()
        raise ExpiredError("Code has expired. Please request a new code.")

    attempts = record.attempts
    if attempts >= max_attempts:
        raise ExhaustedError()

    digest = hash_one_time_code(identifier, purpose.value, code)
    if not hmac.compare_digest(digest, record.code_hash):
        if not code_crud.register_failed_attempt(db, record.id, max_attempts):
            raise ExhaustedError()
        if record.superseded_code_hash and hmac.compare_digest(digest, record.superseded_code_hash):
            raise NotFoundError("This code was replaced by a newer one. Use the latest code.")
        remaining = max(max_attempts - (attempts + 1), 0)
        raise InvalidCredentialError(
            f"Invalid code. {remaining} attempt(s) remaining.",
            remaining_attempts=remaining,
        )

    if not code_crud.consume(db, record.id, digest, max_attempts):
        raise NotFoundError("Code has already been used. Please request a new code.")

    db.refresh(record)
    identity = identity_crud.get_identity(db, record.identity_id) if record.identity_id else None
    if identity is None and purpose == CodePurpose.SIGNUP:
        # Signup may race with a parallel signup for the same handle
        identity = identity_crud.get_by_identifier(db, identifier)
    return VerifiedCode(record=record, identity=identity)


def cleanup_expired_codes(db: Session, older_than: timedelta = timedelta(hours=24)) -> int:
    """
    Delete codes that expired more than ``older_than`` ago.

    Run periodically via a Celery task; verification never depends on it.

    Returns:
        int: Number of codes deleted
    """
    return code_crud.delete_stale(db, utcnow() - older_than)
