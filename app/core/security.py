"""
Security utilities for session tokens, continuation tokens and secret hashing.

Sessions and continuation tokens are HS256 JWTs signed with SECRET_KEY and
told apart by their ``token_type`` claim. Passcodes are hashed with bcrypt;
one-time codes are stored as keyed HMAC digests.
"""

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import UUID

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError
from passlib.context import CryptContext

from app.core.config import settings
from app.core.database import utcnow
from app.core.errors import MalformedTokenError, SessionExpiredError, SignatureInvalidError

# Passcode hashing context (bcrypt)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SESSION_TOKEN = "session"
CONTINUATION_TOKEN = "continuation"

SESSION_CLAIMS = ("sub", "os_id", "username", "is_setup_complete", "is_verified", "login_method")


def hash_passcode(passcode: str) -> str:
    """Hash a passcode using bcrypt (salted)."""
    return pwd_context.hash(passcode)


def verify_passcode_hash(passcode: str, passcode_hash: str) -> bool:
    """Verify a plain passcode against its bcrypt hash."""
    return pwd_context.verify(passcode, passcode_hash)


def hash_one_time_code(identifier: str, purpose: str, code: str) -> str:
    """
    Keyed digest of a one-time code.

    The digest is bound to the (identifier, purpose) pair so a stored value
    cannot be replayed against a different key.
    """
    message = f"{identifier}:{purpose}:{code}".encode("utf-8")
    return hmac.new(settings.SECRET_KEY.encode("utf-8"), message, hashlib.sha256).hexdigest()


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    """Decode unpadded base64url, raising ValueError on bad input."""
    try:
        padding = "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(data + padding)
    except (ValueError, TypeError) as err:
        raise ValueError(f"Invalid base64url encoding: {err}") from err


def _encode(claims: Dict[str, Any], token_type: str, issued_at: datetime, lifetime: timedelta) -> str:
    to_encode = claims.copy()
    to_encode.update({
        "token_type": token_type,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
    })
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def _decode(token: str, token_type: str) -> Dict[str, Any]:
    """
    Decode and validate a signed token of the given type.

    Raises:
        MalformedTokenError: Not a JWT, bad claims, or wrong token type
        SessionExpiredError: Signature valid but past expiry
        SignatureInvalidError: Signature does not match
    """
    if not token:
        raise MalformedTokenError()

    try:
        jwt.get_unverified_header(token)
        jwt.get_unverified_claims(token)
    except JWTError:
        raise MalformedTokenError()

    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError:
        raise SessionExpiredError()
    except JWTClaimsError:
        raise MalformedTokenError()
    except JWTError:
        raise SignatureInvalidError()

    if payload.get("token_type") != token_type:
        raise MalformedTokenError(f"Expected a {token_type} token")
    if "exp" not in payload or "iat" not in payload or "sub" not in payload:
        raise MalformedTokenError()
    return payload


def create_session_token(claims: Dict[str, Any], issued_at: Optional[datetime] = None) -> str:
    """
    Create a signed session token.

    Args:
        claims: Identity claims (sub, os_id, username, is_setup_complete,
            is_verified, login_method)
        issued_at: Issue instant (default: now)

    Returns:
        Encoded JWT valid for SESSION_EXPIRE_DAYS
    """
    missing = [name for name in SESSION_CLAIMS if name not in claims]
    if missing:
        raise ValueError(f"Missing session claims: {', '.join(missing)}")
    return _encode(
        claims,
        SESSION_TOKEN,
        issued_at or utcnow(),
        timedelta(days=settings.SESSION_EXPIRE_DAYS),
    )


def decode_session_token(token: str) -> Dict[str, Any]:
    """Validate a session token and return its claims."""
    payload = _decode(token, SESSION_TOKEN)
    if any(name not in payload for name in SESSION_CLAIMS):
        raise MalformedTokenError()
    return payload


def create_continuation_token(identity_id: UUID, purpose: str, issued_at: Optional[datetime] = None) -> str:
    """
    Create a short-lived token carrying a resolved identity between flow steps.

    Args:
        identity_id: Identity resolved in the previous step
        purpose: Step the token authorizes ("login" or "passcode_reset")
        issued_at: Issue instant (default: now)
    """
    return _encode(
        {"sub": str(identity_id), "purpose": purpose, "jti": secrets.token_urlsafe(16)},
        CONTINUATION_TOKEN,
        issued_at or utcnow(),
        timedelta(minutes=settings.CONTINUATION_TOKEN_EXPIRE_MINUTES),
    )


def decode_continuation_token(token: str, purpose: str) -> UUID:
    """
    Validate a continuation token for ``purpose`` and return the identity id.

    Raises:
        SessionError subclasses: Invalid, expired or mis-scoped token
    """
    payload = _decode(token, CONTINUATION_TOKEN)
    if payload.get("purpose") != purpose:
        raise MalformedTokenError(f"Continuation token is not valid for {purpose}")
    try:
        return UUID(payload["sub"])
    except (ValueError, TypeError):
        raise MalformedTokenError()
