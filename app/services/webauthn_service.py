"""
Challenge-response (biometric) credential service.

Implements WebAuthn-style registration and assertion ceremonies with JSON
client data and SubjectPublicKeyInfo public keys (ECDSA P-256 or Ed25519).

Every ceremony result must:
- answer a challenge we issued for the same identity and ceremony, within
  its TTL, and not consumed before
- carry client data of the right type from the expected origin
- carry authenticator data for our relying party with user presence set
- be signed over authenticator_data || SHA-256(client_data_json)
"""

import hashlib
import hmac
import json
import logging
import secrets
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple, Any
from uuid import UUID

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import as_utc, utcnow
from app.core.errors import (
    AlreadyExistsError,
    ExpiredError,
    InvalidAssertionError,
    InvalidRequestError,
    NotFoundError,
    QuotaExceededError,
)
from app.core.security import b64url_decode, b64url_encode
from app.models.biometric import AuthChallenge, BiometricCredential, CeremonyType
from app.models.identity import Identity
from app.schemas.webauthn import AssertionCredential, RegistrationCredential

logger = logging.getLogger(__name__)

NONCE_BYTES = 32
FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
AUTH_DATA_MIN_LENGTH = 37  # rpIdHash(32) + flags(1) + signCount(4)

COSE_ES256 = -7
COSE_EDDSA = -8

CLIENT_DATA_TYPES = {
    CeremonyType.REGISTRATION: "webauthn.create",
    CeremonyType.ASSERTION: "webauthn.get",
}


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    if len(data) < AUTH_DATA_MIN_LENGTH:
        raise InvalidAssertionError("Authenticator data is too short")
    flags = data[32]
    (sign_count,) = struct.unpack(">I", data[33:37])
    return AuthenticatorData(rp_id_hash=data[:32], flags=flags, sign_count=sign_count)


def load_public_key(public_key_der: bytes):
    """
    Load a supported SubjectPublicKeyInfo public key.

    Raises:
        InvalidRequestError: Undecodable or unsupported key
    """
    try:
        key = serialization.load_der_public_key(public_key_der)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise InvalidRequestError(f"Unreadable public key: {e}")

    if isinstance(key, ed25519.Ed25519PublicKey):
        return key
    if isinstance(key, ec.EllipticCurvePublicKey) and isinstance(key.curve, ec.SECP256R1):
        return key
    raise InvalidRequestError("Only ECDSA P-256 and Ed25519 keys are supported")


def verify_signature(public_key_der: bytes, signature: bytes, signed_data: bytes) -> None:
    """Raise InvalidAssertionError unless ``signature`` is valid for ``signed_data``."""
    key = load_public_key(public_key_der)
    try:
        if isinstance(key, ed25519.Ed25519PublicKey):
            key.verify(signature, signed_data)
        else:
            key.verify(signature, signed_data, ec.ECDSA(hashes.SHA256()))
    except (InvalidSignature, ValueError):
        raise InvalidAssertionError("Signature verification failed")


def _challenge_tag(ceremony: CeremonyType, identity_id: UUID, nonce: bytes) -> bytes:
    message = b"|".join([b"webauthn", ceremony.value.encode(), str(identity_id).encode(), nonce])
    return hmac.new(settings.SECRET_KEY.encode("utf-8"), message, hashlib.sha256).digest()


def _decode_field(value: str, name: str) -> bytes:
    if not isinstance(value, str):
        raise InvalidAssertionError(f"{name} must be a base64url string")
    try:
        return b64url_decode(value)
    except ValueError:
        raise InvalidAssertionError(f"{name} is not valid base64url")


class WebAuthnService:
    """
    Registration and assertion ceremonies for biometric credentials.

    Usage:
        service = WebAuthnService(db)
        options = service.begin_registration(identity)
        credential = service.complete_registration(identity, registration_credential)
    """

    def __init__(
        self,
        db: Session,
        rp_id: Optional[str] = None,
        rp_name: Optional[str] = None,
        origin: Optional[str] = None,
        challenge_ttl_seconds: Optional[int] = None,
        max_credentials: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.rp_id = rp_id or settings.WEBAUTHN_RP_ID
        self.rp_name = rp_name or settings.WEBAUTHN_RP_NAME
        self.origin = origin or settings.WEBAUTHN_ORIGIN
        self.challenge_ttl = challenge_ttl_seconds or settings.WEBAUTHN_CHALLENGE_TTL_SECONDS
        self.max_credentials = max_credentials or settings.MAX_BIOMETRIC_CREDENTIALS
        self.clock = clock

    # Challenges

    def issue_challenge(self, identity_id: UUID, ceremony: CeremonyType) -> str:
        """Create, persist and return a signed challenge bound to one identity and ceremony."""
        nonce = secrets.token_bytes(NONCE_BYTES)
        challenge = b64url_encode(nonce + _challenge_tag(ceremony, identity_id, nonce))

        self.db.add(AuthChallenge(
            challenge=challenge,
            ceremony=ceremony,
            identity_id=identity_id,
            expires_at=self.clock() + timedelta(seconds=self.challenge_ttl),
            created_at=self.clock(),
        ))
        self.db.commit()
        return challenge

    def _check_challenge(self, challenge: str, ceremony: CeremonyType, identity_id: UUID) -> AuthChallenge:
        raw = _decode_field(challenge, "Challenge")
        if len(raw) != NONCE_BYTES + hashlib.sha256().digest_size:
            raise InvalidAssertionError("Challenge is malformed")

        nonce, tag = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
        if not hmac.compare_digest(tag, _challenge_tag(ceremony, identity_id, nonce)):
            raise InvalidAssertionError("Challenge was not issued for this account")

        row = self.db.query(AuthChallenge).filter(AuthChallenge.challenge == challenge).first()
        if row is None or row.identity_id != identity_id or row.ceremony != ceremony:
            raise InvalidAssertionError("Unknown challenge")
        if row.consumed_at is not None:
            raise InvalidAssertionError("Challenge has already been used", replay=True)
        if self.clock() > as_utc(row.expires_at):
            raise ExpiredError("Challenge has expired. Please try again.")
        return row

    def _consume_challenge(self, row: AuthChallenge) -> None:
        result = self.db.execute(
            update(AuthChallenge)
            .where(AuthChallenge.id == row.id, AuthChallenge.consumed_at.is_(None))
            .values(consumed_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            raise InvalidAssertionError("Challenge has already been used", replay=True)

    # Shared ceremony checks

    def _check_client_data(self, client_data_json: str, ceremony: CeremonyType) -> Tuple[Dict[str, Any], bytes]:
        raw = _decode_field(client_data_json, "clientDataJSON")
        try:
            client_data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidAssertionError("clientDataJSON is not valid JSON")
        if not isinstance(client_data, dict):
            raise InvalidAssertionError("clientDataJSON must be an object")

        if client_data.get("type") != CLIENT_DATA_TYPES[ceremony]:
            raise InvalidAssertionError("Unexpected ceremony type")
        if client_data.get("origin") != self.origin:
            raise InvalidAssertionError("Unexpected origin")
        return client_data, raw

    def _check_authenticator_data(self, authenticator_data: str) -> Tuple[AuthenticatorData, bytes]:
        raw = _decode_field(authenticator_data, "authenticatorData")
        parsed = parse_authenticator_data(raw)
        if not hmac.compare_digest(parsed.rp_id_hash, hashlib.sha256(self.rp_id.encode("utf-8")).digest()):
            raise InvalidAssertionError("Authenticator data is for a different relying party")
        if not parsed.user_present:
            raise InvalidAssertionError("User presence was not confirmed")
        return parsed, raw

    # Credential queries

    def active_credentials(self, identity_id: UUID) -> List[BiometricCredential]:
        return self.db.query(BiometricCredential).filter(
            BiometricCredential.identity_id == identity_id,
            BiometricCredential.is_active == True  # noqa: E712
        ).order_by(BiometricCredential.created_at).all()

    def active_count(self, identity_id: UUID) -> int:
        return self.db.query(func.count(BiometricCredential.id)).filter(
            BiometricCredential.identity_id == identity_id,
            BiometricCredential.is_active == True  # noqa: E712
        ).scalar()

    # Registration

    def begin_registration(self, identity: Identity) -> Dict[str, Any]:
        """
        Start a registration ceremony.

        Raises:
            QuotaExceededError: Identity already has the maximum active credentials
        """
        if self.active_count(identity.id) >= self.max_credentials:
            raise QuotaExceededError(f"You can register at most {self.max_credentials} biometric credentials")

        challenge = self.issue_challenge(identity.id, CeremonyType.REGISTRATION)
        return {
            "challenge": challenge,
            "rp": {"id": self.rp_id, "name": self.rp_name},
            "user": {
                "id": b64url_encode(identity.id.bytes),
                "name": identity.username or identity.os_id,
                "displayName": identity.username or identity.os_id,
            },
            "pubKeyCredParams": [
                {"type": "public-key", "alg": COSE_ES256},
                {"type": "public-key", "alg": COSE_EDDSA},
            ],
            "timeout": self.challenge_ttl * 1000,
            "attestation": "none",
            "authenticatorSelection": {
                "authenticatorAttachment": "platform",
                "userVerification": "preferred",
            },
            "excludeCredentials": [
                {"type": "public-key", "id": credential.credential_id}
                for credential in self.active_credentials(identity.id)
            ],
        }

    def complete_registration(self, identity: Identity, result: RegistrationCredential) -> BiometricCredential:
        """
        Finish a registration ceremony and store the credential.

        The signature made with the new private key proves possession.

        Raises:
            InvalidAssertionError: Any ceremony check failed
            ExpiredError: Challenge past its TTL
            AlreadyExistsError: Credential already registered
            QuotaExceededError: Identity at the credential limit
        """
        client_data, client_data_raw = self._check_client_data(result.client_data_json, CeremonyType.REGISTRATION)
        challenge_row = self._check_challenge(client_data.get("challenge"), CeremonyType.REGISTRATION, identity.id)
        auth_data, auth_data_raw = self._check_authenticator_data(result.authenticator_data)

        try:
            public_key_der = b64url_decode(result.public_key)
        except ValueError:
            raise InvalidRequestError("Public key is not valid base64url")
        load_public_key(public_key_der)

        signature = _decode_field(result.signature, "Signature")
        verify_signature(public_key_der, signature, auth_data_raw + hashlib.sha256(client_data_raw).digest())

        self._consume_challenge(challenge_row)

        # Serialize registrations for one identity where the database supports it
        self.db.query(Identity).filter(Identity.id == identity.id).with_for_update().first()

        existing = self.db.query(BiometricCredential).filter(
            BiometricCredential.credential_id == result.credential_id
        ).first()
        if existing is not None and existing.identity_id != identity.id:
            raise AlreadyExistsError("This authenticator is registered to another account")
        if existing is not None and existing.is_active:
            raise AlreadyExistsError("This authenticator is already registered")
        if self.active_count(identity.id) >= self.max_credentials:
            raise QuotaExceededError(f"You can register at most {self.max_credentials} biometric credentials")

        now = self.clock()
        if existing is not None:
            credential = existing
            credential.public_key = public_key_der
            credential.is_active = True
            credential.created_at = now
            credential.last_used_at = None
        else:
            credential = BiometricCredential(
                identity_id=identity.id,
                credential_id=result.credential_id,
                public_key=public_key_der,
                created_at=now,
            )
            self.db.add(credential)

        credential.sign_count = auth_data.sign_count
        credential.device_name = result.device_name
        credential.device_type = result.device_type
        self.db.commit()
        self.db.refresh(credential)

        logger.info(f"Registered biometric credential {credential.credential_id} for identity {identity.id}")
        return credential

    # Assertion

    def begin_assertion(self, identity: Identity) -> Dict[str, Any]:
        """
        Start an assertion ceremony for an identity.

        Raises:
            NotFoundError: Identity has no active credentials
        """
        credentials = self.active_credentials(identity.id)
        if not credentials:
            raise NotFoundError("No biometric credentials are registered for this account")

        challenge = self.issue_challenge(identity.id, CeremonyType.ASSERTION)
        return {
            "challenge": challenge,
            "rpId": self.rp_id,
            "timeout": self.challenge_ttl * 1000,
            "userVerification": "preferred",
            "allowCredentials": [
                {"type": "public-key", "id": credential.credential_id}
                for credential in credentials
            ],
        }

    def complete_assertion(self, result: AssertionCredential) -> BiometricCredential:
        """
        Verify an assertion and return the credential that produced it.

        The challenge must have been issued for the credential's own identity,
        so a credential registered to one account can never sign in another.

        Raises:
            InvalidAssertionError: Any check failed (``replay`` set when the
                challenge was reused or the counter did not advance)
            ExpiredError: Challenge past its TTL
        """
        credential = self.db.query(BiometricCredential).filter(
            BiometricCredential.credential_id == result.credential_id,
            BiometricCredential.is_active == True  # noqa: E712
        ).first()
        if credential is None:
            raise InvalidAssertionError("Unknown credential")

        if result.user_handle is not None and result.user_handle != b64url_encode(credential.identity_id.bytes):
            raise InvalidAssertionError("Credential does not belong to this account")

        client_data, client_data_raw = self._check_client_data(result.client_data_json, CeremonyType.ASSERTION)
        challenge_row = self._check_challenge(client_data.get("challenge"), CeremonyType.ASSERTION, credential.identity_id)
        auth_data, auth_data_raw = self._check_authenticator_data(result.authenticator_data)

        signature = _decode_field(result.signature, "Signature")
        verify_signature(credential.public_key, signature, auth_data_raw + hashlib.sha256(client_data_raw).digest())

        if (auth_data.sign_count or credential.sign_count) and auth_data.sign_count <= credential.sign_count:
            raise InvalidAssertionError("Authenticator counter did not advance", replay=True)

        self._consume_challenge(challenge_row)

        credential.sign_count = auth_data.sign_count
        credential.last_used_at = self.clock()
        self.db.commit()
        self.db.refresh(credential)
        return credential

    # Administration

    def remove_credential(self, identity_id: UUID, credential_id: str) -> BiometricCredential:
        """
        Soft-delete one of the identity's credentials.

        Raises:
            NotFoundError: No active credential with that id belongs to the identity
        """
        credential = self.db.query(BiometricCredential).filter(
            BiometricCredential.credential_id == credential_id,
            BiometricCredential.identity_id == identity_id,
            BiometricCredential.is_active == True  # noqa: E712
        ).first()
        if credential is None:
            raise NotFoundError("Biometric credential not found")

        credential.is_active = False
        self.db.commit()
        logger.info(f"Removed biometric credential {credential_id} for identity {identity_id}")
        return credential

    def cleanup_challenges(self, older_than: timedelta = timedelta(hours=24)) -> int:
        """Delete challenges that expired more than ``older_than`` ago."""
        deleted = self.db.query(AuthChallenge).filter(
            AuthChallenge.expires_at < self.clock() - older_than
        ).delete(synchronize_session=False)
        self.db.commit()
        return deleted
