"""
Pytest configuration and fixtures for testing.

This file provides reusable test fixtures for:
- Database setup/teardown
- FastAPI test client with rate limiter and messaging overrides
- A recording messaging channel
- Software authenticators that perform real signing ceremonies
"""

import os

# Configure the app before anything imports settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["ENVIRONMENT"] = "test"
os.environ["JSON_LOGS"] = "false"
os.environ["TELEGRAM_BOT_TOKEN"] = ""

import hashlib
import json
import re
import secrets
import struct
from typing import List, Optional, Tuple

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.database import Base, get_db
from app.core.deps import get_channel, get_rate_limiter
from app.core.rate_limiter import RateLimiter
from app.core.security import b64url_encode
from app.crud import identity as identity_crud
from app.services.audit_log import ClientContext
from app.services.auth_orchestrator import AuthOrchestrator
from app.services.messaging import MessagingChannel
from app.services import passcode_service
from main import app


# Use in-memory SQLite for testing (fast, isolated)
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

CODE_PATTERN = re.compile(r"<code>(\d{6})</code>")


class RecordingChannel(MessagingChannel):
    """Messaging channel that keeps every message instead of sending it."""

    name = "recording"

    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.sent: List[Tuple[str, str]] = []

    def send(self, recipient_handle: str, message: str) -> bool:
        self.sent.append((recipient_handle, message))
        return self.delivered

    @property
    def last_code(self) -> str:
        return CODE_PATTERN.search(self.sent[-1][1]).group(1)


class SoftAuthenticator:
    """
    Software authenticator holding one key pair.

    Produces registration and assertion results the same way a platform
    authenticator does: JSON client data, packed authenticator data, and a
    signature over authenticatorData || SHA-256(clientDataJSON).
    """

    def __init__(self, algorithm: str = "es256", rp_id: Optional[str] = None, origin: Optional[str] = None):
        if algorithm == "ed25519":
            self.private_key = ed25519.Ed25519PrivateKey.generate()
        else:
            self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.rp_id = rp_id or settings.WEBAUTHN_RP_ID
        self.origin = origin or settings.WEBAUTHN_ORIGIN
        self.credential_id = b64url_encode(secrets.token_bytes(16))
        self.sign_count = 0

    @property
    def public_key(self) -> str:
        der = self.private_key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return b64url_encode(der)

    def _sign(self, data: bytes) -> bytes:
        if isinstance(self.private_key, ed25519.Ed25519PrivateKey):
            return self.private_key.sign(data)
        return self.private_key.sign(data, ec.ECDSA(hashes.SHA256()))

    def _ceremony(self, client_type: str, challenge: str, sign_count: int, flags: int = 0x05, origin: Optional[str] = None):
        client_data = json.dumps({
            "type": client_type,
            "challenge": challenge,
            "origin": origin or self.origin,
        }).encode("utf-8")
        auth_data = hashlib.sha256(self.rp_id.encode("utf-8")).digest() + bytes([flags]) + struct.pack(">I", sign_count)
        signature = self._sign(auth_data + hashlib.sha256(client_data).digest())
        return {
            "client_data_json": b64url_encode(client_data),
            "authenticator_data": b64url_encode(auth_data),
            "signature": b64url_encode(signature),
        }

    def register(self, options: dict, device_name: str = "Test phone", **kwargs) -> dict:
        result = self._ceremony("webauthn.create", options["challenge"], self.sign_count, **kwargs)
        result.update({
            "credential_id": self.credential_id,
            "public_key": self.public_key,
            "device_name": device_name,
            "device_type": "TOUCH",
        })
        return result

    def assertion(self, options: dict, sign_count: Optional[int] = None, credential_id: Optional[str] = None, **kwargs) -> dict:
        if sign_count is None:
            self.sign_count += 1
            sign_count = self.sign_count
        result = self._ceremony("webauthn.get", options["challenge"], sign_count, **kwargs)
        result["credential_id"] = credential_id or self.credential_id
        return result


@pytest.fixture
def db_session():
    """
    Create a fresh database session for each test.
    Tables are dropped after the test completes.
    """
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def limiter():
    """Fresh in-memory rate limiter per test."""
    return RateLimiter(backend="memory")


@pytest.fixture
def client(db_session, channel, limiter):
    """
    FastAPI test client with overridden database, rate limiter and channel.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_channel] = lambda: channel

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def orchestrator(db_session, channel, limiter):
    return AuthOrchestrator(
        db_session,
        ClientContext(ip_address="203.0.113.7", user_agent="pytest"),
        limiter=limiter,
        channel=channel,
    )


@pytest.fixture
def identity(db_session):
    """Signed-up identity linked to telegram_123, setup not complete."""
    return identity_crud.create_identity(db_session, "telegram_123", {"first_name": "Ada"})


@pytest.fixture
def ready_identity(db_session):
    """Identity with username "ada_lovelace" and passcode "482913"."""
    created = identity_crud.create_identity(db_session, "telegram_456")
    identity_crud.set_username(db_session, created, "ada_lovelace")
    passcode_service.set_or_change_passcode(db_session, created.id, "482913")
    created.is_setup_complete = True
    db_session.commit()
    db_session.refresh(created)
    return created


@pytest.fixture
def authenticator():
    return SoftAuthenticator()


@pytest.fixture
def authenticator_factory():
    return SoftAuthenticator
