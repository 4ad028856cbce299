"""
FastAPI dependencies for authentication and request context.

These dependencies are used to protect endpoints and to build the
orchestrator with the caller's network details.
"""

import ipaddress
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.errors import SessionError
from app.core.rate_limiter import RateLimiter, rate_limiter
from app.core.security import decode_session_token
from app.crud import identity as identity_crud
from app.models.identity import Identity
from app.services.audit_log import ClientContext
from app.services.auth_orchestrator import AuthOrchestrator
from app.services.messaging import MessagingChannel, get_messaging_channel

# Authorization: Bearer <token> for non-browser clients; the cookie is preferred
security = HTTPBearer(auto_error=False)


@dataclass
class CurrentSession:
    identity: Identity
    claims: Dict[str, Any]

    @property
    def login_method(self) -> Optional[str]:
        return self.claims.get("login_method")


def is_trusted_proxy(host: str) -> bool:
    for entry in settings.TRUSTED_PROXIES:
        if host == entry:
            return True
        try:
            if ipaddress.ip_address(host) in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request: Request) -> str:
    """
    Extract the client's IP address from the request.

    X-Forwarded-For is only honoured when the socket peer is a trusted proxy.
    The header is then read right to left, skipping further trusted proxies,
    so the address used is the one the outermost trusted proxy saw. Entries
    to the left of that are client-supplied and ignored.
    """
    peer = request.client.host if request.client else "unknown"
    forwarded_for = request.headers.get("X-Forwarded-For")
    if not forwarded_for or not is_trusted_proxy(peer):
        return peer

    hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not is_trusted_proxy(hop):
            return hop
    return hops[0] if hops else peer


def get_client_context(request: Request) -> ClientContext:
    return ClientContext(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


def get_channel() -> MessagingChannel:
    return get_messaging_channel()


def get_orchestrator(
    db: Session = Depends(get_db),
    context: ClientContext = Depends(get_client_context),
    limiter: RateLimiter = Depends(get_rate_limiter),
    channel: MessagingChannel = Depends(get_channel),
) -> AuthOrchestrator:
    return AuthOrchestrator(db, context, limiter=limiter, channel=channel)


def get_current_session(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> CurrentSession:
    """
    Validate the session token from the cookie or bearer header.

    Raises:
        SessionError: Missing, expired, tampered or malformed token, or
            the identity no longer exists
    """
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not token and credentials:
        token = credentials.credentials
    if not token:
        raise SessionError()

    claims = decode_session_token(token)
    try:
        identity_id = UUID(claims["sub"])
    except (ValueError, TypeError):
        raise SessionError()

    identity = identity_crud.get_identity(db, identity_id)
    if identity is None:
        raise SessionError("Account no longer exists")

    return CurrentSession(identity=identity, claims=claims)


def get_current_identity(session: CurrentSession = Depends(get_current_session)) -> Identity:
    return session.identity
