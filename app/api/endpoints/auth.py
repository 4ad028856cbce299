"""
Authentication endpoints.

One-time codes, username resolution, passcodes, account setup and session
management. Failures are raised as AuthError subclasses and rendered with a
stable error code by the application's exception handlers.
"""

import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.deps import CurrentSession, get_current_session, get_orchestrator
from app.crud import identity as identity_crud
from app.services.auth_orchestrator import AuthOrchestrator, AuthOutcome
from app.schemas.auth import (
    AuthResponse,
    CheckUsernameRequest,
    CheckUsernameResponse,
    IdentifyRequest,
    IdentifyResponse,
    IdentityResponse,
    IssueCodeRequest,
    IssueCodeResponse,
    MessageResponse,
    PasscodeChangeRequest,
    PasscodeResetRequest,
    PasscodeVerifyRequest,
    SessionResponse,
    SetupAccountRequest,
    VerifyCodeRequest,
)

router = APIRouter(prefix="/auth", tags=["Authentication"])
logger = logging.getLogger(__name__)


def set_session_cookie(response: Response, token: str) -> None:
    """Attach the session token as an HTTP-only cookie (Secure in production)."""
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.SESSION_EXPIRE_DAYS * 24 * 60 * 60,
        path="/",
    )


def auth_response(response: Response, outcome: AuthOutcome, message: str) -> AuthResponse:
    if outcome.session_token:
        set_session_cookie(response, outcome.session_token)
    return AuthResponse(
        message=message,
        session_token=outcome.session_token,
        continuation_token=outcome.continuation_token,
        is_new_identity=outcome.is_new_identity,
        user=IdentityResponse.model_validate(outcome.identity),
    )


@router.post("/otp/issue", response_model=IssueCodeResponse)
def issue_one_time_code(
    request: IssueCodeRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Issue a 6-digit code and deliver it through the messaging channel.

    LOGIN and RESET_PASSCODE require an existing account. A delivery failure
    still issues a valid code; the response reports delivered=false with a hint.

    Rate limit: 5 requests per 15 minutes per IP.

    Raises:
        404 signup_required: No account for a LOGIN / RESET_PASSCODE identifier
        429 rate_limited: Rate limit exceeded
    """
    outcome = orchestrator.issue_code(request.identifier, request.purpose)

    message = "Verification code sent" if outcome.delivered else "Verification code issued but could not be delivered"
    return IssueCodeResponse(
        message=message,
        expires_in=outcome.expires_in,
        delivered=outcome.delivered,
        fallback_hint=outcome.fallback_hint,
        delivery_error=outcome.delivery_error,
        dev_code=outcome.dev_code,
    )


@router.post("/otp/verify", response_model=AuthResponse)
def verify_one_time_code(
    request: VerifyCodeRequest,
    response: Response,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Verify a one-time code.

    SIGNUP creates the account on first success and returns a session with
    is_setup_complete=false. RESET_PASSCODE returns a continuation token for
    /auth/passcode/reset instead of a session.

    Raises:
        404 not_found, 410 expired, 429 exhausted, 401 invalid_credential
    """
    provider_data = {"first_name": request.first_name} if request.first_name else None
    outcome = orchestrator.verify_code(request.identifier, request.purpose, request.code, provider_data)

    if outcome.session_token is None:
        return auth_response(response, outcome, "Code verified. Choose a new passcode.")
    if outcome.is_new_identity:
        return auth_response(response, outcome, "Account created")
    return auth_response(response, outcome, "Signed in")


@router.post("/identify", response_model=IdentifyResponse)
def identify(
    request: IdentifyRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Resolve a username and return a short-lived continuation token for the
    passcode or biometric step, plus the sign-in methods the account has.
    """
    outcome = orchestrator.identify(request.username)
    return IdentifyResponse(
        continuation_token=outcome.continuation_token,
        available_methods=outcome.available_methods,
    )


@router.post("/check-username", response_model=CheckUsernameResponse)
def check_username(request: CheckUsernameRequest, db: Session = Depends(get_db)):
    """Check a username's format and availability."""
    reason = identity_crud.validate_username(request.username)
    if reason:
        return CheckUsernameResponse(username=request.username, available=False, reason=reason)

    available = identity_crud.is_username_available(db, request.username)
    return CheckUsernameResponse(
        username=request.username,
        available=available,
        reason=None if available else "Username is already taken",
    )


@router.post("/setup", response_model=AuthResponse)
def setup_account(
    request: SetupAccountRequest,
    response: Response,
    session: CurrentSession = Depends(get_current_session),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Choose a username and passcode after signup.

    Returns a re-issued session with is_setup_complete=true.
    """
    outcome = orchestrator.complete_setup(
        session.identity,
        request.username,
        request.passcode,
        session.login_method or "otp",
    )
    return auth_response(response, outcome, "Account setup complete")


@router.post("/passcode/verify", response_model=AuthResponse)
def verify_passcode(
    request: PasscodeVerifyRequest,
    response: Response,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Sign in with a passcode, using the continuation token from /auth/identify.

    Rate limit: 5 attempts per 15 minutes per IP.
    """
    outcome = orchestrator.login_with_passcode(request.continuation_token, request.passcode)
    return auth_response(response, outcome, "Signed in")


@router.post("/passcode/change", response_model=MessageResponse)
def change_passcode(
    request: PasscodeChangeRequest,
    session: CurrentSession = Depends(get_current_session),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """Replace the passcode after confirming the current one."""
    orchestrator.change_passcode(session.identity, request.current_passcode, request.new_passcode)
    return MessageResponse(message="Passcode changed")


@router.post("/passcode/reset", response_model=MessageResponse)
def reset_passcode(
    request: PasscodeResetRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """Set a new passcode with the continuation token from a RESET_PASSCODE code."""
    orchestrator.reset_passcode(request.continuation_token, request.new_passcode)
    return MessageResponse(message="Passcode reset. You can now sign in with your new passcode.")


@router.get("/session", response_model=SessionResponse)
def get_session(session: CurrentSession = Depends(get_current_session)):
    """Return the current session's identity and expiry."""
    return SessionResponse(
        login_method=session.login_method,
        expires_at=datetime.fromtimestamp(session.claims["exp"], tz=timezone.utc),
        user=IdentityResponse.model_validate(session.identity),
    )


@router.post("/refresh", response_model=AuthResponse)
def refresh_session(
    response: Response,
    session: CurrentSession = Depends(get_current_session),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """Re-issue the session from the account's current state."""
    token = orchestrator.refresh_session(session.identity, session.login_method or "session")
    set_session_cookie(response, token)
    return AuthResponse(
        message="Session refreshed",
        session_token=token,
        user=IdentityResponse.model_validate(session.identity),
    )


@router.post("/logout", response_model=MessageResponse, status_code=status.HTTP_200_OK)
def logout(
    response: Response,
    session: CurrentSession = Depends(get_current_session),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Clear the session cookie.

    Sessions are self-contained tokens: a copied token stays valid until it
    expires or SECRET_KEY is rotated.
    """
    orchestrator.logout(session.identity.id, session.login_method)
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
    return MessageResponse(message="Signed out")
