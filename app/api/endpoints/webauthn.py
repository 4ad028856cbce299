"""
Biometric (WebAuthn-style) endpoints.

Sign-in ceremonies are public (they start from a continuation token);
registration and credential management require a session.
"""

import logging
from fastapi import APIRouter, Depends, Response

from app.core.config import settings
from app.core.deps import CurrentSession, get_current_session, get_orchestrator
from app.api.endpoints.auth import auth_response
from app.services.auth_orchestrator import AuthOrchestrator
from app.schemas.auth import AuthResponse, MessageResponse
from app.schemas.webauthn import (
    BiometricChallengeRequest,
    BiometricCompleteRequest,
    BiometricCredentialListResponse,
    BiometricCredentialResponse,
    CeremonyOptionsResponse,
    RegistrationCompleteRequest,
    RegistrationCompleteResponse,
)

router = APIRouter(prefix="/auth/webauthn", tags=["Biometric"])
logger = logging.getLogger(__name__)


@router.post("/challenge", response_model=CeremonyOptionsResponse)
def biometric_challenge(
    request: BiometricChallengeRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Issue an assertion challenge for the identity in the continuation token.

    Raises:
        401 session errors: Invalid continuation token
        404 not_found: No biometric credentials registered
    """
    options = orchestrator.begin_biometric_login(request.continuation_token)
    return CeremonyOptionsResponse(options=options)


@router.post("/complete", response_model=AuthResponse)
def biometric_complete(
    request: BiometricCompleteRequest,
    response: Response,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Verify a signed assertion and start a session.

    Raises:
        401 invalid_assertion: Signature, challenge, origin or counter check failed
        410 expired: Challenge past its TTL
        429 rate_limited: Rate limit exceeded
    """
    outcome = orchestrator.complete_biometric_login(request.credential)
    return auth_response(response, outcome, "Signed in")


@router.post("/register/begin", response_model=CeremonyOptionsResponse)
def begin_registration(
    session: CurrentSession = Depends(get_current_session),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Start registering a new biometric credential.

    Raises:
        409 quota_exceeded: Account already has the maximum active credentials
    """
    options = orchestrator.begin_biometric_registration(session.identity)
    return CeremonyOptionsResponse(options=options)


@router.post("/register/complete", response_model=RegistrationCompleteResponse)
def complete_registration(
    request: RegistrationCompleteRequest,
    session: CurrentSession = Depends(get_current_session),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Verify the registration ceremony and store the credential.

    Raises:
        401 invalid_assertion: Ceremony checks failed
        409 already_exists / quota_exceeded
    """
    credential = orchestrator.complete_biometric_registration(session.identity, request.credential)
    return RegistrationCompleteResponse(credential=BiometricCredentialResponse.model_validate(credential))


@router.get("/credentials", response_model=BiometricCredentialListResponse)
def list_credentials(
    session: CurrentSession = Depends(get_current_session),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """List the account's active biometric credentials."""
    credentials = orchestrator.webauthn.active_credentials(session.identity.id)
    return BiometricCredentialListResponse(
        credentials=[BiometricCredentialResponse.model_validate(c) for c in credentials],
        max_credentials=settings.MAX_BIOMETRIC_CREDENTIALS,
    )


@router.delete("/credentials/{credential_id}", response_model=MessageResponse)
def remove_credential(
    credential_id: str,
    session: CurrentSession = Depends(get_current_session),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Remove one of the account's biometric credentials.

    Raises:
        404 not_found: Credential does not exist or belongs to another account
    """
    orchestrator.remove_biometric(session.identity, credential_id)
    return MessageResponse(message="Biometric credential removed")
