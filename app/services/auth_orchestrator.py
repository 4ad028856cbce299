"""
Authentication orchestrator.

Sequences rate limiting, one-time codes, passcodes and biometric assertions
into login/signup flows and mints sessions on success.

Each flow is a small state machine:

    START -> IDENTIFIER_KNOWN -> CODE_OR_CREDENTIAL_PENDING -> VERIFIED -> SESSION_ISSUED
                                                                  (FAILED from any state)

Flows that span several HTTP requests resume in the state the previous
request left them in (a pending code, a continuation token, an issued
challenge). Every transition appends exactly one SecurityEvent.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.core import rate_limiter as limits
from app.core.config import settings
from app.core.errors import (
    AlreadyExistsError,
    AuthError,
    ExhaustedError,
    ExpiredError,
    InvalidAssertionError,
    NotFoundError,
    RateLimitedError,
    SignatureInvalidError,
    SignupRequiredError,
)
from app.core.rate_limiter import RateLimiter, rate_limiter
from app.core.security import create_continuation_token, create_session_token, decode_continuation_token
from app.core.verification import issue_code, verify_code
from app.crud import identity as identity_crud
from app.models.identity import Identity
from app.models.one_time_code import CodePurpose
from app.models.security_event import EventType, RiskLevel
from app.schemas.audit import (
    AccountCreatedPayload,
    BiometricChallengePayload,
    BiometricRegisteredPayload,
    BiometricRemovedPayload,
    BiometricVerifiedPayload,
    IdentifierResolvedPayload,
    LoginFailedPayload,
    LoginSuccessPayload,
    OtpSentPayload,
    OtpVerifiedPayload,
    PasscodeUpdatedPayload,
    PasscodeVerifiedPayload,
    RateLimitPayload,
    SessionPayload,
    SetupCompletedPayload,
)
from app.schemas.webauthn import AssertionCredential, RegistrationCredential
from app.services import passcode_service
from app.services.audit_log import AuditLog, ClientContext
from app.services.messaging import MessagingChannel, get_messaging_channel
from app.services.webauthn_service import WebAuthnService

logger = logging.getLogger(__name__)

LOGIN_PURPOSE = "login"
RESET_PURPOSE = "passcode_reset"


class FlowState(str, enum.Enum):
    START = "START"
    IDENTIFIER_KNOWN = "IDENTIFIER_KNOWN"
    CODE_OR_CREDENTIAL_PENDING = "CODE_OR_CREDENTIAL_PENDING"
    VERIFIED = "VERIFIED"
    SESSION_ISSUED = "SESSION_ISSUED"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS = {
    FlowState.START: {FlowState.IDENTIFIER_KNOWN, FlowState.CODE_OR_CREDENTIAL_PENDING},
    FlowState.IDENTIFIER_KNOWN: {FlowState.CODE_OR_CREDENTIAL_PENDING, FlowState.VERIFIED},
    FlowState.CODE_OR_CREDENTIAL_PENDING: {FlowState.VERIFIED},
    FlowState.VERIFIED: {FlowState.SESSION_ISSUED},
    FlowState.SESSION_ISSUED: set(),
    FlowState.FAILED: set(),
}


def failure_risk(error: AuthError) -> RiskLevel:
    """Risk level recorded when a flow fails with ``error``."""
    if isinstance(error, InvalidAssertionError):
        return RiskLevel.HIGH if error.replay else RiskLevel.MEDIUM
    if isinstance(error, (RateLimitedError, ExhaustedError, SignatureInvalidError)):
        return RiskLevel.HIGH
    if isinstance(error, ExpiredError):
        return RiskLevel.LOW
    return RiskLevel.MEDIUM


class AuthFlow:
    """
    One authentication flow and its audit trail.

    Illegal transitions are programming errors and raise RuntimeError.
    """

    def __init__(
        self,
        audit: AuditLog,
        context: ClientContext,
        method: str,
        state: FlowState = FlowState.START,
        identity_id: Optional[UUID] = None,
    ):
        self.audit = audit
        self.context = context
        self.method = method
        self.state = state
        self.identity_id = identity_id
        self.history: List[FlowState] = [state]

    def advance(
        self,
        to_state: FlowState,
        event_type: EventType,
        description: str,
        payload,
        risk_level: RiskLevel = RiskLevel.LOW,
    ) -> None:
        if to_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal auth flow transition {self.state.value} -> {to_state.value}")
        self.audit.record(
            event_type,
            description,
            payload,
            context=self.context,
            identity_id=self.identity_id,
            risk_level=risk_level,
        )
        self.state = to_state
        self.history.append(to_state)

    def fail(self, error: AuthError, identifier: Optional[str] = None, endpoint_class: Optional[str] = None) -> None:
        """Move to FAILED, recording the failure event for ``error``."""
        if self.state in (FlowState.SESSION_ISSUED, FlowState.FAILED):
            raise RuntimeError(f"Cannot fail a flow in state {self.state.value}")

        if isinstance(error, RateLimitedError):
            self.audit.record(
                EventType.RATE_LIMIT_EXCEEDED,
                f"Rate limit exceeded for {endpoint_class}",
                RateLimitPayload(
                    endpoint_class=endpoint_class or "unknown",
                    limit=settings.RATE_LIMIT_MAX_ATTEMPTS,
                    window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
                ),
                context=self.context,
                identity_id=self.identity_id,
                risk_level=RiskLevel.HIGH,
            )
        else:
            self.audit.record(
                EventType.LOGIN_FAILED,
                f"{self.method} authentication failed: {error.message}",
                LoginFailedPayload(
                    method=self.method,
                    reason=error.error_code,
                    identifier=identifier,
                    replay_suspected=getattr(error, "replay", False),
                ),
                context=self.context,
                identity_id=self.identity_id,
                risk_level=failure_risk(error),
            )
        self.state = FlowState.FAILED
        self.history.append(FlowState.FAILED)


@dataclass
class IssueOutcome:
    expires_in: int
    delivered: bool
    fallback_hint: Optional[str] = None
    delivery_error: Optional[str] = None
    dev_code: Optional[str] = None


@dataclass
class AuthOutcome:
    identity: Identity
    login_method: Optional[str] = None
    session_token: Optional[str] = None
    continuation_token: Optional[str] = None
    is_new_identity: bool = False
    available_methods: List[str] = field(default_factory=list)


def session_claims(identity: Identity, login_method: str) -> Dict[str, Any]:
    return {
        "sub": str(identity.id),
        "os_id": identity.os_id,
        "username": identity.username,
        "is_setup_complete": identity.is_setup_complete,
        "is_verified": identity.is_verified,
        "login_method": login_method,
    }


class AuthOrchestrator:
    """
    Entry point for every authentication operation.

    Usage:
        orchestrator = AuthOrchestrator(db, ClientContext(ip_address="203.0.113.7"))
        outcome = orchestrator.login_with_passcode(continuation_token, "482913")
    """

    def __init__(
        self,
        db: Session,
        context: Optional[ClientContext] = None,
        limiter: Optional[RateLimiter] = None,
        channel: Optional[MessagingChannel] = None,
        webauthn: Optional[WebAuthnService] = None,
    ):
        self.db = db
        self.context = context or ClientContext()
        self.limiter = limiter or rate_limiter
        self._channel = channel
        self.webauthn = webauthn or WebAuthnService(db)
        self.audit = AuditLog(db)

    @property
    def channel(self) -> MessagingChannel:
        if self._channel is None:
            self._channel = get_messaging_channel()
        return self._channel

    def _flow(self, method: str, state: FlowState = FlowState.START, identity_id: Optional[UUID] = None) -> AuthFlow:
        return AuthFlow(self.audit, self.context, method, state=state, identity_id=identity_id)

    def _gate(self, flow: AuthFlow, endpoint_class: str) -> None:
        """Count this request against the caller's limit for ``endpoint_class``."""
        key = f"{endpoint_class}:{self.context.ip_address or 'unknown'}"
        allowed, _ = self.limiter.allow(
            key,
            settings.RATE_LIMIT_MAX_ATTEMPTS,
            settings.RATE_LIMIT_WINDOW_SECONDS,
        )
        if not allowed:
            error = RateLimitedError()
            flow.fail(error, endpoint_class=endpoint_class)
            raise error

    def _record(self, event_type: EventType, description: str, payload, identity_id: Optional[UUID], risk_level: RiskLevel = RiskLevel.LOW) -> None:
        self.audit.record(event_type, description, payload, context=self.context, identity_id=identity_id, risk_level=risk_level)

    def _record_failure(self, method: str, error: AuthError, identity_id: Optional[UUID] = None) -> None:
        self._record(
            EventType.LOGIN_FAILED,
            f"{method} failed: {error.message}",
            LoginFailedPayload(method=method, reason=error.error_code, replay_suspected=getattr(error, "replay", False)),
            identity_id,
            failure_risk(error),
        )

    def _resolve_continuation(self, flow: AuthFlow, token: str, purpose: str) -> Identity:
        identity_id = decode_continuation_token(token, purpose)
        identity = identity_crud.get_identity(self.db, identity_id)
        if identity is None:
            raise NotFoundError("Account not found")
        flow.identity_id = identity.id
        return identity

    def _issue_session(self, flow: AuthFlow, identity: Identity, login_method: str, is_new_identity: bool = False) -> AuthOutcome:
        token = create_session_token(session_claims(identity, login_method))
        identity_crud.record_login(self.db, identity)
        flow.advance(
            FlowState.SESSION_ISSUED,
            EventType.LOGIN_SUCCESS,
            f"Signed in with {login_method}",
            LoginSuccessPayload(method=login_method, is_new_identity=is_new_identity),
        )
        logger.info(f"Session issued for identity {identity.id} via {login_method}")
        return AuthOutcome(
            identity=identity,
            login_method=login_method,
            session_token=token,
            is_new_identity=is_new_identity,
        )

    # One-time codes

    def issue_code(self, identifier: str, purpose: CodePurpose) -> IssueOutcome:
        """
        Issue a one-time code (Start -> [IdentifierKnown] -> CodeOrCredentialPending).

        Raises:
            RateLimitedError, SignupRequiredError
        """
        flow = self._flow("otp")
        self._gate(flow, limits.OTP_ISSUE)

        identity = identity_crud.get_by_identifier(self.db, identifier)
        if identity is not None:
            flow.identity_id = identity.id
            flow.advance(
                FlowState.IDENTIFIER_KNOWN,
                EventType.IDENTIFIER_RESOLVED,
                f"Identifier resolved for {purpose.value.lower()} code",
                IdentifierResolvedPayload(method="otp"),
            )

        try:
            issued = issue_code(self.db, identifier, purpose, self.channel)
        except AuthError as exc:
            flow.fail(exc, identifier=identifier)
            raise

        flow.advance(
            FlowState.CODE_OR_CREDENTIAL_PENDING,
            EventType.OTP_SENT,
            f"{purpose.value} code issued" + ("" if issued.delivered else " (delivery failed)"),
            OtpSentPayload(purpose=purpose.value, identifier=identifier, delivered=issued.delivered),
            risk_level=RiskLevel.LOW if issued.delivered else RiskLevel.MEDIUM,
        )

        return IssueOutcome(
            expires_in=issued.expires_in,
            delivered=issued.delivered,
            fallback_hint=issued.fallback_hint,
            delivery_error=issued.delivery_error.error_code if issued.delivery_error else None,
            dev_code=issued.code if settings.EXPOSE_DEV_OTP and not settings.is_production else None,
        )

    def verify_code(
        self,
        identifier: str,
        purpose: CodePurpose,
        code: str,
        provider_data: Optional[dict] = None,
    ) -> AuthOutcome:
        """
        Verify a one-time code (CodeOrCredentialPending -> Verified -> SessionIssued).

        SIGNUP creates the identity on first success. RESET_PASSCODE stops at
        Verified and returns a continuation token for the reset step.
        """
        flow = self._flow("otp", state=FlowState.CODE_OR_CREDENTIAL_PENDING)
        self._gate(flow, limits.OTP_VERIFY)

        is_new = False
        verified = None
        try:
            verified = verify_code(self.db, identifier, purpose, code)
            identity = verified.identity
            if identity is None:
                if purpose != CodePurpose.SIGNUP:
                    raise SignupRequiredError()
                identity = identity_crud.create_identity(self.db, identifier, provider_data)
                is_new = True
        except AuthError as exc:
            if verified is not None:
                flow.identity_id = verified.record.identity_id
            flow.fail(exc, identifier=identifier)
            raise

        flow.identity_id = identity.id
        if not identity.is_verified:
            identity.is_verified = True
            self.db.commit()

        if is_new:
            flow.advance(
                FlowState.VERIFIED,
                EventType.ACCOUNT_CREATED,
                "New account created from signup code",
                AccountCreatedPayload(os_id=identity.os_id, identifier=identifier),
            )
        else:
            flow.advance(
                FlowState.VERIFIED,
                EventType.OTP_VERIFIED,
                f"{purpose.value} code verified",
                OtpVerifiedPayload(purpose=purpose.value, identifier=identifier),
            )

        if purpose == CodePurpose.RESET_PASSCODE:
            return AuthOutcome(
                identity=identity,
                continuation_token=create_continuation_token(identity.id, RESET_PURPOSE),
            )
        return self._issue_session(flow, identity, "otp", is_new_identity=is_new)

    # Username resolution

    def identify(self, username: str) -> AuthOutcome:
        """
        Resolve a username (Start -> IdentifierKnown) and hand back a
        continuation token for the passcode or biometric step.
        """
        flow = self._flow("identify")
        self._gate(flow, limits.LOGIN)

        identity = None
        if identity_crud.validate_username(username) is None:
            identity = identity_crud.get_by_username(self.db, username)
        if identity is None:
            error = NotFoundError("No account with this username")
            flow.fail(error, identifier=username)
            raise error

        flow.identity_id = identity.id
        methods = self.available_methods(identity)
        flow.advance(
            FlowState.IDENTIFIER_KNOWN,
            EventType.IDENTIFIER_RESOLVED,
            "Username resolved for sign-in",
            IdentifierResolvedPayload(method="username", available_methods=methods),
        )
        return AuthOutcome(
            identity=identity,
            continuation_token=create_continuation_token(identity.id, LOGIN_PURPOSE),
            available_methods=methods,
        )

    def available_methods(self, identity: Identity) -> List[str]:
        methods = []
        if passcode_service.has_passcode(self.db, identity.id):
            methods.append("passcode")
        if self.webauthn.active_count(identity.id):
            methods.append("biometric")
        if identity.linked_identities:
            methods.append("otp")
        return methods

    # Passcode

    def login_with_passcode(self, continuation_token: str, passcode: str) -> AuthOutcome:
        """Verify a passcode (IdentifierKnown -> Verified -> SessionIssued)."""
        flow = self._flow("passcode", state=FlowState.IDENTIFIER_KNOWN)
        self._gate(flow, limits.PASSCODE_VERIFY)

        try:
            identity = self._resolve_continuation(flow, continuation_token, LOGIN_PURPOSE)
            passcode_service.verify_passcode(self.db, identity.id, passcode)
        except AuthError as exc:
            flow.fail(exc)
            raise

        flow.advance(
            FlowState.VERIFIED,
            EventType.PASSCODE_VERIFIED,
            "Passcode verified",
            PasscodeVerifiedPayload(),
        )
        return self._issue_session(flow, identity, "passcode")

    # Biometric

    def begin_biometric_login(self, continuation_token: str) -> Dict[str, Any]:
        """Issue an assertion challenge (IdentifierKnown -> CodeOrCredentialPending)."""
        flow = self._flow("biometric", state=FlowState.IDENTIFIER_KNOWN)
        try:
            identity = self._resolve_continuation(flow, continuation_token, LOGIN_PURPOSE)
            options = self.webauthn.begin_assertion(identity)
        except AuthError as exc:
            flow.fail(exc)
            raise

        flow.advance(
            FlowState.CODE_OR_CREDENTIAL_PENDING,
            EventType.BIOMETRIC_CHALLENGE_ISSUED,
            "Biometric sign-in challenge issued",
            BiometricChallengePayload(ceremony="assertion", allowed_credentials=len(options["allowCredentials"])),
        )
        return options

    def complete_biometric_login(self, assertion: AssertionCredential) -> AuthOutcome:
        """Verify an assertion (CodeOrCredentialPending -> Verified -> SessionIssued)."""
        flow = self._flow("biometric", state=FlowState.CODE_OR_CREDENTIAL_PENDING)
        self._gate(flow, limits.BIOMETRIC)

        try:
            credential = self.webauthn.complete_assertion(assertion)
            identity = identity_crud.get_identity(self.db, credential.identity_id)
            if identity is None:
                raise InvalidAssertionError("Unknown credential")
        except AuthError as exc:
            flow.fail(exc)
            raise

        flow.identity_id = identity.id
        flow.advance(
            FlowState.VERIFIED,
            EventType.BIOMETRIC_VERIFIED,
            f"Biometric assertion verified ({credential.device_name})",
            BiometricVerifiedPayload(credential_id=credential.credential_id, sign_count=credential.sign_count),
        )
        return self._issue_session(flow, identity, "biometric")

    # Authenticated account operations

    def complete_setup(self, identity: Identity, username: str, passcode: str, login_method: str) -> AuthOutcome:
        """
        Choose a username and passcode for a freshly signed-up identity.

        Returns a re-issued session with is_setup_complete=True.
        """
        if identity.is_setup_complete:
            error = AlreadyExistsError("Account setup is already complete")
            self._record_failure("setup", error, identity.id)
            raise error
        try:
            passcode_service.validate_passcode_format(passcode)
            identity_crud.set_username(self.db, identity, username)
        except AuthError as exc:
            self._record_failure("setup", exc, identity.id)
            raise
        passcode_service.set_or_change_passcode(self.db, identity.id, passcode)

        identity.is_setup_complete = True
        self.db.commit()
        self.db.refresh(identity)

        self._record(
            EventType.PASSCODE_SET,
            "Passcode set during account setup",
            PasscodeUpdatedPayload(operation="set"),
            identity.id,
        )
        self._record(
            EventType.SETUP_COMPLETED,
            "Account setup completed",
            SetupCompletedPayload(username=identity.username),
            identity.id,
        )
        return AuthOutcome(
            identity=identity,
            login_method=login_method,
            session_token=create_session_token(session_claims(identity, login_method)),
        )

    def change_passcode(self, identity: Identity, current_passcode: str, new_passcode: str) -> None:
        """Replace the passcode after re-verifying the current one."""
        flow = self._flow("passcode_change", state=FlowState.IDENTIFIER_KNOWN, identity_id=identity.id)
        self._gate(flow, limits.PASSCODE_VERIFY)

        try:
            passcode_service.validate_passcode_format(new_passcode)
            passcode_service.verify_passcode(self.db, identity.id, current_passcode)
        except AuthError as exc:
            flow.fail(exc)
            raise

        passcode_service.set_or_change_passcode(self.db, identity.id, new_passcode)
        self._record(
            EventType.PASSCODE_CHANGED,
            "Passcode changed",
            PasscodeUpdatedPayload(operation="change"),
            identity.id,
            RiskLevel.MEDIUM,
        )

    def reset_passcode(self, continuation_token: str, new_passcode: str) -> Identity:
        """Set a new passcode using the token from a verified RESET_PASSCODE code."""
        try:
            passcode_service.validate_passcode_format(new_passcode)
            identity_id = decode_continuation_token(continuation_token, RESET_PURPOSE)
            identity = identity_crud.get_identity(self.db, identity_id)
            if identity is None:
                raise NotFoundError("Account not found")
        except AuthError as exc:
            self._record_failure("passcode_reset", exc)
            raise

        passcode_service.set_or_change_passcode(self.db, identity.id, new_passcode)
        self._record(
            EventType.PASSCODE_RESET,
            "Passcode reset after code verification",
            PasscodeUpdatedPayload(operation="reset"),
            identity.id,
            RiskLevel.MEDIUM,
        )
        return identity

    def begin_biometric_registration(self, identity: Identity) -> Dict[str, Any]:
        try:
            options = self.webauthn.begin_registration(identity)
        except AuthError as exc:
            self._record_failure("biometric_registration", exc, identity.id)
            raise
        self._record(
            EventType.BIOMETRIC_CHALLENGE_ISSUED,
            "Biometric registration challenge issued",
            BiometricChallengePayload(ceremony="registration"),
            identity.id,
        )
        return options

    def complete_biometric_registration(self, identity: Identity, result: RegistrationCredential):
        try:
            credential = self.webauthn.complete_registration(identity, result)
        except AuthError as exc:
            self._record_failure("biometric_registration", exc, identity.id)
            raise

        self._record(
            EventType.BIOMETRIC_REGISTERED,
            f"Biometric credential registered ({credential.device_name})",
            BiometricRegisteredPayload(
                credential_id=credential.credential_id,
                device_name=credential.device_name,
                device_type=credential.device_type.value,
            ),
            identity.id,
        )
        return credential

    def remove_biometric(self, identity: Identity, credential_id: str) -> None:
        try:
            self.webauthn.remove_credential(identity.id, credential_id)
        except AuthError as exc:
            self._record_failure("biometric_removal", exc, identity.id)
            raise
        self._record(
            EventType.BIOMETRIC_REMOVED,
            "Biometric credential removed",
            BiometricRemovedPayload(credential_id=credential_id),
            identity.id,
            RiskLevel.MEDIUM,
        )

    def refresh_session(self, identity: Identity, login_method: str) -> str:
        """Re-issue a session from the identity's current state."""
        token = create_session_token(session_claims(identity, login_method))
        self._record(
            EventType.SESSION_REFRESH,
            "Session refreshed",
            SessionPayload(login_method=login_method),
            identity.id,
        )
        return token

    def logout(self, identity_id: UUID, login_method: Optional[str] = None) -> None:
        self._record(
            EventType.LOGOUT,
            "Signed out",
            SessionPayload(login_method=login_method),
            identity_id,
        )
