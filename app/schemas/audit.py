"""
Typed audit payloads and activity-feed schemas.

Each EventType has exactly one payload shape, tagged by ``kind`` so stored
payloads can be parsed back into the right model.
"""

from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Type, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter

from app.models.security_event import EventType, RiskLevel


class IdentifierResolvedPayload(BaseModel):
    kind: Literal["identifier_resolved"] = "identifier_resolved"
    method: str
    available_methods: List[str] = []


class OtpSentPayload(BaseModel):
    kind: Literal["otp_sent"] = "otp_sent"
    purpose: str
    identifier: str
    delivered: bool


class OtpVerifiedPayload(BaseModel):
    kind: Literal["otp_verified"] = "otp_verified"
    purpose: str
    identifier: str


class AccountCreatedPayload(BaseModel):
    kind: Literal["account_created"] = "account_created"
    os_id: str
    identifier: str


class PasscodeVerifiedPayload(BaseModel):
    kind: Literal["passcode_verified"] = "passcode_verified"


class PasscodeUpdatedPayload(BaseModel):
    kind: Literal["passcode_updated"] = "passcode_updated"
    operation: Literal["set", "change", "reset"]


class BiometricChallengePayload(BaseModel):
    kind: Literal["biometric_challenge"] = "biometric_challenge"
    ceremony: str
    allowed_credentials: int = 0


class BiometricVerifiedPayload(BaseModel):
    kind: Literal["biometric_verified"] = "biometric_verified"
    credential_id: str
    sign_count: int


class BiometricRegisteredPayload(BaseModel):
    kind: Literal["biometric_registered"] = "biometric_registered"
    credential_id: str
    device_name: str
    device_type: str


class BiometricRemovedPayload(BaseModel):
    kind: Literal["biometric_removed"] = "biometric_removed"
    credential_id: str


class LoginSuccessPayload(BaseModel):
    kind: Literal["login_success"] = "login_success"
    method: str
    is_new_identity: bool = False


class LoginFailedPayload(BaseModel):
    kind: Literal["login_failed"] = "login_failed"
    method: str
    reason: str
    identifier: Optional[str] = None
    replay_suspected: bool = False


class RateLimitPayload(BaseModel):
    kind: Literal["rate_limit_exceeded"] = "rate_limit_exceeded"
    endpoint_class: str
    limit: int
    window_seconds: int


class SetupCompletedPayload(BaseModel):
    kind: Literal["setup_completed"] = "setup_completed"
    username: str


class SessionPayload(BaseModel):
    kind: Literal["session"] = "session"
    login_method: Optional[str] = None


AuditPayload = Annotated[
    Union[
        IdentifierResolvedPayload,
        OtpSentPayload,
        OtpVerifiedPayload,
        AccountCreatedPayload,
        PasscodeVerifiedPayload,
        PasscodeUpdatedPayload,
        BiometricChallengePayload,
        BiometricVerifiedPayload,
        BiometricRegisteredPayload,
        BiometricRemovedPayload,
        LoginSuccessPayload,
        LoginFailedPayload,
        RateLimitPayload,
        SetupCompletedPayload,
        SessionPayload,
    ],
    Field(discriminator="kind"),
]

audit_payload_adapter = TypeAdapter(AuditPayload)

# The one payload shape allowed for each event type
EVENT_PAYLOADS: Dict[EventType, Type[BaseModel]] = {
    EventType.IDENTIFIER_RESOLVED: IdentifierResolvedPayload,
    EventType.OTP_SENT: OtpSentPayload,
    EventType.OTP_VERIFIED: OtpVerifiedPayload,
    EventType.ACCOUNT_CREATED: AccountCreatedPayload,
    EventType.PASSCODE_VERIFIED: PasscodeVerifiedPayload,
    EventType.PASSCODE_SET: PasscodeUpdatedPayload,
    EventType.PASSCODE_CHANGED: PasscodeUpdatedPayload,
    EventType.PASSCODE_RESET: PasscodeUpdatedPayload,
    EventType.BIOMETRIC_CHALLENGE_ISSUED: BiometricChallengePayload,
    EventType.BIOMETRIC_VERIFIED: BiometricVerifiedPayload,
    EventType.BIOMETRIC_REGISTERED: BiometricRegisteredPayload,
    EventType.BIOMETRIC_REMOVED: BiometricRemovedPayload,
    EventType.LOGIN_SUCCESS: LoginSuccessPayload,
    EventType.LOGIN_FAILED: LoginFailedPayload,
    EventType.RATE_LIMIT_EXCEEDED: RateLimitPayload,
    EventType.SETUP_COMPLETED: SetupCompletedPayload,
    EventType.SESSION_REFRESH: SessionPayload,
    EventType.LOGOUT: SessionPayload,
}


class SecurityEventResponse(BaseModel):
    """Single entry in the activity feed"""
    id: UUID
    event_type: EventType
    description: str
    payload: AuditPayload
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    risk_level: RiskLevel
    created_at: datetime

    class Config:
        from_attributes = True


class ActivitySummary(BaseModel):
    total: int
    by_risk_level: Dict[str, int]
    days: int


class ActivityResponse(BaseModel):
    success: bool = True
    events: List[SecurityEventResponse]
    page: int
    limit: int
    total: int
    summary: ActivitySummary
