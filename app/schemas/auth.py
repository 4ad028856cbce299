"""
Pydantic schemas for authentication endpoints.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator
import re

from app.models.one_time_code import CodePurpose


def _six_digits(v: str, label: str) -> str:
    if not re.fullmatch(r'[0-9]{6}', v):
        raise ValueError(f'{label} must be exactly 6 ASCII digits')
    return v


class IssueCodeRequest(BaseModel):
    """Request a one-time code for an external-account identifier"""
    identifier: str = Field(..., min_length=3, max_length=160, description="e.g. telegram_123456789")
    purpose: CodePurpose


class IssueCodeResponse(BaseModel):
    success: bool = True
    message: str
    expires_in: int
    delivered: bool
    fallback_hint: Optional[str] = None
    delivery_error: Optional[str] = None
    dev_code: Optional[str] = None


class VerifyCodeRequest(BaseModel):
    """Verify a 6-digit one-time code"""
    identifier: str = Field(..., min_length=3, max_length=160)
    purpose: CodePurpose
    code: str = Field(..., min_length=6, max_length=6, description="6-digit code")
    first_name: Optional[str] = Field(None, max_length=100, description="Provider profile name stored on signup")

    @field_validator('code')
    @classmethod
    def validate_code_format(cls, v: str) -> str:
        return _six_digits(v, 'Code')


class IdentifyRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=40)


class IdentifyResponse(BaseModel):
    success: bool = True
    continuation_token: str
    available_methods: List[str]


class CheckUsernameRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=40)


class CheckUsernameResponse(BaseModel):
    success: bool = True
    username: str
    available: bool
    reason: Optional[str] = None


class PasscodeVerifyRequest(BaseModel):
    """Passcode step of a username sign-in, after /auth/identify"""
    continuation_token: str
    passcode: str = Field(..., min_length=6, max_length=6)


class SetupAccountRequest(BaseModel):
    username: str = Field(..., min_length=6, max_length=20)
    passcode: str = Field(..., min_length=6, max_length=6)

    @field_validator('passcode')
    @classmethod
    def validate_passcode_format(cls, v: str) -> str:
        return _six_digits(v, 'Passcode')


class PasscodeChangeRequest(BaseModel):
    current_passcode: str = Field(..., min_length=6, max_length=6)
    new_passcode: str = Field(..., min_length=6, max_length=6)

    @field_validator('new_passcode')
    @classmethod
    def validate_passcode_format(cls, v: str) -> str:
        return _six_digits(v, 'Passcode')


class PasscodeResetRequest(BaseModel):
    continuation_token: str
    new_passcode: str = Field(..., min_length=6, max_length=6)

    @field_validator('new_passcode')
    @classmethod
    def validate_passcode_format(cls, v: str) -> str:
        return _six_digits(v, 'Passcode')


class IdentityResponse(BaseModel):
    id: UUID
    os_id: str
    username: Optional[str] = None
    is_setup_complete: bool
    is_verified: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AuthResponse(BaseModel):
    """Successful authentication; the session token is also set as a cookie"""
    success: bool = True
    message: str
    session_token: Optional[str] = None
    continuation_token: Optional[str] = None
    is_new_identity: bool = False
    user: IdentityResponse


class SessionResponse(BaseModel):
    success: bool = True
    login_method: Optional[str] = None
    expires_at: datetime
    user: IdentityResponse


class MessageResponse(BaseModel):
    success: bool = True
    message: str
