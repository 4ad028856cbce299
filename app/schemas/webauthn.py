"""
Pydantic schemas for biometric (WebAuthn-style) ceremonies.

Binary fields travel as unpadded base64url strings.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.models.biometric import DeviceType


class RegistrationCredential(BaseModel):
    """Result of a registration ceremony on the client"""
    credential_id: str = Field(..., min_length=1, max_length=512)
    public_key: str = Field(..., description="SubjectPublicKeyInfo DER, base64url")
    client_data_json: str
    authenticator_data: str
    signature: str
    device_name: str = Field("My device", min_length=1, max_length=100)
    device_type: DeviceType = DeviceType.OTHER


class AssertionCredential(BaseModel):
    """Result of an assertion ceremony on the client"""
    credential_id: str = Field(..., min_length=1, max_length=512)
    client_data_json: str
    authenticator_data: str
    signature: str
    user_handle: Optional[str] = None


class BiometricChallengeRequest(BaseModel):
    """Start a biometric login for an identity resolved by /auth/identify"""
    continuation_token: str


class BiometricCompleteRequest(BaseModel):
    credential: AssertionCredential


class RegistrationCompleteRequest(BaseModel):
    credential: RegistrationCredential


class CeremonyOptionsResponse(BaseModel):
    success: bool = True
    options: Dict[str, Any]


class BiometricCredentialResponse(BaseModel):
    credential_id: str
    device_name: str
    device_type: DeviceType
    created_at: datetime
    last_used_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BiometricCredentialListResponse(BaseModel):
    success: bool = True
    credentials: List[BiometricCredentialResponse]
    max_credentials: int


class RegistrationCompleteResponse(BaseModel):
    success: bool = True
    credential: BiometricCredentialResponse
