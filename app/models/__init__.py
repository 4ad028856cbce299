"""
Database models package.
"""

from app.models.identity import Identity, LinkedIdentity
from app.models.one_time_code import OneTimeCode, CodePurpose
from app.models.passcode import PasscodeCredential
from app.models.biometric import BiometricCredential, AuthChallenge, DeviceType, CeremonyType
from app.models.security_event import SecurityEvent, EventType, RiskLevel

__all__ = [
    "Identity",
    "LinkedIdentity",
    "OneTimeCode",
    "CodePurpose",
    "PasscodeCredential",
    "BiometricCredential",
    "AuthChallenge",
    "DeviceType",
    "CeremonyType",
    "SecurityEvent",
    "EventType",
    "RiskLevel",
]
