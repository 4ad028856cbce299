"""
Tests for the biometric challenge-response service.

Tests:
- Registration and assertion with ECDSA P-256 and Ed25519 keys
- Challenge binding, expiry and single use
- Origin, relying party and user presence checks
- Counter replay detection
- Cross-account credential use
- Credential quota and removal
"""

import struct
from datetime import timedelta

import pytest

from app.core.database import utcnow
from app.core.errors import (
    AlreadyExistsError,
    ExpiredError,
    InvalidAssertionError,
    InvalidRequestError,
    NotFoundError,
    QuotaExceededError,
)
from app.core.security import b64url_encode
from app.crud import identity as identity_crud
from app.models.biometric import AuthChallenge, BiometricCredential
from app.schemas.webauthn import AssertionCredential, RegistrationCredential
from app.services.webauthn_service import WebAuthnService, parse_authenticator_data


def register(service, identity, authenticator, **kwargs):
    options = service.begin_registration(identity)
    return service.complete_registration(identity, RegistrationCredential(**authenticator.register(options, **kwargs)))


class TestRegistration:

    @pytest.mark.parametrize("algorithm", ["es256", "ed25519"])
    def test_register_credential(self, db_session, identity, authenticator_factory, algorithm):
        service = WebAuthnService(db_session)
        authenticator = authenticator_factory(algorithm)

        credential = register(service, identity, authenticator)

        assert credential.credential_id == authenticator.credential_id
        assert credential.identity_id == identity.id
        assert credential.is_active is True
        assert credential.sign_count == 0
        assert service.active_count(identity.id) == 1

    def test_registration_options_bind_identity(self, db_session, identity):
        options = WebAuthnService(db_session).begin_registration(identity)

        assert options["rp"]["id"] == "localhost"
        assert options["user"]["id"] == b64url_encode(identity.id.bytes)
        assert {param["alg"] for param in options["pubKeyCredParams"]} == {-7, -8}
        assert db_session.query(AuthChallenge).count() == 1

    def test_duplicate_registration_rejected(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        register(service, identity, authenticator)

        with pytest.raises(AlreadyExistsError):
            register(service, identity, authenticator)

    def test_authenticator_registered_to_other_account_rejected(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        other = identity_crud.create_identity(db_session, "telegram_777")
        register(service, identity, authenticator)

        with pytest.raises(AlreadyExistsError):
            register(service, other, authenticator)

    def test_bad_signature_rejected(self, db_session, identity, authenticator, authenticator_factory):
        service = WebAuthnService(db_session)
        options = service.begin_registration(identity)
        result = authenticator.register(options)
        result["public_key"] = authenticator_factory().public_key

        with pytest.raises(InvalidAssertionError):
            service.complete_registration(identity, RegistrationCredential(**result))

    def test_unsupported_key_rejected(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        options = service.begin_registration(identity)
        result = authenticator.register(options)
        result["public_key"] = b64url_encode(b"not a key")

        with pytest.raises(InvalidRequestError):
            service.complete_registration(identity, RegistrationCredential(**result))

    def test_wrong_origin_rejected(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        options = service.begin_registration(identity)

        with pytest.raises(InvalidAssertionError):
            service.complete_registration(
                identity, RegistrationCredential(**authenticator.register(options, origin="https://evil.example"))
            )

    def test_user_presence_required(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        options = service.begin_registration(identity)

        with pytest.raises(InvalidAssertionError):
            service.complete_registration(identity, RegistrationCredential(**authenticator.register(options, flags=0x00)))

    def test_other_relying_party_rejected(self, db_session, identity, authenticator_factory):
        service = WebAuthnService(db_session)
        authenticator = authenticator_factory(rp_id="evil.example")
        options = service.begin_registration(identity)

        with pytest.raises(InvalidAssertionError):
            service.complete_registration(identity, RegistrationCredential(**authenticator.register(options)))

    def test_challenge_for_other_identity_rejected(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        other = identity_crud.create_identity(db_session, "telegram_777")
        options = service.begin_registration(other)

        with pytest.raises(InvalidAssertionError):
            service.complete_registration(identity, RegistrationCredential(**authenticator.register(options)))

    def test_expired_registration_challenge(self, db_session, identity, authenticator):
        now = utcnow()
        service = WebAuthnService(db_session, clock=lambda: now)
        options = service.begin_registration(identity)

        later = WebAuthnService(db_session, clock=lambda: now + timedelta(seconds=301))
        with pytest.raises(ExpiredError):
            later.complete_registration(identity, RegistrationCredential(**authenticator.register(options)))


class TestQuota:

    def test_sixth_credential_rejected_and_removal_frees_one_slot(self, db_session, identity, authenticator_factory):
        service = WebAuthnService(db_session)
        authenticators = [authenticator_factory() for _ in range(5)]
        for authenticator in authenticators:
            register(service, identity, authenticator)

        with pytest.raises(QuotaExceededError):
            service.begin_registration(identity)

        service.remove_credential(identity.id, authenticators[0].credential_id)
        register(service, identity, authenticator_factory())

        with pytest.raises(QuotaExceededError):
            service.begin_registration(identity)
        assert service.active_count(identity.id) == 5

    def test_quota_rechecked_at_completion(self, db_session, identity, authenticator_factory):
        service = WebAuthnService(db_session)
        for _ in range(4):
            register(service, identity, authenticator_factory())

        pending = [service.begin_registration(identity) for _ in range(2)]
        first, second = authenticator_factory(), authenticator_factory()
        service.complete_registration(identity, RegistrationCredential(**first.register(pending[0])))

        with pytest.raises(QuotaExceededError):
            service.complete_registration(identity, RegistrationCredential(**second.register(pending[1])))

    def test_removed_credential_can_be_registered_again(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        register(service, identity, authenticator)
        service.remove_credential(identity.id, authenticator.credential_id)

        credential = register(service, identity, authenticator)

        assert credential.is_active is True
        assert db_session.query(BiometricCredential).count() == 1

    def test_remove_requires_ownership(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        other = identity_crud.create_identity(db_session, "telegram_777")
        register(service, identity, authenticator)

        with pytest.raises(NotFoundError):
            service.remove_credential(other.id, authenticator.credential_id)
        assert service.active_count(identity.id) == 1


class TestAssertion:

    @pytest.mark.parametrize("algorithm", ["es256", "ed25519"])
    def test_assertion_succeeds(self, db_session, identity, authenticator_factory, algorithm):
        service = WebAuthnService(db_session)
        authenticator = authenticator_factory(algorithm)
        register(service, identity, authenticator)

        options = service.begin_assertion(identity)
        credential = service.complete_assertion(AssertionCredential(**authenticator.assertion(options)))

        assert credential.identity_id == identity.id
        assert credential.sign_count == 1
        assert credential.last_used_at is not None
        assert options["allowCredentials"] == [{"type": "public-key", "id": authenticator.credential_id}]

    def test_begin_assertion_without_credentials(self, db_session, identity):
        with pytest.raises(NotFoundError):
            WebAuthnService(db_session).begin_assertion(identity)

    def test_challenge_cannot_be_reused(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        register(service, identity, authenticator)
        options = service.begin_assertion(identity)
        service.complete_assertion(AssertionCredential(**authenticator.assertion(options)))

        with pytest.raises(InvalidAssertionError) as exc_info:
            service.complete_assertion(AssertionCredential(**authenticator.assertion(options)))
        assert exc_info.value.replay is True

    def test_counter_must_advance(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        register(service, identity, authenticator)
        service.complete_assertion(AssertionCredential(**authenticator.assertion(service.begin_assertion(identity), sign_count=10)))

        options = service.begin_assertion(identity)
        with pytest.raises(InvalidAssertionError) as exc_info:
            service.complete_assertion(AssertionCredential(**authenticator.assertion(options, sign_count=10)))
        assert exc_info.value.replay is True

    def test_zero_counter_authenticators_allowed(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        register(service, identity, authenticator)

        for _ in range(2):
            options = service.begin_assertion(identity)
            service.complete_assertion(AssertionCredential(**authenticator.assertion(options, sign_count=0)))

    def test_expired_assertion_challenge(self, db_session, identity, authenticator):
        now = utcnow()
        service = WebAuthnService(db_session, clock=lambda: now)
        register(service, identity, authenticator)
        options = service.begin_assertion(identity)

        later = WebAuthnService(db_session, clock=lambda: now + timedelta(minutes=6))
        with pytest.raises(ExpiredError):
            later.complete_assertion(AssertionCredential(**authenticator.assertion(options)))

    @pytest.mark.parametrize("challenge", [12345, None, ["abc"]])
    def test_non_string_challenge_rejected(self, db_session, identity, authenticator, challenge):
        service = WebAuthnService(db_session)
        register(service, identity, authenticator)
        service.begin_assertion(identity)

        with pytest.raises(InvalidAssertionError):
            service.complete_assertion(AssertionCredential(**authenticator.assertion({"challenge": challenge})))

    def test_forged_challenge_rejected(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        register(service, identity, authenticator)
        service.begin_assertion(identity)

        forged = {"challenge": b64url_encode(b"\x00" * 64)}
        with pytest.raises(InvalidAssertionError):
            service.complete_assertion(AssertionCredential(**authenticator.assertion(forged)))

    def test_signature_from_other_key_rejected(self, db_session, identity, authenticator, authenticator_factory):
        service = WebAuthnService(db_session)
        register(service, identity, authenticator)
        options = service.begin_assertion(identity)

        impostor = authenticator_factory()
        result = impostor.assertion(options, credential_id=authenticator.credential_id)
        with pytest.raises(InvalidAssertionError):
            service.complete_assertion(AssertionCredential(**result))

    def test_unknown_credential_rejected(self, db_session, identity, authenticator, authenticator_factory):
        service = WebAuthnService(db_session)
        register(service, identity, authenticator)
        options = service.begin_assertion(identity)

        with pytest.raises(InvalidAssertionError):
            service.complete_assertion(AssertionCredential(**authenticator_factory().assertion(options)))

    def test_removed_credential_cannot_assert(self, db_session, identity, authenticator):
        service = WebAuthnService(db_session)
        register(service, identity, authenticator)
        options = service.begin_assertion(identity)
        service.remove_credential(identity.id, authenticator.credential_id)

        with pytest.raises(InvalidAssertionError):
            service.complete_assertion(AssertionCredential(**authenticator.assertion(options)))

    def test_credential_of_account_a_cannot_sign_in_account_b(self, db_session, identity, authenticator_factory):
        service = WebAuthnService(db_session)
        other = identity_crud.create_identity(db_session, "telegram_777")
        alice_key, bob_key = authenticator_factory(), authenticator_factory()
        register(service, identity, alice_key)
        register(service, other, bob_key)

        bob_options = service.begin_assertion(other)
        with pytest.raises(InvalidAssertionError):
            service.complete_assertion(AssertionCredential(**alice_key.assertion(bob_options)))

        result = alice_key.assertion(bob_options)
        result["user_handle"] = b64url_encode(other.id.bytes)
        with pytest.raises(InvalidAssertionError):
            service.complete_assertion(AssertionCredential(**result))


class TestChallengeCleanup:

    def test_cleanup_removes_old_challenges(self, db_session, identity):
        now = utcnow()
        WebAuthnService(db_session, clock=lambda: now - timedelta(days=2)).begin_registration(identity)
        WebAuthnService(db_session).begin_registration(identity)

        assert WebAuthnService(db_session).cleanup_challenges() == 1
        assert db_session.query(AuthChallenge).count() == 1


class TestAuthenticatorData:

    def test_parses_flags_and_counter(self):
        parsed = parse_authenticator_data(b"\x11" * 32 + bytes([0x05]) + struct.pack(">I", 42))

        assert parsed.rp_id_hash == b"\x11" * 32
        assert parsed.user_present is True
        assert parsed.user_verified is True
        assert parsed.sign_count == 42

    def test_presence_without_verification(self):
        parsed = parse_authenticator_data(b"\x00" * 32 + bytes([0x01]) + struct.pack(">I", 0))
        assert parsed.user_present is True
        assert parsed.user_verified is False

    def test_too_short_rejected(self):
        with pytest.raises(InvalidAssertionError):
            parse_authenticator_data(b"\x00" * 36)
