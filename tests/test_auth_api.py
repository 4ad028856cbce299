"""
API tests for the authentication endpoints.

Tests:
- Signup, setup and sign-in over HTTP with the session cookie
- Stable error bodies and status codes
- Session inspection, refresh and logout
- Biometric registration, sign-in and credential management
- Health checks
"""

from starlette.requests import Request

from app.core.config import settings
from app.core.deps import get_client_ip
from app.core.security import decode_session_token
from app.models.security_event import EventType, SecurityEvent

API = settings.API_V1_STR


def signup(client, channel, identifier="telegram_123"):
    issued = client.post(f"{API}/auth/otp/issue", json={"identifier": identifier, "purpose": "SIGNUP"})
    assert issued.status_code == 200
    return client.post(
        f"{API}/auth/otp/verify",
        json={"identifier": identifier, "purpose": "SIGNUP", "code": channel.last_code, "first_name": "Ada"},
    )


def sign_in(client, username="ada_lovelace", passcode="482913"):
    identified = client.post(f"{API}/auth/identify", json={"username": username})
    assert identified.status_code == 200
    return client.post(
        f"{API}/auth/passcode/verify",
        json={"continuation_token": identified.json()["continuation_token"], "passcode": passcode},
    )


class TestSignupAndSetup:

    def test_signup_sets_session_cookie(self, client, channel):
        response = signup(client, channel)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["is_new_identity"] is True
        assert data["user"]["is_setup_complete"] is False
        assert data["user"]["os_id"].startswith("OS-")
        assert response.cookies.get(settings.SESSION_COOKIE_NAME) == data["session_token"]

        session = client.get(f"{API}/auth/session")
        assert session.status_code == 200
        assert session.json()["login_method"] == "otp"
        assert session.json()["user"]["id"] == data["user"]["id"]

    def test_issue_reports_delivery(self, client, channel):
        response = client.post(f"{API}/auth/otp/issue", json={"identifier": "telegram_123", "purpose": "SIGNUP"})

        data = response.json()
        assert data["delivered"] is True
        assert data["expires_in"] == 600
        assert data["dev_code"] is None
        assert channel.sent[0][0] == "123"
        assert data["delivery_error"] is None

    def test_issue_reports_undelivered_code(self, client, channel):
        channel.delivered = False
        response = client.post(f"{API}/auth/otp/issue", json={"identifier": "telegram_123", "purpose": "SIGNUP"})

        assert response.status_code == 200
        data = response.json()
        assert data["delivered"] is False
        assert data["delivery_error"] == "upstream_unavailable"
        assert data["fallback_hint"] == channel.fallback_hint

    def test_setup_then_sign_in_with_passcode(self, client, channel):
        signup(client, channel)

        setup = client.post(f"{API}/auth/setup", json={"username": "grace_hopper", "passcode": "271828"})
        assert setup.status_code == 200
        assert decode_session_token(setup.json()["session_token"])["is_setup_complete"] is True
        assert client.get(f"{API}/auth/session").json()["user"]["username"] == "grace_hopper"

        client.cookies.clear()
        response = sign_in(client, "grace_hopper", "271828")
        assert response.status_code == 200
        assert response.json()["user"]["username"] == "grace_hopper"

    def test_login_code_goes_to_linked_account_only(self, client, channel, ready_identity):
        response = client.post(
            f"{API}/auth/otp/issue",
            json={"identifier": "telegram_456", "purpose": "LOGIN", "recipient_handle": "attacker_chat"},
        )

        assert response.status_code == 200
        assert [recipient for recipient, _ in channel.sent] == ["456"]

    def test_setup_requires_session(self, client):
        response = client.post(f"{API}/auth/setup", json={"username": "grace_hopper", "passcode": "271828"})

        assert response.status_code == 401
        assert response.json()["error_code"] == "invalid_session"

    def test_setup_twice_conflicts(self, client, channel):
        signup(client, channel)
        client.post(f"{API}/auth/setup", json={"username": "grace_hopper", "passcode": "271828"})

        response = client.post(f"{API}/auth/setup", json={"username": "grace_hopper", "passcode": "000000"})
        assert response.status_code == 409
        assert response.json()["error_code"] == "already_exists"

    def test_check_username(self, client, ready_identity):
        taken = client.post(f"{API}/auth/check-username", json={"username": "ada_lovelace"}).json()
        short = client.post(f"{API}/auth/check-username", json={"username": "ada"}).json()
        free = client.post(f"{API}/auth/check-username", json={"username": "grace_hopper"}).json()

        assert taken["available"] is False
        assert short["available"] is False
        assert "6 characters" in short["reason"]
        assert free["available"] is True


class TestPasscodeEndpoints:

    def test_sign_in_with_passcode(self, client, ready_identity):
        response = sign_in(client)

        assert response.status_code == 200
        assert response.json()["user"]["id"] == str(ready_identity.id)
        assert client.get(f"{API}/auth/session").json()["login_method"] == "passcode"

    def test_change_passcode(self, client, ready_identity):
        sign_in(client)

        response = client.post(
            f"{API}/auth/passcode/change",
            json={"current_passcode": "482913", "new_passcode": "135790"},
        )
        assert response.status_code == 200

        client.cookies.clear()
        assert sign_in(client, passcode="482913").status_code == 401
        assert sign_in(client, passcode="135790").status_code == 200

    def test_reset_passcode_with_code(self, client, channel, ready_identity):
        client.post(f"{API}/auth/otp/issue", json={"identifier": "telegram_456", "purpose": "RESET_PASSCODE"})
        verified = client.post(
            f"{API}/auth/otp/verify",
            json={"identifier": "telegram_456", "purpose": "RESET_PASSCODE", "code": channel.last_code},
        )

        assert verified.status_code == 200
        assert verified.json()["session_token"] is None
        assert settings.SESSION_COOKIE_NAME not in verified.cookies

        reset = client.post(
            f"{API}/auth/passcode/reset",
            json={"continuation_token": verified.json()["continuation_token"], "new_passcode": "135790"},
        )
        assert reset.status_code == 200
        assert sign_in(client, passcode="135790").status_code == 200


class TestErrorResponses:

    def test_login_code_for_unknown_identifier(self, client):
        response = client.post(f"{API}/auth/otp/issue", json={"identifier": "telegram_999", "purpose": "LOGIN"})

        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error_code": "signup_required",
            "message": "No account exists for this identifier. Please sign up first.",
        }

    def test_wrong_passcode(self, client, ready_identity):
        response = sign_in(client, passcode="000000")

        assert response.status_code == 401
        assert response.json()["success"] is False
        assert response.json()["error_code"] == "invalid_credential"

    def test_wrong_code_is_invalid_credential(self, client, channel):
        client.post(f"{API}/auth/otp/issue", json={"identifier": "telegram_123", "purpose": "SIGNUP"})
        wrong = "100000" if channel.last_code != "100000" else "100001"

        response = client.post(
            f"{API}/auth/otp/verify",
            json={"identifier": "telegram_123", "purpose": "SIGNUP", "code": wrong},
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == "invalid_credential"
        assert "4 attempt(s) remaining" in response.json()["message"]

    def test_rate_limited_after_five_requests(self, client, ready_identity):
        for _ in range(5):
            assert client.post(f"{API}/auth/identify", json={"username": "ada_lovelace"}).status_code == 200

        response = client.post(f"{API}/auth/identify", json={"username": "ada_lovelace"})
        assert response.status_code == 429
        assert response.json()["error_code"] == "rate_limited"

    def test_forwarded_header_cannot_evade_limit(self, client, ready_identity):
        for attempt in range(5):
            response = client.post(
                f"{API}/auth/identify",
                json={"username": "ada_lovelace"},
                headers={"X-Forwarded-For": f"198.51.100.{attempt}"},
            )
            assert response.status_code == 200

        response = client.post(
            f"{API}/auth/identify",
            json={"username": "ada_lovelace"},
            headers={"X-Forwarded-For": "198.51.100.99"},
        )
        assert response.status_code == 429
        assert response.json()["error_code"] == "rate_limited"

    def test_trusted_proxy_hop_has_its_own_limit(self, client, ready_identity, monkeypatch):
        monkeypatch.setattr(settings, "TRUSTED_PROXIES", ["testclient"])
        for _ in range(5):
            client.post(f"{API}/auth/identify", json={"username": "ada_lovelace"}, headers={"X-Forwarded-For": "203.0.113.50"})

        response = client.post(
            f"{API}/auth/identify",
            json={"username": "ada_lovelace"},
            headers={"X-Forwarded-For": "203.0.113.50, 198.51.100.9"},
        )
        assert response.status_code == 200

    def test_malformed_code_is_validation_error(self, client):
        response = client.post(
            f"{API}/auth/otp/verify",
            json={"identifier": "telegram_123", "purpose": "SIGNUP", "code": "12ab56"},
        )

        assert response.status_code == 422
        data = response.json()
        assert data["success"] is False
        assert data["error_code"] == "invalid_request"
        assert data["errors"][0]["loc"][-1] == "code"

    def test_unknown_purpose_is_validation_error(self, client):
        response = client.post(f"{API}/auth/otp/issue", json={"identifier": "telegram_123", "purpose": "WHATEVER"})
        assert response.status_code == 422

    def test_tampered_session_cookie(self, client, ready_identity):
        token = sign_in(client).json()["session_token"]
        client.cookies.clear()
        client.cookies.set(settings.SESSION_COOKIE_NAME, token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB"))

        response = client.get(f"{API}/auth/session")
        assert response.status_code == 401
        assert response.json()["error_code"] == "signature_invalid"


class TestSessionManagement:

    def test_bearer_header_accepted(self, client, ready_identity):
        token = sign_in(client).json()["session_token"]
        client.cookies.clear()

        response = client.get(f"{API}/auth/session", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["user"]["username"] == "ada_lovelace"

    def test_refresh_reissues_session(self, client, ready_identity):
        sign_in(client)

        response = client.post(f"{API}/auth/refresh")
        assert response.status_code == 200
        claims = decode_session_token(response.json()["session_token"])
        assert claims["sub"] == str(ready_identity.id)
        assert claims["login_method"] == "passcode"

    def test_logout_clears_cookie(self, client, ready_identity):
        sign_in(client)

        response = client.post(f"{API}/auth/logout")
        assert response.status_code == 200
        assert settings.SESSION_COOKIE_NAME not in client.cookies

        after = client.get(f"{API}/auth/session")
        assert after.status_code == 401
        assert after.json()["error_code"] == "invalid_session"


class TestBiometricEndpoints:

    def register(self, client, authenticator):
        begin = client.post(f"{API}/auth/webauthn/register/begin")
        assert begin.status_code == 200
        return client.post(
            f"{API}/auth/webauthn/register/complete",
            json={"credential": authenticator.register(begin.json()["options"], device_name="Pixel")},
        )

    def test_register_and_sign_in(self, client, ready_identity, authenticator):
        sign_in(client)
        registered = self.register(client, authenticator)
        assert registered.status_code == 200
        assert registered.json()["credential"]["credential_id"] == authenticator.credential_id
        assert registered.json()["credential"]["device_name"] == "Pixel"

        client.cookies.clear()
        identified = client.post(f"{API}/auth/identify", json={"username": "ada_lovelace"}).json()
        assert "biometric" in identified["available_methods"]

        challenge = client.post(
            f"{API}/auth/webauthn/challenge",
            json={"continuation_token": identified["continuation_token"]},
        )
        assert challenge.status_code == 200

        response = client.post(
            f"{API}/auth/webauthn/complete",
            json={"credential": authenticator.assertion(challenge.json()["options"])},
        )
        assert response.status_code == 200
        assert client.get(f"{API}/auth/session").json()["login_method"] == "biometric"

    def test_replayed_assertion_rejected(self, client, ready_identity, authenticator):
        sign_in(client)
        self.register(client, authenticator)
        token = client.post(f"{API}/auth/identify", json={"username": "ada_lovelace"}).json()["continuation_token"]
        options = client.post(f"{API}/auth/webauthn/challenge", json={"continuation_token": token}).json()["options"]
        assertion = authenticator.assertion(options)

        assert client.post(f"{API}/auth/webauthn/complete", json={"credential": assertion}).status_code == 200
        replay = client.post(f"{API}/auth/webauthn/complete", json={"credential": assertion})
        assert replay.status_code == 401
        assert replay.json()["error_code"] == "invalid_assertion"

    def test_numeric_challenge_is_invalid_assertion(self, client, db_session, ready_identity, authenticator):
        sign_in(client)
        client.post(f"{API}/auth/webauthn/register/begin")

        response = client.post(
            f"{API}/auth/webauthn/register/complete",
            json={"credential": authenticator.register({"challenge": 12345})},
        )

        assert response.status_code == 401
        assert response.json()["error_code"] == "invalid_assertion"
        failure = db_session.query(SecurityEvent).filter(SecurityEvent.event_type == EventType.LOGIN_FAILED).one()
        assert failure.payload["method"] == "biometric_registration"

    def test_challenge_without_credentials(self, client, ready_identity):
        token = client.post(f"{API}/auth/identify", json={"username": "ada_lovelace"}).json()["continuation_token"]

        response = client.post(f"{API}/auth/webauthn/challenge", json={"continuation_token": token})
        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"

    def test_list_and_remove_credentials(self, client, ready_identity, authenticator):
        sign_in(client)
        self.register(client, authenticator)

        listed = client.get(f"{API}/auth/webauthn/credentials").json()
        assert [c["credential_id"] for c in listed["credentials"]] == [authenticator.credential_id]
        assert listed["max_credentials"] == 5

        removed = client.delete(f"{API}/auth/webauthn/credentials/{authenticator.credential_id}")
        assert removed.status_code == 200
        assert client.get(f"{API}/auth/webauthn/credentials").json()["credentials"] == []

        missing = client.delete(f"{API}/auth/webauthn/credentials/{authenticator.credential_id}")
        assert missing.status_code == 404

    def test_registration_requires_session(self, client):
        response = client.post(f"{API}/auth/webauthn/register/begin")
        assert response.status_code == 401


class TestClientAddress:

    @staticmethod
    def request(peer, forwarded_for=None):
        headers = [(b"x-forwarded-for", forwarded_for.encode())] if forwarded_for else []
        return Request({"type": "http", "headers": headers, "client": (peer, 40000)})

    def test_header_ignored_without_trusted_proxies(self):
        assert get_client_ip(self.request("203.0.113.7", "198.51.100.9")) == "203.0.113.7"

    def test_untrusted_peer_cannot_forward(self, monkeypatch):
        monkeypatch.setattr(settings, "TRUSTED_PROXIES", ["10.0.0.0/8"])
        assert get_client_ip(self.request("203.0.113.7", "198.51.100.9")) == "203.0.113.7"

    def test_trusted_proxy_hop_is_used(self, monkeypatch):
        monkeypatch.setattr(settings, "TRUSTED_PROXIES", ["10.0.0.0/8"])
        forwarded = "1.2.3.4, 198.51.100.9, 10.0.0.5"
        assert get_client_ip(self.request("10.0.0.2", forwarded)) == "198.51.100.9"


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_detailed_health(self, client):
        data = client.get("/health/detailed").json()

        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["rate_limiter"]["message"] == "In-memory rate limiter"

    def test_root(self, client):
        assert client.get("/").status_code == 200
