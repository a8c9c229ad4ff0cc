"""Unit tests for the access token issuer and the HS256 codec."""

import base64
import json
from datetime import timedelta

import pytest

from marketauth.config import PrincipalKind
from marketauth.service.errors import InvalidTokenError
from marketauth.service.tokens import AccessTokenIssuer, decode_jwt, encode_jwt

SECRET = "access-secret-for-unit-tests-0123456789"


@pytest.fixture
def issuer(clock):
    return AccessTokenIssuer(SECRET, issuer="marketauth", ttl=timedelta(minutes=15), clock=clock)


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestAccessTokenIssuer:
    def test_issue_then_verify_round_trip(self, issuer, clock):
        token, expires_at = issuer.issue("p-1", PrincipalKind.RESTAURANT)
        claims = issuer.verify(token)

        assert claims.principal_id == "p-1"
        assert claims.kind is PrincipalKind.RESTAURANT
        assert claims.issued_at == clock.current
        assert claims.expires_at == expires_at == clock.current + timedelta(minutes=15)

    def test_wire_claims(self, issuer):
        token, _ = issuer.issue("p-1", "customer")
        payload = _payload(token)

        assert payload["id"] == "p-1"
        assert payload["kind"] == "customer"
        assert payload["token_type"] == "access"
        assert payload["iss"] == "marketauth"
        assert payload["exp"] - payload["iat"] == 15 * 60

    def test_verification_needs_only_token_and_secret(self, issuer, clock):
        token, _ = issuer.issue("p-1", PrincipalKind.STAFF)
        fresh = AccessTokenIssuer(SECRET, issuer="marketauth", clock=clock)

        assert fresh.verify(token).principal_id == "p-1"

    def test_expired_token_rejected(self, issuer, clock):
        token, _ = issuer.issue("p-1", PrincipalKind.CUSTOMER)
        clock.advance(minutes=15)

        with pytest.raises(InvalidTokenError) as excinfo:
            issuer.verify(token)
        assert excinfo.value.reason == InvalidTokenError.EXPIRED

    def test_wrong_secret_rejected(self, issuer, clock):
        token, _ = issuer.issue("p-1", PrincipalKind.CUSTOMER)
        other = AccessTokenIssuer("another-secret-entirely-0123456789", issuer="marketauth", clock=clock)

        with pytest.raises(InvalidTokenError) as excinfo:
            other.verify(token)
        assert excinfo.value.reason == InvalidTokenError.MALFORMED

    def test_tampered_payload_rejected(self, issuer):
        token, _ = issuer.issue("p-1", PrincipalKind.CUSTOMER)
        header, payload, sig = token.split(".")
        forged = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        forged["kind"] = "super_admin"
        forged_segment = base64.urlsafe_b64encode(
            json.dumps(forged, separators=(",", ":")).encode()
        ).decode().rstrip("=")

        with pytest.raises(InvalidTokenError):
            issuer.verify(f"{header}.{forged_segment}.{sig}")

    def test_refresh_token_is_not_an_access_token(self, issuer, clock):
        now = int(clock.current.timestamp())
        token = encode_jwt(
            {
                "iss": "marketauth",
                "sub": "p-1",
                "id": "p-1",
                "kind": "customer",
                "jti": "rt:p-1:abc",
                "token_type": "refresh",
                "iat": now,
                "exp": now + 600,
            },
            SECRET,
        )

        with pytest.raises(InvalidTokenError) as excinfo:
            issuer.verify(token)
        assert excinfo.value.reason == InvalidTokenError.MALFORMED

    def test_unknown_kind_rejected(self, issuer, clock):
        now = int(clock.current.timestamp())
        token = encode_jwt(
            {"iss": "marketauth", "id": "p-1", "kind": "courier", "token_type": "access",
             "iat": now, "exp": now + 60},
            SECRET,
        )

        with pytest.raises(InvalidTokenError):
            issuer.verify(token)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", None, 42])
    def test_garbage_is_malformed(self, issuer, garbage):
        with pytest.raises(InvalidTokenError) as excinfo:
            issuer.verify(garbage)
        assert excinfo.value.reason == InvalidTokenError.MALFORMED

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            AccessTokenIssuer("", issuer="marketauth")


class TestCodec:
    def test_non_hs256_header_rejected(self, clock):
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        token = encode_jwt({"iss": "x"}, SECRET)
        _, payload, sig = token.split(".")

        with pytest.raises(InvalidTokenError):
            decode_jwt(f"{header}.{payload}.{sig}", SECRET, issuer="x", token_type="access", now=clock())

    def test_wrong_issuer_rejected(self, clock):
        now = int(clock.current.timestamp())
        token = encode_jwt(
            {"iss": "elsewhere", "token_type": "access", "iat": now, "exp": now + 60}, SECRET
        )

        with pytest.raises(InvalidTokenError):
            decode_jwt(token, SECRET, issuer="marketauth", token_type="access", now=clock())

    def test_missing_expiry_is_malformed(self, clock):
        token = encode_jwt({"iss": "marketauth", "token_type": "access"}, SECRET)

        with pytest.raises(InvalidTokenError) as excinfo:
            decode_jwt(token, SECRET, issuer="marketauth", token_type="access", now=clock())
        assert excinfo.value.reason == InvalidTokenError.MALFORMED
