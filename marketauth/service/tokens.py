"""Compact HS256 token codec and the stateless access-token issuer."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from marketauth.config import PrincipalKind
from marketauth.logging import get_logger
from marketauth.service.errors import InvalidTokenError
from marketauth.storage.models import AccessClaims, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def encode_jwt(payload: dict[str, Any], secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(secret, signing_input)}"


def decode_jwt(
    token: str,
    secret: str,
    *,
    issuer: str,
    token_type: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Verify signature, issuer, type and expiry; return the claims.

    Raises InvalidTokenError with reason ``malformed`` or ``expired``.
    """
    if not isinstance(token, str):
        raise InvalidTokenError(InvalidTokenError.MALFORMED)
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError:
        raise InvalidTokenError(InvalidTokenError.MALFORMED) from None

    # Reject anything but HS256 to prevent algorithm confusion
    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, UnicodeDecodeError):
        raise InvalidTokenError(InvalidTokenError.MALFORMED) from None
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        logger.warning(
            "jwt_invalid_algorithm",
            alg=header.get("alg") if isinstance(header, dict) else None,
        )
        raise InvalidTokenError(InvalidTokenError.MALFORMED)

    expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
    if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
        raise InvalidTokenError(InvalidTokenError.MALFORMED)
    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning("jwt_payload_decode_failed", error=str(exc))
        raise InvalidTokenError(InvalidTokenError.MALFORMED) from None
    if not isinstance(payload, dict):
        raise InvalidTokenError(InvalidTokenError.MALFORMED)
    if payload.get("iss") != issuer or payload.get("token_type") != token_type:
        raise InvalidTokenError(InvalidTokenError.MALFORMED)
    try:
        exp_ts = float(payload["exp"])
        float(payload["iat"])
    except (KeyError, TypeError, ValueError):
        raise InvalidTokenError(InvalidTokenError.MALFORMED) from None
    current = (now or utcnow()).timestamp()
    if exp_ts <= current:
        raise InvalidTokenError(InvalidTokenError.EXPIRED)
    return payload


def timestamp_to_datetime(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class AccessTokenIssuer:
    """Signs and verifies short-lived bearer tokens; never touches a store."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        ttl: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("access token secret is required")
        self._secret = secret
        self.issuer = issuer
        self.ttl = ttl
        self._clock = clock

    def issue(self, principal_id: str, kind: PrincipalKind | str) -> tuple[str, datetime]:
        """Return the signed token and its expiry."""
        now = self._clock()
        iat = int(now.timestamp())
        exp = iat + int(self.ttl.total_seconds())
        payload = {
            "iss": self.issuer,
            "id": str(principal_id),
            "kind": PrincipalKind(kind).value,
            "token_type": ACCESS_TOKEN_TYPE,
            "iat": iat,
            "exp": exp,
        }
        return encode_jwt(payload, self._secret), timestamp_to_datetime(exp)

    def verify(self, token: str) -> AccessClaims:
        payload = decode_jwt(
            token,
            self._secret,
            issuer=self.issuer,
            token_type=ACCESS_TOKEN_TYPE,
            now=self._clock(),
        )
        principal_id = payload.get("id")
        try:
            kind = PrincipalKind(payload.get("kind"))
        except ValueError:
            raise InvalidTokenError(InvalidTokenError.MALFORMED) from None
        if not principal_id or not isinstance(principal_id, str):
            raise InvalidTokenError(InvalidTokenError.MALFORMED)
        return AccessClaims(
            principal_id=principal_id,
            kind=kind,
            issued_at=timestamp_to_datetime(payload["iat"]),
            expires_at=timestamp_to_datetime(payload["exp"]),
        )
