from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from marketauth.config import PrincipalKind, RevocationMode
from marketauth.logging import get_logger
from marketauth.service.errors import InvalidTokenError, ValidationError
from marketauth.service.tokens import REFRESH_TOKEN_TYPE, timestamp_to_datetime, decode_jwt, encode_jwt
from marketauth.storage.errors import StoreUnavailable
from marketauth.storage.models import RefreshClaims, utcnow

logger = get_logger(__name__)

KEY_PREFIX = "rt"
LIVE_MARKER = "valid"


class RevocationStore(Protocol):
    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> int: ...

    async def scan_delete(self, prefix: str) -> int: ...


def principal_prefix(principal_id: str) -> str:
    return f"{KEY_PREFIX}:{principal_id}:"


def revocation_key(principal_id: str, token_id: str) -> str:
    return f"{principal_prefix(principal_id)}{token_id}"


def _check_principal_id(principal_id: str) -> str:
    principal_id = str(principal_id)
    # A colon would let one principal's prefix cover another's keys
    if not principal_id or ":" in principal_id or "*" in principal_id:
        raise ValidationError("invalid principal id", detail={"principal_id": principal_id})
    return principal_id


class RefreshTokenManager:
    """Issues, rotates and revokes refresh tokens backed by a revocation store.

    A refresh token is only honored while its record ``rt:<pid>:<tid>`` is live.
    In ``RevocationMode.SIGNATURE_ONLY`` the record check is skipped and every
    skip is logged; this mode is never the default.
    """

    def __init__(
        self,
        store: RevocationStore,
        secret: str,
        *,
        issuer: str,
        ttl: timedelta = timedelta(days=7),
        mode: RevocationMode = RevocationMode.STRICT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("refresh token secret is required")
        self.store = store
        self._secret = secret
        self.issuer = issuer
        self.ttl = ttl
        self.mode = RevocationMode(mode)
        self._clock = clock
        if self.mode is RevocationMode.SIGNATURE_ONLY:
            logger.warning("refresh_revocation_degraded", mode=self.mode.value)

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    async def issue(
        self, principal_id: str, kind: Optional[PrincipalKind | str] = None
    ) -> tuple[str, str, datetime]:
        """Mint a token and write its live record; return (token, token_id, expires_at)."""
        principal_id = _check_principal_id(principal_id)
        token_id = uuid.uuid4().hex
        key = revocation_key(principal_id, token_id)
        iat = int(self._clock().timestamp())
        exp = iat + self.ttl_seconds
        payload = {
            "iss": self.issuer,
            "sub": principal_id,
            "jti": key,
            "token_type": REFRESH_TOKEN_TYPE,
            "iat": iat,
            "exp": exp,
        }
        if kind is not None:
            payload["kind"] = PrincipalKind(kind).value
        token = encode_jwt(payload, self._secret)
        await self.store.put(key, LIVE_MARKER, self.ttl_seconds)
        return token, token_id, timestamp_to_datetime(exp)

    async def rotate(
        self,
        old_token_id: str,
        principal_id: str,
        kind: Optional[PrincipalKind | str] = None,
        *,
        require_live: bool = False,
    ) -> tuple[str, str, datetime]:
        """Retire ``old_token_id`` and issue its successor.

        With ``require_live`` the old record must still exist; the caller that
        deletes it wins and every concurrent or later rotation is rejected.
        """
        principal_id = _check_principal_id(principal_id)
        removed = await self.store.delete(revocation_key(principal_id, old_token_id))
        if require_live and not removed and self.mode is RevocationMode.STRICT:
            logger.warning(
                "refresh_token_reuse_detected",
                principal_id=principal_id,
                token_id=old_token_id,
            )
            raise InvalidTokenError(InvalidTokenError.REVOKED)
        return await self.issue(principal_id, kind)

    def decode(self, token: str) -> RefreshClaims:
        """Check signature, type and expiry without consulting the store."""
        payload = decode_jwt(
            token,
            self._secret,
            issuer=self.issuer,
            token_type=REFRESH_TOKEN_TYPE,
            now=self._clock(),
        )
        principal_id = payload.get("sub")
        jti = payload.get("jti")
        if not isinstance(principal_id, str) or not isinstance(jti, str):
            raise InvalidTokenError(InvalidTokenError.MALFORMED)
        prefix = principal_prefix(principal_id)
        token_id = jti[len(prefix):] if jti.startswith(prefix) else ""
        if not token_id or ":" in token_id:
            raise InvalidTokenError(InvalidTokenError.MALFORMED)
        kind: Optional[PrincipalKind] = None
        if payload.get("kind") is not None:
            try:
                kind = PrincipalKind(payload["kind"])
            except ValueError:
                raise InvalidTokenError(InvalidTokenError.MALFORMED) from None
        return RefreshClaims(
            principal_id=principal_id,
            token_id=token_id,
            kind=kind,
            issued_at=timestamp_to_datetime(payload["iat"]),
            expires_at=timestamp_to_datetime(payload["exp"]),
        )

    async def verify(self, token: str) -> RefreshClaims:
        try:
            claims = self.decode(token)
        except InvalidTokenError as exc:
            logger.info("refresh_rejected", reason=exc.reason)
            raise
        if self.mode is RevocationMode.SIGNATURE_ONLY:
            logger.warning(
                "revocation_check_skipped",
                principal_id=claims.principal_id,
                token_id=claims.token_id,
            )
            return claims
        key = revocation_key(claims.principal_id, claims.token_id)
        try:
            record = await self.store.get(key)
        except StoreUnavailable as exc:
            if not exc.timed_out:
                raise
            logger.warning(
                "refresh_rejected",
                reason=InvalidTokenError.REVOKED,
                principal_id=claims.principal_id,
                cause="revocation_check_timeout",
            )
            raise InvalidTokenError(InvalidTokenError.REVOKED) from exc
        if record is None:
            logger.info(
                "refresh_rejected",
                reason=InvalidTokenError.REVOKED,
                principal_id=claims.principal_id,
            )
            raise InvalidTokenError(InvalidTokenError.REVOKED)
        return claims

    async def revoke(self, token_id: str, principal_id: str) -> bool:
        principal_id = _check_principal_id(principal_id)
        return bool(await self.store.delete(revocation_key(principal_id, token_id)))

    async def revoke_all(self, principal_id: str) -> int:
        principal_id = _check_principal_id(principal_id)
        count = await self.store.scan_delete(principal_prefix(principal_id))
        logger.info("refresh_tokens_revoked_all", principal_id=principal_id, count=count)
        return count
