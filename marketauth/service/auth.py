from __future__ import annotations

from datetime import timedelta
from typing import Iterable, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from marketauth.config import PrincipalKind, Settings
from marketauth.logging import get_logger
from marketauth.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from marketauth.service.lockout import LockoutPolicy
from marketauth.service.principals import PrincipalRegistry, normalize_identifier
from marketauth.service.refresh import RefreshTokenManager, RevocationStore
from marketauth.service.tokens import AccessTokenIssuer
from marketauth.storage.errors import ConstraintViolation
from marketauth.storage.models import AccessClaims, Principal, TokenPair

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def validate_password_strength(password: str) -> str:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return password


class AuthService:
    """Password login, token rotation and revocation for every principal kind."""

    def __init__(
        self,
        registry: PrincipalRegistry,
        access_tokens: AccessTokenIssuer,
        refresh_tokens: RefreshTokenManager,
        lockout: LockoutPolicy,
    ) -> None:
        self.registry = registry
        self.access_tokens = access_tokens
        self.refresh_tokens = refresh_tokens
        self.lockout = lockout
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: PrincipalRegistry,
        revocation_store: RevocationStore,
    ) -> "AuthService":
        return cls(
            registry,
            AccessTokenIssuer(
                settings.jwt_secret,
                issuer=settings.jwt_issuer,
                ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            ),
            RefreshTokenManager(
                revocation_store,
                settings.refresh_secret,
                issuer=settings.jwt_issuer,
                ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
                mode=settings.refresh_revocation_mode,
            ),
            LockoutPolicy(
                threshold=settings.lockout_threshold,
                duration=timedelta(minutes=settings.lockout_duration_minutes),
            ),
        )

    # passwords

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _verify_hash(self, principal: Principal, password: str) -> bool:
        if principal.password_algo != PASSWORD_ALGO:
            self.logger.warning(
                "password_algo_mismatch", principal_id=principal.id, algo=principal.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(principal.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_password_check(self, password: str) -> None:
        """Spend one hash verification so misses cost as much as hits."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("marketauth-unknown-principal")
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (VerifyMismatchError, VerificationError):
            pass

    def _maybe_rehash(self, principal: Principal, password: str) -> None:
        if self._pwd_hasher.check_needs_rehash(principal.password_hash):
            digest, algo = self._hash_password(password)
            self.registry.store_for(principal.kind).set_password_hash(principal.id, digest, algo)

    # registration and lookup

    def _store(self, kind: PrincipalKind | str):
        try:
            return self.registry.store_for(kind)
        except LookupError as exc:
            raise ValidationError(str(exc), detail={"kind": str(kind)}) from None

    def register(
        self,
        kind: PrincipalKind | str,
        identifier: str,
        password: str,
        *,
        is_active: bool = True,
    ) -> Principal:
        store = self._store(kind)
        normalized = normalize_identifier(identifier)
        if not normalized:
            raise ValidationError("identifier is required", detail={"field": "identifier"})
        validate_password_strength(password)
        digest, _algo = self._hash_password(password)
        principal = Principal.new(store.kind, normalized, digest, is_active=is_active)
        try:
            created = store.create(principal)
        except ConstraintViolation as exc:
            raise ConflictError("identifier already registered", detail=exc.detail) from exc
        self.logger.info("principal_registered", principal_id=created.id, kind=created.kind.value)
        return created

    def get_principal(self, kind: PrincipalKind | str, principal_id: str) -> Principal:
        principal = self._store(kind).get(principal_id)
        if principal is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        return principal

    def find_principal(
        self, identifier: str, kind: Optional[PrincipalKind | str] = None
    ) -> Optional[Principal]:
        if kind is not None:
            self._store(kind)
        return self.registry.find(identifier, kind)

    # session lifecycle

    async def _issue_pair(self, principal: Principal) -> TokenPair:
        access_token, access_exp = self.access_tokens.issue(principal.id, principal.kind)
        refresh_token, token_id, refresh_exp = await self.refresh_tokens.issue(
            principal.id, principal.kind
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_token_id=token_id,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    async def login(
        self,
        identifier: str,
        password: str,
        expected_kind: Optional[PrincipalKind | str] = None,
    ) -> TokenPair:
        if expected_kind is not None:
            self._store(expected_kind)
        principal = self.registry.find(identifier, expected_kind)
        if principal is None:
            self._burn_password_check(password)
            self.logger.info("login_failed", reason="unknown_identifier")
            raise InvalidCredentialsError()
        store = self.registry.store_for(principal.kind)

        if self.lockout.is_locked(principal):
            self.logger.info("login_failed", reason="locked", principal_id=principal.id)
            raise AccountLockedError()
        if not principal.is_active:
            self.logger.info("login_failed", reason="disabled", principal_id=principal.id)
            raise AccountDisabledError()
        if not self._verify_hash(principal, password):
            state = self.lockout.record_failure(store, principal)
            self.logger.info(
                "login_failed",
                reason="bad_password",
                principal_id=principal.id,
                failed_attempts=state.failed_attempts if state else None,
            )
            raise InvalidCredentialsError()

        self._maybe_rehash(principal, password)
        principal = self.lockout.record_success(store, principal)
        self.logger.info("login_succeeded", principal_id=principal.id, kind=principal.kind.value)
        return await self._issue_pair(principal)

    def _resolve_refresh_principal(self, principal_id: str, kind: Optional[PrincipalKind]) -> Optional[Principal]:
        if kind is None:
            return self.registry.locate(principal_id)
        try:
            return self.registry.get(kind, principal_id)
        except LookupError:
            return None

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = await self.refresh_tokens.verify(refresh_token)
        principal = self._resolve_refresh_principal(claims.principal_id, claims.kind)
        if principal is None or not principal.is_active:
            await self.refresh_tokens.revoke(claims.token_id, claims.principal_id)
            self.logger.info(
                "refresh_rejected",
                reason=InvalidTokenError.REVOKED,
                principal_id=claims.principal_id,
                cause="principal_unavailable",
            )
            raise InvalidTokenError(InvalidTokenError.REVOKED)

        refresh_token, token_id, refresh_exp = await self.refresh_tokens.rotate(
            claims.token_id, principal.id, principal.kind, require_live=True
        )
        access_token, access_exp = self.access_tokens.issue(principal.id, principal.kind)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_token_id=token_id,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    async def logout(self, refresh_token_id: str, principal_id: str) -> bool:
        return await self.refresh_tokens.revoke(refresh_token_id, principal_id)

    async def logout_token(self, refresh_token: str, principal_id: str) -> bool:
        """Revoke a presented refresh token owned by ``principal_id``."""
        claims = self.refresh_tokens.decode(refresh_token)
        if claims.principal_id != principal_id:
            raise ForbiddenError("refresh token belongs to another principal")
        return await self.logout(claims.token_id, principal_id)

    async def logout_all(self, principal_id: str) -> int:
        return await self.refresh_tokens.revoke_all(principal_id)

    # request guard

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def authenticate(
        self,
        authorization: Optional[str],
        allowed_kinds: Optional[Iterable[PrincipalKind | str]] = None,
    ) -> AccessClaims:
        """Verify a bearer access token and enforce the allowed principal kinds."""
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("bearer access token required")
        claims = self.access_tokens.verify(token)
        if allowed_kinds is not None:
            allowed = {PrincipalKind(k) for k in allowed_kinds}
            if claims.kind not in allowed:
                raise ForbiddenError(
                    "principal kind not permitted", detail={"kind": claims.kind.value}
                )
        return claims

    # account maintenance

    async def change_password(
        self,
        kind: PrincipalKind | str,
        principal_id: str,
        current_password: str,
        new_password: str,
    ) -> int:
        """Replace the password and revoke every refresh token; return the count.

        Wrong current passwords count toward lockout like failed logins.
        Sessions are revoked before the new hash is written, so an unreachable
        revocation store aborts the change with the old password intact.
        """
        principal = self.get_principal(kind, principal_id)
        store = self._store(kind)
        if self.lockout.is_locked(principal):
            self.logger.info("password_change_failed", reason="locked", principal_id=principal.id)
            raise AccountLockedError()
        if not self._verify_hash(principal, current_password):
            self.lockout.record_failure(store, principal)
            self.logger.info(
                "password_change_failed", reason="bad_password", principal_id=principal.id
            )
            raise InvalidCredentialsError("current password is incorrect")
        validate_password_strength(new_password)
        if current_password == new_password:
            raise ValidationError("new password must differ from the current password")
        revoked = await self._replace_password(store, principal, new_password)
        self.logger.info("password_changed", principal_id=principal.id, revoked=revoked)
        return revoked

    async def reset_password(
        self, kind: PrincipalKind | str, principal_id: str, new_password: str
    ) -> int:
        """Administrative reset without the current password."""
        principal = self.get_principal(kind, principal_id)
        store = self._store(kind)
        validate_password_strength(new_password)
        revoked = await self._replace_password(store, principal, new_password)
        self.lockout.unlock(store, principal.id)
        self.logger.info("password_reset", principal_id=principal.id, revoked=revoked)
        return revoked

    async def _replace_password(self, store, principal: Principal, new_password: str) -> int:
        revoked = await self.refresh_tokens.revoke_all(principal.id)
        digest, algo = self._hash_password(new_password)
        store.set_password_hash(principal.id, digest, algo)
        # tokens minted between the first sweep and the hash write
        revoked += await self.refresh_tokens.revoke_all(principal.id)
        return revoked

    def unlock(self, kind: PrincipalKind | str, principal_id: str) -> Principal:
        store = self._store(kind)
        if self.lockout.unlock(store, principal_id) is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        self.logger.info("account_unlocked", principal_id=principal_id, kind=store.kind.value)
        return self.get_principal(kind, principal_id)

    def set_active(self, kind: PrincipalKind | str, principal_id: str, is_active: bool) -> Principal:
        principal = self.get_principal(kind, principal_id)
        principal.is_active = is_active
        self._store(kind).save(principal)
        self.logger.info(
            "principal_activation_changed", principal_id=principal_id, is_active=is_active
        )
        return principal
