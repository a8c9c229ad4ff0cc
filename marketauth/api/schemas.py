from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketauth.config import PrincipalKind
from marketauth.logging import get_correlation_id

MAX_IDENTIFIER_LENGTH = 254


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "invalid_credentials",
    "account_locked",
    "account_disabled",
    "invalid_token",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "validation_error",
    "store_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    identifier: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER_LENGTH)
    # Length is not validated here so legacy passwords still reach the hash check
    password: str = Field(..., min_length=1, max_length=1024)
    kind: Optional[PrincipalKind] = None

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        normalized = _normalize_unicode(value).strip().lower()
        if not normalized:
            raise ValueError("identifier is required")
        return normalized


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class LogoutResponse(BaseModel):
    revoked: int


class PrincipalResponse(BaseModel):
    id: str
    kind: PrincipalKind
    identifier: str
    is_active: bool
    is_locked: bool
    failed_attempts: int
    last_login_at: Optional[datetime] = None
    login_count: int = 0
    created_at: datetime


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    identifier: str = Field(..., min_length=3, max_length=MAX_IDENTIFIER_LENGTH)
    password: str

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        normalized = _normalize_unicode(value).strip().lower()
        if "@" not in normalized:
            raise ValueError("identifier must be an email address")
        return normalized

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)
