from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path

from marketauth.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    PrincipalResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
)
from marketauth.config import PrincipalKind
from marketauth.logging import get_logger
from marketauth.service.runtime import get_runtime
from marketauth.storage.models import AccessClaims, Principal, TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def get_principal(authorization: Optional[str] = Header(None)) -> AccessClaims:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


async def get_super_admin(authorization: Optional[str] = Header(None)) -> AccessClaims:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization, allowed_kinds=[PrincipalKind.SUPER_ADMIN])


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
    )


def _principal_response(principal: Principal) -> PrincipalResponse:
    runtime = get_runtime()
    return PrincipalResponse(
        id=principal.id,
        kind=principal.kind,
        identifier=principal.identifier,
        is_active=principal.is_active,
        is_locked=runtime.auth.lockout.is_locked(principal),
        failed_attempts=principal.failed_attempts,
        last_login_at=principal.last_login_at,
        login_count=principal.login_count,
        created_at=principal.created_at,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Self-service signup; only customers register themselves."""
    runtime = get_runtime()
    principal = runtime.auth.register(PrincipalKind.CUSTOMER, body.identifier, body.password)
    return Envelope(status="ok", data=_principal_response(principal))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange an identifier and password for an access and refresh token pair.

    Raises:
        401: unknown identifier or wrong password
        403: principal is deactivated
        423: principal is temporarily locked
    """
    runtime = get_runtime()
    pair = await runtime.auth.login(body.identifier, body.password, expected_kind=body.kind)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, claims: AccessClaims = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_token(body.refresh_token, claims.principal_id)
    return Envelope(status="ok", data=LogoutResponse(revoked=int(revoked)))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(claims: AccessClaims = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(claims.principal_id)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: AccessClaims = Depends(get_principal)):
    runtime = get_runtime()
    principal = runtime.auth.get_principal(claims.kind, claims.principal_id)
    return Envelope(status="ok", data=_principal_response(principal))


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, claims: AccessClaims = Depends(get_principal)
):
    """Change the caller's password; every refresh token of the caller is revoked."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        claims.kind, claims.principal_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.post(
    "/admin/principals/{kind}/{principal_id}/unlock",
    response_model=Envelope,
    tags=["admin"],
)
async def admin_unlock(
    kind: PrincipalKind = Path(..., description="Principal kind"),
    principal_id: str = Path(..., max_length=64),
    admin: AccessClaims = Depends(get_super_admin),
):
    runtime = get_runtime()
    principal = runtime.auth.unlock(kind, principal_id)
    logger.info(
        "admin_unlocked_principal",
        admin_id=admin.principal_id,
        principal_id=principal.id,
        kind=kind.value,
    )
    return Envelope(status="ok", data=_principal_response(principal))
