"""Refresh token rotation and revocation against the revocation store."""

import asyncio
import base64
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from marketauth.config import PrincipalKind, RevocationMode
from marketauth.service.errors import InvalidTokenError, ValidationError
from marketauth.service.refresh import RefreshTokenManager, revocation_key
from marketauth.storage.errors import StoreUnavailable
from marketauth.storage.memory import MemoryRevocationStore

SECRET = "refresh-secret-for-unit-tests-0123456789"


@pytest.fixture
def store():
    return MemoryRevocationStore()


@pytest.fixture
def manager(store, clock):
    return RefreshTokenManager(store, SECRET, issuer="marketauth", clock=clock)


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


async def test_issue_writes_live_record(manager, store):
    token, token_id, _ = await manager.issue("p-1", PrincipalKind.CUSTOMER)

    assert await store.get(f"rt:p-1:{token_id}") == "valid"
    payload = _payload(token)
    assert payload["sub"] == "p-1"
    assert payload["jti"] == f"rt:p-1:{token_id}"
    assert payload["token_type"] == "refresh"
    assert payload["exp"] - payload["iat"] == 7 * 24 * 3600


async def test_record_ttl_matches_token_lifetime(clock):
    store = AsyncMock()
    manager = RefreshTokenManager(
        store, SECRET, issuer="marketauth", ttl=timedelta(minutes=30), clock=clock
    )

    _, token_id, expires_at = await manager.issue("p-1")

    store.put.assert_awaited_once_with(revocation_key("p-1", token_id), "valid", 1800)
    assert expires_at == clock.current + timedelta(minutes=30)


async def test_verify_returns_claims(manager):
    token, token_id, _ = await manager.issue("p-1", PrincipalKind.STAFF)

    claims = await manager.verify(token)

    assert claims.principal_id == "p-1"
    assert claims.token_id == token_id
    assert claims.kind is PrincipalKind.STAFF


async def test_rotation_is_single_use(manager):
    t1, tid1, _ = await manager.issue("p-1")
    t2, tid2, _ = await manager.rotate(tid1, "p-1")

    assert tid2 != tid1
    with pytest.raises(InvalidTokenError) as excinfo:
        await manager.verify(t1)
    assert excinfo.value.reason == InvalidTokenError.REVOKED
    assert (await manager.verify(t2)).token_id == tid2


async def test_rotate_tolerates_missing_record(manager, store):
    _, tid, _ = await manager.issue("p-1")
    await store.delete(revocation_key("p-1", tid))

    token, new_tid, _ = await manager.rotate(tid, "p-1")

    assert (await manager.verify(token)).token_id == new_tid


async def test_rotate_requiring_live_record_rejects_replay(manager):
    _, tid, _ = await manager.issue("p-1")
    await manager.rotate(tid, "p-1", require_live=True)

    with pytest.raises(InvalidTokenError) as excinfo:
        await manager.rotate(tid, "p-1", require_live=True)
    assert excinfo.value.reason == InvalidTokenError.REVOKED


async def test_concurrent_rotation_has_one_winner(manager):
    _, tid, _ = await manager.issue("p-1")

    results = await asyncio.gather(
        *(manager.rotate(tid, "p-1", require_live=True) for _ in range(5)),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(r, InvalidTokenError) for r in results if r not in winners)


async def test_revoke_single_token(manager):
    t1, tid1, _ = await manager.issue("p-1")
    t2, _, _ = await manager.issue("p-1")

    assert await manager.revoke(tid1, "p-1") is True
    assert await manager.revoke(tid1, "p-1") is False

    with pytest.raises(InvalidTokenError):
        await manager.verify(t1)
    assert (await manager.verify(t2)).principal_id == "p-1"


async def test_revoke_all_counts_live_records(manager):
    tokens = [(await manager.issue("p-1"))[0] for _ in range(3)]
    other, _, _ = await manager.issue("p-2")

    assert await manager.revoke_all("p-1") == 3
    assert await manager.revoke_all("p-1") == 0

    for token in tokens:
        with pytest.raises(InvalidTokenError):
            await manager.verify(token)
    assert (await manager.verify(other)).principal_id == "p-2"


async def test_revoke_all_does_not_touch_prefix_sharing_principal(manager):
    await manager.issue("p-1")
    survivor, _, _ = await manager.issue("p-10")

    assert await manager.revoke_all("p-1") == 1
    assert (await manager.verify(survivor)).principal_id == "p-10"


async def test_expired_token_reports_expired(manager, clock):
    token, _, _ = await manager.issue("p-1")
    clock.advance(days=7, seconds=1)

    with pytest.raises(InvalidTokenError) as excinfo:
        await manager.verify(token)
    assert excinfo.value.reason == InvalidTokenError.EXPIRED


async def test_access_token_is_not_a_refresh_token(manager, clock):
    from marketauth.service.tokens import AccessTokenIssuer

    access, _ = AccessTokenIssuer(SECRET, issuer="marketauth", clock=clock).issue(
        "p-1", PrincipalKind.CUSTOMER
    )

    with pytest.raises(InvalidTokenError) as excinfo:
        await manager.verify(access)
    assert excinfo.value.reason == InvalidTokenError.MALFORMED


async def test_timeout_during_verify_fails_closed(clock):
    store = MemoryRevocationStore()
    manager = RefreshTokenManager(store, SECRET, issuer="marketauth", clock=clock)
    token, _, _ = await manager.issue("p-1")
    store.get = AsyncMock(side_effect=StoreUnavailable("revocation", "timed out", timed_out=True))

    with pytest.raises(InvalidTokenError) as excinfo:
        await manager.verify(token)
    assert excinfo.value.reason == InvalidTokenError.REVOKED


async def test_connection_failure_during_verify_propagates(clock):
    store = MemoryRevocationStore()
    manager = RefreshTokenManager(store, SECRET, issuer="marketauth", clock=clock)
    token, _, _ = await manager.issue("p-1")
    store.get = AsyncMock(side_effect=StoreUnavailable("revocation", "connection refused"))

    with pytest.raises(StoreUnavailable):
        await manager.verify(token)


async def test_signature_only_mode_skips_record_check(clock):
    store = MemoryRevocationStore()
    manager = RefreshTokenManager(
        store, SECRET, issuer="marketauth", mode=RevocationMode.SIGNATURE_ONLY, clock=clock
    )
    token, tid, _ = await manager.issue("p-1")
    await store.delete(revocation_key("p-1", tid))
    store.get = AsyncMock(side_effect=AssertionError("store must not be consulted"))

    claims = await manager.verify(token)

    assert claims.token_id == tid


async def test_principal_ids_with_separators_refused(manager):
    with pytest.raises(ValidationError):
        await manager.issue("a:b")
    with pytest.raises(ValidationError):
        await manager.revoke_all("*")


async def test_invalid_principal_id_maps_to_bad_request(manager):
    with pytest.raises(ValidationError) as excinfo:
        await manager.revoke("token", "")

    assert excinfo.value.status_code == 400
    assert excinfo.value.error_code == "validation_error"
