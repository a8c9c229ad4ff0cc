from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple

from marketauth.config import PrincipalKind
from marketauth.storage.models import LockoutState, Principal


class CredentialStore(Protocol):
    """Storage binding every principal kind supplies.

    Login, lockout and token issuance are written once against this contract.
    ``update_lockout`` and ``record_login`` must be atomic with respect to other
    writers of the same principal.
    """

    kind: PrincipalKind

    def create(self, principal: Principal) -> Principal: ...

    def find_by_login_identifier(self, identifier: str) -> Optional[Principal]: ...

    def get(self, principal_id: str) -> Optional[Principal]: ...

    def save(self, principal: Principal) -> None: ...

    def set_password_hash(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def update_lockout(
        self,
        principal_id: str,
        transition: Callable[[LockoutState], LockoutState],
    ) -> Optional[LockoutState]: ...

    def record_login(self, principal_id: str, at: datetime) -> Optional[Principal]: ...

    def verify_connection(self) -> None: ...


def normalize_identifier(identifier: str) -> str:
    """Login identifiers are compared trimmed, NFKC-normalized and lowercased."""
    return unicodedata.normalize("NFKC", identifier or "").strip().lower()


class PrincipalRegistry:
    """Maps each principal kind to its credential store."""

    # Lookup order when a login does not name its kind.
    SEARCH_ORDER: Tuple[PrincipalKind, ...] = (
        PrincipalKind.CUSTOMER,
        PrincipalKind.RESTAURANT,
        PrincipalKind.STAFF,
        PrincipalKind.SUPER_ADMIN,
    )

    def __init__(self, stores: Iterable[CredentialStore]) -> None:
        self._stores: Dict[PrincipalKind, CredentialStore] = {}
        for store in stores:
            kind = PrincipalKind(store.kind)
            if kind in self._stores:
                raise ValueError(f"duplicate credential store for {kind.value}")
            self._stores[kind] = store

    @property
    def kinds(self) -> Tuple[PrincipalKind, ...]:
        return tuple(k for k in self.SEARCH_ORDER if k in self._stores)

    def store_for(self, kind: PrincipalKind | str) -> CredentialStore:
        try:
            return self._stores[PrincipalKind(kind)]
        except (KeyError, ValueError):
            raise LookupError(f"no credential store bound for kind {kind!r}") from None

    def find(
        self, identifier: str, expected_kind: Optional[PrincipalKind | str] = None
    ) -> Optional[Principal]:
        normalized = normalize_identifier(identifier)
        if not normalized:
            return None
        if expected_kind is not None:
            return self.store_for(expected_kind).find_by_login_identifier(normalized)
        for kind in self.kinds:
            principal = self._stores[kind].find_by_login_identifier(normalized)
            if principal is not None:
                return principal
        return None

    def get(self, kind: PrincipalKind | str, principal_id: str) -> Optional[Principal]:
        return self.store_for(kind).get(principal_id)

    def locate(self, principal_id: str) -> Optional[Principal]:
        """Find a principal by id when its kind is not known."""
        for kind in self.kinds:
            principal = self._stores[kind].get(principal_id)
            if principal is not None:
                return principal
        return None
