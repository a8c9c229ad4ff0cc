from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from marketauth.logging import get_logger
from marketauth.service.principals import CredentialStore
from marketauth.storage.models import LockoutState, Principal, utcnow

logger = get_logger(__name__)


class LockoutPolicy:
    """Brute-force lockout state machine: Unlocked -> Locked -> Unlocked.

    Each failure is applied as one atomic transition through the credential
    store so concurrent failures cannot lose updates. A lock is never extended
    by further failures and expires lazily on the next access.
    """

    def __init__(
        self,
        *,
        threshold: int = 5,
        duration: timedelta = timedelta(hours=2),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if threshold <= 0:
            raise ValueError("lockout threshold must be positive")
        if duration <= timedelta(0):
            raise ValueError("lockout duration must be positive")
        self.threshold = threshold
        self.duration = duration
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def is_locked(self, principal: Principal | LockoutState, now: Optional[datetime] = None) -> bool:
        locked_until = principal.locked_until
        return locked_until is not None and locked_until > (now or self._clock())

    def next_state(self, state: LockoutState, now: datetime) -> LockoutState:
        """Counters after one more failed login at ``now``."""
        if state.locked_until is not None:
            if state.locked_until > now:
                return state
            state = LockoutState()
        attempts = state.failed_attempts + 1
        if attempts >= self.threshold:
            return LockoutState(failed_attempts=self.threshold, locked_until=now + self.duration)
        return LockoutState(failed_attempts=attempts, locked_until=None)

    def record_failure(self, store: CredentialStore, principal: Principal) -> Optional[LockoutState]:
        now = self._clock()
        locked_now = False

        def _transition(current: LockoutState) -> LockoutState:
            nonlocal locked_now
            updated = self.next_state(current, now)
            locked_now = updated.locked_until is not None and updated != current
            return updated

        state = store.update_lockout(principal.id, _transition)
        if state is None:
            return None
        principal.failed_attempts = state.failed_attempts
        principal.locked_until = state.locked_until
        if locked_now:
            logger.warning(
                "account_locked",
                principal_id=principal.id,
                kind=principal.kind.value,
                locked_until=state.locked_until.isoformat(),
            )
        return state

    def record_success(self, store: CredentialStore, principal: Principal) -> Principal:
        updated = store.record_login(principal.id, self._clock())
        return updated or principal

    def unlock(self, store: CredentialStore, principal_id: str) -> Optional[LockoutState]:
        return store.update_lockout(principal_id, lambda _state: LockoutState())
