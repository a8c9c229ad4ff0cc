"""Lockout state machine: threshold, ratchet, lazy expiry and atomic updates."""

import threading
from datetime import timedelta

import pytest

from marketauth.config import PrincipalKind
from marketauth.service.lockout import LockoutPolicy
from marketauth.storage.memory import MemoryCredentialStore
from marketauth.storage.models import LockoutState, Principal


@pytest.fixture
def store():
    return MemoryCredentialStore(PrincipalKind.RESTAURANT)


@pytest.fixture
def principal(store):
    return store.create(Principal.new(PrincipalKind.RESTAURANT, "owner@example.com", "hash"))


@pytest.fixture
def policy(clock):
    return LockoutPolicy(threshold=5, duration=timedelta(hours=2), clock=clock)


class TestTransitions:
    def test_failures_below_threshold_stay_unlocked(self, policy, clock):
        state = LockoutState()
        for expected in range(1, 5):
            state = policy.next_state(state, clock())
            assert state.failed_attempts == expected
            assert state.locked_until is None

    def test_threshold_failure_locks(self, policy, clock):
        state = LockoutState(failed_attempts=4)
        state = policy.next_state(state, clock())

        assert state.failed_attempts == 5
        assert state.locked_until == clock.current + timedelta(hours=2)

    def test_failures_while_locked_do_not_extend(self, policy, clock):
        locked = LockoutState(failed_attempts=5, locked_until=clock.current + timedelta(hours=1))

        assert policy.next_state(locked, clock()) is locked

    def test_failure_after_expiry_restarts_count(self, policy, clock):
        expired = LockoutState(failed_attempts=5, locked_until=clock.current - timedelta(seconds=1))

        state = policy.next_state(expired, clock())

        assert state == LockoutState(failed_attempts=1, locked_until=None)

    def test_threshold_of_one_locks_immediately(self, clock):
        policy = LockoutPolicy(threshold=1, duration=timedelta(minutes=5), clock=clock)

        state = policy.next_state(LockoutState(), clock())

        assert state.locked_until == clock.current + timedelta(minutes=5)

    @pytest.mark.parametrize(
        "kwargs",
        [{"threshold": 0}, {"duration": timedelta(0)}, {"duration": timedelta(seconds=-1)}],
    )
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            LockoutPolicy(**kwargs)


class TestRecordFailure:
    def test_four_failures_then_lock(self, policy, store, principal, clock):
        for _ in range(4):
            policy.record_failure(store, principal)
        assert not policy.is_locked(store.get(principal.id))

        policy.record_failure(store, principal)
        stored = store.get(principal.id)

        assert policy.is_locked(stored)
        assert stored.failed_attempts == 5
        assert stored.locked_until == clock.current + timedelta(hours=2)

    def test_caller_principal_reflects_new_counters(self, policy, store, principal):
        policy.record_failure(store, principal)

        assert principal.failed_attempts == 1

    def test_lock_elapses_and_next_failure_counts_one(self, policy, store, principal, clock):
        for _ in range(5):
            policy.record_failure(store, principal)
        clock.advance(hours=2, seconds=1)

        assert not policy.is_locked(store.get(principal.id))
        policy.record_failure(store, principal)

        stored = store.get(principal.id)
        assert stored.failed_attempts == 1
        assert stored.locked_until is None

    def test_lock_is_not_extended_by_more_failures(self, policy, store, principal, clock):
        for _ in range(5):
            policy.record_failure(store, principal)
        locked_until = store.get(principal.id).locked_until

        clock.advance(minutes=30)
        policy.record_failure(store, principal)

        assert store.get(principal.id).locked_until == locked_until

    def test_unknown_principal(self, policy, store):
        ghost = Principal.new(PrincipalKind.RESTAURANT, "ghost@example.com", "hash")

        assert policy.record_failure(store, ghost) is None

    def test_concurrent_failures_are_not_lost(self, store, principal, clock):
        policy = LockoutPolicy(threshold=1000, duration=timedelta(hours=2), clock=clock)
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            for _ in range(25):
                policy.record_failure(store, store.get(principal.id))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get(principal.id).failed_attempts == 200


class TestSuccessAndUnlock:
    def test_success_clears_state(self, policy, store, principal, clock):
        for _ in range(3):
            policy.record_failure(store, principal)

        updated = policy.record_success(store, principal)

        assert updated.failed_attempts == 0
        assert updated.locked_until is None
        assert updated.last_login_at == clock.current
        assert updated.login_count == 1

    def test_login_count_accumulates(self, policy, store, principal):
        policy.record_success(store, principal)
        updated = policy.record_success(store, principal)

        assert updated.login_count == 2

    def test_unlock_clears_active_lock(self, policy, store, principal):
        for _ in range(5):
            policy.record_failure(store, principal)

        state = policy.unlock(store, principal.id)

        assert state == LockoutState()
        assert not policy.is_locked(store.get(principal.id))

    def test_is_locked_boundary(self, policy, clock):
        at_boundary = LockoutState(failed_attempts=5, locked_until=clock.current)

        assert not policy.is_locked(at_boundary)
        assert policy.is_locked(LockoutState(5, clock.current + timedelta(seconds=1)))
