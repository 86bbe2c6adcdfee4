"""Unit tests for the credential vault, password policy and lockout policy."""

import string
from datetime import datetime, timedelta, timezone

import pytest

from medgate.service.credentials import (
    CredentialVault,
    check_password_policy,
    generate_temporary_password,
)
from medgate.service.errors import ValidationError
from medgate.service.lockout import LockoutPolicy, LoginState

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def vault():
    return CredentialVault(cost=1, memory_kib=64)


class TestCredentialVault:
    def test_hash_is_salted_and_not_plaintext(self, vault):
        first = vault.hash("Secret123")
        second = vault.hash("Secret123")
        assert first != "Secret123"
        assert first != second
        assert first.startswith("$argon2id$")

    def test_verify_roundtrip(self, vault):
        digest = vault.hash("Secret123")
        assert vault.verify("Secret123", digest) is True
        assert vault.verify("secret123", digest) is False

    @pytest.mark.parametrize("digest", ["", None, 42, "not-a-hash", "$argon2id$garbage"])
    def test_verify_never_raises_on_bad_digest(self, vault, digest):
        assert vault.verify("Secret123", digest) is False

    def test_needs_rehash_when_cost_changes(self, vault):
        digest = vault.hash("Secret123")
        stronger = CredentialVault(cost=2, memory_kib=64)
        assert vault.needs_rehash(digest) is False
        assert stronger.needs_rehash(digest) is True


class TestTemporaryPassword:
    def test_contains_every_character_class(self):
        for _ in range(50):
            password = generate_temporary_password(12)
            assert len(password) == 12
            assert any(c in string.ascii_lowercase for c in password)
            assert any(c in string.ascii_uppercase for c in password)
            assert any(c in string.digits for c in password)
            assert any(c in "!@#$%" for c in password)

    def test_temporary_password_satisfies_policy(self):
        check_password_policy(generate_temporary_password(), 6)

    def test_passwords_differ(self):
        assert len({generate_temporary_password() for _ in range(20)}) == 20


class TestPasswordPolicy:
    @pytest.mark.parametrize("password", ["Abc123", "LongerPassw0rd"])
    def test_accepts_valid(self, password):
        check_password_policy(password, 6)

    @pytest.mark.parametrize(
        "password", ["Ab1", "abcdef1", "ABCDEF1", "Abcdefg"]
    )
    def test_rejects_weak(self, password):
        with pytest.raises(ValidationError) as excinfo:
            check_password_policy(password, 6)
        assert excinfo.value.detail["field"] == "password"


class TestLockoutPolicy:
    def test_locks_on_fifth_failure(self):
        policy = LockoutPolicy(max_attempts=5, lock_duration=timedelta(hours=2))
        state = LoginState()
        for expected in range(1, 5):
            state = policy.register_failure(state, NOW)
            assert state.login_attempts == expected
            assert state.lock_until is None
        state = policy.register_failure(state, NOW)
        assert state.login_attempts == 5
        assert state.lock_until == NOW + timedelta(hours=2)
        assert policy.is_locked(state, NOW)
        assert policy.attempts_remaining(state) == 0

    def test_failure_while_locked_is_a_no_op(self):
        policy = LockoutPolicy(max_attempts=2)
        locked = LoginState(login_attempts=2, lock_until=NOW + timedelta(minutes=30))
        assert policy.register_failure(locked, NOW) == locked

    def test_lock_expires(self):
        policy = LockoutPolicy(max_attempts=2, lock_duration=timedelta(hours=2))
        state = LoginState(login_attempts=2, lock_until=NOW + timedelta(hours=2))
        assert policy.is_locked(state, NOW + timedelta(hours=1, minutes=59))
        assert not policy.is_locked(state, NOW + timedelta(hours=2))

    def test_counting_restarts_after_lapsed_lock(self):
        policy = LockoutPolicy(max_attempts=3)
        lapsed = LoginState(login_attempts=3, lock_until=NOW - timedelta(seconds=1))
        state = policy.register_failure(lapsed, NOW)
        assert state.login_attempts == 1
        assert state.lock_until is None

    def test_success_resets(self):
        policy = LockoutPolicy()
        assert policy.register_success() == LoginState(0, None)

    def test_remaining_minutes_round_up(self):
        policy = LockoutPolicy()
        state = LoginState(5, NOW + timedelta(minutes=119, seconds=1))
        assert policy.remaining_lock_minutes(state, NOW) == 120
        assert policy.remaining_lock_minutes(LoginState(), NOW) == 0

    def test_rejects_non_positive_threshold(self):
        with pytest.raises(ValueError):
            LockoutPolicy(max_attempts=0)
