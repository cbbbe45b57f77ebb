"""Tests for the vault lifecycle: init, unlock, lock, expiry and keychain unlock."""

import base64
from unittest.mock import MagicMock

import pytest

from lockbox.errors import (
    AlreadyInitializedError,
    InvalidCredentialError,
    InvalidPasswordError,
    KeychainNotEnabledError,
    KeychainUnavailableError,
    NotInitializedError,
    SessionExpiredError,
    VaultLockedError,
)
from lockbox.vault import SESSION_DURATION, KeyCheckResult, MemorySessionStore, Vault
from lockbox.vault.crypto import generate_key


class TestKeyCheckResult:
    def test_verified_unwraps(self):
        key = generate_key()
        assert KeyCheckResult.verified(key).unwrap() == key

    def test_failed_raises(self):
        with pytest.raises(InvalidPasswordError):
            KeyCheckResult.failed().unwrap()

    def test_repr_hides_key(self):
        key = generate_key()
        assert repr(key) not in repr(KeyCheckResult.verified(key))


class TestInitialize:
    def test_initialize(self, vault):
        assert not vault.is_initialized()
        session = vault.initialize("p1-password")
        assert vault.is_initialized()
        assert vault.is_unlocked()
        assert vault.get_key() == session.key

    def test_initialize_twice(self, vault):
        vault.initialize("p1-password")
        with pytest.raises(AlreadyInitializedError):
            vault.initialize("p1-password")

    def test_session_duration_is_absolute(self, vault, clock):
        session = vault.initialize("p1-password")
        assert session.expires_at == clock.now + SESSION_DURATION

    def test_kdf_params_recorded(self, vault, store, fast_kdf):
        vault.initialize("p1-password")
        meta = store.get_vault_meta()
        assert meta.kdf_time_cost == fast_kdf.time_cost
        assert meta.kdf_memory_kib == fast_kdf.memory_kib
        assert meta.kdf_parallelism == fast_kdf.parallelism


class TestUnlock:
    def test_lock_unlock_same_key(self, vault):
        first = vault.initialize("p1-password").key
        vault.lock()
        assert not vault.is_unlocked()
        assert vault.unlock("p1-password").key == first
        assert vault.get_key() == first

    def test_wrong_password(self, vault):
        vault.initialize("p1-password")
        vault.lock()
        with pytest.raises(InvalidCredentialError):
            vault.unlock("wrong")
        assert not vault.is_unlocked()

    def test_wrong_password_is_invalid_password(self, vault):
        vault.initialize("p1-password")
        with pytest.raises(InvalidPasswordError, match="invalid password"):
            vault.unlock("wrong")

    def test_unlock_uninitialized(self, vault):
        with pytest.raises(NotInitializedError):
            vault.unlock("p1-password")

    def test_unlock_uses_recorded_kdf(self, store, vault, fast_kdf, clock):
        vault.initialize("p1-password")
        key = vault.get_key()
        # A later process configured with different parameters still opens the vault.
        other = Vault(store, MemorySessionStore(), clock=clock)
        assert other.unlock("p1-password").key == key

    def test_lock_idempotent(self, vault):
        vault.lock()
        vault.initialize("p1-password")
        vault.lock()
        vault.lock()
        assert not vault.is_unlocked()


class TestGetKey:
    def test_locked(self, vault):
        vault.initialize("p1-password")
        vault.lock()
        with pytest.raises(VaultLockedError):
            vault.get_key()

    def test_expired_clears_session(self, vault, clock):
        vault.initialize("p1-password")
        clock.advance(hours=8)
        assert not vault.is_unlocked()
        # is_unlocked does not mutate
        assert vault.sessions.load() is not None
        with pytest.raises(SessionExpiredError):
            vault.get_key()
        assert vault.sessions.load() is None
        with pytest.raises(VaultLockedError):
            vault.get_key()

    def test_session_expired_is_locked(self):
        assert issubclass(SessionExpiredError, VaultLockedError)

    def test_valid_just_before_expiry(self, vault, clock):
        vault.initialize("p1-password")
        clock.advance(hours=7, minutes=59)
        assert vault.is_unlocked()
        vault.get_key()


class TestVerifyPassword:
    def test_correct(self, vault):
        vault.initialize("p1-password")
        vault.lock()
        vault.verify_password("p1-password")
        assert not vault.is_unlocked()

    def test_wrong(self, vault):
        vault.initialize("p1-password")
        with pytest.raises(InvalidPasswordError):
            vault.verify_password("nope")


class TestKeychain:
    def test_enable_and_unlock(self, vault, keychain):
        key = vault.initialize("p1-password").key
        vault.enable_keychain("p1-password")
        assert vault.is_keychain_enabled()
        assert base64.b64decode(keychain.blob) == key

        vault.lock()
        assert vault.unlock_with_keychain().key == key
        assert vault.is_unlocked()

    def test_enable_wrong_password(self, vault, keychain):
        vault.initialize("p1-password")
        with pytest.raises(InvalidPasswordError):
            vault.enable_keychain("wrong")
        assert keychain.blob is None
        assert not vault.is_keychain_enabled()

    def test_enable_unavailable(self, vault, keychain):
        vault.initialize("p1-password")
        keychain.is_available = False
        with pytest.raises(KeychainUnavailableError):
            vault.enable_keychain("p1-password")
        assert not vault.is_keychain_enabled()

    def test_no_keychain(self, store, clock, fast_kdf):
        vault = Vault(store, MemorySessionStore(), keychain=None, kdf=fast_kdf, clock=clock)
        vault.initialize("p1-password")
        assert not vault.is_keychain_available()
        with pytest.raises(KeychainUnavailableError):
            vault.enable_keychain("p1-password")

    def test_unlock_not_enabled(self, vault):
        vault.initialize("p1-password")
        vault.lock()
        with pytest.raises(KeychainNotEnabledError):
            vault.unlock_with_keychain()

    def test_unlock_empty_keychain(self, vault, keychain):
        vault.initialize("p1-password")
        vault.enable_keychain("p1-password")
        keychain.blob = None
        vault.lock()
        with pytest.raises(KeychainNotEnabledError, match="no key stored"):
            vault.unlock_with_keychain()

    def test_tampered_keychain_entry_rejected(self, vault, keychain):
        vault.initialize("p1-password")
        vault.enable_keychain("p1-password")
        vault.lock()
        keychain.blob = base64.b64encode(generate_key()).decode()
        with pytest.raises(InvalidPasswordError):
            vault.unlock_with_keychain()
        assert not vault.is_unlocked()

    def test_garbage_keychain_entry_rejected(self, vault, keychain):
        vault.initialize("p1-password")
        vault.enable_keychain("p1-password")
        vault.lock()
        keychain.blob = "!!not base64!!"
        with pytest.raises(InvalidPasswordError):
            vault.unlock_with_keychain()

    def test_disable(self, vault, keychain):
        vault.initialize("p1-password")
        vault.enable_keychain("p1-password")
        vault.disable_keychain()
        assert not vault.is_keychain_enabled()
        assert keychain.blob is None

    def test_enable_rolls_back_keychain_on_store_failure(self, vault, store, keychain, monkeypatch):
        vault.initialize("p1-password")
        monkeypatch.setattr(
            store, "set_keychain_enabled", MagicMock(side_effect=RuntimeError("disk full"))
        )
        with pytest.raises(RuntimeError):
            vault.enable_keychain("p1-password")
        assert keychain.blob is None
