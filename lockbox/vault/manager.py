"""
Vault lifecycle — initialize, unlock, lock, and the time-bounded session.

States: uninitialized -> initialized & locked -> unlocked -> locked again
(explicit lock or expiry). The master password is never stored; a fixed
plaintext encrypted at init time (the key check) proves a candidate key.

Every way of obtaining a key, password or keychain, goes through
``check_key`` and its KeyCheckResult. Only ``unwrap()`` hands the key out, and
a failed check always raises the same InvalidPasswordError whether the
decrypt failed or the plaintext did not match.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from lockbox.errors import (
    AlreadyExistsError,
    AlreadyInitializedError,
    InvalidCredentialError,
    InvalidKeyMaterialError,
    InvalidPasswordError,
    KeychainNotEnabledError,
    KeychainUnavailableError,
    NotInitializedError,
    SessionExpiredError,
    VaultLockedError,
)
from lockbox.vault.crypto import DEFAULT_KDF, KdfParams, decrypt, derive_key, encrypt, generate_salt
from lockbox.vault.session import Session, SessionStore

if TYPE_CHECKING:
    from lockbox.models import VaultMeta
    from lockbox.store import SQLiteStore
    from lockbox.vault.keychain import Keychain

logger = logging.getLogger(__name__)

KEY_CHECK_VALUE = b"lockbox-key-check-v1"
SESSION_DURATION = timedelta(hours=8)


@dataclass(frozen=True)
class KeyCheckResult:
    """Outcome of checking a candidate key against the stored key check."""

    ok: bool
    key: bytes | None = field(default=None, repr=False)

    @classmethod
    def verified(cls, key: bytes) -> KeyCheckResult:
        return cls(ok=True, key=key)

    @classmethod
    def failed(cls) -> KeyCheckResult:
        return cls(ok=False)

    def unwrap(self) -> bytes:
        if not self.ok or self.key is None:
            raise InvalidPasswordError()
        return self.key


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Vault:
    def __init__(
        self,
        store: SQLiteStore,
        sessions: SessionStore,
        keychain: Keychain | None = None,
        kdf: KdfParams = DEFAULT_KDF,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.keychain = keychain
        self.kdf = kdf
        self._clock = clock or _utcnow

    # ─── Lifecycle ───────────────────────────────────────────────────────

    def is_initialized(self) -> bool:
        return self.store.get_vault_meta() is not None

    def _require_meta(self) -> VaultMeta:
        meta = self.store.get_vault_meta()
        if meta is None:
            raise NotInitializedError()
        return meta

    def initialize(self, password: str) -> Session:
        """Create the vault and start a session (an implicit unlock)."""
        if self.is_initialized():
            raise AlreadyInitializedError()

        salt = generate_salt()
        key = derive_key(password, salt, self.kdf)
        key_check, nonce = encrypt(key, KEY_CHECK_VALUE)
        try:
            self.store.create_vault_meta(salt, key_check, nonce, self.kdf)
        except AlreadyExistsError:
            raise AlreadyInitializedError() from None

        logger.info("Vault initialized")
        return self._start_session(key)

    def unlock(self, password: str) -> Session:
        meta = self._require_meta()
        key = self._check_password(password, meta).unwrap()
        logger.info("Vault unlocked with password")
        return self._start_session(key)

    def lock(self) -> None:
        self.sessions.clear()

    def verify_password(self, password: str) -> None:
        """Raise InvalidPasswordError unless ``password`` opens the vault. Never starts a session."""
        meta = self._require_meta()
        self._check_password(password, meta).unwrap()

    def check_key(self, key: bytes, meta: VaultMeta | None = None) -> KeyCheckResult:
        meta = meta or self._require_meta()
        try:
            plaintext = decrypt(key, meta.key_check, meta.key_check_nonce)
        except (InvalidCredentialError, InvalidKeyMaterialError):
            return KeyCheckResult.failed()
        if not hmac.compare_digest(plaintext, KEY_CHECK_VALUE):
            return KeyCheckResult.failed()
        return KeyCheckResult.verified(key)

    def _check_password(self, password: str, meta: VaultMeta) -> KeyCheckResult:
        # Always derive with the parameters recorded at init time.
        params = KdfParams(
            time_cost=meta.kdf_time_cost,
            memory_kib=meta.kdf_memory_kib,
            parallelism=meta.kdf_parallelism,
        )
        return self.check_key(derive_key(password, meta.salt, params), meta)

    # ─── Session ─────────────────────────────────────────────────────────

    def _start_session(self, key: bytes) -> Session:
        session = Session(key=key, expires_at=self._clock() + SESSION_DURATION)
        self.sessions.save(session)
        return session

    def current_session(self) -> Session | None:
        """The live session, or None. Does not clear an expired one."""
        session = self.sessions.load()
        if session is None or session.is_expired(self._clock()):
            return None
        return session

    def is_unlocked(self) -> bool:
        return self.current_session() is not None

    def get_key(self) -> bytes:
        session = self.sessions.load()
        if session is None:
            raise VaultLockedError()
        if session.is_expired(self._clock()):
            self.sessions.clear()
            raise SessionExpiredError()
        return session.key

    # ─── Keychain ────────────────────────────────────────────────────────

    def is_keychain_enabled(self) -> bool:
        meta = self.store.get_vault_meta()
        return bool(meta and meta.keychain_enabled)

    def is_keychain_available(self) -> bool:
        return self.keychain is not None and self.keychain.available()

    def _require_keychain(self) -> Keychain:
        if not self.is_keychain_available():
            raise KeychainUnavailableError()
        return self.keychain

    def enable_keychain(self, password: str) -> None:
        meta = self._require_meta()
        key = self._check_password(password, meta).unwrap()
        keychain = self._require_keychain()

        keychain.store(base64.b64encode(key).decode("ascii"))
        try:
            self.store.set_keychain_enabled(True)
        except Exception:
            keychain.delete()
            raise
        logger.info("Keychain unlock enabled")

    def disable_keychain(self) -> None:
        self._require_meta()
        self.store.set_keychain_enabled(False)
        if self.keychain is not None:
            self.keychain.delete()
        logger.info("Keychain unlock disabled")

    def unlock_with_keychain(self) -> Session:
        """Unlock with the key cached in the OS keychain.

        The cached key is re-checked against the key check first; an entry
        edited outside Lockbox fails exactly like a wrong password.
        """
        meta = self._require_meta()
        if not meta.keychain_enabled:
            raise KeychainNotEnabledError()
        keychain = self._require_keychain()

        blob = keychain.fetch()
        if blob is None:
            raise KeychainNotEnabledError(
                "keychain enabled but no key stored: run 'lockbox keychain enable' again"
            )
        try:
            candidate = base64.b64decode(blob, validate=True)
        except binascii.Error:
            raise InvalidPasswordError() from None

        key = self.check_key(candidate, meta).unwrap()
        logger.info("Vault unlocked from keychain")
        return self._start_session(key)
