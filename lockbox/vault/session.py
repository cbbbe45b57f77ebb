"""
Vault sessions — a cached derived key with an absolute expiry.

A session is an explicit value handed back by unlock and read back through a
SessionStore. Two stores ship:

  - MemorySessionStore: process-local, no filesystem (tests, embedding).
  - FileSessionStore: one side file next to the database. The serialized
    session is itself AES-GCM encrypted under a wrapping key, taken from
    LOCKBOX_SESSION_WRAP_KEY when set, otherwise from a 0600 key file that is
    replaced on every lock.

Security Note:
    An unreadable or tampered session file is treated as "no session" and
    removed. It never raises past load().
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol

from lockbox.errors import InvalidCredentialError, InvalidKeyMaterialError
from lockbox.vault.crypto import KEY_LENGTH, NONCE_LENGTH, decrypt, encrypt, generate_key

logger = logging.getLogger(__name__)

SESSION_AAD = b"lockbox-session-v1"


@dataclass(frozen=True)
class Session:
    key: bytes = field(repr=False)
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_json(self) -> bytes:
        return json.dumps(
            {
                "key": base64.b64encode(self.key).decode("ascii"),
                "expires_at": self.expires_at.isoformat(),
            }
        ).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> Session:
        """Parse a serialized session. Raises ValueError on any malformed field."""
        try:
            raw = json.loads(data)
            key = base64.b64decode(raw["key"], validate=True)
            expires_at = datetime.fromisoformat(raw["expires_at"])
        except (KeyError, TypeError, binascii.Error) as e:
            raise ValueError(f"malformed session record: {e}") from e
        if len(key) != KEY_LENGTH:
            raise ValueError("malformed session record: bad key length")
        if expires_at.tzinfo is None:
            raise ValueError("malformed session record: naive expiry")
        return cls(key=key, expires_at=expires_at)


class SessionStore(Protocol):
    def load(self) -> Session | None: ...

    def save(self, session: Session) -> None: ...

    def clear(self) -> None: ...


class MemorySessionStore:
    def __init__(self) -> None:
        self._session: Session | None = None

    def load(self) -> Session | None:
        return self._session

    def save(self, session: Session) -> None:
        self._session = session

    def clear(self) -> None:
        self._session = None


def _write_private(path: Path, data: bytes) -> None:
    """Write via a 0600 temp file and rename, so readers never see a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(tmp, 0o600)
    os.replace(tmp, path)


class FileSessionStore:
    def __init__(self, path: Path, key_path: Path, wrap_key: bytes | None = None) -> None:
        if wrap_key is not None and len(wrap_key) != KEY_LENGTH:
            raise InvalidKeyMaterialError(f"session wrap key must be {KEY_LENGTH} bytes")
        self.path = Path(path)
        self.key_path = Path(key_path)
        self._wrap_key = wrap_key

    def _load_wrap_key(self, create: bool) -> bytes | None:
        if self._wrap_key is not None:
            return self._wrap_key
        if self.key_path.exists():
            key = self.key_path.read_bytes()
            if len(key) == KEY_LENGTH:
                return key
            logger.warning("Ignoring malformed session key file %s", self.key_path)
        if not create:
            return None
        key = generate_key()
        _write_private(self.key_path, key)
        return key

    def load(self) -> Session | None:
        if not self.path.exists():
            return None
        wrap_key = self._load_wrap_key(create=False)
        if wrap_key is None:
            logger.warning("Session file present without a wrapping key, discarding it")
            self._remove_session()
            return None

        blob = self.path.read_bytes()
        try:
            nonce, ciphertext = blob[:NONCE_LENGTH], blob[NONCE_LENGTH:]
            plaintext = decrypt(wrap_key, ciphertext, nonce, SESSION_AAD)
            return Session.from_json(plaintext)
        except (InvalidCredentialError, InvalidKeyMaterialError, ValueError):
            logger.warning("Unreadable session file %s, discarding it", self.path)
            self._remove_session()
            return None

    def save(self, session: Session) -> None:
        wrap_key = self._load_wrap_key(create=True)
        ciphertext, nonce = encrypt(wrap_key, session.to_json(), SESSION_AAD)
        _write_private(self.path, nonce + ciphertext)
        logger.debug("Session saved, expires %s", session.expires_at.isoformat())

    def clear(self) -> None:
        self._remove_session()
        # A fresh wrapping key is generated on the next save.
        if self._wrap_key is None:
            self.key_path.unlink(missing_ok=True)

    def _remove_session(self) -> None:
        self.path.unlink(missing_ok=True)
