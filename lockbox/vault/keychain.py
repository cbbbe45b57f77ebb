"""
OS keychain passthrough for the derived vault key.

The keychain is treated as an opaque blob store under one fixed
service/account pair. "No entry" is a normal answer (``fetch`` returns None);
any backend failure surfaces as KeychainUnavailableError.
"""

from __future__ import annotations

import logging
from typing import Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from lockbox.errors import KeychainUnavailableError

logger = logging.getLogger(__name__)

SERVICE_NAME = "lockbox"
ACCOUNT_NAME = "master-key"


class Keychain(Protocol):
    def available(self) -> bool: ...

    def store(self, blob: str) -> None: ...

    def fetch(self) -> str | None: ...

    def delete(self) -> None: ...


class SystemKeychain:
    """Keychain backed by whatever ``keyring`` backend the OS provides."""

    def __init__(self, service: str = SERVICE_NAME, account: str = ACCOUNT_NAME) -> None:
        self.service = service
        self.account = account

    def available(self) -> bool:
        # A lookup that finds nothing still proves the backend works.
        try:
            keyring.get_password(self.service, f"{self.account}-probe")
        except KeyringError as e:
            logger.debug("Keychain unavailable: %s", e)
            return False
        return True

    def store(self, blob: str) -> None:
        try:
            keyring.set_password(self.service, self.account, blob)
        except KeyringError as e:
            raise KeychainUnavailableError(f"failed to store key in keychain: {e}") from e

    def fetch(self) -> str | None:
        try:
            return keyring.get_password(self.service, self.account)
        except KeyringError as e:
            raise KeychainUnavailableError(f"failed to read key from keychain: {e}") from e

    def delete(self) -> None:
        try:
            keyring.delete_password(self.service, self.account)
        except PasswordDeleteError:
            logger.debug("No keychain entry to delete for %s/%s", self.service, self.account)
        except KeyringError as e:
            raise KeychainUnavailableError(f"failed to delete key from keychain: {e}") from e
