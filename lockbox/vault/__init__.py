"""
Lockbox vault — key derivation, sessions and the lock/unlock lifecycle.

Public API:
    Vault(store, sessions)          → lifecycle manager
    vault.initialize(password)      → create the vault, returns a Session
    vault.unlock(password)          → returns a Session
    vault.get_key()                 → the live derived key, or raises
    FileSessionStore / MemorySessionStore
"""

from __future__ import annotations

from lockbox.vault.manager import KEY_CHECK_VALUE, SESSION_DURATION, KeyCheckResult, Vault
from lockbox.vault.session import FileSessionStore, MemorySessionStore, Session, SessionStore

__all__ = [
    "KEY_CHECK_VALUE",
    "SESSION_DURATION",
    "FileSessionStore",
    "KeyCheckResult",
    "MemorySessionStore",
    "Session",
    "SessionStore",
    "Vault",
]
