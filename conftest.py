"""
Root-level shared test fixtures.

Every test runs against its own LOCKBOX_HOME under tmp_path with cheap Argon2
parameters, so nothing touches ~/.lockbox or the real OS keychain.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from lockbox.config import reset_config
from lockbox.engine import SecretEngine
from lockbox.store import SQLiteStore
from lockbox.vault import MemorySessionStore, Vault
from lockbox.vault.crypto import KdfParams

FAST_KDF = KdfParams(time_cost=1, memory_kib=8, parallelism=1)
TEST_PASSWORD = "correct horse battery"


class MemoryKeychain:
    """In-process stand-in for the OS keychain."""

    def __init__(self, available: bool = True) -> None:
        self.is_available = available
        self.blob: str | None = None

    def available(self) -> bool:
        return self.is_available

    def store(self, blob: str) -> None:
        self.blob = blob

    def fetch(self) -> str | None:
        return self.blob

    def delete(self) -> None:
        self.blob = None


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def lockbox_home(tmp_path, monkeypatch):
    """Point LOCKBOX_HOME at a temp dir and drop any leaked LOCKBOX_* settings."""
    for key in [
        "LOCKBOX_PASSWORD",
        "LOCKBOX_SESSION_WRAP_KEY",
        "LOCKBOX_BUSY_TIMEOUT_MS",
        "LOCKBOX_LOG_LEVEL",
    ]:
        monkeypatch.delenv(key, raising=False)
    home = tmp_path / "lockbox-home"
    monkeypatch.setenv("LOCKBOX_HOME", str(home))
    monkeypatch.setenv("LOCKBOX_KDF_TIME_COST", str(FAST_KDF.time_cost))
    monkeypatch.setenv("LOCKBOX_KDF_MEMORY_KIB", str(FAST_KDF.memory_kib))
    monkeypatch.setenv("LOCKBOX_KDF_PARALLELISM", str(FAST_KDF.parallelism))
    reset_config()
    yield home
    reset_config()


@pytest.fixture
def fast_kdf():
    return FAST_KDF


@pytest.fixture
def password():
    return TEST_PASSWORD


@pytest.fixture
def store(tmp_path):
    s = SQLiteStore(tmp_path / "vault.db")
    yield s
    s.close()


@pytest.fixture
def keychain():
    return MemoryKeychain()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault(store, keychain, clock):
    return Vault(store, MemorySessionStore(), keychain=keychain, kdf=FAST_KDF, clock=clock)


@pytest.fixture
def engine(store, vault):
    """An unlocked engine with an active project 'api'."""
    vault.initialize(TEST_PASSWORD)
    eng = SecretEngine(store, vault)
    eng.create_project("api")
    return eng
