"""
Centralized configuration for Lockbox.

All configuration is loaded from environment variables with sensible defaults.

Usage:
    from lockbox.config import get_config
    cfg = get_config()
    print(cfg.db_path)       # "/home/user/.lockbox/vault.db"
    print(cfg.data_dir)      # "/home/user/.lockbox" or $LOCKBOX_HOME
"""

from __future__ import annotations

import base64
import binascii
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

from lockbox.vault.crypto import KdfParams

DB_FILENAME = "vault.db"
SESSION_FILENAME = "session"
SESSION_KEY_FILENAME = "session.key"


@dataclass(frozen=True)
class Config:
    """Top-level Lockbox configuration."""

    data_dir: Path = field(default_factory=lambda: Path.home() / ".lockbox")
    busy_timeout_ms: int = 5000
    kdf: KdfParams = field(default_factory=KdfParams)
    session_wrap_key: bytes | None = field(default=None, repr=False)
    log_level: str = "WARNING"

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME

    @property
    def session_path(self) -> Path:
        return self.data_dir / SESSION_FILENAME

    @property
    def session_key_path(self) -> Path:
        return self.data_dir / SESSION_KEY_FILENAME

    def ensure_data_dir(self) -> Path:
        """Create the data directory (mode 0700) if it does not exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.chmod(stat.S_IRWXU)  # 700
        return self.data_dir

    def vault_exists(self) -> bool:
        return self.db_path.exists()


# Singleton
_config: Config | None = None


def get_config() -> Config:
    """Get or create the singleton config from environment variables."""
    global _config
    if _config is not None:
        return _config
    _config = _load_from_env()
    return _config


def _decode_wrap_key(raw: str) -> bytes | None:
    if not raw:
        return None
    try:
        key = base64.b64decode(raw, validate=True)
    except binascii.Error as e:
        raise ValueError(f"LOCKBOX_SESSION_WRAP_KEY is not valid base64: {e}") from e
    if len(key) != 32:
        raise ValueError(f"LOCKBOX_SESSION_WRAP_KEY must decode to 32 bytes, got {len(key)}")
    return key


def _load_from_env() -> Config:
    """Load configuration from environment variables."""
    data_dir = Path(os.environ.get("LOCKBOX_HOME", Path.home() / ".lockbox")).expanduser()

    kdf = KdfParams(
        time_cost=int(os.environ.get("LOCKBOX_KDF_TIME_COST", "3")),
        memory_kib=int(os.environ.get("LOCKBOX_KDF_MEMORY_KIB", str(64 * 1024))),
        parallelism=int(os.environ.get("LOCKBOX_KDF_PARALLELISM", "4")),
    )

    return Config(
        data_dir=data_dir,
        busy_timeout_ms=int(os.environ.get("LOCKBOX_BUSY_TIMEOUT_MS", "5000")),
        kdf=kdf,
        session_wrap_key=_decode_wrap_key(os.environ.get("LOCKBOX_SESSION_WRAP_KEY", "")),
        log_level=os.environ.get("LOCKBOX_LOG_LEVEL", "WARNING").upper(),
    )


def reset_config() -> None:
    """Reset the singleton config (for testing)."""
    global _config
    _config = None
