"""Lockbox data models.

Row models mirror the SQLite tables. Ciphertext and nonce fields are excluded
from repr and serialization so a model never leaks them into logs or JSON.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class ChangeType(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class AuditAction(StrEnum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    EXPORT = "export"
    RUN = "run"
    IMPORT = "import"


# Known config keys
CONFIG_ACTIVE_PROJECT = "active_project"


class Project(BaseModel):
    id: str
    name: str
    description: str = ""
    created_at: datetime


class Environment(BaseModel):
    id: str
    project_id: str
    name: str
    parent_id: str | None = None  # None for root environments
    created_at: datetime


class Secret(BaseModel):
    """A live secret row (metadata plus ciphertext, never the plaintext)."""

    id: str
    environment_id: str
    key: str
    encrypted_value: bytes = Field(repr=False, exclude=True)
    nonce: bytes = Field(repr=False, exclude=True)
    version: int = 1
    created_at: datetime
    updated_at: datetime


class MergedSecret(Secret):
    """A secret as seen from an environment: where it is defined, and whether inherited."""

    source_env_id: str
    source_env_name: str
    is_inherited: bool = False


class SecretHistory(BaseModel):
    """Append-only record of one change, holding the ciphertext as it was after the change."""

    id: str
    environment_id: str
    key: str
    encrypted_value: bytes = Field(repr=False, exclude=True)
    nonce: bytes = Field(repr=False, exclude=True)
    version: int
    change_type: ChangeType
    created_at: datetime


class VaultMeta(BaseModel):
    salt: bytes = Field(repr=False, exclude=True)
    key_check: bytes = Field(repr=False, exclude=True)
    key_check_nonce: bytes = Field(repr=False, exclude=True)
    keychain_enabled: bool = False
    kdf_time_cost: int
    kdf_memory_kib: int
    kdf_parallelism: int
    created_at: datetime


class AuditEntry(BaseModel):
    """One audit row. Records key names only, never a value."""

    id: str
    timestamp: datetime
    action: AuditAction
    project_id: str | None = None
    environment_id: str | None = None
    secret_key: str | None = None
    success: bool = True
    error_message: str | None = None


# ─── Engine results ──────────────────────────────────────────────────────


class SecretValue(BaseModel):
    """A secret as returned to callers. ``value`` is None when values were not requested."""

    key: str
    value: str | None = Field(default=None, repr=False)
    version: int
    source_env_name: str
    is_inherited: bool = False


class HistoryEntry(BaseModel):
    version: int
    change_type: ChangeType
    created_at: datetime
    value: str | None = Field(default=None, repr=False)


class EnvironmentSummary(BaseModel):
    environment: Environment
    parent_name: str | None = None
    local_count: int = 0
    inherited_count: int = 0


class ImportResult(BaseModel):
    created: int = 0
    updated: int = 0
    skipped: list[str] = Field(default_factory=list)
