"""
SQLite data access layer — projects, environments, versioned secrets, vault
metadata, config and audit rows in a single local database file.

The connection runs in autocommit mode; every multi-statement write goes
through ``_transaction()`` (``BEGIN IMMEDIATE``), so a live secret row and its
history row always commit together or not at all. WAL journaling lets readers
proceed while one writer holds the lock, and ``busy_timeout`` bounds how long a
writer waits for that lock before failing.

Usage:
    from lockbox.store import SQLiteStore

    with SQLiteStore("/tmp/vault.db") as store:
        project = store.create_project("api")
        env = store.create_environment(project.id, "dev")
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from lockbox.errors import (
    AlreadyExistsError,
    EnvironmentHasChildrenError,
    NotFoundError,
)
from lockbox.models import (
    AuditAction,
    AuditEntry,
    ChangeType,
    Environment,
    Project,
    Secret,
    SecretHistory,
    VaultMeta,
)
from lockbox.vault.crypto import KdfParams

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_ENV_COLUMNS = "id, project_id, name, parent_id, created_at"
_SECRET_COLUMNS = (
    "id, environment_id, key, encrypted_value, nonce, version, created_at, updated_at"
)
_HISTORY_COLUMNS = (
    "id, environment_id, key, encrypted_value, nonce, version, change_type, created_at"
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _is_unique_violation(e: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(e)


def _is_fk_violation(e: sqlite3.IntegrityError) -> bool:
    return "FOREIGN KEY constraint failed" in str(e)


class SQLiteStore:
    """Transactional persistence for everything Lockbox keeps on disk."""

    def __init__(self, path: Path | str, busy_timeout_ms: int = 5000) -> None:
        self.path = str(path)
        self._conn = sqlite3.connect(
            self.path,
            timeout=busy_timeout_ms / 1000,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
        self._migrate()
        if self.path != ":memory:":
            Path(self.path).chmod(0o600)

    # ─── Lifecycle ───────────────────────────────────────────────────────

    def _migrate(self) -> None:
        current = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if current >= SCHEMA_VERSION:
            return
        sql = (MIGRATIONS_DIR / "001_init.sql").read_text()
        self._conn.executescript(sql)
        self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.debug("Migrated %s to schema version %d", self.path, SCHEMA_VERSION)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing write. Takes the write lock up front."""
        conn = self._conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    # ─── Vault metadata ──────────────────────────────────────────────────

    def get_vault_meta(self) -> VaultMeta | None:
        row = self._conn.execute(
            """
            SELECT salt, key_check, key_check_nonce, keychain_enabled,
                   kdf_time_cost, kdf_memory_kib, kdf_parallelism, created_at
            FROM vault_meta WHERE id = 1
            """
        ).fetchone()
        return VaultMeta.model_validate(dict(row)) if row else None

    def create_vault_meta(
        self, salt: bytes, key_check: bytes, key_check_nonce: bytes, kdf: KdfParams
    ) -> VaultMeta:
        now = _now()
        try:
            self._conn.execute(
                """
                INSERT INTO vault_meta (id, salt, key_check, key_check_nonce,
                                        kdf_time_cost, kdf_memory_kib, kdf_parallelism,
                                        created_at)
                VALUES (1, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    salt,
                    key_check,
                    key_check_nonce,
                    kdf.time_cost,
                    kdf.memory_kib,
                    kdf.parallelism,
                    now,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise AlreadyExistsError("vault metadata already exists") from e
        return VaultMeta(
            salt=salt,
            key_check=key_check,
            key_check_nonce=key_check_nonce,
            kdf_time_cost=kdf.time_cost,
            kdf_memory_kib=kdf.memory_kib,
            kdf_parallelism=kdf.parallelism,
            created_at=now,
        )

    def set_keychain_enabled(self, enabled: bool) -> None:
        cur = self._conn.execute(
            "UPDATE vault_meta SET keychain_enabled = ? WHERE id = 1", (int(enabled),)
        )
        if cur.rowcount == 0:
            raise NotFoundError("vault metadata not found")

    # ─── Projects ────────────────────────────────────────────────────────

    def create_project(self, name: str, description: str = "") -> Project:
        project = Project(id=_new_id(), name=name, description=description, created_at=_now())
        try:
            self._conn.execute(
                "INSERT INTO projects (id, name, description, created_at) VALUES (?, ?, ?, ?)",
                (project.id, name, description, project.created_at.isoformat()),
            )
        except sqlite3.IntegrityError as e:
            raise AlreadyExistsError(f"project '{name}' already exists") from e
        return project

    def get_project(self, project_id: str) -> Project | None:
        row = self._conn.execute(
            "SELECT id, name, description, created_at FROM projects WHERE id = ?",
            (project_id,),
        ).fetchone()
        return Project.model_validate(dict(row)) if row else None

    def get_project_by_name(self, name: str) -> Project | None:
        row = self._conn.execute(
            "SELECT id, name, description, created_at FROM projects WHERE name = ?",
            (name,),
        ).fetchone()
        return Project.model_validate(dict(row)) if row else None

    def list_projects(self) -> list[Project]:
        rows = self._conn.execute(
            "SELECT id, name, description, created_at FROM projects ORDER BY name"
        ).fetchall()
        return [Project.model_validate(dict(r)) for r in rows]

    def delete_project(self, project_id: str) -> None:
        """Delete a project. Environments, secrets and history cascade."""
        cur = self._conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        if cur.rowcount == 0:
            raise NotFoundError(f"project {project_id} not found")

    # ─── Environments ────────────────────────────────────────────────────

    def create_environment(
        self, project_id: str, name: str, parent_id: str | None = None
    ) -> Environment:
        env = Environment(
            id=_new_id(),
            project_id=project_id,
            name=name,
            parent_id=parent_id,
            created_at=_now(),
        )
        try:
            self._conn.execute(
                """
                INSERT INTO environments (id, project_id, name, parent_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (env.id, project_id, name, parent_id, env.created_at.isoformat()),
            )
        except sqlite3.IntegrityError as e:
            if _is_unique_violation(e):
                raise AlreadyExistsError(f"environment '{name}' already exists") from e
            if _is_fk_violation(e):
                raise NotFoundError("project or parent environment not found") from e
            raise
        return env

    def get_environment(self, env_id: str) -> Environment | None:
        row = self._conn.execute(
            f"SELECT {_ENV_COLUMNS} FROM environments WHERE id = ?", (env_id,)
        ).fetchone()
        return Environment.model_validate(dict(row)) if row else None

    def get_environment_by_name(self, project_id: str, name: str) -> Environment | None:
        row = self._conn.execute(
            f"SELECT {_ENV_COLUMNS} FROM environments WHERE project_id = ? AND name = ?",
            (project_id, name),
        ).fetchone()
        return Environment.model_validate(dict(row)) if row else None

    def list_environments(self, project_id: str) -> list[Environment]:
        rows = self._conn.execute(
            f"SELECT {_ENV_COLUMNS} FROM environments WHERE project_id = ? ORDER BY name",
            (project_id,),
        ).fetchall()
        return [Environment.model_validate(dict(r)) for r in rows]

    def list_children(self, env_id: str) -> list[Environment]:
        """Direct children only, ordered by name."""
        rows = self._conn.execute(
            f"SELECT {_ENV_COLUMNS} FROM environments WHERE parent_id = ? ORDER BY name",
            (env_id,),
        ).fetchall()
        return [Environment.model_validate(dict(r)) for r in rows]

    def set_environment_parent(self, env_id: str, parent_id: str | None) -> None:
        """Re-point an environment's parent link. Does not check for cycles."""
        try:
            cur = self._conn.execute(
                "UPDATE environments SET parent_id = ? WHERE id = ?", (parent_id, env_id)
            )
        except sqlite3.IntegrityError as e:
            raise NotFoundError(f"parent environment {parent_id} not found") from e
        if cur.rowcount == 0:
            raise NotFoundError(f"environment {env_id} not found")

    def delete_environment(self, env_id: str) -> None:
        """Delete an environment with its secrets and history.

        The parent link rejects deleting an environment that still has
        children; callers are expected to check first.
        """
        try:
            cur = self._conn.execute("DELETE FROM environments WHERE id = ?", (env_id,))
        except sqlite3.IntegrityError as e:
            if _is_fk_violation(e):
                raise EnvironmentHasChildrenError(
                    f"environment {env_id} still has child environments"
                ) from e
            raise
        if cur.rowcount == 0:
            raise NotFoundError(f"environment {env_id} not found")

    # ─── Secrets ─────────────────────────────────────────────────────────

    def _append_history(
        self,
        conn: sqlite3.Connection,
        env_id: str,
        key: str,
        encrypted_value: bytes,
        nonce: bytes,
        version: int,
        change_type: ChangeType,
        now: str,
    ) -> None:
        conn.execute(
            f"INSERT INTO secret_history ({_HISTORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (_new_id(), env_id, key, encrypted_value, nonce, version, str(change_type), now),
        )

    def create_secret(
        self, env_id: str, key: str, encrypted_value: bytes, nonce: bytes
    ) -> Secret:
        """Insert a live secret at version 1 plus its 'create' history row."""
        secret_id = _new_id()
        now = _now()
        try:
            with self._transaction() as conn:
                conn.execute(
                    f"INSERT INTO secrets ({_SECRET_COLUMNS}) VALUES (?, ?, ?, ?, ?, 1, ?, ?)",
                    (secret_id, env_id, key, encrypted_value, nonce, now, now),
                )
                self._append_history(
                    conn, env_id, key, encrypted_value, nonce, 1, ChangeType.CREATE, now
                )
        except sqlite3.IntegrityError as e:
            if _is_unique_violation(e):
                raise AlreadyExistsError(f"secret '{key}' already exists") from e
            if _is_fk_violation(e):
                raise NotFoundError(f"environment {env_id} not found") from e
            raise
        return Secret(
            id=secret_id,
            environment_id=env_id,
            key=key,
            encrypted_value=encrypted_value,
            nonce=nonce,
            version=1,
            created_at=now,
            updated_at=now,
        )

    def update_secret(
        self, env_id: str, key: str, encrypted_value: bytes, nonce: bytes
    ) -> Secret:
        """Replace the live value, bump the version and append an 'update' row."""
        now = _now()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, version, created_at FROM secrets WHERE environment_id = ? AND key = ?",
                (env_id, key),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"secret '{key}' not found")
            new_version = row["version"] + 1
            conn.execute(
                """
                UPDATE secrets SET encrypted_value = ?, nonce = ?, version = ?, updated_at = ?
                WHERE environment_id = ? AND key = ?
                """,
                (encrypted_value, nonce, new_version, now, env_id, key),
            )
            self._append_history(
                conn, env_id, key, encrypted_value, nonce, new_version, ChangeType.UPDATE, now
            )
        return Secret(
            id=row["id"],
            environment_id=env_id,
            key=key,
            encrypted_value=encrypted_value,
            nonce=nonce,
            version=new_version,
            created_at=row["created_at"],
            updated_at=now,
        )

    def delete_secret(self, env_id: str, key: str) -> int:
        """Remove the live row, recording a 'delete' row at version + 1.

        The delete row carries the last live ciphertext. Returns its version.
        """
        now = _now()
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT encrypted_value, nonce, version FROM secrets
                WHERE environment_id = ? AND key = ?
                """,
                (env_id, key),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"secret '{key}' not found")
            delete_version = row["version"] + 1
            self._append_history(
                conn,
                env_id,
                key,
                row["encrypted_value"],
                row["nonce"],
                delete_version,
                ChangeType.DELETE,
                now,
            )
            conn.execute(
                "DELETE FROM secrets WHERE environment_id = ? AND key = ?", (env_id, key)
            )
        return delete_version

    def get_secret(self, env_id: str, key: str) -> Secret | None:
        row = self._conn.execute(
            f"SELECT {_SECRET_COLUMNS} FROM secrets WHERE environment_id = ? AND key = ?",
            (env_id, key),
        ).fetchone()
        return Secret.model_validate(dict(row)) if row else None

    def list_secrets(self, env_id: str) -> list[Secret]:
        rows = self._conn.execute(
            f"SELECT {_SECRET_COLUMNS} FROM secrets WHERE environment_id = ? ORDER BY key",
            (env_id,),
        ).fetchall()
        return [Secret.model_validate(dict(r)) for r in rows]

    def get_secret_history(self, env_id: str, key: str, limit: int = 10) -> list[SecretHistory]:
        """History rows, newest version first, capped at ``limit``."""
        rows = self._conn.execute(
            f"""
            SELECT {_HISTORY_COLUMNS} FROM secret_history
            WHERE environment_id = ? AND key = ?
            ORDER BY version DESC, rowid DESC
            LIMIT ?
            """,
            (env_id, key, limit),
        ).fetchall()
        return [SecretHistory.model_validate(dict(r)) for r in rows]

    def get_secret_version(self, env_id: str, key: str, version: int) -> SecretHistory:
        """Exact-version lookup. Raises NotFoundError if absent.

        After a delete and re-create two lineages can share a version number;
        the most recently written row wins.
        """
        row = self._conn.execute(
            f"""
            SELECT {_HISTORY_COLUMNS} FROM secret_history
            WHERE environment_id = ? AND key = ? AND version = ?
            ORDER BY rowid DESC
            LIMIT 1
            """,
            (env_id, key, version),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"version {version} of '{key}' not found")
        return SecretHistory.model_validate(dict(row))

    # ─── Config ──────────────────────────────────────────────────────────

    def get_config(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM config WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_config(self, key: str, value: str) -> None:
        self._conn.execute(
            """
            INSERT INTO config (key, value) VALUES (?, ?)
            ON CONFLICT (key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )

    def delete_config(self, key: str) -> None:
        self._conn.execute("DELETE FROM config WHERE key = ?", (key,))

    # ─── Audit ───────────────────────────────────────────────────────────

    def log_audit(
        self,
        action: AuditAction,
        *,
        project_id: str | None = None,
        environment_id: str | None = None,
        secret_key: str | None = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            id=_new_id(),
            timestamp=_now(),
            action=action,
            project_id=project_id,
            environment_id=environment_id,
            secret_key=secret_key,
            success=success,
            error_message=error_message,
        )
        self._conn.execute(
            """
            INSERT INTO audit_log (id, timestamp, action, project_id, environment_id,
                                   secret_key, success, error_message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.timestamp.isoformat(),
                str(action),
                project_id,
                environment_id,
                secret_key,
                int(success),
                error_message,
            ),
        )
        return entry

    def list_audit(self, limit: int = 50, action: AuditAction | None = None) -> list[AuditEntry]:
        query = (
            "SELECT id, timestamp, action, project_id, environment_id, secret_key, "
            "success, error_message FROM audit_log"
        )
        params: list = []
        if action:
            query += " WHERE action = ?"
            params.append(str(action))
        query += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(query, params).fetchall()
        return [AuditEntry.model_validate(dict(r)) for r in rows]

    def count_audit_by_action(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT action, COUNT(*) AS n FROM audit_log GROUP BY action ORDER BY n DESC"
        ).fetchall()
        return {r["action"]: r["n"] for r in rows}
