"""
Secret engine — projects, environments and secrets on top of the vault.

This is where the pieces meet: the vault supplies the live key, the
inheritance resolver picks the authoritative row for each key, AES-GCM
decrypts it (the key name is the associated data), and the reference
resolver expands ``${NAME}`` tokens over the merged plaintext. Only the
secrets a call actually needs are decrypted.

Environment-scoped calls work inside the active project (config key
``active_project``) unless the engine was opened for an explicit project.

Usage:
    from lockbox.engine import open_engine

    with open_engine() as engine:
        engine.set_secret("dev", "DB_HOST", "localhost")
        engine.get_secret("dev", "DB_URL", resolve=True).value
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping
from contextlib import contextmanager

from lockbox.audit.logger import log_action
from lockbox.config import Config, get_config
from lockbox.errors import (
    EnvironmentHasChildrenError,
    InvalidKeyNameError,
    NotFoundError,
    RestoreError,
)
from lockbox.inheritance import InheritanceResolver
from lockbox.models import (
    CONFIG_ACTIVE_PROJECT,
    AuditAction,
    ChangeType,
    Environment,
    EnvironmentSummary,
    HistoryEntry,
    ImportResult,
    MergedSecret,
    Project,
    Secret,
    SecretHistory,
    SecretValue,
)
from lockbox.references import resolve_references, resolve_value
from lockbox.store import SQLiteStore
from lockbox.vault import FileSessionStore, Vault
from lockbox.vault.crypto import decrypt_string, encrypt_string
from lockbox.vault.keychain import SystemKeychain

logger = logging.getLogger(__name__)

KEY_NAME_PATTERN = re.compile(r"[A-Z][A-Z0-9_]*")


def is_valid_key_name(key: str) -> bool:
    return KEY_NAME_PATTERN.fullmatch(key) is not None


def validate_key_name(key: str) -> None:
    if not is_valid_key_name(key):
        raise InvalidKeyNameError(key)


def _decrypt(enc_key: bytes, row: Secret | SecretHistory) -> str:
    return decrypt_string(enc_key, row.encrypted_value, row.nonce, row.key.encode("utf-8"))


class _DecryptingMapping(Mapping[str, str]):
    """Merged secrets seen as plaintext, decrypted on first access."""

    def __init__(self, secrets: dict[str, MergedSecret], enc_key: bytes) -> None:
        self._secrets = secrets
        self._enc_key = enc_key
        self._plain: dict[str, str] = {}

    def __getitem__(self, key: str) -> str:
        if key not in self._plain:
            self._plain[key] = _decrypt(self._enc_key, self._secrets[key])
        return self._plain[key]

    def __contains__(self, key: object) -> bool:
        return key in self._secrets

    def __iter__(self) -> Iterator[str]:
        return iter(self._secrets)

    def __len__(self) -> int:
        return len(self._secrets)


class SecretEngine:
    def __init__(self, store: SQLiteStore, vault: Vault, project: str | None = None) -> None:
        self.store = store
        self.vault = vault
        self.resolver = InheritanceResolver(store)
        self.project_name = project

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> SecretEngine:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @contextmanager
    def _audited(
        self, action: AuditAction, env: Environment, key: str | None = None
    ) -> Iterator[None]:
        """Write one audit row for the wrapped operation, success or failure."""
        try:
            yield
        except Exception as e:
            log_action(
                self.store,
                action,
                project_id=env.project_id,
                environment_id=env.id,
                secret_key=key,
                success=False,
                error=str(e),
            )
            raise
        log_action(
            self.store,
            action,
            project_id=env.project_id,
            environment_id=env.id,
            secret_key=key,
        )

    # ─── Projects ────────────────────────────────────────────────────────

    def create_project(self, name: str, description: str = "") -> Project:
        """Create a project and make it the active one."""
        self.vault.get_key()
        project = self.store.create_project(name, description)
        self.store.set_config(CONFIG_ACTIVE_PROJECT, project.id)
        logger.info("Created project %s", name)
        return project

    def list_projects(self) -> list[Project]:
        self.vault.get_key()
        return self.store.list_projects()

    def get_project(self, name: str) -> Project:
        project = self.store.get_project_by_name(name)
        if project is None:
            raise NotFoundError(f"project '{name}' not found")
        return project

    def use_project(self, name: str) -> Project:
        self.vault.get_key()
        project = self.get_project(name)
        self.store.set_config(CONFIG_ACTIVE_PROJECT, project.id)
        return project

    def active_project(self) -> Project:
        if self.project_name:
            return self.get_project(self.project_name)
        active_id = self.store.get_config(CONFIG_ACTIVE_PROJECT)
        if active_id is None:
            raise NotFoundError("no active project: use 'lockbox project use <name>' first")
        project = self.store.get_project(active_id)
        if project is None:
            raise NotFoundError("active project not found: use 'lockbox project use <name>'")
        return project

    def active_project_id(self) -> str | None:
        return self.store.get_config(CONFIG_ACTIVE_PROJECT)

    def delete_project(self, name: str) -> None:
        """Delete a project with every environment, secret and history row in it."""
        self.vault.get_key()
        project = self.get_project(name)
        if self.store.get_config(CONFIG_ACTIVE_PROJECT) == project.id:
            self.store.delete_config(CONFIG_ACTIVE_PROJECT)
        self.store.delete_project(project.id)
        logger.info("Deleted project %s", name)

    # ─── Environments ────────────────────────────────────────────────────

    def get_environment(self, name: str) -> Environment:
        project = self.active_project()
        env = self.store.get_environment_by_name(project.id, name)
        if env is None:
            raise NotFoundError(f"environment '{name}' not found in project '{project.name}'")
        return env

    def create_environment(self, name: str, parent: str | None = None) -> Environment:
        self.vault.get_key()
        project = self.active_project()
        parent_id = self.get_environment(parent).id if parent else None
        env = self.store.create_environment(project.id, name, parent_id)
        logger.info("Created environment %s/%s", project.name, name)
        return env

    def branch_environment(self, parent: str, name: str) -> Environment:
        """Create ``name`` inheriting from ``parent``."""
        return self.create_environment(name, parent=parent)

    def list_environments(self) -> list[EnvironmentSummary]:
        self.vault.get_key()
        project = self.active_project()
        envs = self.store.list_environments(project.id)
        names = {env.id: env.name for env in envs}

        summaries = []
        for env in envs:
            merged = self.resolver.resolve_all(env.id)
            inherited = sum(1 for s in merged if s.is_inherited)
            summaries.append(
                EnvironmentSummary(
                    environment=env,
                    parent_name=names.get(env.parent_id) if env.parent_id else None,
                    local_count=len(merged) - inherited,
                    inherited_count=inherited,
                )
            )
        return summaries

    def delete_environment(self, name: str) -> None:
        self.vault.get_key()
        env = self.get_environment(name)
        children = self.resolver.children(env.id)
        if children:
            raise EnvironmentHasChildrenError(
                f"cannot delete '{name}': has child environments "
                f"({', '.join(c.name for c in children)}). Delete children first"
            )
        self.store.delete_environment(env.id)
        logger.info("Deleted environment %s", name)

    # ─── Secrets ─────────────────────────────────────────────────────────

    def set_secret(self, env_name: str, key: str, value: str) -> Secret:
        """Create or update ``key`` in the environment. Returns the live row."""
        validate_key_name(key)
        env = self.get_environment(env_name)
        exists = self.store.get_secret(env.id, key) is not None
        action = AuditAction.UPDATE if exists else AuditAction.CREATE

        with self._audited(action, env, key):
            enc_key = self.vault.get_key()
            ciphertext, nonce = encrypt_string(enc_key, value, key.encode("utf-8"))
            if exists:
                secret = self.store.update_secret(env.id, key, ciphertext, nonce)
            else:
                secret = self.store.create_secret(env.id, key, ciphertext, nonce)
        logger.debug("Set %s in %s (v%d)", key, env_name, secret.version)
        return secret

    def get_secret(self, env_name: str, key: str, resolve: bool = False) -> SecretValue:
        env = self.get_environment(env_name)
        with self._audited(AuditAction.READ, env, key):
            enc_key = self.vault.get_key()
            if resolve:
                merged = {s.key: s for s in self.resolver.resolve_all(env.id)}
                if key not in merged:
                    raise NotFoundError(f"secret '{key}' not found in '{env_name}' or its parents")
                secret = merged[key]
                value = resolve_value(key, _DecryptingMapping(merged, enc_key))
            else:
                secret = self.resolver.resolve_secret(env.id, key)
                value = _decrypt(enc_key, secret)

        return SecretValue(
            key=key,
            value=value,
            version=secret.version,
            source_env_name=secret.source_env_name,
            is_inherited=secret.is_inherited,
        )

    def list_secrets(self, env_name: str, show_values: bool = False) -> list[SecretValue]:
        """Every key visible from the environment, local and inherited, sorted by key."""
        enc_key = self.vault.get_key()
        env = self.get_environment(env_name)
        merged = self.resolver.resolve_all(env.id)
        if not show_values:
            return [
                SecretValue(
                    key=s.key,
                    version=s.version,
                    source_env_name=s.source_env_name,
                    is_inherited=s.is_inherited,
                )
                for s in merged
            ]

        with self._audited(AuditAction.READ, env):
            return [
                SecretValue(
                    key=s.key,
                    value=_decrypt(enc_key, s),
                    version=s.version,
                    source_env_name=s.source_env_name,
                    is_inherited=s.is_inherited,
                )
                for s in merged
            ]

    def delete_secret(self, env_name: str, key: str) -> int:
        """Delete a local secret. Returns the version recorded for the deletion."""
        env = self.get_environment(env_name)
        with self._audited(AuditAction.DELETE, env, key):
            self.vault.get_key()
            version = self.store.delete_secret(env.id, key)
        return version

    def history(
        self, env_name: str, key: str, limit: int = 10, show_values: bool = False
    ) -> list[HistoryEntry]:
        """Newest version first. Delete rows never carry a value."""
        enc_key = self.vault.get_key()
        env = self.get_environment(env_name)
        rows = self.store.get_secret_history(env.id, key, limit)
        if not show_values:
            return [
                HistoryEntry(version=r.version, change_type=r.change_type, created_at=r.created_at)
                for r in rows
            ]

        with self._audited(AuditAction.READ, env, key):
            return [
                HistoryEntry(
                    version=r.version,
                    change_type=r.change_type,
                    created_at=r.created_at,
                    value=None if r.change_type == ChangeType.DELETE else _decrypt(enc_key, r),
                )
                for r in rows
            ]

    def restore(self, env_name: str, key: str, version: int) -> Secret:
        """Make a historical value live again as a new version.

        The stored ciphertext and nonce are republished as-is; nothing is
        re-encrypted.
        """
        env = self.get_environment(env_name)
        exists = self.store.get_secret(env.id, key) is not None
        action = AuditAction.UPDATE if exists else AuditAction.CREATE

        with self._audited(action, env, key):
            self.vault.get_key()
            row = self.store.get_secret_version(env.id, key, version)
            if row.change_type == ChangeType.DELETE:
                raise RestoreError(f"cannot restore version {version}: it was a deletion")
            if exists:
                secret = self.store.update_secret(env.id, key, row.encrypted_value, row.nonce)
            else:
                secret = self.store.create_secret(env.id, key, row.encrypted_value, row.nonce)
        logger.info("Restored %s in %s to version %d", key, env_name, version)
        return secret

    def _plaintext(self, env: Environment, enc_key: bytes, resolve: bool) -> dict[str, str]:
        merged = {s.key: s for s in self.resolver.resolve_all(env.id)}
        mapping = _DecryptingMapping(merged, enc_key)
        if resolve:
            return resolve_references(mapping)
        return {key: mapping[key] for key in mapping}

    def export_environment(self, env_name: str, resolve: bool = False) -> dict[str, str]:
        """All visible secrets as plaintext, references expanded if ``resolve``."""
        env = self.get_environment(env_name)
        with self._audited(AuditAction.EXPORT, env):
            secrets = self._plaintext(env, self.vault.get_key(), resolve)
        return secrets

    def run_environment(self, env_name: str) -> dict[str, str]:
        """The fully resolved mapping handed to a child process."""
        env = self.get_environment(env_name)
        with self._audited(AuditAction.RUN, env):
            secrets = self._plaintext(env, self.vault.get_key(), resolve=True)
        return secrets

    def import_secrets(self, env_name: str, secrets: Mapping[str, str]) -> ImportResult:
        """Create or update each entry. Invalid key names are skipped and reported."""
        env = self.get_environment(env_name)
        result = ImportResult()

        with self._audited(AuditAction.IMPORT, env):
            enc_key = self.vault.get_key()
            for key in sorted(secrets):
                if not is_valid_key_name(key):
                    result.skipped.append(key)
                    continue
                ciphertext, nonce = encrypt_string(enc_key, secrets[key], key.encode("utf-8"))
                if self.store.get_secret(env.id, key) is None:
                    self.store.create_secret(env.id, key, ciphertext, nonce)
                    result.created += 1
                else:
                    self.store.update_secret(env.id, key, ciphertext, nonce)
                    result.updated += 1

        logger.info(
            "Imported into %s: %d created, %d updated, %d skipped",
            env_name,
            result.created,
            result.updated,
            len(result.skipped),
        )
        return result


def open_engine(cfg: Config | None = None, project: str | None = None) -> SecretEngine:
    """Wire store, file sessions, OS keychain and vault from configuration."""
    cfg = cfg or get_config()
    cfg.ensure_data_dir()
    store = SQLiteStore(cfg.db_path, busy_timeout_ms=cfg.busy_timeout_ms)
    sessions = FileSessionStore(cfg.session_path, cfg.session_key_path, cfg.session_wrap_key)
    vault = Vault(store, sessions, keychain=SystemKeychain(), kdf=cfg.kdf)
    return SecretEngine(store, vault, project=project)
